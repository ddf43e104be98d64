from .answers import AnswerMap
from .staging import StagingBatch, StagingIngestor, StagingRecord, parse_records

__all__ = ["AnswerMap", "StagingBatch", "StagingIngestor", "StagingRecord", "parse_records"]
