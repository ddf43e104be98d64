# Makes the folder importable as a package.
# Exports Retriever and its result types for convenience.

from .retriever import Retriever
from .types import Match, SearchResult

__all__ = ["Retriever", "Match", "SearchResult"]
