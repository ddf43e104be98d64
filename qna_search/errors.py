# Error taxonomy shared by the sync engine, the index manager and the pipeline.

from __future__ import annotations

from typing import List, Optional, Tuple


class QnaSearchError(Exception):
    """Base class for every error raised by qna_search."""


class TransientIOError(QnaSearchError):
    """Network / object-store / model failure that is worth retrying."""


class PermanentIOError(QnaSearchError):
    """Authentication, permission or bad-request failures. Never retried."""


class NotFoundError(QnaSearchError):
    """Missing metadata row, missing object or missing index file."""


class CapacityExceeded(QnaSearchError):
    """Index is full; the group must be rebuilt with a larger capacity."""

    def __init__(self, group_id: str, capacity: int, requested: int):
        super().__init__(
            f"Index '{group_id}' cannot take {requested} more point(s) (capacity={capacity})"
        )
        self.group_id = group_id
        self.capacity = capacity
        self.requested = requested


class IndexCorrupt(QnaSearchError):
    """On-disk index is unreadable, truncated or does not match its sidecar."""


class DataIntegrityError(QnaSearchError):
    """Key collision or checksum mismatch. Aborts a run before push."""


class DomainError(QnaSearchError, ValueError):
    """Value outside the range an encoding can represent."""


class StagingFormatError(QnaSearchError):
    """A staging batch file could not be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot parse staging file {path}: {reason}")
        self.path = path
        self.reason = reason


class PipelineBusy(QnaSearchError):
    """A pipeline run for the same group is already in flight."""


class SyncError(QnaSearchError):
    """One or more files failed during a reconciliation pass."""

    def __init__(self, failures: List[Tuple[str, BaseException]], report: Optional[object] = None):
        listing = "; ".join(f"{path}: {exc}" for path, exc in failures)
        super().__init__(f"{len(failures)} file(s) failed to sync: {listing}")
        self.failures = failures
        self.report = report
