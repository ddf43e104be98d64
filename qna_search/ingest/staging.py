"""Staging ingestor.

Reads batch files of one extension from the staging directory (non-recursive,
sorted by name). Each file is a JSON array of records::

    [{"content": "Q1", "metadata": {"secondaryTag": 3}}, ...]

`pageContent` is accepted for `content` and `fillerID` for `secondaryTag`.
A file is moved to the processed directory only after it parsed cleanly;
files that fail to parse (bad UTF-8, bad JSON, or a tag the configured
`validate_tag` refuses) stay in staging and are listed in `rejected`.
Empty files are left in place. A file holding `[]` parses cleanly and is
relocated like any other.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from ..errors import DomainError, StagingFormatError

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("content", "pageContent")
TAG_FIELDS = ("secondaryTag", "fillerID")


@dataclass
class StagingRecord:
    content: str
    secondary_tag: int


@dataclass
class StagingBatch:
    records: List[StagingRecord] = field(default_factory=list)
    files: List[Path] = field(default_factory=list)
    rejected: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def contents(self) -> List[str]:
        return [r.content for r in self.records]

    @property
    def tags(self) -> List[int]:
        return [r.secondary_tag for r in self.records]

    def __len__(self) -> int:
        return len(self.records)


def _pick(obj: dict, names: Sequence[str]):
    for name in names:
        if name in obj:
            return obj[name]
    raise KeyError(names[0])


def parse_records(text: str, source: str = "<string>") -> List[StagingRecord]:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise StagingFormatError(source, f"invalid JSON ({e})") from e
    if not isinstance(data, list):
        raise StagingFormatError(source, "top-level value must be a list of records")

    out: List[StagingRecord] = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise StagingFormatError(source, f"record {i} is not an object")
        try:
            content = _pick(entry, CONTENT_FIELDS)
            meta = entry.get("metadata") or {}
            tag = _pick(meta, TAG_FIELDS)
        except KeyError as e:
            raise StagingFormatError(source, f"record {i} is missing {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise StagingFormatError(source, f"record {i} has empty or non-string content")
        if isinstance(tag, bool) or not isinstance(tag, int):
            raise StagingFormatError(source, f"record {i} has non-integer tag {tag!r}")
        out.append(StagingRecord(content=content, secondary_tag=tag))
    return out


class StagingIngestor:
    def __init__(
        self,
        staging_dir: Path | str,
        processed_dir: Path | str,
        extension: str = "json",
        validate_tag: Optional[Callable[[int], None]] = None,
    ):
        self.staging_dir = Path(staging_dir)
        self.processed_dir = Path(processed_dir)
        self.extension = extension.lower().lstrip(".")
        # Raises DomainError for tags the active ID scheme cannot encode.
        self.validate_tag = validate_tag

    def list_batch_files(self) -> List[Path]:
        if not self.staging_dir.is_dir():
            return []
        return sorted(
            p for p in self.staging_dir.iterdir()
            if p.is_file() and p.suffix.lower() == f".{self.extension}"
        )

    def collect(self) -> StagingBatch:
        """Parse every eligible file without moving anything."""
        batch = StagingBatch()
        for path in self.list_batch_files():
            data = path.read_bytes()
            if not data.strip():
                logger.info("%s is empty; left in staging", path.name)
                continue
            try:
                records = self._parse_file(path, data)
            except StagingFormatError as e:
                logger.error("%s", e)
                batch.rejected.append((path, e.reason))
                continue
            batch.records.extend(records)
            batch.files.append(path)
            logger.debug("%s parsed (%d records)", path.name, len(records))
        logger.info("Staging: %d record(s) from %d file(s), %d rejected",
                    len(batch.records), len(batch.files), len(batch.rejected))
        return batch

    def _parse_file(self, path: Path, data: bytes) -> List[StagingRecord]:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StagingFormatError(str(path), f"not valid UTF-8 ({e})") from e
        records = parse_records(text, source=str(path))
        if self.validate_tag is not None:
            for i, record in enumerate(records):
                try:
                    self.validate_tag(record.secondary_tag)
                except DomainError as e:
                    raise StagingFormatError(str(path), f"record {i}: {e}") from e
        return records

    def relocate(self, files: Sequence[Path]) -> List[Path]:
        """Move consumed files into the processed directory. Returns files that could not be moved."""
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        failed: List[Path] = []
        for path in files:
            dest = self.processed_dir / path.name
            try:
                os.replace(path, dest)
            except OSError:
                try:
                    shutil.move(str(path), str(dest))
                except OSError as e:
                    # Stays in staging and is ingested again on the next run.
                    logger.error("Could not move %s to %s: %s", path, dest, e)
                    failed.append(path)
                    continue
            logger.debug("%s moved to %s", path.name, dest)
        return failed

    def ingest(self) -> StagingBatch:
        """Parse and immediately relocate every file that parsed cleanly."""
        batch = self.collect()
        self.relocate(batch.files)
        return batch
