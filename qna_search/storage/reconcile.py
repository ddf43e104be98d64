"""Checksum-driven mirror between a local directory tree and an object-store prefix.

`push` makes the remote prefix a byte-exact copy of the local tree, `pull`
makes the local tree a byte-exact copy of the remote prefix. Each pass:

1. materializes the full recursive listing of both sides,
2. copies paths only present on the source,
3. overwrites paths whose sha256 differs,
4. deletes paths only present on the destination.

Remote checksums come from the `sha256` metadata written at upload time; the
object is downloaded and hashed only when that metadata is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Tuple

from ..errors import DataIntegrityError, NotFoundError, SyncError
from .object_store import (
    CHECKSUM_KEY,
    PART_SUFFIX,
    ObjectInfo,
    ObjectStore,
    atomic_write,
    join_key,
    sha256_bytes,
    sha256_file,
)

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    COLLECT = "collect"  # finish every file, raise one SyncError at the end
    STRICT = "strict"    # abort the pass on the first failure


@dataclass
class SyncReport:
    direction: str
    source: str
    destination: str
    copied: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    bytes_transferred: int = 0

    @property
    def transfers(self) -> int:
        return len(self.copied) + len(self.updated) + len(self.deleted)

    def summary(self) -> Dict[str, int]:
        return {
            "copied": len(self.copied),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
            "failed": len(self.failed),
            "bytes": self.bytes_transferred,
        }


def _safe_rel(rel: str) -> bool:
    """True when a remote-relative path stays inside the local root it maps to."""
    p = PurePosixPath(rel)
    return bool(rel) and not p.is_absolute() and ".." not in p.parts and "\\" not in rel


def local_state(root: Path) -> Dict[str, str]:
    """Return {relative posix path: sha256} for every file under root."""
    out: Dict[str, str] = {}
    if not root.is_dir():
        return out
    for p in sorted(root.rglob("*")):
        if p.is_file() and not p.name.endswith(PART_SUFFIX):
            out[p.relative_to(root).as_posix()] = sha256_file(p)
    return out


class Reconciler:
    def __init__(self, store: ObjectStore, policy: FailurePolicy = FailurePolicy.COLLECT):
        self.store = store
        self.policy = FailurePolicy(policy)

    # -------------------------
    # Remote side
    # -------------------------
    def remote_listing(self, prefix: str) -> Dict[str, ObjectInfo]:
        """Return {relative path: ObjectInfo} for the complete listing under prefix."""
        base = prefix.strip("/")
        out: Dict[str, ObjectInfo] = {}
        for info in self.store.list(base):
            rel = info.key[len(base) + 1:] if base else info.key
            if not rel:
                continue
            if not _safe_rel(rel):
                logger.warning("Skipping remote key outside prefix layout: %s", info.key)
                continue
            out[rel] = info
        return out

    def remote_checksum(self, info: ObjectInfo) -> str:
        if info.checksum:
            return info.checksum
        head = self.store.head(info.key)
        if head.checksum:
            info.checksum = head.checksum
            return head.checksum
        # Object written without checksum metadata: hash the body once.
        logger.debug("No checksum metadata on %s; hashing body", info.key)
        info.checksum = sha256_bytes(self.store.get(info.key))
        return info.checksum

    # -------------------------
    # Public API
    # -------------------------
    def push(self, local_path: Path | str, remote_prefix: str) -> SyncReport:
        local_root = Path(local_path)
        report = SyncReport(direction="push", source=str(local_root), destination=remote_prefix)

        src = local_state(local_root)
        dst = self.remote_listing(remote_prefix)

        def upload(rel: str) -> int:
            data = (local_root / rel).read_bytes()
            digest = sha256_bytes(data)
            if digest != src[rel]:
                raise DataIntegrityError(f"{rel} changed while pushing")
            self.store.put(join_key(remote_prefix, rel), data, metadata={CHECKSUM_KEY: digest})
            return len(data)

        def remove(rel: str) -> int:
            self.store.delete(dst[rel].key)
            return 0

        self._run(
            report,
            src_paths=src,
            dst_paths=dst,
            same=lambda rel: self.remote_checksum(dst[rel]) == src[rel],
            copy=upload,
            remove=remove,
        )
        return report

    def pull(self, remote_prefix: str, local_path: Path | str) -> SyncReport:
        local_root = Path(local_path)
        local_root.mkdir(parents=True, exist_ok=True)
        report = SyncReport(direction="pull", source=remote_prefix, destination=str(local_root))

        src = self.remote_listing(remote_prefix)
        dst = local_state(local_root)

        def download(rel: str) -> int:
            expected = self.remote_checksum(src[rel])
            # One fresh retry on a checksum mismatch, never a resume.
            for attempt in (1, 2):
                data = self.store.get(src[rel].key)
                if sha256_bytes(data) == expected:
                    atomic_write(local_root / rel, data)
                    return len(data)
                logger.warning("Checksum mismatch on %s (attempt %d)", src[rel].key, attempt)
            raise DataIntegrityError(f"Checksum mismatch after retry: {src[rel].key}")

        def remove(rel: str) -> int:
            try:
                (local_root / rel).unlink()
            except FileNotFoundError:
                pass
            return 0

        self._run(
            report,
            src_paths=src,
            dst_paths=dst,
            same=lambda rel: self.remote_checksum(src[rel]) == dst[rel],
            copy=download,
            remove=remove,
        )
        return report

    # -------------------------
    # Diff + apply
    # -------------------------
    def _run(
        self,
        report: SyncReport,
        *,
        src_paths: Dict,
        dst_paths: Dict,
        same: Callable[[str], bool],
        copy: Callable[[str], int],
        remove: Callable[[str], int],
    ) -> None:
        failures: List[Tuple[str, BaseException]] = []

        def attempt(rel: str, action: Callable[[], None]) -> None:
            try:
                action()
            except NotFoundError as e:
                # Vanished between listing and transfer: the next pass settles it.
                logger.warning("%s skipped %s: %s", report.direction, rel, e)
            except Exception as e:
                if self.policy is FailurePolicy.STRICT:
                    report.failed.append(rel)
                    logger.error("%s aborted on %s: %s", report.direction, rel, e)
                    raise
                logger.error("%s failed for %s: %s", report.direction, rel, e)
                report.failed.append(rel)
                failures.append((rel, e))

        for rel in sorted(src_paths):
            if rel not in dst_paths:
                def do_copy(rel=rel):
                    report.bytes_transferred += copy(rel)
                    report.copied.append(rel)
                attempt(rel, do_copy)
            else:
                def do_compare(rel=rel):
                    if same(rel):
                        report.unchanged.append(rel)
                    else:
                        report.bytes_transferred += copy(rel)
                        report.updated.append(rel)
                attempt(rel, do_compare)

        for rel in sorted(set(dst_paths) - set(src_paths)):
            def do_remove(rel=rel):
                remove(rel)
                report.deleted.append(rel)
            attempt(rel, do_remove)

        logger.info(
            "%s %s -> %s: %s", report.direction, report.source, report.destination, report.summary()
        )
        if failures:
            raise SyncError(failures, report=report)

