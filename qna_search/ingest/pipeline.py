# ================================================================
# pipeline.py
# ----------------------------------------------------------------
# Orchestrates one run for a group:
#   pull (staging, processed, index) → collect staging → embed
#   → metadata rows + index batch → persist → relocate files → push
#
# Single-flight: a second run for a group already in flight raises
# PipelineBusy. Runs for different groups queue behind each other because
# they consume the same staging directory.
#
# Failures in embedding, capacity, key integrity or persistence abort before
# relocation and before push, so local state that did not make it into the
# index is never propagated upstream.
# ================================================================

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from ..context import ServiceContext
from ..embed import embed_in_batches
from ..errors import NotFoundError, PipelineBusy, SyncError
from ..storage.reconcile import SyncReport

logger = logging.getLogger(__name__)


class SingleFlight:
    """Per-key non-blocking claim: the second caller is rejected, never interleaved."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._running: set = set()

    @contextmanager
    def claim(self, key: str) -> Iterator[None]:
        with self._guard:
            if key in self._running:
                raise PipelineBusy(f"Pipeline for '{key}' is already running")
            self._running.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._running.discard(key)

    def is_running(self, key: str) -> bool:
        with self._guard:
            return key in self._running


@dataclass
class PipelineResult:
    group_id: str
    records: int = 0
    keys: List[int] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    pulled: Dict[str, dict] = field(default_factory=dict)
    pushed: Dict[str, dict] = field(default_factory=dict)
    elapsed: float = 0.0


class Pipeline:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.flight = SingleFlight()
        self._staging_lock = threading.Lock()

    # -------------------------
    # Remote sync
    # -------------------------
    def pull_all(self) -> Dict[str, SyncReport]:
        reports: Dict[str, SyncReport] = {}
        with self.ctx.sync_lock:
            for prefix, local in self.ctx.sync_roots().items():
                try:
                    reports[prefix] = self.ctx.reconciler.pull(prefix, local)
                except SyncError as e:
                    # Files that did land still replace what handles were loaded from.
                    if prefix == "index" and e.report is not None:
                        self.ctx.refresh_from_pull(e.report)
                    raise
                if prefix == "index":
                    self.ctx.refresh_from_pull(reports[prefix])
        return reports

    def push_all(self) -> Dict[str, SyncReport]:
        reports: Dict[str, SyncReport] = {}
        with self.ctx.sync_lock:
            for prefix, local in self.ctx.sync_roots().items():
                reports[prefix] = self.ctx.reconciler.push(local, prefix)
        return reports

    def push_index(self) -> SyncReport:
        with self.ctx.sync_lock:
            return self.ctx.reconciler.push(self.ctx.settings.index_dir, "index")

    # -------------------------
    # Writes shared by the pipeline and the HTTP layer
    # -------------------------
    def add_entries(
        self,
        group_id: str,
        questions: Sequence[str],
        answers: Sequence[str],
        tags: Optional[Sequence[int]] = None,
    ) -> List[int]:
        """Embed, insert metadata rows and add index points for one group; returns index keys."""
        ctx = self.ctx
        n = len(questions)
        if n != len(answers):
            raise ValueError("questions and answers must have the same length")
        if not n:
            return []
        tags = list(tags) if tags is not None else [0] * n
        if len(tags) != n:
            raise ValueError("tags must match questions in length")
        for tag in tags:
            ctx.codec.validate(tag)

        handle = ctx.indexes.ensure(group_id)
        # Fail before any metadata write when the batch cannot fit.
        ctx.indexes.check_capacity(handle, n)

        t0 = time.time()
        vectors = embed_in_batches(ctx.embedder, list(questions), ctx.settings.EMBED_BATCH_SIZE)
        logger.info("Embedded %d text(s) in %.2fs, shape=%s", n, time.time() - t0, vectors.shape)

        with ctx.sync_lock:
            # Re-fetch: a pull may have replaced the handle while embedding ran.
            handle = ctx.indexes.ensure(group_id)
            ctx.indexes.check_capacity(handle, n)
            row_ids = ctx.metadata.insert_many(group_id, list(zip(questions, answers)))
            try:
                keys = [
                    ctx.codec.assign(group_id, rid, q, tag)
                    for rid, q, tag in zip(row_ids, questions, tags)
                ]
                ctx.indexes.add_batch(handle, vectors, keys)
                ctx.indexes.persist(handle)
                ctx.codec.save()
            except Exception:
                logger.error("Index write failed for '%s'; removing %d new row(s)", group_id, len(row_ids))
                ctx.metadata.delete_many(row_ids)
                ctx.codec.reload()
                try:
                    ctx.indexes.discard(handle)
                except Exception as e:
                    logger.error("Could not reload '%s' after failed write: %s", group_id, e)
                raise
        logger.info("Added %d point(s) to '%s'", len(keys), group_id)
        return keys

    def delete_entry(self, group_id: str, question: str) -> Optional[int]:
        """Tombstone the index key of a question and delete its row. None when nothing matched."""
        ctx = self.ctx
        if not ctx.indexes.exists(group_id):
            return None
        row = ctx.metadata.find_by_question(question, group_id)
        if row is None:
            return None
        key = ctx.codec.key_for_row(group_id, row.id)
        with ctx.sync_lock:
            handle = ctx.indexes.ensure(group_id)
            # Tombstone first: a row without a live key is harmless, the reverse is not.
            if key is not None and ctx.indexes.tombstone(handle, key):
                ctx.indexes.persist(handle)
                ctx.codec.forget(group_id, key)
                ctx.codec.save()
            try:
                ctx.metadata.delete_by_id(row.id)
            except NotFoundError:
                pass
        logger.info("Embedding deleted: '%s' (row=%d, key=%s)", group_id, row.id, key)
        return row.id

    # -------------------------
    # Full run
    # -------------------------
    def run(self, group_id: Optional[str] = None) -> PipelineResult:
        group_id = group_id or self.ctx.settings.DEFAULT_GROUP
        self.ctx.indexes.path_for(group_id)  # validates the name
        with self.flight.claim(group_id), self._staging_lock:
            t0 = time.time()
            result = PipelineResult(group_id=group_id)

            result.pulled = {k: r.summary() for k, r in self.pull_all().items()}

            batch = self.ctx.ingestor.collect()
            result.rejected = [str(p) for p, _ in batch.rejected]
            if batch.records:
                answers = [self.ctx.answers.answer_for(t) for t in batch.tags]
                result.keys = self.add_entries(group_id, batch.contents, answers, batch.tags)
                result.records = len(batch.records)
            else:
                logger.info("No staged records for '%s'", group_id)
            if batch.files:
                # Files holding `[]` parsed cleanly too and are consumed.
                unmoved = self.ctx.ingestor.relocate(batch.files)
                result.files = [p.name for p in batch.files if p not in unmoved]

            result.pushed = {k: r.summary() for k, r in self.push_all().items()}
            result.elapsed = time.time() - t0
            logger.info("Pipeline '%s' complete: %d record(s) in %.2fs", group_id, result.records, result.elapsed)
            return result
