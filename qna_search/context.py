# Explicit service context: every collaborator the pipeline, the retriever and
# the HTTP layer need, built once from Settings and threaded through calls.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

from .embed import Embedder, build_embedder
from .index.codec import CONTENTS_MAP_NAME, build_codec
from .index.manager import INDEX_SUFFIX, META_SUFFIX, IndexManager
from .ingest.answers import AnswerMap
from .ingest.staging import StagingIngestor
from .metadata import DB_FILENAME, MetadataStore
from .settings import Settings
from .storage.object_store import LocalObjectStore, ObjectStore, S3ObjectStore
from .storage.reconcile import FailurePolicy, Reconciler, SyncReport

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    settings: Settings
    store: ObjectStore
    reconciler: Reconciler
    indexes: IndexManager
    codec: object
    metadata: MetadataStore
    embedder: Embedder
    ingestor: StagingIngestor
    answers: AnswerMap
    # Serializes pull / push against local writes to the synced roots.
    sync_lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def sync_roots(self) -> Dict[str, Path]:
        """Remote prefix -> local directory for every mirrored root."""
        s = self.settings
        return {"staging": s.staging_dir, "processed": s.processed_dir, "index": s.index_dir}

    def refresh_from_pull(self, report: SyncReport) -> None:
        """Drop in-memory state whose backing file a pull just replaced."""
        changed: Iterable[str] = report.copied + report.updated + report.deleted
        groups = set()
        for rel in changed:
            name = Path(rel).name
            if name == DB_FILENAME:
                logger.info("Metadata DB changed on pull; reopening")
                self.metadata.reopen()
            elif name == CONTENTS_MAP_NAME:
                logger.info("Side-map changed on pull; reloading")
                self.codec.reload()
            elif name.endswith(META_SUFFIX):
                groups.add(name[: -len(META_SUFFIX)])
            elif name.endswith(INDEX_SUFFIX):
                groups.add(name[: -len(INDEX_SUFFIX)])
        for group_id in sorted(groups):
            logger.info("Index '%s' changed on pull; invalidating handle", group_id)
            self.indexes.invalidate(group_id)

    def close(self) -> None:
        self.metadata.close()


def build_store(settings: Settings) -> ObjectStore:
    if settings.OBJECT_STORE == "s3":
        return S3ObjectStore(
            settings.BUCKET,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
            timeout=settings.TIMEOUT_SECONDS,
            attempts=settings.RETRY_ATTEMPTS,
        )
    return LocalObjectStore(settings.REMOTE_ROOT)


def build_context(
    settings: Settings,
    *,
    store: Optional[ObjectStore] = None,
    embedder: Optional[Embedder] = None,
) -> ServiceContext:
    for d in (settings.staging_dir, settings.processed_dir, settings.index_dir):
        d.mkdir(parents=True, exist_ok=True)
    store = store if store is not None else build_store(settings)
    codec = build_codec(settings.ID_SCHEME, settings.index_dir)
    return ServiceContext(
        settings=settings,
        store=store,
        reconciler=Reconciler(store, policy=FailurePolicy(settings.SYNC_FAILURE_POLICY)),
        indexes=IndexManager(settings.index_dir, dim=settings.EMBED_DIM, capacity=settings.INDEX_CAPACITY),
        codec=codec,
        metadata=MetadataStore(settings.index_dir / DB_FILENAME, timeout=settings.TIMEOUT_SECONDS),
        embedder=embedder if embedder is not None else build_embedder(settings),
        ingestor=StagingIngestor(
            settings.staging_dir,
            settings.processed_dir,
            settings.STAGING_EXTENSION,
            validate_tag=codec.validate,
        ),
        answers=AnswerMap.from_yaml(settings.ANSWERS_PATH),
    )
