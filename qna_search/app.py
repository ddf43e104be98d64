# ============================================================
# QnA Search FastAPI App
# ------------------------------------------------------------
# This app wires everything together:
#   - Startup: pull from the object store, run the default group's
#     pipeline, then start serving queries
#   - Per-group indexes, metadata lookups, staging ingestion
#   - Shutdown: push local state back to the object store
# ============================================================

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .context import ServiceContext, build_context
from .errors import (
    CapacityExceeded,
    DataIntegrityError,
    DomainError,
    IndexCorrupt,
    NotFoundError,
    PipelineBusy,
    QnaSearchError,
    SyncError,
    TransientIOError,
)
from .ingest.pipeline import Pipeline
from .search import Retriever
from .settings import Settings, configure_logging, settings as default_settings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------
# 📦 Pydantic models
# ------------------------------------------------------------
class UpdateRequest(BaseModel):
    group: Optional[str] = None


class EmbedRequest(BaseModel):
    group: Optional[str] = None
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    tag: int = 0


class JsonEntry(BaseModel):
    group: Optional[str] = None
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    tag: int = 0


class DeleteRequest(BaseModel):
    group: Optional[str] = None
    question: str = Field(min_length=1)


class RebuildRequest(BaseModel):
    group: Optional[str] = None
    capacity: Optional[int] = Field(default=None, gt=0)


class MatchItem(BaseModel):
    question: str
    answer: str
    distance: float


# ------------------------------------------------------------
# 🧭 Error mapping
# ------------------------------------------------------------
_STATUS = [
    (PipelineBusy, 409),
    (NotFoundError, 404),
    (DomainError, 400),
    (CapacityExceeded, 507),
    (IndexCorrupt, 500),
    (DataIntegrityError, 500),
    (TransientIOError, 503),
    (SyncError, 502),
]


def _status_for(exc: QnaSearchError) -> int:
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def create_app(
    settings: Optional[Settings] = None,
    ctx: Optional[ServiceContext] = None,
    run_startup_pipeline: Optional[bool] = None,
) -> FastAPI:
    settings = settings or (ctx.settings if ctx is not None else default_settings)
    if run_startup_pipeline is None:
        run_startup_pipeline = settings.SYNC_ON_STARTUP

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        context = ctx or build_context(settings)
        pipeline = Pipeline(context)
        app.state.ctx = context
        app.state.pipeline = pipeline
        app.state.retriever = Retriever(context)

        if run_startup_pipeline:
            # Queries are only served once the first full run completed.
            logger.info("LOAD DATA FROM OBJECT STORE")
            result = pipeline.run(settings.DEFAULT_GROUP)
            logger.info("SERVER READY: %d record(s) ingested for '%s'", result.records, result.group_id)
        yield
        logger.info("Process is about to exit. Saving data to the object store...")
        try:
            pipeline.push_all()
        except QnaSearchError as e:
            logger.error("Failed to save data on shutdown: %s", e)
        context.close()

    app = FastAPI(title="QnA Search API", version="0.3", lifespan=lifespan)

    @app.exception_handler(QnaSearchError)
    async def _qna_error(request: Request, exc: QnaSearchError):
        return JSONResponse(status_code=_status_for(exc), content={"error": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    def _group(value: Optional[str]) -> str:
        group = value or settings.DEFAULT_GROUP
        try:
            app.state.ctx.indexes.path_for(group)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return group

    def _push_index() -> bool:
        try:
            app.state.pipeline.push_index()
            return True
        except QnaSearchError as e:
            logger.error("Error saving index to the object store: %s", e)
            return False

    # ------------------------------------------------------------
    # 🔁 Bulk: embed everything in staging for a group
    # ------------------------------------------------------------
    @app.post("/search/update")
    def update(req: Optional[UpdateRequest] = None):
        group = _group(req.group if req else None)
        result = app.state.pipeline.run(group)
        return {
            "message": f"{group} Embeddings Updated",
            "records": result.records,
            "files": result.files,
            "rejected": result.rejected,
        }

    # ------------------------------------------------------------
    # ➕ Single object: add one question/answer pair
    # ------------------------------------------------------------
    @app.post("/api/embed")
    def embed(req: EmbedRequest):
        group = _group(req.group)
        keys = app.state.pipeline.add_entries(group, [req.question], [req.answer], [req.tag])
        synced = _push_index()
        return {"message": f"Embedding with text '{req.question}' added to {group}", "key": keys[0], "synced": synced}

    @app.post("/api/json")
    def embed_json(entries: List[JsonEntry]):
        if not entries:
            raise HTTPException(status_code=400, detail="Missing entries")
        grouped: "OrderedDict[str, List[JsonEntry]]" = OrderedDict()
        for e in entries:
            grouped.setdefault(_group(e.group), []).append(e)
        added: Dict[str, int] = {}
        for group, items in grouped.items():
            keys = app.state.pipeline.add_entries(
                group,
                [e.question for e in items],
                [e.answer for e in items],
                [e.tag for e in items],
            )
            added[group] = len(keys)
        synced = _push_index()
        return {"message": "Embeddings added", "added": added, "synced": synced}

    # ------------------------------------------------------------
    # 🔎 Query
    # ------------------------------------------------------------
    @app.get("/api/match", response_model=List[MatchItem])
    def match(
        sentence: str = Query(..., min_length=1, description="Text to match"),
        group: Optional[str] = None,
        neighbors: Optional[int] = Query(default=None, gt=0),
    ):
        g = _group(group)
        k = neighbors or settings.DEFAULT_NEIGHBORS
        result = app.state.retriever.retrieve(sentence, g, k)
        return [MatchItem(question=m.question, answer=m.answer, distance=m.distance) for m in result.matches]

    # ------------------------------------------------------------
    # 🗑️ Delete
    # ------------------------------------------------------------
    @app.delete("/api/delete")
    def delete(req: DeleteRequest):
        group = _group(req.group)
        row_id = app.state.pipeline.delete_entry(group, req.question)
        if row_id is None:
            return {"success": False, "message": f"No embedding with text '{req.question}' in {group}"}
        synced = _push_index()
        return {"success": True, "message": f"Embedding with text '{req.question}' deleted from {group}", "synced": synced}

    # ------------------------------------------------------------
    # 💾 Maintenance
    # ------------------------------------------------------------
    @app.post("/api/save")
    def save():
        reports = app.state.pipeline.push_all()
        return {"message": "Data Saved", "pushed": {k: r.summary() for k, r in reports.items()}}

    @app.post("/api/rebuild")
    def rebuild(req: RebuildRequest):
        group = _group(req.group)
        ctx: ServiceContext = app.state.ctx
        if not ctx.indexes.exists(group):
            raise HTTPException(status_code=404, detail="Indexing does not exist")
        with ctx.sync_lock:
            handle = ctx.indexes.rebuild(ctx.indexes.ensure(group), capacity=req.capacity)
        synced = _push_index()
        return {"stats": ctx.indexes.stats(handle), "synced": synced}

    @app.get("/api/stats")
    def stats(group: Optional[str] = None) -> Dict[str, Any]:
        g = _group(group)
        ctx: ServiceContext = app.state.ctx
        if not ctx.indexes.exists(g):
            raise HTTPException(status_code=404, detail="Indexing does not exist")
        out = ctx.indexes.stats(ctx.indexes.ensure(g))
        out["rows"] = ctx.metadata.count(g)
        return out

    # ------------------------------------------------------------
    # 🧭 Health checks
    # ------------------------------------------------------------
    @app.get("/healthz")
    def healthz():
        return {
            "ok": True,
            "env": settings.ENV,
            "debug": settings.DEBUG,
            "app": settings.app_name,
        }

    @app.get("/health")
    def health():
        return {"status": "ok", "env": settings.ENV}

    @app.get("/")
    def hello():
        return {"message": "QnA search service running."}

    return app


app = create_app()
