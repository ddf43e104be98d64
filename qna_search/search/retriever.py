# Query path: embed the query → search the group's index → resolve each key
# to its metadata row → ordered (question, answer) list.

from __future__ import annotations

import logging
import time
from typing import List

from ..context import ServiceContext
from ..errors import DataIntegrityError, NotFoundError
from .types import Match, SearchResult

logger = logging.getLogger(__name__)


class Retriever:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    def retrieve(self, query: str, group_id: str, k: int = 1) -> SearchResult:
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")
        if not self.ctx.indexes.exists(group_id):
            raise NotFoundError(f"Indexing does not exist: {group_id}")

        handle = self.ctx.indexes.ensure(group_id)
        t0 = time.time()
        qvec = self.ctx.embedder.embed([query])[0]
        hits = self.ctx.indexes.search(handle, qvec, k)
        logger.debug("Search '%s' k=%d took %.1f ms", group_id, k, (time.time() - t0) * 1000)

        matches: List[Match] = []
        for hit in hits:
            row_id = self.ctx.codec.resolve(group_id, hit.key)
            if row_id is None:
                logger.warning("Key %d in '%s' has no side-map entry", hit.key, group_id)
                continue
            try:
                row = self.ctx.metadata.get_by_id(row_id)
            except NotFoundError:
                logger.warning("Key %d in '%s' points at missing row %d", hit.key, group_id, row_id)
                continue
            if row.group_id != group_id:
                raise DataIntegrityError(
                    f"Key {hit.key} in '{group_id}' resolves to row {row_id} of group '{row.group_id}'"
                )
            matches.append(
                Match(question=row.question, answer=row.answer, key=hit.key, row_id=row.id, distance=hit.distance)
            )
        return SearchResult(query=query, group_id=group_id, matches=matches)
