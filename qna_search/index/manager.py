# Per-group FAISS index lifecycle.
#
# Each group owns one file `{index_dir}/{group_id}.idx` (FAISS IndexIDMap2 over
# IndexFlatIP, cosine on L2-normalized vectors) plus a JSON sidecar
# `{group_id}.idx.meta.json` holding dimension, capacity and tombstoned keys.
#
# The manager keeps a registry (group_id -> handle). Every handle carries
# a ReadWriteLock: searches share it; add / tombstone / persist / rebuild /
# discard take it exclusively.

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from ..errors import CapacityExceeded, DataIntegrityError, IndexCorrupt
from ..storage.object_store import atomic_write
from .locks import ReadWriteLock

logger = logging.getLogger(__name__)

INDEX_SUFFIX = ".idx"
META_SUFFIX = ".idx.meta.json"


def _import_faiss():
    try:
        import faiss  # type: ignore
        return faiss
    except Exception as e:
        raise RuntimeError(
            "FAISS is required for vector indexing. Install `faiss-cpu` (or `faiss-gpu`) "
            "e.g. `pip install faiss-cpu`."
        ) from e


def _l2_normalize_rows(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    if x.ndim != 2:
        raise ValueError("Expected 2D array for embeddings")
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms = np.maximum(norms, eps)
    return x / norms


@dataclass
class SearchHit:
    key: int
    distance: float


@dataclass
class IndexHandle:
    group_id: str
    path: Path
    dim: int
    capacity: int
    index: object
    keys: Set[int] = field(default_factory=set)
    tombstones: Set[int] = field(default_factory=set)
    dirty: bool = False
    lock: ReadWriteLock = field(default_factory=ReadWriteLock, repr=False)

    @property
    def meta_path(self) -> Path:
        return self.path.with_name(self.path.name[: -len(INDEX_SUFFIX)] + META_SUFFIX)

    @property
    def ntotal(self) -> int:
        return int(self.index.ntotal)

    @property
    def live_count(self) -> int:
        return len(self.keys) - len(self.tombstones)


class IndexManager:
    """Create / load / mutate / persist the per-group indexes."""

    def __init__(self, index_dir: Path | str, dim: int, capacity: int):
        self.index_dir = Path(index_dir)
        self.dim = int(dim)
        self.capacity = int(capacity)
        self._handles: Dict[str, IndexHandle] = {}
        self._registry_lock = threading.Lock()

    # -------------------------
    # Registry
    # -------------------------
    def path_for(self, group_id: str) -> Path:
        if not group_id or "/" in group_id or "\\" in group_id or group_id.startswith("."):
            raise ValueError(f"Invalid group id: {group_id!r}")
        return self.index_dir / f"{group_id}{INDEX_SUFFIX}"

    def exists(self, group_id: str) -> bool:
        return group_id in self._handles or self.path_for(group_id).exists()

    def groups(self) -> List[str]:
        on_disk = {p.name[: -len(INDEX_SUFFIX)] for p in self.index_dir.glob(f"*{INDEX_SUFFIX}")}
        return sorted(on_disk | set(self._handles))

    def ensure(self, group_id: str) -> IndexHandle:
        """Return the registered handle, loading the file or creating an empty index."""
        with self._registry_lock:
            handle = self._handles.get(group_id)
            if handle is None:
                path = self.path_for(group_id)
                if path.exists():
                    logger.info("%s Static Index File Exists - Loading File", path)
                    handle = self._load(group_id, path)
                else:
                    logger.info("%s No Index File - Building From Scratch", path)
                    handle = self._create(group_id, path, self.capacity)
                self._handles[group_id] = handle
            return handle

    def invalidate(self, group_id: str) -> None:
        """Forget the cached handle so the next ensure() re-reads the file."""
        with self._registry_lock:
            handle = self._handles.pop(group_id, None)
        if handle is not None:
            # Wait for in-flight readers/writers on the old handle.
            with handle.lock.write():
                pass

    def invalidate_all(self) -> None:
        for group_id in list(self._handles):
            self.invalidate(group_id)

    # -------------------------
    # Create / load
    # -------------------------
    def _new_faiss(self, dim: int):
        faiss = _import_faiss()
        return faiss.IndexIDMap2(faiss.IndexFlatIP(dim))

    def _create(self, group_id: str, path: Path, capacity: int) -> IndexHandle:
        return IndexHandle(
            group_id=group_id,
            path=path,
            dim=self.dim,
            capacity=capacity,
            index=self._new_faiss(self.dim),
        )

    def _load(self, group_id: str, path: Path) -> IndexHandle:
        faiss = _import_faiss()
        try:
            index = faiss.read_index(str(path))
        except Exception as e:
            raise IndexCorrupt(f"Cannot read index {path}: {e}") from e
        if not hasattr(index, "id_map"):
            raise IndexCorrupt(f"Index {path} does not carry an id map")

        meta = self._read_meta(path)
        dim = int(meta.get("dim", index.d))
        capacity = int(meta.get("capacity", self.capacity))
        if index.d != dim or dim != self.dim:
            raise IndexCorrupt(f"Index {path} has dim {index.d}, expected {self.dim}")

        keys = {int(k) for k in faiss.vector_to_array(index.id_map)}
        if len(keys) != index.ntotal:
            raise IndexCorrupt(f"Index {path} holds duplicate keys")
        if index.ntotal > capacity:
            raise IndexCorrupt(f"Index {path} holds {index.ntotal} points over capacity {capacity}")
        tombstones = {int(k) for k in meta.get("tombstones", [])} & keys
        return IndexHandle(
            group_id=group_id,
            path=path,
            dim=dim,
            capacity=capacity,
            index=index,
            keys=keys,
            tombstones=tombstones,
        )

    def _read_meta(self, path: Path) -> Dict:
        meta_path = path.with_name(path.name[: -len(INDEX_SUFFIX)] + META_SUFFIX)
        if not meta_path.exists():
            return {}
        try:
            with open(meta_path, "r", encoding="utf-8") as fh:
                meta = json.load(fh)
        except (OSError, ValueError) as e:
            raise IndexCorrupt(f"Cannot read index sidecar {meta_path}: {e}") from e
        if not isinstance(meta, dict):
            raise IndexCorrupt(f"Index sidecar {meta_path} is not a JSON object")
        return meta

    # -------------------------
    # Mutations (exclusive)
    # -------------------------
    def check_capacity(self, handle: IndexHandle, n: int) -> None:
        if handle.ntotal + n > handle.capacity:
            raise CapacityExceeded(handle.group_id, handle.capacity, n)

    def add(self, handle: IndexHandle, vector: Sequence[float], key: int) -> None:
        self.add_batch(handle, [vector], [key])

    def add_batch(self, handle: IndexHandle, vectors, keys: Sequence[int]) -> None:
        """Add all points or none. Call persist() once afterwards."""
        embs = np.asarray(vectors, dtype=np.float32)
        if embs.ndim == 1:
            embs = embs.reshape(1, -1)
        if embs.ndim != 2 or embs.shape[1] != handle.dim:
            raise ValueError(f"Expected vectors of shape (N, {handle.dim}), got {embs.shape}")
        if embs.shape[0] != len(keys):
            raise ValueError("len(keys) must match number of rows in vectors")
        if not len(keys):
            return
        ids = np.asarray([int(k) for k in keys], dtype=np.int64)

        with handle.lock.write():
            if len(set(ids.tolist())) != len(ids):
                raise DataIntegrityError(f"Duplicate keys inside one batch for '{handle.group_id}'")
            clash = handle.keys.intersection(ids.tolist())
            if clash:
                raise DataIntegrityError(
                    f"Keys already present in '{handle.group_id}': {sorted(clash)[:10]}"
                )
            self.check_capacity(handle, len(ids))
            handle.index.add_with_ids(np.ascontiguousarray(_l2_normalize_rows(embs)), ids)
            handle.keys.update(ids.tolist())
            handle.dirty = True

    def tombstone(self, handle: IndexHandle, key: int) -> bool:
        """Soft-delete a key. Returns False when the key is unknown or already deleted."""
        key = int(key)
        with handle.lock.write():
            if key not in handle.keys or key in handle.tombstones:
                return False
            handle.tombstones.add(key)
            handle.dirty = True
            return True

    def persist(self, handle: IndexHandle) -> bool:
        """Write the index and its sidecar atomically. Returns False when nothing changed."""
        with handle.lock.write():
            return self._persist_locked(handle)

    def _persist_locked(self, handle: IndexHandle) -> bool:
        if not handle.dirty and handle.path.exists():
            return False
        faiss = _import_faiss()
        buf = faiss.serialize_index(handle.index)
        meta = {
            "dim": handle.dim,
            "capacity": handle.capacity,
            "metric": "cosine",
            "tombstones": sorted(handle.tombstones),
        }
        atomic_write(handle.meta_path, json.dumps(meta, sort_keys=True).encode("utf-8"))
        atomic_write(handle.path, np.asarray(buf, dtype=np.uint8).tobytes())
        handle.dirty = False
        logger.info("Saved index: %s (ntotal=%d, tombstones=%d)", handle.path, handle.ntotal, len(handle.tombstones))
        return True

    def discard(self, handle: IndexHandle) -> IndexHandle:
        """Drop unsaved changes: the next ensure() reloads from disk."""
        if handle.dirty:
            logger.warning("Discarding unsaved changes to '%s'", handle.group_id)
        self.invalidate(handle.group_id)
        return self.ensure(handle.group_id)

    def rebuild(self, handle: IndexHandle, capacity: Optional[int] = None) -> IndexHandle:
        """Compact away tombstoned entries, optionally with a new capacity, and persist."""
        faiss = _import_faiss()
        with handle.lock.write():
            ids = faiss.vector_to_array(handle.index.id_map).astype(np.int64)
            if len(ids):
                flat = faiss.downcast_index(handle.index.index)
                vecs = flat.reconstruct_n(0, flat.ntotal)
            else:
                vecs = np.empty((0, handle.dim), dtype=np.float32)
            keep = np.array([int(k) not in handle.tombstones for k in ids], dtype=bool)
            new_capacity = int(capacity or handle.capacity)
            if int(keep.sum()) > new_capacity:
                raise CapacityExceeded(handle.group_id, new_capacity, int(keep.sum()))

            index = self._new_faiss(handle.dim)
            if keep.any():
                index.add_with_ids(np.ascontiguousarray(vecs[keep]), ids[keep])
            dropped = len(handle.tombstones)
            handle.index = index
            handle.keys = {int(k) for k in ids[keep]}
            handle.tombstones = set()
            handle.capacity = new_capacity
            handle.dirty = True
            self._persist_locked(handle)
        logger.info("Rebuilt '%s': dropped %d tombstone(s), capacity=%d", handle.group_id, dropped, new_capacity)
        return handle

    # -------------------------
    # Queries (shared)
    # -------------------------
    def search(self, handle: IndexHandle, query_vector, k: int) -> List[SearchHit]:
        """Up to k nearest live entries, ascending cosine distance."""
        if k <= 0:
            return []
        q = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
        if q.shape[1] != handle.dim:
            raise ValueError(f"Query dim {q.shape[1]} != index dim {handle.dim}")
        q = _l2_normalize_rows(q)
        with handle.lock.read():
            if handle.ntotal == 0:
                return []
            # Oversample by the tombstone count so filtering still leaves k hits.
            fetch = min(handle.ntotal, k + len(handle.tombstones))
            D, I = handle.index.search(np.ascontiguousarray(q), fetch)
            hits: List[SearchHit] = []
            for sim, key in zip(D[0], I[0]):
                key = int(key)
                if key < 0 or key in handle.tombstones:
                    continue
                hits.append(SearchHit(key=key, distance=float(1.0 - sim)))
                if len(hits) == k:
                    break
        hits.sort(key=lambda h: h.distance)
        return hits

    def stats(self, handle: IndexHandle) -> Dict[str, object]:
        with handle.lock.read():
            return {
                "group": handle.group_id,
                "path": str(handle.path),
                "dim": handle.dim,
                "capacity": handle.capacity,
                "points": handle.ntotal,
                "live": handle.live_count,
                "tombstones": len(handle.tombstones),
                "dirty": handle.dirty,
            }

    def live_keys(self, handle: IndexHandle) -> Iterable[int]:
        with handle.lock.read():
            return sorted(handle.keys - handle.tombstones)
