# Embedding client protocol shared by the pipeline and the retriever.

from __future__ import annotations

from typing import List, Protocol, Sequence

import numpy as np


class Embedder(Protocol):
    """embed(texts) -> (N, dim) float32 array, same order and length as texts."""

    model: str
    dim: int

    def embed(self, texts: Sequence[str]) -> np.ndarray: ...


def embed_in_batches(embedder: Embedder, texts: Sequence[str], batch_size: int = 128) -> np.ndarray:
    """Call the embedder once per sub-batch of at most batch_size texts, preserving order."""
    if not texts:
        raise ValueError("embed_in_batches() called with no texts")
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    parts: List[np.ndarray] = []
    for i in range(0, len(texts), batch_size):
        chunk = list(texts[i : i + batch_size])
        vecs = np.asarray(embedder.embed(chunk), dtype=np.float32)
        if vecs.shape[0] != len(chunk):
            raise ValueError(f"Embedder returned {vecs.shape[0]} vectors for {len(chunk)} texts")
        parts.append(vecs)
    return np.vstack(parts).astype(np.float32, copy=False)
