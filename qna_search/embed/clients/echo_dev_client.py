# Deterministic embedder for local dev and testing without a model download.
# Hashes character 1-3 grams into a fixed number of buckets.

from __future__ import annotations

import hashlib
from typing import Sequence

import numpy as np


class EchoDevEmbedder:
    def __init__(self, dim: int = 512):
        self.model = "echo-dev"
        self.dim = dim

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        padded = f" {text.lower().strip()} "
        for n in (1, 2, 3):
            for i in range(len(padded) - n + 1):
                gram = padded[i : i + n]
                h = int.from_bytes(hashlib.md5(gram.encode("utf-8")).digest()[:4], "little")
                vec[h % self.dim] += 1.0
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm else vec

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            raise ValueError("embed() called with no texts")
        return np.vstack([self._vector(t) for t in texts]).astype(np.float32)
