# Ollama /api/embed client. Transient HTTP failures are retried via tenacity.

from __future__ import annotations

from typing import Sequence

import numpy as np
import requests

from ...errors import PermanentIOError, TransientIOError
from ...storage.retry import call_with_retry


class OllamaEmbedder:
    def __init__(
        self,
        model: str,
        dim: int,
        host: str = "http://localhost:11434",
        timeout: float = 30.0,
        attempts: int = 5,
        backoff: float = 0.5,
    ):
        self.model = model
        self.dim = dim
        self.host = host.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff

    def _post(self, texts: Sequence[str]) -> np.ndarray:
        url = f"{self.host}/api/embed"
        try:
            resp = requests.post(url, json={"model": self.model, "input": list(texts)}, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientIOError(f"Ollama unreachable at {url}: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientIOError(f"Ollama returned {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentIOError(f"Ollama returned {resp.status_code}: {resp.text[:200]}")
        vecs = np.asarray(resp.json()["embeddings"], dtype=np.float32)
        if vecs.ndim != 2 or vecs.shape[1] != self.dim:
            raise ValueError(f"Ollama model {self.model} returned shape {vecs.shape}, expected (N, {self.dim})")
        return vecs

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            raise ValueError("embed() called with no texts")
        return call_with_retry(self._post, texts, attempts=self.attempts, backoff=self.backoff)
