# Local sentence-transformers embedder. The model is loaded lazily on first use.

from __future__ import annotations

import logging
import os
from typing import Optional, Sequence

import numpy as np

# Silence tokenizer parallelism warnings
os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    def __init__(self, model: str, dim: int, device: str = "cpu", local_only: bool = False):
        self.model = model
        self.dim = dim
        self.device = device
        self.local_only = local_only
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer  # heavy import delayed

            kwargs = {"device": self.device}
            if self.local_only:
                kwargs["local_files_only"] = True
            logger.info("Loading embedding model %s on %s", self.model, self.device)
            self._model = SentenceTransformer(self.model, **kwargs)
            got: Optional[int] = self._model.get_sentence_embedding_dimension()
            if got is not None and got != self.dim:
                raise ValueError(f"Model {self.model} produces dim {got}, index expects {self.dim}")
        return self._model

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            raise ValueError("embed() called with no texts")
        model = self._get_model()
        vecs = model.encode(
            list(texts),
            batch_size=min(64, len(texts)),
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vecs, dtype=np.float32)
