# Makes embed/ importable and exposes the embedder factory.

from __future__ import annotations

from .clients.echo_dev_client import EchoDevEmbedder
from .types import Embedder, embed_in_batches

__all__ = ["Embedder", "EchoDevEmbedder", "embed_in_batches", "build_embedder"]


def build_embedder(settings) -> Embedder:
    backend = settings.EMBED_BACKEND
    if backend == "sentence-transformers":
        from .clients.sentence_transformer_client import SentenceTransformerEmbedder

        return SentenceTransformerEmbedder(
            model=settings.EMBED_MODEL_NAME, dim=settings.EMBED_DIM, device=settings.EMBED_DEVICE
        )
    if backend == "ollama":
        from .clients.ollama_client import OllamaEmbedder

        return OllamaEmbedder(
            model=settings.EMBED_MODEL_NAME,
            dim=settings.EMBED_DIM,
            host=settings.OLLAMA_HOST,
            timeout=settings.TIMEOUT_SECONDS,
            attempts=settings.RETRY_ATTEMPTS,
        )
    return EchoDevEmbedder(dim=settings.EMBED_DIM)
