import numpy as np
import pytest
import requests

from qna_search.embed import EchoDevEmbedder, build_embedder, embed_in_batches
from qna_search.embed.clients.ollama_client import OllamaEmbedder
from qna_search.errors import PermanentIOError, TransientIOError


class CountingEmbedder:
    model = "counting"
    dim = 2

    def __init__(self):
        self.batches = []

    def embed(self, texts):
        self.batches.append(list(texts))
        return np.asarray([[float(t), 0.0] for t in texts], dtype=np.float32)


def test_embed_in_batches_preserves_order():
    emb = CountingEmbedder()
    texts = [str(i) for i in range(5)]
    out = embed_in_batches(emb, texts, batch_size=2)
    assert [len(b) for b in emb.batches] == [2, 2, 1]
    assert out[:, 0].tolist() == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert out.dtype == np.float32


def test_embed_in_batches_rejects_empty():
    with pytest.raises(ValueError):
        embed_in_batches(CountingEmbedder(), [])


def test_echo_embedder_is_deterministic():
    emb = EchoDevEmbedder(dim=32)
    a = emb.embed(["hello", "goodbye"])
    b = emb.embed(["hello", "goodbye"])
    assert a.shape == (2, 32)
    np.testing.assert_array_equal(a, b)
    np.testing.assert_allclose(np.linalg.norm(a, axis=1), 1.0, rtol=1e-5)
    with pytest.raises(ValueError):
        emb.embed([])


def test_build_embedder_default(make_settings):
    emb = build_embedder(make_settings())
    assert isinstance(emb, EchoDevEmbedder)
    assert emb.dim == 16


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(payload)

    def json(self):
        return self._payload


def test_ollama_embed(monkeypatch):
    seen = {}

    def fake_post(url, json, timeout):
        seen.update(url=url, json=json, timeout=timeout)
        return FakeResponse(200, {"embeddings": [[1.0, 0.0], [0.0, 1.0]]})

    monkeypatch.setattr(requests, "post", fake_post)
    emb = OllamaEmbedder("nomic", dim=2, host="http://ollama:11434/", timeout=5)
    out = emb.embed(["a", "b"])
    assert out.shape == (2, 2)
    assert seen["url"] == "http://ollama:11434/api/embed"
    assert seen["json"] == {"model": "nomic", "input": ["a", "b"]}
    assert seen["timeout"] == 5


def test_ollama_retries_transient(monkeypatch):
    responses = [FakeResponse(503), FakeResponse(200, {"embeddings": [[1.0, 0.0]]})]
    monkeypatch.setattr(requests, "post", lambda url, json, timeout: responses.pop(0))
    emb = OllamaEmbedder("nomic", dim=2, attempts=3, backoff=0)
    assert emb.embed(["a"]).shape == (1, 2)


def test_ollama_connection_errors_exhaust(monkeypatch):
    def boom(url, json, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", boom)
    emb = OllamaEmbedder("nomic", dim=2, attempts=2, backoff=0)
    with pytest.raises(TransientIOError):
        emb.embed(["a"])


def test_ollama_client_error_is_permanent(monkeypatch):
    calls = []

    def bad_request(url, json, timeout):
        calls.append(url)
        return FakeResponse(400, {"error": "model not found"})

    monkeypatch.setattr(requests, "post", bad_request)
    emb = OllamaEmbedder("nomic", dim=2, attempts=5, backoff=0)
    with pytest.raises(PermanentIOError):
        emb.embed(["a"])
    assert len(calls) == 1


def test_ollama_dimension_mismatch(monkeypatch):
    monkeypatch.setattr(
        requests, "post", lambda url, json, timeout: FakeResponse(200, {"embeddings": [[1.0, 0.0, 0.0]]})
    )
    with pytest.raises(ValueError):
        OllamaEmbedder("nomic", dim=2).embed(["a"])
