# ===============================================
# tests/conftest.py
# -----------------------------------------------
# Shared fixtures: settings rooted in tmp_path, a
# ServiceContext over a LocalObjectStore, and a
# fixed-vector embedder for exact distance checks.
# ===============================================

import hashlib
import json

import numpy as np
import pytest

from qna_search.context import build_context
from qna_search.embed import EchoDevEmbedder
from qna_search.settings import Settings

DIM = 16


class FixedEmbedder:
    """Looks texts up in a table; records every call."""

    def __init__(self, table, dim=4):
        self.model = "fixed"
        self.dim = dim
        self.table = {k: np.asarray(v, dtype=np.float32) for k, v in table.items()}
        self.calls = []

    def embed(self, texts):
        if not texts:
            raise ValueError("embed() called with no texts")
        self.calls.append(list(texts))
        return np.vstack([self.table[t] for t in texts]).astype(np.float32)


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = dict(
            DATA_ROOT=tmp_path / "data",
            REMOTE_ROOT=tmp_path / "remote",
            EMBED_DIM=DIM,
            EMBED_BACKEND="echo",
            INDEX_CAPACITY=1000,
            SYNC_ON_STARTUP=False,
            LOG_LEVEL="DEBUG",
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_ctx(make_settings):
    created = []

    def _make(embedder=None, **overrides):
        s = make_settings(**overrides)
        ctx = build_context(s, embedder=embedder or EchoDevEmbedder(dim=s.EMBED_DIM))
        created.append(ctx)
        return ctx

    yield _make
    for ctx in created:
        ctx.close()


@pytest.fixture
def stage():
    """Upload a staging batch to the remote store the way an uploader would."""

    def _stage(store, name, records):
        data = json.dumps(records).encode("utf-8")
        store.put(f"staging/{name}", data, metadata={"sha256": hashlib.sha256(data).hexdigest()})
        return data

    return _stage


@pytest.fixture
def scenario_b_embedder():
    return FixedEmbedder(
        {
            "hello": [1.0, 0.0, 0.0, 0.0],
            "goodbye": [0.0, 1.0, 0.0, 0.0],
            "hi": [0.9, 0.1, 0.0, 0.0],
            "farewell": [0.1, 0.9, 0.0, 0.0],
        }
    )
