# ===============================================
# tests/test_search.py
# -----------------------------------------------
# Query path: embed → index search → metadata.
# Uses a fixed-vector embedder so the nearest
# neighbour is known exactly.
# ===============================================

import pytest

from qna_search.errors import NotFoundError
from qna_search.ingest.pipeline import Pipeline
from qna_search.search import Retriever


@pytest.fixture
def populated(make_ctx, scenario_b_embedder):
    ctx = make_ctx(embedder=scenario_b_embedder, EMBED_DIM=4)
    Pipeline(ctx).add_entries("g", ["hello", "goodbye"], ["Hi there!", "See you!"])
    return ctx


def test_scenario_b_nearest_single_hit(populated):
    result = Retriever(populated).retrieve("hi", "g", k=1)
    assert len(result.matches) == 1
    m = result.matches[0]
    assert (m.question, m.answer) == ("hello", "Hi there!")
    assert populated.metadata.get_by_id(m.row_id).question == "hello"


def test_results_ordered_by_distance(populated):
    result = Retriever(populated).retrieve("farewell", "g", k=5)
    assert [m.question for m in result.matches] == ["goodbye", "hello"]
    assert result.matches[0].distance < result.matches[1].distance


def test_deleted_entry_not_returned(populated):
    Pipeline(populated).delete_entry("g", "hello")
    result = Retriever(populated).retrieve("hi", "g", k=1)
    assert [m.question for m in result.matches] == ["goodbye"]


def test_unknown_group(populated):
    with pytest.raises(NotFoundError):
        Retriever(populated).retrieve("hi", "nope", k=1)


def test_blank_query(populated):
    with pytest.raises(ValueError):
        Retriever(populated).retrieve("   ", "g", k=1)


def test_composite_scheme_resolves_rows(make_ctx, scenario_b_embedder):
    ctx = make_ctx(embedder=scenario_b_embedder, EMBED_DIM=4, ID_SCHEME="composite")
    Pipeline(ctx).add_entries("g", ["hello", "goodbye"], ["Hi there!", "See you!"], tags=[3, 7])
    m = Retriever(ctx).retrieve("farewell", "g", k=1).matches[0]
    assert (m.question, m.key) == ("goodbye", 107)
