# ===============================================
# tests/test_pipeline.py
# -----------------------------------------------
# End-to-end pipeline runs over a LocalObjectStore:
# staging batches are uploaded to the remote side,
# pulled, indexed, relocated and pushed back.
# ===============================================

import numpy as np
import pytest

from qna_search.errors import CapacityExceeded, DataIntegrityError, PipelineBusy
from qna_search.ingest.pipeline import Pipeline

SCENARIO_A = [
    {"content": "Q1", "metadata": {"fillerID": 3}},
    {"content": "Q2", "metadata": {"fillerID": 7}},
]


def remote_keys(store, prefix):
    return [i.key for i in store.list(prefix)]


def test_scenario_a_direct(make_ctx, stage):
    ctx = make_ctx()
    stage(ctx.store, "batch1.json", SCENARIO_A)
    result = Pipeline(ctx).run("defaultIndex")

    assert result.records == 2
    assert result.files == ["batch1.json"]
    assert ctx.metadata.count("defaultIndex") == 2

    handle = ctx.indexes.ensure("defaultIndex")
    assert handle.ntotal == 2
    assert sorted(handle.keys) == sorted(result.keys)
    for key in result.keys:
        assert ctx.metadata.get_by_id(ctx.codec.resolve("defaultIndex", key)).group_id == "defaultIndex"

    s = ctx.settings
    assert not (s.staging_dir / "batch1.json").exists()
    assert (s.processed_dir / "batch1.json").exists()
    # The push mirrored the relocation.
    assert remote_keys(ctx.store, "staging") == []
    assert remote_keys(ctx.store, "processed") == ["processed/batch1.json"]
    assert "index/defaultIndex.idx" in remote_keys(ctx.store, "index")
    assert "index/metadata.sqlite3" in remote_keys(ctx.store, "index")


def test_scenario_a_composite_keys(make_ctx, stage, tmp_path):
    answers = tmp_path / "answers.yaml"
    answers.write_text('3: "Sure, give me a second."\n', encoding="utf-8")
    ctx = make_ctx(ID_SCHEME="composite", ANSWERS_PATH=answers)
    stage(ctx.store, "batch1.json", SCENARIO_A)
    result = Pipeline(ctx).run("defaultIndex")

    assert result.keys == [3, 107]
    rows = [ctx.metadata.get_by_id(ctx.codec.resolve("defaultIndex", k)) for k in result.keys]
    assert [(r.question, r.answer) for r in rows] == [("Q1", "Sure, give me a second."), ("Q2", "7")]
    assert "index/contentsMap.json" in remote_keys(ctx.store, "index")


def test_rerun_without_new_input_is_byte_identical(make_ctx, stage):
    ctx = make_ctx()
    stage(ctx.store, "batch1.json", SCENARIO_A)
    pipeline = Pipeline(ctx)
    pipeline.run("defaultIndex")

    index_file = ctx.indexes.path_for("defaultIndex")
    before = index_file.read_bytes()
    again = pipeline.run("defaultIndex")

    assert again.records == 0
    assert index_file.read_bytes() == before
    assert all(v["copied"] == v["updated"] == v["deleted"] == 0 for v in again.pulled.values())
    assert all(v["copied"] == v["updated"] == v["deleted"] == 0 for v in again.pushed.values())
    assert ctx.metadata.count("defaultIndex") == 2


def test_second_batch_appends(make_ctx, stage):
    ctx = make_ctx()
    pipeline = Pipeline(ctx)
    stage(ctx.store, "batch1.json", SCENARIO_A)
    pipeline.run("defaultIndex")
    stage(ctx.store, "batch2.json", [{"content": "Q3", "metadata": {"secondaryTag": 1}}])
    result = pipeline.run("defaultIndex")

    assert result.records == 1
    assert ctx.indexes.ensure("defaultIndex").ntotal == 3
    assert remote_keys(ctx.store, "processed") == ["processed/batch1.json", "processed/batch2.json"]


def test_fresh_node_restores_from_remote(make_ctx, make_settings, stage, tmp_path):
    from qna_search.context import build_context
    from qna_search.embed import EchoDevEmbedder

    ctx = make_ctx()
    stage(ctx.store, "batch1.json", SCENARIO_A)
    Pipeline(ctx).run("defaultIndex")

    other = make_settings(DATA_ROOT=tmp_path / "node2")
    ctx2 = build_context(other, store=ctx.store, embedder=EchoDevEmbedder(dim=other.EMBED_DIM))
    try:
        Pipeline(ctx2).pull_all()
        assert ctx2.metadata.count("defaultIndex") == 2
        assert ctx2.indexes.ensure("defaultIndex").ntotal == 2
    finally:
        ctx2.close()


def test_single_flight_rejects_same_group(make_ctx):
    pipeline = Pipeline(make_ctx())
    with pipeline.flight.claim("defaultIndex"):
        assert pipeline.flight.is_running("defaultIndex")
        with pytest.raises(PipelineBusy):
            pipeline.run("defaultIndex")
    assert not pipeline.flight.is_running("defaultIndex")
    pipeline.run("defaultIndex")


def test_rejected_file_does_not_block_others(make_ctx, stage):
    ctx = make_ctx()
    stage(ctx.store, "a_bad.json", {"content": "not a list"})
    stage(ctx.store, "b_good.json", SCENARIO_A)
    result = Pipeline(ctx).run("defaultIndex")

    assert result.records == 2
    assert [p.endswith("a_bad.json") for p in result.rejected] == [True]
    assert (ctx.settings.staging_dir / "a_bad.json").exists()
    assert remote_keys(ctx.store, "staging") == ["staging/a_bad.json"]


def test_capacity_aborts_before_metadata_and_push(make_ctx, stage):
    ctx = make_ctx(INDEX_CAPACITY=1)
    stage(ctx.store, "batch1.json", SCENARIO_A)
    with pytest.raises(CapacityExceeded):
        Pipeline(ctx).run("defaultIndex")

    assert ctx.metadata.count() == 0
    assert (ctx.settings.staging_dir / "batch1.json").exists()
    assert remote_keys(ctx.store, "processed") == []
    assert remote_keys(ctx.store, "index") == []


def test_out_of_range_tag_rejects_only_its_file(make_ctx, stage):
    ctx = make_ctx(ID_SCHEME="composite")
    stage(ctx.store, "a_bad.json", [{"content": "Q", "metadata": {"secondaryTag": 100}}])
    stage(ctx.store, "b_good.json", [{"content": "Q3", "metadata": {"secondaryTag": 3}}])
    result = Pipeline(ctx).run("defaultIndex")

    assert result.records == 1
    assert result.keys == [3]
    assert result.files == ["b_good.json"]
    assert [p.endswith("a_bad.json") for p in result.rejected] == [True]
    assert (ctx.settings.staging_dir / "a_bad.json").exists()
    assert ctx.metadata.count() == 1
    # The next run is not blocked by the file left behind.
    assert Pipeline(ctx).run("defaultIndex").records == 0


def test_non_utf8_file_does_not_block_run(make_ctx, stage):
    ctx = make_ctx()
    ctx.store.put("staging/a_bad.json", b'[{"content": "\xff\xfe", "metadata": {"fillerID": 3}}]')
    stage(ctx.store, "b_good.json", SCENARIO_A)
    result = Pipeline(ctx).run("defaultIndex")

    assert result.records == 2
    assert result.files == ["b_good.json"]
    assert [p.endswith("a_bad.json") for p in result.rejected] == [True]
    assert remote_keys(ctx.store, "staging") == ["staging/a_bad.json"]


def test_empty_list_file_is_relocated(make_ctx, stage):
    ctx = make_ctx()
    stage(ctx.store, "empty_list.json", [])
    result = Pipeline(ctx).run("defaultIndex")

    assert result.records == 0
    assert result.files == ["empty_list.json"]
    assert (ctx.settings.processed_dir / "empty_list.json").exists()
    assert not (ctx.settings.staging_dir / "empty_list.json").exists()
    assert remote_keys(ctx.store, "processed") == ["processed/empty_list.json"]
    assert remote_keys(ctx.store, "staging") == []


def test_index_failure_removes_new_rows(make_ctx, monkeypatch):
    ctx = make_ctx()
    pipeline = Pipeline(ctx)
    pipeline.add_entries("g", ["Q1"], ["A1"])

    def clash(handle, vectors, keys):
        raise DataIntegrityError("simulated clash")

    monkeypatch.setattr(ctx.indexes, "add_batch", clash)
    with pytest.raises(DataIntegrityError):
        pipeline.add_entries("g", ["Q2", "Q3"], ["A2", "A3"])

    assert ctx.metadata.count("g") == 1
    assert ctx.indexes.ensure("g").ntotal == 1


def test_delete_entry_tombstones_then_removes_row(make_ctx):
    ctx = make_ctx()
    pipeline = Pipeline(ctx)
    keys = pipeline.add_entries("g", ["Q1", "Q2"], ["A1", "A2"])

    row_id = pipeline.delete_entry("g", "Q1")
    assert row_id == keys[0]
    handle = ctx.indexes.ensure("g")
    assert handle.tombstones == {keys[0]}
    assert ctx.metadata.find_by_question("Q1", "g") is None
    assert pipeline.delete_entry("g", "Q1") is None
    assert pipeline.delete_entry("missing-group", "Q1") is None


def test_add_entries_validates_lengths(make_ctx):
    pipeline = Pipeline(make_ctx())
    with pytest.raises(ValueError):
        pipeline.add_entries("g", ["Q1", "Q2"], ["A1"])
    assert pipeline.add_entries("g", [], []) == []


def test_embedding_sub_batches(make_ctx):
    calls = []

    class Recording:
        model = "rec"
        dim = 16

        def embed(self, texts):
            calls.append(len(texts))
            return np.ones((len(texts), 16), dtype=np.float32)

    ctx = make_ctx(embedder=Recording(), EMBED_BATCH_SIZE=2)
    Pipeline(ctx).add_entries("g", ["a", "b", "c"], ["1", "2", "3"])
    assert calls == [2, 1]
