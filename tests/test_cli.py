import json

from qna_search.cli import main
from qna_search.storage import LocalObjectStore


def test_run_match_stats(make_settings, stage, capsys):
    settings = make_settings()
    stage(LocalObjectStore(settings.REMOTE_ROOT), "batch1.json", [
        {"content": "Q1", "metadata": {"fillerID": 3}},
        {"content": "Q2", "metadata": {"fillerID": 7}},
    ])

    assert main(["run"], settings=settings) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["records"] == 2
    assert out["files"] == ["batch1.json"]

    assert main(["match", "Q2", "-k", "1"], settings=settings) == 0
    matches = json.loads(capsys.readouterr().out)
    assert [m["question"] for m in matches] == ["Q2"]

    assert main(["stats"], settings=settings) == 0
    assert json.loads(capsys.readouterr().out)["rows"] == 2


def test_stats_missing_group(make_settings, capsys):
    assert main(["stats", "--group", "nope"], settings=make_settings()) == 1
    assert "Indexing does not exist" in capsys.readouterr().err


def test_match_missing_group_fails(make_settings):
    assert main(["match", "hi", "--group", "nope"], settings=make_settings()) == 1
