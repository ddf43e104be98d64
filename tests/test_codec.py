import json

import pytest

from qna_search.errors import DataIntegrityError, DomainError, IndexCorrupt
from qna_search.index.codec import (
    CONTENTS_MAP_NAME,
    CompositeKeyCodec,
    DirectKeyCodec,
    build_codec,
    decode,
    encode,
)


@pytest.mark.parametrize("counter,tag", [(0, 0), (0, 99), (1, 3), (41, 7), (123456, 42)])
def test_encode_decode_round_trip(counter, tag):
    assert decode(encode(counter, tag)) == (counter, tag)


def test_encode_layout():
    assert encode(0, 3) == 3
    assert encode(1, 7) == 107


@pytest.mark.parametrize("tag", [-1, 100, 250])
def test_tag_out_of_range_is_domain_error(tag):
    with pytest.raises(DomainError):
        encode(5, tag)


def test_domain_error_is_value_error():
    with pytest.raises(ValueError):
        encode(-1, 0)


def test_direct_codec_is_identity():
    codec = DirectKeyCodec()
    assert codec.assign("g", 17, "Q", 99) == 17
    assert codec.resolve("g", 17) == 17
    assert codec.key_for_row("g", 17) == 17
    assert codec.save() is False


def test_composite_assigns_increasing_counters(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    k1 = codec.assign("g", row_id=10, content="Q1", tag=3)
    k2 = codec.assign("g", row_id=11, content="Q2", tag=7)
    assert (k1, k2) == (3, 107)
    assert codec.resolve("g", k1) == 10
    assert codec.resolve("g", k2) == 11
    assert codec.content("g", k2) == "Q2"
    assert codec.key_for_row("g", 11) == 107
    # Groups have independent counters.
    assert codec.assign("other", row_id=12, content="Q3", tag=1) == 1


def test_composite_save_and_reload(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    codec.assign("g", row_id=1, content="Q1", tag=5)
    assert codec.save() is True
    assert codec.save() is False

    with open(tmp_path / CONTENTS_MAP_NAME, encoding="utf-8") as fh:
        data = json.load(fh)
    assert data == {"g": {"0": {"content": "Q1", "rowId": 1, "tag": 5}}}

    fresh = CompositeKeyCodec(tmp_path)
    assert fresh.resolve("g", 5) == 1


def test_composite_reload_drops_unsaved(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    codec.assign("g", row_id=1, content="Q1", tag=5)
    codec.save()
    key = codec.assign("g", row_id=2, content="Q2", tag=6)
    codec.reload()
    assert codec.resolve("g", key) is None


def test_composite_forget_keeps_counter_monotonic(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    key = codec.assign("g", row_id=1, content="Q1", tag=0)
    codec.forget("g", key)
    assert codec.resolve("g", key) is None
    assert codec.key_for_row("g", 1) is None
    assert codec.assign("g", row_id=2, content="Q2", tag=0) == 100


def test_composite_tag_mismatch(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    codec.assign("g", row_id=1, content="Q1", tag=3)
    with pytest.raises(DataIntegrityError):
        codec.resolve("g", 4)


def test_composite_validate(tmp_path):
    codec = CompositeKeyCodec(tmp_path)
    codec.validate(99)
    with pytest.raises(DomainError):
        codec.validate(100)


def test_corrupt_side_map(tmp_path):
    (tmp_path / CONTENTS_MAP_NAME).write_text("{not json", encoding="utf-8")
    with pytest.raises(IndexCorrupt):
        CompositeKeyCodec(tmp_path)


def test_build_codec(tmp_path):
    assert build_codec("direct", tmp_path).scheme == "direct"
    assert build_codec("composite", tmp_path).scheme == "composite"
    with pytest.raises(ValueError):
        build_codec("guess", tmp_path)
