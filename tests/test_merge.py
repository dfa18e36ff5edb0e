# tests/test_merge.py
import pytest

from estatemetrics.merge import RecordMerger, merge_records, prefixed


def test_matched_records_combine_with_provenance():
    base = [{"fingerprint": "f1", "address": "1 Main St", "price": 1000, "source": "redfin", "hoa": 25}]
    enrich = [{"fingerprint": "f1", "address": "1 Main St", "price": 1050, "source": "zillow"}]

    merged = merge_records(base, enrich)

    assert len(merged) == 1
    record = merged[0]
    assert record["price"] == 1050
    assert record["source"] == "zillow"
    assert record["redfinPrice"] == 1000
    assert record["redfinAddress"] == "1 Main St"
    assert record["hoa"] == 25
    assert record["mergedRecords"] is True


def test_base_precedence():
    base = [{"fingerprint": "f1", "address": "1 Main St", "price": 1000}]
    enrich = [{"fingerprint": "f1", "address": "1 Main St", "price": 1050}]
    merged = RecordMerger(precedence="base").merge(base, enrich)
    assert merged[0]["price"] == 1000


def test_unmatched_records_are_kept_and_sorted():
    base = [{"fingerprint": "b", "address": "B Street"}]
    enrich = [{"fingerprint": "c", "address": "c street"}, {"fingerprint": "a", "address": "A Street"}]
    merged = merge_records(base, enrich)
    assert [r["fingerprint"] for r in merged] == ["a", "b", "c"]
    assert not any(r.get("mergedRecords") for r in merged)


def test_falls_back_to_id_and_keeps_unkeyed():
    base = [{"id": "x", "address": "1 Elm", "price": 1}, {"address": "2 Elm"}]
    enrich = [{"id": "x", "address": "1 Elm", "price": 2}]
    merged = merge_records(base, enrich)
    assert len(merged) == 2
    assert merged[0]["redfinPrice"] == 1
    assert merged[1]["address"] == "2 Elm"


def test_duplicate_fingerprints_collapse_to_one_record():
    base = [
        {"fingerprint": "f", "address": "1 Elm", "price": 1, "hoa": 30},
        {"fingerprint": "f", "address": "1 Elm", "price": 2},
    ]
    enrich = [
        {"fingerprint": "f", "address": "1 Elm", "price": 3, "area": 900},
        {"fingerprint": "f", "address": "1 Elm", "price": 4},
    ]
    merged = merge_records(base, enrich)
    assert [r["fingerprint"] for r in merged] == ["f"]
    record = merged[0]
    assert record["price"] == 4
    assert record["redfinPrice"] == 2
    assert record["hoa"] == 30
    assert record["area"] == 900
    assert record["mergedRecords"] is True


def test_unmatched_enrich_duplicates_collapse():
    enrich = [{"fingerprint": "g", "address": "2 Elm", "price": 5}, {"fingerprint": "g", "address": "2 Elm", "price": 6}]
    merged = merge_records([], enrich)
    assert [r["price"] for r in merged] == [6]


def test_merge_is_idempotent_on_inputs():
    base = [{"fingerprint": "f1", "address": "1 Main St", "price": 1000}]
    enrich = [{"fingerprint": "f1", "address": "1 Main St", "price": 1050}]
    merger = RecordMerger()
    assert merger.merge(base, enrich) == merger.merge(base, enrich)
    assert base[0] == {"fingerprint": "f1", "address": "1 Main St", "price": 1000}


def test_prefixed_names():
    assert prefixed("redfin", "firstListed") == "redfinFirstListed"


def test_rejects_unknown_precedence():
    with pytest.raises(ValueError):
        RecordMerger(precedence="newest")
