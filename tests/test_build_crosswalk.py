"""
Crosswalk builder tests: confidence, orphans, intra-source collapse and
batch id validation.
"""

import pytest

from conftest import member_row
from multisource_mdm.pipelines.reconciliation import InputError
from multisource_mdm.pipelines.reconciliation.bronze.ingest_source_records import (
    prepare_source_records,
)
from multisource_mdm.pipelines.reconciliation.silver.build_crosswalk import (
    build_crosswalk,
    latest_per_key,
)


@pytest.fixture
def prepare(raw_frame, member_policy):
    def build(rows, source_system):
        return prepare_source_records(raw_frame(rows), member_policy, source_system, "B1")
    return build


def _entries(result):
    return {row["master_id"]: row.asDict() for row in result.entries.collect()}


def test_confidence_and_match_method(prepare):
    source_a = prepare([member_row("K1", "A-1"), member_row("K2", "A-2")], "OMS")
    source_b = prepare([member_row("K1", "B-1"), member_row("K3", "B-3")], "VEMS")

    entries = _entries(build_crosswalk(source_a, source_b, "member", "B1"))

    assert set(entries) == {"K1", "K2", "K3"}
    assert (entries["K1"]["confidence"], entries["K1"]["match_method"]) == (100, "BOTH_EXACT")
    assert (entries["K2"]["confidence"], entries["K2"]["match_method"]) == (90, "SOURCE_A_ONLY")
    assert (entries["K3"]["confidence"], entries["K3"]["match_method"]) == (90, "SOURCE_B_ONLY")
    assert entries["K1"]["source_a_ref"] == "A-1"
    assert entries["K1"]["source_b_ref"] == "B-1"
    assert entries["K2"]["source_b_ref"] is None
    assert entries["K3"]["source_a_ref"] is None
    assert all(e["entity_type"] == "member" and e["batch_id"] == "B1" for e in entries.values())


def test_blank_keys_become_orphans(prepare):
    source_a = prepare([member_row("K1", "A-1"), member_row("  ", "A-9")], "OMS")
    source_b = prepare([member_row(None, "B-9")], "VEMS")

    result = build_crosswalk(source_a, source_b, "member", "B1")
    orphans = sorted((row["source_system"], row["source_record_id"], row["reason"])
                     for row in result.orphans.collect())

    assert list(_entries(result)) == ["K1"]
    assert orphans == [
        ("OMS", "A-9", "MISSING_NATURAL_KEY"),
        ("VEMS", "B-9", "MISSING_NATURAL_KEY"),
    ]


def test_one_entry_per_key_when_sources_repeat_keys(prepare):
    source_a = prepare([
        member_row("K1", "A-1", ingested="2024-03-08 08:00:00"),
        member_row("K1", "A-2", ingested="2024-03-09 08:00:00"),
    ], "OMS")
    source_b = prepare([
        member_row("K1", "B-1"),
        member_row("K1", "B-1"),
    ], "VEMS")

    result = build_crosswalk(source_a, source_b, "member", "B1")
    entries = _entries(result)

    assert result.entries.count() == 1
    assert entries["K1"]["source_a_ref"] == "A-2"


def test_same_timestamp_ties_break_on_source_record_id(prepare):
    source = prepare([
        member_row("K1", "A-1"),
        member_row("K1", "A-3"),
        member_row("K1", "A-2"),
    ], "OMS")

    latest = latest_per_key(source).collect()

    assert [row["source_record_id"] for row in latest] == ["A-3"]


def test_full_ties_break_on_record_hash(prepare):
    source = prepare([
        member_row("K1", "A-1", name="alpha"),
        member_row("K1", "A-1", name="omega"),
    ], "OMS")

    first = latest_per_key(source).first()["name"]
    second = latest_per_key(source.orderBy("name", ascending=False)).first()["name"]

    assert first == second


@pytest.mark.parametrize("batch_id", ["", None, "bad id", "B1;DROP"])
def test_invalid_batch_id_is_rejected(prepare, batch_id):
    source = prepare([member_row("K1")], "OMS")

    with pytest.raises(InputError):
        build_crosswalk(source, source, "member", batch_id)
