"""
Warehouse tests: table contracts, append-only conflict log, batch run log
and the per-entity-type run lock.
"""

import sqlite3
import threading
from datetime import datetime, timedelta

import pandas as pd
import pytest

from multisource_mdm.pipelines.reconciliation import (
    ConflictLogger,
    InputError,
    IntegrityViolation,
    RunLockTimeout,
)
from multisource_mdm.pipelines.reconciliation.warehouse import format_timestamp, utc_now

T0 = datetime(2024, 3, 10, 12, 0, 0)


def _conflict(entity_id="K1", field="rating", resolved="50", rule="PREFER_OMS"):
    return {
        "entity_type": "member",
        "batch_id": "B1",
        "entity_id": entity_id,
        "field": field,
        "source_a_value": "50",
        "source_b_value": "70",
        "resolved_value": resolved,
        "resolution_rule": rule,
    }


# =============================================================================
# CROSSWALK AND STAGING
# =============================================================================

def test_replace_crosswalk_is_scoped_to_batch(warehouse):
    entry = {"master_id": "K1", "source_a_ref": "A-1", "source_b_ref": None,
             "confidence": 90, "match_method": "SOURCE_A_ONLY", "created_at": T0}
    warehouse.replace_crosswalk("member", "B1", [entry, dict(entry, master_id="K2")])
    warehouse.replace_crosswalk("member", "B2", [entry])
    warehouse.replace_crosswalk("member", "B1", [dict(entry, master_id="K3")])

    assert [e["master_id"] for e in warehouse.read_crosswalk("member", "B1")] == ["K3"]
    assert [e["master_id"] for e in warehouse.read_crosswalk("member", "B2")] == ["K1"]


def test_failed_transaction_leaves_previous_crosswalk(warehouse):
    entry = {"master_id": "K1", "confidence": 90, "match_method": "SOURCE_A_ONLY"}
    warehouse.replace_crosswalk("member", "B1", [entry])

    with pytest.raises(KeyError):
        with warehouse.transaction() as conn:
            warehouse.replace_crosswalk("member", "B1", [{"master_id": "K2"}], conn=conn)

    assert [e["master_id"] for e in warehouse.read_crosswalk("member", "B1")] == ["K1"]


def test_merged_records_round_trip_json_columns(warehouse):
    record = {
        "master_id": "K1",
        "source_system": "OMS",
        "match_confidence": 90,
        "match_method": "SOURCE_A_ONLY",
        "attributes": {"name": "ANN", "born": datetime(1980, 5, 1).date()},
        "fingerprint_hash": "abc",
        "dq_score": 80,
        "dq_issues": ["MISSING_EMAIL"],
        "conflict_fields": [],
    }
    warehouse.replace_merged("member", "B1", [record])

    stored = warehouse.read_merged("member", "B1")[0]

    assert stored["attributes"] == {"name": "ANN", "born": "1980-05-01"}
    assert stored["dq_issues"] == ["MISSING_EMAIL"]
    assert stored["dq_score"] == 80


def test_read_frame_returns_pandas(warehouse):
    warehouse.insert_conflicts([_conflict()])

    frame = warehouse.read_frame("SELECT entity_id, field FROM conflict_log")

    assert isinstance(frame, pd.DataFrame)
    assert frame.to_dict("records") == [{"entity_id": "K1", "field": "rating"}]


# =============================================================================
# CONFLICT LOG
# =============================================================================

def test_conflict_log_ignores_replayed_entries(warehouse):
    logger = ConflictLogger(warehouse)

    assert logger.append([_conflict(), _conflict(field="name")]) == 2
    assert logger.append([_conflict(), _conflict(field="name")]) == 0
    assert len(warehouse.read_conflicts("member", "B1")) == 2


def test_conflict_log_rejects_update_and_delete(warehouse):
    warehouse.insert_conflicts([_conflict()])
    conn = warehouse.get_connection()
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE conflict_log SET resolved_value = '70'")
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM conflict_log")
    finally:
        conn.close()

    assert warehouse.read_conflicts("member")[0]["resolved_value"] == "50"


def test_conflict_audit_flags_resolutions_against_their_rule(warehouse):
    logger = ConflictLogger(warehouse)
    logger.append([
        _conflict("K1"),
        _conflict("K2", resolved="70"),
        _conflict("K3", resolved="70", rule="PREFER_VEMS"),
    ])

    violations = logger.audit("member", "B1")

    assert [v["entity_id"] for v in violations] == ["K2"]


# =============================================================================
# DIMENSION VERSIONS
# =============================================================================

def test_dimension_insert_change_and_no_op(warehouse):
    apply = warehouse.apply_dimension_change

    assert apply("member", "K1", "fp1", {"name": "ANN"}, "B1", T0) == "INSERTED"
    assert apply("member", "K1", "fp1", {"name": "ANN"}, "B2", T0 + timedelta(days=1)) == "UNCHANGED"
    assert apply("member", "K1", "fp2", {"name": "ANNE"}, "B3", T0 + timedelta(days=2)) == "CHANGED"

    history = warehouse.version_history("member", "K1")

    assert len(history) == 2
    assert [v["is_current"] for v in history] == [False, True]
    assert history[0]["effective_end"] == history[1]["effective_start"]
    assert history[1]["effective_end"] == "9999-12-31 23:59:59"
    assert history[1]["attributes"] == {"name": "ANNE"}
    assert history[1]["batch_id"] == "B3"


def test_change_dated_before_current_version_is_rejected(warehouse):
    apply = warehouse.apply_dimension_change
    apply("member", "K1", "fp1", {"name": "ANN"}, "B1", T0 + timedelta(days=1))

    with pytest.raises(InputError):
        apply("member", "K1", "fp2", {"name": "ANNE"}, "B2", T0)

    history = warehouse.version_history("member", "K1")

    assert len(history) == 1
    assert history[0]["is_current"]
    assert history[0]["effective_end"] == "9999-12-31 23:59:59"
    assert apply("member", "K1", "fp1", {"name": "ANN"}, "B2", T0) == "UNCHANGED"
    assert apply("member", "K1", "fp2", {"name": "ANNE"}, "B3", T0 + timedelta(days=1)) == "CHANGED"


def test_second_current_version_is_rejected_by_the_store(warehouse):
    warehouse.apply_dimension_change("member", "K1", "fp1", {}, "B1", T0)
    conn = warehouse.get_connection()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO dimension_versions
                    (entity_type, master_id, attributes_json, fingerprint_hash,
                     effective_start, effective_end, is_current, batch_id)
                VALUES ('member', 'K1', '{}', 'fp2', 'x', '9999-12-31 23:59:59', 1, 'B2')
                """
            )
    finally:
        conn.close()


def test_duplicate_current_rows_raise_integrity_violation(warehouse):
    conn = warehouse.get_connection()
    try:
        conn.execute("DROP INDEX ux_dimension_versions_current")
        for fingerprint in ("fp1", "fp2"):
            conn.execute(
                """
                INSERT INTO dimension_versions
                    (entity_type, master_id, attributes_json, fingerprint_hash,
                     effective_start, effective_end, is_current, batch_id)
                VALUES ('member', 'K1', '{}', ?, 'x', '9999-12-31 23:59:59', 1, 'B1')
                """,
                (fingerprint,),
            )
    finally:
        conn.close()

    with pytest.raises(IntegrityViolation):
        warehouse.apply_dimension_change("member", "K1", "fp3", {}, "B2", T0)
    assert warehouse.duplicate_current_versions("member")[0]["current_count"] == 2


# =============================================================================
# BATCH RUNS AND RUN LOCK
# =============================================================================

def test_batch_ready_only_after_success(warehouse):
    assert not warehouse.is_batch_ready("veteran", "B1")

    run_id = warehouse.start_run("veteran", "B1")
    assert not warehouse.is_batch_ready("veteran", "B1")

    warehouse.finish_run(run_id, "SUCCEEDED", row_count=3)
    assert warehouse.is_batch_ready("veteran", "B1")

    failed = warehouse.start_run("veteran", "B1")
    warehouse.finish_run(failed, "FAILED", error=ValueError("boom"))
    assert not warehouse.is_batch_ready("veteran", "B1")
    assert warehouse.latest_run("veteran", "B1")["error_type"] == "ValueError"


def test_run_lock_times_out_while_lease_is_held(warehouse):
    now = utc_now()
    with warehouse.transaction() as conn:
        conn.execute(
            "INSERT INTO run_locks VALUES ('veteran', 'other-host', ?, ?)",
            (format_timestamp(now), format_timestamp(now + timedelta(hours=1))),
        )

    with pytest.raises(RunLockTimeout):
        with warehouse.run_lock("veteran", timeout=0.2, poll_interval=0.05):
            pass


def test_run_lock_takes_over_stale_lease_and_releases(warehouse):
    past = utc_now() - timedelta(hours=2)
    with warehouse.transaction() as conn:
        conn.execute(
            "INSERT INTO run_locks VALUES ('veteran', 'crashed', ?, ?)",
            (format_timestamp(past), format_timestamp(past + timedelta(hours=1))),
        )

    with warehouse.run_lock("veteran", timeout=1) as owner:
        lease = warehouse.read_frame("SELECT owner FROM run_locks")
        assert lease["owner"].tolist() == [owner]

    assert warehouse.read_frame("SELECT * FROM run_locks").empty


def test_run_lock_serializes_threads(warehouse):
    order = []

    def worker(name):
        with warehouse.run_lock("veteran", timeout=5, poll_interval=0.01):
            order.append(f"{name}-in")
            order.append(f"{name}-out")

    threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b", "c")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(order) == 6
    for i in range(0, 6, 2):
        assert order[i].split("-")[0] == order[i + 1].split("-")[0]
