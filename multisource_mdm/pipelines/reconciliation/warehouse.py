"""
SQLite warehouse for the reconciliation pipeline.

Tables:
- crosswalk: Master id per natural key, replaced per (entity_type, batch_id)
- orphan_records: Source records excluded from matching
- merged_records: Staged merged records, replaced per (entity_type, batch_id)
- conflict_log: Append-only field conflicts (UPDATE and DELETE are rejected)
- dimension_versions: SCD type 2 versions, at most one current per master id
- batch_runs: Execution log of every (entity_type, batch_id) run
- run_locks: Lease rows serializing runs of one entity type across processes
"""

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pandas as pd

from ...config.settings import (
    OPEN_END_SENTINEL,
    RUN_LOCK_POLL_SECONDS,
    RUN_LOCK_TIMEOUT_SECONDS,
    RUN_LOCK_TTL_SECONDS,
    TABLE_NAMES,
)
from .errors import InputError, IntegrityViolation, RunLockTimeout

logger = logging.getLogger(__name__)

CROSSWALK = TABLE_NAMES["crosswalk"]
ORPHANS = TABLE_NAMES["orphans"]
MERGED = TABLE_NAMES["merged"]
CONFLICTS = TABLE_NAMES["conflicts"]
DIMENSION = TABLE_NAMES["dimension"]
BATCH_RUNS = TABLE_NAMES["batch_runs"]
RUN_LOCKS = TABLE_NAMES["run_locks"]

RUN_STATUS_RUNNING = "RUNNING"
RUN_STATUS_SUCCEEDED = "SUCCEEDED"
RUN_STATUS_FAILED = "FAILED"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {CROSSWALK} (
    entity_type TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    master_id TEXT NOT NULL,
    source_a_ref TEXT,
    source_b_ref TEXT,
    confidence INTEGER NOT NULL,
    match_method TEXT NOT NULL,  -- BOTH_EXACT, SOURCE_A_ONLY, SOURCE_B_ONLY
    created_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, batch_id, master_id)
);

CREATE TABLE IF NOT EXISTS {ORPHANS} (
    orphan_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    source_system TEXT NOT NULL,
    source_record_id TEXT,
    reason TEXT NOT NULL,
    detected_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS {MERGED} (
    entity_type TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    master_id TEXT NOT NULL,
    source_system TEXT NOT NULL,  -- provenance: OMS, VEMS, OMS_VEMS_MERGED
    match_confidence INTEGER,
    match_method TEXT,
    attributes_json TEXT NOT NULL,
    fingerprint_hash TEXT NOT NULL,
    dq_score INTEGER NOT NULL,
    dq_issues_json TEXT NOT NULL,
    conflict_fields_json TEXT NOT NULL,
    merged_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, batch_id, master_id)
);

CREATE TABLE IF NOT EXISTS {CONFLICTS} (
    conflict_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    field TEXT NOT NULL,
    source_a_value TEXT,
    source_b_value TEXT,
    resolved_value TEXT,
    resolution_rule TEXT NOT NULL,
    logged_at TEXT NOT NULL,
    UNIQUE (entity_type, batch_id, entity_id, field)
);

CREATE TRIGGER IF NOT EXISTS {CONFLICTS}_no_update
BEFORE UPDATE ON {CONFLICTS}
BEGIN
    SELECT RAISE(ABORT, '{CONFLICTS} is append-only');
END;

CREATE TRIGGER IF NOT EXISTS {CONFLICTS}_no_delete
BEFORE DELETE ON {CONFLICTS}
BEGIN
    SELECT RAISE(ABORT, '{CONFLICTS} is append-only');
END;

CREATE TABLE IF NOT EXISTS {DIMENSION} (
    version_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    master_id TEXT NOT NULL,
    attributes_json TEXT NOT NULL,
    fingerprint_hash TEXT NOT NULL,
    effective_start TEXT NOT NULL,
    effective_end TEXT NOT NULL,
    is_current INTEGER NOT NULL DEFAULT 1,
    batch_id TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_{DIMENSION}_current
ON {DIMENSION} (entity_type, master_id) WHERE is_current = 1;

CREATE INDEX IF NOT EXISTS ix_{DIMENSION}_master
ON {DIMENSION} (entity_type, master_id);

CREATE TRIGGER IF NOT EXISTS {DIMENSION}_no_delete
BEFORE DELETE ON {DIMENSION}
BEGIN
    SELECT RAISE(ABORT, '{DIMENSION} versions are never deleted');
END;

CREATE TABLE IF NOT EXISTS {BATCH_RUNS} (
    run_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    status TEXT NOT NULL,  -- RUNNING, SUCCEEDED, FAILED
    row_count INTEGER,
    error_type TEXT,
    error_message TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS {RUN_LOCKS} (
    entity_type TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

# In-process locks keyed by (database path, entity type)
_process_locks: Dict[tuple, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def utc_now() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S.%f")


def _to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class Warehouse:
    """
    SQLite-backed store for crosswalks, merged records, conflicts, dimension
    versions and the batch execution log.

    Every public method opens its own connection unless an open transaction
    connection is passed in, so several writes can share one transaction.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)
        self.initialize()

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory, in autocommit mode."""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")  # Readers do not block the writer
        return conn

    def initialize(self) -> None:
        conn = self.get_connection()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction; commit on success, roll back on error."""
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _using(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    def _query(self, sql: str, params: Iterable = ()) -> List[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            return [dict(row) for row in conn.execute(sql, tuple(params)).fetchall()]
        finally:
            conn.close()

    def read_frame(self, sql: str, params: Iterable = ()) -> pd.DataFrame:
        """Run a read query and return the result as a pandas DataFrame."""
        conn = self.get_connection()
        try:
            return pd.read_sql_query(sql, conn, params=tuple(params))
        finally:
            conn.close()

    # =========================================================================
    # CROSSWALK AND ORPHANS
    # =========================================================================

    def replace_crosswalk(
        self,
        entity_type: str,
        batch_id: str,
        entries: List[Dict[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Delete-then-insert the crosswalk of one (entity_type, batch_id)."""
        with self._using(conn) as db:
            db.execute(
                f"DELETE FROM {CROSSWALK} WHERE entity_type = ? AND batch_id = ?",
                (entity_type, batch_id),
            )
            db.executemany(
                f"""
                INSERT INTO {CROSSWALK}
                    (entity_type, batch_id, master_id, source_a_ref, source_b_ref,
                     confidence, match_method, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        entity_type,
                        batch_id,
                        e["master_id"],
                        e.get("source_a_ref"),
                        e.get("source_b_ref"),
                        int(e["confidence"]),
                        e["match_method"],
                        format_timestamp(e.get("created_at") or utc_now()),
                    )
                    for e in entries
                ],
            )
        return len(entries)

    def replace_orphans(
        self,
        entity_type: str,
        batch_id: str,
        orphans: List[Dict[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        detected_at = format_timestamp(utc_now())
        with self._using(conn) as db:
            db.execute(
                f"DELETE FROM {ORPHANS} WHERE entity_type = ? AND batch_id = ?",
                (entity_type, batch_id),
            )
            db.executemany(
                f"""
                INSERT INTO {ORPHANS}
                    (entity_type, batch_id, source_system, source_record_id, reason, detected_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (entity_type, batch_id, o["source_system"], o.get("source_record_id"),
                     o["reason"], detected_at)
                    for o in orphans
                ],
            )
        return len(orphans)

    def read_crosswalk(self, entity_type: str, batch_id: str) -> List[Dict[str, Any]]:
        return self._query(
            f"""
            SELECT entity_type, batch_id, master_id, source_a_ref, source_b_ref,
                   confidence, match_method, created_at
            FROM {CROSSWALK}
            WHERE entity_type = ? AND batch_id = ?
            ORDER BY master_id
            """,
            (entity_type, batch_id),
        )

    # =========================================================================
    # MERGED RECORDS AND CONFLICTS
    # =========================================================================

    def replace_merged(
        self,
        entity_type: str,
        batch_id: str,
        records: List[Dict[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Delete-then-insert the staged merged records of one batch."""
        merged_at = format_timestamp(utc_now())
        with self._using(conn) as db:
            db.execute(
                f"DELETE FROM {MERGED} WHERE entity_type = ? AND batch_id = ?",
                (entity_type, batch_id),
            )
            db.executemany(
                f"""
                INSERT INTO {MERGED}
                    (entity_type, batch_id, master_id, source_system, match_confidence,
                     match_method, attributes_json, fingerprint_hash, dq_score,
                     dq_issues_json, conflict_fields_json, merged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        entity_type,
                        batch_id,
                        r["master_id"],
                        r["source_system"],
                        r.get("match_confidence"),
                        r.get("match_method"),
                        _to_json(r["attributes"]),
                        r["fingerprint_hash"],
                        int(r["dq_score"]),
                        _to_json(list(r.get("dq_issues") or [])),
                        _to_json(list(r.get("conflict_fields") or [])),
                        merged_at,
                    )
                    for r in records
                ],
            )
        return len(records)

    def read_merged(self, entity_type: str, batch_id: str) -> List[Dict[str, Any]]:
        rows = self._query(
            f"""
            SELECT * FROM {MERGED}
            WHERE entity_type = ? AND batch_id = ?
            ORDER BY master_id
            """,
            (entity_type, batch_id),
        )
        for row in rows:
            row["attributes"] = json.loads(row.pop("attributes_json"))
            row["dq_issues"] = json.loads(row.pop("dq_issues_json"))
            row["conflict_fields"] = json.loads(row.pop("conflict_fields_json"))
        return rows

    def insert_conflicts(
        self,
        entries: List[Dict[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """
        Append conflict entries, ignoring ones already logged.

        Returns:
            int: Number of entries actually inserted
        """
        logged_at = format_timestamp(utc_now())
        with self._using(conn) as db:
            before = db.total_changes
            db.executemany(
                f"""
                INSERT OR IGNORE INTO {CONFLICTS}
                    (entity_type, batch_id, entity_id, field, source_a_value,
                     source_b_value, resolved_value, resolution_rule, logged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        e["entity_type"],
                        e["batch_id"],
                        e["entity_id"],
                        e["field"],
                        e.get("source_a_value"),
                        e.get("source_b_value"),
                        e.get("resolved_value"),
                        e["resolution_rule"],
                        logged_at,
                    )
                    for e in entries
                ],
            )
            return db.total_changes - before

    def read_conflicts(self, entity_type: str, batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {CONFLICTS} WHERE entity_type = ?"
        params: List[Any] = [entity_type]
        if batch_id is not None:
            sql += " AND batch_id = ?"
            params.append(batch_id)
        return self._query(sql + " ORDER BY conflict_id", params)

    # =========================================================================
    # DIMENSION VERSIONS
    # =========================================================================

    def current_versions(self, entity_type: str) -> List[Dict[str, Any]]:
        """Current dimension rows of an entity type."""
        return self._query(
            f"""
            SELECT version_id, master_id, fingerprint_hash, effective_start, batch_id
            FROM {DIMENSION}
            WHERE entity_type = ? AND is_current = 1
            ORDER BY master_id
            """,
            (entity_type,),
        )

    def version_history(self, entity_type: str, master_id: str) -> List[Dict[str, Any]]:
        rows = self._query(
            f"""
            SELECT * FROM {DIMENSION}
            WHERE entity_type = ? AND master_id = ?
            ORDER BY effective_start, version_id
            """,
            (entity_type, master_id),
        )
        for row in rows:
            row["attributes"] = json.loads(row.pop("attributes_json"))
            row["is_current"] = bool(row["is_current"])
        return rows

    def apply_dimension_change(
        self,
        entity_type: str,
        master_id: str,
        fingerprint_hash: str,
        attributes: Dict[str, Any],
        batch_id: str,
        processed_at: datetime,
    ) -> str:
        """
        Bring one master id's dimension up to date in a single transaction.

        Re-reads the current row inside the transaction, then:
        - no current row: insert the first version
        - different fingerprint: close the current row and insert a new one
        - same fingerprint: write nothing

        Returns:
            str: 'INSERTED', 'CHANGED' or 'UNCHANGED'

        Raises:
            IntegrityViolation: If more than one current row exists
            InputError: If processed_at precedes the current row's effective_start
        """
        stamp = format_timestamp(processed_at)
        with self.transaction() as db:
            current = db.execute(
                f"""
                SELECT version_id, fingerprint_hash, effective_start FROM {DIMENSION}
                WHERE entity_type = ? AND master_id = ? AND is_current = 1
                """,
                (entity_type, master_id),
            ).fetchall()

            if len(current) > 1:
                raise IntegrityViolation(
                    f"{len(current)} current dimension versions", entity_type, batch_id, master_id
                )
            if current and current[0]["fingerprint_hash"] == fingerprint_hash:
                return "UNCHANGED"
            if current and stamp < current[0]["effective_start"]:
                raise InputError(
                    f"Processing time {stamp} precedes current version start "
                    f"{current[0]['effective_start']}",
                    entity_type, batch_id, master_id,
                )

            action = "INSERTED"
            if current:
                db.execute(
                    f"""
                    UPDATE {DIMENSION}
                    SET effective_end = ?, is_current = 0
                    WHERE version_id = ?
                    """,
                    (stamp, current[0]["version_id"]),
                )
                action = "CHANGED"

            db.execute(
                f"""
                INSERT INTO {DIMENSION}
                    (entity_type, master_id, attributes_json, fingerprint_hash,
                     effective_start, effective_end, is_current, batch_id)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (entity_type, master_id, _to_json(attributes), fingerprint_hash,
                 stamp, OPEN_END_SENTINEL, batch_id),
            )
            return action

    def duplicate_current_versions(self, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Master ids holding more than one current dimension row."""
        sql = f"""
            SELECT entity_type, master_id, COUNT(*) AS current_count
            FROM {DIMENSION}
            WHERE is_current = 1
        """
        params: List[Any] = []
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " GROUP BY entity_type, master_id HAVING COUNT(*) > 1"
        return self._query(sql, params)

    # =========================================================================
    # BATCH RUNS
    # =========================================================================

    def start_run(self, entity_type: str, batch_id: str) -> int:
        with self.transaction() as db:
            cursor = db.execute(
                f"""
                INSERT INTO {BATCH_RUNS} (entity_type, batch_id, status, started_at)
                VALUES (?, ?, ?, ?)
                """,
                (entity_type, batch_id, RUN_STATUS_RUNNING, format_timestamp(utc_now())),
            )
            return cursor.lastrowid

    def finish_run(
        self,
        run_id: int,
        status: str,
        row_count: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        with self.transaction() as db:
            db.execute(
                f"""
                UPDATE {BATCH_RUNS}
                SET status = ?, row_count = ?, error_type = ?, error_message = ?, finished_at = ?
                WHERE run_id = ?
                """,
                (
                    status,
                    row_count,
                    type(error).__name__ if error is not None else None,
                    str(error) if error is not None else None,
                    format_timestamp(utc_now()),
                    run_id,
                ),
            )

    def latest_run(self, entity_type: str, batch_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            f"""
            SELECT * FROM {BATCH_RUNS}
            WHERE entity_type = ? AND batch_id = ?
            ORDER BY run_id DESC
            LIMIT 1
            """,
            (entity_type, batch_id),
        )
        return rows[0] if rows else None

    def is_batch_ready(self, entity_type: str, batch_id: str) -> bool:
        """True when the latest run of (entity_type, batch_id) succeeded."""
        run = self.latest_run(entity_type, batch_id)
        return run is not None and run["status"] == RUN_STATUS_SUCCEEDED

    # =========================================================================
    # RUN LOCK
    # =========================================================================

    def _process_lock(self, entity_type: str) -> threading.Lock:
        key = (os.path.abspath(self.db_path), entity_type)
        with _process_locks_guard:
            if key not in _process_locks:
                _process_locks[key] = threading.Lock()
            return _process_locks[key]

    def _try_lease(self, entity_type: str, owner: str, ttl_seconds: float) -> bool:
        now = utc_now()
        with self.transaction() as db:
            row = db.execute(
                f"SELECT owner, expires_at FROM {RUN_LOCKS} WHERE entity_type = ?",
                (entity_type,),
            ).fetchone()
            if row is not None and row["expires_at"] > format_timestamp(now):
                return False
            if row is not None:
                logger.warning(
                    "Taking over stale run lock of %s held by %s", entity_type, row["owner"]
                )
            db.execute(
                f"""
                INSERT OR REPLACE INTO {RUN_LOCKS} (entity_type, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (entity_type, owner, format_timestamp(now),
                 format_timestamp(now + timedelta(seconds=ttl_seconds))),
            )
            return True

    @contextmanager
    def run_lock(
        self,
        entity_type: str,
        timeout: float = RUN_LOCK_TIMEOUT_SECONDS,
        poll_interval: float = RUN_LOCK_POLL_SECONDS,
        ttl_seconds: float = RUN_LOCK_TTL_SECONDS,
    ) -> Iterator[str]:
        """
        Serialize runs of one entity type.

        Holds an in-process lock plus a lease row in run_locks; leases past
        their TTL are taken over.

        Raises:
            RunLockTimeout: If the lock is not acquired within ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout
        local_lock = self._process_lock(entity_type)
        if not local_lock.acquire(timeout=max(timeout, 0)):
            raise RunLockTimeout(f"Run lock not acquired within {timeout}s", entity_type)

        owner = f"{os.getpid()}-{uuid.uuid4().hex}"
        try:
            while not self._try_lease(entity_type, owner, ttl_seconds):
                if time.monotonic() >= deadline:
                    raise RunLockTimeout(f"Run lock not acquired within {timeout}s", entity_type)
                time.sleep(poll_interval)

            try:
                yield owner
            finally:
                with self.transaction() as db:
                    db.execute(
                        f"DELETE FROM {RUN_LOCKS} WHERE entity_type = ? AND owner = ?",
                        (entity_type, owner),
                    )
        finally:
            local_lock.release()
