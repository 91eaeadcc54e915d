"""
Gold Layer: SCD Type 2 Historization Module.

This module keeps one versioned dimension row history per master id.

State Machine (per master id):
- NO_VERSION -> CURRENT: insert the first version
- CURRENT -> CURRENT (new row): fingerprint changed; close the current row
  and insert a new one in the same transaction
- CURRENT -> CURRENT (no-op): fingerprint unchanged; nothing is written

Changes are planned set-based in Spark (merged records left-joined to the
current rows) and applied one master id at a time. Each application
re-reads the current row inside its own transaction.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.functions import col, lit, when

from ..errors import InputError
from ..warehouse import format_timestamp

logger = logging.getLogger(__name__)

CURRENT_SCHEMA = "master_id string, fingerprint_hash string, effective_start string"
STAGED_SCHEMA = "master_id string, fingerprint_hash string, attributes_json string"


class HistorizationResult:
    """Counts of the dimension writes made for one batch."""

    def __init__(self, inserted: int = 0, changed: int = 0, unchanged: int = 0):
        self.inserted = inserted
        self.changed = changed
        self.unchanged = unchanged

    @property
    def versions_opened(self) -> int:
        return self.inserted + self.changed

    @property
    def versions_closed(self) -> int:
        return self.changed

    def __repr__(self):
        return (
            f"HistorizationResult(inserted={self.inserted}, changed={self.changed}, "
            f"unchanged={self.unchanged})"
        )


def current_dimension_frame(spark: SparkSession, warehouse, entity_type: str) -> DataFrame:
    """Current dimension rows of an entity type as a Spark DataFrame."""
    rows = [
        (r["master_id"], r["fingerprint_hash"], r["effective_start"])
        for r in warehouse.current_versions(entity_type)
    ]
    return spark.createDataFrame(rows, CURRENT_SCHEMA)


def staged_records_frame(spark: SparkSession, warehouse, entity_type: str, batch_id: str) -> DataFrame:
    """Staged merged records of a batch, ready for change planning."""
    rows = [
        (r["master_id"], r["fingerprint_hash"], json.dumps(r["attributes"], sort_keys=True))
        for r in warehouse.read_merged(entity_type, batch_id)
    ]
    return spark.createDataFrame(rows, STAGED_SCHEMA)


def plan_dimension_changes(merged_df: DataFrame, current_df: DataFrame) -> DataFrame:
    """
    Classify every merged record against the current dimension.

    Returns:
        DataFrame: merged_df plus ``current_effective_start`` and an
        ``action`` column (INSERT, CHANGE or UNCHANGED)
    """
    current = current_df.select(
        col("master_id").alias("current_master_id"),
        col("fingerprint_hash").alias("current_fingerprint"),
        col("effective_start").alias("current_effective_start"),
    )
    joined = merged_df.join(current, col("master_id") == col("current_master_id"), "left")

    action = (
        when(col("current_master_id").isNull(), lit("INSERT"))
        .when(col("fingerprint_hash") != col("current_fingerprint"), lit("CHANGE"))
        .otherwise(lit("UNCHANGED"))
    )
    return joined.withColumn("action", action).drop("current_master_id", "current_fingerprint")


def historize(
    plan_df: DataFrame,
    warehouse,
    entity_type: str,
    batch_id: str,
    processed_at: datetime,
) -> HistorizationResult:
    """
    Apply planned dimension changes.

    Each master id is applied in its own transaction, which re-checks the
    current row, so a stale plan never opens a duplicate version.

    Args:
        plan_df: Output of plan_dimension_changes over staged records
            (master_id, fingerprint_hash, attributes_json)
        warehouse: Warehouse holding the dimension
        entity_type: Entity type being historized
        batch_id: Batch identifier stamped on new versions
        processed_at: Effective start of new versions and end of closed ones

    Returns:
        HistorizationResult

    Raises:
        IntegrityViolation: If a master id has more than one current row
        InputError: If processed_at precedes the start of a version it
            would close; nothing is written
    """
    stamp = format_timestamp(processed_at)
    out_of_order = plan_df.filter(
        (col("action") == "CHANGE") & (col("current_effective_start") > lit(stamp))
    ).count()
    if out_of_order:
        raise InputError(
            f"Processing time {stamp} precedes the current version of "
            f"{out_of_order} master ids",
            entity_type,
            batch_id,
        )

    result = HistorizationResult()
    pending = (
        plan_df.filter(col("action") != "UNCHANGED")
               .select("master_id", "fingerprint_hash", "attributes_json")
               .orderBy("master_id")
               .collect()
    )
    result.unchanged = plan_df.filter(col("action") == "UNCHANGED").count()

    for row in pending:
        action = warehouse.apply_dimension_change(
            entity_type=entity_type,
            master_id=row["master_id"],
            fingerprint_hash=row["fingerprint_hash"],
            attributes=json.loads(row["attributes_json"]),
            batch_id=batch_id,
            processed_at=processed_at,
        )
        if action == "INSERTED":
            result.inserted += 1
        elif action == "CHANGED":
            result.changed += 1
        else:
            result.unchanged += 1

    logger.info(
        "Historized %s batch %s: %d inserted, %d changed, %d unchanged",
        entity_type, batch_id, result.inserted, result.changed, result.unchanged,
    )
    return result


def verify_dimension_integrity(warehouse, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Report master ids holding more than one current dimension row.

    Returns:
        List of {entity_type, master_id, current_count}; empty when healthy
    """
    duplicates = warehouse.duplicate_current_versions(entity_type)
    for dup in duplicates:
        logger.critical(
            "%s %s has %d current dimension versions",
            dup["entity_type"], dup["master_id"], dup["current_count"],
        )
    return duplicates
