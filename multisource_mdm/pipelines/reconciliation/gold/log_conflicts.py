"""
Gold Layer: Conflict Logging Module.

This module turns the conflict arrays carried by merged records into
conflict log entries and appends them to the warehouse.

The conflict log is append-only. Replaying a batch never duplicates an entry
because (entity_type, batch_id, entity_id, field) is unique and repeated
inserts are ignored.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pyspark.sql import DataFrame
from pyspark.sql.functions import col, explode

from ....config.settings import SOURCE_SYSTEMS

logger = logging.getLogger(__name__)

RESOLUTION_PREFIX = "PREFER_"


def extract_conflicts(merged_df: DataFrame) -> DataFrame:
    """
    Explode merged records' conflicts into one row per conflicting field.

    Returns:
        DataFrame: entity_type, batch_id, entity_id, field, source_a_value,
        source_b_value, resolved_value, resolution_rule
    """
    exploded = merged_df.select(
        col("entity_type"),
        col("batch_id"),
        col("master_id").alias("entity_id"),
        explode(col("conflicts")).alias("conflict"),
    )
    return exploded.select(
        col("entity_type"),
        col("batch_id"),
        col("entity_id"),
        col("conflict.field").alias("field"),
        col("conflict.source_a_value").alias("source_a_value"),
        col("conflict.source_b_value").alias("source_b_value"),
        col("conflict.resolved_value").alias("resolved_value"),
        col("conflict.resolution_rule").alias("resolution_rule"),
    )


class ConflictLogger:
    """Appends conflict entries to the warehouse conflict log."""

    def __init__(self, warehouse, source_systems: Optional[Dict[str, str]] = None):
        self.warehouse = warehouse
        self.source_systems = source_systems or SOURCE_SYSTEMS

    def append(self, entries: Iterable[Mapping[str, Any]], conn=None) -> int:
        """
        Append conflict entries.

        Args:
            entries: Conflict entries (mappings with the log columns)
            conn: Open warehouse transaction to write in, if any

        Returns:
            int: Number of new entries (already logged ones are skipped)
        """
        rows = [dict(entry) for entry in entries]
        inserted = self.warehouse.insert_conflicts(rows, conn=conn)
        if rows and inserted < len(rows):
            logger.info("Skipped %d already logged conflicts", len(rows) - inserted)
        return inserted

    def append_frame(self, conflicts_df: DataFrame, conn=None) -> int:
        return self.append((row.asDict() for row in conflicts_df.collect()), conn=conn)

    def audit(self, entity_type: str, batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Check that every logged resolution kept the preferred source's value.

        Returns:
            List of conflict entries whose resolved_value differs from the
            value of the source named by their resolution rule
        """
        source_columns = {
            self.source_systems["source_a"]: "source_a_value",
            self.source_systems["source_b"]: "source_b_value",
        }
        violations = []
        for entry in self.warehouse.read_conflicts(entity_type, batch_id):
            preferred = entry["resolution_rule"][len(RESOLUTION_PREFIX):]
            column = source_columns.get(preferred)
            if column is None or entry[column] != entry["resolved_value"]:
                violations.append(entry)

        if violations:
            logger.error("%d conflict resolutions disagree with their rule", len(violations))
        return violations
