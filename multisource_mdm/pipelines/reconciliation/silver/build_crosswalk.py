"""
Silver Layer: Crosswalk Builder Module.

This module matches the source records of the two source systems on their
natural key and assigns one master identifier per distinct key.

Matching Rules:
1. Within each source, keep the most recently ingested record per key
   (ties broken by source_record_id, then by record hash, both descending)
2. Full outer join of the two collapsed sets on the natural key
3. master_id = coalesce(key_a, key_b)
4. Confidence 100 (BOTH_EXACT) when the key is in both sources,
   90 (SOURCE_A_ONLY / SOURCE_B_ONLY) when it is in one

Records with a null or blank natural key are excluded from matching and
reported as orphans.
"""

import re
from typing import Dict, Optional, Tuple

from pyspark.sql import DataFrame
from pyspark.sql.functions import (
    coalesce,
    col,
    current_timestamp,
    lit,
    row_number,
    when,
)
from pyspark.sql.window import Window

from ....config.settings import BATCH_ID_PATTERN, MATCH_CONFIDENCE
from ..errors import InputError

ORPHAN_REASON_MISSING_KEY = "MISSING_NATURAL_KEY"


class CrosswalkResult:
    """Crosswalk entries and the orphan records excluded from matching."""

    def __init__(self, entries: DataFrame, orphans: DataFrame):
        self.entries = entries
        self.orphans = orphans


def validate_batch_id(batch_id: Optional[str], entity_type: Optional[str] = None) -> str:
    """Reject empty or malformed batch identifiers."""
    if not batch_id or not re.fullmatch(BATCH_ID_PATTERN, batch_id):
        raise InputError(f"Invalid batch id {batch_id!r}", entity_type, batch_id)
    return batch_id


def split_orphans(df: DataFrame) -> Tuple[DataFrame, DataFrame]:
    """
    Separate records without a natural key.

    Returns:
        Tuple of (matchable records, orphan records). Orphans carry
        entity_type, batch_id, source_system, source_record_id and reason.
    """
    matchable = df.filter(col("natural_key").isNotNull())
    orphans = df.filter(col("natural_key").isNull()).select(
        col("entity_type"),
        col("batch_id"),
        col("source_system"),
        col("source_record_id"),
        lit(ORPHAN_REASON_MISSING_KEY).alias("reason"),
    )
    return matchable, orphans


def latest_per_key(df: DataFrame) -> DataFrame:
    """
    Collapse a source to its most recently ingested record per natural key.

    Uses a window ranked by ingestion time, then source_record_id, then
    record hash (all descending) and keeps the top row.
    """
    window_spec = (
        Window.partitionBy(col("natural_key"))
              .orderBy(
                  col("ingestion_time").desc(),
                  col("source_record_id").desc(),
                  col("_record_hash").desc(),
              )
    )
    df_ranked = df.withColumn("row_num", row_number().over(window_spec))
    return df_ranked.filter(col("row_num") == 1).drop("row_num")


def build_crosswalk(
    source_a_df: DataFrame,
    source_b_df: DataFrame,
    entity_type: str,
    batch_id: str,
    confidence: Optional[Dict[str, int]] = None,
) -> CrosswalkResult:
    """
    Match two sources' records on the natural key.

    Args:
        source_a_df: Prepared source A records for the batch
        source_b_df: Prepared source B records for the batch
        entity_type: Entity type being matched
        batch_id: Batch identifier
        confidence: Confidence per match method (defaults to MATCH_CONFIDENCE)

    Returns:
        CrosswalkResult: entries (entity_type, batch_id, master_id,
        source_a_ref, source_b_ref, confidence, match_method, created_at)
        and orphans

    Raises:
        InputError: If batch_id is empty or malformed
    """
    validate_batch_id(batch_id, entity_type)
    confidence = confidence or MATCH_CONFIDENCE

    a_valid, a_orphans = split_orphans(source_a_df)
    b_valid, b_orphans = split_orphans(source_b_df)

    a_latest = latest_per_key(a_valid).select(
        col("natural_key").alias("key_a"),
        col("source_record_id").alias("source_a_ref"),
    )
    b_latest = latest_per_key(b_valid).select(
        col("natural_key").alias("key_b"),
        col("source_record_id").alias("source_b_ref"),
    )

    matched = a_latest.join(b_latest, col("key_a") == col("key_b"), "full_outer")

    match_method = (
        when(col("key_a").isNotNull() & col("key_b").isNotNull(), lit("BOTH_EXACT"))
        .when(col("key_a").isNotNull(), lit("SOURCE_A_ONLY"))
        .otherwise(lit("SOURCE_B_ONLY"))
    )

    entries = (
        matched
        .withColumn("match_method", match_method)
        .select(
            lit(entity_type).alias("entity_type"),
            lit(batch_id).alias("batch_id"),
            coalesce(col("key_a"), col("key_b")).alias("master_id"),
            col("source_a_ref"),
            col("source_b_ref"),
            when(col("match_method") == "BOTH_EXACT", lit(confidence["BOTH_EXACT"]))
            .when(col("match_method") == "SOURCE_A_ONLY", lit(confidence["SOURCE_A_ONLY"]))
            .otherwise(lit(confidence["SOURCE_B_ONLY"]))
            .alias("confidence"),
            col("match_method"),
            current_timestamp().alias("created_at"),
        )
    )

    return CrosswalkResult(entries, a_orphans.unionByName(b_orphans))
