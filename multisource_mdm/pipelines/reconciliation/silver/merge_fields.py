"""
Silver Layer: Field Merge Module.

This module produces one merged record per crosswalk master id by resolving
every field from the two sources' latest records.

Resolution Rules (per field, from the entity policy):
1. Normalize each source's value (trim, case, phone digits, code mappings)
2. Take the primary source's value (entity-level primary, or the field's
   own primary_source override)
3. Fall back to the other source when the primary value is null
4. Fall back to the field's configured default when both are null

For each tracked field where both sources supply different non-null values,
a conflict entry records both values, the kept value and the resolution rule.
The merged record also carries a fingerprint of its tracked fields and its
data quality score.
"""

import logging
from typing import Dict, List, Optional

from pyspark.sql import Column, DataFrame
from pyspark.sql.functions import (
    array,
    coalesce,
    col,
    concat_ws,
    filter as array_filter,
    lit,
    md5,
    struct,
    transform,
    when,
)

from ..errors import DependencyNotReadyError
from ..gold.score_quality import QualityRule, quality_issues_column, quality_score_column
from ..policy import EntityPolicy
from .build_crosswalk import latest_per_key
from .normalize_fields import derived_column, normalize_column

logger = logging.getLogger(__name__)


def _side_prefix(policy: EntityPolicy, source_system: str) -> str:
    return "a__" if source_system == policy.source_a else "b__"


def _collapse_side(records: DataFrame, policy: EntityPolicy, prefix: str) -> DataFrame:
    """Latest record per natural key, with every column prefixed by side."""
    latest = latest_per_key(records.filter(col("natural_key").isNotNull()))
    return latest.select(
        col("natural_key").alias(f"{prefix}natural_key"),
        col("source_record_id").alias(f"{prefix}source_record_id"),
        *[col(f.name).alias(f"{prefix}{f.name}") for f in policy.fields],
    )


def fingerprint_column(fields: List[str]) -> Column:
    """MD5 over the fields in order, nulls hashed as empty strings."""
    parts = [coalesce(col(name).cast("string"), lit("")) for name in fields]
    return md5(concat_ws("||", *parts))


def _conflicts_column(policy: EntityPolicy) -> Column:
    entries = []
    for rule in policy.conflict_fields:
        a_value = col(f"a__{rule.name}")
        b_value = col(f"b__{rule.name}")
        differs = a_value.isNotNull() & b_value.isNotNull() & (a_value != b_value)
        entries.append(when(differs, struct(
            lit(rule.name).alias("field"),
            a_value.cast("string").alias("source_a_value"),
            b_value.cast("string").alias("source_b_value"),
            col(rule.name).cast("string").alias("resolved_value"),
            lit(policy.resolution_rule(rule)).alias("resolution_rule"),
        )))
    return array_filter(array(*entries), lambda entry: entry.isNotNull())


def merge_entity_records(
    crosswalk_df: DataFrame,
    source_a_records: DataFrame,
    source_b_records: DataFrame,
    policy: EntityPolicy,
    quality_rules: List[QualityRule],
    batch_id: str,
    reference_frames: Optional[Dict[str, DataFrame]] = None,
) -> DataFrame:
    """
    Merge both sources' records into one record per master id.

    Args:
        crosswalk_df: Crosswalk entries of the batch
        source_a_records: Prepared source A records
        source_b_records: Prepared source B records
        policy: System-of-record policy of the entity type
        quality_rules: Critical-field rules of the entity type
        batch_id: Batch identifier
        reference_frames: Current master ids of referenced entity types
            (entity type -> DataFrame with a master_id column)

    Returns:
        DataFrame: entity_type, batch_id, master_id, source_system,
        match_confidence, match_method, one column per attribute,
        fingerprint_hash, dq_score, dq_issues, conflicts, conflict_fields

    Raises:
        DependencyNotReadyError: If the batch has no crosswalk entries
    """
    if not crosswalk_df.head(1):
        raise DependencyNotReadyError(
            "No crosswalk entries for batch", policy.entity_type, batch_id
        )
    reference_frames = reference_frames or {}

    side_a = _collapse_side(source_a_records, policy, "a__")
    side_b = _collapse_side(source_b_records, policy, "b__")

    joined = (
        crosswalk_df.select(
            "master_id", "source_a_ref", "source_b_ref", "confidence", "match_method"
        )
        .join(
            side_a,
            (col("master_id") == col("a__natural_key"))
            & (col("source_a_ref") == col("a__source_record_id")),
            "left",
        )
        .join(
            side_b,
            (col("master_id") == col("b__natural_key"))
            & (col("source_b_ref") == col("b__source_record_id")),
            "left",
        )
    )

    # A master id always needs a contributing source record
    matched = col("a__natural_key").isNotNull() | col("b__natural_key").isNotNull()
    dropped = joined.filter(~matched).count()
    if dropped:
        logger.warning(
            "Dropped %d %s crosswalk entries of batch %s with no matching source record",
            dropped, policy.entity_type, batch_id,
        )
    df = joined.filter(matched)

    # Normalize each side, then resolve primary -> fallback -> default
    for rule in policy.fields:
        for source_system in (policy.source_a, policy.source_b):
            name = f"{_side_prefix(policy, source_system)}{rule.name}"
            df = df.withColumn(name, normalize_column(col(name), rule, source_system, policy))

        primary = col(f"{_side_prefix(policy, policy.primary_for(rule))}{rule.name}")
        fallback = col(f"{_side_prefix(policy, policy.fallback_for(rule))}{rule.name}")
        candidates = [primary, fallback]
        if rule.default is not None:
            candidates.append(lit(rule.default).cast(rule.dtype))
        df = df.withColumn(rule.name, coalesce(*candidates))

    for ref in policy.references:
        current = reference_frames.get(ref.entity_type)
        if current is None:
            logger.warning(
                "No current %s dimension supplied; %s left null", ref.entity_type, ref.name
            )
            df = df.withColumn(ref.name, lit(None).cast("string"))
            continue
        lookup = current.select(col("master_id").cast("string").alias(ref.name)).distinct()
        df = df.join(lookup, col(ref.field) == col(ref.name), "left")

    for derived in policy.derived:
        df = df.withColumn(derived.name, derived_column(derived.fields, derived.separator))

    provenance = (
        when(col("a__natural_key").isNotNull() & col("b__natural_key").isNotNull(),
             lit(f"{policy.source_a}_{policy.source_b}_MERGED"))
        .when(col("a__natural_key").isNotNull(), lit(policy.source_a))
        .otherwise(lit(policy.source_b))
    )

    df = (
        df.withColumn("source_system", provenance)
          .withColumn("fingerprint_hash", fingerprint_column(policy.tracked_fields))
          .withColumn("dq_score", quality_score_column(quality_rules))
          .withColumn("dq_issues", quality_issues_column(quality_rules))
          .withColumn("conflicts", _conflicts_column(policy))
          .withColumn("conflict_fields", transform(col("conflicts"), lambda entry: entry["field"]))
    )

    return df.select(
        lit(policy.entity_type).alias("entity_type"),
        lit(batch_id).alias("batch_id"),
        col("master_id"),
        col("source_system"),
        col("confidence").alias("match_confidence"),
        col("match_method"),
        *[col(name) for name in policy.attribute_names],
        col("fingerprint_hash"),
        col("dq_score"),
        col("dq_issues"),
        col("conflicts"),
        col("conflict_fields"),
    )
