"""
Batch Processor for the Reconciliation Pipeline

This module runs one (entity type, batch) through every layer:

    Source Adapter -> Crosswalk Builder -> Field Merge (+ quality scoring,
    + conflict logging) -> SCD Historization

Each step is public so a scheduler can run them separately. A run is
recorded in batch_runs; entity types that depend on others refuse to run
until their upstream batch has succeeded. Runs of one entity type are
serialized by the warehouse run lock.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pyspark.sql import DataFrame, SparkSession

from ...config.settings import RUN_LOCK_TIMEOUT_SECONDS, ROLLING_WINDOW_DAYS
from .bronze.ingest_source_records import SourceAdapter, prepare_source_records
from .errors import (
    ConfigurationError,
    DependencyNotReadyError,
    InputError,
    IntegrityViolation,
    ReconciliationError,
    RunLockTimeout,
)
from .gold.historize_dimension import (
    HistorizationResult,
    current_dimension_frame,
    historize,
    plan_dimension_changes,
    staged_records_frame,
)
from .gold.log_conflicts import ConflictLogger, extract_conflicts
from .policy import EntityPolicy, load_entity_policy, load_quality_rules
from .silver.build_crosswalk import build_crosswalk, validate_batch_id
from .silver.merge_fields import merge_entity_records
from .warehouse import RUN_STATUS_FAILED, RUN_STATUS_SUCCEEDED, Warehouse, utc_now

logger = logging.getLogger(__name__)

CROSSWALK_SCHEMA = (
    "entity_type string, batch_id string, master_id string, source_a_ref string, "
    "source_b_ref string, confidence int, match_method string"
)


class BatchResult:
    """Outcome of one process_batch call."""

    def __init__(
        self,
        entity_type: str,
        batch_id: str,
        status: str,
        row_count: int = 0,
        error: Optional[ReconciliationError] = None,
        crosswalk_count: int = 0,
        orphan_count: int = 0,
        conflict_count: int = 0,
        versions_opened: int = 0,
        versions_closed: int = 0,
    ):
        self.entity_type = entity_type
        self.batch_id = batch_id
        self.status = status
        self.row_count = row_count
        self.error = error
        self.crosswalk_count = crosswalk_count
        self.orphan_count = orphan_count
        self.conflict_count = conflict_count
        self.versions_opened = versions_opened
        self.versions_closed = versions_closed

    @property
    def succeeded(self) -> bool:
        return self.status == RUN_STATUS_SUCCEEDED

    def __repr__(self):
        return (
            f"BatchResult(entity_type={self.entity_type!r}, batch_id={self.batch_id!r}, "
            f"status={self.status!r}, row_count={self.row_count}, error={self.error!r})"
        )


class BatchProcessor:
    """
    Runs crosswalk, merge and historization for one entity type and batch.
    """

    def __init__(
        self,
        spark: SparkSession,
        source_adapter: SourceAdapter,
        warehouse: Warehouse,
        policies: Optional[Dict[str, Any]] = None,
        field_mappings: Optional[Dict[str, Any]] = None,
        code_mappings: Optional[Dict[str, Any]] = None,
        quality_rules: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        source_systems: Optional[Dict[str, str]] = None,
        window_days: Optional[int] = ROLLING_WINDOW_DAYS,
        lock_timeout: float = RUN_LOCK_TIMEOUT_SECONDS,
    ):
        """
        Args:
            spark: Active SparkSession
            source_adapter: Supplies raw rows per entity type and source
            warehouse: Warehouse receiving every output table
            policies: System-of-record policies (defaults to ENTITY_POLICIES)
            field_mappings: Per-source column mappings (defaults to FIELD_MAPPINGS)
            code_mappings: Code value mappings (defaults to CODE_MAPPINGS)
            quality_rules: Critical-field rules (defaults to DQ_RULES)
            source_systems: Source labels (defaults to SOURCE_SYSTEMS)
            window_days: Rolling recency window in days (None disables it)
            lock_timeout: Seconds to wait for the entity type's run lock
        """
        self.spark = spark
        self.source_adapter = source_adapter
        self.warehouse = warehouse
        self.policies = policies
        self.field_mappings = field_mappings
        self.code_mappings = code_mappings
        self.quality_rules = quality_rules
        self.source_systems = source_systems
        self.window_days = window_days
        self.lock_timeout = lock_timeout
        self.conflict_logger = ConflictLogger(warehouse, source_systems)

    # =========================================================================
    # POLICY AND SOURCES
    # =========================================================================

    def policy_for(self, entity_type: str) -> EntityPolicy:
        return load_entity_policy(
            entity_type,
            policies=self.policies,
            field_mappings=self.field_mappings,
            code_mappings=self.code_mappings,
            source_systems=self.source_systems,
        )

    def window_start(self, as_of: datetime) -> Optional[datetime]:
        if self.window_days is None:
            return None
        return as_of - timedelta(days=self.window_days)

    def load_sources(
        self,
        policy: EntityPolicy,
        batch_id: str,
        as_of: Optional[datetime] = None,
    ) -> Tuple[DataFrame, DataFrame]:
        """Read and standardize both sources' records for the batch."""
        window_start = self.window_start(as_of or utc_now())
        frames = []
        for source_system in (policy.source_a, policy.source_b):
            raw = self.source_adapter.read(policy.entity_type, source_system, batch_id)
            frames.append(prepare_source_records(raw, policy, source_system, batch_id, window_start))
        return frames[0], frames[1]

    def check_dependencies(self, policy: EntityPolicy, batch_id: str) -> None:
        for upstream in policy.depends_on:
            if not self.warehouse.is_batch_ready(upstream, batch_id):
                raise DependencyNotReadyError(
                    f"Upstream entity type '{upstream}' has not succeeded for this batch",
                    policy.entity_type,
                    batch_id,
                )

    # =========================================================================
    # STEPS
    # =========================================================================

    def _crosswalk_rows(
        self,
        policy: EntityPolicy,
        source_a: DataFrame,
        source_b: DataFrame,
        batch_id: str,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        result = build_crosswalk(source_a, source_b, policy.entity_type, batch_id)
        entries = [row.asDict() for row in result.entries.collect()]
        orphans = [row.asDict() for row in result.orphans.collect()]
        if orphans:
            logger.warning(
                "%d %s records in batch %s have no natural key",
                len(orphans), policy.entity_type, batch_id,
            )
        return entries, orphans

    def _merged_rows(
        self,
        policy: EntityPolicy,
        crosswalk_entries: List[Dict[str, Any]],
        source_a: DataFrame,
        source_b: DataFrame,
        batch_id: str,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Merge the batch against a crosswalk; returns (records, conflicts)."""
        entity_type = policy.entity_type
        if not crosswalk_entries:
            raise DependencyNotReadyError("No crosswalk entries for batch", entity_type, batch_id)

        rules = load_quality_rules(entity_type, self.quality_rules)
        crosswalk_df = self.spark.createDataFrame(
            [
                (entity_type, batch_id, e["master_id"], e["source_a_ref"],
                 e["source_b_ref"], int(e["confidence"]), e["match_method"])
                for e in crosswalk_entries
            ],
            CROSSWALK_SCHEMA,
        )
        reference_frames = {
            ref.entity_type: current_dimension_frame(self.spark, self.warehouse, ref.entity_type)
            for ref in policy.references
        }

        merged = merge_entity_records(
            crosswalk_df, source_a, source_b, policy, rules, batch_id, reference_frames
        ).cache()
        try:
            records = []
            for row in merged.collect():
                records.append({
                    "master_id": row["master_id"],
                    "source_system": row["source_system"],
                    "match_confidence": row["match_confidence"],
                    "match_method": row["match_method"],
                    "attributes": {name: row[name] for name in policy.attribute_names},
                    "fingerprint_hash": row["fingerprint_hash"],
                    "dq_score": row["dq_score"],
                    "dq_issues": row["dq_issues"],
                    "conflict_fields": row["conflict_fields"],
                })
            conflicts = [row.asDict() for row in extract_conflicts(merged).collect()]
        finally:
            merged.unpersist()
        return records, conflicts

    def build_crosswalk_step(
        self,
        entity_type: str,
        batch_id: str,
        as_of: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """
        Build and store the crosswalk of a batch.

        The batch's staged merged records are cleared in the same
        transaction, since they were merged against the previous crosswalk.

        Returns:
            Tuple of (crosswalk entry count, orphan count)
        """
        validate_batch_id(batch_id, entity_type)
        policy = self.policy_for(entity_type)
        source_a, source_b = self.load_sources(policy, batch_id, as_of)
        entries, orphans = self._crosswalk_rows(policy, source_a, source_b, batch_id)

        with self.warehouse.transaction() as conn:
            self.warehouse.replace_crosswalk(entity_type, batch_id, entries, conn=conn)
            self.warehouse.replace_orphans(entity_type, batch_id, orphans, conn=conn)
            self.warehouse.replace_merged(entity_type, batch_id, [], conn=conn)

        logger.info("Crosswalk %s batch %s: %d entries", entity_type, batch_id, len(entries))
        return len(entries), len(orphans)

    def merge_step(
        self,
        entity_type: str,
        batch_id: str,
        as_of: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """
        Merge the batch against its stored crosswalk and log its conflicts.

        Returns:
            Tuple of (merged record count, conflict count)

        Raises:
            DependencyNotReadyError: If the batch has no crosswalk
        """
        validate_batch_id(batch_id, entity_type)
        policy = self.policy_for(entity_type)
        entries = self.warehouse.read_crosswalk(entity_type, batch_id)
        if not entries:
            raise DependencyNotReadyError("No crosswalk entries for batch", entity_type, batch_id)

        source_a, source_b = self.load_sources(policy, batch_id, as_of)
        records, conflicts = self._merged_rows(policy, entries, source_a, source_b, batch_id)

        with self.warehouse.transaction() as conn:
            self.warehouse.replace_merged(entity_type, batch_id, records, conn=conn)
            self.conflict_logger.append(conflicts, conn=conn)

        logger.info(
            "Merged %s batch %s: %d records, %d conflicts",
            entity_type, batch_id, len(records), len(conflicts),
        )
        return len(records), len(conflicts)

    def reconcile_step(
        self,
        entity_type: str,
        batch_id: str,
        as_of: Optional[datetime] = None,
    ) -> Tuple[int, int, int, int]:
        """
        Build the crosswalk and merge in memory, then store both together.

        Crosswalk, orphans, staged records and conflicts are written in one
        transaction, so a batch that fails to merge keeps its previous
        crosswalk and staging.

        Returns:
            Tuple of (crosswalk entries, orphans, merged records, conflicts)

        Raises:
            DependencyNotReadyError: If the batch has no matchable records
        """
        validate_batch_id(batch_id, entity_type)
        policy = self.policy_for(entity_type)
        source_a, source_b = self.load_sources(policy, batch_id, as_of)

        entries, orphans = self._crosswalk_rows(policy, source_a, source_b, batch_id)
        records, conflicts = self._merged_rows(policy, entries, source_a, source_b, batch_id)

        with self.warehouse.transaction() as conn:
            self.warehouse.replace_crosswalk(entity_type, batch_id, entries, conn=conn)
            self.warehouse.replace_orphans(entity_type, batch_id, orphans, conn=conn)
            self.warehouse.replace_merged(entity_type, batch_id, records, conn=conn)
            self.conflict_logger.append(conflicts, conn=conn)

        logger.info(
            "Reconciled %s batch %s: %d crosswalk entries, %d merged, %d conflicts",
            entity_type, batch_id, len(entries), len(records), len(conflicts),
        )
        return len(entries), len(orphans), len(records), len(conflicts)

    def historize_step(
        self,
        entity_type: str,
        batch_id: str,
        processed_at: Optional[datetime] = None,
    ) -> HistorizationResult:
        """
        Apply the batch's staged records to the versioned dimension.

        Raises:
            DependencyNotReadyError: If the batch has no staged records
            IntegrityViolation: If a master id has more than one current row
        """
        validate_batch_id(batch_id, entity_type)
        staged = staged_records_frame(self.spark, self.warehouse, entity_type, batch_id)
        if not staged.head(1):
            raise DependencyNotReadyError("No staged records for batch", entity_type, batch_id)

        current = current_dimension_frame(self.spark, self.warehouse, entity_type)
        plan = plan_dimension_changes(staged, current)
        return historize(plan, self.warehouse, entity_type, batch_id, processed_at or utc_now())

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def process_batch(
        self,
        entity_type: str,
        batch_id: str,
        as_of: Optional[datetime] = None,
    ) -> BatchResult:
        """
        Run crosswalk, merge and historization for one entity type and batch.

        Args:
            entity_type: Entity type to process (e.g. 'veteran')
            batch_id: Batch identifier
            as_of: Processing time; anchors the recency window and the
                effective dates of new versions (defaults to now, UTC)

        Returns:
            BatchResult: SUCCEEDED, or FAILED with the typed error attached

        Raises:
            Exception: Unexpected errors, after the run is marked FAILED
        """
        try:
            validate_batch_id(batch_id, entity_type)
            policy = self.policy_for(entity_type)
        except (InputError, ConfigurationError) as exc:
            logger.error("Rejected batch: %s", exc)
            return BatchResult(entity_type, batch_id, RUN_STATUS_FAILED, error=exc)

        as_of = as_of or utc_now()
        try:
            with self.warehouse.run_lock(entity_type, timeout=self.lock_timeout):
                return self._run(policy, batch_id, as_of)
        except RunLockTimeout as exc:
            logger.error("%s", exc)
            return BatchResult(entity_type, batch_id, RUN_STATUS_FAILED, error=exc)

    def _run(self, policy: EntityPolicy, batch_id: str, as_of: datetime) -> BatchResult:
        entity_type = policy.entity_type
        run_id = self.warehouse.start_run(entity_type, batch_id)
        logger.info("Processing %s batch %s (run %d)", entity_type, batch_id, run_id)

        try:
            self.check_dependencies(policy, batch_id)
            crosswalk_count, orphan_count, merged_count, conflict_count = self.reconcile_step(
                entity_type, batch_id, as_of
            )
            history = self.historize_step(entity_type, batch_id, as_of)
        except IntegrityViolation as exc:
            logger.critical("Historization halted: %s", exc)
            self.warehouse.finish_run(run_id, RUN_STATUS_FAILED, error=exc)
            return BatchResult(entity_type, batch_id, RUN_STATUS_FAILED, error=exc)
        except ReconciliationError as exc:
            logger.error("Batch failed: %s", exc)
            self.warehouse.finish_run(run_id, RUN_STATUS_FAILED, error=exc)
            return BatchResult(entity_type, batch_id, RUN_STATUS_FAILED, error=exc)
        except Exception as exc:
            logger.exception("Unexpected failure processing %s batch %s", entity_type, batch_id)
            self.warehouse.finish_run(run_id, RUN_STATUS_FAILED, error=exc)
            raise

        self.warehouse.finish_run(run_id, RUN_STATUS_SUCCEEDED, row_count=merged_count)
        logger.info(
            "Completed %s batch %s: %d merged, %d versions opened, %d closed",
            entity_type, batch_id, merged_count, history.versions_opened, history.versions_closed,
        )
        return BatchResult(
            entity_type,
            batch_id,
            RUN_STATUS_SUCCEEDED,
            row_count=merged_count,
            crosswalk_count=crosswalk_count,
            orphan_count=orphan_count,
            conflict_count=conflict_count,
            versions_opened=history.versions_opened,
            versions_closed=history.versions_closed,
        )
