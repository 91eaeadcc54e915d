"""
Multi-Source Reconciliation Pipeline following the Medallion Architecture.

Layers:
- Bronze: Source record ingestion and standardization
- Silver: Crosswalk building and field merge
- Gold: Data quality scoring, conflict logging and SCD historization
"""

from .errors import (
    ConfigurationError,
    DependencyNotReadyError,
    InputError,
    IntegrityViolation,
    ReconciliationError,
    RunLockTimeout,
)
from .policy import EntityPolicy, load_entity_policy, load_quality_rules
from .bronze import DataFrameSourceAdapter, FileSourceAdapter, SourceAdapter, SourceConfig
from .gold import ConflictLogger, verify_dimension_integrity
from .warehouse import Warehouse
from .process_batch import BatchProcessor, BatchResult

__all__ = [
    "ConfigurationError",
    "DependencyNotReadyError",
    "InputError",
    "IntegrityViolation",
    "ReconciliationError",
    "RunLockTimeout",
    "EntityPolicy",
    "load_entity_policy",
    "load_quality_rules",
    "DataFrameSourceAdapter",
    "FileSourceAdapter",
    "SourceAdapter",
    "SourceConfig",
    "ConflictLogger",
    "verify_dimension_integrity",
    "Warehouse",
    "BatchProcessor",
    "BatchResult",
]
