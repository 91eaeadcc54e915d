"""
Multi-Source Master Data Reconciliation.

Matches entity records from two source systems on their natural keys,
merges them field by field under a system-of-record policy, scores their
data quality, logs field conflicts and keeps SCD type 2 history of the
resulting master records, following the Medallion Architecture
(Bronze-Silver-Gold).

Modules:
    config: Configuration settings and policy tables
    pipelines: Data processing pipelines
    cli: Command line entry point
"""

__version__ = "1.0.0"
__author__ = "Data Engineering Team"

from .config import (
    ENTITY_POLICIES,
    SOURCE_SYSTEMS,
    DQ_RULES,
    ROLLING_WINDOW_DAYS,
    TABLE_NAMES,
)

__all__ = [
    "ENTITY_POLICIES",
    "SOURCE_SYSTEMS",
    "DQ_RULES",
    "ROLLING_WINDOW_DAYS",
    "TABLE_NAMES",
]
