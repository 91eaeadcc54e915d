"""
Configuration module for the Multi-Source Reconciliation Pipeline.
"""

from .settings import (
    CODE_MAPPINGS,
    DQ_RULES,
    ENTITY_POLICIES,
    FIELD_MAPPINGS,
    ROLLING_WINDOW_DAYS,
    SOURCE_SYSTEMS,
    TABLE_NAMES,
    WAREHOUSE_DB_PATH,
)

__all__ = [
    "CODE_MAPPINGS",
    "DQ_RULES",
    "ENTITY_POLICIES",
    "FIELD_MAPPINGS",
    "ROLLING_WINDOW_DAYS",
    "SOURCE_SYSTEMS",
    "TABLE_NAMES",
    "WAREHOUSE_DB_PATH",
]
