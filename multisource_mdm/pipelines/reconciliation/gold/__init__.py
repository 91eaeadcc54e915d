"""
Gold Layer - Quality, Conflicts and History.

This layer handles:
- Scoring critical-field data quality
- Logging field conflicts
- Historizing merged records as SCD type 2 dimension versions
"""

from .score_quality import QualityRule, assess, issues, score
from .log_conflicts import ConflictLogger, extract_conflicts
from .historize_dimension import (
    HistorizationResult,
    historize,
    plan_dimension_changes,
    verify_dimension_integrity,
)

__all__ = [
    "QualityRule",
    "assess",
    "issues",
    "score",
    "ConflictLogger",
    "extract_conflicts",
    "HistorizationResult",
    "historize",
    "plan_dimension_changes",
    "verify_dimension_integrity",
]
