"""
Silver Layer - Matching and Field Merge.

This layer handles:
- Field normalization
- Crosswalk building (one master id per natural key)
- Field merge with system-of-record conflict resolution
"""

from .build_crosswalk import CrosswalkResult, build_crosswalk, latest_per_key, split_orphans
from .merge_fields import merge_entity_records

__all__ = [
    "CrosswalkResult",
    "build_crosswalk",
    "latest_per_key",
    "split_orphans",
    "merge_entity_records",
]
