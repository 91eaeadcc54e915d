"""
Gold Layer: Data Quality Scoring Module.

This module scores merged records against the critical-field rules of their
entity type.

Scoring:
- Each critical field contributes its weight when it is present (blank
  strings count as missing) and passes its validator
- The score is capped at 100
- Each failing field yields one issue tag: MISSING_<FIELD> when absent,
  INVALID_<FIELD> when present but failing, or the rule's explicit issue text

The same QualityRule objects produce both the pure Python scorer (used for
ad-hoc audits) and the Spark column expressions (used by the merge engine),
so both paths agree.
"""

import re
from typing import Any, Callable, List, Mapping, Optional, Tuple

from pyspark.sql import Column
from pyspark.sql.functions import (
    array,
    coalesce,
    col,
    filter as array_filter,
    least,
    lit,
    trim,
    when,
)


class QualityRule:
    """
    Critical-field rule with a weight and a validator.

    Validators:
    - not_null: the value only has to be present
    - pattern: the string form must match a regular expression
    - range: the numeric value must fall within [minimum, maximum]
    - one_of: the string form must be one of the allowed values
    """

    def __init__(
        self,
        field: str,
        weight: int,
        check: str = "not_null",
        pattern: Optional[str] = None,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
        values: Optional[List[Any]] = None,
        issue: Optional[str] = None,
    ):
        self.field = field
        self.weight = weight
        self.check = check
        self.pattern = pattern
        self.minimum = minimum
        self.maximum = maximum
        self.values = [str(v) for v in values] if values else []
        self.issue = issue
        self._regex = re.compile(pattern) if pattern else None

    @property
    def missing_tag(self) -> str:
        return self.issue or f"MISSING_{self.field.upper()}"

    @property
    def invalid_tag(self) -> str:
        return self.issue or f"INVALID_{self.field.upper()}"

    # -------------------------------------------------------------------------
    # Python evaluation
    # -------------------------------------------------------------------------

    @staticmethod
    def is_missing(value: Any) -> bool:
        if value is None:
            return True
        return isinstance(value, str) and value.strip() == ""

    def is_valid(self, value: Any) -> bool:
        """Validate a present value."""
        if self.check == "pattern":
            return self._regex.search(str(value)) is not None
        if self.check == "range":
            try:
                number = float(value)
            except (TypeError, ValueError):
                return False
            if self.minimum is not None and number < self.minimum:
                return False
            if self.maximum is not None and number > self.maximum:
                return False
            return True
        if self.check == "one_of":
            return str(value) in self.values
        return True

    def evaluate(self, value: Any) -> Optional[str]:
        """Return the issue tag for a value, or None when it passes."""
        if self.is_missing(value):
            return self.missing_tag
        if not self.is_valid(value):
            return self.invalid_tag
        return None

    # -------------------------------------------------------------------------
    # Spark evaluation
    # -------------------------------------------------------------------------

    def present_column(self, value: Column) -> Column:
        return value.isNotNull() & (trim(value.cast("string")) != lit(""))

    def valid_column(self, value: Column) -> Column:
        if self.check == "pattern":
            result = value.cast("string").rlike(self.pattern)
        elif self.check == "range":
            number = value.cast("double")
            result = number.isNotNull()
            if self.minimum is not None:
                result = result & (number >= lit(float(self.minimum)))
            if self.maximum is not None:
                result = result & (number <= lit(float(self.maximum)))
        elif self.check == "one_of":
            result = value.cast("string").isin(self.values)
        else:
            result = lit(True)
        return coalesce(result, lit(False))


# =============================================================================
# PURE SCORING
# =============================================================================

def score(record: Mapping[str, Any], rules: List[QualityRule]) -> int:
    """
    Compute the weighted quality score of a record.

    Args:
        record: Mapping of field name -> resolved value
        rules: Critical-field rules for the record's entity type

    Returns:
        int: Score in [0, 100]
    """
    total = sum(r.weight for r in rules if r.evaluate(record.get(r.field)) is None)
    return min(total, 100)


def issues(record: Mapping[str, Any], rules: List[QualityRule]) -> List[str]:
    """Ordered issue tags, one per failing critical field."""
    tags = []
    for rule in rules:
        tag = rule.evaluate(record.get(rule.field))
        if tag is not None:
            tags.append(tag)
    return tags


def assess(record: Mapping[str, Any], rules: List[QualityRule]) -> Tuple[int, List[str]]:
    return score(record, rules), issues(record, rules)


# =============================================================================
# SPARK COLUMNS
# =============================================================================

def _passes(rule: QualityRule, value: Column) -> Column:
    return rule.present_column(value) & rule.valid_column(value)


def quality_score_column(
    rules: List[QualityRule],
    resolve: Callable[[str], Column] = col,
) -> Column:
    """
    Build the Spark expression computing the quality score.

    Args:
        rules: Critical-field rules
        resolve: Maps a field name to its column (defaults to a top-level column)

    Returns:
        Column: Integer score capped at 100
    """
    if not rules:
        return lit(0)
    total = lit(0)
    for rule in rules:
        total = total + when(_passes(rule, resolve(rule.field)), lit(rule.weight)).otherwise(lit(0))
    return least(total, lit(100))


def quality_issues_column(
    rules: List[QualityRule],
    resolve: Callable[[str], Column] = col,
) -> Column:
    """Build the Spark expression producing the ordered issue tag array."""
    if not rules:
        return array().cast("array<string>")
    tags = []
    for rule in rules:
        value = resolve(rule.field)
        tags.append(
            when(~rule.present_column(value), lit(rule.missing_tag))
            .when(~rule.valid_column(value), lit(rule.invalid_tag))
        )
    return array_filter(array(*tags), lambda tag: tag.isNotNull())
