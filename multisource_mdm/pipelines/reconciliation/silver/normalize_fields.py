"""
Silver Layer: Field Normalization Helpers.

Column-level helpers shared by the source adapter and the merge engine:
- Blank strings become nulls after trimming
- Values are cast to the type declared by the entity policy
- Strings are normalized (upper, lower, phone digits, zip, code mappings)
- Derived composite fields skip blank parts
"""

from itertools import chain
from typing import TYPE_CHECKING, Dict, List

from pyspark.sql import Column
from pyspark.sql.functions import (
    col,
    concat_ws,
    create_map,
    lit,
    lower,
    regexp_replace,
    to_date,
    to_timestamp,
    trim,
    upper,
    when,
)

if TYPE_CHECKING:
    from ..policy import EntityPolicy, FieldRule

NUMERIC_PATTERN = r"^[+-]?[0-9]+(\.[0-9]+)?$"
DATE_PATTERN = r"^[0-9]{4}-[0-9]{2}-[0-9]{2}"
TRUE_VALUES = ("true", "yes", "1", "t", "y")
FALSE_VALUES = ("false", "no", "0", "f", "n")


def blank_to_null(value: Column) -> Column:
    """Trim a string column, turning empty results into nulls."""
    trimmed = trim(value.cast("string"))
    return when(trimmed == lit(""), lit(None).cast("string")).otherwise(trimmed)


def cast_field(value: Column, dtype: str) -> Column:
    """
    Cast a raw source column to the declared type.

    Values that cannot be parsed become null instead of failing the batch.
    """
    text = blank_to_null(value)
    if dtype == "string":
        return text
    if dtype in ("int", "long", "double"):
        number = when(text.rlike(NUMERIC_PATTERN), text.cast("double"))
        return number.cast(dtype)
    if dtype == "date":
        return to_date(when(text.rlike(DATE_PATTERN), text.substr(1, 10)), "yyyy-MM-dd")
    if dtype == "timestamp":
        return to_timestamp(when(text.rlike(DATE_PATTERN), text))
    if dtype == "boolean":
        return (
            when(lower(text).isin(*TRUE_VALUES), lit(True))
            .when(lower(text).isin(*FALSE_VALUES), lit(False))
            .otherwise(lit(None).cast("boolean"))
        )
    return text.cast(dtype)


def code_lookup(value: Column, codes: Dict[str, str]) -> Column:
    """Map source codes to standard values; unmapped codes become null."""
    if not codes:
        return lit(None).cast("string")
    mapping = create_map(*chain.from_iterable(
        (lit(code.upper()), lit(standard)) for code, standard in codes.items()
    ))
    return mapping[upper(value)]


def normalize_column(
    value: Column, rule: "FieldRule", source_system: str, policy: "EntityPolicy"
) -> Column:
    """
    Apply the field rule's normalizer to one source's column.

    Args:
        value: Column already cast to the field's dtype
        rule: FieldRule for the field
        source_system: Source label the column came from (selects the code table)
        policy: EntityPolicy holding the code mappings

    Returns:
        Column: Normalized value
    """
    if rule.normalize is None or rule.dtype != "string":
        return value
    if rule.normalize == "trim":
        return blank_to_null(value)
    if rule.normalize == "upper":
        return upper(blank_to_null(value))
    if rule.normalize == "lower":
        return lower(blank_to_null(value))
    if rule.normalize == "phone":
        return blank_to_null(regexp_replace(value, "[^0-9]", ""))
    if rule.normalize == "zip":
        return blank_to_null(regexp_replace(value, "[^0-9-]", ""))
    return code_lookup(blank_to_null(value), policy.code_map(rule.code_mapping, source_system))


def derived_column(fields: List[str], separator: str) -> Column:
    """Join resolved fields, skipping null and blank parts."""
    parts = [blank_to_null(col(name)) for name in fields]
    return blank_to_null(concat_ws(separator, *parts))
