"""
System-of-Record Policy Loading

This module turns the declarative dictionaries in ``config.settings`` into
typed policy objects used by the merge engine and the quality scorer. The
policy is always passed explicitly to the functions that use it, so tests
can inject their own dictionaries instead of the configured ones.

Usage:
    from multisource_mdm.pipelines.reconciliation.policy import (
        load_entity_policy,
        load_quality_rules,
    )

    policy = load_entity_policy('veteran')
    rules = load_quality_rules('veteran')
"""

import re
from typing import Any, Dict, List, Optional

from ...config import settings
from .errors import ConfigurationError, InputError
from .gold.score_quality import QualityRule

SUPPORTED_DTYPES = {"string", "int", "long", "double", "date", "timestamp", "boolean"}
SIMPLE_NORMALIZERS = {"trim", "upper", "lower", "phone", "zip"}
CODE_NORMALIZER_PREFIX = "code:"

# Reserved field-mapping entries
NATURAL_KEY = "natural_key"
SOURCE_RECORD_ID = "source_record_id"


class FieldRule:
    """
    Resolution rule for one output field.

    The value comes from the primary source; the other source is the implicit
    fallback when the primary value is null.
    """

    def __init__(
        self,
        name: str,
        dtype: str = "string",
        normalize: Optional[str] = None,
        primary_source: Optional[str] = None,
        tracked: bool = False,
        default: Any = None,
    ):
        """
        Args:
            name: Standard field name
            dtype: Spark type name the source values are cast to
            normalize: Normalizer name ('upper', 'lower', 'trim', 'phone',
                'zip' or 'code:<mapping>')
            primary_source: Overrides the entity-level primary source
            tracked: Whether the field participates in change detection and
                conflict logging
            default: Value used when neither source supplies one
        """
        self.name = name
        self.dtype = dtype
        self.normalize = normalize
        self.primary_source = primary_source
        self.tracked = tracked
        self.default = default

    @property
    def code_mapping(self) -> Optional[str]:
        if self.normalize and self.normalize.startswith(CODE_NORMALIZER_PREFIX):
            return self.normalize[len(CODE_NORMALIZER_PREFIX):]
        return None


class DerivedField:
    """Composite field built from resolved fields (e.g. full name)."""

    def __init__(self, name: str, fields: List[str], separator: str = " "):
        self.name = name
        self.fields = list(fields)
        self.separator = separator


class ReferenceRule:
    """
    Link from a field holding another entity's natural key to that entity's
    master id, resolved against the referenced entity's current dimension.
    """

    def __init__(self, name: str, entity_type: str, field: str, tracked: bool = False):
        self.name = name
        self.entity_type = entity_type
        self.field = field
        self.tracked = tracked


class EntityPolicy:
    """
    Complete reconciliation policy for one entity type.
    """

    def __init__(
        self,
        entity_type: str,
        primary_source: str,
        source_a: str,
        source_b: str,
        fields: List[FieldRule],
        derived: Optional[List[DerivedField]] = None,
        references: Optional[List[ReferenceRule]] = None,
        depends_on: Optional[List[str]] = None,
        source_columns: Optional[Dict[str, Dict[str, str]]] = None,
        code_mappings: Optional[Dict[str, Dict[str, Dict[str, str]]]] = None,
    ):
        self.entity_type = entity_type
        self.primary_source = primary_source
        self.source_a = source_a
        self.source_b = source_b
        self.fields = list(fields)
        self.derived = derived or []
        self.references = references or []
        self.depends_on = depends_on or []
        self.source_columns = source_columns or {}
        self.code_mappings = code_mappings or {}

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def attribute_names(self) -> List[str]:
        """Every attribute of a merged record, in output order."""
        return (
            self.field_names
            + [r.name for r in self.references]
            + [d.name for d in self.derived]
        )

    @property
    def tracked_fields(self) -> List[str]:
        """Fields hashed into the fingerprint, in declared order."""
        names = [f.name for f in self.fields if f.tracked]
        names += [r.name for r in self.references if r.tracked]
        return names

    @property
    def conflict_fields(self) -> List[FieldRule]:
        return [f for f in self.fields if f.tracked]

    def primary_for(self, rule: FieldRule) -> str:
        return rule.primary_source or self.primary_source

    def fallback_for(self, rule: FieldRule) -> str:
        primary = self.primary_for(rule)
        return self.source_b if primary == self.source_a else self.source_a

    def resolution_rule(self, rule: FieldRule) -> str:
        return f"PREFER_{self.primary_for(rule)}"

    def source_column(self, source_system: str, name: str) -> str:
        """Column holding standard field ``name`` in ``source_system``'s raw rows."""
        return self.source_columns.get(source_system, {}).get(name, name)

    def code_map(self, mapping: str, source_system: str) -> Dict[str, str]:
        return self.code_mappings.get(mapping, {}).get(source_system, {})


def _build_field(entity_type: str, name: str, spec: Dict[str, Any], sources: List[str],
                 code_mappings: Dict[str, Any]) -> FieldRule:
    dtype = spec.get("dtype", "string")
    if dtype not in SUPPORTED_DTYPES:
        raise ConfigurationError(f"Unsupported dtype '{dtype}' for field '{name}'", entity_type)

    normalize = spec.get("normalize")
    if normalize is not None and normalize not in SIMPLE_NORMALIZERS:
        if not normalize.startswith(CODE_NORMALIZER_PREFIX):
            raise ConfigurationError(f"Unknown normalizer '{normalize}' for field '{name}'", entity_type)
        mapping = normalize[len(CODE_NORMALIZER_PREFIX):]
        if mapping not in code_mappings:
            raise ConfigurationError(f"Unknown code mapping '{mapping}' for field '{name}'", entity_type)

    primary = spec.get("primary_source")
    if primary is not None and primary not in sources:
        raise ConfigurationError(f"Unknown primary source '{primary}' for field '{name}'", entity_type)

    return FieldRule(
        name=name,
        dtype=dtype,
        normalize=normalize,
        primary_source=primary,
        tracked=bool(spec.get("tracked", False)),
        default=spec.get("default"),
    )


def load_entity_policy(
    entity_type: str,
    policies: Optional[Dict[str, Any]] = None,
    field_mappings: Optional[Dict[str, Any]] = None,
    code_mappings: Optional[Dict[str, Any]] = None,
    source_systems: Optional[Dict[str, str]] = None,
) -> EntityPolicy:
    """
    Build the EntityPolicy for an entity type.

    Args:
        entity_type: Entity type name (e.g. 'veteran')
        policies: Policy dictionaries (defaults to ENTITY_POLICIES)
        field_mappings: Per-source column mappings (defaults to FIELD_MAPPINGS)
        code_mappings: Code value mappings (defaults to CODE_MAPPINGS)
        source_systems: Source labels (defaults to SOURCE_SYSTEMS)

    Returns:
        EntityPolicy instance

    Raises:
        InputError: If the entity type is not configured
        ConfigurationError: If the configuration is malformed
    """
    policies = settings.ENTITY_POLICIES if policies is None else policies
    field_mappings = settings.FIELD_MAPPINGS if field_mappings is None else field_mappings
    code_mappings = settings.CODE_MAPPINGS if code_mappings is None else code_mappings
    source_systems = settings.SOURCE_SYSTEMS if source_systems is None else source_systems

    if entity_type not in policies:
        available = ", ".join(sorted(policies))
        raise InputError(f"Unknown entity type. Available entity types: {available}", entity_type)

    spec = policies[entity_type]
    source_a = source_systems["source_a"]
    source_b = source_systems["source_b"]
    sources = [source_a, source_b]

    primary = spec.get("primary_source", source_a)
    if primary not in sources:
        raise ConfigurationError(f"Unknown primary source '{primary}'", entity_type)

    if not spec.get("fields"):
        raise ConfigurationError("Policy defines no fields", entity_type)

    fields = [
        _build_field(entity_type, name, field_spec, sources, code_mappings)
        for name, field_spec in spec["fields"].items()
    ]
    if not any(f.tracked for f in fields):
        raise ConfigurationError("Policy tracks no fields", entity_type)
    known = {f.name for f in fields}

    references = []
    for name, ref in spec.get("references", {}).items():
        if ref["field"] not in known:
            raise ConfigurationError(f"Reference '{name}' points at unknown field '{ref['field']}'", entity_type)
        references.append(ReferenceRule(name, ref["entity_type"], ref["field"], bool(ref.get("tracked", False))))
    known.update(r.name for r in references)

    derived = []
    for name, d in spec.get("derived", {}).items():
        missing = [f for f in d["fields"] if f not in known]
        if missing:
            raise ConfigurationError(f"Derived field '{name}' uses unknown fields {missing}", entity_type)
        derived.append(DerivedField(name, d["fields"], d.get("separator", " ")))

    depends_on = list(spec.get("depends_on", []))
    for ref in references:
        if ref.entity_type not in depends_on:
            depends_on.append(ref.entity_type)

    return EntityPolicy(
        entity_type=entity_type,
        primary_source=primary,
        source_a=source_a,
        source_b=source_b,
        fields=fields,
        derived=derived,
        references=references,
        depends_on=depends_on,
        source_columns=field_mappings.get(entity_type, {}),
        code_mappings=code_mappings,
    )


def load_quality_rules(
    entity_type: str,
    rules: Optional[Dict[str, List[Dict[str, Any]]]] = None,
) -> List[QualityRule]:
    """
    Build the critical-field quality rules for an entity type.

    Entity types without configured rules score 0 with no issues.
    """
    rules = settings.DQ_RULES if rules is None else rules
    built = []
    for spec in rules.get(entity_type, []):
        check = spec.get("check", "not_null")
        if "field" not in spec or "weight" not in spec:
            raise ConfigurationError(f"Quality rule needs 'field' and 'weight': {spec}", entity_type)
        if check == "pattern":
            try:
                re.compile(spec["pattern"])
            except (KeyError, re.error) as exc:
                raise ConfigurationError(f"Bad pattern for '{spec['field']}': {exc}", entity_type) from exc
        elif check == "range" and "min" not in spec and "max" not in spec:
            raise ConfigurationError(f"Range rule for '{spec['field']}' needs 'min' or 'max'", entity_type)
        elif check == "one_of" and not spec.get("values"):
            raise ConfigurationError(f"one_of rule for '{spec['field']}' needs 'values'", entity_type)
        elif check not in ("not_null", "pattern", "range", "one_of"):
            raise ConfigurationError(f"Unknown check '{check}' for '{spec['field']}'", entity_type)

        built.append(QualityRule(
            field=spec["field"],
            weight=spec["weight"],
            check=check,
            pattern=spec.get("pattern"),
            minimum=spec.get("min"),
            maximum=spec.get("max"),
            values=spec.get("values"),
            issue=spec.get("issue"),
        ))
    return built
