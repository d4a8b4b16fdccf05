from __future__ import annotations

"""
Filter evaluation over the Partner → Program → Session hierarchy.

A request carries one filter tree whose leaves may target any of the three
entity kinds.  Before evaluating against an entity the tree is projected
onto that entity's kind: leaves of other kinds are removed, nested groups
are projected recursively and groups left empty disappear.  An empty
projection matches everything.  As a consequence an ``OR`` that mixes
kinds is applied per level rather than across levels.

``filter_hierarchy`` runs the whole cascade: discriminator pre-filter,
program predicates, session predicates per program, the childless check
and finally partner predicates.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterator, List, Optional, Sequence

from .cache import CacheStore, Entity
from .config import (
    DISCRIMINATOR_FIELD,
    Filter,
    FilterGroup,
    FilterOperator,
    PropertyValue,
)
from .errors import InvalidSearchRequest
from .normalize import parse_bool, parse_number, split_multi_value
from .schema_registry import PropertyDefinition, SchemaRegistry, get_registry

DEFAULT_LEAF_KIND = "session"

# Values at or above this are treated as epoch milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


@dataclass
class SearchHit:
    program: Entity
    partner: Optional[Entity]
    sessions: List[Entity] = field(default_factory=list)
    total_session_count: int = 0
    score: float = 0.0

    @property
    def matching_session_count(self) -> int:
        return len(self.sessions)


# ---------------------------
# Tree helpers
# ---------------------------

def iter_filters(group: Optional[FilterGroup]) -> Iterator[Filter]:
    """Every leaf of ``group``, depth first."""
    if group is None:
        return
    for f in group.filters:
        yield f
    for sub in group.groups:
        yield from iter_filters(sub)


def resolve_kind(f: Filter, registry: SchemaRegistry) -> str:
    """Explicit kind, else the first kind declaring the field, else session."""
    if f.entity_kind is not None:
        return f.entity_kind.value
    return registry.entity_kind_for(f.field) or DEFAULT_LEAF_KIND


def project(
    group: Optional[FilterGroup],
    kind: str,
    registry: SchemaRegistry,
    discriminator: Optional[str] = None,
) -> Optional[FilterGroup]:
    """Subtree of ``group`` that applies to ``kind``; ``None`` when nothing does."""
    if group is None:
        return None
    leaves = [
        f
        for f in group.filters
        if resolve_kind(f, registry) == kind
        and (not registry.has_field(kind, f.field) or registry.is_applicable(kind, f.field, discriminator))
    ]
    subgroups = [g for g in (project(sub, kind, registry, discriminator) for sub in group.groups) if g is not None]
    if not leaves and not subgroups:
        return None
    return FilterGroup(operator=group.operator, filters=leaves, groups=subgroups)


def validate_filters(group: Optional[FilterGroup], registry: Optional[SchemaRegistry] = None) -> None:
    """Reject leaves on undeclared fields and values whose shape does not fit their operator."""
    registry = registry or get_registry()
    for f in iter_filters(group):
        if f.entity_kind is None and registry.entity_kind_for(f.field) is None:
            raise InvalidSearchRequest(f"Unknown filter field '{f.field}'; set entity_kind to filter on it")
        if f.operator == FilterOperator.BETWEEN:
            if not isinstance(f.value, list) or len(f.value) != 2:
                raise InvalidSearchRequest(f"Filter on '{f.field}': 'between' expects a [min, max] pair")
        elif f.operator == FilterOperator.IN:
            if f.value is None:
                raise InvalidSearchRequest(f"Filter on '{f.field}': 'in' expects a value list")
        elif isinstance(f.value, list):
            raise InvalidSearchRequest(f"Filter on '{f.field}': '{f.operator.value}' expects a single value")


# ---------------------------
# Value comparison
# ---------------------------

def date_key(value) -> Optional[str]:
    """Calendar-date (``YYYY-MM-DD``) form of a date-like value."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        if number >= _EPOCH_MS_THRESHOLD:
            return datetime.fromtimestamp(number / 1000.0, tz=timezone.utc).date().isoformat()
    text = str(value).strip()
    return text[:10] if text else None


def _equals(prop_value: PropertyValue, value, prop: Optional[PropertyDefinition]) -> bool:
    if prop is not None and prop.type == "number":
        a, b = parse_number(prop_value), parse_number(value)
        return a is not None and a == b
    if isinstance(prop_value, bool) or (prop is not None and prop.type == "bool"):
        return parse_bool(prop_value) == parse_bool(value)
    if isinstance(prop_value, float):
        return prop_value == parse_number(value)
    return str(prop_value) == str(value)


def _compare_dates(prop_value: PropertyValue, f: Filter) -> bool:
    pv = date_key(prop_value)
    op = f.operator
    if op == FilterOperator.BETWEEN:
        lo, hi = (date_key(v) for v in f.value)
        return pv is not None and lo is not None and hi is not None and lo <= pv <= hi
    fv = date_key(f.value)
    if pv is None or fv is None:
        return op == FilterOperator.NEQ
    if op == FilterOperator.EQ:
        return pv == fv
    if op == FilterOperator.NEQ:
        return pv != fv
    if op == FilterOperator.GT:
        return pv > fv
    if op == FilterOperator.GTE:
        return pv >= fv
    if op == FilterOperator.LT:
        return pv < fv
    if op == FilterOperator.LTE:
        return pv <= fv
    return _compare_values(prop_value, f, None)


def _compare_values(prop_value: PropertyValue, f: Filter, prop: Optional[PropertyDefinition]) -> bool:
    op = f.operator
    value = f.value

    if op == FilterOperator.EQ:
        return _equals(prop_value, value, prop)
    if op == FilterOperator.NEQ:
        return not _equals(prop_value, value, prop)
    if op == FilterOperator.CONTAINS:
        return str(value if value is not None else "").lower() in str(prop_value).lower()
    if op == FilterOperator.IN:
        wanted = value if isinstance(value, list) else [value]
        if (prop is not None and prop.multi_select) or (
            isinstance(prop_value, str) and prop is None and ";" in prop_value
        ):
            parts = split_multi_value(prop_value)
            return any(str(v) in parts for v in wanted)
        return any(_equals(prop_value, v, prop) for v in wanted)

    number = parse_number(prop_value)
    if op == FilterOperator.BETWEEN:
        lo, hi = (parse_number(v) for v in value)
        return number is not None and lo is not None and hi is not None and lo <= number <= hi
    target = parse_number(value)
    if number is None or target is None:
        return False
    if op == FilterOperator.GT:
        return number > target
    if op == FilterOperator.GTE:
        return number >= target
    if op == FilterOperator.LT:
        return number < target
    if op == FilterOperator.LTE:
        return number <= target
    return False


def evaluate_filter(f: Filter, properties, kind: str, registry: SchemaRegistry) -> bool:
    prop = registry.field(kind, f.field)
    prop_value = properties.get(f.field)
    is_date = prop.is_date if prop is not None else f.field in ("start_date", "end_date")

    if prop_value is None:
        if f.operator.value in registry.null_pass_operators(kind, f.field):
            return True
        if is_date and f.operator in (FilterOperator.GTE, FilterOperator.LTE):
            return True
        return f.operator == FilterOperator.EQ and f.value is None

    if is_date:
        return _compare_dates(prop_value, f)
    return _compare_values(prop_value, f, prop)


def _evaluate_group(group: Optional[FilterGroup], properties, kind: str, registry: SchemaRegistry) -> bool:
    if group is None:
        return True
    results = [evaluate_filter(f, properties, kind, registry) for f in group.filters]
    results.extend(_evaluate_group(g, properties, kind, registry) for g in group.groups)
    if not results:
        return True
    if group.operator == "AND":
        return all(results)
    return any(results)


def evaluate(
    group: Optional[FilterGroup],
    properties,
    kind: str,
    discriminator: Optional[str] = None,
    registry: Optional[SchemaRegistry] = None,
) -> bool:
    """Whether one entity's ``properties`` satisfy the ``kind`` projection of ``group``."""
    registry = registry or get_registry()
    return _evaluate_group(project(group, kind, registry, discriminator), properties, kind, registry)


# ---------------------------
# Hierarchy cascade
# ---------------------------

def matches_discriminator(program: Entity, discriminator: Optional[str]) -> bool:
    if not discriminator:
        return True
    value = program.get(DISCRIMINATOR_FIELD)
    return value is not None and str(value).lower() == discriminator.lower()


def filter_hierarchy(
    programs: Sequence[Entity],
    group: Optional[FilterGroup],
    discriminator: Optional[str],
    include_childless: bool,
    store: CacheStore,
    registry: Optional[SchemaRegistry] = None,
) -> List[SearchHit]:
    registry = registry or store.registry
    program_group = project(group, "program", registry, discriminator)
    session_group = project(group, "session", registry, discriminator)
    partner_group = project(group, "partner", registry, discriminator)

    hits: List[SearchHit] = []
    for program in programs:
        if not matches_discriminator(program, discriminator):
            continue
        if not _evaluate_group(program_group, program.properties, "program", registry):
            continue

        sessions = store.sessions_for_program(program.id)
        matching = [s for s in sessions if _evaluate_group(session_group, s.properties, "session", registry)]
        if not matching and not include_childless:
            continue

        partner = store.partner_for_program(program.id)
        if partner_group is not None:
            if partner is None or not _evaluate_group(partner_group, partner.properties, "partner", registry):
                continue

        hits.append(
            SearchHit(
                program=program,
                partner=partner,
                sessions=matching,
                total_session_count=len(sessions),
            )
        )
    return hits
