from __future__ import annotations

"""
Facet counts over filtered (pre-pagination) search hits.

Partner and program values count once per hit; session values count once
per matching session.  Multi-select values are split on ``;``.
"""

from collections import Counter
from typing import Iterable, List, Optional, Set

from .config import FacetResult, FacetValue, FilterGroup, FilterOperator, PropertyValue
from .filters import SearchHit, iter_filters, resolve_kind
from .normalize import split_multi_value
from .schema_registry import FieldDescriptor, SchemaRegistry, get_registry

FACET_KIND_ORDER = ("partner", "program", "session")


def _facet_key(value: PropertyValue) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    text = str(value).strip()
    return text or None


def _values_for(hit: SearchHit, kind: str, name: str) -> Iterable[PropertyValue]:
    if kind == "partner":
        if hit.partner is not None:
            yield hit.partner.get(name)
    elif kind == "program":
        yield hit.program.get(name)
    else:
        for session in hit.sessions:
            yield session.get(name)


def selected_values(group: Optional[FilterGroup], kind: str, name: str, registry: SchemaRegistry) -> Set[str]:
    """Values selected by ``eq``/``in`` leaves on ``name`` anywhere in the tree."""
    out: Set[str] = set()
    for f in iter_filters(group):
        if f.field != name or resolve_kind(f, registry) != kind:
            continue
        if f.operator not in (FilterOperator.EQ, FilterOperator.IN) or f.value is None:
            continue
        values = f.value if isinstance(f.value, list) else [f.value]
        out.update(k for k in (_facet_key(v) for v in values) if k is not None)
    return out


def _count(hits: List[SearchHit], fd: FieldDescriptor) -> Counter:
    counts: Counter = Counter()
    for hit in hits:
        for value in _values_for(hit, fd.entity_kind, fd.field):
            if value is None:
                continue
            if fd.multi_select and isinstance(value, str):
                counts.update(split_multi_value(value))
            else:
                key = _facet_key(value)
                if key is not None:
                    counts[key] += 1
    return counts


def _bucket_counts(hits: List[SearchHit], fd: FieldDescriptor) -> Counter:
    counts: Counter = Counter()
    for hit in hits:
        for value in _values_for(hit, fd.entity_kind, fd.field):
            if value is None or isinstance(value, bool):
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                continue
            for bucket in fd.buckets or []:
                if bucket.contains(number):
                    counts[bucket.value] += 1
                    break
    return counts


def facet_values(hits: List[SearchHit], fd: FieldDescriptor, selected: Set[str]) -> List[FacetValue]:
    out: List[FacetValue] = []

    if fd.options:
        counts = _count(hits, fd)
        for opt in sorted(fd.options, key=lambda o: o.display_order):
            count = counts.get(opt.value, 0)
            is_selected = opt.value in selected
            if is_selected or (count > 0 and not opt.hidden):
                out.append(FacetValue(value=opt.value, label=opt.label, count=count, selected=is_selected))
        # values missing from the option list follow the ordered options
        listed = {opt.value for opt in fd.options}
        unlisted = {v: c for v, c in counts.items() if v not in listed and c > 0}
        for value in selected - listed:
            unlisted.setdefault(value, 0)
        for value, count in sorted(unlisted.items(), key=lambda kv: (-kv[1], kv[0])):
            out.append(FacetValue(value=value, label=value, count=count, selected=value in selected))
        return out

    if fd.buckets:
        counts = _bucket_counts(hits, fd)
        for bucket in fd.buckets:
            count = counts.get(bucket.value, 0)
            is_selected = bucket.value in selected
            if count > 0 or is_selected:
                out.append(FacetValue(value=bucket.value, label=bucket.label, count=count, selected=is_selected))
        return out

    counts = _count(hits, fd)
    for value in selected:
        counts.setdefault(value, 0)
    for value, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
        out.append(FacetValue(value=value, label=value, count=count, selected=value in selected))
    return out


def calculate_facets(
    hits: List[SearchHit],
    group: Optional[FilterGroup] = None,
    discriminator: Optional[str] = None,
    registry: Optional[SchemaRegistry] = None,
) -> List[FacetResult]:
    registry = registry or get_registry()
    facets: List[FacetResult] = []
    for kind in FACET_KIND_ORDER:
        for fd in registry.fields_for(kind, facetable=True, discriminator=discriminator):
            values = facet_values(hits, fd, selected_values(group, kind, fd.field, registry))
            if values:
                facets.append(FacetResult(field=fd.field, label=fd.label, entity_kind=kind, values=values))
    return facets
