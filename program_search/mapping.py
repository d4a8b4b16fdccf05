from __future__ import annotations

"""
Mapping utilities for the program search API.

Converts in-memory cache entities and search hits into the strict Pydantic
objects defined in :mod:`program_search.config`, and builds the
human-readable summary of the filters applied to a request.  All
presentation-shaped transformation lives here to keep ``search.py`` and
``api.py`` simple.
"""

from typing import List, Optional, Sequence

from loguru import logger

from .cache import Entity
from .config import (
    AppliedFilter,
    EntityKind,
    EntityRecord,
    FacetResult,
    Filter,
    FilterGroup,
    FilterOperator,
    SearchResponse,
    SearchResultItem,
)
from .filters import SearchHit, iter_filters, resolve_kind
from .schema_registry import SchemaRegistry, get_registry


def _format_scalar(value) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_display_value(f: Filter, kind: str, registry: SchemaRegistry) -> str:
    """Readable form of one filter's value, using option labels where known."""
    if f.operator == FilterOperator.BETWEEN and isinstance(f.value, list) and len(f.value) == 2:
        return f"{_format_scalar(f.value[0])} - {_format_scalar(f.value[1])}"
    if isinstance(f.value, list):
        return ", ".join(registry.option_label(kind, f.field, _format_scalar(v)) for v in f.value)

    label = registry.option_label(kind, f.field, _format_scalar(f.value)) if f.value is not None else "any"
    if f.operator == FilterOperator.GTE:
        return f"≥ {label}"
    if f.operator == FilterOperator.LTE:
        return f"≤ {label}"
    if f.operator == FilterOperator.GT:
        return f"> {label}"
    if f.operator == FilterOperator.LT:
        return f"< {label}"
    if f.operator == FilterOperator.NEQ:
        return f"not {label}"
    if f.operator == FilterOperator.CONTAINS:
        return f'contains "{label}"'
    return label


def build_applied_filters(group: Optional[FilterGroup], registry: Optional[SchemaRegistry] = None) -> List[AppliedFilter]:
    registry = registry or get_registry()
    applied: List[AppliedFilter] = []
    for f in iter_filters(group):
        kind = resolve_kind(f, registry)
        applied.append(
            AppliedFilter(
                field=f.field,
                label=registry.field_label(kind, f.field),
                entity_kind=EntityKind(kind),
                operator=f.operator,
                value=f.value,
                display_value=format_display_value(f, kind, registry),
            )
        )
    return applied


def to_entity_record(entity: Entity) -> EntityRecord:
    return EntityRecord(
        id=entity.id,
        properties=dict(entity.properties),
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


def to_result_item(hit: SearchHit) -> SearchResultItem:
    return SearchResultItem(
        program=to_entity_record(hit.program),
        partner=to_entity_record(hit.partner) if hit.partner is not None else None,
        sessions=[to_entity_record(s) for s in hit.sessions],
        matching_session_count=hit.matching_session_count,
        total_session_count=hit.total_session_count,
        score=hit.score,
    )


def map_hits_to_response(
    page_hits: Sequence[SearchHit],
    total_count: int,
    page: int,
    page_size: int,
    total_pages: int,
    facets: List[FacetResult],
    applied_filters: List[AppliedFilter],
    search_time_ms: int,
) -> SearchResponse:
    """Assemble the full search response for one page of hits."""
    results = [to_result_item(h) for h in page_hits]
    logger.debug("Mapped {} hits into response schema", len(results))
    return SearchResponse(
        results=results,
        total_count=total_count,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
        facets=facets,
        applied_filters=applied_filters,
        search_time_ms=search_time_ms,
    )
