from __future__ import annotations

"""
Text relevance, ordering and pagination for search hits.

Relevance uses RapidFuzz ``partial_ratio`` between the query and three
per-hit fields: the program name, the partner name and the remaining
searchable text of the hit.  Per-field similarities are weighted and
fused with numpy, in the same spirit as a weighted lexical/dense score
fusion:

    score = max_k(similarity_k * weight_k) / max(weights)

A hit is kept only when its best raw similarity reaches
``RANK_MIN_SIMILARITY``.

Example::

    from program_search.ranking import rank_by_text
    ranked = rank_by_text(hits, "lake camp")
    for hit in ranked:
        print(hit.program.id, round(hit.score, 3))
"""

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from rapidfuzz import fuzz, utils

from .config import (
    DEFAULT_SORT_FIELD,
    RANK_MIN_QUERY_CHARS,
    RANK_MIN_SIMILARITY,
    RANK_PARTNER_NAME_FIELD,
    RANK_PROGRAM_NAME_FIELD,
    RANK_WEIGHT_PARTNER_NAME,
    RANK_WEIGHT_PROGRAM_NAME,
    RANK_WEIGHT_TEXT,
    PropertyValue,
    SortOption,
)
from .filters import SearchHit
from .normalize import basic_clean, parse_number
from .schema_registry import SchemaRegistry, get_registry

# program name, partner name, other searchable text
FIELD_WEIGHTS = np.array([RANK_WEIGHT_PROGRAM_NAME, RANK_WEIGHT_PARTNER_NAME, RANK_WEIGHT_TEXT], dtype="float32")


def normalized_query(query: Optional[str]) -> str:
    """Trimmed query, or ``""`` when it is too short to rank on."""
    q = (query or "").strip()
    return q if len(q) >= RANK_MIN_QUERY_CHARS else ""


def build_document(hit: SearchHit, registry: SchemaRegistry) -> Tuple[str, str, str]:
    """The three ranked text fields of ``hit``."""
    program_name = basic_clean(hit.program.get(RANK_PROGRAM_NAME_FIELD))
    partner_name = basic_clean(hit.partner.get(RANK_PARTNER_NAME_FIELD)) if hit.partner else ""

    parts: List[str] = []
    for prop in registry.searchable_fields("program"):
        if prop.name != RANK_PROGRAM_NAME_FIELD:
            parts.append(basic_clean(hit.program.get(prop.name)))
    if hit.partner is not None:
        for prop in registry.searchable_fields("partner"):
            if prop.name != RANK_PARTNER_NAME_FIELD:
                parts.append(basic_clean(hit.partner.get(prop.name)))
    session_fields = registry.searchable_fields("session")
    for session in hit.sessions:
        for prop in session_fields:
            parts.append(basic_clean(session.get(prop.name)))

    return program_name, partner_name, " ".join(p for p in parts if p)


def similarity(query: str, text: str) -> float:
    if not text:
        return 0.0
    return fuzz.partial_ratio(query, text, processor=utils.default_process) / 100.0


def rank_by_text(
    hits: Sequence[SearchHit],
    query: Optional[str],
    registry: Optional[SchemaRegistry] = None,
) -> List[SearchHit]:
    """
    Score ``hits`` against ``query`` and drop weak matches.

    Queries shorter than ``RANK_MIN_QUERY_CHARS`` leave the hits untouched.
    Kept hits are returned in their original order with ``score`` set;
    ordering is left to ``sort_results``.
    """
    q = normalized_query(query)
    if not q:
        return list(hits)
    if not hits:
        return []

    registry = registry or get_registry()
    sims = np.asarray(
        [[similarity(q, text) for text in build_document(hit, registry)] for hit in hits],
        dtype="float32",
    )
    best = sims.max(axis=1)
    fused = (sims * FIELD_WEIGHTS).max(axis=1) / float(FIELD_WEIGHTS.max())

    kept: List[SearchHit] = []
    for hit, b, s in zip(hits, best, fused):
        if b >= RANK_MIN_SIMILARITY:
            hit.score = round(float(s), 6)
            kept.append(hit)
    logger.info("Text ranking kept {}/{} hits for query '{}'", len(kept), len(hits), q)
    return kept


def _sort_value(value: PropertyValue) -> Optional[Tuple[int, object]]:
    if value is None:
        return None
    if isinstance(value, bool):
        return (0, float(value))
    number = parse_number(value) if not isinstance(value, str) else None
    if number is not None:
        return (0, number)
    return (1, str(value).casefold())


def _hit_sort_value(hit: SearchHit, field: str, entity_kind: str) -> Optional[Tuple[int, object]]:
    if entity_kind == "program":
        return _sort_value(hit.program.get(field))
    values = [v for v in (_sort_value(s.get(field)) for s in hit.sessions) if v is not None]
    # earliest matching session
    return min(values) if values else None


def sort_results(
    hits: Sequence[SearchHit],
    sort: Optional[SortOption] = None,
    has_query: bool = False,
) -> List[SearchHit]:
    """
    Order hits: an explicit ``sort`` wins, then relevance when a query was
    ranked, else earliest session start date.  Missing values always sort
    last.  Python's sort is stable so equal keys keep their input order.
    """
    if has_query and sort is None:
        return sorted(hits, key=lambda h: -h.score)

    field = sort.field if sort else DEFAULT_SORT_FIELD
    descending = bool(sort and sort.direction == "desc")
    entity_kind = sort.entity_kind if sort else "session"

    keyed = [(hit, _hit_sort_value(hit, field, entity_kind)) for hit in hits]
    present = [(h, v) for h, v in keyed if v is not None]
    missing = [h for h, v in keyed if v is None]
    present.sort(key=lambda hv: hv[1], reverse=descending)
    return [h for h, _ in present] + missing


def paginate(items: Sequence, page: int, page_size: int) -> Tuple[List, int, int]:
    """Return ``(page_items, total_count, total_pages)`` for a 1-based page."""
    total = len(items)
    total_pages = math.ceil(total / page_size) if page_size > 0 else 0
    start = (page - 1) * page_size
    return list(items[start : start + page_size]), total, total_pages
