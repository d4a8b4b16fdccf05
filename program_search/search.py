from __future__ import annotations

"""
Search orchestration over the cached hierarchy.

Pipeline for one request:

1. make sure the cache is populated (``CacheStore.ensure_ready``)
2. discriminator pre-filter and filter cascade (``filters.filter_hierarchy``)
3. fuzzy text ranking when a query is present (``ranking.rank_by_text``)
4. ordering (``ranking.sort_results``)
5. facets over the full filtered list (``facets.calculate_facets``)
6. pagination and response mapping

Example::

    import asyncio
    from program_search.config import SearchRequest
    from program_search.search import execute_search

    resp = asyncio.run(execute_search(SearchRequest(query="lake", program_type="Camp")))
    print(resp.total_count, [r.program.id for r in resp.results])
"""

import time
from typing import Optional

from loguru import logger

from .cache import CacheStore, get_store
from .config import SearchRequest, SearchResponse, get_access_token
from .errors import CacheNotReadyError
from .facets import calculate_facets
from .filters import filter_hierarchy, validate_filters
from .mapping import build_applied_filters, map_hits_to_response
from .ranking import normalized_query, paginate, rank_by_text, sort_results
from .schema_registry import SchemaRegistry


def run_search(
    request: SearchRequest,
    store: CacheStore,
    registry: Optional[SchemaRegistry] = None,
) -> SearchResponse:
    """Run the search pipeline against the store's current snapshot."""
    start = time.perf_counter()
    registry = registry or store.registry
    validate_filters(request.filters, registry)

    discriminator = registry.canonical_discriminator(request.program_type) if request.program_type else None
    programs = store.all_programs()
    hits = filter_hierarchy(
        programs,
        request.filters,
        discriminator,
        request.include_empty_results,
        store,
        registry,
    )
    logger.info(
        "Search filters: {} programs -> {} hits (program_type={})",
        len(programs),
        len(hits),
        discriminator,
    )

    query = normalized_query(request.query)
    if query:
        hits = rank_by_text(hits, query, registry)
    hits = sort_results(hits, request.sort, has_query=bool(query))

    facets = calculate_facets(hits, request.filters, discriminator, registry)
    page_hits, total_count, total_pages = paginate(hits, request.page, request.page_size)
    applied = build_applied_filters(request.filters, registry)

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        "Search complete: {} results, page {}/{} ({} ms)",
        total_count,
        request.page,
        total_pages,
        elapsed_ms,
    )
    return map_hits_to_response(
        page_hits,
        total_count=total_count,
        page=request.page,
        page_size=request.page_size,
        total_pages=total_pages,
        facets=facets,
        applied_filters=applied,
        search_time_ms=elapsed_ms,
    )


async def execute_search(
    request: SearchRequest,
    store: Optional[CacheStore] = None,
    registry: Optional[SchemaRegistry] = None,
    access_token: Optional[str] = None,
) -> SearchResponse:
    """
    Ensure the cache is usable, then search it.

    Raises ``CacheNotReadyError`` when the initial load has not finished
    within the readiness timeout.  A token is only required when the
    cache needs (re)loading.
    """
    store = store or get_store()
    if store.is_empty() or store.is_stale():
        state = await store.ensure_ready(access_token or get_access_token())
        if not state.ready:
            raise CacheNotReadyError(state.message)
    return run_search(request, store, registry)
