from __future__ import annotations

"""
Paginated reader for CRM objects.

``fetch_all`` walks ``GET /crm/v3/objects/{type}`` following the
``paging.next.after`` cursor until the upstream stops returning one and
hands back the raw records (``id``, ``properties``, ``createdAt``,
``updatedAt``).  Property parsing happens later in ``normalize``.

There is no retry here: a failed page aborts the whole fetch with
``UpstreamError``.
"""

from typing import Any, Dict, List, Optional, Sequence

import httpx
from loguru import logger

from .config import (
    CRM_API_BASE,
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
    OBJECT_PAGE_LIMIT,
)
from .errors import UpstreamError

OBJECTS_PATH = "/crm/v3/objects/{object_type}"
PROPERTIES_PATH = "/crm/v3/properties/{object_type}"

# Upper bound on pages per object type; guards against a cursor loop
MAX_PAGES = 10_000


def _http_client(
    access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Construct a configured async client for the CRM API.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """
    # trust_env=False so proxy variables in the environment are ignored
    return httpx.AsyncClient(
        base_url=CRM_API_BASE,
        headers={
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "User-Agent": HTTP_USER_AGENT,
        },
        timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
        transport=transport,
        trust_env=False,
    )


async def _get_json(client: httpx.AsyncClient, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        r = await client.get(path, params=params)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Request to {path} failed: {e}") from e
    if r.status_code >= 400:
        raise UpstreamError(
            f"Failed to fetch {path}: {r.status_code} - {r.text}",
            status_code=r.status_code,
        )
    return r.json()


async def fetch_all(
    client: httpx.AsyncClient,
    object_type: str,
    properties: Sequence[str],
) -> List[Dict[str, Any]]:
    """
    Fetch every record of ``object_type`` with the requested properties.

    Raises ``UpstreamError`` on the first non-success page.
    """
    path = OBJECTS_PATH.format(object_type=object_type)
    records: List[Dict[str, Any]] = []
    after: Optional[str] = None
    pages = 0

    while True:
        params: Dict[str, Any] = {"limit": OBJECT_PAGE_LIMIT, "properties": ",".join(properties)}
        if after:
            params["after"] = after
        data = await _get_json(client, path, params)
        page = data.get("results") or []
        records.extend(page)
        pages += 1
        logger.debug("Fetched {} page {} ({} records, {} so far)", object_type, pages, len(page), len(records))

        after = ((data.get("paging") or {}).get("next") or {}).get("after")
        if not after:
            break
        if pages >= MAX_PAGES:
            logger.warning("Stopping {} fetch after {} pages; cursor still open", object_type, pages)
            break

    logger.info("Fetched {} {} records in {} pages", len(records), object_type, pages)
    return records


async def fetch_property_definitions(client: httpx.AsyncClient, object_type: str) -> List[Dict[str, Any]]:
    """List the upstream property definitions for ``object_type`` (diagnostics only)."""
    data = await _get_json(client, PROPERTIES_PATH.format(object_type=object_type), {})
    results = data.get("results") or []
    logger.info("{} exposes {} properties", object_type, len(results))
    return results
