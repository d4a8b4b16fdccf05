from __future__ import annotations

"""
Rate-limited batch reader for CRM associations.

Links are read through ``POST /crm/v4/associations/{from}/{to}/batch/read``
in batches of ``ASSOCIATION_BATCH_SIZE`` source ids.  The upstream rate
limit is tight, so batches are spaced by ``ASSOCIATION_BATCH_DELAY_S`` and
each batch is retried:

* HTTP 429: wait ``ASSOCIATION_RETRY_DELAY_S * 2**retry`` (2, 4, 8, 16 s)
* any other failure: wait the flat base delay

After ``ASSOCIATION_MAX_RETRIES`` attempts the batch is logged and
skipped.  Batch failures never propagate; a partially loaded link map is
still useful to the search pipeline.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from loguru import logger

from .config import (
    ASSOCIATION_BATCH_DELAY_S,
    ASSOCIATION_BATCH_SIZE,
    ASSOCIATION_MAX_RETRIES,
    ASSOCIATION_PROGRESS_EVERY,
    ASSOCIATION_RETRY_DELAY_S,
)

ASSOCIATIONS_PATH = "/crm/v4/associations/{from_type}/{to_type}/batch/read"

Links = Dict[str, List[str]]
SleepFn = Callable[[float], Awaitable[None]]
BatchCallback = Callable[[List[str], Links], None]


def _chunks(ids: Sequence[str], size: int) -> List[List[str]]:
    return [list(ids[i : i + size]) for i in range(0, len(ids), size)]


def _parse_links(payload: Dict) -> Links:
    """Only records with at least one link enter the map."""
    links: Links = {}
    for row in payload.get("results") or []:
        from_id = str((row.get("from") or {}).get("id", ""))
        if not from_id:
            continue
        to_ids = [str(t["toObjectId"]) for t in row.get("to") or [] if t.get("toObjectId") is not None]
        if not to_ids:
            continue
        bucket = links.setdefault(from_id, [])
        for to_id in to_ids:
            if to_id not in bucket:
                bucket.append(to_id)
    return links


def retry_delay(status_code: Optional[int], retry: int) -> float:
    """Delay before retry number ``retry`` (0-based)."""
    if status_code == 429:
        return ASSOCIATION_RETRY_DELAY_S * (2 ** retry)
    return ASSOCIATION_RETRY_DELAY_S


async def _read_batch(
    client: httpx.AsyncClient,
    path: str,
    batch: List[str],
    sleep: SleepFn,
) -> Optional[Links]:
    """One batch with retries.  ``None`` means the batch was skipped."""
    body = {"inputs": [{"id": i} for i in batch]}
    for attempt in range(1, ASSOCIATION_MAX_RETRIES + 1):
        status: Optional[int] = None
        try:
            r = await client.post(path, json=body)
            status = r.status_code
            if 200 <= status < 300:
                return _parse_links(r.json())
            reason = f"HTTP {status}"
        except httpx.HTTPError as e:
            reason = str(e) or e.__class__.__name__

        if attempt == ASSOCIATION_MAX_RETRIES:
            logger.error(
                "Association batch of {} ids failed after {} attempts ({}); skipping",
                len(batch),
                attempt,
                reason,
            )
            return None

        delay = retry_delay(status, attempt - 1)
        if status == 429:
            logger.warning("Rate limited on association batch, retry {} in {:.1f}s", attempt, delay)
        else:
            logger.warning("Association batch failed ({}), retry {} in {:.1f}s", reason, attempt, delay)
        await sleep(delay)
    return None


async def fetch_links(
    client: httpx.AsyncClient,
    from_type: str,
    to_type: str,
    from_ids: Sequence[str],
    sleep: SleepFn = asyncio.sleep,
    on_batch: Optional[BatchCallback] = None,
) -> Links:
    """
    Read ``from_type`` → ``to_type`` links for every id in ``from_ids``.

    Returns ``{from_id: [to_id, ...]}``.  When given, ``on_batch`` is
    called with the batch ids and that batch's links after every
    successful batch so callers can apply results incrementally.
    """
    path = ASSOCIATIONS_PATH.format(from_type=from_type, to_type=to_type)
    batches = _chunks([str(i) for i in from_ids], ASSOCIATION_BATCH_SIZE)
    links: Links = {}
    failed = 0

    logger.info("Fetching {} -> {} associations for {} ids in {} batches", from_type, to_type, len(from_ids), len(batches))
    for n, batch in enumerate(batches, start=1):
        if n > 1:
            await sleep(ASSOCIATION_BATCH_DELAY_S)

        batch_links = await _read_batch(client, path, batch, sleep)
        if batch_links is None:
            failed += 1
        else:
            for from_id, to_ids in batch_links.items():
                bucket = links.setdefault(from_id, [])
                for to_id in to_ids:
                    if to_id not in bucket:
                        bucket.append(to_id)
            if on_batch is not None:
                on_batch(batch, batch_links)

        if n % ASSOCIATION_PROGRESS_EVERY == 0:
            logger.info("Association progress {}/{} batches ({} linked so far)", n, len(batches), len(links))

    logger.info(
        "Associations {} -> {} done: {} linked ids, {} of {} batches failed",
        from_type,
        to_type,
        len(links),
        failed,
        len(batches),
    )
    return links
