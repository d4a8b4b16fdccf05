from __future__ import annotations

"""
In-memory snapshot of partners, programs and sessions.

Refreshing happens in two phases:

1. Objects.  All three entity kinds are fetched concurrently, parsed into
   canonical properties and swapped in as a new ``Snapshot``.  Link
   indexes from the previous snapshot are carried forward so searches
   keep returning sessions while associations reload.
2. Associations.  Program→Partner and Program→Session links are read in
   rate-limited batches in a background task and applied batch by batch
   to whatever snapshot is current at that moment.

Everything runs on a single event loop; the snapshot pointer is swapped in
one assignment and a Phase 2 batch is applied without awaiting, so readers
never see a half-applied batch.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from loguru import logger

from .associations import Links, SleepFn, fetch_links
from .config import (
    CACHE_LOADING_MESSAGE,
    CACHE_TTL_SECONDS,
    DISCRIMINATOR_FIELD,
    INITIAL_LOAD_TIMEOUT_S,
    CacheStats,
    PropertyValue,
)
from .crm_fetch import _http_client, fetch_all
from .normalize import parse_properties, raw_properties_for
from .schema_registry import SchemaRegistry, get_registry

ClientFactory = Callable[[str], httpx.AsyncClient]


@dataclass
class Entity:
    id: str
    properties: Dict[str, PropertyValue] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def get(self, name: str) -> PropertyValue:
        return self.properties.get(name)


@dataclass
class Snapshot:
    partners: Dict[str, Entity] = field(default_factory=dict)
    programs: Dict[str, Entity] = field(default_factory=dict)
    sessions: Dict[str, Entity] = field(default_factory=dict)
    program_to_partner: Dict[str, str] = field(default_factory=dict)
    program_to_sessions: Dict[str, List[str]] = field(default_factory=dict)
    refreshed_at: Optional[datetime] = None

    def has_links(self) -> bool:
        return bool(self.program_to_partner) or bool(self.program_to_sessions)


@dataclass
class ReadyState:
    ready: bool
    message: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_entities(kind: str, records: List[Dict[str, Any]], registry: SchemaRegistry) -> Dict[str, Entity]:
    out: Dict[str, Entity] = {}
    for rec in records:
        rid = rec.get("id")
        if rid is None:
            continue
        out[str(rid)] = Entity(
            id=str(rid),
            properties=parse_properties(kind, rec.get("properties") or {}, registry),
            created_at=rec.get("createdAt"),
            updated_at=rec.get("updatedAt"),
        )
    return out


def _carry_links(previous: Snapshot, snapshot: Snapshot) -> None:
    """Copy previous link indexes onto ``snapshot``, pruned to ids it contains."""
    for pid, cid in previous.program_to_partner.items():
        if pid in snapshot.programs and cid in snapshot.partners:
            snapshot.program_to_partner[pid] = cid
    for pid, sids in previous.program_to_sessions.items():
        if pid not in snapshot.programs:
            continue
        kept = [s for s in sids if s in snapshot.sessions]
        if kept:
            snapshot.program_to_sessions[pid] = kept


class CacheStore:
    """Owns the current snapshot and the refresh machinery."""

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        client_factory: ClientFactory = _http_client,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory
        self.ttl_seconds = ttl_seconds
        self._sleep = sleep

        self.snapshot = Snapshot()
        self.refresh_in_progress = False
        self.associations_loading = False
        self.associations_refreshed_at: Optional[datetime] = None

        self._refresh_task: Optional[asyncio.Task] = None
        self._associations_task: Optional[asyncio.Task] = None
        self._phase1_done: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def registry(self) -> SchemaRegistry:
        if self._registry is None:
            self._registry = get_registry()
        return self._registry

    # ---------------------------
    # State
    # ---------------------------

    def is_empty(self) -> bool:
        return not self.snapshot.programs

    def age_seconds(self) -> Optional[float]:
        if self.snapshot.refreshed_at is None:
            return None
        return (_utcnow() - self.snapshot.refreshed_at).total_seconds()

    def is_stale(self) -> bool:
        age = self.age_seconds()
        return age is None or age > self.ttl_seconds

    def load_snapshot(self, snapshot: Snapshot) -> None:
        """Install a prebuilt snapshot (tests, offline tooling)."""
        if snapshot.refreshed_at is None:
            snapshot.refreshed_at = _utcnow()
        self.snapshot = snapshot

    # ---------------------------
    # Accessors
    # ---------------------------

    def all_programs(self) -> List[Entity]:
        return list(self.snapshot.programs.values())

    def sessions_for_program(self, program_id: str) -> List[Entity]:
        snap = self.snapshot
        return [snap.sessions[s] for s in snap.program_to_sessions.get(program_id, []) if s in snap.sessions]

    def partner_for_program(self, program_id: str) -> Optional[Entity]:
        snap = self.snapshot
        cid = snap.program_to_partner.get(program_id)
        return snap.partners.get(cid) if cid else None

    def stats(self) -> CacheStats:
        snap = self.snapshot
        age = self.age_seconds()
        return CacheStats(
            partners_count=len(snap.partners),
            programs_count=len(snap.programs),
            sessions_count=len(snap.sessions),
            last_refreshed=snap.refreshed_at.isoformat() if snap.refreshed_at else None,
            cache_age_ms=int(age * 1000) if age is not None else 0,
            refresh_in_progress=self.refresh_in_progress,
            associations_loading=self.associations_loading,
            associations_last_refreshed=(
                self.associations_refreshed_at.isoformat() if self.associations_refreshed_at else None
            ),
            programs_with_sessions=sum(1 for sids in snap.program_to_sessions.values() if sids),
            programs_with_partner=len(snap.program_to_partner),
            is_stale=self.is_stale(),
        )

    # ---------------------------
    # Phase 1: objects
    # ---------------------------

    async def _load_objects(self, token: str, carry_links: bool) -> Snapshot:
        registry = self.registry
        logger.info("Cache refresh phase 1: fetching partners, programs and sessions")
        async with self._client_factory(token) as client:
            partners_raw, programs_raw, sessions_raw = await asyncio.gather(
                fetch_all(client, registry.upstream_object_type("partner"), raw_properties_for("partner", registry)),
                fetch_all(client, registry.upstream_object_type("program"), raw_properties_for("program", registry)),
                fetch_all(client, registry.upstream_object_type("session"), raw_properties_for("session", registry)),
            )

        snapshot = Snapshot(
            partners=_to_entities("partner", partners_raw, registry),
            programs=_to_entities("program", programs_raw, registry),
            sessions=_to_entities("session", sessions_raw, registry),
            refreshed_at=_utcnow(),
        )

        distribution = Counter(p.get(DISCRIMINATOR_FIELD) or "(none)" for p in snapshot.programs.values())
        logger.info("Program type distribution: {}", dict(distribution))

        previous = self.snapshot
        if carry_links and previous.has_links():
            _carry_links(previous, snapshot)
            logger.info(
                "Carried forward links for {} programs (sessions) and {} programs (partner)",
                len(snapshot.program_to_sessions),
                len(snapshot.program_to_partner),
            )

        logger.info(
            "Cache phase 1 complete: {} partners, {} programs, {} sessions",
            len(snapshot.partners),
            len(snapshot.programs),
            len(snapshot.sessions),
        )
        return snapshot

    async def _run_phase1(self, token: str, carry_links: bool) -> bool:
        if self.refresh_in_progress:
            logger.info("Cache refresh already in progress; skipping")
            return False
        self.refresh_in_progress = True
        # resolved when this phase 1 ends, whoever started it
        self._phase1_done = asyncio.get_running_loop().create_future()
        try:
            self.snapshot = await self._load_objects(token, carry_links=carry_links)
        finally:
            self.refresh_in_progress = False
            self._phase1_done.set_result(None)
        return True

    async def refresh(self, token: str) -> None:
        """Phase 1 now, Phase 2 in the background.

        Raises whatever Phase 1 raised; the previous snapshot stays current.
        """
        if await self._run_phase1(token, carry_links=True):
            self._start_associations(token)

    async def refresh_full(self, token: str) -> None:
        """Phase 1 without carried links, then wait for Phase 2."""
        if not await self._run_phase1(token, carry_links=False):
            return
        running = self._associations_task
        if running is not None and not running.done():
            await running
        await self.refresh_associations(token)

    # ---------------------------
    # Phase 2: associations
    # ---------------------------

    def _apply_partner_batch(self, batch_ids: List[str], links: Links) -> None:
        snap = self.snapshot
        for pid in batch_ids:
            if pid not in snap.programs:
                continue
            targets = [c for c in links.get(pid, []) if c in snap.partners]
            if targets:
                # first associated partner wins
                snap.program_to_partner[pid] = targets[0]
            else:
                snap.program_to_partner.pop(pid, None)

    def _apply_session_batch(self, batch_ids: List[str], links: Links) -> None:
        snap = self.snapshot
        for pid in batch_ids:
            if pid not in snap.programs:
                continue
            sids: List[str] = []
            for sid in links.get(pid, []):
                if sid in snap.sessions and sid not in sids:
                    sids.append(sid)
            if sids:
                snap.program_to_sessions[pid] = sids
            else:
                snap.program_to_sessions.pop(pid, None)

    async def refresh_associations(self, token: str) -> None:
        """Phase 2.  Errors are logged, never raised."""
        if self.associations_loading:
            logger.info("Association refresh already in progress; skipping")
            return
        self.associations_loading = True
        registry = self.registry
        program_ids = list(self.snapshot.programs)
        program_type = registry.upstream_object_type("program")
        try:
            logger.info("Cache refresh phase 2: loading associations for {} programs", len(program_ids))
            async with self._client_factory(token) as client:
                await fetch_links(
                    client,
                    program_type,
                    registry.upstream_object_type("partner"),
                    program_ids,
                    sleep=self._sleep,
                    on_batch=self._apply_partner_batch,
                )
                await fetch_links(
                    client,
                    program_type,
                    registry.upstream_object_type("session"),
                    program_ids,
                    sleep=self._sleep,
                    on_batch=self._apply_session_batch,
                )
            self.associations_refreshed_at = _utcnow()
            stats = self.stats()
            logger.info(
                "Cache phase 2 complete: {}/{} programs with sessions, {} with a partner",
                stats.programs_with_sessions,
                stats.programs_count,
                stats.programs_with_partner,
            )
        except Exception as e:
            logger.error("Association refresh failed: {}", e)
        finally:
            self.associations_loading = False

    # ---------------------------
    # Background tasks
    # ---------------------------

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task {} failed: {}", task.get_name(), exc)

    def _start_associations(self, token: str) -> None:
        if self._associations_task is not None and not self._associations_task.done():
            return
        self._associations_task = self._spawn(self.refresh_associations(token), "cache-associations")

    def start_refresh(self, token: str) -> asyncio.Task:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = self._spawn(self.refresh(token), "cache-refresh")
        return self._refresh_task

    async def wait_for_background(self) -> None:
        """Await every running background task (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------
    # Readiness
    # ---------------------------

    async def ensure_ready(self, token: str, timeout: float = INITIAL_LOAD_TIMEOUT_S) -> ReadyState:
        """
        Make sure searches have data to work with.

        An empty cache joins the phase 1 already running, however it was
        started, or starts a refresh.  It waits up to ``timeout`` seconds;
        the refresh keeps running after the wait gives up.  A stale cache
        triggers a background refresh and is reported ready straight away.
        """
        if self.is_empty():
            if self.refresh_in_progress and self._phase1_done is not None:
                waiter = self._phase1_done
            else:
                waiter = self.start_refresh(token)
            try:
                await asyncio.wait_for(asyncio.shield(waiter), timeout)
            except asyncio.TimeoutError:
                logger.warning("Initial cache load still running after {}s", timeout)
            except Exception as e:
                logger.error("Initial cache load failed: {}", e)
            if self.is_empty():
                return ReadyState(ready=False, message=CACHE_LOADING_MESSAGE)
            return ReadyState(ready=True)

        if self.is_stale() and not self.refresh_in_progress:
            logger.info("Cache is stale; refreshing in the background")
            self.start_refresh(token)
        return ReadyState(ready=True)


_store: Optional[CacheStore] = None


def get_store() -> CacheStore:
    """Process-wide cache store."""
    global _store
    if _store is None:
        _store = CacheStore()
    return _store


def set_store(store: Optional[CacheStore]) -> None:
    global _store
    _store = store
