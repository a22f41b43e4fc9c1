"""
Caching utilities for cloud cost queries.

Keeps the last successful result of every query in memory, serves it while it
is younger than the ttl, and collapses concurrent fetches of the same query
into one provider call. Entries can be mirrored to a record store so they
survive restarts.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError

from ..providers.base import CacheMiss, CostQuery, CostSummary, CostTrend, QueryKind, utcnow
from ..storage.records import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=6)

CostPayload = Annotated[CostSummary | CostTrend, Field(discriminator="kind")]

CACHE_KINDS = tuple(kind.value for kind in QueryKind)


class CacheEntry(BaseModel):
    """The last successful result of one query. Replaced wholesale, never patched."""

    query: CostQuery
    payload: CostPayload
    fetched_at: datetime
    ttl_seconds: float = Field(DEFAULT_TTL.total_seconds(), gt=0)

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + self.ttl

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def is_fresh(self, now: datetime) -> bool:
        return self.age(now) < self.ttl


@dataclass
class _InFlight:
    forced: bool
    task: asyncio.Task | None = None
    replacement: "_InFlight | None" = None
    # Set when the query is invalidated mid-fetch; the result is returned but not stored
    discarded: bool = False


class CacheManager:
    """Freshness-checked, single-flight cache of cost query results."""

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        store: RecordStore | None = None,
        clock: Callable[[], datetime] | None = None,
        on_refresh_needed: Callable[[CostQuery], Any] | None = None,
    ):
        """
        Args:
            ttl: Age after which an entry is stale
            store: Optional record store mirroring every entry
            clock: Source of the current time
            on_refresh_needed: Called with the query when an entry crosses its ttl
        """
        if ttl <= timedelta(0):
            raise ValueError("Cache ttl must be positive")

        self.ttl = ttl
        self.store = store
        self.on_refresh_needed = on_refresh_needed
        self._clock = clock or utcnow

        self._entries: dict[CostQuery, CacheEntry] = {}
        self._inflight: dict[CostQuery, _InFlight] = {}
        self._discarded: set[asyncio.Task] = set()
        self._timers: dict[CostQuery, asyncio.TimerHandle] = {}
        self._closed = False

        self._hits = 0
        self._misses = 0
        self._fetches = 0
        self._failures = 0

        logger.info(
            f"Cache initialized: ttl {ttl.total_seconds() / 3600:g}h, "
            f"{'persistent' if store is not None else 'memory only'}"
        )

    async def get_or_fetch(
        self,
        query: CostQuery,
        fetch_fn: Callable[[], Awaitable[CostSummary | CostTrend]],
        force_refresh: bool = False,
    ) -> CostSummary | CostTrend:
        """
        Return the cached payload for `query`, fetching it when absent or stale.

        A failed fetch leaves the previous entry in place and raises to every
        caller waiting on it.
        """
        if self._closed:
            raise RuntimeError("Cache manager is closed")

        if not force_refresh:
            try:
                payload = self._fresh_payload(query)
            except CacheMiss as e:
                logger.debug(str(e))
            else:
                self._hits += 1
                logger.debug(f"Cache hit for {query.kind.value}:{query.account_id}")
                return payload

        flight = self._inflight.get(query)
        superseded = None
        if flight is not None and force_refresh and not flight.forced:
            logger.info(
                f"Forced refresh supersedes in-flight fetch for {query.kind.value}:{query.account_id}"
            )
            flight.task.cancel()
            superseded, flight = flight, None

        if flight is None:
            self._misses += 1
            flight = self._start_fetch(query, fetch_fn, force_refresh)
            if superseded is not None:
                superseded.replacement = flight
        else:
            logger.debug(f"Joining in-flight fetch for {query.kind.value}:{query.account_id}")

        return await self._wait_for(flight)

    def _fresh_payload(self, query: CostQuery) -> CostSummary | CostTrend:
        entry = self._entries.get(query)
        if entry is None:
            raise CacheMiss(f"No cache entry for {query.kind.value}:{query.account_id}")
        if not entry.is_fresh(self._clock()):
            raise CacheMiss(
                f"Cache entry for {query.kind.value}:{query.account_id} is "
                f"{entry.age(self._clock())} old"
            )
        return entry.payload

    def _start_fetch(
        self,
        query: CostQuery,
        fetch_fn: Callable[[], Awaitable[CostSummary | CostTrend]],
        forced: bool,
    ) -> _InFlight:
        flight = _InFlight(forced=forced)
        flight.task = asyncio.create_task(
            self._run_fetch(query, fetch_fn, flight),
            name=f"cache-fetch:{query.kind.value}:{query.account_id}",
        )
        self._inflight[query] = flight
        flight.task.add_done_callback(functools.partial(self._on_fetch_done, query, flight))
        return flight

    async def _run_fetch(
        self,
        query: CostQuery,
        fetch_fn: Callable[[], Awaitable[CostSummary | CostTrend]],
        flight: _InFlight,
    ) -> CostSummary | CostTrend:
        self._fetches += 1
        logger.debug(f"Cache miss for {query.kind.value}:{query.account_id}, fetching")
        try:
            payload = await fetch_fn()
        except asyncio.CancelledError:
            logger.debug(f"Fetch for {query.kind.value}:{query.account_id} cancelled")
            raise
        except Exception as e:
            self._failures += 1
            logger.warning(f"Fetch for {query.kind.value}:{query.account_id} failed: {e}")
            raise

        # A cancel requested after the provider returned still wins
        if asyncio.current_task().cancelling():
            raise asyncio.CancelledError()

        if flight.discarded:
            logger.info(
                f"Discarding fetch for {query.kind.value}:{query.account_id}, invalidated while in flight"
            )
            return payload

        self._store_entry(query, payload)
        return payload

    def _on_fetch_done(self, query: CostQuery, flight: _InFlight, task: asyncio.Task) -> None:
        if self._inflight.get(query) is flight:
            del self._inflight[query]
        if not task.cancelled():
            # Mark the exception as retrieved; waiters re-raise it themselves
            task.exception()

    async def _wait_for(self, flight: _InFlight) -> CostSummary | CostTrend:
        """Await a shared fetch, following it when a forced refresh supersedes it."""
        while True:
            try:
                return await asyncio.shield(flight.task)
            except asyncio.CancelledError:
                if asyncio.current_task().cancelling() or flight.replacement is None:
                    raise
                flight = flight.replacement

    def _store_entry(self, query: CostQuery, payload: CostSummary | CostTrend) -> CacheEntry:
        entry = CacheEntry(
            query=query,
            payload=payload,
            fetched_at=self._clock(),
            ttl_seconds=self.ttl.total_seconds(),
        )
        self._entries[query] = entry
        self._persist(entry)
        self._schedule_refresh(entry)
        return entry

    def _persist(self, entry: CacheEntry) -> None:
        if self.store is None:
            return
        record = StoredRecord(
            id=entry.query.cache_key,
            kind=entry.query.kind.value,
            account_id=entry.query.account_id,
            body=entry.model_dump_json(),
            updated_at=entry.fetched_at,
        )
        try:
            self.store.upsert(record)
        except Exception as e:
            logger.error(f"Failed to persist cache entry {record.id}: {e}")

    def _schedule_refresh(self, entry: CacheEntry) -> None:
        if self.on_refresh_needed is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        self._cancel_timer(entry.query)
        delay = max((entry.expires_at - self._clock()).total_seconds(), 0.0)
        self._timers[entry.query] = loop.call_later(delay, self._fire_refresh, entry.query)

    def _fire_refresh(self, query: CostQuery) -> None:
        self._timers.pop(query, None)
        if query not in self._entries or self.on_refresh_needed is None:
            return
        logger.debug(f"Cache entry for {query.kind.value}:{query.account_id} is stale")
        try:
            self.on_refresh_needed(query)
        except Exception as e:
            logger.error(f"Refresh callback failed for {query.account_id}: {e}")

    def _cancel_timer(self, query: CostQuery) -> None:
        timer = self._timers.pop(query, None)
        if timer is not None:
            timer.cancel()

    def peek(self, query: CostQuery) -> CacheEntry | None:
        """Last known good entry regardless of freshness."""
        return self._entries.get(query)

    def latest(self, account_id: str, kind: QueryKind) -> CacheEntry | None:
        """Most recently fetched entry of one kind for an account, across query windows."""
        candidates = [
            entry
            for query, entry in self._entries.items()
            if query.account_id == account_id and query.kind == kind
        ]
        return max(candidates, key=lambda e: e.fetched_at, default=None)

    def is_fresh(self, query: CostQuery) -> bool:
        entry = self._entries.get(query)
        return entry is not None and entry.is_fresh(self._clock())

    def _delete_record(self, record_id: str) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(record_id)
        except Exception as e:
            logger.error(f"Failed to delete cache record {record_id}: {e}")

    def _discard_inflight(self, query: CostQuery) -> None:
        flight = self._inflight.pop(query, None)
        if flight is not None:
            flight.discarded = True
            self._discarded.add(flight.task)
            flight.task.add_done_callback(self._discarded.discard)

    def invalidate(self, query: CostQuery) -> bool:
        """Drop one entry; the next get_or_fetch fetches and a fetch in flight stores nothing."""
        self._discard_inflight(query)
        self._cancel_timer(query)
        self._delete_record(query.cache_key)
        return self._entries.pop(query, None) is not None

    def invalidate_account(self, account_id: str) -> int:
        """Drop every entry belonging to one account."""
        for query in [q for q in self._inflight if q.account_id == account_id]:
            self._discard_inflight(query)

        queries = [q for q in self._entries if q.account_id == account_id]
        for query in queries:
            self.invalidate(query)

        if self.store is not None:
            try:
                for kind in CACHE_KINDS:
                    for record in self.store.query(kind=kind, account_id=account_id):
                        self.store.delete(record.id)
            except Exception as e:
                logger.error(f"Failed to delete cache records for {account_id}: {e}")

        logger.info(f"Invalidated {len(queries)} cache entries for {account_id}")
        return len(queries)

    def clear(self) -> int:
        """Drop every entry."""
        count = len(self._entries)
        for query in list(self._inflight):
            self._discard_inflight(query)
        for query in list(self._timers):
            self._cancel_timer(query)
        self._entries.clear()

        if self.store is not None:
            try:
                for kind in CACHE_KINDS:
                    self.store.clear(kind=kind)
            except Exception as e:
                logger.error(f"Failed to clear persisted cache: {e}")

        logger.info(f"Cleared {count} cache entries")
        return count

    def rehydrate(self) -> int:
        """
        Load persisted entries into memory.

        Freshness is checked when an entry is served, so stale entries load too
        and remain available as last known values.
        """
        if self.store is None:
            return 0

        loaded = 0
        for kind in CACHE_KINDS:
            for record in self.store.query(kind=kind):
                try:
                    entry = CacheEntry.model_validate_json(record.body)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable cache record {record.id}: {e}")
                    continue

                existing = self._entries.get(entry.query)
                if existing is not None and existing.fetched_at >= entry.fetched_at:
                    continue
                entry = entry.model_copy(update={"ttl_seconds": self.ttl.total_seconds()})
                self._entries[entry.query] = entry
                self._schedule_refresh(entry)
                loaded += 1

        logger.info(f"Rehydrated {loaded} cache entries")
        return loaded

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        fresh = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return {
            "entries": len(self._entries),
            "fresh": fresh,
            "stale": len(self._entries) - fresh,
            "in_flight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "fetches": self._fetches,
            "failures": self._failures,
            "ttl_hours": self.ttl.total_seconds() / 3600,
            "persistent": self.store is not None,
        }

    async def aclose(self) -> None:
        """Cancel pending refresh timers and in-flight fetches."""
        self._closed = True
        for query in list(self._timers):
            self._cancel_timer(query)

        tasks = [flight.task for flight in self._inflight.values()] + list(self._discarded)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._discarded.clear()
