"""
Resource Cache Store

Keyed in-memory store of server-derived values with per-key freshness and
retention timers, modelled on a query-cache client:

1. fetch() returns fresh values without a network call, returns stale values
   immediately while refreshing them in the background, and deduplicates
   concurrent fetches of the same key into one in-flight task
2. Failed fetches retry with capped exponential backoff, then record the
   error on the entry while keeping the last good value
3. invalidate() marks keys (or whole key families, by prefix) stale and
   refetches the ones somebody is watching
4. Idle entries are garbage-collected after the retention window

All writes go through set/update/invalidate/remove/restore. Listeners are
notified synchronously after each change.
"""
import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import (
    STALE_TIME_SECONDS,
    GC_TIME_SECONDS,
    GC_INTERVAL_SECONDS,
    QUERY_RETRY_COUNT,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
)
from errors import AuthError, ValidationError
from keys import CacheKey, key_contains, key_matches

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[CacheKey, Optional["CacheEntry"]], None]


class CacheStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class CacheEntry:
    """One cached value and its freshness/retention metadata."""
    key: CacheKey
    value: Any = None
    status: CacheStatus = CacheStatus.IDLE
    fetched_at: float = 0.0
    stale_after: float = 0.0
    gc_after: float = 0.0
    error: Optional[Exception] = None
    has_value: bool = False
    is_fetching: bool = False
    invalidated: bool = False

    def is_stale(self, now: float) -> bool:
        """Stale once invalidated, or at/after staleAfter (inclusive)."""
        return self.invalidated or now >= self.stale_after


class CancelledQueryError(Exception):
    """The fetch a caller was waiting on was cancelled and not replaced."""


def retry_delay(attempt: int,
                base: float = RETRY_BASE_DELAY_SECONDS,
                cap: float = RETRY_MAX_DELAY_SECONDS) -> float:
    """Delay before retry number `attempt` (0-based): min(base * 2^attempt, cap)."""
    return min(base * (2 ** attempt), cap)


def _should_retry(error: Exception) -> bool:
    return not isinstance(error, (AuthError, ValidationError))


class ResourceCache:
    """
    Query cache for backend resources.

    Usage:
        cache = ResourceCache()
        cases = await cache.fetch(CaseKeys.list(), client.get_cases)
        cache.invalidate(CaseKeys.all)
    """

    def __init__(
        self,
        stale_time: float = STALE_TIME_SECONDS,
        gc_time: float = GC_TIME_SECONDS,
        retry_count: int = QUERY_RETRY_COUNT,
        retry_base_delay: float = RETRY_BASE_DELAY_SECONDS,
        retry_max_delay: float = RETRY_MAX_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.stale_time = stale_time
        self.gc_time = gc_time
        self.retry_count = retry_count
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._clock = clock
        self._sleep = sleep

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._fetchers: Dict[CacheKey, Fetcher] = {}
        self._stale_times: Dict[CacheKey, float] = {}
        self._in_flight: Dict[CacheKey, asyncio.Task] = {}
        self._generations: Dict[CacheKey, int] = {}
        self._listeners: List[Tuple[CacheKey, bool, Listener]] = []
        self._gc_task: Optional[asyncio.Task] = None

    # ========== Reads ==========

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Pure lookup. Returns a detached copy of the entry, or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return replace(entry, value=copy.deepcopy(entry.value))

    def get_value(self, key: CacheKey, default: Any = None) -> Any:
        """The cached value, copied; edits go through set() or update()."""
        entry = self._entries.get(key)
        if entry is None or not entry.has_value:
            return default
        return copy.deepcopy(entry.value)

    def keys(self, prefix: CacheKey = ()) -> List[CacheKey]:
        """All cached keys under a prefix."""
        return [k for k in self._entries if key_matches(k, prefix)]

    def is_fetching(self, key: CacheKey) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ========== Writes ==========

    def set(
        self,
        key: CacheKey,
        value: Any,
        stale_time: float = None,
        status: CacheStatus = CacheStatus.SUCCESS,
        error: Exception = None,
    ) -> CacheEntry:
        """Create or replace an entry's value and refresh its timers."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry

        if stale_time is not None:
            self._stale_times[key] = stale_time
        fresh_for = self._stale_times.get(key, self.stale_time)

        entry.value = value
        entry.has_value = True
        entry.status = status
        entry.error = error
        entry.fetched_at = now
        entry.stale_after = now + fresh_for
        entry.gc_after = now + self.gc_time
        entry.invalidated = False
        entry.is_fetching = self.is_fetching(key)

        self._notify(key)
        return entry

    def update(self, key: CacheKey, updater: Callable[[Any], Any]) -> Optional[CacheEntry]:
        """set(key, updater(current)). Skips the write when updater returns None."""
        new_value = updater(self.get_value(key))
        if new_value is None:
            return None
        return self.set(key, new_value)

    def invalidate(self, prefix: CacheKey, refetch: str = "active") -> List[asyncio.Task]:
        """
        Mark every entry under prefix stale without clearing its value.

        Args:
            prefix: Exact key or key-family prefix
            refetch: "active" refetches entries that have a fetcher and a
                direct subscriber; "all" refetches every entry with a
                fetcher; "none" only marks

        Returns:
            The refetch tasks (shared with any fetch already in flight)
        """
        tasks = []
        matched = self.keys(prefix)
        for key in matched:
            entry = self._entries[key]
            entry.invalidated = True
            self._notify(key)

            if key not in self._fetchers or refetch == "none":
                continue
            if refetch == "all" or self._has_observer(key):
                tasks.append(self._ensure_fetch(key))

        if matched:
            logger.debug("Invalidated %d key(s) under %r, refetching %d", len(matched), prefix, len(tasks))
        return tasks

    def remove(self, key: CacheKey) -> None:
        """Delete the entry and cancel any in-flight fetch for it."""
        self.cancel(key)
        existed = self._entries.pop(key, None) is not None
        self._fetchers.pop(key, None)
        self._stale_times.pop(key, None)
        if existed:
            self._notify(key)

    def cancel(self, key: CacheKey) -> None:
        """Cancel an in-flight fetch but keep the entry."""
        task = self._in_flight.pop(key, None)
        self._bump_generation(key)
        if task is not None and not task.done():
            task.cancel()
            entry = self._entries.get(key)
            if entry is not None:
                entry.is_fetching = False
                if not entry.has_value:
                    entry.status = CacheStatus.IDLE
            logger.debug("Cancelled fetch for %r", key)

    def clear(self) -> None:
        """Drop everything (logout)."""
        for key in list(self._entries):
            self.remove(key)

    # ========== Snapshots ==========

    def snapshot(self, key: CacheKey) -> Optional[CacheEntry]:
        """Deep copy of an entry for later restore()."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        snap = replace(entry, value=copy.deepcopy(entry.value))
        snap.is_fetching = False
        return snap

    def restore(self, key: CacheKey, snap: Optional[CacheEntry]) -> None:
        """Put an entry back exactly as snapshotted (None means it did not exist)."""
        if snap is None:
            if key in self._entries:
                self.cancel(key)
                del self._entries[key]
                self._notify(key)
            return
        restored = replace(snap, value=copy.deepcopy(snap.value))
        restored.is_fetching = self.is_fetching(key)
        self._entries[key] = restored
        self._notify(key)

    # ========== Fetching ==========

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        stale_time: float = None,
        force: bool = False,
    ) -> Any:
        """
        Read a key through the cache.

        Fresh value: returned without a network call.
        Stale value: returned immediately, refetch scheduled in the background.
        No value: waits for the (deduplicated) fetch; raises its error.
        force: ignore freshness but still join an in-flight fetch.
        """
        now = self._clock()
        self._fetchers[key] = fetcher
        if stale_time is not None:
            self._stale_times[key] = stale_time

        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, status=CacheStatus.PENDING)
            self._entries[key] = entry
        entry.gc_after = now + self.gc_time

        if entry.has_value and not force:
            if entry.is_stale(now):
                self._ensure_fetch(key)
            return entry.value

        task = self._ensure_fetch(key)
        return await self._await_fetch(key, task)

    async def refetch(self, key: CacheKey) -> Any:
        """Start a new fetch that supersedes any in-flight one (last writer wins)."""
        if key not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key!r}")
        self.cancel(key)
        task = self._start_fetch(key)
        return await self._await_fetch(key, task)

    async def prefetch(self, key: CacheKey, fetcher: Fetcher, stale_time: float = None) -> None:
        """Warm a key. Errors are recorded on the entry rather than raised."""
        try:
            await self.fetch(key, fetcher, stale_time=stale_time)
        except Exception as e:
            logger.debug("Prefetch of %r failed: %s", key, e)

    def _ensure_fetch(self, key: CacheKey) -> asyncio.Task:
        existing = self._in_flight.get(key)
        if existing is not None and not existing.done():
            return existing
        return self._start_fetch(key)

    def _start_fetch(self, key: CacheKey) -> asyncio.Task:
        generation = self._bump_generation(key)
        fetcher = self._fetchers[key]

        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, status=CacheStatus.PENDING)
            self._entries[key] = entry
        if not entry.has_value:
            entry.status = CacheStatus.PENDING
        entry.is_fetching = True

        task = asyncio.ensure_future(self._run_fetch(key, fetcher, generation))
        task.add_done_callback(_consume_result)
        self._in_flight[key] = task
        return task

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher, generation: int) -> Any:
        attempt = 0
        while True:
            try:
                value = await fetcher()
                break
            except Exception as e:
                if attempt >= self.retry_count or not _should_retry(e):
                    if self._is_current(key, generation):
                        self._record_error(key, e)
                    raise
                delay = retry_delay(attempt, self.retry_base_delay, self.retry_max_delay)
                attempt += 1
                logger.info(
                    "Fetch %r failed (%s); retry %d/%d in %.1fs",
                    key, e, attempt, self.retry_count, delay,
                )
                await self._sleep(delay)

        if self._is_current(key, generation):
            self._in_flight.pop(key, None)
            self.set(key, value)
        return value

    async def _await_fetch(self, key: CacheKey, task: asyncio.Task) -> Any:
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise  # the caller itself was cancelled
                replacement = self._in_flight.get(key)
                if replacement is not None and replacement is not task:
                    task = replacement
                    continue
                entry = self._entries.get(key)
                if entry is not None and entry.has_value:
                    return entry.value
                raise CancelledQueryError(f"Fetch for {key!r} was cancelled")

    def _record_error(self, key: CacheKey, error: Exception) -> None:
        self._in_flight.pop(key, None)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.status = CacheStatus.ERROR
        entry.error = error
        entry.is_fetching = False
        logger.warning("Fetch %r failed after retries: %s", key, error)
        self._notify(key)

    def _bump_generation(self, key: CacheKey) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        return generation

    def _is_current(self, key: CacheKey, generation: int) -> bool:
        return self._generations.get(key) == generation and key in self._entries

    # ========== Entity identity ==========

    def replace_entity(self, temp_id: Any, entity: dict, id_field: str = "id") -> List[CacheKey]:
        """
        Swap a temporary id for the server-confirmed entity everywhere.

        List values have the temporary row replaced (not patched) by the
        server entity and are de-duplicated on the server id; single-record
        values with the temporary id are replaced; keys that embed the
        temporary id are moved to the server id.

        Returns:
            Keys whose value changed
        """
        real_id = entity.get(id_field)
        changed = []
        for key in list(self._entries):
            entry = self._entries.get(key)
            if entry is None:
                continue

            if key_contains(key, temp_id):
                new_key = tuple(real_id if part == temp_id else part for part in key)
                value = entry.value
                if entry.has_value:
                    value, _ = swap_entity(entry.value, temp_id, entity, id_field)
                self.remove(key)
                if entry.has_value:
                    self.set(new_key, value)
                changed.append(new_key)
                continue

            if not entry.has_value:
                continue
            new_value, did_change = swap_entity(entry.value, temp_id, entity, id_field)
            if did_change:
                self.set(key, new_value)
                changed.append(key)

        if changed:
            logger.debug("Replaced temp id %s with %s in %d key(s)", temp_id, real_id, len(changed))
        return changed

    # ========== Subscriptions ==========

    def subscribe(self, key: CacheKey, listener: Listener, prefix: bool = False) -> Callable[[], None]:
        """
        Register a listener for one key (or a key family when prefix=True).

        Direct (non-prefix) subscribers make a key "active": invalidation
        refetches it right away.
        """
        record = (key, prefix, listener)
        self._listeners.append(record)

        def unsubscribe():
            if record in self._listeners:
                self._listeners.remove(record)
        return unsubscribe

    def _has_observer(self, key: CacheKey) -> bool:
        return any(k == key and not is_prefix for k, is_prefix, _ in self._listeners)

    def _notify(self, key: CacheKey) -> None:
        snapshot = self.get(key)
        for watched, is_prefix, listener in list(self._listeners):
            if watched == key or (is_prefix and key_matches(key, watched)):
                try:
                    listener(key, snapshot)
                except Exception:
                    logger.exception("Cache listener for %r failed", watched)

    # ========== Garbage collection ==========

    def collect_garbage(self) -> int:
        """Evict idle entries past gc_after with no subscriber and no fetch."""
        now = self._clock()
        evicted = 0
        for key in list(self._entries):
            entry = self._entries[key]
            if now < entry.gc_after or self.is_fetching(key):
                continue
            if any(key_matches(key, k) if p else k == key for k, p, _ in self._listeners):
                continue
            self.remove(key)
            evicted += 1
        if evicted:
            logger.debug("Garbage-collected %d idle cache entries", evicted)
        return evicted

    def start_gc(self, interval: float = GC_INTERVAL_SECONDS) -> None:
        if self._gc_task is None or self._gc_task.done():
            self._gc_task = asyncio.ensure_future(self._gc_loop(interval))

    async def stop_gc(self) -> None:
        if self._gc_task is not None:
            self._gc_task.cancel()
            try:
                await self._gc_task
            except asyncio.CancelledError:
                pass
            self._gc_task = None

    async def _gc_loop(self, interval: float) -> None:
        while True:
            await self._sleep(interval)
            self.collect_garbage()


def swap_entity(value: Any, temp_id: Any, entity: dict, id_field: str = "id") -> Tuple[Any, bool]:
    """Return (value with temp row replaced by entity, changed?)."""
    real_id = entity.get(id_field)

    if isinstance(value, dict):
        if value.get(id_field) == temp_id:
            return copy.deepcopy(entity), True
        return value, False

    if isinstance(value, list):
        result = []
        changed = False
        seen_real = False
        for item in value:
            if isinstance(item, dict) and item.get(id_field) == temp_id:
                item = copy.deepcopy(entity)
                changed = True
            if isinstance(item, dict) and item.get(id_field) == real_id:
                if seen_real:
                    changed = True
                    continue
                seen_real = True
            result.append(item)
        return (result, True) if changed else (value, False)

    return value, False


def _consume_result(task: asyncio.Task) -> None:
    # Background fetch errors are recorded on the entry; mark them retrieved.
    if not task.cancelled():
        task.exception()
