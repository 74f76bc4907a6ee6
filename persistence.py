"""
Local Persistence Mirror

Keeps a durable copy of the case list so a restart can show cases before the
first network round trip completes:

1. seed(): load the stored list into the cache (marked stale) at start
2. The first fetch after seeding merges: server rows first, then stored rows
   the server does not know about (not-yet-synced local creations)
3. Every committed change to the case list is written back, only when the
   serialized list actually changed
"""
import copy
import logging
from typing import Awaitable, Callable, List, Optional

from cache import CacheEntry, ResourceCache
from config import CASES_STORAGE_KEY
from keys import CacheKey, CaseKeys
from mutations import is_temp_id
from storage import DurableStorage

logger = logging.getLogger(__name__)


def merge(local: List[dict], server: List[dict]) -> List[dict]:
    """Server rows (in server order), then local rows absent from the server."""
    server_ids = {row.get("id") for row in server}
    local_only = [row for row in local if row.get("id") not in server_ids]
    return list(server) + local_only


class CaseMirror:
    """
    Durable mirror of the unfiltered case list.

    Usage:
        mirror = CaseMirror(cache, storage)
        mirror.seed()
        mirror.start()
        cases = await cache.fetch(CaseKeys.list(), mirror.wrap(client.get_cases))
    """

    def __init__(
        self,
        cache: ResourceCache,
        storage: DurableStorage,
        list_key: CacheKey = None,
        storage_key: str = CASES_STORAGE_KEY,
    ):
        self.cache = cache
        self.storage = storage
        self.list_key = list_key if list_key is not None else CaseKeys.list()
        self.storage_key = storage_key
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_written: Optional[list] = None
        self._seeded_rows: Optional[List[dict]] = None

    def load(self) -> List[dict]:
        """Stored case rows. Absent or corrupt storage means no rows."""
        stored = self.storage.get(self.storage_key)
        if stored is None:
            return []
        if not isinstance(stored, list):
            logger.warning("Stored case list under %s is not a list; ignoring", self.storage_key)
            return []
        return [row for row in stored if isinstance(row, dict)]

    def seed(self) -> int:
        """
        Put the stored list into the cache ahead of the first fetch.

        Returns:
            Number of rows seeded (0 if nothing stored or the list is already cached)
        """
        rows = self.load()
        if not rows or self.cache.get_value(self.list_key) is not None:
            return 0

        self._seeded_rows = copy.deepcopy(rows)
        self._last_written = copy.deepcopy(rows)
        self.cache.set(self.list_key, rows)
        self.cache.invalidate(self.list_key, refetch="none")
        logger.info("Seeded %d case(s) from local storage", len(rows))
        return len(rows)

    def wrap(self, fetcher: Callable[[], Awaitable[List[dict]]]) -> Callable[[], Awaitable[List[dict]]]:
        """Wrap the case-list fetcher so server results are merged with local rows."""
        async def fetch_and_merge() -> List[dict]:
            server = await fetcher() or []
            if self._seeded_rows is not None:
                local, self._seeded_rows = self._seeded_rows, None
            else:
                current = self.cache.get_value(self.list_key) or []
                local = [row for row in current if is_temp_id(row.get("id"))]
            merged = merge(local, server)
            if len(merged) != len(server):
                logger.debug("Kept %d local-only case(s) on top of the server list",
                             len(merged) - len(server))
            return merged
        return fetch_and_merge

    # ========== Write-back ==========

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.cache.subscribe(self.list_key, self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, key: CacheKey, entry: Optional[CacheEntry]) -> None:
        if entry is None or not entry.has_value or not isinstance(entry.value, list):
            return
        if entry.value == self._last_written:
            return
        self.storage.set(self.storage_key, entry.value)
        self._last_written = copy.deepcopy(entry.value)
        logger.debug("Persisted %d case(s)", len(entry.value))

    def clear(self) -> None:
        self.storage.remove(self.storage_key)
        self._last_written = None
        self._seeded_rows = None
