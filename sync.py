"""
Court Sync Manager

Composition root for the data-sync layer. Builds one of everything for a
session (storage, session context, transport client, cache, policy,
coordinator, mirror, realtime channel, poller) and owns the init/teardown
contract:

    init()      load session, seed cases from storage, go live if signed in
    resync_all() refetch cases, motions and orders (the poller's unit of work)
    teardown()  stop polling, close the channel, release the HTTP client
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from api_client import CourtClient
from cache import ResourceCache
from config import COURT_API_URL, COURT_SOCKET_URL
from errors import AuthError, CourtAPIError
from invalidation import ReconciliationPolicy
from keys import CaseKeys, MotionKeys, OrderKeys
from mutations import MutationCoordinator
from operations import CourtOperations
from persistence import CaseMirror
from queries import CourtQueries
from realtime import ChannelStatus, RealtimeChannel, default_socket_client
from scheduler import PollingScheduler
from session import SessionContext, SessionUser
from storage import DurableStorage

logger = logging.getLogger(__name__)

RESYNC_ENTITIES = ("cases", "motions", "orders")


@dataclass
class SyncResult:
    """Result of resyncing one entity type."""
    entity_type: str
    total: int
    added: int
    removed: int
    duration_seconds: float
    error: Optional[str] = None

    @property
    def changes(self) -> int:
        return self.added + self.removed

    @property
    def ok(self) -> bool:
        return self.error is None


def _ids(rows: Any) -> set:
    return {row.get("id") for row in rows or [] if isinstance(row, dict)}


class CourtSync:
    """
    One application session.

    Usage:
        sync = CourtSync()
        await sync.init()
        cases = await sync.queries.cases()
        await sync.operations.update_motion_status(7, "Approved")
        await sync.teardown()
    """

    def __init__(
        self,
        storage: DurableStorage = None,
        base_url: str = COURT_API_URL,
        socket_url: str = COURT_SOCKET_URL,
        transport: httpx.AsyncBaseTransport = None,
        socket_factory: Callable[[], Any] = default_socket_client,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.storage = storage or DurableStorage()
        self.session = SessionContext(self.storage)
        self.client = CourtClient(self.session, base_url=base_url, transport=transport)

        self.cache = ResourceCache(clock=clock, sleep=sleep)
        self.policy = ReconciliationPolicy(self.cache)
        self.coordinator = MutationCoordinator(self.cache, self.policy, clock=clock)
        self.mirror = CaseMirror(self.cache, self.storage)
        self.queries = CourtQueries(self.cache, self.client, mirror=self.mirror)

        self.channel = RealtimeChannel(
            self.session, url=socket_url, client_factory=socket_factory, sleep=sleep
        )
        self.operations = CourtOperations(self.coordinator, self.client, self.session, self.channel)
        self.poller = PollingScheduler(self.resync_all, self.session, self.channel, sleep=sleep)
        self._unsubscribe_events = self.channel.on_event(self._on_push_event)

        self.seeded_cases = 0
        self.auth_error: Optional[AuthError] = None

    async def __aenter__(self) -> "CourtSync":
        await self.init()
        return self

    async def __aexit__(self, *args) -> None:
        await self.teardown()

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    # ========== Lifecycle ==========

    async def init(self, go_live: bool = True) -> bool:
        """
        Start the session. Never raises for a missing or expired session.

        Returns:
            True if signed in
        """
        self.session.load()
        self.mirror.start()
        self.seeded_cases = self.mirror.seed()
        self.cache.start_gc()

        if self.session.user is not None and not self.session.token:
            try:
                await self.client.auth.refresh_access_token()
            except AuthError as e:
                self.auth_error = e
                logger.info("Stored session could not be refreshed (%s)", e.code)
            except CourtAPIError as e:
                logger.warning("Session refresh failed: %s", e)

        if not self.session.is_authenticated:
            logger.info("No active session (%d cached case(s) available)", self.seeded_cases)
            return False

        if go_live:
            await self.go_live()
        return True

    async def go_live(self) -> ChannelStatus:
        """Connect push, start polling and kick off the first resync."""
        status = await self.channel.connect()
        self.poller.start()
        self.poller.tick(force=True)
        return status

    async def teardown(self) -> None:
        await self.poller.stop()
        await self.channel.close()
        self._unsubscribe_events()
        self.mirror.stop()
        await self.cache.stop_gc()
        await self.client.aclose()

    # ========== Session ==========

    async def login(self, username: str, password: str, role: str, go_live: bool = True) -> SessionUser:
        user = await self.client.auth.login(username, password, role)
        self.auth_error = None
        if go_live:
            await self.go_live()
        return user

    async def logout(self) -> None:
        await self.poller.stop()
        await self.channel.disconnect()
        await self.client.auth.logout()
        self.cache.clear()

    # ========== Resync ==========

    async def resync_all(self, entities: List[str] = None) -> Dict[str, SyncResult]:
        """
        Refetch each entity family and report what changed.

        Errors are captured per entity rather than raised.
        """
        loaders = {
            "cases": (CaseKeys.all, CaseKeys.list(), lambda: self.queries.cases(force=True)),
            "motions": (MotionKeys.all, MotionKeys.list(), lambda: self.queries.motions(force=True)),
            "orders": (OrderKeys.all, OrderKeys.list(), lambda: self.queries.orders(force=True)),
        }

        results = {}
        for entity_type in entities or RESYNC_ENTITIES:
            if entity_type not in loaders:
                raise ValueError(f"Unknown entity type: {entity_type}")
            family, list_key, load = loaders[entity_type]

            start_time = time.time()
            before = _ids(self.cache.get_value(list_key))
            try:
                self.cache.invalidate(family)
                rows = await load()
            except CourtAPIError as e:
                logger.warning("Resync of %s failed: %s", entity_type, e)
                results[entity_type] = SyncResult(
                    entity_type=entity_type,
                    total=len(before),
                    added=0,
                    removed=0,
                    duration_seconds=time.time() - start_time,
                    error=str(e),
                )
                continue

            after = _ids(rows)
            results[entity_type] = SyncResult(
                entity_type=entity_type,
                total=len(rows or []),
                added=len(after - before),
                removed=len(before - after),
                duration_seconds=time.time() - start_time,
            )
            logger.info("Resynced %s: %d rows (%d new, %d gone)",
                        entity_type, len(rows or []), len(after - before), len(before - after))
        return results

    def _on_push_event(self, event: str, payload: Any) -> None:
        self.policy.handle_event(event, payload)
