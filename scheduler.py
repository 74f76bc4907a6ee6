"""
Polling Scheduler

Degraded-mode fallback behind the realtime channel:
- Ticks every POLL_INTERVAL_SECONDS while a session is active
- While the channel is connected, a tick only resyncs when the last resync
  is older than CONNECTED_POLL_INTERVAL_SECONDS
- A tick that finds the previous resync still running is skipped
- A channel reconnect after a drop triggers one immediate resync
- Stops when the session ends
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from config import POLL_INTERVAL_SECONDS, CONNECTED_POLL_INTERVAL_SECONDS
from realtime import ChannelStatus, RealtimeChannel
from session import SessionContext

logger = logging.getLogger(__name__)


class PollingScheduler:
    """
    Periodic full resync.

    Usage:
        poller = PollingScheduler(sync.resync_all, session, channel)
        poller.start()
        ...
        await poller.stop()
    """

    def __init__(
        self,
        resync: Callable[[], Awaitable[Any]],
        session: SessionContext,
        channel: Optional[RealtimeChannel] = None,
        interval: float = POLL_INTERVAL_SECONDS,
        connected_interval: float = CONNECTED_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.resync = resync
        self.session = session
        self.channel = channel
        self.interval = interval
        self.connected_interval = connected_interval
        self._clock = clock
        self._sleep = sleep

        self.last_run_at: Optional[float] = None
        self.last_result: Any = None
        self.skipped_ticks = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._dropped = False
        self._unsubscribe_channel = channel.on_status(self._on_channel_status) if channel else None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def resync_in_flight(self) -> bool:
        return self._resync_task is not None and not self._resync_task.done()

    def should_resync(self, now: float = None) -> bool:
        """
        Decide whether a tick at `now` starts a resync.

        Returns:
            False with no session, with a resync still running, or while the
            channel is connected and the last resync is recent enough
        """
        if now is None:
            now = self._clock()

        if not self.session.is_authenticated:
            return False
        if self.resync_in_flight:
            return False

        if self.channel is not None and self.channel.status == ChannelStatus.CONNECTED:
            if self.last_run_at is not None and now - self.last_run_at < self.connected_interval:
                return False
        return True

    def tick(self, force: bool = False) -> Optional[asyncio.Task]:
        """Start a resync if one is due. Returns the resync task, if started."""
        if self.resync_in_flight:
            self.skipped_ticks += 1
            logger.debug("Resync still running; skipping tick")
            return None
        if not force and not self.should_resync():
            return None
        if not self.session.is_authenticated:
            return None

        self.last_run_at = self._clock()
        self._resync_task = asyncio.ensure_future(self._run_resync())
        return self._resync_task

    async def _run_resync(self) -> Any:
        logger.info("Polling resync started")
        try:
            self.last_result = await self.resync()
        except Exception:
            logger.exception("Polling resync failed")
            return None
        return self.last_result

    # ========== Lifecycle ==========

    def start(self) -> None:
        if self.is_running:
            return
        if self.channel is not None and self._unsubscribe_channel is None:
            self._unsubscribe_channel = self.channel.on_status(self._on_channel_status)
        self._loop_task = asyncio.ensure_future(self._loop())
        logger.info("Polling every %ss (every %ss while push is connected)",
                    self.interval, self.connected_interval)

    async def stop(self) -> None:
        for task in (self._loop_task, self._resync_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._resync_task = None
        if self._unsubscribe_channel is not None:
            self._unsubscribe_channel()
            self._unsubscribe_channel = None

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            if not self.session.is_authenticated:
                logger.info("No active session; polling stopped")
                return
            self.tick()

    def _on_channel_status(self, previous: ChannelStatus, current: ChannelStatus) -> None:
        if previous == ChannelStatus.CONNECTED and current != ChannelStatus.CONNECTED:
            self._dropped = True
        elif current == ChannelStatus.CONNECTED and self._dropped:
            self._dropped = False
            logger.info("Push channel back; resyncing now")
            self.tick(force=True)
