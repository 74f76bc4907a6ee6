"""
Realtime Channel

One Socket.IO connection per session, carrying push events from the court
backend:

    disconnected -> connecting -> connected -> (disconnected | connecting)

- Connects with the session bearer token in the handshake auth, then
  re-sends the application-level `authenticate` with the staff id
- A failed connect is retried a bounded number of times with a fixed delay,
  then the channel settles in `disconnected` and the poller takes over
- A dropped connection starts the same bounded reconnect cycle
- Credential changes on the session reconnect with the new token
- Outbound events are fire-and-forget and dropped while not connected
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Set

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

from config import (
    COURT_SOCKET_URL,
    SOCKET_CONNECT_TIMEOUT_SECONDS,
    SOCKET_RECONNECT_ATTEMPTS,
    SOCKET_RECONNECT_DELAY_SECONDS,
)
from invalidation import INBOUND_EVENTS
from session import SessionContext

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Any], None]
StatusListener = Callable[["ChannelStatus", "ChannelStatus"], None]


class ChannelStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def default_socket_client() -> socketio.AsyncClient:
    # Reconnection is handled by the channel's own bounded retry.
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class RealtimeChannel:
    """
    Push-event channel bound to a SessionContext.

    Usage:
        channel = RealtimeChannel(session)
        channel.on_event(policy.handle_event)
        await channel.connect()
        channel.join_case("KDH/2024/100")
    """

    def __init__(
        self,
        session: SessionContext,
        url: str = COURT_SOCKET_URL,
        client_factory: Callable[[], Any] = default_socket_client,
        connect_timeout: float = SOCKET_CONNECT_TIMEOUT_SECONDS,
        reconnect_attempts: int = SOCKET_RECONNECT_ATTEMPTS,
        reconnect_delay: float = SOCKET_RECONNECT_DELAY_SECONDS,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.session = session
        self.url = url
        self.connect_timeout = connect_timeout
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._client_factory = client_factory
        self._sleep = sleep

        self.status = ChannelStatus.DISCONNECTED
        self._sio = None
        self._connected_token: Optional[str] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._rooms: Set[str] = set()
        self._event_handlers: List[EventHandler] = []
        self._status_listeners: List[StatusListener] = []
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe_session = session.on_change(self._on_session_change)

    @property
    def is_connected(self) -> bool:
        return self.status == ChannelStatus.CONNECTED

    # ========== Listeners ==========

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Receive every inbound push event as handler(event, payload)."""
        self._event_handlers.append(handler)
        return lambda: self._event_handlers.remove(handler) if handler in self._event_handlers else None

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        """Receive status transitions as listener(old, new)."""
        self._status_listeners.append(listener)
        return lambda: self._status_listeners.remove(listener) if listener in self._status_listeners else None

    def _set_status(self, status: ChannelStatus) -> None:
        if status == self.status:
            return
        previous, self.status = self.status, status
        logger.info("Realtime channel %s -> %s", previous.value, status.value)
        for listener in list(self._status_listeners):
            try:
                listener(previous, status)
            except Exception:
                logger.exception("Channel status listener failed")

    # ========== Connection ==========

    async def connect(self) -> ChannelStatus:
        """
        Open the channel. Calls while a connect is pending or the channel is
        open are no-ops that return the current/pending outcome.
        """
        if self._connect_task is not None and not self._connect_task.done():
            return await asyncio.shield(self._connect_task)
        if self.status == ChannelStatus.CONNECTED:
            return self.status
        if not self.session.is_authenticated:
            logger.debug("No session; realtime channel stays disconnected")
            return self.status

        self._connect_task = asyncio.ensure_future(self._connect_with_retry())
        return await asyncio.shield(self._connect_task)

    async def _connect_with_retry(self) -> ChannelStatus:
        token = self.session.token
        self._set_status(ChannelStatus.CONNECTING)

        total = 1 + self.reconnect_attempts
        for attempt in range(total):
            if attempt:
                logger.info(
                    "Reconnect attempt %d/%d in %ss", attempt, self.reconnect_attempts, self.reconnect_delay
                )
                await self._sleep(self.reconnect_delay)

            sio = self._client_factory()
            self._register_handlers(sio)
            try:
                await asyncio.wait_for(
                    sio.connect(
                        self.url,
                        auth={"token": token},
                        transports=["websocket", "polling"],
                        wait_timeout=self.connect_timeout,
                    ),
                    timeout=self.connect_timeout,
                )
            except (SocketConnectionError, asyncio.TimeoutError, OSError) as e:
                logger.warning("Realtime connect failed: %s", e or type(e).__name__)
                await self._discard_client(sio)
                continue

            self._sio = sio
            self._connected_token = token
            self._set_status(ChannelStatus.CONNECTED)
            await self._after_connect()
            return self.status

        logger.warning("Realtime channel giving up after %d attempt(s); polling only", total)
        self._set_status(ChannelStatus.DISCONNECTED)
        return self.status

    async def _discard_client(self, sio) -> None:
        """Close a client whose connect attempt failed or timed out."""
        try:
            await sio.disconnect()
        except Exception as e:
            logger.debug("Ignoring error closing abandoned client: %s", e)

    async def _after_connect(self) -> None:
        user = self.session.user
        if user is not None:
            await self._emit("authenticate", user.staff_id)
        for case_id in sorted(self._rooms):
            await self._emit("join:case", case_id)

    async def disconnect(self) -> None:
        """Close the channel and stop any pending connect."""
        self._closing = True
        try:
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
                try:
                    await self._connect_task
                except asyncio.CancelledError:
                    pass
            if self._sio is not None:
                sio, self._sio = self._sio, None
                await sio.disconnect()
            self._connected_token = None
            self._set_status(ChannelStatus.DISCONNECTED)
        finally:
            self._closing = False

    async def reconnect(self) -> ChannelStatus:
        await self.disconnect()
        return await self.connect()

    async def close(self) -> None:
        """Teardown: disconnect and detach from the session."""
        self._unsubscribe_session()
        await self.disconnect()
        for task in list(self._background):
            task.cancel()

    def _on_session_change(self, session: SessionContext) -> None:
        if not session.is_authenticated:
            if self.status != ChannelStatus.DISCONNECTED or self._sio is not None:
                self._spawn(self.disconnect())
            return
        if self.status != ChannelStatus.DISCONNECTED and session.token != self._connected_token:
            logger.info("Credential changed; reconnecting realtime channel")
            self._spawn(self.reconnect())

    # ========== Socket handlers ==========

    def _register_handlers(self, sio) -> None:
        sio.on("disconnect", lambda *args: self._handle_drop(sio))
        for event in INBOUND_EVENTS:
            sio.on(event, self._make_dispatcher(event))

    def _make_dispatcher(self, event: str):
        def dispatch(data=None):
            self._dispatch(event, data)
        return dispatch

    def _dispatch(self, event: str, payload: Any) -> None:
        logger.debug("Push event %s", event)
        for handler in list(self._event_handlers):
            try:
                handler(event, payload)
            except Exception:
                logger.exception("Handler for %s failed", event)

    def _handle_drop(self, sio) -> None:
        if self._closing or sio is not self._sio:
            return
        logger.warning("Realtime connection dropped")
        self._sio = None
        self._set_status(ChannelStatus.DISCONNECTED)
        if self.session.is_authenticated:
            self._spawn(self.connect())

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ========== Outbound ==========

    async def _emit(self, event: str, data: Any) -> bool:
        if self.status != ChannelStatus.CONNECTED or self._sio is None:
            logger.debug("Dropping %s while %s", event, self.status.value)
            return False
        try:
            await self._sio.emit(event, data)
        except socketio.exceptions.SocketIOError as e:
            logger.warning("Emit %s failed: %s", event, e)
            return False
        return True

    def emit(self, event: str, data: Any) -> None:
        """Fire-and-forget emit."""
        if self.status != ChannelStatus.CONNECTED:
            logger.debug("Dropping %s while %s", event, self.status.value)
            return
        self._spawn(self._emit(event, data))

    def join_case(self, case_id: str) -> None:
        self._rooms.add(case_id)
        self.emit("join:case", case_id)

    def leave_case(self, case_id: str) -> None:
        self._rooms.discard(case_id)
        self.emit("leave:case", case_id)

    def send_chat(self, receiver_id: str, sender_id: str, sender_name: str, message: str) -> None:
        self.emit("chat:send", {
            "receiverId": receiver_id,
            "senderId": sender_id,
            "senderName": sender_name,
            "message": message,
        })

    def send_read_receipt(self, sender_id: str, receiver_id: str) -> None:
        """Tell sender_id that receiver_id has read their messages."""
        self.emit("chat:read", {"senderId": sender_id, "receiverId": receiver_id})

    def send_notification(self, recipient_id: str, notification: dict) -> None:
        self.emit("notification:send", {"recipientId": recipient_id, "notification": notification})

    def emit_case_update(self, case_id: str, update: dict, assigned_user_id: str = None) -> None:
        self.emit("case:update", {
            "caseId": case_id,
            "update": dict(update, id=case_id),
            "assignedUserId": assigned_user_id,
        })
