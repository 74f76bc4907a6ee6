"""
Shared pytest fixtures for the court sync layer tests.

Provides:
- In-memory durable storage
- A controllable clock and a sleep that records requested delays
- A fake backend served through httpx.MockTransport
- A fake Socket.IO client factory
"""
import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from storage import MemoryStorage  # noqa: E402

API_BASE = "http://court.test/api"


# ============================================================================
# Time
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep: records each delay and yields once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def drain(rounds: int = 50) -> None:
    """Let background tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def storage():
    return MemoryStorage()


# ============================================================================
# HTTP
# ============================================================================

def envelope(data: Any = None, status: int = 200, **extra) -> httpx.Response:
    """A success envelope response."""
    return httpx.Response(status, json={"success": True, "data": data, **extra})


def failure(status: int, code: str = "REQUEST_ERROR", message: str = "Request failed") -> httpx.Response:
    """An error envelope response."""
    return httpx.Response(
        status, json={"success": False, "error": {"code": code, "message": message}}
    )


class FakeBackend:
    """
    Route table for httpx.MockTransport.

    Each route holds a queue of responses; the last one repeats. A response
    may be an httpx.Response, a callable taking the request, or an
    exception instance to raise.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, *responses: Any) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path == "/api" + path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len("/api"):]
        queue = self.routes.get((request.method, path))
        if not queue:
            return failure(404, "NOT_FOUND", f"No route for {request.method} {path}")

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def backend():
    return FakeBackend()


# ============================================================================
# Realtime
# ============================================================================

class FakeSocket:
    """Minimal socketio.AsyncClient double."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.fail = fail
        self.hang = hang
        self.disconnect_calls = 0
        self.handlers: Dict[str, Callable] = {}
        self.emitted: List[Tuple[str, Any]] = []
        self.connect_calls: List[dict] = []
        self.connected = False

    def on(self, event: str, handler: Callable = None):
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs):
        self.connect_calls.append(dict(kwargs, url=url))
        if self.hang:
            await asyncio.Event().wait()
        if self.fail:
            raise SocketConnectionError("connection refused")
        self.connected = True

    async def emit(self, event: str, data: Any = None):
        self.emitted.append((event, data))

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    def deliver(self, event: str, data: Any = None) -> None:
        """Simulate an inbound event from the server."""
        self.handlers[event](data)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self.connected = False
        self.handlers["disconnect"]()


class SocketFactory:
    """
    Hands out FakeSockets. The first `failures` attempts are refused and
    the first `hangs` attempts never answer.
    """

    def __init__(self, failures: int = 0, hangs: int = 0):
        self.failures = failures
        self.hangs = hangs
        self.sockets: List[FakeSocket] = []

    def __call__(self) -> FakeSocket:
        attempt = len(self.sockets)
        sock = FakeSocket(fail=attempt < self.failures, hang=attempt < self.hangs)
        self.sockets.append(sock)
        return sock

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


@pytest.fixture
def socket_factory():
    return SocketFactory()
