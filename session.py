"""
Session Context

Explicit session state for one application run: the signed-in user and the
bearer/refresh tokens. Created once by the composition root, loaded from
durable storage at start and cleared on logout, instead of living in
module-level globals.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from config import (
    USER_STORAGE_KEY,
    TOKEN_STORAGE_KEY,
    REFRESH_TOKEN_STORAGE_KEY,
    LAST_ROUTE_STORAGE_KEY,
)
from storage import DurableStorage

logger = logging.getLogger(__name__)

USER_ROLES = (
    "judge", "registrar", "clerk", "admin", "it_admin",
    "court_admin", "lawyer", "auditor", "partner",
)


@dataclass
class SessionUser:
    """The signed-in staff member."""
    name: str
    role: str
    staff_id: str
    id: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "SessionUser":
        """Build from a login response user block (staffId or staff_id)."""
        return cls(
            id=str(payload["id"]) if payload.get("id") is not None else None,
            name=payload.get("name", ""),
            email=payload.get("email") or "",
            role=payload.get("role", ""),
            staff_id=payload.get("staffId") or payload.get("staff_id") or "",
            department=payload.get("department"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class SessionContext:
    """
    Current user and credentials.

    Contract:
        load()   - once at application start, from durable storage
        start()  - after a successful login
        clear()  - on logout or failed credential refresh
    """

    def __init__(self, storage: DurableStorage):
        self.storage = storage
        self.user: Optional[SessionUser] = None
        self.token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._listeners: List[Callable[["SessionContext"], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and bool(self.token)

    def load(self) -> "SessionContext":
        """Read the stored session. Corrupt or partial data means signed out."""
        self.token = self.storage.get(TOKEN_STORAGE_KEY)
        self.refresh_token = self.storage.get(REFRESH_TOKEN_STORAGE_KEY)

        saved_user = self.storage.get(USER_STORAGE_KEY)
        self.user = None
        if isinstance(saved_user, dict):
            try:
                self.user = SessionUser(**saved_user)
            except TypeError:
                logger.warning("Discarding malformed stored user")

        logger.info(
            "Session loaded (user=%s, token=%s, refresh_token=%s)",
            self.user.staff_id if self.user else None,
            bool(self.token),
            bool(self.refresh_token),
        )
        return self

    def start(self, user: SessionUser, token: str, refresh_token: Optional[str] = None) -> None:
        """Attach a freshly authenticated user."""
        self.user = user
        self.storage.set(USER_STORAGE_KEY, user.to_dict())
        self.set_tokens(token, refresh_token)

    def set_tokens(self, token: Optional[str], refresh_token: Optional[str] = None) -> None:
        """Persist new credentials and tell listeners the credential changed."""
        if token:
            self.token = token
            self.storage.set(TOKEN_STORAGE_KEY, token)
        if refresh_token:
            self.refresh_token = refresh_token
            self.storage.set(REFRESH_TOKEN_STORAGE_KEY, refresh_token)
        self._notify()

    def clear(self) -> None:
        """Drop all local session state."""
        was_authenticated = self.is_authenticated
        self.user = None
        self.token = None
        self.refresh_token = None
        for key in (USER_STORAGE_KEY, TOKEN_STORAGE_KEY, REFRESH_TOKEN_STORAGE_KEY):
            self.storage.remove(key)
        if was_authenticated:
            logger.info("Session cleared")
        self._notify()

    # ========== Route hint ==========

    def get_last_route(self) -> Optional[str]:
        route = self.storage.get(LAST_ROUTE_STORAGE_KEY)
        return route if isinstance(route, str) else None

    def set_last_route(self, route: str) -> None:
        self.storage.set(LAST_ROUTE_STORAGE_KEY, route)

    # ========== Listeners ==========

    def on_change(self, listener: Callable[["SessionContext"], None]) -> Callable[[], None]:
        """Register a credential/user change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session listener failed")
