"""
Cache keys.

A key is a tuple (resource_type, scope, id?, filters?). Filter dictionaries
are frozen into sorted tuples so that two keys built from equal filters are
equal and hashable regardless of insertion order. None-valued filters are
dropped.

Invalidation and subscriptions match by prefix: ("cases",) covers every
list variant and every detail key of the cases family.
"""
from typing import Any, Tuple

CacheKey = Tuple[Any, ...]


class FrozenDict(tuple):
    """Sorted (name, value) pairs standing in for a filters dict."""

    def to_dict(self) -> dict:
        return {k: thaw(v) for k, v in self}

    def __repr__(self):
        return f"FrozenDict({self.to_dict()!r})"


def freeze(value: Any) -> Any:
    """Recursively convert dicts/lists into hashable, order-stable forms."""
    if isinstance(value, dict):
        return FrozenDict(sorted(
            (str(k), freeze(v)) for k, v in value.items() if v is not None
        ))
    if isinstance(value, (list, tuple)) and not isinstance(value, FrozenDict):
        return tuple(freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(freeze(v) for v in value))
    return value


def thaw(value: Any) -> Any:
    if isinstance(value, FrozenDict):
        return value.to_dict()
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def make_key(*parts: Any) -> CacheKey:
    return tuple(freeze(p) for p in parts)


def key_matches(key: CacheKey, prefix: CacheKey) -> bool:
    """True if prefix is a leading slice of key (a key matches itself)."""
    return len(prefix) <= len(key) and tuple(key[:len(prefix)]) == tuple(prefix)


def keys_overlap(a: CacheKey, b: CacheKey) -> bool:
    return key_matches(a, b) or key_matches(b, a)


def key_contains(key: CacheKey, value: Any) -> bool:
    """True if a key embeds the given id as one of its parts."""
    return any(part == value for part in key)


# ========== Key Factories ==========

class CaseKeys:
    all = make_key("cases")
    lists = make_key("cases", "list")

    @staticmethod
    def list(filters: dict = None) -> CacheKey:
        return make_key("cases", "list", filters or {})

    @staticmethod
    def detail(case_id: str) -> CacheKey:
        return make_key("cases", "detail", case_id)


class UserKeys:
    all = make_key("users")
    lawyers = make_key("users", "lawyers")
    judges = make_key("users", "judges")

    @staticmethod
    def list(filters: dict = None) -> CacheKey:
        return make_key("users", "list", filters or {})

    @staticmethod
    def detail(user_id: str) -> CacheKey:
        return make_key("users", "detail", user_id)


class DocumentKeys:
    all = make_key("documents")

    @staticmethod
    def by_case(case_id: str) -> CacheKey:
        return make_key("documents", "case", case_id)

    @staticmethod
    def detail(document_id: Any) -> CacheKey:
        return make_key("documents", "detail", document_id)


class MotionKeys:
    all = make_key("motions")
    pending = make_key("motions", "pending")
    lists = make_key("motions", "list")

    @staticmethod
    def list(filters: dict = None) -> CacheKey:
        return make_key("motions", "list", filters or {})

    @staticmethod
    def by_case(case_id: str) -> CacheKey:
        return make_key("motions", "case", case_id)

    @staticmethod
    def detail(motion_id: Any) -> CacheKey:
        return make_key("motions", "detail", motion_id)


class OrderKeys:
    all = make_key("orders")
    draft = make_key("orders", "draft")
    lists = make_key("orders", "list")

    @staticmethod
    def list(filters: dict = None) -> CacheKey:
        return make_key("orders", "list", filters or {})

    @staticmethod
    def by_case(case_id: str) -> CacheKey:
        return make_key("orders", "case", case_id)

    @staticmethod
    def detail(order_id: Any) -> CacheKey:
        return make_key("orders", "detail", order_id)


class CalendarKeys:
    all = make_key("calendar")
    hearings = make_key("calendar", "hearings")

    @staticmethod
    def by_date(date: str) -> CacheKey:
        return make_key("calendar", "date", date)


class ChatKeys:
    all = make_key("chat")
    conversations = make_key("chat", "conversations")
    unread_count = make_key("chat", "unread-count")

    @staticmethod
    def messages(user_id: str) -> CacheKey:
        return make_key("chat", "messages", user_id)


class NotificationKeys:
    all = make_key("notifications")
    unread = make_key("notifications", "unread")
    lists = make_key("notifications", "list")

    @staticmethod
    def list(filters: dict = None) -> CacheKey:
        return make_key("notifications", "list", filters or {})

    @staticmethod
    def detail(notification_id: Any) -> CacheKey:
        return make_key("notifications", "detail", notification_id)


class PartnerKeys:
    all = make_key("partners")


class ReportKeys:
    dashboard = make_key("reports", "dashboard")
