"""
Reconciliation / Invalidation Policy

Two tables decide which cache keys go stale:
- MUTATION_RULES, keyed by operation name, applied when a mutation settles
- EVENT_RULES, keyed by push-event type, applied when the realtime channel
  delivers an event

Rules return keys or key-family prefixes; invalidation is prefix-based, so
("cases", "list") reaches every filtered case list.

Push events also patch the cache directly (new chat message, notification,
case update) so that reads reflect them before the refetch lands.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from cache import ResourceCache
from keys import (
    CacheKey,
    CaseKeys,
    CalendarKeys,
    ChatKeys,
    DocumentKeys,
    MotionKeys,
    NotificationKeys,
    OrderKeys,
    ReportKeys,
    make_key,
)

logger = logging.getLogger(__name__)

Rule = Callable[[dict, Any], List[CacheKey]]

CHAT_RECEIVE = "chat:receive"
CHAT_READ_CONFIRM = "chat:read:confirm"
NOTIFICATION_RECEIVE = "notification:receive"
CASE_UPDATED = "case:updated"

INBOUND_EVENTS = (CHAT_RECEIVE, CHAT_READ_CONFIRM, NOTIFICATION_RECEIVE, CASE_UPDATED)


def _case_id(payload: dict) -> Optional[str]:
    return payload.get("caseId") or payload.get("case_id") or payload.get("id")


def _motions_by_case() -> CacheKey:
    return make_key("motions", "case")


def _orders_by_case() -> CacheKey:
    return make_key("orders", "case")


# ========== Settle-time rules ==========

MUTATION_RULES: Dict[str, Rule] = {
    "create_case": lambda args, result: [CaseKeys.lists, ReportKeys.dashboard],
    "update_case": lambda args, result: [CaseKeys.detail(args["case_id"]), CaseKeys.lists],
    "delete_case": lambda args, result: [
        CaseKeys.detail(args["case_id"]), CaseKeys.lists, ReportKeys.dashboard,
    ],
    "assign_lawyer": lambda args, result: [CaseKeys.detail(args["case_id"]), CaseKeys.lists],
    "schedule_hearing": lambda args, result: [CaseKeys.detail(args["case_id"]), CalendarKeys.all],
    "request_case_assignment": lambda args, result: [
        CaseKeys.detail(args["case_id"]), CaseKeys.lists,
    ],
    "create_motion": lambda args, result: [
        MotionKeys.all, CaseKeys.detail(args["motion"]["caseId"]),
    ],
    "update_motion_status": lambda args, result: [
        MotionKeys.detail(args["motion_id"]),
        MotionKeys.pending,
        MotionKeys.lists,
        _motions_by_case(),
    ],
    "create_order": lambda args, result: [
        OrderKeys.all, CaseKeys.detail(args["order"]["caseId"]),
    ],
    "sign_order": lambda args, result: [
        OrderKeys.detail(args["order_id"]),
        OrderKeys.draft,
        OrderKeys.lists,
        _orders_by_case(),
    ],
    "upload_document": lambda args, result: [
        DocumentKeys.by_case(args["case_id"]), CaseKeys.detail(args["case_id"]),
    ],
    "delete_document": lambda args, result: [DocumentKeys.all],
    "mark_notification_read": lambda args, result: [NotificationKeys.all],
    "mark_all_notifications_read": lambda args, result: [NotificationKeys.all],
    "delete_notification": lambda args, result: [NotificationKeys.all],
    "send_chat_message": lambda args, result: [
        ChatKeys.messages(args["receiver_id"]), ChatKeys.conversations,
    ],
    "mark_chat_read": lambda args, result: [
        ChatKeys.messages(args["user_id"]), ChatKeys.conversations, ChatKeys.unread_count,
    ],
}


# ========== Push-event rules ==========

def _case_updated_keys(payload: dict, _=None) -> List[CacheKey]:
    case_id = _case_id(payload)
    if case_id is None:
        return [CaseKeys.all]
    return [CaseKeys.detail(case_id), CaseKeys.lists]


EVENT_RULES: Dict[str, Rule] = {
    CHAT_RECEIVE: lambda payload, _=None: [
        ChatKeys.conversations,
        ChatKeys.unread_count,
        ChatKeys.messages(payload.get("senderId")),
    ],
    CHAT_READ_CONFIRM: lambda payload, _=None: [
        ChatKeys.messages(payload.get("userId")), ChatKeys.conversations,
    ],
    NOTIFICATION_RECEIVE: lambda payload, _=None: [NotificationKeys.all],
    CASE_UPDATED: _case_updated_keys,
}


class ReconciliationPolicy:
    """
    Maps mutations and push events to cache invalidations.

    The Mutation Coordinator asks keys_for_mutation() at settle time; the
    realtime channel hands every inbound event to handle_event().
    """

    def __init__(self, cache: ResourceCache,
                 mutation_rules: Dict[str, Rule] = None,
                 event_rules: Dict[str, Rule] = None):
        self.cache = cache
        self.mutation_rules = dict(MUTATION_RULES if mutation_rules is None else mutation_rules)
        self.event_rules = dict(EVENT_RULES if event_rules is None else event_rules)
        self._updaters: Dict[str, Callable[[dict], None]] = {
            CHAT_RECEIVE: self._apply_chat_message,
            CHAT_READ_CONFIRM: self._apply_read_confirm,
            NOTIFICATION_RECEIVE: self._apply_notification,
            CASE_UPDATED: self._apply_case_update,
        }

    def keys_for_mutation(self, name: str, args: Any = None, result: Any = None) -> List[CacheKey]:
        rule = self.mutation_rules.get(name)
        if rule is None:
            logger.debug("No invalidation rule for mutation %s", name)
            return []
        return rule(args or {}, result)

    def keys_for_event(self, event: str, payload: Any) -> List[CacheKey]:
        rule = self.event_rules.get(event)
        if rule is None:
            return []
        return rule(payload if isinstance(payload, dict) else {})

    def handle_event(self, event: str, payload: Any) -> list:
        """
        Reconcile the cache with one push event.

        Applies the direct cache patch for the event first, then invalidates
        the event's keys.

        Returns:
            Refetch tasks started by the invalidation
        """
        if event not in self.event_rules:
            logger.debug("Ignoring unhandled event %s", event)
            return []

        data = payload if isinstance(payload, dict) else {}
        updater = self._updaters.get(event)
        if updater is not None:
            updater(data)

        tasks = []
        for key in self.keys_for_event(event, data):
            tasks.extend(self.cache.invalidate(key))
        logger.debug("Event %s reconciled (%d refetch(es))", event, len(tasks))
        return tasks

    # ========== Direct patches ==========

    def _apply_chat_message(self, message: dict) -> None:
        sender_id = message.get("senderId")
        if sender_id is None:
            return
        timestamp = message.get("timestamp") or datetime.now(timezone.utc).isoformat()

        messages_key = ChatKeys.messages(sender_id)
        if self.cache.get_value(messages_key) is not None:
            self.cache.update(messages_key, lambda current: _append_unique(current, message))

        def bump_conversation(current):
            conversations = list(current or [])
            existing = next((c for c in conversations if c.get("userId") == sender_id), None)
            if existing is not None:
                conversations.remove(existing)
                conversation = dict(existing)
            else:
                conversation = {"userId": sender_id, "userName": message.get("senderName"), "unreadCount": 0}
            conversation["lastMessage"] = message.get("message", "")
            conversation["lastMessageTime"] = timestamp
            conversation["unreadCount"] = int(conversation.get("unreadCount") or 0) + 1
            return [conversation] + conversations

        if self.cache.get_value(ChatKeys.conversations) is not None:
            self.cache.update(ChatKeys.conversations, bump_conversation)
        if self.cache.get_value(ChatKeys.unread_count) is not None:
            self.cache.update(ChatKeys.unread_count, lambda count: int(count) + 1)

    def _apply_read_confirm(self, payload: dict) -> None:
        reader_id = payload.get("userId")
        key = ChatKeys.messages(reader_id)
        if reader_id is None or self.cache.get_value(key) is None:
            return

        def mark_read(current):
            if not isinstance(current, list):
                return None
            return [
                dict(m, read=True) if m.get("receiverId") == reader_id else m
                for m in current
            ]
        self.cache.update(key, mark_read)

    def _apply_notification(self, notification: dict) -> None:
        for key in self.cache.keys(NotificationKeys.all):
            entry = self.cache.get(key)
            if entry is None or not isinstance(entry.value, list):
                continue
            if key == NotificationKeys.unread and notification.get("read"):
                continue
            self.cache.update(key, lambda current: _prepend_unique(current, notification))

    def _apply_case_update(self, update: dict) -> None:
        case_id = _case_id(update)
        if case_id is None:
            return
        changes = {k: v for k, v in update.items() if k not in ("caseId", "case_id")}

        detail_key = CaseKeys.detail(case_id)
        if self.cache.get_value(detail_key) is not None:
            self.cache.update(
                detail_key,
                lambda current: dict(current, **changes) if isinstance(current, dict) else None,
            )

        for key in self.cache.keys(CaseKeys.lists):
            self.cache.update(key, lambda current: _merge_row(current, case_id, changes))


def _append_unique(rows: Any, item: dict) -> Optional[list]:
    rows = list(rows or [])
    if item.get("id") is not None and any(r.get("id") == item.get("id") for r in rows):
        return None
    return rows + [item]


def _prepend_unique(rows: Any, item: dict) -> Optional[list]:
    rows = list(rows or [])
    if item.get("id") is not None and any(r.get("id") == item.get("id") for r in rows):
        return None
    return [item] + rows


def _merge_row(rows: Any, row_id: Any, changes: dict) -> Optional[list]:
    if not isinstance(rows, list):
        return None
    changed = False
    merged = []
    for row in rows:
        if isinstance(row, dict) and row.get("id") == row_id:
            row = dict(row, **changes)
            changed = True
        merged.append(row)
    return merged if changed else None
