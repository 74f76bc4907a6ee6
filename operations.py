"""
Domain mutations.

Each public method validates its arguments, then runs an Operation through
the Mutation Coordinator: optimistic patch, network call, temp-id swap or
rollback, settle-time invalidation (see invalidation.MUTATION_RULES).

Optimistic patches are pure functions of the affected keys' current values.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

from api_client import CourtClient
from errors import ValidationError
from keys import (
    CacheKey,
    CaseKeys,
    ChatKeys,
    DocumentKeys,
    FrozenDict,
    MotionKeys,
    NotificationKeys,
    OrderKeys,
    make_key,
)
from mutations import MutationContext, MutationCoordinator, Operation
from session import SessionContext

logger = logging.getLogger(__name__)

CASE_CREATED_STATUS = "Pending Approval"
CASE_ASSIGNMENT_REQUESTED_STATUS = "Assignment Requested"
MOTION_FILED_STATUS = "Pending"
MOTION_DECISIONS = ("Approved", "Rejected")
ORDER_DRAFT_STATUS = "Draft"
ORDER_SIGNED_STATUS = "Signed"
DOCUMENT_UPLOADING_STATUS = "Uploading"

Values = Dict[CacheKey, Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ========== Validation ==========

def _require(args: dict, field: str, label: str = None) -> Any:
    value = args.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label or field} is required", field=field)
    return value


def _require_fields(record: Any, fields, label: str) -> None:
    if not isinstance(record, dict):
        raise ValidationError(f"{label} must be an object", field=label)
    for field in fields:
        _require(record, field, f"{label}.{field}")


def _validate_date(value: str, field: str) -> None:
    try:
        date_parser.isoparse(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an ISO date, got {value!r}", field=field) from e


# ========== Patch helpers ==========

def _filters(key: CacheKey) -> dict:
    last = key[-1] if key else None
    return last.to_dict() if isinstance(last, FrozenDict) else {}


def _accepts(key: CacheKey, row: dict) -> bool:
    """A filtered list only takes rows matching its status filter."""
    status = _filters(key).get("status")
    return status is None or status == row.get("status")


def _list_keys(values: Values, prefix: CacheKey):
    for key, value in values.items():
        if key[:len(prefix)] == prefix and isinstance(value, list):
            yield key, value


def _prepend(rows: list, row: dict) -> list:
    return [row] + [r for r in rows if r.get("id") != row.get("id")]


def _patch_rows(rows: list, row_id: Any, changes: dict) -> list:
    return [dict(r, **changes) if r.get("id") == row_id else r for r in rows]


def _without(rows: list, row_id: Any) -> list:
    return [r for r in rows if r.get("id") != row_id]


class CourtOperations:
    """
    Usage:
        ops = CourtOperations(coordinator, client, session, channel)
        case = await ops.create_case({"title": "State v. Doe", "type": "Criminal"})
        await ops.update_motion_status(7, "Approved")
    """

    def __init__(self, coordinator: MutationCoordinator, client: CourtClient,
                 session: SessionContext, channel=None):
        self.coordinator = coordinator
        self.client = client
        self.session = session
        self.channel = channel

    @property
    def _staff_id(self) -> Optional[str]:
        return self.session.user.staff_id if self.session.user else None

    async def _run(self, operation: Operation, args: dict) -> Any:
        return await self.coordinator.mutate(operation, args)

    # ========== Cases ==========

    async def create_case(self, case_data: dict) -> dict:
        """Create a case; it shows up in case lists under a TEMP- id until the server answers."""
        def validate(args):
            _require_fields(args["case"], ("title", "type"), "case")

        def patch(values: Values, args, ctx: MutationContext) -> Values:
            row = dict(args["case"], id=ctx.temp_id, status=CASE_CREATED_STATUS, filed=_now_iso())
            out = {CaseKeys.detail(ctx.temp_id): row}
            for key, rows in _list_keys(values, CaseKeys.lists):
                if _accepts(key, row):
                    out[key] = _prepend(rows, row)
            if values.get(CaseKeys.list()) is None:
                out[CaseKeys.list()] = [row]
            return out

        args = {"case": case_data, "temp_id": self.coordinator.new_temp_id()}
        operation = Operation(
            name="create_case",
            request=lambda a: self.client.create_case(a["case"]),
            affected=lambda a: [CaseKeys.lists, CaseKeys.list(), CaseKeys.detail(a["temp_id"])],
            optimistic=patch,
            validate=validate,
            creates_entity=True,
        )
        return await self._run(operation, args)

    async def update_case(self, case_id: str, updates: dict) -> dict:
        def validate(args):
            _require(args, "case_id", "Case id")
            if not isinstance(args.get("updates"), dict) or not args["updates"]:
                raise ValidationError("updates must be a non-empty object", field="updates")

        async def request(a):
            result = await self.client.update_case(a["case_id"], a["updates"])
            if self.channel is not None:
                self.channel.emit_case_update(a["case_id"], a["updates"])
            return result

        return await self._run(
            Operation(
                name="update_case",
                request=request,
                affected=lambda a: [CaseKeys.detail(a["case_id"]), CaseKeys.lists],
                optimistic=_merge_case(lambda a: a["updates"]),
                validate=validate,
            ),
            {"case_id": case_id, "updates": updates},
        )

    async def delete_case(self, case_id: str) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            return {
                key: _without(rows, args["case_id"])
                for key, rows in _list_keys(values, CaseKeys.lists)
            }

        return await self._run(
            Operation(
                name="delete_case",
                request=lambda a: self.client.delete_case(a["case_id"]),
                affected=lambda a: [CaseKeys.lists],
                optimistic=patch,
                validate=lambda a: _require(a, "case_id", "Case id"),
            ),
            {"case_id": case_id},
        )

    async def assign_lawyer(self, case_id: str, lawyer_id: str) -> dict:
        def validate(args):
            _require(args, "case_id", "Case id")
            _require(args, "lawyer_id", "Lawyer id")

        return await self._run(
            Operation(
                name="assign_lawyer",
                request=lambda a: self.client.assign_lawyer_to_case(a["case_id"], a["lawyer_id"]),
                affected=lambda a: [CaseKeys.detail(a["case_id"]), CaseKeys.lists],
                optimistic=_merge_case(lambda a: {"lawyer": a["lawyer_id"]}),
                validate=validate,
            ),
            {"case_id": case_id, "lawyer_id": lawyer_id},
        )

    async def schedule_hearing(self, case_id: str, hearing_date: str, **details) -> dict:
        def validate(args):
            _require(args, "case_id", "Case id")
            _require(args, "hearing_date", "Hearing date")
            _validate_date(args["hearing_date"], "hearing_date")

        return await self._run(
            Operation(
                name="schedule_hearing",
                request=lambda a: self.client.schedule_hearing(a["case_id"], a["hearing_date"], **a["details"]),
                affected=lambda a: [CaseKeys.detail(a["case_id"])],
                optimistic=_merge_case(lambda a: {"nextHearing": a["hearing_date"]}),
                validate=validate,
            ),
            {"case_id": case_id, "hearing_date": hearing_date, "details": details},
        )

    async def request_case_assignment(self, case_id: str) -> dict:
        return await self._run(
            Operation(
                name="request_case_assignment",
                request=lambda a: self.client.request_case_assignment(a["case_id"]),
                affected=lambda a: [CaseKeys.detail(a["case_id"]), CaseKeys.lists],
                optimistic=_merge_case(lambda a: {"status": CASE_ASSIGNMENT_REQUESTED_STATUS}),
                validate=lambda a: _require(a, "case_id", "Case id"),
            ),
            {"case_id": case_id},
        )

    # ========== Motions ==========

    async def create_motion(self, motion_data: dict) -> dict:
        def validate(args):
            _require_fields(args["motion"], ("caseId", "title"), "motion")

        def patch(values: Values, args, ctx: MutationContext) -> Values:
            row = dict(args["motion"], id=ctx.temp_id, status=MOTION_FILED_STATUS, filedAt=_now_iso())
            out = {}
            for key, rows in _list_keys(values, MotionKeys.lists):
                if _accepts(key, row):
                    out[key] = _prepend(rows, row)
            for key in (MotionKeys.pending, MotionKeys.by_case(row["caseId"])):
                if isinstance(values.get(key), list):
                    out[key] = _prepend(values[key], row)
            return out

        return await self._run(
            Operation(
                name="create_motion",
                request=lambda a: self.client.create_motion(a["motion"]),
                affected=lambda a: [
                    MotionKeys.lists, MotionKeys.pending, MotionKeys.by_case(a["motion"]["caseId"]),
                ],
                optimistic=patch,
                validate=validate,
                creates_entity=True,
            ),
            {"motion": motion_data, "temp_id": self.coordinator.new_temp_id()},
        )

    async def update_motion_status(self, motion_id: Any, status: str, notes: str = None) -> dict:
        """Approve or reject a motion. It leaves the pending list immediately."""
        def validate(args):
            _require(args, "motion_id", "Motion id")
            if args.get("status") not in MOTION_DECISIONS:
                raise ValidationError(
                    f"status must be one of {', '.join(MOTION_DECISIONS)}", field="status"
                )

        def patch(values: Values, args, ctx) -> Values:
            changes = {"status": args["status"]}
            if args.get("notes") is not None:
                changes["notes"] = args["notes"]
            out = {}
            detail_key = MotionKeys.detail(args["motion_id"])
            if isinstance(values.get(detail_key), dict):
                out[detail_key] = dict(values[detail_key], **changes)
            if isinstance(values.get(MotionKeys.pending), list):
                out[MotionKeys.pending] = _without(values[MotionKeys.pending], args["motion_id"])
            for prefix in (MotionKeys.lists, make_key("motions", "case")):
                for key, rows in _list_keys(values, prefix):
                    out[key] = _patch_rows(rows, args["motion_id"], changes)
            return out

        return await self._run(
            Operation(
                name="update_motion_status",
                request=lambda a: self.client.update_motion_status(a["motion_id"], a["status"], a["notes"]),
                affected=lambda a: [
                    MotionKeys.detail(a["motion_id"]),
                    MotionKeys.pending,
                    MotionKeys.lists,
                    make_key("motions", "case"),
                ],
                optimistic=patch,
                validate=validate,
            ),
            {"motion_id": motion_id, "status": status, "notes": notes},
        )

    # ========== Orders ==========

    async def create_order(self, order_data: dict) -> dict:
        def validate(args):
            _require_fields(args["order"], ("caseId", "title"), "order")

        def patch(values: Values, args, ctx: MutationContext) -> Values:
            row = dict(args["order"], id=ctx.temp_id, status=ORDER_DRAFT_STATUS, createdAt=_now_iso())
            out = {}
            for key, rows in _list_keys(values, OrderKeys.lists):
                if _accepts(key, row):
                    out[key] = _prepend(rows, row)
            for key in (OrderKeys.draft, OrderKeys.by_case(row["caseId"])):
                if isinstance(values.get(key), list):
                    out[key] = _prepend(values[key], row)
            return out

        return await self._run(
            Operation(
                name="create_order",
                request=lambda a: self.client.create_order(a["order"]),
                affected=lambda a: [
                    OrderKeys.lists, OrderKeys.draft, OrderKeys.by_case(a["order"]["caseId"]),
                ],
                optimistic=patch,
                validate=validate,
                creates_entity=True,
            ),
            {"order": order_data, "temp_id": self.coordinator.new_temp_id()},
        )

    async def sign_order(self, order_id: Any) -> dict:
        def patch(values: Values, args, ctx) -> Values:
            changes = {"status": ORDER_SIGNED_STATUS, "signedAt": _now_iso()}
            out = {}
            detail_key = OrderKeys.detail(args["order_id"])
            if isinstance(values.get(detail_key), dict):
                out[detail_key] = dict(values[detail_key], **changes)
            if isinstance(values.get(OrderKeys.draft), list):
                out[OrderKeys.draft] = _without(values[OrderKeys.draft], args["order_id"])
            for prefix in (OrderKeys.lists, make_key("orders", "case")):
                for key, rows in _list_keys(values, prefix):
                    out[key] = _patch_rows(rows, args["order_id"], changes)
            return out

        return await self._run(
            Operation(
                name="sign_order",
                request=lambda a: self.client.sign_order(a["order_id"]),
                affected=lambda a: [
                    OrderKeys.detail(a["order_id"]),
                    OrderKeys.draft,
                    OrderKeys.lists,
                    make_key("orders", "case"),
                ],
                optimistic=patch,
                validate=lambda a: _require(a, "order_id", "Order id"),
            ),
            {"order_id": order_id},
        )

    # ========== Documents ==========

    async def upload_document(self, case_id: str, filename: str, content: bytes,
                              doc_type: str, description: str = None) -> dict:
        def validate(args):
            _require(args, "case_id", "Case id")
            _require(args, "filename", "File name")
            _require(args, "doc_type", "Document type")
            if not args.get("content"):
                raise ValidationError("File content is empty", field="content")

        def patch(values: Values, args, ctx: MutationContext) -> Values:
            key = DocumentKeys.by_case(args["case_id"])
            if not isinstance(values.get(key), list):
                return {}
            row = {
                "id": ctx.temp_id,
                "caseId": args["case_id"],
                "name": args["filename"],
                "type": args["doc_type"],
                "status": DOCUMENT_UPLOADING_STATUS,
                "uploadedAt": _now_iso(),
            }
            return {key: _prepend(values[key], row)}

        return await self._run(
            Operation(
                name="upload_document",
                request=lambda a: self.client.upload_document(
                    a["filename"], a["content"], a["case_id"], a["doc_type"], a["description"]
                ),
                affected=lambda a: [DocumentKeys.by_case(a["case_id"])],
                optimistic=patch,
                validate=validate,
                creates_entity=True,
            ),
            {
                "case_id": case_id,
                "filename": filename,
                "content": content,
                "doc_type": doc_type,
                "description": description,
                "temp_id": self.coordinator.new_temp_id(),
            },
        )

    async def delete_document(self, document_id: Any) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            return {
                key: _without(rows, args["document_id"])
                for key, rows in _list_keys(values, DocumentKeys.all)
            }

        return await self._run(
            Operation(
                name="delete_document",
                request=lambda a: self.client.delete_document(a["document_id"]),
                affected=lambda a: [DocumentKeys.all],
                optimistic=patch,
                validate=lambda a: _require(a, "document_id", "Document id"),
            ),
            {"document_id": document_id},
        )

    # ========== Notifications ==========

    async def mark_notification_read(self, notification_id: Any) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            out = {}
            for key, rows in _list_keys(values, NotificationKeys.all):
                if key == NotificationKeys.unread:
                    out[key] = _without(rows, args["notification_id"])
                else:
                    out[key] = _patch_rows(rows, args["notification_id"], {"read": True})
            return out

        return await self._run(
            Operation(
                name="mark_notification_read",
                request=lambda a: self.client.mark_notification_read(a["notification_id"]),
                affected=lambda a: [NotificationKeys.all],
                optimistic=patch,
                validate=lambda a: _require(a, "notification_id", "Notification id"),
            ),
            {"notification_id": notification_id},
        )

    async def mark_all_notifications_read(self) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            out = {}
            for key, rows in _list_keys(values, NotificationKeys.all):
                out[key] = [] if key == NotificationKeys.unread else [dict(r, read=True) for r in rows]
            return out

        return await self._run(
            Operation(
                name="mark_all_notifications_read",
                request=lambda a: self.client.mark_all_notifications_read(),
                affected=lambda a: [NotificationKeys.all],
                optimistic=patch,
            ),
            {},
        )

    async def delete_notification(self, notification_id: Any) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            return {
                key: _without(rows, args["notification_id"])
                for key, rows in _list_keys(values, NotificationKeys.all)
            }

        return await self._run(
            Operation(
                name="delete_notification",
                request=lambda a: self.client.delete_notification(a["notification_id"]),
                affected=lambda a: [NotificationKeys.all],
                optimistic=patch,
                validate=lambda a: _require(a, "notification_id", "Notification id"),
            ),
            {"notification_id": notification_id},
        )

    # ========== Chat ==========

    async def send_chat_message(self, receiver_id: str, message: str) -> dict:
        """Persist over HTTP, then push over the channel for live delivery."""
        sender = self.session.user

        def validate(args):
            _require(args, "receiver_id", "Receiver id")
            _require(args, "message", "Message")
            if sender is None:
                raise ValidationError("Sign in to send messages", field="sender")

        def patch(values: Values, args, ctx: MutationContext) -> Values:
            sent = {
                "id": ctx.temp_id,
                "senderId": sender.staff_id,
                "receiverId": args["receiver_id"],
                "message": args["message"],
                "timestamp": _now_iso(),
                "read": False,
            }
            out = {}
            messages_key = ChatKeys.messages(args["receiver_id"])
            if isinstance(values.get(messages_key), list):
                out[messages_key] = values[messages_key] + [sent]
            conversations = values.get(ChatKeys.conversations)
            if isinstance(conversations, list):
                out[ChatKeys.conversations] = _bump_conversation(
                    conversations, args["receiver_id"], sent["message"], sent["timestamp"]
                )
            return out

        async def request(a):
            result = await self.client.send_message(a["receiver_id"], a["message"])
            if self.channel is not None:
                self.channel.send_chat(a["receiver_id"], sender.staff_id, sender.name, a["message"])
            return result

        return await self._run(
            Operation(
                name="send_chat_message",
                request=request,
                affected=lambda a: [ChatKeys.messages(a["receiver_id"]), ChatKeys.conversations],
                optimistic=patch,
                validate=validate,
                creates_entity=True,
            ),
            {"receiver_id": receiver_id, "message": message, "temp_id": self.coordinator.new_temp_id()},
        )

    async def mark_chat_read(self, user_id: str) -> Any:
        def patch(values: Values, args, ctx) -> Values:
            other = args["user_id"]
            out = {}
            cleared = 0
            conversations = values.get(ChatKeys.conversations)
            if isinstance(conversations, list):
                cleared = sum(int(c.get("unreadCount") or 0) for c in conversations if c.get("userId") == other)
                out[ChatKeys.conversations] = _patch_rows_by(conversations, "userId", other, {"unreadCount": 0})
            messages_key = ChatKeys.messages(other)
            if isinstance(values.get(messages_key), list):
                out[messages_key] = [
                    dict(m, read=True) if m.get("senderId") == other else m
                    for m in values[messages_key]
                ]
            if isinstance(values.get(ChatKeys.unread_count), int):
                out[ChatKeys.unread_count] = max(0, values[ChatKeys.unread_count] - cleared)
            return out

        async def request(a):
            result = await self.client.mark_chat_read(a["user_id"])
            if self.channel is not None and self._staff_id:
                self.channel.send_read_receipt(a["user_id"], self._staff_id)
            return result

        return await self._run(
            Operation(
                name="mark_chat_read",
                request=request,
                affected=lambda a: [
                    ChatKeys.messages(a["user_id"]), ChatKeys.conversations, ChatKeys.unread_count,
                ],
                optimistic=patch,
                validate=lambda a: _require(a, "user_id", "User id"),
            ),
            {"user_id": user_id},
        )


def _merge_case(changes_for):
    """Patch factory: merge changes into the case detail and every case list row."""
    def patch(values: Values, args, ctx) -> Values:
        changes = changes_for(args)
        case_id = args["case_id"]
        out = {}
        detail_key = CaseKeys.detail(case_id)
        if isinstance(values.get(detail_key), dict):
            out[detail_key] = dict(values[detail_key], **changes)
        for key, rows in _list_keys(values, CaseKeys.lists):
            out[key] = _patch_rows(rows, case_id, changes)
        return out
    return patch


def _patch_rows_by(rows: list, field: str, value: Any, changes: dict) -> list:
    return [dict(r, **changes) if r.get(field) == value else r for r in rows]


def _bump_conversation(conversations: list, user_id: str, text: str, timestamp: str) -> list:
    existing = next((c for c in conversations if c.get("userId") == user_id), None)
    conversation = dict(existing or {"userId": user_id, "unreadCount": 0})
    conversation["lastMessage"] = text
    conversation["lastMessageTime"] = timestamp
    return [conversation] + [c for c in conversations if c.get("userId") != user_id]
