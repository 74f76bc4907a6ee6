"""
Tests for the mutation coordinator and the domain operations built on it.

Run with: pytest tests/test_mutations.py -v
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from api_client import CourtClient
from cache import ResourceCache
from conftest import API_BASE, drain, envelope, failure
from errors import NetworkError, RequestError, ValidationError
from invalidation import ReconciliationPolicy
from keys import CaseKeys, ChatKeys, MotionKeys, NotificationKeys, make_key
from mutations import MutationCoordinator, Operation, is_temp_id
from operations import CourtOperations
from session import SessionContext, SessionUser

BOARD = make_key("board")


@pytest.fixture
def cache(clock, sleep):
    return ResourceCache(clock=clock, sleep=sleep)


@pytest.fixture
def coordinator(cache, clock):
    return MutationCoordinator(cache, clock=clock)


@pytest.fixture
def court(storage, backend, clock, sleep):
    """Session, client, cache, policy, coordinator and operations wired together."""
    session = SessionContext(storage)
    session.start(SessionUser(name="Jane Clerk", role="clerk", staff_id="CLK001"), "tok", "rtok")
    client = CourtClient(session, base_url=API_BASE, transport=backend.transport)
    cache = ResourceCache(clock=clock, sleep=sleep)
    policy = ReconciliationPolicy(cache)
    coordinator = MutationCoordinator(cache, policy, clock=clock)
    channel = MagicMock()
    ops = CourtOperations(coordinator, client, session, channel)
    return SimpleNamespace(
        session=session, client=client, cache=cache, coordinator=coordinator,
        channel=channel, ops=ops,
    )


def gated_request(gate: asyncio.Event, result=None, error: Exception = None):
    async def request(args):
        await gate.wait()
        if error is not None:
            raise error
        return result
    return request


def append_row(row_for):
    def patch(values, args, ctx):
        return {BOARD: list(values[BOARD] or []) + [row_for(args, ctx)]}
    return patch


# ============================================================================
# Coordinator
# ============================================================================

class TestOptimisticCycle:
    """Tests for snapshot, patch, rollback and settle."""

    @pytest.mark.asyncio
    async def test_patch_visible_before_request_completes(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        gate = asyncio.Event()
        op = Operation(
            name="add",
            request=gated_request(gate, result={"ok": True}),
            affected=lambda a: [BOARD],
            optimistic=append_row(lambda a, ctx: {"id": "y"}),
        )

        task = asyncio.ensure_future(coordinator.mutate(op, {}))
        await drain(3)
        assert cache.get_value(BOARD) == [{"id": "x"}, {"id": "y"}]
        assert len(coordinator.pending) == 1

        gate.set()
        assert await task == {"ok": True}
        assert coordinator.pending == []

    @pytest.mark.asyncio
    async def test_failure_restores_snapshot_and_reraises(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        before = cache.get(BOARD)

        async def fail(args):
            raise NetworkError()

        op = Operation(
            name="add",
            request=fail,
            affected=lambda a: [BOARD],
            optimistic=append_row(lambda a, ctx: {"id": "y"}),
        )

        with pytest.raises(NetworkError):
            await coordinator.mutate(op, {})
        assert cache.get(BOARD) == before

    @pytest.mark.asyncio
    async def test_validation_runs_before_anything_is_touched(self, cache, coordinator):
        cache.set(BOARD, [])
        called = []

        def validate(args):
            raise ValidationError("title is required", field="title")

        async def request(args):
            called.append(args)

        op = Operation(
            name="add", request=request, affected=lambda a: [BOARD],
            optimistic=append_row(lambda a, ctx: {"id": "y"}), validate=validate,
        )
        with pytest.raises(ValidationError):
            await coordinator.mutate(op, {})
        assert called == []
        assert cache.get_value(BOARD) == []
        assert coordinator.pending == []

    @pytest.mark.asyncio
    async def test_patching_undeclared_key_rolls_back(self, cache, coordinator):
        cache.set(BOARD, [])
        called = []

        async def request(args):
            called.append(args)

        op = Operation(
            name="sneaky",
            request=request,
            affected=lambda a: [BOARD],
            optimistic=lambda values, args, ctx: {CaseKeys.list(): []},
        )
        with pytest.raises(KeyError):
            await coordinator.mutate(op, {})
        assert called == []
        assert CaseKeys.list() not in cache

    @pytest.mark.asyncio
    async def test_cancelled_mutation_rolls_back(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        op = Operation(
            name="add",
            request=gated_request(asyncio.Event()),
            affected=lambda a: [BOARD],
            optimistic=append_row(lambda a, ctx: {"id": "y"}),
        )

        task = asyncio.ensure_future(coordinator.mutate(op, {}))
        await drain(3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert cache.get_value(BOARD) == [{"id": "x"}]

    @pytest.mark.asyncio
    async def test_mutation_cancels_fetch_for_affected_key(self, cache, coordinator):
        gate = asyncio.Event()

        async def slow_fetch():
            await gate.wait()
            return [{"id": "server"}]

        cache.set(BOARD, [{"id": "x"}])
        fetch = asyncio.ensure_future(cache.fetch(BOARD, slow_fetch, force=True))
        await drain(3)

        op = Operation(
            name="add",
            request=lambda a: asyncio.sleep(0),
            affected=lambda a: [BOARD],
            optimistic=append_row(lambda a, ctx: {"id": "y"}),
        )
        await coordinator.mutate(op, {})
        gate.set()
        await fetch
        await drain()

        assert cache.get_value(BOARD) == [{"id": "x"}, {"id": "y"}]

    def test_temp_ids_are_unique_within_a_millisecond(self, coordinator):
        first = coordinator.new_temp_id()
        second = coordinator.new_temp_id()
        assert first == "TEMP-1700000000000"
        assert second == "TEMP-1700000000001"
        assert is_temp_id(first)
        assert not is_temp_id("KDH/2024/1")


class TestOverlappingMutations:
    """Tests for rebase of in-flight mutations after an earlier rollback."""

    @pytest.mark.asyncio
    async def test_later_patch_survives_earlier_rollback(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        gate_a, gate_b = asyncio.Event(), asyncio.Event()
        op_a = Operation(
            name="a", request=gated_request(gate_a, error=NetworkError()),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": "a"}),
        )
        op_b = Operation(
            name="b", request=gated_request(gate_b, result={"id": "b"}),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": "b"}),
        )

        task_a = asyncio.ensure_future(coordinator.mutate(op_a, {}))
        await drain(3)
        task_b = asyncio.ensure_future(coordinator.mutate(op_b, {}))
        await drain(3)
        assert cache.get_value(BOARD) == [{"id": "x"}, {"id": "a"}, {"id": "b"}]

        gate_a.set()
        with pytest.raises(NetworkError):
            await task_a
        assert cache.get_value(BOARD) == [{"id": "x"}, {"id": "b"}]

        gate_b.set()
        await task_b
        assert cache.get_value(BOARD) == [{"id": "x"}, {"id": "b"}]

    @pytest.mark.asyncio
    async def test_rebased_mutation_rolls_back_to_restored_value(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        gate_a, gate_b = asyncio.Event(), asyncio.Event()
        op_a = Operation(
            name="a", request=gated_request(gate_a, error=NetworkError()),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": "a"}),
        )
        op_b = Operation(
            name="b", request=gated_request(gate_b, error=RequestError("nope", status=500)),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": "b"}),
        )

        task_a = asyncio.ensure_future(coordinator.mutate(op_a, {}))
        task_b = asyncio.ensure_future(coordinator.mutate(op_b, {}))
        await drain(3)

        gate_a.set()
        with pytest.raises(NetworkError):
            await task_a
        gate_b.set()
        with pytest.raises(RequestError):
            await task_b

        assert cache.get_value(BOARD) == [{"id": "x"}]

    @pytest.mark.asyncio
    async def test_confirmed_temp_row_not_resurrected_by_later_rollback(self, cache, coordinator):
        cache.set(BOARD, [{"id": "x"}])
        gate_a, gate_b = asyncio.Event(), asyncio.Event()
        create = Operation(
            name="create", request=gated_request(gate_a, result={"id": "SRV-1"}),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": ctx.temp_id}),
            creates_entity=True,
        )
        other = Operation(
            name="other", request=gated_request(gate_b, error=NetworkError()),
            affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": "b"}),
        )

        task_a = asyncio.ensure_future(coordinator.mutate(create, {}))
        await drain(3)
        task_b = asyncio.ensure_future(coordinator.mutate(other, {}))
        await drain(3)

        gate_a.set()
        await task_a
        gate_b.set()
        with pytest.raises(NetworkError):
            await task_b

        rows = cache.get_value(BOARD)
        assert rows == [{"id": "x"}, {"id": "SRV-1"}]
        assert not any(is_temp_id(r["id"]) for r in rows)

    @pytest.mark.asyncio
    async def test_settle_defers_refetch_of_keys_held_by_pending_mutation(self, cache, coordinator):
        calls = []

        async def fetcher():
            calls.append(1)
            return [{"id": "x"}]

        await cache.fetch(BOARD, fetcher)
        cache.subscribe(BOARD, lambda k, e: None)
        gate_a, gate_b = asyncio.Event(), asyncio.Event()

        def op(name, gate):
            return Operation(
                name=name, request=gated_request(gate, result={}),
                affected=lambda a: [BOARD], optimistic=append_row(lambda a, ctx: {"id": name}),
                invalidates=lambda a, r: [BOARD],
            )

        task_a = asyncio.ensure_future(coordinator.mutate(op("a", gate_a), {}))
        task_b = asyncio.ensure_future(coordinator.mutate(op("b", gate_b), {}))
        await drain(3)

        gate_a.set()
        await task_a
        await drain()
        assert len(calls) == 1

        gate_b.set()
        await task_b
        await drain()
        assert len(calls) == 2


# ============================================================================
# Domain operations
# ============================================================================

class TestCaseOperations:
    """Tests for case writes against the fake backend."""

    @pytest.mark.asyncio
    async def test_create_case_swaps_temp_id_for_server_id(self, court, backend):
        court.cache.set(CaseKeys.list(), [{"id": "KDH/2024/99", "title": "Old"}])
        seen = {}

        def created(request):
            seen["rows"] = court.cache.get_value(CaseKeys.list())
            return envelope(
                {"id": "KDH/2024/100", "title": "State v. Doe", "status": "Pending Approval"},
                status=201,
            )
        backend.route("POST", "/cases", created)

        case = await court.ops.create_case({"title": "State v. Doe", "type": "Criminal"})

        assert case["id"] == "KDH/2024/100"
        assert seen["rows"][0]["id"] == "TEMP-1700000000000"
        ids = [row["id"] for row in court.cache.get_value(CaseKeys.list())]
        assert ids == ["KDH/2024/100", "KDH/2024/99"]
        assert "TEMP-1700000000000" not in ids
        assert CaseKeys.detail("TEMP-1700000000000") not in court.cache

    @pytest.mark.asyncio
    async def test_create_case_requires_title_and_type(self, court, backend):
        with pytest.raises(ValidationError) as exc_info:
            await court.ops.create_case({"title": "  ", "type": "Civil"})
        assert exc_info.value.field == "title"
        assert backend.requests == []
        assert len(court.cache) == 0

    @pytest.mark.asyncio
    async def test_create_case_only_lands_in_matching_filtered_lists(self, court, backend):
        court.cache.set(CaseKeys.list({"status": "Closed"}), [])
        court.cache.set(CaseKeys.list({"status": "Pending Approval"}), [])
        backend.route("POST", "/cases", envelope({"id": "KDH/1"}))

        await court.ops.create_case({"title": "A", "type": "Civil"})

        assert court.cache.get_value(CaseKeys.list({"status": "Closed"})) == []
        assert [r["id"] for r in court.cache.get_value(CaseKeys.list({"status": "Pending Approval"}))] == ["KDH/1"]

    @pytest.mark.asyncio
    async def test_update_case_failure_rolls_back_detail_and_lists(self, court, backend):
        detail = {"id": "KDH/1", "title": "A", "status": "Filed"}
        court.cache.set(CaseKeys.detail("KDH/1"), detail)
        court.cache.set(CaseKeys.list(), [detail])
        backend.route("PUT", "/cases/KDH/1", failure(500, "SERVER_ERROR", "db down"))

        with pytest.raises(RequestError):
            await court.ops.update_case("KDH/1", {"status": "Closed"})

        assert court.cache.get_value(CaseKeys.detail("KDH/1")) == detail
        assert court.cache.get_value(CaseKeys.list()) == [detail]
        court.channel.emit_case_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_case_broadcasts_on_success(self, court, backend):
        court.cache.set(CaseKeys.detail("KDH/1"), {"id": "KDH/1", "status": "Filed"})
        backend.route("PUT", "/cases/KDH/1", envelope({"id": "KDH/1", "status": "Closed"}))

        await court.ops.update_case("KDH/1", {"status": "Closed"})

        assert court.cache.get_value(CaseKeys.detail("KDH/1"))["status"] == "Closed"
        court.channel.emit_case_update.assert_called_once_with("KDH/1", {"status": "Closed"})

    @pytest.mark.asyncio
    async def test_schedule_hearing_rejects_bad_dates(self, court, backend):
        with pytest.raises(ValidationError):
            await court.ops.schedule_hearing("KDH/1", "next tuesday")
        assert backend.requests == []


class TestMotionOperations:
    """Tests for motion writes."""

    @pytest.mark.asyncio
    async def test_failed_approval_restores_motion_and_pending_list(self, court, backend):
        motion = {"id": 7, "caseId": "KDH/1", "title": "Bail", "status": "Pending"}
        pending = [motion, {"id": 8, "status": "Pending"}]
        court.cache.set(MotionKeys.detail(7), motion)
        court.cache.set(MotionKeys.pending, pending)
        seen = {}

        def unreachable(request):
            seen["pending"] = court.cache.get_value(MotionKeys.pending)
            seen["detail"] = court.cache.get_value(MotionKeys.detail(7))
            raise httpx.ConnectError("connection refused", request=request)
        backend.route("PUT", "/motions/7/status", unreachable)

        with pytest.raises(NetworkError):
            await court.ops.update_motion_status(7, "Approved")

        assert seen["pending"] == [{"id": 8, "status": "Pending"}]
        assert seen["detail"]["status"] == "Approved"
        assert court.cache.get_value(MotionKeys.detail(7)) == motion
        assert court.cache.get_value(MotionKeys.pending) == pending

    @pytest.mark.asyncio
    async def test_status_must_be_a_decision(self, court, backend):
        with pytest.raises(ValidationError):
            await court.ops.update_motion_status(7, "Maybe")
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_create_motion_appears_in_case_motions(self, court, backend):
        court.cache.set(MotionKeys.by_case("KDH/1"), [])
        backend.route("POST", "/motions", envelope({"id": 12, "caseId": "KDH/1", "status": "Pending"}))

        await court.ops.create_motion({"caseId": "KDH/1", "title": "Continuance"})

        assert [m["id"] for m in court.cache.get_value(MotionKeys.by_case("KDH/1"))] == [12]


class TestNotificationAndChatOperations:
    """Tests for notification and chat writes."""

    @pytest.mark.asyncio
    async def test_mark_all_read_clears_unread_list(self, court, backend):
        court.cache.set(NotificationKeys.list(), [{"id": 1, "read": False}])
        court.cache.set(NotificationKeys.unread, [{"id": 1, "read": False}])
        backend.route("PUT", "/notifications/read-all", envelope(None))

        await court.ops.mark_all_notifications_read()

        assert court.cache.get_value(NotificationKeys.unread) == []
        assert court.cache.get_value(NotificationKeys.list()) == [{"id": 1, "read": True}]

    @pytest.mark.asyncio
    async def test_send_chat_message_confirms_and_pushes(self, court, backend):
        court.cache.set(ChatKeys.messages("JDG001"), [])
        court.cache.set(ChatKeys.conversations, [])
        backend.route("POST", "/chat/send", envelope({"id": 55, "senderId": "CLK001", "message": "hi"}))

        await court.ops.send_chat_message("JDG001", "hi")

        messages = court.cache.get_value(ChatKeys.messages("JDG001"))
        assert [m["id"] for m in messages] == [55]
        assert court.cache.get_value(ChatKeys.conversations)[0]["userId"] == "JDG001"
        court.channel.send_chat.assert_called_once_with("JDG001", "CLK001", "Jane Clerk", "hi")

    @pytest.mark.asyncio
    async def test_mark_chat_read_lowers_unread_count(self, court, backend):
        court.cache.set(ChatKeys.conversations, [{"userId": "JDG001", "unreadCount": 2}])
        court.cache.set(ChatKeys.unread_count, 5)
        backend.route("PUT", "/chat/read/JDG001", envelope(None))

        await court.ops.mark_chat_read("JDG001")

        assert court.cache.get_value(ChatKeys.unread_count) == 3
        assert court.cache.get_value(ChatKeys.conversations)[0]["unreadCount"] == 0
        court.channel.send_read_receipt.assert_called_once_with("JDG001", "CLK001")
