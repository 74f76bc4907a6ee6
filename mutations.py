"""
Mutation Coordinator

Runs a write against the backend with an optimistic local patch:

1. Validate arguments (ValidationError before anything is touched)
2. Snapshot every affected cache key and cancel fetches for them
3. Apply the optimistic patch synchronously
4. Issue the network call
5. Success: swap temporary ids for the server entity
   Failure: restore the snapshots verbatim and re-raise
6. Either way: mark the settle-time keys stale

Overlapping mutations are rebased rather than serialized. When a mutation
rolls back, every later mutation still in flight that touches the same keys
has its snapshot moved onto the restored value and its patch re-applied, so
its optimistic change survives the earlier rollback.
"""
import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from cache import CacheEntry, ResourceCache, swap_entity
from keys import CacheKey, key_contains, keys_overlap

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "TEMP-"

Patch = Callable[[Dict[CacheKey, Any], Any, "MutationContext"], Dict[CacheKey, Any]]


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


class MutationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class Operation:
    """
    Declarative description of one write.

    request(args) performs the network call and returns the server data.
    affected(args) names the keys (or key-family prefixes) the optimistic
    patch may touch. optimistic(values, args, ctx) is a pure function from
    the current values of those keys to the subset it changes.
    invalidates(args, result) adds settle-time keys on top of the policy's.
    """
    name: str
    request: Callable[[Any], Awaitable[Any]]
    affected: Callable[[Any], Sequence[CacheKey]] = lambda args: ()
    optimistic: Optional[Patch] = None
    validate: Optional[Callable[[Any], None]] = None
    invalidates: Optional[Callable[[Any, Any], Sequence[CacheKey]]] = None
    creates_entity: bool = False
    id_field: str = "id"


@dataclass
class MutationContext:
    """Per-mutation record, alive from start to settle."""
    operation: str
    args: Any
    sequence: int
    affected_keys: List[CacheKey] = field(default_factory=list)
    snapshot: Dict[CacheKey, Optional[CacheEntry]] = field(default_factory=dict)
    status: MutationStatus = MutationStatus.PENDING
    temp_id: Optional[str] = None
    result: Any = None
    error: Optional[Exception] = None
    refetches: List[asyncio.Task] = field(default_factory=list)


class MutationCoordinator:
    """
    Usage:
        coordinator = MutationCoordinator(cache, policy)
        motion = await coordinator.mutate(approve_motion, {"motion_id": 7})
    """

    def __init__(self, cache: ResourceCache, policy=None, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.policy = policy
        self._clock = clock
        self._pending: List[MutationContext] = []
        self._operations: Dict[int, Operation] = {}
        self._sequence = 0
        self._last_temp_ms = 0

    @property
    def pending(self) -> List[MutationContext]:
        return list(self._pending)

    def new_temp_id(self) -> str:
        """TEMP-<epoch ms>, bumped by a millisecond when two are issued in the same one."""
        now_ms = int(self._clock() * 1000)
        if now_ms <= self._last_temp_ms:
            now_ms = self._last_temp_ms + 1
        self._last_temp_ms = now_ms
        return f"{TEMP_ID_PREFIX}{now_ms}"

    async def mutate(self, operation: Operation, args: Any = None) -> Any:
        """
        Run an operation through the optimistic update cycle.

        Returns:
            The server data for the write

        Raises:
            ValidationError: invalid args; the cache is untouched
            CourtAPIError: the request failed; affected keys are rolled back
        """
        if operation.validate is not None:
            operation.validate(args)

        self._sequence += 1
        ctx = MutationContext(operation=operation.name, args=args, sequence=self._sequence)
        if operation.creates_entity:
            supplied = args.get("temp_id") if isinstance(args, dict) else None
            ctx.temp_id = supplied or self.new_temp_id()

        ctx.affected_keys = self._resolve(operation.affected(args))
        for key in ctx.affected_keys:
            self.cache.cancel(key)
            ctx.snapshot[key] = self.cache.snapshot(key)

        self._pending.append(ctx)
        self._operations[ctx.sequence] = operation
        try:
            self._apply_patch(operation, ctx, ctx.affected_keys)
            ctx.result = await operation.request(args)
        except (Exception, asyncio.CancelledError) as e:
            ctx.status = MutationStatus.ERROR
            ctx.error = e
            self._rollback(operation, ctx)
            logger.warning("Mutation %s failed, rolled back %d key(s): %r",
                           operation.name, len(ctx.affected_keys), e)
            raise
        else:
            ctx.status = MutationStatus.SUCCESS
            if ctx.temp_id and isinstance(ctx.result, dict) and ctx.result.get(operation.id_field) is not None:
                self._confirm_entity(ctx.temp_id, ctx.result, operation.id_field)
            logger.debug("Mutation %s succeeded", operation.name)
            return ctx.result
        finally:
            self._pending.remove(ctx)
            self._settle(operation, ctx)

    # ========== Internals ==========

    def _resolve(self, declared: Sequence[CacheKey]) -> List[CacheKey]:
        """Expand each declared key to itself plus every cached key under it."""
        resolved: List[CacheKey] = []
        for key in declared:
            for candidate in [key] + self.cache.keys(key):
                if candidate not in resolved:
                    resolved.append(candidate)
        return resolved

    def _apply_patch(self, operation: Operation, ctx: MutationContext, keys: Sequence[CacheKey]) -> None:
        if operation.optimistic is None:
            return
        values = {
            key: copy.deepcopy(self.cache.get_value(key))
            for key in ctx.affected_keys
        }
        patched = operation.optimistic(values, ctx.args, ctx) or {}
        for key, value in patched.items():
            if key not in ctx.snapshot:
                raise KeyError(f"{operation.name} patched undeclared key {key!r}")
            if key in keys:
                self.cache.set(key, value)

    def _rollback(self, operation: Operation, ctx: MutationContext) -> None:
        for key in ctx.affected_keys:
            self.cache.restore(key, ctx.snapshot[key])

        # Rebase later in-flight mutations that overlap this one.
        for later in self._pending:
            if later.sequence <= ctx.sequence:
                continue
            shared = [
                key for key in later.affected_keys
                if any(keys_overlap(key, mine) for mine in ctx.affected_keys)
            ]
            if not shared:
                continue
            for key in shared:
                later.snapshot[key] = self.cache.snapshot(key)
            later_op = self._operations.get(later.sequence)
            if later_op is not None:
                self._apply_patch(later_op, later, shared)
                logger.debug("Re-applied %s on %d key(s) after rollback of %s",
                             later.operation, len(shared), ctx.operation)

    def _confirm_entity(self, temp_id: str, entity: dict, id_field: str) -> None:
        self.cache.replace_entity(temp_id, entity, id_field=id_field)

        # Snapshots held by other in-flight mutations must not resurrect the temp row.
        real_id = entity.get(id_field)
        for other in self._pending:
            for key in list(other.snapshot):
                snap = other.snapshot[key]
                new_key = key
                if key_contains(key, temp_id):
                    new_key = tuple(real_id if part == temp_id else part for part in key)
                if snap is not None and snap.has_value:
                    snap.value, _ = swap_entity(snap.value, temp_id, entity, id_field)
                    snap.key = new_key
                if new_key != key:
                    other.snapshot[new_key] = other.snapshot.pop(key)
                    other.affected_keys = [new_key if k == key else k for k in other.affected_keys]

    def _settle(self, operation: Operation, ctx: MutationContext) -> None:
        self._operations.pop(ctx.sequence, None)

        settle_keys: List[CacheKey] = []
        if self.policy is not None:
            settle_keys.extend(self.policy.keys_for_mutation(operation.name, ctx.args, ctx.result))
        if operation.invalidates is not None:
            settle_keys.extend(operation.invalidates(ctx.args, ctx.result))

        for prefix in dict.fromkeys(settle_keys):
            for key in self.cache.keys(prefix):
                held = any(
                    keys_overlap(key, other_key)
                    for other in self._pending
                    for other_key in other.affected_keys
                )
                # Keys under another in-flight patch refetch when that one settles.
                ctx.refetches.extend(self.cache.invalidate(key, refetch="none" if held else "active"))
