"""
Order state machine.

The only writer of SwapState. Every mutation runs under a per-order
asyncio lock, so the watcher, the recovery handler and API calls can
all report events for the same order without racing each other.

    initiated -> src_locked -> dst_locked -> secret_revealed -> completed
                 {src_locked, dst_locked} -> expired -> refunded
                                             expired -> completed
                 any non-terminal -> failed

`expired -> completed` covers a secret that surfaces after expiry: the
source leg is then withdrawn rather than cancelled.

Events that re-report a reached or earlier state (duplicate watcher
ticks, re-orgs, late API calls) are no-ops. Events that would skip
ahead are rejected with InvalidTransition.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

import structlog

from .errors import InvalidTransition, StaleState, UnknownOrder
from .interfaces import SwapStore
from .models import StateChange, SwapState, SwapStatus

logger = structlog.get_logger()

# Re-reads allowed when another process writes the same swap concurrently
WRITE_ATTEMPTS = 3


class SwapEvent(str, Enum):
    SRC_FUNDED = "src_funded"
    DST_FUNDED = "dst_funded"
    SECRET_REVEALED = "secret_revealed"
    COUNTER_LEG_WITHDRAWN = "counter_leg_withdrawn"
    TIMELOCK_EXPIRED = "timelock_expired"
    REFUND_CONFIRMED = "refund_confirmed"
    FAILED = "failed"


_NON_TERMINAL = frozenset(s for s in SwapStatus if not s.is_terminal)

# event -> (statuses it may be applied from, resulting status)
TRANSITIONS = {
    SwapEvent.SRC_FUNDED: (frozenset({SwapStatus.INITIATED}), SwapStatus.SRC_LOCKED),
    SwapEvent.DST_FUNDED: (frozenset({SwapStatus.SRC_LOCKED}), SwapStatus.DST_LOCKED),
    SwapEvent.SECRET_REVEALED: (frozenset({SwapStatus.DST_LOCKED}), SwapStatus.SECRET_REVEALED),
    SwapEvent.COUNTER_LEG_WITHDRAWN: (
        frozenset({SwapStatus.SECRET_REVEALED, SwapStatus.EXPIRED}),
        SwapStatus.COMPLETED,
    ),
    SwapEvent.TIMELOCK_EXPIRED: (
        frozenset({SwapStatus.SRC_LOCKED, SwapStatus.DST_LOCKED}),
        SwapStatus.EXPIRED,
    ),
    SwapEvent.REFUND_CONFIRMED: (frozenset({SwapStatus.EXPIRED}), SwapStatus.REFUNDED),
    SwapEvent.FAILED: (_NON_TERMINAL, SwapStatus.FAILED),
}

# Progress along either branch; equal rank on different branches means
# the other branch already won
_RANK = {
    SwapStatus.INITIATED: 0,
    SwapStatus.SRC_LOCKED: 1,
    SwapStatus.DST_LOCKED: 2,
    SwapStatus.SECRET_REVEALED: 3,
    SwapStatus.EXPIRED: 3,
    SwapStatus.COMPLETED: 4,
    SwapStatus.REFUNDED: 4,
    SwapStatus.FAILED: 5,
}


@dataclass
class Transition:
    """Result of applying an event: whether it changed anything, plus a snapshot."""

    applied: bool
    state: SwapState
    from_status: SwapStatus | None = None


class OrderStateMachine:
    def __init__(
        self,
        store: SwapStore,
        clock: Callable[[], float] = time.time,
        on_failed: Callable[[SwapState], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.clock = clock
        self.on_failed = on_failed
        self._write_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._action_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, order_id: str) -> asyncio.Lock:
        """
        Lock held by callers running chain actions (fund, claim, refund)
        for one order. Writes take a separate internal lock, so apply()
        and update() may be called while holding this one.
        """
        return self._action_locks[order_id]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    async def create(self, state: SwapState) -> SwapState:
        async with self._write_locks[state.order_id]:
            if await self.store.get(state.order_id) is not None:
                raise InvalidTransition("order already exists", order_id=state.order_id)
            state.updated_at = self._now()
            try:
                await self.store.put(state)
            except StaleState as e:
                raise InvalidTransition("order already exists", order_id=state.order_id) from e
        logger.info("Swap created", order_id=state.order_id, status=state.status.value)
        return state.model_copy(deep=True)

    async def get(self, order_id: str) -> SwapState:
        state = await self.store.get(order_id)
        if state is None:
            raise UnknownOrder("no swap with this order id", order_id=order_id)
        return state

    async def apply(self, order_id: str, event: SwapEvent, **changes) -> Transition:
        """
        Apply one lifecycle event.

        Args:
            order_id: swap to advance
            event: what was observed
            **changes: SwapState fields to set together with the new status
                (escrow records, revealed secret, last_error)

        Returns:
            Transition with applied=False when the event was already
            reflected (or superseded) by the current status

        Raises:
            UnknownOrder: no such swap
            InvalidTransition: the event would skip part of the lifecycle
            StaleState: other processes kept writing the swap
        """
        event = SwapEvent(event)
        sources, target = TRANSITIONS[event]

        for name in changes:
            if name not in SwapState.model_fields:
                raise ValueError(f"unknown SwapState field: {name}")

        async with self._write_locks[order_id]:
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                state = await self.get(order_id)
                current = state.status

                if current not in sources:
                    if current == target or current.is_terminal or _RANK[target] <= _RANK[current]:
                        logger.debug(
                            "Ignoring stale event",
                            order_id=order_id,
                            swap_event=event.value,
                            status=current.value,
                        )
                        return Transition(False, state, current)
                    raise InvalidTransition(
                        "event not allowed in current status",
                        order_id=order_id,
                        swap_event=event.value,
                        status=current.value,
                    )

                for name, value in changes.items():
                    setattr(state, name, value)
                now = self._now()
                state.status = target
                state.updated_at = now
                state.history.append(
                    StateChange(from_status=current, to_status=target, event=event.value, at=now)
                )
                if await self._put(state, attempt):
                    break

        logger.info(
            "Swap transition",
            order_id=order_id,
            swap_event=event.value,
            from_status=current.value,
            to_status=target.value,
        )

        if target == SwapStatus.FAILED and self.on_failed is not None:
            await self.on_failed(state.model_copy(deep=True))

        return Transition(True, state, current)

    async def update(self, order_id: str, mutate: Callable[[SwapState], None]) -> SwapState:
        """Record non-status data (escrow refs, txids, counters) under the write lock."""
        async with self._write_locks[order_id]:
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                state = await self.get(order_id)
                status = state.status
                mutate(state)
                if state.status != status:
                    raise InvalidTransition("status changes must go through apply()", order_id=order_id)
                state.updated_at = self._now()
                if await self._put(state, attempt):
                    return state

    async def _put(self, state: SwapState, attempt: int) -> bool:
        """
        Store a read-modify-write result; False when another process wrote
        the swap since it was read and the caller should re-read.
        """
        try:
            await self.store.put(state)
        except StaleState:
            if attempt >= WRITE_ATTEMPTS:
                raise
            logger.warning("Swap changed by another writer, re-reading", order_id=state.order_id, attempt=attempt)
            return False
        return True

    async def fail(self, order_id: str, error: Exception) -> Transition:
        error_info = error.to_dict() if hasattr(error, "to_dict") else {"type": type(error).__name__, "message": str(error)}
        return await self.apply(order_id, SwapEvent.FAILED, last_error=error_info)
