"""
Failure and recovery handling.

Timeouts are the normal way a swap ends when the counterparty walks
away: the state machine moves to `expired`, every still-locked leg is
cancelled once its own cancellation time has passed, and the swap is
`refunded` when nothing is left locked. Stuck transactions get
replace-by-fee bumps and persistent endpoint failures switch to a
backup before the swap is handed to an operator.
"""

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

import structlog

from .config import Config, config as default_config
from .coordinator import EscrowCoordinator
from .errors import RetryExhausted, SwapError
from .models import ActionResult, Side, SwapState, SwapStatus
from .notifiers import NotificationManager
from .state_machine import OrderStateMachine, SwapEvent

logger = structlog.get_logger()

T = TypeVar("T")

_LOCKED = (SwapStatus.SRC_LOCKED, SwapStatus.DST_LOCKED)


class RecoveryHandler:
    def __init__(
        self,
        machine: OrderStateMachine,
        coordinator: EscrowCoordinator,
        notifier: NotificationManager | None = None,
        cfg: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.machine = machine
        self.coordinator = coordinator
        self.notifier = notifier
        self.config = cfg or default_config
        self.clock = clock

    def is_expired(self, state: SwapState) -> bool:
        return self.clock() >= state.expires_at.timestamp()

    async def expire_if_due(self, state: SwapState) -> SwapState:
        """Apply TIMELOCK_EXPIRED when the reveal window closed without a secret."""
        if state.status in _LOCKED and state.secret is None and self.is_expired(state):
            logger.info(
                "Timelock passed without reveal",
                order_id=state.order_id,
                expires_at=state.expires_at.isoformat(),
            )
            transition = await self.machine.apply(state.order_id, SwapEvent.TIMELOCK_EXPIRED)
            return transition.state
        return state

    async def check_timeout(self, state: SwapState) -> SwapState:
        """
        Expire a swap whose reveal window closed, then settle what is left.

        With auto-refund on, expired legs are cancelled as their times pass.
        A secret that surfaced after expiry withdraws the source leg either
        way.
        """
        state = await self.expire_if_due(state)
        if state.status != SwapStatus.EXPIRED or not (self.config.auto_refund or state.secret):
            return state
        async with self.machine.lock(state.order_id):
            state = await self.machine.get(state.order_id)
            if state.status != SwapStatus.EXPIRED:
                return state
            if self.config.auto_refund:
                state, _ = await self.refund_legs(state)
            else:
                state = await self.withdraw_source_late(state)
                if state.src is not None and state.src.withdrawn and not state.locked_escrows():
                    state = (await self.machine.apply(state.order_id, SwapEvent.COUNTER_LEG_WITHDRAWN)).state
        return state

    async def withdraw_source_late(self, state: SwapState) -> SwapState:
        """Withdraw the source leg of an expired swap whose secret is known."""
        src = state.src
        if state.secret is None or src is None or src.is_settled or not src.ref:
            return state

        logger.info("Secret known after expiry, withdrawing source", order_id=state.order_id)
        secret = bytes.fromhex(state.secret)
        result = await self.retry(lambda: self.coordinator.withdraw(Side.SRC, src, secret), "withdraw_src")
        return await self.machine.update(state.order_id, lambda s: setattr(s, "src", result.escrow))

    async def refund_legs(self, state: SwapState) -> tuple[SwapState, ActionResult]:
        """
        Cancel every deployed, unsettled leg whose cancellation time passed.

        Legs refunded earlier are reported, never re-broadcast. A known
        secret withdraws the source leg instead of cancelling it. Once no
        leg is left locked the swap moves to `refunded`, or to `completed`
        when the source was withdrawn. Callers hold the order's action lock.
        """
        state = await self.withdraw_source_late(state)
        tx_refs: dict[str, str] = {}
        waiting: list[str] = []
        for side in (Side.DST, Side.SRC):
            escrow = state.escrow(side)
            if escrow is None or escrow.withdrawn or not (escrow.ref or escrow.funding_txid):
                continue
            if escrow.refunded:
                tx_refs[side.value] = escrow.refund_txid
                continue
            if self.clock() < escrow.timelock:
                waiting.append(side.value)
                continue

            result = await self.coordinator.cancel(side, escrow, state.status)
            state = await self.machine.update(
                state.order_id,
                lambda s, side=side, escrow=result.escrow: setattr(s, side.value, escrow),
            )
            tx_refs[side.value] = result.tx_ref

        if waiting:
            logger.info("Legs not cancellable yet", order_id=state.order_id, sides=waiting)
            message = "waiting for cancellation time on: " + ", ".join(waiting)
        elif state.src is not None and state.src.withdrawn:
            message = "secret surfaced after expiry, source withdrawn"
            state = (await self.machine.apply(state.order_id, SwapEvent.COUNTER_LEG_WITHDRAWN)).state
        else:
            message = None
            transition = await self.machine.apply(state.order_id, SwapEvent.REFUND_CONFIRMED)
            state = transition.state
            if transition.applied and self.notifier is not None:
                await self.notifier.notify_refund(state)

        tx_ref = tx_refs.get(Side.DST.value) or tx_refs.get(Side.SRC.value)
        success = bool(tx_refs) or state.status == SwapStatus.COMPLETED
        return state, ActionResult(success=success, tx_ref=tx_ref, tx_refs=tx_refs, message=message)

    async def check_stuck(self, state: SwapState) -> SwapState:
        """Fee-bump destination transactions that sat unconfirmed too long."""
        dst = state.dst
        if dst is None or state.is_terminal:
            return state

        now = self.clock()
        threshold = self.config.fee_bump_after
        secret = None
        stuck = False
        if not dst.funded and dst.pending_txids and dst.broadcast_at is not None:
            stuck = now - dst.broadcast_at >= threshold
        elif dst.withdraw_pending and dst.withdraw_broadcast_at is not None and state.secret:
            stuck = now - dst.withdraw_broadcast_at >= threshold
            secret = bytes.fromhex(state.secret)
        if not stuck:
            return state

        logger.info("Replacing stuck transaction", order_id=state.order_id, address=dst.address)
        result = await self.coordinator.bump_fee(dst, secret)
        return await self.machine.update(
            state.order_id, lambda s: setattr(s, "dst", result.escrow)
        )

    async def retry(self, action: Callable[[], Awaitable[T]], what: str) -> T:
        """
        Run a chain action, retrying retryable errors with exponential backoff.

        The last error is re-raised once `max_retries` attempts are used up.
        """
        attempt = 0
        while True:
            try:
                return await action()
            except SwapError as e:
                attempt += 1
                if not e.retryable or attempt >= self.config.max_retries:
                    raise
                delay = min(self.config.backoff_base * 2 ** (attempt - 1), self.config.backoff_max)
                logger.warning(
                    "Retrying chain action",
                    action=what,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    def failover(self, client) -> bool:
        """Move a failover-capable client to its next endpoint."""
        if hasattr(client, "failover") and client.failover():
            logger.warning("Failed over to backup endpoint")
            return True
        return False

    async def fail(self, order_id: str, error: Exception) -> SwapState:
        """Move a swap to `failed` with the error attached; the machine's hook alerts the operator."""
        if not isinstance(error, SwapError):
            error = RetryExhausted(str(error) or type(error).__name__)
        logger.error("Swap failed", order_id=order_id, error=error.to_dict())
        transition = await self.machine.fail(order_id, error)
        return transition.state
