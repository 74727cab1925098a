"""
Swap engine: the API the CLI and health server call.

Wires the hashlock manager, state machine, escrow coordinator, watcher
and recovery handler together around one store. `fund`, `claim` and
`refund` run under the order's action lock and cache their result on
the swap, so repeating a call after success returns the original result
instead of broadcasting again.
"""

import os
import time
from datetime import datetime, timezone
from typing import Callable

import structlog
from pydantic import ValidationError as PydanticValidationError

from .config import Config, config as default_config
from .coordinator import EscrowCoordinator
from .errors import (
    InvalidTransition,
    NotProfitable,
    SecretMismatch,
    TimelockNotReached,
    UnknownOrder,
    ValidationError,
)
from .hashlock import HashLockManager
from .htlc_script import HTLCScriptBuilder
from .interfaces import AccountChainClient, ProfitabilityPolicy, SwapStore, UtxoChainClient, UtxoSigner
from .merkle import PartialFillEngine
from .models import (
    ActionResult,
    InitiateResult,
    Order,
    RefundPolicy,
    Side,
    SwapParams,
    SwapState,
    SwapStatus,
    Timelocks,
)
from .notifiers import NotificationManager
from .profitability import FeeThresholdPolicy
from .recovery import RecoveryHandler
from .state_machine import OrderStateMachine, SwapEvent
from .store import MemorySwapStore
from .watcher import ChainWatcher

logger = structlog.get_logger()


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    except ValueError as e:
        raise ValidationError("expected hex", value=value) from e


class SwapEngine:
    """
    Cross-chain HTLC swap engine.

    Manages the lifecycle of each swap from initiation through funding,
    secret reveal and withdrawal, or timeout and refund.
    """

    def __init__(
        self,
        account: AccountChainClient,
        utxo: UtxoChainClient,
        signer: UtxoSigner,
        store: SwapStore | None = None,
        policy: ProfitabilityPolicy | None = None,
        notifier: NotificationManager | None = None,
        builder: HTLCScriptBuilder | None = None,
        cfg: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Wire up all the moving parts.

        Args:
            account: Escrow contracts on the account chain
            utxo: UTXO chain node or API
            signer: Wallet holding the resolver's UTXO keys
            store: Swap state persistence (in-memory by default)
            policy: Profitability check consulted before locking funds
            notifier: Operator alerts for failed and refunded swaps
            builder: HTLC script builder (network and refund family)
            cfg: Settings; the global config when omitted
            clock: Unix-time source, injectable for tests
        """
        self.config = cfg or default_config
        self.clock = clock
        self.account = account
        self.utxo = utxo
        self.store = store or MemorySwapStore()
        self.notifier = notifier or NotificationManager(self.config)
        self.builder = builder or HTLCScriptBuilder(
            self.config.network, RefundPolicy(self.config.refund_policy)
        )

        self.merkle = PartialFillEngine()
        self.hashlocks = HashLockManager(self.store, self.merkle)
        self.machine = OrderStateMachine(self.store, clock, on_failed=self._on_failed)
        self.coordinator = EscrowCoordinator(
            account,
            utxo,
            signer,
            policy or FeeThresholdPolicy(),
            self.builder,
            self.config,
            clock,
        )
        self.recovery = RecoveryHandler(self.machine, self.coordinator, self.notifier, self.config, clock)
        self.watcher = ChainWatcher(
            self.machine,
            account,
            utxo,
            self.recovery,
            self.builder,
            self.merkle,
            self.config,
            clock,
            on_poll=self._react,
        )

    async def _on_failed(self, state: SwapState):
        await self.notifier.notify_failed(state)

    async def tick(self, order_id: str) -> SwapState:
        """One watcher observation of an order followed by whatever it calls for."""
        return await self._react(await self.watcher.poll_once(order_id))

    async def _react(self, state: SwapState) -> SwapState:
        """Take the chain actions an observed state calls for."""
        if state.is_terminal:
            return state
        if state.status == SwapStatus.SECRET_REVEALED and state.src is not None and not state.src.withdrawn:
            await self._claim(state.order_id, bytes.fromhex(state.secret), sides=(Side.SRC,))
            state = await self.machine.get(state.order_id)
        state = await self.recovery.check_stuck(state)
        return await self.recovery.check_timeout(state)

    async def initiate_swap(self, params: SwapParams | dict) -> InitiateResult:
        """
        Create a swap: mint and reserve its secret(s) and derive the HTLC address.

        Raises:
            ValidationError: malformed parameters
            NotProfitable: the policy rejected the order
            SecretReused: a provided secret was used before
        """
        if not isinstance(params, SwapParams):
            try:
                params = SwapParams.model_validate(params)
            except PydanticValidationError as e:
                raise ValidationError("invalid swap parameters", errors=e.errors()) from e

        now = int(self.clock())
        timelock = params.timelock if params.timelock is not None else now + self.config.default_timelock
        if timelock <= now:
            raise ValidationError("timelock must be in the future", timelock=timelock)

        draft = Order(
            **params.model_dump(exclude={"timelock", "secret"}),
            hashlock="",
            timelocks=Timelocks(
                dst_cancellation=timelock,
                src_cancellation=timelock + self.config.src_cancellation_margin,
            ),
            salt=os.urandom(16).hex(),
            created_at=now,
        )

        # Policy first: a rejected order must not consume a secret
        verdict = await self.coordinator.policy.evaluate(draft)
        if not verdict.profitable:
            raise NotProfitable(verdict.reason or "order rejected by policy")

        secret = _to_bytes(params.secret) if params.secret else None
        secret_set = await self.hashlocks.mint(params.parts, secret)
        order = draft.model_copy(update={"hashlock": secret_set.hashlock.hex()})
        order_id = order.order_hash

        htlc_address = None
        if not secret_set.is_multi:
            immutables = self.coordinator.immutables(
                order, Side.DST, order.hashlock, order.taking_amount, now
            )
            htlc_address = self.coordinator.escrow_address(Side.DST, immutables)

        await self.machine.create(
            SwapState(
                order_id=order_id,
                order=order,
                leaf_set=secret_set.leaf_set,
                expires_at=datetime.fromtimestamp(timelock, timezone.utc),
            )
        )
        logger.info(
            "Swap initiated",
            order_id=order_id,
            hashlock=order.hashlock,
            parts=params.parts,
            htlc_address=htlc_address,
        )

        secrets_hex = [s.hex() for s in secret_set.secrets]
        return InitiateResult(
            order_id=order_id,
            hashlock=order.hashlock,
            secret=None if secret_set.is_multi else secrets_hex[0],
            secrets=secrets_hex if secret_set.is_multi else None,
            htlc_address=htlc_address,
        )

    async def fund(self, order_id: str, fill_amount: int | None = None) -> ActionResult:
        """
        Deploy the source escrow and fund the destination HTLC.

        Multi-fill orders take a `fill_amount`; each fill becomes its own
        child swap (`<order_id>-<idx>`) locked to the selected secret. A
        fill that failed before anything reached a chain is rolled back so
        its leaf can be selected again; one that failed half way is resumed
        by the next call with the same amount.
        """
        async with self.machine.lock(order_id):
            state = await self.machine.get(order_id)
            if not (state.order.allow_multiple_fills and state.parent_id is None):
                if "fund" in state.results:
                    return state.results["fund"]
                amount = state.fill_amount or state.order.making_amount
                if fill_amount is not None and fill_amount != amount:
                    raise ValidationError("single-fill orders are funded in full", amount=amount)
                return await self._fund_legs(state, amount)

            child = await self._unfinished_fill(state, fill_amount)
            if child is None:
                child = await self._open_fill(state, fill_amount)
            try:
                async with self.machine.lock(child.order_id):
                    return await self._fund_legs(child, child.fill_amount)
            except Exception:
                child = await self.machine.get(child.order_id)
                if child.src is None and child.dst is None:
                    await self._release_fill(state.order_id, child)
                raise

    async def _unfinished_fill(self, parent: SwapState, fill_amount: int | None) -> SwapState | None:
        """A child of this size whose funding stopped part way, if any."""
        for idx in parent.consumed_indices:
            child = await self.store.get(f"{parent.order_id}-{idx}")
            if (
                child is not None
                and child.status == SwapStatus.INITIATED
                and "fund" not in child.results
                and child.fill_amount == fill_amount
            ):
                logger.info("Resuming partial fill", order_id=parent.order_id, idx=idx)
                return child
        return None

    async def _release_fill(self, parent_id: str, child: SwapState):
        """Undo a fill that never locked anything: free its leaf and amount."""

        def release(s: SwapState):
            s.consumed_indices = [i for i in s.consumed_indices if i != child.fill_index]
            s.filled_amount -= child.fill_amount

        await self.machine.update(parent_id, release)
        await self.store.delete(child.order_id)
        logger.warning("Rolled back partial fill", order_id=parent_id, idx=child.fill_index)

    async def _open_fill(self, parent: SwapState, fill_amount: int | None) -> SwapState:
        if fill_amount is None:
            raise ValidationError("multi-fill orders need a fill amount")
        if parent.is_terminal:
            raise InvalidTransition("order is closed", status=parent.status.value)

        idx = self.merkle.plan_fill(
            parent.leaf_set,
            parent.order.making_amount,
            fill_amount,
            parent.filled_amount,
            parent.consumed_indices,
        )

        def consume(s: SwapState):
            s.consumed_indices = self.merkle.consume(s.consumed_indices, idx)
            s.filled_amount += fill_amount

        await self.machine.update(parent.order_id, consume)
        child = await self.machine.create(
            SwapState(
                order_id=f"{parent.order_id}-{idx}",
                order=parent.order,
                leaf_set=parent.leaf_set,
                parent_id=parent.order_id,
                fill_index=idx,
                fill_amount=fill_amount,
                expires_at=parent.expires_at,
            )
        )
        logger.info("Opened partial fill", order_id=parent.order_id, idx=idx, fill_amount=fill_amount)
        return child

    async def _fund_legs(self, state: SwapState, src_amount: int) -> ActionResult:
        if state.status != SwapStatus.INITIATED:
            raise InvalidTransition("swap is already past funding", status=state.status.value)

        order = state.order
        order_id = state.order_id
        hashlock = state.hashlock

        # A retried fund resumes after whichever leg already went out
        if state.src is None:
            deployed = await self.recovery.retry(
                lambda: self.coordinator.deploy_source(order, src_amount, hashlock), "deploy_source"
            )
            state = await self.machine.update(order_id, lambda s: setattr(s, "src", deployed.escrow))

        if state.dst is None:
            dst_amount = order.taking_amount * src_amount // order.making_amount
            immutables = self.coordinator.immutables(
                order, Side.DST, hashlock, dst_amount, int(self.clock())
            )
            funded = await self.recovery.retry(
                lambda: self.coordinator.deploy_destination(immutables, order.receiver_address),
                "deploy_destination",
            )
            state = await self.machine.update(order_id, lambda s: setattr(s, "dst", funded.escrow))

        result = ActionResult(
            success=True,
            order_id=order_id,
            tx_ref=state.dst.funding_txid,
            tx_refs={"src": state.src.ref, "dst": state.dst.funding_txid},
        )
        await self.machine.update(order_id, lambda s: s.results.__setitem__("fund", result))
        logger.info("Swap funded", order_id=order_id, **result.tx_refs)
        return result

    async def claim(
        self,
        order_id: str,
        secret: bytes | str,
        proof: list[bytes | str] | None = None,
        idx: int | None = None,
    ) -> ActionResult:
        """
        Withdraw both legs with the revealed secret.

        A destination HTLC whose redeem key the signer does not hold is
        left for its recipient; the source withdrawal still goes ahead.

        For a multi-fill order pass the leaf index (and optionally the
        Merkle proof); the claim is routed to that fill's swap.

        Raises:
            SecretMismatch: the secret (or proof) does not open this swap
            InvalidTransition: the swap is not funded on both chains yet
        """
        secret = _to_bytes(secret)
        state = await self.machine.get(order_id)
        if state.order.allow_multiple_fills and state.parent_id is None:
            if idx is None:
                raise ValidationError("claiming a multi-fill order needs the leaf index")
            order_id = f"{order_id}-{idx}"
            state = await self.machine.get(order_id)

        if state.fill_index is not None:
            if idx is not None and idx != state.fill_index:
                raise SecretMismatch("leaf index does not match this fill", idx=idx)
            self.merkle.verify_fill_secret(
                state.leaf_set,
                state.fill_index,
                HashLockManager.hash(secret),
                [_to_bytes(p) for p in proof] if proof is not None else None,
            )
        elif not HashLockManager.validate(secret, bytes.fromhex(state.hashlock)):
            raise SecretMismatch("secret does not match the hashlock", order_id=order_id)

        return await self._claim(order_id, secret, sides=(Side.DST, Side.SRC))

    async def _claim(self, order_id: str, secret: bytes, sides: tuple[Side, ...]) -> ActionResult:
        async with self.machine.lock(order_id):
            state = await self.machine.get(order_id)
            if "claim" in state.results:
                return state.results["claim"]
            if state.status not in (SwapStatus.DST_LOCKED, SwapStatus.SECRET_REVEALED, SwapStatus.COMPLETED):
                raise InvalidTransition("both legs must be locked before claiming", status=state.status.value)

            if state.secret is None:
                state = await self.machine.update(order_id, lambda s: setattr(s, "secret", secret.hex()))

            skipped = []
            for side in sides:
                escrow = state.escrow(side)
                if escrow is None or escrow.withdrawn:
                    continue
                if not self.coordinator.can_withdraw(side, escrow):
                    # The destination pays the maker; only their key redeems it
                    logger.info(
                        "No key for redeem path, leaving leg to its recipient",
                        order_id=order_id,
                        side=side.value,
                    )
                    skipped.append(side.value)
                    continue
                result = await self.recovery.retry(
                    lambda: self.coordinator.withdraw(side, escrow, secret), f"withdraw_{side.value}"
                )
                state = await self.machine.update(
                    order_id, lambda s, side=side, escrow=result.escrow: setattr(s, side.value, escrow)
                )
                if side == Side.DST:
                    state = (await self.machine.apply(order_id, SwapEvent.SECRET_REVEALED)).state

            state = (await self.machine.apply(order_id, SwapEvent.SECRET_REVEALED)).state
            if state.src is not None and state.src.withdrawn:
                state = (await self.machine.apply(order_id, SwapEvent.COUNTER_LEG_WITHDRAWN)).state

            tx_refs = {
                side.value: escrow.withdraw_txid
                for side, escrow in ((Side.DST, state.dst), (Side.SRC, state.src))
                if escrow is not None and escrow.withdraw_txid
            }
            result = ActionResult(
                success=state.status == SwapStatus.COMPLETED,
                order_id=order_id,
                tx_ref=tx_refs.get(Side.SRC.value),
                tx_refs=tx_refs,
                message=f"redeem left to recipient on: {', '.join(skipped)}" if skipped else None,
            )
            if result.success:
                await self.machine.update(order_id, lambda s: s.results.__setitem__("claim", result))
                logger.info("Swap completed", order_id=order_id, **tx_refs)
            return result

    async def refund(self, order_id: str) -> ActionResult:
        """
        Cancel the locked legs of an expired swap.

        Raises:
            TimelockNotReached: the reveal window is still open
            InvalidTransition: the swap is not in a refundable state
        """
        async with self.machine.lock(order_id):
            state = await self.machine.get(order_id)
            if "refund" in state.results:
                return state.results["refund"]

            state = await self.recovery.expire_if_due(state)
            if state.status == SwapStatus.REFUNDED:
                # Refunded by the watcher's auto-refund
                tx_refs = {
                    e.side.value: e.refund_txid for e in (state.dst, state.src) if e is not None and e.refund_txid
                }
                result = ActionResult(
                    success=True,
                    order_id=order_id,
                    tx_ref=tx_refs.get(Side.DST.value) or tx_refs.get(Side.SRC.value),
                    tx_refs=tx_refs,
                )
            elif state.status == SwapStatus.EXPIRED:
                state, result = await self.recovery.retry(
                    lambda: self._refund_once(order_id), "refund"
                )
                result.order_id = order_id
            elif state.status in (SwapStatus.SRC_LOCKED, SwapStatus.DST_LOCKED):
                raise TimelockNotReached("swap has not expired yet", expires_at=state.expires_at.isoformat())
            else:
                raise InvalidTransition("swap cannot be refunded", status=state.status.value)

            if state.status == SwapStatus.REFUNDED:
                await self.machine.update(order_id, lambda s: s.results.__setitem__("refund", result))
            return result

    async def _refund_once(self, order_id: str):
        return await self.recovery.refund_legs(await self.machine.get(order_id))

    async def get_status(self, order_id: str) -> SwapState:
        """Read-only snapshot of a live or archived swap."""
        state = await self.store.get(order_id)
        if state is None and hasattr(self.store, "get_archived"):
            state = await self.store.get_archived(order_id)
        if state is None:
            raise UnknownOrder("no swap with this order id", order_id=order_id)
        return state

    async def watch(self, order_id: str):
        await self.machine.get(order_id)
        return self.watcher.watch(order_id)

    async def resume(self) -> int:
        """Watch every swap that is still in flight, e.g. after a restart."""
        live = [s.value for s in SwapStatus if not s.is_terminal]
        count = 0
        for state in await self.store.list(live):
            if state.src is not None or state.dst is not None:
                self.watcher.watch(state.order_id)
                count += 1
        logger.info("Resumed watching swaps", count=count)
        return count

    async def list_swaps(self, statuses: list[str] | None = None) -> list[SwapState]:
        return await self.store.list(statuses)

    async def archive(self, order_id: str):
        state = await self.machine.get(order_id)
        if not state.is_terminal:
            raise InvalidTransition("only settled swaps can be archived", status=state.status.value)
        await self.store.archive(order_id)

    async def close(self):
        """Stop watchers and release client connections."""
        await self.watcher.stop_all()
        for resource in (self.account, self.utxo, self.store):
            if hasattr(resource, "close"):
                await resource.close()
        logger.info("Swap engine stopped")
