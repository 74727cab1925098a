"""
Chain watcher.

One polling task per watched order. Each poll reads the source escrow
status from the account chain and the HTLC address history from the
UTXO chain, records what it saw and feeds events to the state machine.
It never originates a transaction. After each poll the resulting state
goes to the `on_poll` callback, where the engine withdraws the
counter-leg, bumps stuck fees and refunds expired legs.
"""

import asyncio
import contextlib
import hashlib
import time
from typing import Awaitable, Callable

import structlog

from .config import Config, config as default_config
from .errors import RetryExhausted, SecretMismatch, SwapError
from .htlc_script import REFUND_SELECTOR, HTLCScriptBuilder
from .interfaces import AccountChainClient, UtxoChainClient
from .merkle import PartialFillEngine
from .models import Escrow, Side, SwapState, SwapStatus
from .recovery import RecoveryHandler
from .state_machine import OrderStateMachine, SwapEvent
from .transactions import input_stack

logger = structlog.get_logger()


class ChainWatcher:
    """Drives swap state from what both chains report."""

    def __init__(
        self,
        machine: OrderStateMachine,
        account: AccountChainClient,
        utxo: UtxoChainClient,
        recovery: RecoveryHandler,
        builder: HTLCScriptBuilder,
        merkle: PartialFillEngine | None = None,
        cfg: Config | None = None,
        clock: Callable[[], float] = time.time,
        on_poll: Callable[[SwapState], Awaitable[SwapState]] | None = None,
    ):
        self.machine = machine
        self.account = account
        self.utxo = utxo
        self.recovery = recovery
        self.builder = builder
        self.merkle = merkle or PartialFillEngine()
        self.config = cfg or default_config
        self.clock = clock
        self.on_poll = on_poll
        self._tasks: dict[str, asyncio.Task] = {}

    def is_watching(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    def watch(self, order_id: str) -> asyncio.Task:
        """Start polling an order; returns the running task if there already is one."""
        if self.is_watching(order_id):
            return self._tasks[order_id]
        task = asyncio.create_task(self._run(order_id), name=f"watch-{order_id}")
        self._tasks[order_id] = task
        logger.info("Watching swap", order_id=order_id)
        return task

    async def stop(self, order_id: str):
        task = self._tasks.pop(order_id, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped watching swap", order_id=order_id)

    async def stop_all(self):
        for order_id in list(self._tasks):
            await self.stop(order_id)

    def backoff_delay(self, failures: int) -> float:
        return min(self.config.backoff_base * 2 ** (failures - 1), self.config.backoff_max)

    def _finished(self, state: SwapState) -> bool:
        if state.is_terminal:
            return True
        # Nothing was ever locked and the order can no longer be filled
        return (
            state.status == SwapStatus.INITIATED
            and state.src is None
            and state.dst is None
            and self.recovery.is_expired(state)
        )

    async def _run(self, order_id: str):
        failures = 0
        while True:
            try:
                state = await self.poll_once(order_id)
                if self.on_poll is not None:
                    state = await self.on_poll(state)
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, SwapError) and not e.retryable:
                    logger.error("Watcher hit a permanent error", order_id=order_id, error=e.to_dict())
                    await self.recovery.fail(order_id, e)
                    return
                failures = await self._on_transient_error(order_id, failures, e)
                if failures is None:
                    return
                continue

            if self._finished(state):
                logger.info("Swap settled, watcher exiting", order_id=order_id, status=state.status.value)
                self._tasks.pop(order_id, None)
                return
            await asyncio.sleep(self.config.poll_interval)

    async def _on_transient_error(self, order_id: str, failures: int, error: Exception) -> int | None:
        """Back off after a failed poll; None once the swap has been failed."""
        failures += 1
        logger.warning(
            "Watcher poll failed",
            order_id=order_id,
            error=str(error),
            failures=failures,
            max_retries=self.config.max_retries,
        )
        if failures >= self.config.max_retries:
            if self.recovery.failover(self.utxo):
                return 0
            await self.recovery.fail(
                order_id,
                RetryExhausted("chain clients kept failing", attempts=failures, last_error=str(error)),
            )
            return None
        await asyncio.sleep(self.backoff_delay(failures))
        return failures

    async def poll_once(self, order_id: str) -> SwapState:
        """One observation pass over both legs; returns the resulting state."""
        state = await self.machine.get(order_id)
        if state.is_terminal:
            return state

        if state.src is not None and state.src.ref:
            state = await self._check_source(state)
        if state.dst is not None and state.dst.address:
            state = await self._check_destination(state)
        return await self._advance(state)

    async def _record(self, order_id: str, side: Side, escrow: Escrow) -> SwapState:
        return await self.machine.update(order_id, lambda s: setattr(s, side.value, escrow))

    async def _check_source(self, state: SwapState) -> SwapState:
        status = await self.account.get_escrow_status(state.src.ref)
        if not status.exists:
            return state

        src = state.src.model_copy(deep=True)
        src.confirmations = status.confirmations
        if not src.funded and status.confirmations >= self.config.min_confirmations:
            src.funded = True
            logger.info("Source escrow confirmed", order_id=state.order_id, ref=src.ref)
        if status.withdrawn and not src.withdrawn and not src.refunded:
            src.withdrawn = True
            src.withdraw_txid = status.tx_ref
        if status.cancelled and not src.refunded and not src.withdrawn:
            src.refunded = True
            src.refund_txid = status.tx_ref

        if status.secret and state.secret is None:
            secret = self._valid_secret(state, bytes.fromhex(status.secret))
            if secret is not None:
                state = await self.machine.update(
                    state.order_id, lambda s: setattr(s, "secret", secret.hex())
                )

        if src != state.src:
            state = await self._record(state.order_id, Side.SRC, src)
        return state

    async def _check_destination(self, state: SwapState) -> SwapState:
        dst = state.dst.model_copy(deep=True)
        history = await self.utxo.get_tx_history(dst.address)
        height = await self.utxo.get_height()
        min_conf = self.config.min_confirmations
        secret_seen = None

        if not dst.funded:
            self._match_funding(dst, history, height, min_conf)

        if dst.funding_txid is not None:
            for tx in history:
                for vin in tx.get("vin", []):
                    if vin.get("txid") != dst.funding_txid or vin.get("vout") != dst.funding_vout:
                        continue
                    confirmations = _confirmations(tx, height)
                    secret = self._secret_from_spend(state, dst, vin)
                    if secret is not None:
                        secret_seen = secret
                        if dst.refunded:
                            # Our refund lost the conflict to the recipient's redeem
                            logger.warning(
                                "Destination redeemed over our refund",
                                order_id=state.order_id,
                                refund_txid=dst.refund_txid,
                                txid=tx["txid"],
                            )
                            dst.refunded = False
                            dst.refund_txid = None
                        if not dst.withdrawn:
                            dst.withdrawn = True
                            dst.withdraw_txid = tx["txid"]
                        if confirmations >= min_conf and dst.withdraw_pending:
                            dst.withdraw_txid = tx["txid"]
                            dst.withdraw_pending = []
                    elif self._is_refund_spend(dst, vin) and not dst.withdrawn:
                        dst.refunded = True
                        dst.refund_txid = tx["txid"]

        if secret_seen is not None and state.secret is None:
            logger.info("Secret revealed on destination chain", order_id=state.order_id)
            state = await self.machine.update(
                state.order_id, lambda s: setattr(s, "secret", secret_seen.hex())
            )
        if dst != state.dst:
            state = await self._record(state.order_id, Side.DST, dst)
        return state

    def _match_funding(self, dst: Escrow, history: list[dict], height: int, min_conf: int) -> None:
        """Find the output paying the HTLC; the first confirmed member of the conflict set wins."""
        candidates = []
        for tx in history:
            for idx, out in enumerate(tx.get("vout", [])):
                if out.get("scriptpubkey_address") == dst.address and out.get("value", 0) >= dst.amount:
                    candidates.append((tx, idx))

        for tx, idx in candidates:
            confirmations = _confirmations(tx, height)
            if confirmations >= min_conf:
                dst.funded = True
                dst.funding_txid = tx["txid"]
                dst.funding_vout = idx
                dst.confirmations = confirmations
                dropped = [t for t in dst.pending_txids if t != tx["txid"]]
                if dropped:
                    logger.info("Dropped replaced funding transactions", txids=dropped)
                dst.pending_txids = []
                return

        # Only a mempool copy so far; remember where it sits
        if candidates and dst.funding_txid is None:
            tx, idx = candidates[0]
            dst.funding_txid = tx["txid"]
            dst.funding_vout = idx

    def _secret_from_spend(self, state: SwapState, dst: Escrow, vin: dict) -> bytes | None:
        stack = input_stack(vin)
        secret = self.builder.extract_secret(stack, bytes.fromhex(dst.hashlock))
        if secret is None:
            return None
        return self._valid_secret(state, secret)

    def _valid_secret(self, state: SwapState, secret: bytes) -> bytes | None:
        """The secret if it opens this swap (and its Merkle leaf for fills), else None."""
        digest = hashlib.sha256(secret).digest()
        if digest.hex() != state.hashlock:
            logger.warning("Ignoring secret for another hashlock", order_id=state.order_id)
            return None
        if state.fill_index is not None and state.leaf_set is not None:
            try:
                self.merkle.verify_fill_secret(state.leaf_set, state.fill_index, digest)
            except SecretMismatch:
                return None
        return secret

    @staticmethod
    def _is_refund_spend(dst: Escrow, vin: dict) -> bool:
        stack = input_stack(vin)
        if stack and dst.script_hex and stack[-1] == bytes.fromhex(dst.script_hex):
            stack = stack[:-1]
        return bool(stack) and stack[-1] == REFUND_SELECTOR

    async def _advance(self, state: SwapState) -> SwapState:
        """Apply every event the recorded escrows now justify, in lifecycle order."""
        order_id = state.order_id
        if state.status == SwapStatus.INITIATED and state.src and state.src.funded:
            state = (await self.machine.apply(order_id, SwapEvent.SRC_FUNDED)).state
        if state.status == SwapStatus.SRC_LOCKED and state.dst and state.dst.funded:
            state = (await self.machine.apply(order_id, SwapEvent.DST_FUNDED)).state
        if state.status == SwapStatus.DST_LOCKED and state.secret:
            state = (await self.machine.apply(order_id, SwapEvent.SECRET_REVEALED)).state

        if state.status == SwapStatus.SECRET_REVEALED and state.src and state.src.withdrawn:
            state = (await self.machine.apply(order_id, SwapEvent.COUNTER_LEG_WITHDRAWN)).state

        if state.status == SwapStatus.EXPIRED and not state.locked_escrows():
            if state.src is not None and state.src.withdrawn:
                event = SwapEvent.COUNTER_LEG_WITHDRAWN
            else:
                event = SwapEvent.REFUND_CONFIRMED
            state = (await self.machine.apply(order_id, event)).state
        return state


def _confirmations(tx: dict, height: int) -> int:
    status = tx.get("status") or {}
    if not status.get("confirmed"):
        return 0
    return max(0, height - status["block_height"] + 1)
