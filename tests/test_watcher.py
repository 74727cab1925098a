"""Tests for the chain watcher."""

import asyncio

import pytest

from htlc_resolver.clients import FailoverUtxoClient
from htlc_resolver.errors import ChainClientError
from htlc_resolver.models import SwapStatus

from conftest import FAKE_DER, FakeUtxoClient, lock_both_legs, make_config, swap_params


async def funded_swap(engine):
    initiated = await engine.initiate_swap(swap_params())
    await engine.fund(initiated.order_id)
    return initiated


class TestObservation:
    """Test how chain observations drive the state machine."""

    @pytest.mark.asyncio
    async def test_both_legs_confirmed(self, engine):
        initiated = await funded_swap(engine)

        state = await lock_both_legs(engine, initiated.order_id)

        assert state.status == SwapStatus.DST_LOCKED
        assert state.src.funded and state.dst.funded
        assert state.dst.pending_txids == []

    @pytest.mark.asyncio
    async def test_unconfirmed_funding_waits(self, engine, utxo, account):
        initiated = await funded_swap(engine)
        state = await engine.get_status(initiated.order_id)
        account.confirm(state.src.ref)
        utxo.add_funding(state.dst.address, state.dst.funding_txid, state.dst.amount, confirmed=False)

        state = await engine.tick(initiated.order_id)

        assert state.status == SwapStatus.SRC_LOCKED
        assert not state.dst.funded

    @pytest.mark.asyncio
    async def test_destination_confirming_first(self, engine, utxo):
        initiated = await funded_swap(engine)
        state = await engine.get_status(initiated.order_id)
        utxo.add_funding(state.dst.address, state.dst.funding_txid, state.dst.amount)

        state = await engine.tick(initiated.order_id)
        assert state.status == SwapStatus.INITIATED
        assert state.dst.funded

        engine.account.confirm(state.src.ref)
        state = await engine.tick(initiated.order_id)
        assert state.status == SwapStatus.DST_LOCKED

    @pytest.mark.asyncio
    async def test_revealed_secret_completes_swap(self, engine, utxo, account):
        initiated = await funded_swap(engine)
        state = await lock_both_legs(engine, initiated.order_id)
        secret = bytes.fromhex(initiated.secret)
        script = bytes.fromhex(state.dst.script_hex)

        # The maker redeems the HTLC on its own
        utxo.add_spend(
            state.dst.address,
            "cc" * 32,
            state.dst.funding_txid,
            [FAKE_DER + b"\x01", secret, b"\x01", script],
        )
        state = await engine.tick(initiated.order_id)

        assert state.status == SwapStatus.COMPLETED
        assert state.secret == initiated.secret
        assert state.dst.withdraw_txid == "cc" * 32
        assert account.withdrawals == [(state.src.ref, secret)]

    @pytest.mark.asyncio
    async def test_invalid_secret_ignored(self, engine, utxo):
        initiated = await funded_swap(engine)
        state = await lock_both_legs(engine, initiated.order_id)
        script = bytes.fromhex(state.dst.script_hex)

        utxo.add_spend(
            state.dst.address,
            "dd" * 32,
            state.dst.funding_txid,
            [FAKE_DER + b"\x01", b"\x13" * 32, b"\x01", script],
        )
        state = await engine.tick(initiated.order_id)

        assert state.status == SwapStatus.DST_LOCKED
        assert state.secret is None
        assert not state.dst.withdrawn

    @pytest.mark.asyncio
    async def test_secret_from_source_chain(self, engine, account, utxo):
        initiated = await funded_swap(engine)
        state = await lock_both_legs(engine, initiated.order_id)
        account.statuses[state.src.ref] = account.statuses[state.src.ref].model_copy(
            update={"secret": initiated.secret}
        )

        state = await engine.tick(initiated.order_id)

        # Only the source leg is ours to withdraw
        assert state.status == SwapStatus.COMPLETED
        assert state.src.withdrawn
        assert not state.dst.withdrawn
        assert len(utxo.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_polling_alone_sends_nothing(self, engine, account, utxo):
        initiated = await funded_swap(engine)
        state = await lock_both_legs(engine, initiated.order_id)
        account.statuses[state.src.ref] = account.statuses[state.src.ref].model_copy(
            update={"secret": initiated.secret}
        )

        state = await engine.watcher.poll_once(initiated.order_id)
        assert state.status == SwapStatus.SECRET_REVEALED
        assert account.withdrawals == []

        state = await engine.tick(initiated.order_id)
        assert state.status == SwapStatus.COMPLETED
        assert len(account.withdrawals) == 1

    @pytest.mark.asyncio
    async def test_polling_leaves_expiry_to_the_engine(self, engine, utxo, clock):
        initiated = await funded_swap(engine)
        await lock_both_legs(engine, initiated.order_id)
        clock.advance(3600)

        state = await engine.watcher.poll_once(initiated.order_id)
        assert state.status == SwapStatus.DST_LOCKED
        assert len(utxo.broadcasts) == 1

        state = await engine.tick(initiated.order_id)
        assert state.status == SwapStatus.REFUNDED


class TestWatchTasks:
    """Test the polling task lifecycle."""

    @pytest.mark.asyncio
    async def test_watch_is_idempotent(self, engine):
        initiated = await funded_swap(engine)

        first = await engine.watch(initiated.order_id)
        second = await engine.watch(initiated.order_id)

        assert first is second
        assert engine.watcher.is_watching(initiated.order_id)
        await engine.watcher.stop(initiated.order_id)
        assert not engine.watcher.is_watching(initiated.order_id)

    @pytest.mark.asyncio
    async def test_watcher_exits_on_terminal_state(self, engine, utxo):
        initiated = await funded_swap(engine)
        state = await lock_both_legs(engine, initiated.order_id)
        utxo.add_spend(
            state.dst.address,
            "cc" * 32,
            state.dst.funding_txid,
            [FAKE_DER + b"\x01", bytes.fromhex(initiated.secret), b"\x01"],
        )

        task = await engine.watch(initiated.order_id)
        await asyncio.wait_for(task, timeout=5)

        assert (await engine.get_status(initiated.order_id)).status == SwapStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_persistent_errors_fail_the_swap(self, engine, utxo, recorder):
        initiated = await funded_swap(engine)
        utxo.error = ChainClientError("node unreachable")

        task = await engine.watch(initiated.order_id)
        await asyncio.wait_for(task, timeout=5)

        state = await engine.get_status(initiated.order_id)
        assert state.status == SwapStatus.FAILED
        assert state.last_error["type"] == "RetryExhausted"
        assert [a.kind.value for a in recorder.alerts] == ["failed"]


class TestBackoff:
    """Test retry pacing and endpoint failover."""

    @pytest.mark.asyncio
    async def test_backoff_doubles_up_to_cap(self, engine):
        engine.watcher.config = make_config(backoff_base=1, backoff_max=5)

        assert [engine.watcher.backoff_delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]

    @pytest.mark.asyncio
    async def test_failover_resets_failures(self, engine):
        failing, backup = FakeUtxoClient(), FakeUtxoClient()
        engine.watcher.utxo = FailoverUtxoClient([failing, backup])

        failures = await engine.watcher._on_transient_error("order", 2, ChainClientError("down"))

        assert failures == 0
        assert engine.watcher.utxo.active is backup
