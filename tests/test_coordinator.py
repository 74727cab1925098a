"""Tests for escrow deployment, withdrawal and cancellation."""

import hashlib

import pytest
from bitcoin.core.script import CScript

from htlc_resolver.coordinator import EscrowCoordinator
from htlc_resolver.errors import (
    InsufficientFunds,
    InsufficientSignatureOrAllowance,
    InvalidTransition,
    ProfitabilityRejected,
    SecretMismatch,
    TimelockNotReached,
    ValidationError,
)
from htlc_resolver.htlc_script import HTLCScriptBuilder
from htlc_resolver.models import Order, Side, SwapStatus, Timelocks, Utxo
from htlc_resolver.profitability import FeeThresholdPolicy
from htlc_resolver.transactions import RBF_SEQUENCE

from conftest import MAKER_PUBKEY, RECEIVER_ADDRESS, RESOLVER_PUBKEY, START_TIME

SECRET = b"\x24" * 32
HASHLOCK = hashlib.sha256(SECRET).hexdigest()


def make_order(**overrides) -> Order:
    fields = dict(
        maker_asset="USDC",
        taker_asset="BTC",
        src_chain="ethereum",
        dst_chain="bitcoin",
        making_amount=100_000,
        taking_amount=50_000,
        maker_address="0x" + "01" * 20,
        receiver_address=RECEIVER_ADDRESS,
        maker_pubkey=MAKER_PUBKEY,
        resolver_pubkey=RESOLVER_PUBKEY,
        resolver_address="0x" + "02" * 20,
        hashlock=HASHLOCK,
        timelocks=Timelocks(dst_cancellation=START_TIME + 3600, src_cancellation=START_TIME + 7200),
        salt="01",
        created_at=START_TIME,
    )
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def coordinator(account, utxo, signer, builder, cfg, clock):
    return EscrowCoordinator(account, utxo, signer, FeeThresholdPolicy(), builder, cfg, clock)


async def funded_destination(coordinator, order=None):
    order = order or make_order()
    immutables = coordinator.immutables(order, Side.DST, HASHLOCK, order.taking_amount, START_TIME)
    result = await coordinator.deploy_destination(immutables, order.receiver_address)
    escrow = result.escrow.model_copy(update={"funded": True, "pending_txids": []})
    return result, escrow


class TestDeploySource:
    """Test source escrow deployment."""

    @pytest.mark.asyncio
    async def test_deploys_with_deterministic_address(self, coordinator, account):
        order = make_order()
        result = await coordinator.deploy_source(order, 100_000, HASHLOCK)

        immutables = coordinator.immutables(order, Side.SRC, HASHLOCK, 100_000, START_TIME)
        assert result.escrow.address == coordinator.escrow_address(Side.SRC, immutables)
        assert result.escrow.address.startswith("0x")
        assert result.escrow.ref == "escrow-1"
        assert result.escrow.timelock == order.timelocks.src_cancellation
        assert len(account.deployed) == 1

    @pytest.mark.asyncio
    async def test_unauthorized_maker(self, coordinator, account):
        account.authorized = False

        with pytest.raises(InsufficientSignatureOrAllowance):
            await coordinator.deploy_source(make_order(), 100_000, HASHLOCK)
        assert account.deployed == []

    @pytest.mark.asyncio
    async def test_unprofitable_fill(self, coordinator, account):
        with pytest.raises(ProfitabilityRejected):
            await coordinator.deploy_source(make_order(src_fee=500), 100_000, HASHLOCK)
        assert account.deployed == []


class TestDeployDestination:
    """Test HTLC funding on the UTXO chain."""

    @pytest.mark.asyncio
    async def test_funding_pays_the_htlc(self, coordinator, utxo):
        result, escrow = await funded_destination(coordinator)

        tx = utxo.broadcasts[0]
        script = CScript(bytes.fromhex(escrow.script_hex))
        assert tx.vout[0].nValue == 50_000
        assert tx.vout[0].scriptPubKey == HTLCScriptBuilder.script_pubkey(script)
        assert all(txin.nSequence == RBF_SEQUENCE for txin in tx.vin)
        assert result.escrow.pending_txids == [result.tx_ref]
        assert result.escrow.fee_rate == 2
        assert escrow.timelock == START_TIME + 3600

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, coordinator, utxo):
        utxo.outputs = [Utxo(txid="bb" * 32, vout=0, value=1_000)]

        with pytest.raises(InsufficientFunds):
            await funded_destination(coordinator)
        assert utxo.broadcasts == []


class TestWithdraw:
    """Test redeem spends."""

    @pytest.mark.asyncio
    async def test_redeem_reveals_secret(self, coordinator, utxo):
        _, escrow = await funded_destination(coordinator)

        result = await coordinator.withdraw(Side.DST, escrow, SECRET)

        redeem = utxo.broadcasts[-1]
        witness = list(redeem.wit.vtxinwit[0].scriptWitness.stack)
        assert witness[1] == SECRET
        assert redeem.vout[0].nValue == 50_000 - 2 * 175
        assert result.escrow.withdrawn
        assert result.escrow.withdraw_pending == [result.tx_ref]

    @pytest.mark.asyncio
    async def test_withdraw_is_idempotent(self, coordinator, utxo):
        _, escrow = await funded_destination(coordinator)
        first = await coordinator.withdraw(Side.DST, escrow, SECRET)

        second = await coordinator.withdraw(Side.DST, first.escrow, SECRET)

        assert second.already_done
        assert second.tx_ref == first.tx_ref
        assert len(utxo.broadcasts) == 2

    @pytest.mark.asyncio
    async def test_wrong_secret(self, coordinator):
        _, escrow = await funded_destination(coordinator)
        with pytest.raises(SecretMismatch):
            await coordinator.withdraw(Side.DST, escrow, b"\x25" * 32)

    @pytest.mark.asyncio
    async def test_unfunded_htlc(self, coordinator):
        result, _ = await funded_destination(coordinator)
        with pytest.raises(InvalidTransition):
            await coordinator.withdraw(Side.DST, result.escrow, SECRET)

    @pytest.mark.asyncio
    async def test_source_withdraw(self, coordinator, account):
        deployed = await coordinator.deploy_source(make_order(), 100_000, HASHLOCK)

        result = await coordinator.withdraw(Side.SRC, deployed.escrow, SECRET)

        assert result.tx_ref == "withdraw-escrow-1"
        assert account.withdrawals == [("escrow-1", SECRET)]


class TestCancel:
    """Test refund spends."""

    @pytest.mark.asyncio
    async def test_cancel_before_timelock(self, coordinator):
        _, escrow = await funded_destination(coordinator)
        with pytest.raises(TimelockNotReached):
            await coordinator.cancel(Side.DST, escrow, SwapStatus.EXPIRED)

    @pytest.mark.asyncio
    async def test_cancel_requires_expired_swap(self, coordinator, clock):
        _, escrow = await funded_destination(coordinator)
        clock.advance(3600)
        with pytest.raises(InvalidTransition):
            await coordinator.cancel(Side.DST, escrow, SwapStatus.DST_LOCKED)

    @pytest.mark.asyncio
    async def test_refund_pays_sender_once(self, coordinator, utxo, clock, signer):
        _, escrow = await funded_destination(coordinator)
        clock.advance(3600)

        first = await coordinator.cancel(Side.DST, escrow, SwapStatus.EXPIRED)
        second = await coordinator.cancel(Side.DST, first.escrow, SwapStatus.EXPIRED)

        refund = utxo.broadcasts[-1]
        assert refund.nLockTime == escrow.timelock
        assert signer.digests[-1][0] == bytes.fromhex(RESOLVER_PUBKEY)
        assert first.escrow.refunded
        assert second.already_done
        assert len(utxo.broadcasts) == 2

    @pytest.mark.asyncio
    async def test_cannot_cancel_withdrawn_leg(self, coordinator, clock):
        _, escrow = await funded_destination(coordinator)
        withdrawn = await coordinator.withdraw(Side.DST, escrow, SECRET)
        clock.advance(3600)

        with pytest.raises(InvalidTransition):
            await coordinator.cancel(Side.DST, withdrawn.escrow, SwapStatus.EXPIRED)


class TestFeeBump:
    """Test replace-by-fee."""

    @pytest.mark.asyncio
    async def test_funding_bump_raises_fee_rate(self, coordinator, utxo):
        result, _ = await funded_destination(coordinator)

        bumped = await coordinator.bump_fee(result.escrow)

        assert bumped.escrow.fee_rate == 3
        assert bumped.escrow.pending_txids == [result.tx_ref, bumped.tx_ref]
        assert bumped.tx_ref != result.tx_ref
        # Same inputs, so the replacement conflicts with the original
        assert [i.prevout for i in utxo.broadcasts[1].vin] == [i.prevout for i in utxo.broadcasts[0].vin]

    @pytest.mark.asyncio
    async def test_redeem_bump_needs_secret(self, coordinator):
        _, escrow = await funded_destination(coordinator)
        withdrawn = await coordinator.withdraw(Side.DST, escrow, SECRET)

        with pytest.raises(ValidationError):
            await coordinator.bump_fee(withdrawn.escrow)

        bumped = await coordinator.bump_fee(withdrawn.escrow, SECRET)
        assert len(bumped.escrow.withdraw_pending) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_bump(self, coordinator):
        _, escrow = await funded_destination(coordinator)
        with pytest.raises(ValidationError):
            await coordinator.bump_fee(escrow)
