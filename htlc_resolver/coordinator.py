"""
Escrow coordination on both chains.

Each chain family sits behind a small leg object (deploy, withdraw,
cancel) selected by the escrow's side tag: the source leg talks to the
escrow contracts through the account-chain client, the destination leg
builds, signs and broadcasts HTLC transactions on the UTXO chain.

The coordinator never writes swap state. Every call hands back an
updated Escrow and the caller records it through the state machine.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable

import structlog
from bitcoin.core import CMutableTransaction
from bitcoin.core.script import CScript
from cachetools import TTLCache

from .config import Config, config as default_config
from .errors import (
    BroadcastFailed,
    ChainClientError,
    InsufficientSignatureOrAllowance,
    InvalidTransition,
    ProfitabilityRejected,
    ScriptMismatch,
    SecretMismatch,
    TimelockNotReached,
    ValidationError,
)
from .escrow_address import account_escrow_address, utxo_escrow_address
from .hashlock import HashLockManager
from .htlc_script import NETWORKS, HTLCScriptBuilder, RedeemProof, RefundProof, SpendPath
from .interfaces import AccountChainClient, ProfitabilityPolicy, UtxoChainClient, UtxoSigner
from .models import (
    AddressScheme,
    DeployResult,
    Escrow,
    EscrowImmutables,
    Order,
    RefundPolicy,
    Side,
    SwapStatus,
)
from .transactions import (
    REDEEM_VSIZE,
    REFUND_VSIZE,
    address_to_script_pubkey,
    attach_spend_stack,
    build_funding_tx,
    build_htlc_spend,
    bumped_fee_rate,
    htlc_sighash,
    select_outputs,
    with_sighash_type,
)

logger = structlog.get_logger()


@dataclass
class TxResult:
    """Outcome of a withdraw/cancel/bump on one leg."""

    tx_ref: str
    escrow: Escrow
    already_done: bool = False


class AccountLeg:
    """Source leg: escrow contracts behind the account-chain client."""

    def __init__(self, client: AccountChainClient, cfg: Config):
        self.client = client
        self.config = cfg

    async def deploy(self, immutables: EscrowImmutables) -> str:
        try:
            return await self.client.deploy_escrow(immutables)
        except ChainClientError as e:
            raise BroadcastFailed("escrow deployment failed", error=str(e)) from e

    async def withdraw(self, escrow: Escrow, secret: bytes) -> str:
        try:
            return await self.client.withdraw_escrow(escrow.ref, secret)
        except ChainClientError as e:
            raise BroadcastFailed("escrow withdrawal failed", ref=escrow.ref, error=str(e)) from e

    async def cancel(self, escrow: Escrow) -> str:
        try:
            return await self.client.cancel_escrow(escrow.ref)
        except ChainClientError as e:
            raise BroadcastFailed("escrow cancellation failed", ref=escrow.ref, error=str(e)) from e


class UtxoLeg:
    """Destination leg: HTLC outputs on the UTXO chain."""

    def __init__(
        self,
        client: UtxoChainClient,
        signer: UtxoSigner,
        builder: HTLCScriptBuilder,
        cfg: Config,
        clock: Callable[[], float],
    ):
        self.client = client
        self.signer = signer
        self.builder = builder
        self.config = cfg
        self.clock = clock
        self.network = builder.network
        self._fee_cache: TTLCache = TTLCache(maxsize=16, ttl=cfg.fee_cache_ttl)

    def scheme_of(self, escrow: Escrow) -> AddressScheme:
        _, hrp = NETWORKS[self.network]
        if escrow.address and escrow.address.lower().startswith(hrp + "1"):
            return AddressScheme.P2WSH
        return AddressScheme.P2SH

    async def fee_rate(self) -> int:
        """Current sat/vbyte estimate, cached per confirmation target."""
        target = self.config.fee_target_blocks
        estimate = self._fee_cache.get(target)
        if estimate is None:
            estimate = await self.client.get_fee_estimate(target)
            self._fee_cache[target] = estimate
        return max(self.config.min_fee_rate, math.ceil(estimate))

    async def broadcast(self, tx: CMutableTransaction) -> str:
        try:
            return await self.client.broadcast(tx.serialize())
        except ChainClientError as e:
            raise BroadcastFailed("broadcast failed", error=str(e)) from e

    async def funding_tx(self, escrow: Escrow, fee_rate: int) -> CMutableTransaction:
        script = bytes.fromhex(escrow.script_hex)
        htlc_spk = HTLCScriptBuilder.script_pubkey(CScript(script), self.scheme_of(escrow))
        change_spk = address_to_script_pubkey(self.signer.change_address, self.network)
        tx, fee = build_funding_tx(escrow.funding_inputs, htlc_spk, escrow.amount, change_spk, fee_rate)
        logger.debug("Built funding transaction", address=escrow.address, fee=fee, fee_rate=fee_rate)
        return await self.signer.sign_inputs(tx, escrow.funding_inputs)

    async def redeem_tx(self, escrow: Escrow, secret: bytes, fee_rate: int) -> CMutableTransaction:
        script = bytes.fromhex(escrow.script_hex)
        scheme = self.scheme_of(escrow)
        params = self.builder.parse(script)
        tx = build_htlc_spend(
            escrow.funding_txid,
            escrow.funding_vout,
            escrow.amount,
            address_to_script_pubkey(escrow.recipient, self.network),
            fee_rate * REDEEM_VSIZE,
        )
        digest = htlc_sighash(tx, script, escrow.amount, scheme)
        signature = with_sighash_type(await self.signer.sign_digest(params.recipient_pubkey, digest))

        proof = RedeemProof(secret=secret, pubkey=params.recipient_pubkey, signature=signature, sighash=digest)
        if not self.builder.validate(script, SpendPath.REDEEM, proof):
            raise ScriptMismatch("redeem spend would not satisfy the HTLC", address=escrow.address)
        return attach_spend_stack(tx, self.builder.redeem_witness(signature, secret, script), scheme)

    async def refund_tx(self, escrow: Escrow, fee_rate: int) -> CMutableTransaction:
        script = bytes.fromhex(escrow.script_hex)
        scheme = self.scheme_of(escrow)
        params = self.builder.parse(script)
        tx = build_htlc_spend(
            escrow.funding_txid,
            escrow.funding_vout,
            escrow.amount,
            address_to_script_pubkey(escrow.sender, self.network),
            fee_rate * REFUND_VSIZE,
            locktime=escrow.timelock,
        )

        now = int(self.clock())
        if params.refund_policy == RefundPolicy.ANYONE_AFTER_TIMEOUT:
            signature = None
            proof = RefundProof(current_time=now)
        else:
            digest = htlc_sighash(tx, script, escrow.amount, scheme)
            signature = with_sighash_type(await self.signer.sign_digest(params.sender_pubkey, digest))
            proof = RefundProof(now, params.sender_pubkey, signature, digest)

        if not self.builder.validate(script, SpendPath.REFUND, proof):
            raise ScriptMismatch("refund spend would not satisfy the HTLC", address=escrow.address)
        return attach_spend_stack(tx, self.builder.refund_witness(signature, script), scheme)


class EscrowCoordinator:
    """
    Deploys, withdraws and cancels escrows on both chains for the resolver.

    Consults the profitability policy and the maker's authorization
    before locking anything on the source chain.
    """

    def __init__(
        self,
        account: AccountChainClient,
        utxo: UtxoChainClient,
        signer: UtxoSigner,
        policy: ProfitabilityPolicy,
        builder: HTLCScriptBuilder | None = None,
        cfg: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = cfg or default_config
        self.builder = builder or HTLCScriptBuilder(
            self.config.network, RefundPolicy(self.config.refund_policy)
        )
        self.policy = policy
        self.signer = signer
        self.clock = clock
        self.scheme = AddressScheme(self.config.address_scheme)
        self.legs = {
            Side.SRC: AccountLeg(account, self.config),
            Side.DST: UtxoLeg(utxo, signer, self.builder, self.config, clock),
        }

    @property
    def account(self) -> AccountLeg:
        return self.legs[Side.SRC]

    @property
    def utxo(self) -> UtxoLeg:
        return self.legs[Side.DST]

    def immutables(
        self, order: Order, side: Side, hashlock: str, amount: int, deployed_at: int
    ) -> EscrowImmutables:
        return EscrowImmutables(
            order_hash=order.order_hash,
            hashlock=hashlock,
            maker=order.maker_address,
            taker=order.resolver_address,
            asset=order.maker_asset if side == Side.SRC else order.taker_asset,
            amount=amount,
            timelocks=order.timelocks,
            deployed_at=deployed_at,
            maker_pubkey=order.maker_pubkey,
            resolver_pubkey=order.resolver_pubkey,
        )

    def escrow_address(self, side: Side, immutables: EscrowImmutables) -> str:
        """Where a leg's value sits; recomputable by anyone holding the order."""
        if side == Side.SRC:
            return account_escrow_address(
                immutables, self.config.escrow_factory, self.config.escrow_implementation
            )
        address, _ = utxo_escrow_address(self.builder, immutables, self.scheme)
        return address

    async def deploy_source(self, order: Order, fill_amount: int, hashlock: str) -> DeployResult:
        """
        Lock the maker's asset in a source escrow.

        Raises:
            InsufficientSignatureOrAllowance: maker authorization is invalid
            ProfitabilityRejected: the policy declined this fill
            BroadcastFailed: the deployment could not be submitted
        """
        if not await self.account.client.check_authorization(order, fill_amount):
            raise InsufficientSignatureOrAllowance(
                "maker signature or allowance does not cover the fill",
                maker=order.maker_address,
                fill_amount=fill_amount,
            )

        verdict = await self.policy.evaluate(order, fill_amount)
        if not verdict.profitable:
            raise ProfitabilityRejected(verdict.reason or "fill rejected by policy", fill_amount=fill_amount)

        deployed_at = int(self.clock())
        immutables = self.immutables(order, Side.SRC, hashlock, fill_amount, deployed_at)
        address = self.escrow_address(Side.SRC, immutables)
        ref = await self.account.deploy(immutables)

        escrow = Escrow(
            side=Side.SRC,
            address=address,
            ref=ref,
            amount=fill_amount,
            hashlock=hashlock,
            timelock=order.timelocks.src_cancellation,
            sender=order.maker_address,
            recipient=order.resolver_address,
            deployed_at=deployed_at,
            funding_txid=ref,
        )
        logger.info("Deployed source escrow", address=address, ref=ref, amount=fill_amount)
        return DeployResult(tx_ref=ref, deployed_at=deployed_at, address=address, escrow=escrow)

    async def deploy_destination(self, immutables: EscrowImmutables, payout_address: str) -> DeployResult:
        """
        Fund the HTLC on the UTXO chain from the resolver's wallet.

        Raises:
            InsufficientFunds: spendable outputs do not cover amount + fee
            BroadcastFailed: the funding transaction was rejected
        """
        address, script = utxo_escrow_address(self.builder, immutables, self.scheme)
        fee_rate = await self.utxo.fee_rate()
        spendable = await self.utxo.client.get_spendable_outputs(self.signer.funding_address)
        selected, _ = select_outputs(spendable, immutables.amount, fee_rate)

        escrow = Escrow(
            side=Side.DST,
            address=address,
            amount=immutables.amount,
            hashlock=immutables.hashlock,
            timelock=immutables.timelocks.dst_cancellation,
            sender=self.signer.change_address,
            recipient=payout_address,
            deployed_at=immutables.deployed_at,
            funding_vout=0,
            script_hex=script.hex(),
            funding_inputs=selected,
        )
        tx = await self.utxo.funding_tx(escrow, fee_rate)
        txid = await self.utxo.broadcast(tx)

        escrow.funding_txid = txid
        escrow.pending_txids = [txid]
        escrow.fee_rate = fee_rate
        escrow.broadcast_at = self.clock()
        logger.info(
            "Funded destination HTLC",
            address=address,
            txid=txid,
            amount=immutables.amount,
            fee_rate=fee_rate,
        )
        return DeployResult(tx_ref=txid, deployed_at=immutables.deployed_at, address=address, escrow=escrow)

    def can_withdraw(self, side: Side, escrow: Escrow) -> bool:
        """Whether the resolver can sign a leg's redeem path; HTLC redeems need the recipient key."""
        if Side(side) == Side.SRC:
            return True
        if not escrow.script_hex:
            return False
        params = self.builder.parse(bytes.fromhex(escrow.script_hex))
        return self.signer.has_key(params.recipient_pubkey)

    async def withdraw(self, side: Side, escrow: Escrow, secret: bytes) -> TxResult:
        """Spend a leg's redeem path with `secret`; returns the existing result if already withdrawn."""
        escrow = escrow.model_copy(deep=True)
        if escrow.withdrawn:
            return TxResult(escrow.withdraw_txid, escrow, already_done=True)
        if escrow.refunded:
            raise InvalidTransition("escrow was already refunded", side=side.value)
        if not HashLockManager.validate(secret, bytes.fromhex(escrow.hashlock)):
            raise SecretMismatch("secret does not open this escrow", side=side.value)

        if Side(side) == Side.SRC:
            tx_ref = await self.account.withdraw(escrow, secret)
        else:
            if not escrow.funded or escrow.funding_txid is None:
                raise InvalidTransition("destination HTLC is not funded yet")
            fee_rate = await self.utxo.fee_rate()
            tx_ref = await self.utxo.broadcast(await self.utxo.redeem_tx(escrow, secret, fee_rate))
            escrow.withdraw_pending = [tx_ref]
            escrow.withdraw_fee_rate = fee_rate
            escrow.withdraw_broadcast_at = self.clock()

        escrow.withdrawn = True
        escrow.withdraw_txid = tx_ref
        logger.info("Withdrew escrow", side=side.value, tx_ref=tx_ref)
        return TxResult(tx_ref, escrow)

    async def cancel(self, side: Side, escrow: Escrow, status: SwapStatus) -> TxResult:
        """Spend a leg's refund path; only once the swap is expired and the leg's time has passed."""
        escrow = escrow.model_copy(deep=True)
        if escrow.refunded:
            return TxResult(escrow.refund_txid, escrow, already_done=True)
        if escrow.withdrawn:
            raise InvalidTransition("escrow was already withdrawn", side=side.value)
        if SwapStatus(status) != SwapStatus.EXPIRED:
            raise InvalidTransition("cancel requires an expired swap", status=SwapStatus(status).value)
        if self.clock() < escrow.timelock:
            raise TimelockNotReached("cancellation time not reached", side=side.value, timelock=escrow.timelock)

        if Side(side) == Side.SRC:
            tx_ref = await self.account.cancel(escrow)
        else:
            fee_rate = await self.utxo.fee_rate()
            tx_ref = await self.utxo.broadcast(await self.utxo.refund_tx(escrow, fee_rate))

        escrow.refunded = True
        escrow.refund_txid = tx_ref
        logger.info("Cancelled escrow", side=side.value, tx_ref=tx_ref)
        return TxResult(tx_ref, escrow)

    async def bump_fee(self, escrow: Escrow, secret: bytes | None = None) -> TxResult:
        """
        Replace a stuck UTXO transaction with a strictly higher fee rate.

        Unconfirmed funding is re-signed over the same inputs; an
        unconfirmed redeem is rebuilt with `secret`. The new txid joins
        the conflict set and whichever confirms first wins.
        """
        escrow = escrow.model_copy(deep=True)
        multiplier = self.config.fee_bump_multiplier

        if not escrow.funded and escrow.pending_txids:
            new_rate = bumped_fee_rate(escrow.fee_rate or self.config.min_fee_rate, multiplier)
            txid = await self.utxo.broadcast(await self.utxo.funding_tx(escrow, new_rate))
            escrow.pending_txids.append(txid)
            escrow.funding_txid = txid
            escrow.fee_rate = new_rate
            escrow.broadcast_at = self.clock()
        elif escrow.withdraw_pending:
            if secret is None:
                raise ValidationError("bumping a redeem needs the secret")
            new_rate = bumped_fee_rate(escrow.withdraw_fee_rate or self.config.min_fee_rate, multiplier)
            txid = await self.utxo.broadcast(await self.utxo.redeem_tx(escrow, secret, new_rate))
            escrow.withdraw_pending.append(txid)
            escrow.withdraw_txid = txid
            escrow.withdraw_fee_rate = new_rate
            escrow.withdraw_broadcast_at = self.clock()
        else:
            raise ValidationError("no unconfirmed transaction to replace", address=escrow.address)

        logger.info("Fee bumped", address=escrow.address, txid=txid, fee_rate=new_rate)
        return TxResult(txid, escrow)
