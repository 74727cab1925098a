"""Shared fixtures: in-memory chains, a fake wallet and a controllable clock."""

import hashlib

import pytest
import pytest_asyncio
from bitcoin import segwit_addr
from bitcoin.core import CTransaction, b2lx

from htlc_resolver.config import Config
from htlc_resolver.engine import SwapEngine
from htlc_resolver.htlc_script import HTLCScriptBuilder
from htlc_resolver.models import EscrowStatus, RefundPolicy, Utxo
from htlc_resolver.notifiers import NotificationManager, Notifier
from htlc_resolver.store import MemorySwapStore

START_TIME = 1_750_000_000
MAKER_PUBKEY = "02" + "11" * 32
RESOLVER_PUBKEY = "03" + "22" * 32
RECEIVER_ADDRESS = segwit_addr.encode("tb", 0, b"\x33" * 20)
WALLET_ADDRESS = segwit_addr.encode("tb", 0, b"\x44" * 20)
FAKE_DER = bytes.fromhex("3006020101020101")


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeUtxoClient:
    """Esplora-shaped UTXO chain held in memory."""

    def __init__(self):
        self.height = 100
        self.fee_rate = 2.0
        self.outputs = [Utxo(txid="aa" * 32, vout=0, value=1_000_000, confirmations=6)]
        self.history: dict[str, list[dict]] = {}
        self.broadcasts: list[CTransaction] = []
        self.error: Exception | None = None

    def _check(self):
        if self.error is not None:
            raise self.error

    async def get_spendable_outputs(self, address: str) -> list[Utxo]:
        self._check()
        return list(self.outputs)

    async def broadcast(self, raw_tx: bytes) -> str:
        self._check()
        tx = CTransaction.deserialize(raw_tx)
        self.broadcasts.append(tx)
        return b2lx(tx.GetTxid())

    async def get_tx_history(self, address: str) -> list[dict]:
        self._check()
        return list(self.history.get(address, []))

    async def get_height(self) -> int:
        self._check()
        return self.height

    async def get_fee_estimate(self, target_blocks: int) -> float:
        self._check()
        return self.fee_rate

    def add_funding(self, address: str, txid: str, amount: int, confirmed: bool = True):
        self.history.setdefault(address, []).append({
            "txid": txid,
            "vin": [],
            "vout": [{"scriptpubkey_address": address, "value": amount}],
            "status": {"confirmed": confirmed, "block_height": self.height} if confirmed else {"confirmed": False},
        })

    def add_spend(self, address: str, txid: str, funding_txid: str, witness: list[bytes], vout: int = 0):
        self.history.setdefault(address, []).append({
            "txid": txid,
            "vin": [{"txid": funding_txid, "vout": vout, "witness": [w.hex() for w in witness]}],
            "vout": [],
            "status": {"confirmed": True, "block_height": self.height},
        })


class FakeAccountClient:
    """Escrow contracts that accept everything and report whatever the test sets."""

    def __init__(self):
        self.authorized = True
        self.statuses: dict[str, EscrowStatus] = {}
        self.deployed = []
        self.withdrawals = []
        self.cancels = []

    async def check_authorization(self, order, fill_amount: int) -> bool:
        return self.authorized

    async def deploy_escrow(self, params) -> str:
        self.deployed.append(params)
        ref = f"escrow-{len(self.deployed)}"
        self.statuses[ref] = EscrowStatus(confirmations=0)
        return ref

    async def withdraw_escrow(self, ref: str, secret: bytes) -> str:
        self.withdrawals.append((ref, secret))
        return f"withdraw-{ref}"

    async def cancel_escrow(self, ref: str) -> str:
        self.cancels.append(ref)
        return f"cancel-{ref}"

    async def get_escrow_status(self, ref: str) -> EscrowStatus:
        return self.statuses.get(ref, EscrowStatus(exists=False))

    def confirm(self, ref: str, confirmations: int = 1):
        self.statuses[ref] = self.statuses[ref].model_copy(update={"confirmations": confirmations})


class FakeSigner:
    """Wallet that returns a fixed signature; script checks use an accepting verifier."""

    change_address = WALLET_ADDRESS
    funding_address = WALLET_ADDRESS

    def __init__(self, held: set[bytes] | None = None):
        self.digests = []
        self.held = held

    def has_key(self, pubkey: bytes) -> bool:
        return self.held is None or bytes(pubkey) in self.held

    async def sign_inputs(self, tx, spent):
        return tx

    async def sign_digest(self, pubkey: bytes, digest: bytes) -> bytes:
        self.digests.append((pubkey, digest))
        return FAKE_DER


class RecordingNotifier(Notifier):
    def __init__(self):
        self.alerts = []

    async def notify(self, alert) -> bool:
        self.alerts.append(alert)
        return True


def accept_all(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    return True


def make_config(**overrides) -> Config:
    settings = dict(
        network="testnet",
        address_scheme="p2wsh",
        refund_policy="sender_only",
        min_confirmations=1,
        poll_interval=0,
        max_retries=3,
        backoff_base=0,
        backoff_max=0,
        default_timelock=3600,
        src_cancellation_margin=0,
        fee_bump_after=600,
        auto_refund=True,
        enable_apprise=False,
    )
    settings.update(overrides)
    return Config(_env_file=None, **settings)


def swap_params(**overrides) -> dict:
    params = dict(
        maker_asset="0x" + "ab" * 20,
        making_amount=100_000,
        taking_amount=50_000,
        maker_address="0x" + "01" * 20,
        receiver_address=RECEIVER_ADDRESS,
        maker_pubkey=MAKER_PUBKEY,
        resolver_pubkey=RESOLVER_PUBKEY,
        resolver_address="0x" + "02" * 20,
    )
    params.update(overrides)
    return params


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg():
    return make_config()


@pytest.fixture
def utxo():
    return FakeUtxoClient()


@pytest.fixture
def account():
    return FakeAccountClient()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def builder():
    return HTLCScriptBuilder("testnet", RefundPolicy.SENDER_ONLY, verifier=accept_all)


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(account, utxo, signer, builder, recorder, cfg, clock):
    engine = SwapEngine(
        account,
        utxo,
        signer,
        store=MemorySwapStore(),
        notifier=NotificationManager(cfg, notifiers=[recorder]),
        builder=builder,
        cfg=cfg,
        clock=clock,
    )
    yield engine
    await engine.watcher.stop_all()


async def lock_both_legs(engine: SwapEngine, order_id: str):
    """Confirm both legs on chain and let the engine observe it."""
    state = await engine.get_status(order_id)
    engine.account.confirm(state.src.ref)
    engine.utxo.add_funding(state.dst.address, state.dst.funding_txid, state.dst.amount)
    return await engine.tick(order_id)

