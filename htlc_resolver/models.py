"""
Data structures for cross-chain HTLC swaps.

The order is the immutable intent, the escrows are the value locked on
each chain, and the SwapState is the single mutable record that the
order state machine advances. Everything is a pydantic model so the
same objects round-trip through the SQL store as JSON.
"""

from datetime import datetime, timezone
from enum import Enum

from eth_utils import keccak
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SwapStatus(str, Enum):
    """Lifecycle state of one swap."""

    INITIATED = "initiated"
    SRC_LOCKED = "src_locked"  # Source escrow funding confirmed
    DST_LOCKED = "dst_locked"  # Destination HTLC funding confirmed
    SECRET_REVEALED = "secret_revealed"  # Redeem spend seen, secret extracted
    COMPLETED = "completed"  # Counter-leg withdrawn with the secret
    EXPIRED = "expired"  # Timelock passed without a reveal
    REFUNDED = "refunded"  # Refund confirmed on the locked legs
    FAILED = "failed"  # Needs operator intervention

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.FAILED}
)


class Side(str, Enum):
    """Which leg of the swap an escrow belongs to."""

    SRC = "src"  # Account-model chain, maker's asset
    DST = "dst"  # UTXO chain, resolver's asset


class AddressScheme(str, Enum):
    P2SH = "p2sh"
    P2WSH = "p2wsh"


class RefundPolicy(str, Enum):
    """Who may spend the HTLC refund branch once the timelock passes."""

    SENDER_ONLY = "sender_only"
    ANYONE_AFTER_TIMEOUT = "anyone_after_timeout"


class Timelocks(BaseModel):
    """Absolute cancellation times (unix seconds) for both legs."""

    model_config = ConfigDict(frozen=True)

    dst_cancellation: int = Field(description="CLTV value of the UTXO HTLC")
    src_cancellation: int = Field(description="When the source escrow can be cancelled")

    @model_validator(mode="after")
    def check_order(self):
        # The source leg must outlive the reveal window on the destination
        if self.src_cancellation < self.dst_cancellation:
            raise ValueError("src_cancellation must not precede dst_cancellation")
        return self

    def for_side(self, side: Side) -> int:
        return self.src_cancellation if side == Side.SRC else self.dst_cancellation


class SwapParams(BaseModel):
    """Caller-supplied parameters for a new swap."""

    maker_asset: str = Field(description="Asset locked on the source chain")
    taker_asset: str = Field(default="BTC", description="Asset paid on the UTXO chain")
    src_chain: str = Field(default="ethereum")
    dst_chain: str = Field(default="bitcoin")
    making_amount: int = Field(gt=0, description="Source amount in base units")
    taking_amount: int = Field(gt=0, description="Destination amount in satoshis")
    maker_address: str = Field(description="Maker's account on the source chain")
    receiver_address: str = Field(description="Maker's payout address on the UTXO chain")
    maker_pubkey: str = Field(description="Maker's compressed pubkey (redeem branch)")
    resolver_pubkey: str = Field(description="Resolver's compressed pubkey (refund branch)")
    resolver_address: str = Field(default="", description="Resolver's source-chain account")
    timelock: int | None = Field(None, description="Absolute HTLC expiry (unix seconds)")
    secret: str | None = Field(None, description="Caller-provided 32-byte secret (hex)")
    allow_multiple_fills: bool = False
    parts: int = Field(default=1, ge=1, description="Number of committed secrets")
    signature: str | None = Field(None, description="Maker's order signature")
    src_fee: int = Field(default=0, ge=0, description="Estimated source-chain cost")
    dst_fee: int = Field(default=0, ge=0, description="Estimated UTXO-chain cost")

    @field_validator("maker_pubkey", "resolver_pubkey")
    @classmethod
    def validate_pubkey(cls, v):
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("pubkey must be hex") from None
        if len(raw) != 33 or raw[0] not in (2, 3):
            raise ValueError("pubkey must be a 33-byte compressed key")
        return v.lower()

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, v):
        if v is None:
            return v
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("secret must be hex") from None
        if len(raw) != 32:
            raise ValueError("secret must be 32 bytes")
        return v.lower()

    @model_validator(mode="after")
    def check_fill_mode(self):
        if self.allow_multiple_fills and self.parts < 2:
            raise ValueError("multiple fills need at least two parts")
        if not self.allow_multiple_fills and self.parts != 1:
            raise ValueError("single-fill orders commit exactly one secret")
        if self.allow_multiple_fills and self.secret:
            raise ValueError("multi-fill orders mint their own secret set")
        return self


class Order(BaseModel):
    """Immutable swap intent, created once at initiation."""

    model_config = ConfigDict(frozen=True)

    maker_asset: str
    taker_asset: str
    src_chain: str
    dst_chain: str
    making_amount: int
    taking_amount: int
    maker_address: str
    receiver_address: str
    maker_pubkey: str
    resolver_pubkey: str
    resolver_address: str = ""
    hashlock: str = Field(description="sha256(secret) or Merkle root (hex)")
    timelocks: Timelocks
    allow_multiple_fills: bool = False
    parts: int = 1
    salt: str = Field(description="Random salt making the order hash unique")
    signature: str | None = None
    src_fee: int = 0
    dst_fee: int = 0
    created_at: int = Field(description="Unix seconds")

    @property
    def order_hash(self) -> str:
        payload = self.model_dump_json(exclude={"signature"}).encode()
        return keccak(payload).hex()


class MerkleLeafSet(BaseModel):
    """Ordered secret-hash leaves and their Merkle root."""

    model_config = ConfigDict(frozen=True)

    secret_hashes: list[str] = Field(description="sha256 of each secret (hex)")
    leaves: list[str] = Field(description="keccak(idx || secret_hash) (hex)")
    root: str

    @property
    def count(self) -> int:
        return len(self.leaves)


class Utxo(BaseModel):
    """A spendable output on the UTXO chain."""

    txid: str
    vout: int
    value: int = Field(description="Value in satoshis")
    confirmations: int = 0


class Escrow(BaseModel):
    """
    Value locked on one chain for one swap.

    `withdrawn` and `refunded` are mutually exclusive and terminal. For
    the UTXO leg `pending_txids` holds the funding conflict set while fee
    bumps are in flight; the first one to confirm becomes `funding_txid`.
    `withdraw_pending` does the same for our own redeem spends.
    """

    side: Side
    address: str | None = Field(None, description="Escrow/HTLC address")
    ref: str | None = Field(None, description="Account-chain escrow reference")
    amount: int
    hashlock: str
    timelock: int
    sender: str
    recipient: str
    deployed_at: int | None = None
    funding_txid: str | None = None
    funding_vout: int | None = None
    confirmations: int = 0
    funded: bool = False
    withdrawn: bool = False
    refunded: bool = False
    withdraw_txid: str | None = None
    refund_txid: str | None = None

    # UTXO-only bookkeeping
    script_hex: str | None = None
    funding_inputs: list[Utxo] = Field(default_factory=list)
    pending_txids: list[str] = Field(default_factory=list)
    fee_rate: int | None = Field(None, description="sat/vbyte of the latest broadcast")
    broadcast_at: float | None = None
    withdraw_pending: list[str] = Field(default_factory=list)
    withdraw_fee_rate: int | None = None
    withdraw_broadcast_at: float | None = None

    @model_validator(mode="after")
    def check_exclusive(self):
        if self.withdrawn and self.refunded:
            raise ValueError("escrow cannot be both withdrawn and refunded")
        return self

    @property
    def is_settled(self) -> bool:
        return self.withdrawn or self.refunded


class StateChange(BaseModel):
    """One applied transition, kept for auditing."""

    from_status: SwapStatus
    to_status: SwapStatus
    event: str
    at: datetime = Field(default_factory=utcnow)


class ActionResult(BaseModel):
    """Outcome of fund/claim/refund, cached for idempotent replays."""

    success: bool
    order_id: str | None = None
    tx_ref: str | None = None
    tx_refs: dict[str, str] = Field(default_factory=dict)
    message: str | None = None


class SwapState(BaseModel):
    """
    Mutable lifecycle record for one swap.

    Owned by the order state machine. Partial fills of a multi-fill
    order are tracked as child swaps (`parent_id`/`fill_index`) while the
    parent keeps the fill counters.
    """

    order_id: str
    order: Order
    status: SwapStatus = SwapStatus.INITIATED
    src: Escrow | None = None
    dst: Escrow | None = None
    secret: str | None = Field(None, description="Revealed secret (hex)")
    leaf_set: MerkleLeafSet | None = None

    # Partial fills
    parent_id: str | None = None
    fill_index: int | None = None
    fill_amount: int | None = None
    filled_amount: int = 0
    consumed_indices: list[int] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)
    last_error: dict | None = None
    history: list[StateChange] = Field(default_factory=list)
    results: dict[str, ActionResult] = Field(default_factory=dict)
    revision: int = Field(0, description="Store write counter; writes against an older revision are refused")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def hashlock(self) -> str:
        """Hashlock the escrows of this swap are locked to."""
        if self.fill_index is not None and self.leaf_set is not None:
            return self.leaf_set.secret_hashes[self.fill_index]
        return self.order.hashlock

    def escrow(self, side: Side) -> Escrow | None:
        return self.src if side == Side.SRC else self.dst

    def locked_escrows(self) -> list[Escrow]:
        return [e for e in (self.src, self.dst) if e and e.funded and not e.is_settled]


class DeployResult(BaseModel):
    tx_ref: str
    deployed_at: int
    address: str | None = None
    escrow: Escrow | None = None


class EscrowImmutables(BaseModel):
    """Parameters an escrow address is derived from on either chain."""

    model_config = ConfigDict(frozen=True)

    order_hash: str
    hashlock: str
    maker: str
    taker: str
    asset: str
    amount: int
    timelocks: Timelocks
    deployed_at: int
    maker_pubkey: str | None = None
    resolver_pubkey: str | None = None


class EscrowStatus(BaseModel):
    """Account-chain escrow status as reported by the chain client."""

    exists: bool = True
    confirmations: int = 0
    withdrawn: bool = False
    cancelled: bool = False
    secret: str | None = None
    tx_ref: str | None = None


class ProfitabilityVerdict(BaseModel):
    profitable: bool
    reason: str | None = None
    net_profit: int = 0


class InitiateResult(BaseModel):
    order_id: str
    hashlock: str
    secret: str | None = None
    secrets: list[str] | None = None
    htlc_address: str | None = None


class AlertKind(str, Enum):
    FAILED = "failed"
    REFUND = "refund"


class SwapAlert(BaseModel):
    """Operator alert about one swap."""

    kind: AlertKind
    state: SwapState
    message: str
