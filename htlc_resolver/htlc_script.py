"""
HTLC redeem script construction and local validation.

Script layout (sender-only refund):

    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        <recipient_pubkey> OP_CHECKSIG
    OP_ELSE
        <timelock> OP_CHECKLOCKTIMEVERIFY OP_DROP
        <sender_pubkey> OP_CHECKSIG
    OP_ENDIF

The anyone-after-timeout family replaces the refund signature check
with OP_TRUE, so any relayer can push the refund once the timelock has
passed. Plain script cannot pin the refund output, so the refund
transaction built by this engine always pays the sender; that family
trades that guarantee for availability when the sender key is lost.
A builder produces exactly one family.

Spending stacks:
    redeem: <sig> <secret> 0x01 [<script>]
    refund: <sig> <empty> [<script>]      (sender-only)
            <empty> [<script>]            (anyone-after-timeout)
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog
from bitcoin import segwit_addr
from bitcoin.base58 import CBase58Data
from bitcoin.core import Hash160
from bitcoin.core.script import (
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSIG,
    OP_DROP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUALVERIFY,
    OP_IF,
    OP_SHA256,
    OP_TRUE,
    CScript,
    CScriptInvalidError,
)

from .errors import ScriptMismatch, ValidationError
from .models import AddressScheme, RefundPolicy

logger = structlog.get_logger()

# base58 script-hash prefix and bech32 hrp per network
NETWORKS = {
    "mainnet": (5, "bc"),
    "testnet": (196, "tb"),
    "signet": (196, "tb"),
    "regtest": (196, "bcrt"),
}

REDEEM_SELECTOR = b"\x01"
REFUND_SELECTOR = b""


class SpendPath(str, Enum):
    REDEEM = "redeem"
    REFUND = "refund"


@dataclass(frozen=True)
class HTLCParams:
    hashlock: bytes
    recipient_pubkey: bytes
    sender_pubkey: bytes
    timelock: int
    refund_policy: RefundPolicy = RefundPolicy.SENDER_ONLY


@dataclass
class RedeemProof:
    secret: bytes
    pubkey: bytes
    signature: bytes
    sighash: bytes


@dataclass
class RefundProof:
    current_time: int
    pubkey: bytes | None = None
    signature: bytes | None = None
    sighash: bytes | None = None


SignatureVerifier = Callable[[bytes, bytes, bytes], bool]


def verify_signature(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """ECDSA check of a script signature (trailing sighash byte stripped)."""
    # Imported lazily: bitcoin.core.key binds to libssl when loaded
    from bitcoin.core.key import CPubKey

    if not signature:
        return False
    try:
        return bool(CPubKey(pubkey).verify(digest, signature[:-1]))
    except (ValueError, TypeError, OSError):
        return False


def decode_script_num(data: bytes) -> int:
    """Decode a minimally-encoded script number (little-endian, sign bit)."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


class HTLCScriptBuilder:
    """Compiles HTLC scripts for one refund family and derives their addresses."""

    def __init__(
        self,
        network: str = "testnet",
        refund_policy: RefundPolicy = RefundPolicy.SENDER_ONLY,
        verifier: SignatureVerifier = verify_signature,
    ):
        if network not in NETWORKS:
            raise ValidationError("unsupported network", network=network)
        self.network = network
        self.refund_policy = RefundPolicy(refund_policy)
        self.verifier = verifier

    def build(self, params: HTLCParams) -> CScript:
        if len(params.hashlock) != 32:
            raise ValidationError("hashlock must be 32 bytes")
        for key in (params.recipient_pubkey, params.sender_pubkey):
            if len(key) != 33:
                raise ValidationError("pubkeys must be 33-byte compressed keys")
        if params.timelock <= 16:
            raise ValidationError("timelock must be a block height or unix time", timelock=params.timelock)
        if params.refund_policy != self.refund_policy:
            raise ValidationError(
                "refund family does not match this builder",
                expected=self.refund_policy.value,
                got=params.refund_policy.value,
            )

        if self.refund_policy == RefundPolicy.SENDER_ONLY:
            refund_branch = [params.sender_pubkey, OP_CHECKSIG]
        else:
            refund_branch = [OP_TRUE]

        return CScript(
            [
                OP_IF,
                OP_SHA256,
                params.hashlock,
                OP_EQUALVERIFY,
                params.recipient_pubkey,
                OP_CHECKSIG,
                OP_ELSE,
                params.timelock,
                OP_CHECKLOCKTIMEVERIFY,
                OP_DROP,
                *refund_branch,
                OP_ENDIF,
            ]
        )

    def params(self, hashlock: bytes, recipient_pubkey: bytes, sender_pubkey: bytes, timelock: int) -> HTLCParams:
        return HTLCParams(hashlock, recipient_pubkey, sender_pubkey, timelock, self.refund_policy)

    def derive_address(self, script: CScript, scheme: AddressScheme = AddressScheme.P2WSH) -> str:
        prefix, hrp = NETWORKS[self.network]
        if AddressScheme(scheme) == AddressScheme.P2SH:
            return str(CBase58Data.from_bytes(Hash160(script), prefix))
        address = segwit_addr.encode(hrp, 0, hashlib.sha256(script).digest())
        if address is None:
            raise ValidationError("failed to encode witness program")
        return address

    @staticmethod
    def script_pubkey(script: CScript, scheme: AddressScheme = AddressScheme.P2WSH) -> CScript:
        if AddressScheme(scheme) == AddressScheme.P2SH:
            return script.to_p2sh_scriptPubKey()
        return CScript([0, hashlib.sha256(script).digest()])

    def parse(self, script: bytes) -> HTLCParams:
        """Recover the HTLC parameters, or raise ScriptMismatch."""
        try:
            ops = list(CScript(script))
        except CScriptInvalidError as e:
            raise ScriptMismatch("unparseable script", error=str(e)) from e

        head = [OP_IF, OP_SHA256, None, OP_EQUALVERIFY, None, OP_CHECKSIG, OP_ELSE, None, OP_CHECKLOCKTIMEVERIFY, OP_DROP]
        if len(ops) not in (12, 13):
            raise ScriptMismatch("unexpected script length", length=len(ops))
        for expected, actual in zip(head, ops):
            if expected is not None and actual != expected:
                raise ScriptMismatch("unexpected opcode", expected=expected, got=actual)

        hashlock, recipient, timelock_raw = ops[2], ops[4], ops[7]
        if not isinstance(hashlock, bytes) or len(hashlock) != 32:
            raise ScriptMismatch("bad hashlock push")
        if not isinstance(recipient, bytes) or len(recipient) != 33:
            raise ScriptMismatch("bad recipient pubkey push")
        if not isinstance(timelock_raw, bytes):
            raise ScriptMismatch("bad timelock push")
        timelock = decode_script_num(timelock_raw)

        tail = ops[10:]
        if len(tail) == 3 and isinstance(tail[0], bytes) and len(tail[0]) == 33 and tail[1:] == [OP_CHECKSIG, OP_ENDIF]:
            return HTLCParams(hashlock, recipient, tail[0], timelock, RefundPolicy.SENDER_ONLY)
        if len(tail) == 2 and tail[0] == 1 and tail[1] == OP_ENDIF:
            return HTLCParams(hashlock, recipient, b"", timelock, RefundPolicy.ANYONE_AFTER_TIMEOUT)
        raise ScriptMismatch("unrecognized refund branch")

    def validate(self, script: bytes, path: SpendPath, proof: RedeemProof | RefundProof) -> bool:
        """
        Local pre-check of whether a spend would satisfy one branch.

        Consensus re-validates independently; this only guards the engine
        against broadcasting (or accepting) spends that cannot work.
        """
        try:
            params = self.parse(script)
        except ScriptMismatch:
            return False

        if SpendPath(path) == SpendPath.REDEEM:
            if not isinstance(proof, RedeemProof):
                return False
            if len(proof.secret) != 32:
                return False
            if not hmac.compare_digest(hashlib.sha256(proof.secret).digest(), params.hashlock):
                return False
            if proof.pubkey != params.recipient_pubkey:
                return False
            return self.verifier(proof.pubkey, proof.sighash, proof.signature)

        if not isinstance(proof, RefundProof):
            return False
        if proof.current_time < params.timelock:
            return False
        if params.refund_policy == RefundPolicy.ANYONE_AFTER_TIMEOUT:
            return True
        if proof.pubkey != params.sender_pubkey or proof.signature is None or proof.sighash is None:
            return False
        return self.verifier(proof.pubkey, proof.sighash, proof.signature)

    def evaluate_witness(
        self, script: bytes, stack: list[bytes], sighash: bytes, current_time: int
    ) -> SpendPath | None:
        """Which branch a spending stack satisfies; the selector picks exactly one."""
        items = list(stack)
        if items and items[-1] == bytes(script):
            items = items[:-1]

        if len(items) == 3 and items[2] == REDEEM_SELECTOR:
            sig, secret = items[0], items[1]
            try:
                recipient = self.parse(script).recipient_pubkey
            except ScriptMismatch:
                return None
            proof = RedeemProof(secret=secret, pubkey=recipient, signature=sig, sighash=sighash)
            return SpendPath.REDEEM if self.validate(script, SpendPath.REDEEM, proof) else None

        if items and items[-1] == REFUND_SELECTOR:
            try:
                params = self.parse(script)
            except ScriptMismatch:
                return None
            if params.refund_policy == RefundPolicy.ANYONE_AFTER_TIMEOUT:
                proof = RefundProof(current_time=current_time)
            elif len(items) == 2:
                proof = RefundProof(current_time, params.sender_pubkey, items[0], sighash)
            else:
                return None
            return SpendPath.REFUND if self.validate(script, SpendPath.REFUND, proof) else None
        return None

    @staticmethod
    def redeem_witness(signature: bytes, secret: bytes, script: bytes) -> list[bytes]:
        return [signature, secret, REDEEM_SELECTOR, bytes(script)]

    def refund_witness(self, signature: bytes | None, script: bytes) -> list[bytes]:
        if self.refund_policy == RefundPolicy.ANYONE_AFTER_TIMEOUT:
            return [REFUND_SELECTOR, bytes(script)]
        if not signature:
            raise ValidationError("sender-only refunds need a signature")
        return [signature, REFUND_SELECTOR, bytes(script)]

    @staticmethod
    def extract_secret(stack: list[bytes], hashlock: bytes) -> bytes | None:
        """
        Pull a revealed secret out of a spending stack.

        Returns the secret only if it hashes to `hashlock`; anything else
        is treated as no reveal.
        """
        if len(stack) < 3:
            return None
        items = list(stack)
        # Drop the trailing script push if present
        if len(items) >= 4:
            items = items[:-1]
        if items[-1] != REDEEM_SELECTOR:
            return None
        candidate = items[-2]
        if len(candidate) != 32:
            return None
        if not hmac.compare_digest(hashlib.sha256(candidate).digest(), hashlock):
            logger.warning("Ignoring spend with non-matching preimage", hashlock=hashlock.hex())
            return None
        return candidate
