"""Local key signer for the resolver's UTXO wallet."""

import structlog
from bitcoin import segwit_addr
from bitcoin.core import CMutableTransaction, CTxInWitness, CTxWitness, Hash160
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinSecret

from .errors import ValidationError
from .htlc_script import NETWORKS
from .models import Utxo

logger = structlog.get_logger()


class KeySigner:
    """
    Signs with keys held in process.

    The first key owns the P2WPKH wallet that funds HTLCs and receives
    change; any further keys are only used for HTLC branch signatures.
    """

    def __init__(self, private_keys: list[str], network: str = "testnet"):
        if not private_keys:
            raise ValidationError("at least one private key is required")
        if network not in NETWORKS:
            raise ValidationError("unsupported network", network=network)
        self.network = network
        self._keys = {}
        for key_hex in private_keys:
            try:
                raw = bytes.fromhex(key_hex[2:] if key_hex.startswith("0x") else key_hex)
            except ValueError as e:
                raise ValidationError("private key must be hex") from e
            if len(raw) != 32:
                raise ValidationError("private key must be 32 bytes")
            key = CBitcoinSecret.from_secret_bytes(raw)
            self._keys[bytes(key.pub)] = key
        self._wallet_key = next(iter(self._keys.values()))

    @property
    def pubkey(self) -> bytes:
        return bytes(self._wallet_key.pub)

    @property
    def funding_address(self) -> str:
        _, hrp = NETWORKS[self.network]
        return segwit_addr.encode(hrp, 0, Hash160(self.pubkey))

    @property
    def change_address(self) -> str:
        return self.funding_address

    def _script_code(self) -> CScript:
        return CScript([OP_DUP, OP_HASH160, Hash160(self.pubkey), OP_EQUALVERIFY, OP_CHECKSIG])

    async def sign_inputs(self, tx: CMutableTransaction, spent: list[Utxo]) -> CMutableTransaction:
        """Sign every input as a P2WPKH spend from the wallet key."""
        if len(spent) != len(tx.vin):
            raise ValidationError("one spent output per input is required", inputs=len(tx.vin), spent=len(spent))

        witnesses = []
        for i, utxo in enumerate(spent):
            digest = SignatureHash(
                self._script_code(),
                tx,
                i,
                SIGHASH_ALL,
                amount=utxo.value,
                sigversion=SIGVERSION_WITNESS_V0,
            )
            sig = self._wallet_key.sign(digest) + bytes([SIGHASH_ALL])
            witnesses.append(CTxInWitness(CScriptWitness([sig, self.pubkey])))
        tx.wit = CTxWitness(witnesses)
        logger.debug("Signed wallet inputs", count=len(spent))
        return tx

    async def sign_digest(self, pubkey: bytes, digest: bytes) -> bytes:
        """DER signature over `digest` by the key behind `pubkey`."""
        key = self._keys.get(bytes(pubkey))
        if key is None:
            raise ValidationError("no key held for pubkey", pubkey=bytes(pubkey).hex())
        return key.sign(digest)

    def has_key(self, pubkey: bytes) -> bool:
        return bytes(pubkey) in self._keys
