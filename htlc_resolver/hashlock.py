"""
Secret and hashlock lifecycle.

Secrets are 32 bytes from the OS CSPRNG and the hashlock is their
sha256, which is what OP_SHA256 checks on the UTXO chain and what the
escrow contracts check on the account chain. Multi-fill orders commit
to a Merkle root over N secret hashes instead (see merkle.py).
"""

import hashlib
import hmac
import secrets

import structlog

from .errors import SecretReused, ValidationError
from .interfaces import SwapStore
from .merkle import PartialFillEngine
from .models import MerkleLeafSet

logger = structlog.get_logger()

SECRET_SIZE = 32


class SecretSet:
    """Secrets minted for one order plus the hashlock that commits to them."""

    def __init__(self, secrets_: list[bytes], hashlock: bytes, leaf_set: MerkleLeafSet | None = None):
        self.secrets = secrets_
        self.hashlock = hashlock
        self.leaf_set = leaf_set

    @property
    def is_multi(self) -> bool:
        return self.leaf_set is not None


class HashLockManager:
    """Generates secrets, derives hashlocks and enforces one-time use."""

    def __init__(self, store: SwapStore, merkle: PartialFillEngine | None = None):
        self.store = store
        self.merkle = merkle or PartialFillEngine()

    @staticmethod
    def generate_secret() -> bytes:
        return secrets.token_bytes(SECRET_SIZE)

    @staticmethod
    def hash(secret: bytes) -> bytes:
        if len(secret) != SECRET_SIZE:
            raise ValidationError("secret must be 32 bytes", size=len(secret))
        return hashlib.sha256(secret).digest()

    @staticmethod
    def validate(secret: bytes, hashlock: bytes) -> bool:
        if len(secret) != SECRET_SIZE:
            return False
        return hmac.compare_digest(hashlib.sha256(secret).digest(), hashlock)

    async def reserve(self, secret: bytes) -> None:
        """Mark a secret as consumed; a second reservation raises SecretReused."""
        if not await self.store.reserve(self.hash(secret)):
            logger.warning("Secret reuse rejected", hashlock=self.hash(secret).hex())
            raise SecretReused("secret already used by another order")

    async def mint(self, parts: int = 1, secret: bytes | None = None) -> SecretSet:
        """
        Mint and reserve the secrets for a new order.

        Args:
            parts: 1 for a single-fill order, N >= 2 for a Merkle-committed set
            secret: caller-provided secret for single-fill orders

        Returns:
            SecretSet with the hashlock to put in the order
        """
        if parts < 1:
            raise ValidationError("parts must be positive", parts=parts)

        if parts == 1:
            chosen = secret if secret is not None else self.generate_secret()
            await self.reserve(chosen)
            return SecretSet([chosen], self.hash(chosen))

        if secret is not None:
            raise ValidationError("multi-fill orders mint their own secrets")

        minted = [self.generate_secret() for _ in range(parts)]
        for s in minted:
            await self.reserve(s)

        leaf_set = self.merkle.build_leaf_set([self.hash(s) for s in minted])
        logger.info("Minted secret set", parts=parts, root=leaf_set.root)
        return SecretSet(minted, bytes.fromhex(leaf_set.root), leaf_set)
