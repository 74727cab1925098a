"""
Merkle commitments for partial fills.

A multi-fill order commits to N secrets. Leaf i is
keccak256(uint64_be(i) || sha256(secret_i)) so a leaf cannot be moved to
another index, and the tree hashes sibling pairs in sorted order the way
the account-chain escrow contracts verify proofs. A fill that brings the
cumulative filled amount to F out of T uses leaf

    idx = floor((N - 1) * (F - 1) / T)

except that a fill completing the order always takes the last leaf.
"""

import hmac

import structlog
from eth_utils import keccak

from .errors import SecretMismatch, SecretReused, ValidationError
from .models import MerkleLeafSet

logger = structlog.get_logger()


def _hash_pair(a: bytes, b: bytes) -> bytes:
    return keccak(a + b) if a <= b else keccak(b + a)


class PartialFillEngine:
    """Builds leaf sets and proofs, and picks the secret index for a fill."""

    @staticmethod
    def leaf(idx: int, secret_hash: bytes) -> bytes:
        return keccak(idx.to_bytes(8, "big") + secret_hash)

    @staticmethod
    def _levels(leaves: list[bytes]) -> list[list[bytes]]:
        if not leaves:
            raise ValidationError("cannot build a tree without leaves")
        levels = [list(leaves)]
        while len(levels[-1]) > 1:
            current = levels[-1]
            parent = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    parent.append(_hash_pair(current[i], current[i + 1]))
                else:
                    parent.append(current[i])  # odd node promoted
            levels.append(parent)
        return levels

    def root(self, leaves: list[bytes]) -> bytes:
        return self._levels(leaves)[-1][0]

    def build_leaf_set(self, secret_hashes: list[bytes]) -> MerkleLeafSet:
        leaves = [self.leaf(i, h) for i, h in enumerate(secret_hashes)]
        return MerkleLeafSet(
            secret_hashes=[h.hex() for h in secret_hashes],
            leaves=[leaf.hex() for leaf in leaves],
            root=self.root(leaves).hex(),
        )

    def build_proof(self, leaves: list[bytes], idx: int) -> list[bytes]:
        if not 0 <= idx < len(leaves):
            raise ValidationError("leaf index out of range", idx=idx, count=len(leaves))
        proof = []
        pos = idx
        for level in self._levels(leaves)[:-1]:
            sibling = pos ^ 1
            if sibling < len(level):
                proof.append(level[sibling])
            pos //= 2
        return proof

    def verify_proof(self, root: bytes, leaf: bytes, proof: list[bytes], idx: int) -> bool:
        if idx < 0:
            return False
        node = leaf
        for sibling in proof:
            node = _hash_pair(node, sibling)
        return hmac.compare_digest(node, root)

    @staticmethod
    def select_index(parts: int, fill_amount: int, total: int, filled_before: int = 0) -> int:
        """Index of the secret that authorizes a cumulative fill."""
        if parts < 1:
            raise ValidationError("parts must be positive")
        if fill_amount <= 0:
            raise ValidationError("fill amount must be positive", fill_amount=fill_amount)
        cumulative = filled_before + fill_amount
        if cumulative > total:
            raise ValidationError(
                "fill exceeds remaining order amount",
                fill_amount=fill_amount,
                remaining=total - filled_before,
            )
        if cumulative == total:
            return parts - 1
        idx = (parts - 1) * (cumulative - 1) // total
        return max(0, min(idx, parts - 1))

    def plan_fill(
        self,
        leaf_set: MerkleLeafSet,
        total: int,
        fill_amount: int,
        filled_before: int,
        consumed: list[int],
    ) -> int:
        """Pick the leaf for a fill and reject leaves that were already used."""
        idx = self.select_index(leaf_set.count, fill_amount, total, filled_before)
        if idx in consumed:
            raise SecretReused("merkle leaf already consumed", idx=idx)
        if consumed and idx < max(consumed):
            raise ValidationError("fill index must not go backwards", idx=idx)
        return idx

    @staticmethod
    def consume(consumed: list[int], idx: int) -> list[int]:
        """Mark leaf `idx` used; replays raise SecretReused."""
        if idx in consumed:
            raise SecretReused("merkle leaf already consumed", idx=idx)
        return sorted([*consumed, idx])

    def proof_for(self, leaf_set: MerkleLeafSet, idx: int) -> list[bytes]:
        return self.build_proof([bytes.fromhex(leaf) for leaf in leaf_set.leaves], idx)

    def verify_fill_secret(
        self,
        leaf_set: MerkleLeafSet,
        idx: int,
        secret_hash: bytes,
        proof: list[bytes] | None = None,
    ) -> None:
        """
        Check that a revealed secret hash belongs to leaf `idx` of the set.

        Raises:
            SecretMismatch: if the derived leaf is not in the tree
        """
        if not 0 <= idx < leaf_set.count:
            raise SecretMismatch("leaf index out of range", idx=idx)
        if proof is None:
            proof = self.proof_for(leaf_set, idx)
        leaf = self.leaf(idx, secret_hash)
        if not self.verify_proof(bytes.fromhex(leaf_set.root), leaf, proof, idx):
            logger.warning("Merkle proof rejected", idx=idx, root=leaf_set.root)
            raise SecretMismatch("secret is not committed at this index", idx=idx)
