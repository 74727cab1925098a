"""
Collaborators the engine talks to but does not own.

Chain clients, the wallet signer, the profitability policy and the
store are all injected so the engine can run against real nodes, a
relayer, or the in-memory fakes used by the tests.
"""

from typing import Any, Protocol, runtime_checkable

from bitcoin.core import CMutableTransaction

from .models import EscrowImmutables, EscrowStatus, Order, ProfitabilityVerdict, SwapState, Utxo


@runtime_checkable
class UtxoChainClient(Protocol):
    """Read/broadcast access to the UTXO chain (Esplora-shaped data)."""

    async def get_spendable_outputs(self, address: str) -> list[Utxo]: ...

    async def broadcast(self, raw_tx: bytes) -> str: ...

    async def get_tx_history(self, address: str) -> list[dict[str, Any]]: ...

    async def get_height(self) -> int: ...

    async def get_fee_estimate(self, target_blocks: int) -> float: ...


@runtime_checkable
class AccountChainClient(Protocol):
    """Narrow interface to the account-chain escrow contracts."""

    async def check_authorization(self, order: Order, fill_amount: int) -> bool: ...

    async def deploy_escrow(self, params: EscrowImmutables) -> str: ...

    async def withdraw_escrow(self, ref: str, secret: bytes) -> str: ...

    async def cancel_escrow(self, ref: str) -> str: ...

    async def get_escrow_status(self, ref: str) -> EscrowStatus: ...


class UtxoSigner(Protocol):
    """Wallet side of the UTXO chain; keys never enter the engine."""

    @property
    def change_address(self) -> str: ...

    @property
    def funding_address(self) -> str: ...

    async def sign_inputs(
        self, tx: CMutableTransaction, spent: list[Utxo]
    ) -> CMutableTransaction: ...

    async def sign_digest(self, pubkey: bytes, digest: bytes) -> bytes: ...

    def has_key(self, pubkey: bytes) -> bool: ...


class ProfitabilityPolicy(Protocol):
    async def evaluate(self, order: Order, fill_amount: int | None = None) -> ProfitabilityVerdict: ...


class SwapStore(Protocol):
    """Persistence for swap state and the used-secrets set."""

    async def get(self, order_id: str) -> SwapState | None: ...

    async def put(self, state: SwapState) -> None:
        """
        Store `state` if its revision is the stored one, then bump it.

        Raises StaleState when another writer got there first.
        """
        ...

    async def delete(self, order_id: str) -> None: ...

    async def reserve(self, hashlock: bytes) -> bool:
        """Atomically add to the used-secrets set; False if already present."""
        ...

    async def list(self, statuses: list[str] | None = None) -> list[SwapState]: ...

    async def archive(self, order_id: str) -> None: ...
