"""
HTTP chain clients.

EsploraClient speaks the mempool.space / Esplora REST API for the UTXO
chain, FailoverUtxoClient rotates through backup endpoints when the
recovery handler gives up on one, and RelayerEscrowClient talks to a
JSON relayer that fronts the account-chain escrow contracts.
"""

from typing import Any

import httpx
import structlog

from .config import config
from .errors import BroadcastFailed, ChainClientError
from .models import EscrowImmutables, EscrowStatus, Order, Utxo

logger = structlog.get_logger()


class EsploraClient:
    """UtxoChainClient over an Esplora-compatible REST API."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or config.utxo_api_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self.client.get(f"{self.base_url}{path}")
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning("UTXO API request failed", url=self.base_url, path=path, error=str(e))
            raise ChainClientError("UTXO API request failed", path=path, error=str(e)) from e

    async def get_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        return int(response.text.strip())

    async def get_spendable_outputs(self, address: str) -> list[Utxo]:
        response = await self._get(f"/address/{address}/utxo")
        height = await self.get_height()
        outputs = []
        for item in response.json():
            status = item.get("status", {})
            confirmations = 0
            if status.get("confirmed"):
                confirmations = height - status["block_height"] + 1
            outputs.append(
                Utxo(
                    txid=item["txid"],
                    vout=item["vout"],
                    value=item["value"],
                    confirmations=confirmations,
                )
            )
        return outputs

    async def get_tx_history(self, address: str) -> list[dict[str, Any]]:
        response = await self._get(f"/address/{address}/txs")
        return response.json()

    async def get_fee_estimate(self, target_blocks: int) -> float:
        """sat/vbyte for the closest published target at or above `target_blocks`."""
        response = await self._get("/fee-estimates")
        estimates = {int(k): float(v) for k, v in response.json().items()}
        if not estimates:
            raise ChainClientError("empty fee estimates")
        eligible = [t for t in estimates if t >= target_blocks]
        target = min(eligible) if eligible else max(estimates)
        return estimates[target]

    async def broadcast(self, raw_tx: bytes) -> str:
        try:
            response = await self.client.post(
                f"{self.base_url}/tx",
                content=raw_tx.hex(),
                headers={"Content-Type": "text/plain"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            # 4xx means the node rejected the transaction itself
            if 400 <= e.response.status_code < 500:
                raise BroadcastFailed("transaction rejected", reason=e.response.text) from e
            raise ChainClientError("broadcast request failed", error=str(e)) from e
        except httpx.HTTPError as e:
            raise ChainClientError("broadcast request failed", error=str(e)) from e

        txid = response.text.strip()
        logger.info("Broadcast transaction", txid=txid, url=self.base_url)
        return txid


class FailoverUtxoClient:
    """Delegates to one endpoint at a time and moves to the next on failover()."""

    def __init__(self, clients: list):
        if not clients:
            raise ValueError("at least one UTXO client is required")
        self.clients = clients
        self.index = 0

    @classmethod
    def from_config(cls, cfg=None) -> "FailoverUtxoClient":
        cfg = cfg or config
        urls = [cfg.utxo_api_url, *cfg.utxo_backup_api_urls]
        return cls([EsploraClient(url) for url in urls])

    @property
    def active(self):
        return self.clients[self.index]

    @property
    def has_backup(self) -> bool:
        return self.index + 1 < len(self.clients)

    def failover(self) -> bool:
        """Switch to the next endpoint; False when none is left."""
        if not self.has_backup:
            return False
        self.index += 1
        logger.warning("Switched UTXO endpoint", index=self.index, total=len(self.clients))
        return True

    async def close(self):
        for client in self.clients:
            if hasattr(client, "close"):
                await client.close()

    async def get_spendable_outputs(self, address: str) -> list[Utxo]:
        return await self.active.get_spendable_outputs(address)

    async def broadcast(self, raw_tx: bytes) -> str:
        return await self.active.broadcast(raw_tx)

    async def get_tx_history(self, address: str) -> list[dict[str, Any]]:
        return await self.active.get_tx_history(address)

    async def get_height(self) -> int:
        return await self.active.get_height()

    async def get_fee_estimate(self, target_blocks: int) -> float:
        return await self.active.get_fee_estimate(target_blocks)


class RelayerEscrowClient:
    """AccountChainClient over the escrow relayer's JSON API."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or config.relayer_api_url).rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=30.0, headers={"Accept": "application/json"}
        )

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, payload: dict | None = None) -> httpx.Response:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning("Relayer request failed", method=method, path=path, error=str(e))
            raise ChainClientError("relayer request failed", path=path, error=str(e)) from e

    async def check_authorization(self, order: Order, fill_amount: int) -> bool:
        response = await self._request(
            "POST",
            "/orders/authorize",
            {"order": order.model_dump(mode="json"), "fill_amount": fill_amount},
        )
        return bool(response.json().get("authorized"))

    async def deploy_escrow(self, params: EscrowImmutables) -> str:
        response = await self._request("POST", "/escrows", params.model_dump(mode="json"))
        return response.json()["ref"]

    async def withdraw_escrow(self, ref: str, secret: bytes) -> str:
        response = await self._request("POST", f"/escrows/{ref}/withdraw", {"secret": secret.hex()})
        return response.json()["tx_ref"]

    async def cancel_escrow(self, ref: str) -> str:
        response = await self._request("POST", f"/escrows/{ref}/cancel")
        return response.json()["tx_ref"]

    async def get_escrow_status(self, ref: str) -> EscrowStatus:
        try:
            response = await self.client.get(f"{self.base_url}/escrows/{ref}")
        except httpx.HTTPError as e:
            raise ChainClientError("relayer request failed", ref=ref, error=str(e)) from e
        if response.status_code == 404:
            return EscrowStatus(exists=False)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChainClientError("relayer request failed", ref=ref, error=str(e)) from e
        return EscrowStatus.model_validate(response.json())
