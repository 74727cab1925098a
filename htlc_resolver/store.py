"""In-memory swap store."""

import asyncio

from .errors import StaleState
from .models import SwapState


class MemorySwapStore:
    """
    Dict-backed store for tests and single-process runs.

    Every access goes through one asyncio lock so reserve-if-absent is
    atomic across concurrently running order tasks. Values are deep
    copies so callers never share a mutable SwapState with the store.
    Writes follow the same revision check as the SQL store.
    """

    def __init__(self):
        self._swaps: dict[str, SwapState] = {}
        self._archived: dict[str, SwapState] = {}
        self._used: set[bytes] = set()
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> SwapState | None:
        async with self._lock:
            state = self._swaps.get(order_id)
            return state.model_copy(deep=True) if state else None

    async def put(self, state: SwapState) -> None:
        async with self._lock:
            current = self._swaps.get(state.order_id)
            stored = current.revision if current else 0
            if state.revision != stored:
                raise StaleState(
                    "swap was written since it was read",
                    order_id=state.order_id,
                    revision=state.revision,
                    stored=stored,
                )
            state.revision += 1
            self._swaps[state.order_id] = state.model_copy(deep=True)

    async def delete(self, order_id: str) -> None:
        async with self._lock:
            self._swaps.pop(order_id, None)

    async def reserve(self, hashlock: bytes) -> bool:
        async with self._lock:
            if hashlock in self._used:
                return False
            self._used.add(hashlock)
            return True

    async def list(self, statuses: list[str] | None = None) -> list[SwapState]:
        async with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._swaps.values()
                if statuses is None or s.status.value in statuses
            ]

    async def archive(self, order_id: str) -> None:
        async with self._lock:
            state = self._swaps.pop(order_id, None)
            if state is not None:
                self._archived[order_id] = state

    async def get_archived(self, order_id: str) -> SwapState | None:
        async with self._lock:
            state = self._archived.get(order_id)
            return state.model_copy(deep=True) if state else None
