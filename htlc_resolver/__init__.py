"""HTLC Resolver - cross-chain atomic swaps between an account chain and a UTXO chain."""

__version__ = "1.0.0"

from .engine import SwapEngine
from .errors import SwapError
from .models import SwapParams, SwapState, SwapStatus

__all__ = ["SwapEngine", "SwapError", "SwapParams", "SwapState", "SwapStatus"]
