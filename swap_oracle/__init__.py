"""Swap Oracle - HTLC custody and order reconciliation for BTC atomic swaps."""

__version__ = "0.1.0"

from .orchestrator import SwapOrchestrator, create_orchestrator
from .order_tracker import OrderTracker
from .redemption import RedemptionEngine
from .script_builder import build_htlc
from .secret_vault import SecretVault

__all__ = [
    "SwapOrchestrator",
    "create_orchestrator",
    "OrderTracker",
    "RedemptionEngine",
    "SecretVault",
    "build_htlc",
]
