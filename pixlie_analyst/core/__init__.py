"""
Core engine: conversation ledger, analysis loop and objective coordinator.
"""

from .coordinator import ObjectiveCoordinator
from .ledger import ConversationLedger, LedgerEvent, Subscription
from .loop import AnalysisLoop
from .state import AnalysisState, LoopLimits

__all__ = [
    "ObjectiveCoordinator",
    "ConversationLedger",
    "LedgerEvent",
    "Subscription",
    "AnalysisLoop",
    "AnalysisState",
    "LoopLimits",
]
