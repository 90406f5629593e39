"""
Transaction ledger + WAC valuation.

This package is intentionally split into:
- models: the validated transaction record shape
- sorter: the total order every consumer of the ledger agrees on
- pnl: pure functions (no store dependency) for deterministic testing
"""

from .models import EDITABLE_FIELDS, Transaction, TxType, is_local_pending_id, new_local_pending_id
from .pnl import ValuationResult, PortfolioValuation, WacState, apply_wac_step, valuate, valuate_portfolio
from .sorter import ledger_sort_key, sort_transactions

__all__ = [
    "EDITABLE_FIELDS",
    "Transaction",
    "TxType",
    "is_local_pending_id",
    "new_local_pending_id",
    "ValuationResult",
    "PortfolioValuation",
    "WacState",
    "apply_wac_step",
    "valuate",
    "valuate_portfolio",
    "ledger_sort_key",
    "sort_transactions",
]
