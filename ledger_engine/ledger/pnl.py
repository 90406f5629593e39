"""
P&L valuation over a single asset's transaction ledger.

Choice: moving Weighted-Average-Cost (WAC).

- Every buy re-blends one average unit cost across all held units.
- Sells realize (price - avg_cost) * amount and remove avg_cost * amount from
  the cost basis; the average itself is unchanged by disposal.
- A sell with no inventory still executes against avg_cost = 0 and drives
  holdings negative (short / orphan sell). It is valued, not rejected.
- A buy that leaves holdings at or below zero (covering part of a short)
  resets avg_cost to 0; there is no long inventory to average over.
- The fold never clamps mid-stream. Snapping to flat happens once, on the
  final state.

Everything here is pure: no store access, no clock.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .models import Transaction, TxType
from .sorter import sort_transactions

# Holdings within this distance of zero are treated as fully liquidated.
ZERO_EPSILON = 1e-9


@dataclass(slots=True)
class WacState:
    qty: float = 0.0
    cost: float = 0.0
    avg_cost: float = 0.0
    realized: float = 0.0

    def snap_if_flat(self) -> bool:
        """Zero qty/cost/avg_cost when |qty| <= epsilon. Returns True when snapped."""
        if abs(self.qty) <= ZERO_EPSILON:
            self.qty = 0.0
            self.cost = 0.0
            self.avg_cost = 0.0
            return True
        return False


def apply_wac_step(state: WacState, tx: Transaction) -> WacState:
    """
    Apply one transaction's WAC arithmetic to `state` in place.

    Shared by valuation, incremental position updates and full replay so the
    three can never disagree.
    """
    amount = float(tx.amount)
    price = tx.effective_price

    if tx.type is TxType.BUY:
        state.cost += amount * price
        state.qty += amount
        state.avg_cost = state.cost / state.qty if state.qty > 0 else 0.0
    else:
        state.realized += (price - state.avg_cost) * amount
        state.cost -= state.avg_cost * amount
        state.qty -= amount
    return state


@dataclass(frozen=True, slots=True)
class ValuationResult:
    holdings: float
    avg_buy_price: float
    total_cost: float
    realized_pnl: float
    unrealized_pnl: float
    total_pnl: float

    def to_dict(self) -> dict[str, float]:
        return {
            "holdings": self.holdings,
            "avgBuyPrice": self.avg_buy_price,
            "totalCost": self.total_cost,
            "realizedPnL": self.realized_pnl,
            "unrealizedPnL": self.unrealized_pnl,
            "totalPnL": self.total_pnl,
        }


ZERO_VALUATION = ValuationResult(
    holdings=0.0,
    avg_buy_price=0.0,
    total_cost=0.0,
    realized_pnl=0.0,
    unrealized_pnl=0.0,
    total_pnl=0.0,
)


def valuate(transactions: Iterable[Transaction], current_price: float) -> ValuationResult:
    """
    Value one asset's transactions at `current_price`.

    Transactions are sorted with the ledger order first, so the result is
    identical for any permutation of the same set.
    """
    ordered = sort_transactions(transactions)
    if not ordered:
        return ZERO_VALUATION

    state = WacState()
    for tx in ordered:
        apply_wac_step(state, tx)
    state.snap_if_flat()

    unrealized = state.qty * float(current_price) - state.cost
    return ValuationResult(
        holdings=state.qty,
        avg_buy_price=state.avg_cost,
        total_cost=state.cost,
        realized_pnl=state.realized,
        unrealized_pnl=unrealized,
        total_pnl=state.realized + unrealized,
    )


@dataclass(frozen=True, slots=True)
class PortfolioValuation:
    per_asset: dict[str, ValuationResult] = field(default_factory=dict)
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "assets": {k: v.to_dict() for k, v in sorted(self.per_asset.items())},
            "realizedPnL": self.realized_pnl,
            "unrealizedPnL": self.unrealized_pnl,
            "totalPnL": self.total_pnl,
        }


def valuate_portfolio(
    transactions: Iterable[Transaction],
    price_map: Mapping[str, float],
) -> PortfolioValuation:
    """
    Aggregate per-asset WAC valuations into portfolio totals.

    - price_map: {ASSET -> current price}. Assets absent from the map are valued at 0.
    """
    by_asset: dict[str, list[Transaction]] = defaultdict(list)
    for tx in transactions:
        by_asset[tx.asset].append(tx)

    per_asset: dict[str, ValuationResult] = {}
    realized = 0.0
    unrealized = 0.0
    for asset in sorted(by_asset):
        px = price_map.get(asset)
        res = valuate(by_asset[asset], float(px) if isinstance(px, (int, float)) else 0.0)
        per_asset[asset] = res
        realized += res.realized_pnl
        unrealized += res.unrealized_pnl

    return PortfolioValuation(
        per_asset=per_asset,
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        total_pnl=realized + unrealized,
    )
