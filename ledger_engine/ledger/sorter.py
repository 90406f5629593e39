from __future__ import annotations

from datetime import datetime
from typing import Iterable, Tuple

from ledger_engine.common.timeutils import UTC

from .models import Transaction, TxType

_MISSING_CREATED_AT = datetime.min.replace(tzinfo=UTC)


def ledger_sort_key(tx: Transaction) -> Tuple[datetime, datetime, int, str]:
    # Deterministic ordering, in priority:
    #   economic date -> persistence time -> buy before sell -> id.
    # Inventory must exist before it can be disposed of, hence buy first on ties.
    return (
        tx.date,
        tx.created_at if tx.created_at is not None else _MISSING_CREATED_AT,
        0 if tx.type is TxType.BUY else 1,
        "" if tx.id is None else str(tx.id),
    )


def sort_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    """
    Impose a total, reproducible order over one asset's transactions.

    Pure: the input is not mutated. Any permutation of the same set yields the
    same output order.
    """
    return sorted(transactions, key=ledger_sort_key)
