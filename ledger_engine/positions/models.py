from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from ledger_engine.common.errors import InvalidPositionTransition
from ledger_engine.common.timeutils import isoformat_utc, parse_optional_timestamp, utc_now

POSITION_SCHEMA_VERSION = 1


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class PositionEvent(str, Enum):
    FIRST_BUY = "FIRST_BUY"
    SIZE_NONZERO = "SIZE_NONZERO"
    SIZE_ZERO = "SIZE_ZERO"


# Allowed transitions (state, event) -> new state. `None` is "no position yet".
# CLOSED has no outgoing edges: a later buy opens a new episode with a new id.
_TRANSITIONS: Dict[Tuple[Optional[PositionStatus], PositionEvent], PositionStatus] = {
    (None, PositionEvent.FIRST_BUY): PositionStatus.OPEN,
    (PositionStatus.OPEN, PositionEvent.SIZE_NONZERO): PositionStatus.OPEN,
    (PositionStatus.OPEN, PositionEvent.SIZE_ZERO): PositionStatus.CLOSED,
}


def next_status(current: Optional[PositionStatus], event: PositionEvent) -> PositionStatus:
    key = (current, PositionEvent(event))
    if key not in _TRANSITIONS:
        state = "none" if current is None else current.value
        allowed = sorted({e.value for (s, e) in _TRANSITIONS if s == current})
        raise InvalidPositionTransition(
            f"Invalid position transition: state={state} event={PositionEvent(event).value}. "
            f"Allowed events from {state}: {allowed}"
        )
    return _TRANSITIONS[key]


def _num(v: Any) -> float:
    try:
        return float(v or 0.0)
    except (TypeError, ValueError):
        return 0.0


@dataclass(slots=True)
class Position:
    """
    One holding episode for a single (user, asset).

    Persisted path:
      positions/{id}

    Invariants:
    - current_size == 0 <=> status == closed (outside the instant between
      creation and the first applied buy)
    - total_cost / avg_entry_price are 0 whenever current_size is 0
    - transaction_ids is ordered and duplicate-free
    """

    user_id: str
    asset: str
    id: Optional[str] = None
    status: PositionStatus = PositionStatus.OPEN

    current_size: float = 0.0
    total_cost: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl_abs: float = 0.0
    total_buy_amount: float = 0.0

    transaction_ids: list[str] = field(default_factory=list)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    schema_version: int = POSITION_SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.asset = (self.asset or "").strip().upper()
        self.status = PositionStatus(self.status)

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    def add_transaction_id(self, tx_id: Optional[str]) -> None:
        if tx_id and tx_id not in self.transaction_ids:
            self.transaction_ids.append(tx_id)

    def read_model(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "current_size": self.current_size,
            "total_cost": self.total_cost,
            "avg_entry_price": self.avg_entry_price,
            "realized_pnl_abs": self.realized_pnl_abs,
            "transactionIds": list(self.transaction_ids),
        }

    def to_record(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "asset": self.asset,
            "status": self.status.value,
            "current_size": self.current_size,
            "total_cost": self.total_cost,
            "avg_entry_price": self.avg_entry_price,
            "realized_pnl_abs": self.realized_pnl_abs,
            "total_buy_amount": self.total_buy_amount,
            "transactionIds": list(self.transaction_ids),
            "createdAt": isoformat_utc(self.created_at),
            "updatedAt": isoformat_utc(self.updated_at),
            "closedAt": isoformat_utc(self.closed_at),
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any], *, position_id: Optional[str] = None) -> "Position":
        r = dict(record)
        ids = r.get("transactionIds")
        return cls(
            id=position_id if position_id is not None else r.get("id"),
            user_id=str(r.get("userId") or r.get("user_id") or ""),
            asset=str(r.get("asset") or ""),
            status=PositionStatus(str(r.get("status") or "open")),
            current_size=_num(r.get("current_size")),
            total_cost=_num(r.get("total_cost")),
            avg_entry_price=_num(r.get("avg_entry_price")),
            realized_pnl_abs=_num(r.get("realized_pnl_abs")),
            total_buy_amount=_num(r.get("total_buy_amount")),
            transaction_ids=[str(x) for x in ids] if isinstance(ids, (list, tuple)) else [],
            created_at=parse_optional_timestamp(r.get("createdAt")) or utc_now(),
            updated_at=parse_optional_timestamp(r.get("updatedAt")) or utc_now(),
            closed_at=parse_optional_timestamp(r.get("closedAt")),
            schema_version=int(r.get("schemaVersion") or POSITION_SCHEMA_VERSION),
        )
