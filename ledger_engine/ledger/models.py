from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from ledger_engine.common.errors import ImmutableFieldError, InvalidTransactionError
from ledger_engine.common.timeutils import isoformat_utc, parse_optional_timestamp, parse_timestamp

TRANSACTION_SCHEMA_VERSION = 2
LOCAL_ID_PREFIX = "local_"

# Fields a user may correct after persistence. Any change here forces a full position replay.
EDITABLE_FIELDS: frozenset[str] = frozenset({"price", "date", "notes"})

# Fields owned by the engine rather than the user; ignored when diffing an update.
_ENGINE_FIELDS: frozenset[str] = frozenset({"id", "position_id", "entry_index", "created_at", "schema_version"})


class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"


def new_local_pending_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def is_local_pending_id(tx_id: Optional[str]) -> bool:
    return bool(tx_id) and str(tx_id).startswith(LOCAL_ID_PREFIX)


def _parse_type(v: Any) -> TxType:
    if isinstance(v, TxType):
        return v
    s = str(v or "").strip().lower()
    try:
        return TxType(s)
    except ValueError:
        raise InvalidTransactionError(f"type must be 'buy' or 'sell' (got {v!r})") from None


def _parse_number(v: Any, field: str) -> float:
    if isinstance(v, bool) or v is None:
        raise InvalidTransactionError(f"{field} must be a number")
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise InvalidTransactionError(f"{field} must be a number (got {v!r})") from None
    if not math.isfinite(f):
        raise InvalidTransactionError(f"{field} must be finite")
    return f


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    One buy/sell intent for a single (user, asset).

    Persisted path:
      transactions/{id}

    Notes:
    - `amount` is positive; direction is expressed via `type`.
    - `price` may be None while pending enrichment (valued as 0 by the WAC arithmetic).
    - `date` is the economic effective date; `created_at` only breaks ties.
    - Once persisted the record is immutable except through `amend()`.
    """

    user_id: str
    asset: str
    type: TxType
    amount: float
    price: Optional[float]
    date: datetime

    id: Optional[str] = None
    created_at: Optional[datetime] = None
    position_id: Optional[str] = None
    entry_index: Optional[int] = None
    notes: str = ""
    schema_version: int = TRANSACTION_SCHEMA_VERSION

    def __post_init__(self) -> None:
        if not (self.user_id or "").strip():
            raise InvalidTransactionError("user_id is required")

        sym = (self.asset or "").strip().upper()
        if not sym:
            raise InvalidTransactionError("asset is required")
        object.__setattr__(self, "asset", sym)

        object.__setattr__(self, "type", _parse_type(self.type))

        amount = _parse_number(self.amount, "amount")
        if amount <= 0:
            raise InvalidTransactionError("amount must be a positive number")
        object.__setattr__(self, "amount", amount)

        if self.price is not None:
            price = _parse_number(self.price, "price")
            if price < 0:
                raise InvalidTransactionError("price must be >= 0")
            object.__setattr__(self, "price", price)

        try:
            object.__setattr__(self, "date", parse_timestamp(self.date))
            object.__setattr__(self, "created_at", parse_optional_timestamp(self.created_at))
        except (TypeError, ValueError) as e:
            raise InvalidTransactionError(str(e)) from e

        if self.entry_index is not None:
            if isinstance(self.entry_index, bool) or int(self.entry_index) < 1:
                raise InvalidTransactionError("entry_index must be >= 1")
            object.__setattr__(self, "entry_index", int(self.entry_index))

        object.__setattr__(self, "notes", str(self.notes or ""))

    @property
    def is_buy(self) -> bool:
        return self.type is TxType.BUY

    @property
    def effective_price(self) -> float:
        return 0.0 if self.price is None else float(self.price)

    @property
    def is_local_pending(self) -> bool:
        return is_local_pending_id(self.id)

    def with_id(self, tx_id: Optional[str]) -> "Transaction":
        return replace(self, id=tx_id)

    def with_position(self, position_id: Optional[str], entry_index: Optional[int]) -> "Transaction":
        return replace(self, position_id=position_id, entry_index=entry_index)

    def with_created_at(self, created_at: datetime) -> "Transaction":
        return replace(self, created_at=created_at)

    def amend(self, **changes: Any) -> "Transaction":
        """
        Explicit correction of user-editable fields (price, date, notes).
        """
        illegal = sorted(set(changes) - EDITABLE_FIELDS)
        if illegal:
            raise ImmutableFieldError(f"fields are not editable after persistence: {illegal}")
        return replace(self, **changes)

    def changed_fields(self, other: "Transaction") -> set[str]:
        """User-facing fields whose value differs between `self` and `other`."""
        out: set[str] = set()
        for name in self.__dataclass_fields__:
            if name in _ENGINE_FIELDS:
                continue
            if getattr(self, name) != getattr(other, name):
                out.add(name)
        return out

    def content_key(self) -> tuple[Any, ...]:
        """
        Identity by content, independent of id namespace.

        A local-pending copy and its late durable twin share this key.
        """
        return (
            self.user_id,
            self.asset,
            self.type.value,
            self.amount,
            self.price,
            isoformat_utc(self.date),
            isoformat_utc(self.created_at),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "asset": self.asset,
            "type": self.type.value,
            "amount": self.amount,
            "price": self.price,
            "date": isoformat_utc(self.date),
            "createdAt": isoformat_utc(self.created_at),
            "positionId": self.position_id,
            "entryIndex": self.entry_index,
            "notes": self.notes,
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any], *, tx_id: Optional[str] = None) -> "Transaction":
        if not isinstance(record, Mapping):
            raise InvalidTransactionError("transaction record must be a mapping")
        r = dict(record)
        return cls(
            id=tx_id if tx_id is not None else r.get("id"),
            user_id=str(r.get("userId") or r.get("user_id") or ""),
            asset=str(r.get("asset") or ""),
            type=r.get("type"),
            amount=r.get("amount"),
            price=r.get("price"),
            date=r.get("date"),
            created_at=r.get("createdAt", r.get("created_at")),
            position_id=r.get("positionId", r.get("position_id")),
            entry_index=r.get("entryIndex", r.get("entry_index")),
            notes=str(r.get("notes") or r.get("memo") or ""),
            schema_version=int(r.get("schemaVersion") or TRANSACTION_SCHEMA_VERSION),
        )
