from __future__ import annotations

import copy
import itertools
from typing import Any, Callable, Mapping, Optional

from ledger_engine.common.errors import TransactionNotFoundError
from ledger_engine.positions.models import Position, PositionStatus

from .interfaces import DurableTransactionStore, PositionStore, SnapshotRows, Unsubscribe


class InMemoryTransactionStore(DurableTransactionStore):
    """
    Durable-store stand-in for local runs and tests.

    Ids are drawn from the `tx_` namespace. Subscribers receive the user's full
    set after every mutation.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._subscribers: dict[int, tuple[str, Callable[[SnapshotRows], None], Callable[[BaseException], None]]] = {}
        self._sub_ids = itertools.count(1)

    def _user_rows(self, user_id: str) -> list[tuple[str, dict[str, Any]]]:
        return [
            (doc_id, copy.deepcopy(rec))
            for doc_id, rec in sorted(self.records.items())
            if rec.get("userId") == user_id
        ]

    def _notify(self, user_id: Optional[str]) -> None:
        for uid, on_data, _on_error in list(self._subscribers.values()):
            if user_id is None or uid == user_id:
                on_data(self._user_rows(uid))

    async def insert(self, record: Mapping[str, Any]) -> str:
        doc_id = f"tx_{next(self._ids):06d}"
        self.records[doc_id] = copy.deepcopy(dict(record))
        self._notify(record.get("userId"))
        return doc_id

    async def update(self, tx_id: str, partial: Mapping[str, Any]) -> None:
        if tx_id not in self.records:
            raise TransactionNotFoundError(tx_id)
        self.records[tx_id].update(copy.deepcopy(dict(partial)))
        self._notify(self.records[tx_id].get("userId"))

    async def delete(self, tx_id: str) -> None:
        rec = self.records.pop(tx_id, None)
        if rec is not None:
            self._notify(rec.get("userId"))

    async def query_by_user_and_asset(self, user_id: str, asset: str) -> list[tuple[str, dict[str, Any]]]:
        sym = str(asset).upper()
        return [(doc_id, rec) for doc_id, rec in self._user_rows(user_id) if rec.get("asset") == sym]

    async def query_by_user(self, user_id: str) -> list[tuple[str, dict[str, Any]]]:
        return self._user_rows(user_id)

    def subscribe(
        self,
        user_id: str,
        on_data: Callable[[SnapshotRows], None],
        on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        sub_id = next(self._sub_ids)
        self._subscribers[sub_id] = (user_id, on_data, on_error)
        on_data(self._user_rows(user_id))

        def _unsubscribe() -> None:
            self._subscribers.pop(sub_id, None)

        return _unsubscribe

    def fail_subscribers(self, exc: BaseException) -> None:
        """Signal a connectivity loss to every live subscription."""
        for _uid, _on_data, on_error in list(self._subscribers.values()):
            on_error(exc)


class InMemoryPositionStore(PositionStore):
    def __init__(self) -> None:
        self.positions: dict[str, Position] = {}
        self._ids = itertools.count(1)

    async def get(self, position_id: str) -> Optional[Position]:
        p = self.positions.get(position_id)
        return copy.deepcopy(p) if p is not None else None

    async def create(self, position: Position) -> Position:
        position.id = f"pos_{next(self._ids):06d}"
        self.positions[position.id] = copy.deepcopy(position)
        return position

    async def save(self, position: Position) -> None:
        if not position.id:
            raise ValueError("position.id is required to save")
        self.positions[position.id] = copy.deepcopy(position)

    def _matching(self, user_id: str, asset: str) -> list[Position]:
        sym = str(asset).upper()
        return [p for p in self.positions.values() if p.user_id == user_id and p.asset == sym]

    async def find_open(self, user_id: str, asset: str) -> Optional[Position]:
        found = [p for p in self._matching(user_id, asset) if p.status is PositionStatus.OPEN]
        return copy.deepcopy(max(found, key=lambda p: (p.created_at, p.id or ""))) if found else None

    async def find_latest(self, user_id: str, asset: str) -> Optional[Position]:
        found = self._matching(user_id, asset)
        return copy.deepcopy(max(found, key=lambda p: (p.created_at, p.id or ""))) if found else None

    async def list_for_user(self, user_id: str) -> list[Position]:
        return [copy.deepcopy(p) for p in self.positions.values() if p.user_id == user_id]
