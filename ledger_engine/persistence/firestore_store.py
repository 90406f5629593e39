from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

from ledger_engine.common.logging import log_event
from ledger_engine.positions.models import Position, PositionStatus

from .firestore_retry import with_firestore_retry
from .interfaces import DurableTransactionStore, PositionStore, SnapshotRows, Unsubscribe

logger = logging.getLogger(__name__)


def _rows(snapshots: Any) -> list[tuple[str, dict[str, Any]]]:
    out: list[tuple[str, dict[str, Any]]] = []
    for snap in snapshots:
        data = snap.to_dict() or {}
        out.append((str(snap.id), dict(data)))
    return out


class FirestoreTransactionStore(DurableTransactionStore):
    """
    Durable transaction store backed by Firestore.

    Storage:
      {collection}/{docId}   (default collection: "transactions")

    The Admin SDK is blocking; every call runs in a worker thread and
    transient errors are retried before surfacing.
    """

    def __init__(self, *, db: Any, collection_name: str = "transactions") -> None:
        self._db = db
        self._collection_name = str(collection_name).strip() or "transactions"

    def _col(self):
        return self._db.collection(self._collection_name)

    async def insert(self, record: Mapping[str, Any]) -> str:
        # Pre-allocate the doc id so retried writes stay idempotent (set, not add).
        ref = self._col().document()
        payload = dict(record)
        await asyncio.to_thread(with_firestore_retry, lambda: ref.set(payload))
        return str(ref.id)

    async def update(self, tx_id: str, partial: Mapping[str, Any]) -> None:
        ref = self._col().document(str(tx_id))
        payload = dict(partial)
        await asyncio.to_thread(with_firestore_retry, lambda: ref.update(payload))

    async def delete(self, tx_id: str) -> None:
        ref = self._col().document(str(tx_id))
        await asyncio.to_thread(with_firestore_retry, lambda: ref.delete())

    async def query_by_user_and_asset(self, user_id: str, asset: str) -> list[tuple[str, dict[str, Any]]]:
        q = self._col().where("userId", "==", str(user_id)).where("asset", "==", str(asset).upper())
        snaps = await asyncio.to_thread(with_firestore_retry, lambda: list(q.stream()))
        return _rows(snaps)

    async def query_by_user(self, user_id: str) -> list[tuple[str, dict[str, Any]]]:
        q = self._col().where("userId", "==", str(user_id))
        snaps = await asyncio.to_thread(with_firestore_retry, lambda: list(q.stream()))
        return _rows(snaps)

    def subscribe(
        self,
        user_id: str,
        on_data: Callable[[SnapshotRows], None],
        on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        """
        Live query over the user's transactions.

        Callbacks fire on the SDK's watch thread; callers bridge them onto
        their event loop.
        """
        q = self._col().where("userId", "==", str(user_id))

        def _on_snapshot(docs: Any, _changes: Any, _read_time: Any) -> None:
            try:
                rows = _rows(docs)
            except Exception as e:
                log_event(logger, "firestore.snapshot_failed", severity="WARNING", user_id=user_id, error=str(e))
                on_error(e)
                return
            on_data(rows)

        watch = q.on_snapshot(_on_snapshot)
        return watch.unsubscribe


class FirestorePositionStore(PositionStore):
    """
    Position aggregates backed by Firestore.

    Storage:
      {collection}/{docId}   (default collection: "positions")
    """

    def __init__(self, *, db: Any, collection_name: str = "positions") -> None:
        self._db = db
        self._collection_name = str(collection_name).strip() or "positions"

    def _col(self):
        return self._db.collection(self._collection_name)

    async def get(self, position_id: str) -> Optional[Position]:
        ref = self._col().document(str(position_id))
        snap = await asyncio.to_thread(with_firestore_retry, lambda: ref.get())
        if not snap.exists:
            return None
        return Position.from_record(snap.to_dict() or {}, position_id=str(snap.id))

    async def create(self, position: Position) -> Position:
        ref = self._col().document()
        position.id = str(ref.id)
        payload = position.to_record()
        await asyncio.to_thread(with_firestore_retry, lambda: ref.set(payload))
        return position

    async def save(self, position: Position) -> None:
        if not position.id:
            raise ValueError("position.id is required to save")
        ref = self._col().document(str(position.id))
        payload = position.to_record()
        await asyncio.to_thread(with_firestore_retry, lambda: ref.set(payload))

    async def _query(self, user_id: str, asset: Optional[str] = None, status: Optional[str] = None) -> list[Position]:
        q = self._col().where("userId", "==", str(user_id))
        if asset is not None:
            q = q.where("asset", "==", str(asset).upper())
        if status is not None:
            q = q.where("status", "==", status)
        snaps = await asyncio.to_thread(with_firestore_retry, lambda: list(q.stream()))
        return [Position.from_record(data, position_id=doc_id) for doc_id, data in _rows(snaps)]

    async def find_open(self, user_id: str, asset: str) -> Optional[Position]:
        found = await self._query(user_id, asset, PositionStatus.OPEN.value)
        if not found:
            return None
        # One open episode per (user, asset) is expected; prefer the newest if that ever drifts.
        return max(found, key=lambda p: p.created_at)

    async def find_latest(self, user_id: str, asset: str) -> Optional[Position]:
        found = await self._query(user_id, asset)
        if not found:
            return None
        return max(found, key=lambda p: p.created_at)

    async def list_for_user(self, user_id: str) -> list[Position]:
        return await self._query(user_id)
