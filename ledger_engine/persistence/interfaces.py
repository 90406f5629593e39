from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ledger_engine.positions.models import Position

# Durable store snapshots are delivered as (doc_id, record) pairs.
SnapshotRows = Sequence[tuple[str, Mapping[str, Any]]]
Unsubscribe = Callable[[], None]


class DurableTransactionStore(ABC):
    """
    Remote keyed store for transaction records (source of truth when reachable).

    Contract:
    - `insert` assigns and returns a durable id. Durable ids never start with
      the local-pending prefix.
    - Every method may raise on connectivity loss; callers own timeouts.
    - `subscribe` delivers the full matching set on each change via `on_data`
      and connectivity failures via `on_error`.
    """

    @abstractmethod
    async def insert(self, record: Mapping[str, Any]) -> str: ...

    @abstractmethod
    async def update(self, tx_id: str, partial: Mapping[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, tx_id: str) -> None: ...

    @abstractmethod
    async def query_by_user_and_asset(self, user_id: str, asset: str) -> list[tuple[str, dict[str, Any]]]: ...

    @abstractmethod
    async def query_by_user(self, user_id: str) -> list[tuple[str, dict[str, Any]]]: ...

    @abstractmethod
    def subscribe(
        self,
        user_id: str,
        on_data: Callable[[SnapshotRows], None],
        on_error: Callable[[BaseException], None],
    ) -> Unsubscribe: ...


class PositionStore(ABC):
    """
    Keyed store for Position aggregates.

    Contract:
    - `create` assigns an id and returns the stored position.
    - `find_open` returns the single open episode for (user, asset), if any.
    - `find_latest` returns the most recently created episode for (user, asset).
    """

    @abstractmethod
    async def get(self, position_id: str) -> Optional[Position]: ...

    @abstractmethod
    async def create(self, position: Position) -> Position: ...

    @abstractmethod
    async def save(self, position: Position) -> None: ...

    @abstractmethod
    async def find_open(self, user_id: str, asset: str) -> Optional[Position]: ...

    @abstractmethod
    async def find_latest(self, user_id: str, asset: str) -> Optional[Position]: ...

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[Position]: ...


class LocalCache(ABC):
    """
    Synchronous per-user key-value cache (the degraded-mode fallback).

    Values are JSON-compatible objects. `get` returns None for missing keys.
    """

    @abstractmethod
    def get(self, key: str) -> Any: ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def remove(self, key: str) -> None: ...


class PriceLookup(Protocol):
    """
    Current-price source consumed by callers of `valuate`, never by the engine.

    Returns {"price": float, "change24h": float | None}.
    """

    def price_of(self, asset: str) -> Mapping[str, Any]: ...
