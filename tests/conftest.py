from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from ledger_engine.common.config import FacadeConfig
from ledger_engine.common.errors import StoreUnavailableError
from ledger_engine.persistence.local_cache import InMemoryLocalCache
from ledger_engine.persistence.memory import InMemoryPositionStore, InMemoryTransactionStore
from ledger_engine.positions.lifecycle import PositionLifecycleManager
from ledger_engine.store.facade import TransactionStoreFacade


class FlakyTransactionStore(InMemoryTransactionStore):
    """
    In-memory durable store with switchable connectivity.

    - online=False: every call raises StoreUnavailableError
    - delay_s>0: every call sleeps first (used to lose the write-timeout race)
    """

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self.delay_s = 0.0
        self.calls: list[str] = []

    async def _gate(self, op: str) -> None:
        self.calls.append(op)
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if not self.online:
            raise StoreUnavailableError(f"durable store offline ({op})")

    async def insert(self, record: Mapping[str, Any]) -> str:
        await self._gate("insert")
        return await super().insert(record)

    async def update(self, tx_id: str, partial: Mapping[str, Any]) -> None:
        await self._gate("update")
        await super().update(tx_id, partial)

    async def delete(self, tx_id: str) -> None:
        await self._gate("delete")
        await super().delete(tx_id)

    async def query_by_user_and_asset(self, user_id: str, asset: str) -> list[tuple[str, dict[str, Any]]]:
        await self._gate("query")
        return await super().query_by_user_and_asset(user_id, asset)

    async def query_by_user(self, user_id: str) -> list[tuple[str, dict[str, Any]]]:
        await self._gate("query")
        return await super().query_by_user(user_id)


@pytest.fixture()
def durable() -> FlakyTransactionStore:
    return FlakyTransactionStore()


@pytest.fixture()
def positions() -> InMemoryPositionStore:
    return InMemoryPositionStore()


@pytest.fixture()
def cache() -> InMemoryLocalCache:
    return InMemoryLocalCache()


@pytest.fixture()
def facade(durable: FlakyTransactionStore, positions: InMemoryPositionStore, cache: InMemoryLocalCache) -> TransactionStoreFacade:
    return TransactionStoreFacade(
        durable=durable,
        cache=cache,
        lifecycle=PositionLifecycleManager(positions),
        user_id="u1",
        config=FacadeConfig(write_timeout_s=0.2, resync_on_recovery=False),
    )
