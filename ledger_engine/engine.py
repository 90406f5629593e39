"""
Engine wiring: one façade (and lifecycle manager) per user over shared stores.

Entry points:
- `build_engine(config)` for Firestore-backed deployments
- `build_in_memory_engine(config)` for local runs and tests
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from ledger_engine.common.config import EngineConfig
from ledger_engine.common.errors import PositionNotFoundError
from ledger_engine.common.logging import init_structured_logging, log_event
from ledger_engine.ledger.models import Transaction
from ledger_engine.ledger.pnl import PortfolioValuation, ValuationResult, valuate, valuate_portfolio
from ledger_engine.persistence.interfaces import DurableTransactionStore, LocalCache, PositionStore, PriceLookup
from ledger_engine.persistence.local_cache import FileLocalCache, InMemoryLocalCache
from ledger_engine.positions.lifecycle import DurableTransactionReader, PositionLifecycleManager
from ledger_engine.positions.models import Position
from ledger_engine.store.facade import ResyncReport, TransactionStoreFacade

logger = logging.getLogger(__name__)

CacheFactory = Callable[[str], LocalCache]


def _price_from(quote: Mapping[str, Any]) -> float:
    px = quote.get("price") if isinstance(quote, Mapping) else None
    return float(px) if isinstance(px, (int, float)) and not isinstance(px, bool) else 0.0


class LedgerEngine:
    def __init__(
        self,
        *,
        config: EngineConfig,
        durable: DurableTransactionStore,
        positions: PositionStore,
        cache_factory: CacheFactory,
        price_lookup: Optional[PriceLookup] = None,
    ) -> None:
        self.config = config
        self.durable = durable
        self.positions = positions
        self.price_lookup = price_lookup
        self._cache_factory = cache_factory
        self._facades: dict[str, TransactionStoreFacade] = {}

    def facade_for(self, user_id: str) -> TransactionStoreFacade:
        facade = self._facades.get(user_id)
        if facade is None:
            facade = TransactionStoreFacade(
                durable=self.durable,
                cache=self._cache_factory(user_id),
                lifecycle=PositionLifecycleManager(self.positions),
                user_id=user_id,
                config=self.config.facade,
            )
            self._facades[user_id] = facade
        return facade

    async def add_transaction(self, user_id: str, tx: Union[Transaction, Mapping[str, Any]]) -> Transaction:
        return await self.facade_for(user_id).add_transaction(tx)

    async def update_transaction(self, user_id: str, tx: Transaction) -> Transaction:
        return await self.facade_for(user_id).update_transaction(tx)

    async def delete_transaction(self, user_id: str, tx_id: str) -> bool:
        return await self.facade_for(user_id).delete_transaction(tx_id)

    async def get_transactions(self, user_id: str, asset: Optional[str] = None) -> list[Transaction]:
        return await self.facade_for(user_id).get_transactions(asset)

    async def resync(self, user_id: str) -> ResyncReport:
        return await self.facade_for(user_id).resync()

    async def recalculate_position(self, position_id: str) -> Optional[Position]:
        position = await self.positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return await self.facade_for(position.user_id).lifecycle.recalculate_position(position_id)

    async def recalculate_all_positions(self, user_id: str) -> list[Position]:
        return await self.facade_for(user_id).lifecycle.recalculate_all_positions(user_id)

    async def repair_from_durable(self, user_id: str) -> list[Position]:
        """
        Rebuild the user's positions from the durable store alone.

        Used by operators when a client cache cannot be trusted; local-pending
        writes the store never received are not counted.
        """
        lifecycle = PositionLifecycleManager(self.positions, DurableTransactionReader(self.durable))
        return await lifecycle.recalculate_all_positions(user_id)

    async def valuate_asset(self, user_id: str, asset: str, current_price: Optional[float] = None) -> ValuationResult:
        """Value the user's merged ledger for one asset; the price falls back to the lookup."""
        if current_price is None:
            if self.price_lookup is None:
                raise ValueError("current_price is required when no price lookup is configured")
            current_price = _price_from(self.price_lookup.price_of(asset))
        return valuate(await self.get_transactions(user_id, asset), current_price)

    async def valuate_portfolio(
        self,
        user_id: str,
        price_map: Optional[Mapping[str, float]] = None,
    ) -> PortfolioValuation:
        transactions = await self.get_transactions(user_id)
        if price_map is None:
            price_map = self._lookup_prices({tx.asset for tx in transactions})
        return valuate_portfolio(transactions, price_map)

    def _lookup_prices(self, assets: Iterable[str]) -> dict[str, float]:
        if self.price_lookup is None:
            return {}
        return {asset: _price_from(self.price_lookup.price_of(asset)) for asset in sorted(assets)}

    async def close(self) -> None:
        for facade in self._facades.values():
            facade.stop_live_sync()
            await facade.drain()


def build_in_memory_engine(
    config: Optional[EngineConfig] = None,
    *,
    price_lookup: Optional[PriceLookup] = None,
) -> LedgerEngine:
    from ledger_engine.persistence.memory import InMemoryPositionStore, InMemoryTransactionStore

    cfg = config or EngineConfig()
    return LedgerEngine(
        config=cfg,
        durable=InMemoryTransactionStore(),
        positions=InMemoryPositionStore(),
        cache_factory=lambda _user_id: InMemoryLocalCache(),
        price_lookup=price_lookup,
    )


def build_engine(
    config: Optional[EngineConfig] = None,
    *,
    db: Any = None,
    price_lookup: Optional[PriceLookup] = None,
    init_logging: bool = True,
) -> LedgerEngine:
    """
    Firestore-backed engine. `db` defaults to the Firebase Admin client
    (subject to the local emulator guard).
    """
    from ledger_engine.persistence.firebase_client import get_firestore_client
    from ledger_engine.persistence.firestore_store import FirestorePositionStore, FirestoreTransactionStore

    cfg = config or EngineConfig.from_env()
    if init_logging:
        init_structured_logging(service=cfg.service_name, env=cfg.env, level=cfg.log_level)

    client = db if db is not None else get_firestore_client(project_id=cfg.firebase_project_id)
    engine = LedgerEngine(
        config=cfg,
        durable=FirestoreTransactionStore(db=client, collection_name=cfg.transactions_collection),
        positions=FirestorePositionStore(db=client, collection_name=cfg.positions_collection),
        cache_factory=lambda user_id: FileLocalCache(user_id=user_id, root=cfg.local_cache_root),
        price_lookup=price_lookup,
    )
    log_event(logger, "engine.started", **cfg.to_dict())
    return engine
