from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

from ledger_engine.common.errors import PositionNotFoundError
from ledger_engine.common.logging import log_event
from ledger_engine.common.timeutils import utc_now
from ledger_engine.ledger.models import Transaction
from ledger_engine.ledger.pnl import ZERO_EPSILON, WacState, apply_wac_step
from ledger_engine.ledger.sorter import sort_transactions
from ledger_engine.persistence.interfaces import DurableTransactionStore, PositionStore

from .models import Position, PositionEvent, PositionStatus, next_status

logger = logging.getLogger(__name__)


class TransactionReader(Protocol):
    """Read path used by full replay (the façade's merged view in production)."""

    async def list_transactions(self, user_id: str, asset: Optional[str] = None) -> list[Transaction]: ...


class DurableTransactionReader:
    """Reads straight from the durable store, bypassing any local cache."""

    def __init__(self, store: DurableTransactionStore) -> None:
        self._store = store

    async def list_transactions(self, user_id: str, asset: Optional[str] = None) -> list[Transaction]:
        if asset is None:
            rows = await self._store.query_by_user(user_id)
        else:
            rows = await self._store.query_by_user_and_asset(user_id, asset)
        return [Transaction.from_record(rec, tx_id=doc_id) for doc_id, rec in rows]


@dataclass(slots=True)
class ReplayState:
    """Result of folding one asset's full transaction history from zero."""

    current_size: float = 0.0
    total_cost: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl_abs: float = 0.0
    total_buy_amount: float = 0.0
    transaction_ids: list[str] = field(default_factory=list)
    closed_at: Optional[datetime] = None

    @property
    def is_flat(self) -> bool:
        return self.current_size <= ZERO_EPSILON


def replay_position_state(transactions: Iterable[Transaction]) -> ReplayState:
    """
    Fold transactions (in ledger order) into position fields.

    Same arithmetic as `valuate`: no clamping mid-stream, so an orphan sell
    followed by a buy nets out exactly as in the valuation. The final state
    is snapped to flat when holdings are <= epsilon, negative included; a
    Position never carries a short. `closed_at` is the `created_at` of the
    last transaction when the result is flat.
    """
    ordered = sort_transactions(transactions)
    state = WacState()
    out = ReplayState()
    for tx in ordered:
        apply_wac_step(state, tx)
        if tx.is_buy:
            out.total_buy_amount += tx.amount
        if tx.id and tx.id not in out.transaction_ids:
            out.transaction_ids.append(tx.id)

    if state.qty <= ZERO_EPSILON:
        state.qty = 0.0
        state.cost = 0.0
        state.avg_cost = 0.0

    out.current_size = state.qty
    out.total_cost = state.cost
    out.avg_entry_price = state.avg_cost
    out.realized_pnl_abs = state.realized
    if ordered and out.is_flat:
        out.closed_at = ordered[-1].created_at or ordered[-1].date
    return out


def _snap_flat(position: Position) -> None:
    position.current_size = 0.0
    position.total_cost = 0.0
    position.avg_entry_price = 0.0


def apply_new_transaction(position: Position, tx: Transaction) -> Position:
    """
    Incrementally apply one transaction to an open position (in place).

    Pure with respect to storage. Works with local-pending ids; they are
    swapped for durable ids by `replace_transaction_id` after resync.
    """
    if not position.is_open:
        # CLOSED is terminal; this raises InvalidPositionTransition.
        next_status(position.status, PositionEvent.SIZE_NONZERO)

    state = WacState(
        qty=position.current_size,
        cost=position.total_cost,
        avg_cost=position.avg_entry_price,
        realized=position.realized_pnl_abs,
    )
    apply_wac_step(state, tx)

    position.current_size = state.qty
    position.total_cost = state.cost
    position.avg_entry_price = state.avg_cost
    position.realized_pnl_abs = state.realized
    if tx.is_buy:
        position.total_buy_amount += tx.amount
    position.add_transaction_id(tx.id)

    flat = state.qty <= ZERO_EPSILON
    position.status = next_status(position.status, PositionEvent.SIZE_ZERO if flat else PositionEvent.SIZE_NONZERO)
    if flat:
        _snap_flat(position)
        position.closed_at = tx.created_at or tx.date
    else:
        position.closed_at = None
    position.updated_at = utc_now()
    return position


def replace_transaction_id(position: Position, old_id: str, new_id: str) -> bool:
    """
    Swap `old_id` for `new_id` in place, keeping order and uniqueness.

    Returns True when the position changed.
    """
    ids = position.transaction_ids
    if old_id not in ids:
        return False
    if new_id in ids:
        ids.remove(old_id)
    else:
        ids[ids.index(old_id)] = new_id
    position.updated_at = utc_now()
    return True


def _overwrite_from_replay(position: Position, replay: ReplayState) -> Position:
    position.current_size = replay.current_size
    position.total_cost = replay.total_cost
    position.avg_entry_price = replay.avg_entry_price
    position.realized_pnl_abs = replay.realized_pnl_abs
    position.total_buy_amount = replay.total_buy_amount
    position.transaction_ids = list(replay.transaction_ids)
    if replay.is_flat:
        position.status = PositionStatus.CLOSED
        position.closed_at = replay.closed_at
    else:
        position.status = PositionStatus.OPEN
        position.closed_at = None
    position.updated_at = utc_now()
    return position


class PositionLifecycleManager:
    """
    Keeps Position aggregates consistent with the transaction stream.

    Two update paths share one arithmetic (`apply_wac_step`):
    - incremental: `record_transaction` applies a single new transaction
    - replay: `recalculate` rebuilds from the full (user, asset) history

    Replay is the repair path and is authoritative: it overwrites whatever
    incremental state was persisted, including the status.
    """

    def __init__(self, positions: PositionStore, reader: Optional[TransactionReader] = None) -> None:
        self.positions = positions
        self.reader = reader

    def attach_reader(self, reader: TransactionReader) -> None:
        self.reader = reader

    def _require_reader(self) -> TransactionReader:
        if self.reader is None:
            raise RuntimeError("PositionLifecycleManager has no transaction reader attached")
        return self.reader

    async def link_transaction(self, user_id: str, tx: Transaction) -> tuple[Optional[Position], Transaction]:
        """
        Resolve the episode a new transaction belongs to.

        - open position exists -> attach with the next entry index
        - none and tx is a buy -> create a new episode (entry_index=1)
        - none and tx is a sell -> orphan, left unlinked

        Store failures are logged and yield an unlinked transaction; linkage
        never blocks the ledger write.
        """
        try:
            position = await self.positions.find_open(user_id, tx.asset)
            if position is not None:
                return position, tx.with_position(position.id, len(position.transaction_ids) + 1)

            if not tx.is_buy:
                log_event(logger, "position.orphan_sell", severity="WARNING", user_id=user_id, asset=tx.asset)
                return None, tx.with_position(None, None)

            now = utc_now()
            position = Position(
                user_id=user_id,
                asset=tx.asset,
                status=next_status(None, PositionEvent.FIRST_BUY),
                created_at=now,
                updated_at=now,
            )
            position = await self.positions.create(position)
            log_event(logger, "position.opened", user_id=user_id, asset=tx.asset, position_id=position.id)
            return position, tx.with_position(position.id, 1)
        except Exception as e:
            log_event(
                logger,
                "position.linkage_failed",
                severity="WARNING",
                user_id=user_id,
                asset=tx.asset,
                error=f"{type(e).__name__}: {e}",
            )
            return None, tx.with_position(None, None)

    async def record_transaction(self, position_id: str, tx: Transaction) -> Position:
        """Load the position, apply `tx` incrementally and persist it."""
        position = await self.positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        apply_new_transaction(position, tx)
        await self.positions.save(position)
        if not position.is_open:
            log_event(
                logger,
                "position.closed",
                user_id=position.user_id,
                asset=position.asset,
                position_id=position.id,
                realized_pnl_abs=position.realized_pnl_abs,
            )
        return position

    async def replace_transaction_id(self, position_id: str, old_id: str, new_id: str) -> Optional[Position]:
        position = await self.positions.get(position_id)
        if position is None:
            return None
        if replace_transaction_id(position, old_id, new_id):
            await self.positions.save(position)
        return position

    async def recalculate(self, user_id: str, asset: str) -> Optional[Position]:
        """
        Rebuild the (user, asset) position from every stored transaction.

        Targets the open episode, else the most recent one. When no episode
        exists but transactions do (linkage failed at write time) one is
        created. Returns None when there is neither. Read failures propagate.
        """
        sym = str(asset).strip().upper()
        transactions = await self._require_reader().list_transactions(user_id, sym)
        transactions = [tx for tx in transactions if tx.asset == sym]

        position = await self.positions.find_open(user_id, sym)
        if position is None:
            position = await self.positions.find_latest(user_id, sym)
        if position is None:
            if not transactions:
                return None
            position = await self.positions.create(Position(user_id=user_id, asset=sym))

        replay = replay_position_state(transactions)
        _overwrite_from_replay(position, replay)
        await self.positions.save(position)

        log_event(
            logger,
            "position.recalculated",
            user_id=user_id,
            asset=sym,
            position_id=position.id,
            status=position.status.value,
            current_size=position.current_size,
            tx_count=len(position.transaction_ids),
        )
        return position

    async def recalculate_position(self, position_id: str) -> Optional[Position]:
        position = await self.positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return await self.recalculate(position.user_id, position.asset)

    async def recalculate_all_positions(self, user_id: str) -> list[Position]:
        """Repair every asset the user holds positions or transactions in."""
        assets = {p.asset for p in await self.positions.list_for_user(user_id)}
        for tx in await self._require_reader().list_transactions(user_id):
            assets.add(tx.asset)

        repaired: list[Position] = []
        for asset in sorted(assets):
            position = await self.recalculate(user_id, asset)
            if position is not None:
                repaired.append(position)
        log_event(logger, "position.recalculated_all", user_id=user_id, assets=len(assets), repaired=len(repaired))
        return repaired
