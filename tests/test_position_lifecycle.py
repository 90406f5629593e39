from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ledger_engine.common.errors import InvalidPositionTransition, PositionNotFoundError
from ledger_engine.ledger.models import Transaction
from ledger_engine.ledger.pnl import valuate
from ledger_engine.persistence.memory import InMemoryPositionStore, InMemoryTransactionStore
from ledger_engine.positions.lifecycle import (
    DurableTransactionReader,
    PositionLifecycleManager,
    apply_new_transaction,
    replace_transaction_id,
    replay_position_state,
)
from ledger_engine.positions.models import Position, PositionStatus

_T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _tx(tx_id: str, type_: str, amount: float, price: float, day: int, *, asset: str = "BTC") -> Transaction:
    ts = _T0 + timedelta(days=day)
    return Transaction(id=tx_id, user_id="u1", asset=asset, type=type_, amount=amount, price=price, date=ts, created_at=ts)


class _ListReader:
    def __init__(self) -> None:
        self.txs: list[Transaction] = []

    async def list_transactions(self, user_id: str, asset: str | None = None) -> list[Transaction]:
        return [t for t in self.txs if t.user_id == user_id and (asset is None or t.asset == asset)]


@pytest.fixture()
def reader() -> _ListReader:
    return _ListReader()


@pytest.fixture()
def manager(reader: _ListReader) -> PositionLifecycleManager:
    return PositionLifecycleManager(InMemoryPositionStore(), reader)


def _numbers(p: Position) -> tuple[float, ...]:
    return (p.current_size, p.total_cost, p.avg_entry_price, p.realized_pnl_abs, p.total_buy_amount)


def test_apply_buys_then_full_sell_closes_and_resets() -> None:
    p = Position(user_id="u1", asset="BTC", id="p1")
    apply_new_transaction(p, _tx("a", "buy", 1, 10_000, 0))
    apply_new_transaction(p, _tx("b", "buy", 1, 20_000, 1))
    assert p.status is PositionStatus.OPEN
    assert p.avg_entry_price == pytest.approx(15_000)

    sell = _tx("c", "sell", 2, 18_000, 2)
    apply_new_transaction(p, sell)
    assert p.status is PositionStatus.CLOSED
    assert (p.current_size, p.total_cost, p.avg_entry_price) == (0.0, 0.0, 0.0)
    assert p.realized_pnl_abs == pytest.approx(6_000)
    assert p.total_buy_amount == pytest.approx(2)
    assert p.closed_at == sell.created_at
    assert p.transaction_ids == ["a", "b", "c"]


def test_oversell_snaps_to_closed() -> None:
    p = Position(user_id="u1", asset="BTC", id="p1")
    apply_new_transaction(p, _tx("a", "buy", 1, 100, 0))
    apply_new_transaction(p, _tx("b", "sell", 1.5, 120, 1))
    assert p.status is PositionStatus.CLOSED
    assert p.current_size == 0.0


def test_closed_position_rejects_further_transactions() -> None:
    p = Position(user_id="u1", asset="BTC", id="p1")
    apply_new_transaction(p, _tx("a", "buy", 1, 100, 0))
    apply_new_transaction(p, _tx("b", "sell", 1, 100, 1))
    with pytest.raises(InvalidPositionTransition):
        apply_new_transaction(p, _tx("c", "buy", 1, 100, 2))


def test_replace_transaction_id_keeps_order_and_uniqueness() -> None:
    p = Position(user_id="u1", asset="BTC", transaction_ids=["x", "local_1", "y"])
    assert replace_transaction_id(p, "local_1", "tx_9")
    assert p.transaction_ids == ["x", "tx_9", "y"]

    p = Position(user_id="u1", asset="BTC", transaction_ids=["local_1", "tx_9"])
    assert replace_transaction_id(p, "local_1", "tx_9")
    assert p.transaction_ids == ["tx_9"]

    assert not replace_transaction_id(p, "missing", "tx_1")


def test_incremental_matches_replay_over_random_episodes() -> None:
    rng = random.Random(11)
    closes = 0
    for _ in range(40):
        episodes = [Position(user_id="u1", asset="BTC", id="p1")]
        txs: list[Transaction] = []
        qty = 0.0
        for day in range(rng.randint(2, 16)):
            roll = rng.random()
            if qty > 0 and roll < 0.25:
                tx = _tx(f"t{day:02d}", "sell", qty, rng.uniform(50, 150), day)
                qty = 0.0
            elif qty > 1 and roll < 0.5:
                amount = rng.uniform(0.1, qty * 0.9)
                tx = _tx(f"t{day:02d}", "sell", amount, rng.uniform(50, 150), day)
                qty -= amount
            else:
                amount = rng.uniform(0.5, 4)
                tx = _tx(f"t{day:02d}", "buy", amount, rng.uniform(50, 150), day)
                qty += amount
            if not episodes[-1].is_open:
                episodes.append(Position(user_id="u1", asset="BTC", id=f"p{len(episodes) + 1}"))
            txs.append(tx)
            apply_new_transaction(episodes[-1], tx)
        closes += sum(1 for p in episodes if not p.is_open)

        current = episodes[-1]
        replay = replay_position_state(reversed(txs))
        assert replay.is_flat == (not current.is_open)
        assert replay.current_size == pytest.approx(current.current_size, abs=1e-9)
        assert replay.total_cost == pytest.approx(current.total_cost, abs=1e-6)
        assert replay.avg_entry_price == pytest.approx(current.avg_entry_price)
        # Realized P&L, bought amount and ids span the asset's whole history.
        assert replay.realized_pnl_abs == pytest.approx(sum(p.realized_pnl_abs for p in episodes))
        assert replay.total_buy_amount == pytest.approx(sum(p.total_buy_amount for p in episodes))
        assert replay.transaction_ids == [i for p in episodes for i in p.transaction_ids]
    assert closes > 0


def test_close_then_rebuy_replays_onto_the_new_episode() -> None:
    txs = [
        _tx("a", "buy", 1, 10_000, 0),
        _tx("b", "buy", 1, 20_000, 1),
        _tx("c", "sell", 2, 18_000, 2),
        _tx("d", "buy", 2, 90, 3),
    ]
    first = Position(user_id="u1", asset="BTC", id="p1")
    for tx in txs[:3]:
        apply_new_transaction(first, tx)
    second = apply_new_transaction(Position(user_id="u1", asset="BTC", id="p2"), txs[3])

    assert first.status is PositionStatus.CLOSED
    assert _numbers(first) == (0.0, 0.0, 0.0, 6_000.0, 2.0)
    assert _numbers(second) == (2.0, 180.0, 90.0, 0.0, 2.0)

    replay = replay_position_state(txs)
    assert not replay.is_flat
    assert (replay.current_size, replay.total_cost, replay.avg_entry_price) == (2.0, 180.0, 90.0)
    assert replay.realized_pnl_abs == 6_000.0
    assert replay.total_buy_amount == 4.0
    assert replay.transaction_ids == ["a", "b", "c", "d"]
    assert replay.closed_at is None


def test_replay_folds_an_orphan_sell_like_valuation() -> None:
    txs = [_tx("s", "sell", 1, 100, 0), _tx("b", "buy", 2, 10, 1)]

    replay = replay_position_state(txs)
    assert (replay.current_size, replay.total_cost, replay.avg_entry_price) == (1.0, 20.0, 20.0)
    assert replay.realized_pnl_abs == 100.0

    res = valuate(txs, 10)
    assert (res.holdings, res.total_cost, res.avg_buy_price, res.realized_pnl) == (1.0, 20.0, 20.0, 100.0)


def test_replay_never_leaves_a_position_short() -> None:
    sell = _tx("s", "sell", 1, 100, 0)
    replay = replay_position_state([sell])
    assert replay.is_flat
    assert (replay.current_size, replay.total_cost, replay.avg_entry_price) == (0.0, 0.0, 0.0)
    assert replay.realized_pnl_abs == 100.0
    assert replay.closed_at == sell.created_at


@pytest.mark.asyncio
async def test_link_creates_episode_then_attaches(manager: PositionLifecycleManager) -> None:
    pos, linked = await manager.link_transaction("u1", _tx("a", "buy", 1, 100, 0))
    assert pos is not None
    assert pos.status is PositionStatus.OPEN
    assert linked.position_id == pos.id
    assert linked.entry_index == 1

    await manager.record_transaction(pos.id, linked)
    pos2, linked2 = await manager.link_transaction("u1", _tx("b", "buy", 1, 100, 1))
    assert pos2.id == pos.id
    assert linked2.entry_index == 2


@pytest.mark.asyncio
async def test_orphan_sell_is_left_unlinked(manager: PositionLifecycleManager) -> None:
    pos, linked = await manager.link_transaction("u1", _tx("a", "sell", 1, 100, 0))
    assert pos is None
    assert linked.position_id is None
    assert await manager.positions.list_for_user("u1") == []


@pytest.mark.asyncio
async def test_linkage_failure_never_raises(reader: _ListReader) -> None:
    store = AsyncMock()
    store.find_open.side_effect = ConnectionError("positions offline")
    manager = PositionLifecycleManager(store, reader)

    pos, linked = await manager.link_transaction("u1", _tx("a", "buy", 1, 100, 0))
    assert pos is None
    assert linked.position_id is None
    assert linked.entry_index is None


@pytest.mark.asyncio
async def test_buy_after_close_starts_new_episode(manager: PositionLifecycleManager) -> None:
    pos, linked = await manager.link_transaction("u1", _tx("a", "buy", 1, 100, 0))
    await manager.record_transaction(pos.id, linked)
    _, linked = await manager.link_transaction("u1", _tx("b", "sell", 1, 110, 1))
    closed = await manager.record_transaction(pos.id, linked)
    assert closed.status is PositionStatus.CLOSED

    new_pos, new_linked = await manager.link_transaction("u1", _tx("c", "buy", 2, 90, 2))
    assert new_pos.id != pos.id
    assert new_linked.entry_index == 1


@pytest.mark.asyncio
async def test_recalculate_is_idempotent_and_matches_incremental(
    manager: PositionLifecycleManager, reader: _ListReader
) -> None:
    txs = [_tx("a", "buy", 2, 100, 0), _tx("b", "buy", 2, 200, 1), _tx("c", "sell", 1, 250, 2)]
    pos = None
    for tx in txs:
        pos, linked = await manager.link_transaction("u1", tx)
        pos = await manager.record_transaction(pos.id, linked)
        reader.txs.append(linked)
    incremental = _numbers(pos)

    first = await manager.recalculate("u1", "btc")
    second = await manager.recalculate("u1", "BTC")

    assert first.id == pos.id
    assert _numbers(first) == pytest.approx(incremental)
    assert first.read_model() == second.read_model()
    assert second.transaction_ids == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_recalculate_repairs_drift_and_reopens(manager: PositionLifecycleManager, reader: _ListReader) -> None:
    pos = await manager.positions.create(Position(user_id="u1", asset="ETH", status=PositionStatus.CLOSED))
    reader.txs = [_tx("e1", "buy", 3, 10, 0, asset="ETH")]

    repaired = await manager.recalculate_position(pos.id)
    assert repaired.status is PositionStatus.OPEN
    assert repaired.current_size == pytest.approx(3)
    assert repaired.closed_at is None
    assert repaired.transaction_ids == ["e1"]


@pytest.mark.asyncio
async def test_recalculate_without_transactions_resets_to_closed(manager: PositionLifecycleManager) -> None:
    pos = await manager.positions.create(
        Position(user_id="u1", asset="SOL", current_size=5, total_cost=50, avg_entry_price=10, transaction_ids=["gone"])
    )
    out = await manager.recalculate("u1", "SOL")
    assert out.id == pos.id
    assert out.status is PositionStatus.CLOSED
    assert _numbers(out) == (0.0, 0.0, 0.0, 0.0, 0.0)
    assert out.transaction_ids == []


@pytest.mark.asyncio
async def test_recalculate_position_unknown_id(manager: PositionLifecycleManager) -> None:
    with pytest.raises(PositionNotFoundError):
        await manager.recalculate_position("nope")


@pytest.mark.asyncio
async def test_recalculate_all_covers_unlinked_assets(manager: PositionLifecycleManager, reader: _ListReader) -> None:
    await manager.positions.create(Position(user_id="u1", asset="BTC"))
    reader.txs = [
        _tx("b1", "buy", 1, 100, 0, asset="BTC"),
        _tx("d1", "buy", 10, 0.1, 0, asset="DOGE"),
    ]

    repaired = await manager.recalculate_all_positions("u1")
    assert [p.asset for p in repaired] == ["BTC", "DOGE"]
    assert all(p.status is PositionStatus.OPEN for p in repaired)
    assert len(await manager.positions.list_for_user("u1")) == 2


@pytest.mark.asyncio
async def test_durable_reader_parses_store_rows() -> None:
    store = InMemoryTransactionStore()
    await store.insert(_tx("ignored", "buy", 1, 100, 0).to_record())
    await store.insert(_tx("ignored", "buy", 1, 5, 0, asset="ETH").to_record())

    reader = DurableTransactionReader(store)
    btc = await reader.list_transactions("u1", "BTC")
    assert [(t.id, t.asset) for t in btc] == [("tx_000001", "BTC")]
    assert len(await reader.list_transactions("u1")) == 2


@pytest.mark.asyncio
async def test_recalculate_without_reader_is_an_error() -> None:
    manager = PositionLifecycleManager(InMemoryPositionStore())
    with pytest.raises(RuntimeError):
        await manager.recalculate("u1", "BTC")
