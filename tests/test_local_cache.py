from __future__ import annotations

import json
from pathlib import Path

import pytest

from ledger_engine.persistence.local_cache import FileLocalCache, InMemoryLocalCache, sanitize_key


def test_sanitize_key() -> None:
    assert sanitize_key("transactions") == "transactions"
    assert sanitize_key("pending/deletes") == "pending_deletes"
    assert sanitize_key("  user@example.com ") == "user_example.com"
    with pytest.raises(ValueError):
        sanitize_key("///")


def test_file_cache_round_trip_is_scoped_per_user(tmp_path: Path) -> None:
    a = FileLocalCache(user_id="alice", root=tmp_path)
    b = FileLocalCache(user_id="bob", root=tmp_path)

    a.set("transactions", [{"id": "local_1", "amount": 1.0}])
    assert a.get("transactions") == [{"id": "local_1", "amount": 1.0}]
    assert b.get("transactions") is None

    p = tmp_path / "alice" / "transactions.json"
    assert json.loads(p.read_text(encoding="utf-8")) == [{"id": "local_1", "amount": 1.0}]
    assert not list((tmp_path / "alice").glob("*.tmp"))


def test_file_cache_remove_is_idempotent(tmp_path: Path) -> None:
    c = FileLocalCache(user_id="u1", root=tmp_path)
    c.set("pending_deletes", ["tx_1"])
    c.remove("pending_deletes")
    c.remove("pending_deletes")
    assert c.get("pending_deletes") is None


def test_file_cache_corrupt_entry_reads_as_missing(tmp_path: Path) -> None:
    c = FileLocalCache(user_id="u1", root=tmp_path)
    (tmp_path / "u1").mkdir(parents=True)
    (tmp_path / "u1" / "transactions.json").write_text("{not json", encoding="utf-8")
    assert c.get("transactions") is None


def test_in_memory_cache_copies_values() -> None:
    c = InMemoryLocalCache()
    value = {"tx_1": {"price": 1.0}}
    c.set("pending_updates", value)
    value["tx_1"]["price"] = 2.0

    got = c.get("pending_updates")
    assert got == {"tx_1": {"price": 1.0}}
    got["tx_1"]["price"] = 3.0
    assert c.get("pending_updates") == {"tx_1": {"price": 1.0}}
    assert c.get("missing") is None
