from __future__ import annotations

from pathlib import Path

import pytest

from ledger_engine.common.config import EngineConfig, FacadeConfig

_ENV_NAMES = (
    "SERVICE_NAME",
    "ENV",
    "LOG_LEVEL",
    "FIREBASE_PROJECT_ID",
    "FIRESTORE_PROJECT_ID",
    "GOOGLE_CLOUD_PROJECT",
    "LEDGER_TRANSACTIONS_COLLECTION",
    "LEDGER_POSITIONS_COLLECTION",
    "LEDGER_LOCAL_CACHE_ROOT",
    "LEDGER_WRITE_TIMEOUT_S",
    "LEDGER_RESYNC_ON_RECOVERY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    cfg = EngineConfig.from_env()
    assert cfg.service_name == "ledger-engine"
    assert cfg.env == "local"
    assert cfg.log_level == "INFO"
    assert cfg.firebase_project_id is None
    assert cfg.transactions_collection == "transactions"
    assert cfg.positions_collection == "positions"
    assert cfg.local_cache_root == Path("data/local_cache")
    assert cfg.facade == FacadeConfig(write_timeout_s=5.0, resync_on_recovery=True)


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERVICE_NAME", "ledger-worker")
    monkeypatch.setenv("ENV", "prod")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "fallback-project")
    monkeypatch.setenv("FIREBASE_PROJECT_ID", "primary-project")
    monkeypatch.setenv("LEDGER_TRANSACTIONS_COLLECTION", "tx_v2")
    monkeypatch.setenv("LEDGER_LOCAL_CACHE_ROOT", "/tmp/ledger-cache")
    monkeypatch.setenv("LEDGER_WRITE_TIMEOUT_S", "1.5")
    monkeypatch.setenv("LEDGER_RESYNC_ON_RECOVERY", "false")

    cfg = EngineConfig.from_env()
    assert cfg.service_name == "ledger-worker"
    assert cfg.env == "prod"
    assert cfg.log_level == "DEBUG"
    assert cfg.firebase_project_id == "primary-project"
    assert cfg.transactions_collection == "tx_v2"
    assert cfg.local_cache_root == Path("/tmp/ledger-cache")
    assert cfg.facade.write_timeout_s == 1.5
    assert cfg.facade.resync_on_recovery is False
    assert cfg.to_dict()["write_timeout_s"] == 1.5


@pytest.mark.parametrize("raw", ["0", "-2", "soon", ""])
def test_bad_write_timeout_falls_back_to_default(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    monkeypatch.setenv("LEDGER_WRITE_TIMEOUT_S", raw)
    assert FacadeConfig.from_env().write_timeout_s == 5.0
