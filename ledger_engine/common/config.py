from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_WRITE_TIMEOUT_S = 5.0
DEFAULT_LOCAL_CACHE_ROOT = "data/local_cache"


def _str_env(*names: str, default: str = "") -> str:
    for name in names:
        v = os.getenv(name)
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    return default


def _bool_env(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


@dataclass(frozen=True, slots=True)
class FacadeConfig:
    """
    Durable-write budget for the transaction façade.

    Env overrides:
    - LEDGER_WRITE_TIMEOUT_S: seconds to wait for a durable write before
      falling back to the local cache (default 5.0; <=0 falls back to default)
    - LEDGER_RESYNC_ON_RECOVERY: truthy/falsey toggle for automatic resync when
      the durable store becomes reachable again (default true)
    """

    write_timeout_s: float = DEFAULT_WRITE_TIMEOUT_S
    resync_on_recovery: bool = True

    @staticmethod
    def from_env() -> "FacadeConfig":
        timeout_s = _float_env("LEDGER_WRITE_TIMEOUT_S", DEFAULT_WRITE_TIMEOUT_S)
        if timeout_s <= 0:
            timeout_s = DEFAULT_WRITE_TIMEOUT_S
        return FacadeConfig(
            write_timeout_s=timeout_s,
            resync_on_recovery=_bool_env("LEDGER_RESYNC_ON_RECOVERY", True),
        )


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Process-level configuration for the position & ledger engine.

    Env:
    - SERVICE_NAME / ENV / LOG_LEVEL: structured logging identity
    - FIREBASE_PROJECT_ID (preferred) / FIRESTORE_PROJECT_ID / GOOGLE_CLOUD_PROJECT
    - LEDGER_TRANSACTIONS_COLLECTION (default "transactions")
    - LEDGER_POSITIONS_COLLECTION (default "positions")
    - LEDGER_LOCAL_CACHE_ROOT (default "data/local_cache")
    """

    service_name: str = "ledger-engine"
    env: str = "local"
    log_level: str = "INFO"
    firebase_project_id: Optional[str] = None
    transactions_collection: str = "transactions"
    positions_collection: str = "positions"
    local_cache_root: Path = Path(DEFAULT_LOCAL_CACHE_ROOT)
    facade: FacadeConfig = FacadeConfig()

    @staticmethod
    def from_env() -> "EngineConfig":
        project_id = _str_env("FIREBASE_PROJECT_ID", "FIRESTORE_PROJECT_ID", "GOOGLE_CLOUD_PROJECT") or None
        return EngineConfig(
            service_name=_str_env("SERVICE_NAME", default="ledger-engine"),
            env=_str_env("ENV", default="local"),
            log_level=_str_env("LOG_LEVEL", default="INFO").upper(),
            firebase_project_id=project_id,
            transactions_collection=_str_env("LEDGER_TRANSACTIONS_COLLECTION", default="transactions"),
            positions_collection=_str_env("LEDGER_POSITIONS_COLLECTION", default="positions"),
            local_cache_root=Path(_str_env("LEDGER_LOCAL_CACHE_ROOT", default=DEFAULT_LOCAL_CACHE_ROOT)),
            facade=FacadeConfig.from_env(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "env": self.env,
            "log_level": self.log_level,
            "firebase_project_id": self.firebase_project_id,
            "transactions_collection": self.transactions_collection,
            "positions_collection": self.positions_collection,
            "local_cache_root": str(self.local_cache_root),
            "write_timeout_s": self.facade.write_timeout_s,
            "resync_on_recovery": self.facade.resync_on_recovery,
        }
