from __future__ import annotations

import copy
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from ledger_engine.common.logging import log_event

from .interfaces import LocalCache

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_key(key: str) -> str:
    """
    Convert a cache key (or user id) into a filename-safe token.

    Examples:
    - 'transactions_u1' -> 'transactions_u1'
    - 'pending/deletes' -> 'pending_deletes'
    """
    s = _SAFE_KEY_RE.sub("_", (key or "").strip())
    s = re.sub(r"_+", "_", s).strip("._-")
    if not s:
        raise ValueError("cache key is required")
    return s


class FileLocalCache(LocalCache):
    """
    JSON-file cache scoped to one user.

    Layout:
      <root>/<user_id>/<key>.json

    Writes go to a temp file and are renamed into place so a crash never
    leaves a half-written document behind.
    """

    def __init__(self, *, user_id: str, root: Path | str) -> None:
        self.root = Path(root) / sanitize_key(user_id)

    def _path(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.json"

    def get(self, key: str) -> Any:
        p = self._path(key)
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            # A corrupt cache entry is unreadable state, not a fatal error.
            log_event(logger, "local_cache.corrupt_entry", severity="WARNING", key=key, path=str(p), error=str(e))
            return None

    def set(self, key: str, value: Any) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str), encoding="utf-8")
        os.replace(tmp, p)

    def remove(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink()
        except FileNotFoundError:
            pass


class InMemoryLocalCache(LocalCache):
    """Process-local cache; values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
