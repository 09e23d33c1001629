"""Short-lived key/value store in <state_dir>/cache/ as YAML files.

One file per key with the value and its expiry. Expired entries read as
absent and are removed on access. Files are replaced atomically so a worker
process and the request handler can share the store.
"""

import logging
import os
import re
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import yaml

CACHE_DIR = "cache"

LOG = logging.getLogger("hours.keyed_store")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _now() -> datetime:
    return datetime.now(UTC)


class KeyedStore:
    """Keyed store with per-key TTL."""

    def __init__(self, state_dir: Path | str) -> None:
        self._dir = Path(state_dir) / CACHE_DIR

    def _path(self, key: str) -> Path:
        return self._dir / f"{_UNSAFE.sub('_', key)}.yaml"

    def _load(self, path: Path) -> dict[str, Any] | None:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError) as e:
            LOG.warning("Failed to read cache entry %s: %s", path, e)
            return None
        return data if isinstance(data, dict) and "key" in data else None

    def _is_expired(self, entry: dict[str, Any]) -> bool:
        expires_at = entry.get("expires_at")
        if not expires_at:
            return False
        return datetime.fromisoformat(expires_at) <= _now()

    def put(self, key: str, value: Any, ttl_seconds: float | None = None) -> datetime | None:
        """Store value under key; returns the expiry (None = never expires)."""
        self._dir.mkdir(parents=True, exist_ok=True)
        expires_at = _now() + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        entry = {
            "key": key,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "value": value,
        }
        path = self._path(key)
        # Unique temp name per write
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self._dir, prefix=f"{path.stem}.", suffix=".tmp", delete=False
        ) as tmp:
            yaml.safe_dump(entry, tmp, default_flow_style=False, allow_unicode=True, sort_keys=False, width=1000)
        try:
            os.replace(tmp.name, path)
        except OSError:
            Path(tmp.name).unlink(missing_ok=True)
            raise
        LOG.debug("Stored %s (expires %s)", key, entry["expires_at"])
        return expires_at

    def get_entry(self, key: str) -> dict[str, Any] | None:
        """Return {key, expires_at, value} or None if missing or expired."""
        path = self._path(key)
        entry = self._load(path)
        if entry is None or entry.get("key") != key:
            return None
        if self._is_expired(entry):
            LOG.debug("Expired %s", key)
            path.unlink(missing_ok=True)
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return entry["value"] if entry is not None else default

    def has(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def forget(self, key: str) -> bool:
        """Remove key. Returns True if something was removed."""
        path = self._path(key)
        entry = self._load(path)
        if entry is None or entry.get("key") != key:
            return False
        path.unlink(missing_ok=True)
        return True

    def forget_prefix(self, prefix: str) -> int:
        """Remove all keys starting with prefix. Returns number removed."""
        if not self._dir.is_dir():
            return 0
        removed = 0
        for f in self._dir.glob("*.yaml"):
            entry = self._load(f)
            if entry and str(entry.get("key", "")).startswith(prefix):
                f.unlink(missing_ok=True)
                removed += 1
        return removed

    def flush(self) -> int:
        """Remove every entry. Returns number removed."""
        if not self._dir.is_dir():
            return 0
        removed = 0
        for f in self._dir.glob("*.yaml"):
            f.unlink(missing_ok=True)
            removed += 1
        LOG.info("Flushed %s cache entries", removed)
        return removed
