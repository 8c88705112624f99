"""
Persisted sync state.

The watermark is kept outside the record store, as an ISO-8601 string under
a single key of a small key-value store:

    {"lastSyncAt": "2025-01-15T07:30:00.000Z"}

A missing key means "never synced"; the next cycle is a full resync.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol

from domus.clock import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

WATERMARK_KEY = "lastSyncAt"
STATE_FILE_NAME = "sync_state.json"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store for tests and throwaway engines."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Flat JSON object on disk. Every write rewrites the whole file."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @classmethod
    def from_settings(cls, settings) -> "JsonFileStore":
        return cls(Path(settings.state_dir) / STATE_FILE_NAME)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except ValueError as exc:
            logger.warning("Ignoring unreadable sync state at %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self._path)


@dataclass(frozen=True)
class SyncState:
    watermark: Optional[datetime] = None

    @property
    def never_synced(self) -> bool:
        return self.watermark is None


class SyncStateRepository:
    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self) -> SyncState:
        raw = self.store.get(WATERMARK_KEY)
        watermark = parse_timestamp(raw) if raw else None
        if raw and watermark is None:
            logger.warning("Discarding invalid watermark %r", raw)
        return SyncState(watermark=watermark)

    def save(self, state: SyncState) -> SyncState:
        """Persist state, never moving the watermark backwards.

        Returns:
            The state actually stored.
        """
        if state.watermark is None:
            return self.load()
        current = self.load()
        if current.watermark is not None and current.watermark >= state.watermark:
            logger.debug(
                "Keeping watermark %s (offered %s)",
                format_timestamp(current.watermark), format_timestamp(state.watermark),
            )
            return current
        self.store.set(WATERMARK_KEY, format_timestamp(state.watermark))
        return state

    def reset(self) -> None:
        self.store.delete(WATERMARK_KEY)
