import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol


logger = logging.getLogger(__name__)

TRACKER_KEY = 'golden_tracker'
STATS_KEY = 'golden_stats'
NOTIFICATION_KEY = 'notification_config'
AUDIO_KEY = 'audio_alerts'
REARM_KEY = 'golden_rearm'

_KEY_RE = re.compile(r'^[A-Za-z0-9_.-]+$')


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class JsonFileStore:
    """One ``<key>.json`` file per record under ``directory``."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except ValueError as exc:
            logger.warning("Ignoring malformed state file %s: %s", path, exc)
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.json.tmp')
        tmp.write_text(json.dumps(value))
        os.replace(tmp, path)


class InMemoryStore:
    """Keeps serialized copies so callers never share mutable state with the store."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class PersistenceCoordinator:
    """Typed access to the engine's persisted records with safe cold-start defaults."""

    def __init__(self, store: KeyValueStore, metrics=None):
        self.store = store
        self.metrics = metrics

    def _read(self, key: str) -> Any:
        try:
            return self.store.get(key)
        except (OSError, ValueError) as exc:
            logger.warning("State read failed for %s: %s", key, exc)
            self._failed(key)
            return None

    def _write(self, key: str, value: Any) -> bool:
        try:
            self.store.set(key, value)
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.error("State write failed for %s: %s", key, exc)
            self._failed(key)
            return False

    def _failed(self, key: str):
        if self.metrics is not None:
            self.metrics.record_persistence_failure(key)

    def load_tracked(self) -> List[Dict]:
        data = self._read(TRACKER_KEY)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def save_tracked(self, entries: List[Dict]) -> bool:
        return self._write(TRACKER_KEY, entries)

    def load_stats(self) -> Optional[Dict]:
        data = self._read(STATS_KEY)
        return data if isinstance(data, dict) else None

    def save_stats(self, stats: Dict) -> bool:
        return self._write(STATS_KEY, stats)

    def load_rearm(self) -> List[str]:
        data = self._read(REARM_KEY)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, str)]

    def save_rearm(self, symbols: List[str]) -> bool:
        return self._write(REARM_KEY, sorted(symbols))

    def load_notification_config(self) -> Optional[Dict]:
        data = self._read(NOTIFICATION_KEY)
        return data if isinstance(data, dict) else None

    def save_notification_config(self, data: Dict) -> bool:
        return self._write(NOTIFICATION_KEY, data)

    def load_audio_enabled(self, default: bool = True) -> bool:
        data = self._read(AUDIO_KEY)
        if isinstance(data, bool):
            return data
        if isinstance(data, dict) and isinstance(data.get('enabled'), bool):
            return data['enabled']
        return default

    def save_audio_enabled(self, enabled: bool) -> bool:
        return self._write(AUDIO_KEY, {'enabled': bool(enabled)})
