"""
Durable Storage

Key/value store backed by one JSON file per key under the data directory.
Plays the role browser local storage plays for the web client: cached case
list, current user, last route, and the bearer/refresh tokens.

Missing or corrupt values are treated as "no cached data", never as errors.
"""
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from config import DATA_DIR

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class DurableStorage:
    """JSON file storage, one file per key."""

    def __init__(self, root: Path = None):
        self.root = Path(root) if root else DATA_DIR / "storage"

    def _path(self, key: str) -> Path:
        return self.root / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str, default: Any = None) -> Any:
        """Read and decode a key. Absent or corrupt values return default."""
        path = self._path(key)
        if not path.exists():
            return default

        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable storage key %s: %s", key, e)
            return default

    def set(self, key: str, value: Any) -> None:
        """Encode and write a key atomically."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(value, f, indent=2, default=str)
        tmp_path.replace(path)

    def remove(self, key: str) -> None:
        """Delete a key if present."""
        path = self._path(key)
        if path.exists():
            path.unlink()

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStorage(DurableStorage):
    """In-process storage with the same contract, for tests and dry runs."""

    def __init__(self, initial: Optional[dict] = None):
        super().__init__(root=Path("."))
        self._data = {k: json.dumps(v) for k, v in (initial or {}).items()}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring unreadable storage key %s: %s", key, e)
            return default

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, default=str)

    def set_raw(self, key: str, raw: str) -> None:
        """Store an undecoded string (used to simulate corruption)."""
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
