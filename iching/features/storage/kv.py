"""
Key-value storage contract for client-side state.

The app persists small JSON records (entitlement state, reading history) under
fixed keys. Anything that offers get/set over strings can back them; errors
raised by a store propagate unchanged to the caller.
"""
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Union


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key was never written."""
        ...

    def set(self, key: str, value: str) -> None:
        """Durably store value under key."""
        ...


class InMemoryKeyValueStore:
    """Process-local store for tests and development."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value


_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class FileKeyValueStore:
    """
    One file per key under a directory.

    Writes land in a temp file in the same directory and are moved into place
    with os.replace, so a reader sees either the old or the new record.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key:
            raise ValueError("key must be non-empty")
        return self.directory / f"{_SAFE_KEY_RE.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
