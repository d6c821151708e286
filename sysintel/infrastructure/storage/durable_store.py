from abc import ABC, abstractmethod
from typing import Dict, Optional
from pathlib import Path
import os
import re
import tempfile
import threading


class DurableStore(ABC):
    """Synchronous key/value storage holding serialized JSON strings"""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored string or None"""
        pass

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Store a string under key"""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key, returning whether it existed"""
        pass


class MemoryDurableStore(DurableStore):
    """In-process store, survives nothing beyond the process"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.entries: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self.entries.get(key)

    def write(self, key: str, value: str) -> None:
        with self._lock:
            self.entries[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self.entries.pop(key, None) is not None


class FileDurableStore(DurableStore):
    """One JSON file per key under a directory, replaced atomically on write"""

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
            return True
