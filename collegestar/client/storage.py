import abc
import json
import logging
import os
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class KeyValueStore(abc.ABC):
    """String key-value capability standing in for browser local storage."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        pass

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def flag(self, key: str) -> bool:
        """Read a ``"true"``/``"false"`` flag."""
        return self.get(key) == "true"

    def set_flag(self, key: str, value: bool = True) -> None:
        self.set(key, "true" if value else "false")

class MemoryKeyValueStore(KeyValueStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

class JsonFileKeyValueStore(KeyValueStore):
    """Persists every write to a small JSON file."""

    def __init__(self, path: str):
        self.path = path
        self.lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except json.JSONDecodeError:
                logger.warning("Ignoring corrupt key-value file %s", self.path)
                return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(self._data, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self.lock:
            self._data[key] = str(value)
            self._save()

    def delete(self, key: str) -> None:
        with self.lock:
            if self._data.pop(key, None) is not None:
                self._save()
