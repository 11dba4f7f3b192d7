from abc import ABC, abstractmethod
from typing import Dict, Any, Iterable, Optional
from pathlib import Path
import asyncio
import json
import os

import structlog

logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Async get/set of named blobs. No transactions."""

    @abstractmethod
    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that are present"""

    @abstractmethod
    async def set(self, items: Dict[str, Any]) -> None:
        """Store every item, replacing existing values"""

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Remove keys; missing keys are ignored"""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store, used for tests and ephemeral sessions"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = json.loads(json.dumps(initial or {}))
        self._lock = asyncio.Lock()

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        async with self._lock:
            # Hand out copies so callers never mutate stored state in place
            return {
                key: json.loads(json.dumps(self.data[key]))
                for key in keys
                if key in self.data
            }

    async def set(self, items: Dict[str, Any]) -> None:
        async with self._lock:
            self.data.update(json.loads(json.dumps(items)))

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for key in keys:
                self.data.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """Durable store backed by a single JSON document

    One file is one storage namespace, and so one conversation.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            return {key: data[key] for key in keys if key in data}

    async def set(self, items: Dict[str, Any]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data.update(items)
            await asyncio.to_thread(self._write, data)

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            for key in keys:
                data.pop(key, None)
            await asyncio.to_thread(self._write, data)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as e:
            self._quarantine(f"not valid JSON: {e}")
            return {}
        if not isinstance(data, dict):
            self._quarantine("does not hold an object")
            return {}
        return data

    def _quarantine(self, reason: str) -> None:
        # The unreadable document survives beside the store with a .corrupt suffix
        corrupt_path = self.path.with_suffix(self.path.suffix + ".corrupt")
        os.replace(self.path, corrupt_path)
        logger.error(
            "Storage file is unreadable, moved aside and starting empty",
            path=str(self.path), moved_to=str(corrupt_path), reason=reason,
        )

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)
