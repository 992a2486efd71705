"""Key-value storage for state tokens and token records.

The broker never talks to a storage technology directly. State tokens and
token records live behind ``KeyValueStore``, which has three implementations:

- InMemoryStore: process-local dict (default, single instance only)
- JsonFileStore: durable JSON file, ``{key: {...}}`` at the top level
- FirestoreStore (see database.py): shared store for multi-instance deployments

Values are plain JSON-compatible dicts so every backend can persist them.
"""

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from loguru import logger


class KeyValueStore(Protocol):
    """Storage interface used by StateTokenStore and TokenStore."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> dict[str, Any] | None:
        """Atomically return AND delete the value stored under ``key``."""
        ...

    async def items(self) -> list[tuple[str, dict[str, Any]]]: ...


class InMemoryStore:
    """Process-local store.

    All operations complete without yielding to the event loop, so ``pop`` is
    atomic with respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def pop(self, key: str) -> dict[str, Any] | None:
        return self._data.pop(key, None)

    async def items(self) -> list[tuple[str, dict[str, Any]]]:
        return [(key, copy.deepcopy(value)) for key, value in self._data.items()]

    def __len__(self) -> int:
        return len(self._data)


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a JSON file after every mutation.

    The file is read once at construction. A missing file starts empty; a
    malformed file is logged and also starts empty so a corrupt credentials
    file never prevents the server from booting.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._write_lock = asyncio.Lock()
        self._data = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            logger.info("No saved tokens found", extra={"path": str(self._path)})
            return {}

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                "Failed to load saved tokens, starting empty",
                extra={"path": str(self._path), "error": str(e)},
            )
            return {}

        if not isinstance(raw, dict):
            logger.error(
                "Saved tokens file is not a JSON object, starting empty",
                extra={"path": str(self._path)},
            )
            return {}

        data = {str(key): value for key, value in raw.items() if isinstance(value, dict)}
        logger.info("Loaded saved tokens", extra={"path": str(self._path), "count": len(data)})
        return data

    def _write(self, snapshot: dict[str, dict[str, Any]]) -> None:
        """Write the snapshot atomically (temp file in the same dir + rename)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".tokens-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, sort_keys=True)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def _flush(self) -> None:
        snapshot = copy.deepcopy(self._data)
        async with self._write_lock:
            await asyncio.to_thread(self._write, snapshot)

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await super().put(key, value)
        await self._flush()

    async def delete(self, key: str) -> None:
        if key not in self._data:
            return
        await super().delete(key)
        await self._flush()

    async def pop(self, key: str) -> dict[str, Any] | None:
        value = await super().pop(key)
        if value is not None:
            await self._flush()
        return value
