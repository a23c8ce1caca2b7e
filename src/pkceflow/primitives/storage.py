"""Key/value storage that outlives a full client redirect.

The PKCE manager only needs string get/set/delete. Production callers use
:class:`JsonFileStore` (or their own implementation of
:class:`KeyValueStore`); tests use :class:`MemoryStore`.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    """Durable string storage visible after a full page reload.

    Implementations raise ``OSError`` (or a subclass) when the backing
    medium is unavailable.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class MemoryStore:
    """In-process store for tests and single-process servers."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """Single JSON file store with atomic temp-file-then-rename writes.

    File I/O runs in a worker thread so callers only suspend at this
    boundary.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(self._write, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._write, data)

    async def keys(self) -> list[str]:
        return list(await asyncio.to_thread(self._load))

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise OSError(f"Corrupt storage file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise OSError(f"Corrupt storage file {self.path}: expected an object")
        return {str(k): str(v) for k, v in raw.items()}

    def _write(self, data: dict[str, str]) -> None:
        """Write data atomically using a temp file in the same directory."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd = None
        tmp_path: str | None = None
        try:
            fd = tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = fd.name
            json.dump(data, fd, indent=2, sort_keys=True)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
            os.replace(tmp_path, self.path)
        except BaseException:
            if fd is not None:
                fd.close()
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise
