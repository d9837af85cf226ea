"""Key/value persistence for apps."""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from .record import DynamicRecord

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class StorageError(RuntimeError):
    """Raised when stored state cannot be read or written."""


@runtime_checkable
class StorageRepository(Protocol):
    """Protocol implemented by app state stores."""

    async def save(self, key: str, data: Mapping[str, Any]) -> None:
        """Persist ``data`` under ``key``, replacing what was there."""

    async def load(self, key: str) -> DynamicRecord | None:
        """Return the stored record for ``key`` or None."""


class JsonStorageRepository:
    """Stores one JSON document per key inside a folder."""

    def __init__(self, folder: Path) -> None:
        self._folder = folder

    @property
    def folder(self) -> Path:
        return self._folder

    async def save(self, key: str, data: Mapping[str, Any]) -> None:
        payload = data.to_dict() if isinstance(data, DynamicRecord) else dict(data)
        await asyncio.to_thread(self._write, self._path_for(key), payload)

    async def load(self, key: str) -> DynamicRecord | None:
        raw = await asyncio.to_thread(self._read, self._path_for(key))
        if raw is None:
            return None
        return DynamicRecord(raw)

    def _path_for(self, key: str) -> Path:
        name = _UNSAFE_CHARS.sub("_", key).strip(".")
        if not name:
            raise StorageError(f"Invalid storage key: {key!r}")
        return self._folder / f"{name}.json"

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            text = json.dumps(payload, indent=2)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(text)
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"Failed to save '{path.stem}': {exc}") from exc

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to load '{path.stem}': {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt storage file '{path.name}'") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Storage file '{path.name}' does not hold an object")
        return data


__all__ = ["JsonStorageRepository", "StorageError", "StorageRepository"]
