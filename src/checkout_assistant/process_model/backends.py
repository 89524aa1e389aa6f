"""Blob backends for checkout process models.

A backend only moves opaque JSON documents keyed by product key; all
validation and caching lives in :class:`ProcessModelStore`.
"""

from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

import structlog

logger = structlog.get_logger(__name__)


class ProcessModelBackend(Protocol):
    """Storage interface for process model blobs."""

    async def read(self, key: str) -> dict[str, Any] | None: ...

    async def write(self, key: str, blob: dict[str, Any]) -> None: ...

    async def keys(self) -> list[str]: ...


class InMemoryProcessModelBackend:
    """Dictionary-backed blobs, used in tests and single-process deployments."""

    def __init__(self, blobs: dict[str, dict[str, Any]] | None = None) -> None:
        self._blobs: dict[str, dict[str, Any]] = {
            key: copy.deepcopy(blob) for key, blob in (blobs or {}).items()
        }

    async def read(self, key: str) -> dict[str, Any] | None:
        blob = self._blobs.get(key)
        return copy.deepcopy(blob) if blob is not None else None

    async def write(self, key: str, blob: dict[str, Any]) -> None:
        self._blobs[key] = copy.deepcopy(blob)

    async def keys(self) -> list[str]:
        return sorted(self._blobs)


class JsonFileProcessModelBackend:
    """One pretty-printed ``<key>.json`` file per process model.

    File names are the percent-encoded product key, so every key maps to
    its own file and decodes back unchanged.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._data_dir / f"{quote(key, safe='')}.json"

    async def read(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)

        def _read() -> dict[str, Any] | None:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def write(self, key: str, blob: dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")

        def _write() -> None:
            tmp_path.write_text(
                json.dumps(blob, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            tmp_path.replace(path)

        await asyncio.to_thread(_write)
        logger.debug("process_model_file_written", key=key, path=str(path))

    async def keys(self) -> list[str]:
        def _list() -> list[str]:
            return sorted(unquote(path.stem) for path in self._data_dir.glob("*.json"))

        return await asyncio.to_thread(_list)
