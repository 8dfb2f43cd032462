"""Persistent adapter storing one file per key in a directory."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pypersist.exceptions import RemoveError, WriteError

_logger = logging.getLogger(__name__)

_SUFFIX = ".json"


class FileAdapter:
    """Key-value store backed by ``<directory>/<quoted key>.json`` files.

    Writes go to a temporary sibling first and are moved into place, so a
    reader never observes a half-written payload.  Blocking file I/O runs in
    the default executor.
    """

    def __init__(self, directory: str | os.PathLike[str], *, encoding: str = "utf-8") -> None:
        self._directory = Path(directory)
        self._encoding = encoding

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / f"{quote(key, safe='')}{_SUFFIX}"

    def _read(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            return path.read_text(encoding=self._encoding)
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(value, encoding=self._encoding)
        os.replace(tmp, path)

    def _remove(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    async def get_item(self, key: str) -> str | None:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._read, key)
        except (OSError, UnicodeDecodeError):
            _logger.debug("File read failed key=%s dir=%s", key, self._directory, exc_info=True)
            return None

    async def set_item(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, key, value)
        except OSError as exc:
            raise WriteError(f"Writing {key!r} failed: {exc}", key=key, adapter_kind="file") from exc

    async def remove_item(self, key: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._remove, key)
        except OSError as exc:
            raise RemoveError(f"Removing {key!r} failed: {exc}", key=key, adapter_kind="file") from exc


def create_file_adapter(options: Mapping[str, Any], container_id: str) -> FileAdapter:
    directory = options.get("directory") or ".pypersist"
    encoding = options.get("encoding") or "utf-8"
    return FileAdapter(directory, encoding=encoding)
