"""
Blob storage used to offload large queue payloads.
"""

from __future__ import annotations

import json
import typing as t
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

METADATA_SUFFIX = ".meta.json"


class BlobStore(t.Protocol):
    async def put(
        self, path: str, data: t.Any, metadata: dict[str, t.Any] | None = None
    ) -> None: ...

    async def get(self, path: str) -> t.Any: ...

    async def delete(self, path: str) -> None: ...


class LocalBlobStore:
    """
    JSON blobs stored as files below a root directory.

    Parameters
    ----------
    root : Path
        Directory under which blob paths are resolved.
    """

    def __init__(self, *, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        resolved = (self._root / path).resolve()
        if self._root.resolve() not in resolved.parents:
            raise ValueError(f"Blob path escapes the store root: {path}")
        return resolved

    async def put(
        self, path: str, data: t.Any, metadata: dict[str, t.Any] | None = None
    ) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        if metadata:
            with open(target.with_name(target.name + METADATA_SUFFIX), "w", encoding="utf-8") as f:
                json.dump(metadata, f)
        log.debug(event="Stored blob", path=path)

    async def get(self, path: str) -> t.Any:
        with open(self._resolve(path), "r", encoding="utf-8") as f:
            return json.load(f)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        target.unlink(missing_ok=True)
        target.with_name(target.name + METADATA_SUFFIX).unlink(missing_ok=True)
        log.debug(event="Deleted blob", path=path)
