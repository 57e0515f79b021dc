"""
Offload oversized queue payloads to blob storage.
"""

from __future__ import annotations

import json
import typing as t
import uuid
from datetime import datetime, timezone

import structlog

from aiqueue.blob import BlobStore, LocalBlobStore
from aiqueue.config import QueueSettings
from aiqueue.models import PARAMS_POINTER_KEY, QueueEntry, now_ms

log = structlog.get_logger(__name__)

PARAMS_PREFIX = "queue/params"
RESULTS_PREFIX = "queue/results"


def _blob_path(prefix: str) -> str:
    return f"{prefix}/{now_ms()}_{uuid.uuid4().hex[:8]}.json"


class PayloadOffloader:
    """
    Move params and results whose JSON text exceeds a threshold to blob storage.

    Parameters
    ----------
    blob_store : BlobStore
        Storage the payloads are written to.
    threshold : int
        Maximum inline JSON length. ``0`` offloads every non-empty payload.
    """

    def __init__(self, *, blob_store: BlobStore, threshold: int = 0) -> None:
        self._blob_store = blob_store
        self.threshold = threshold

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> PayloadOffloader:
        """Offloader writing to a local blob store under ``settings.blob_root``."""
        return cls(
            blob_store=LocalBlobStore(root=settings.blob_root),
            threshold=settings.storage_threshold,
        )

    def exceeds_threshold(self, payload: t.Any) -> bool:
        return len(json.dumps(payload, default=str)) > self.threshold

    async def _store(self, *, prefix: str, payload: t.Any) -> str | None:
        if not self.exceeds_threshold(payload):
            return None
        path = _blob_path(prefix)
        await self._blob_store.put(
            path,
            payload,
            metadata={"customTime": datetime.now(tz=timezone.utc).isoformat()},
        )
        log.debug(event="Offloaded payload", path=path)
        return path

    async def store_large_params(self, task_params: dict[str, t.Any]) -> str | None:
        return await self._store(prefix=PARAMS_PREFIX, payload=task_params)

    async def store_large_result(self, result: t.Any) -> str | None:
        return await self._store(prefix=RESULTS_PREFIX, payload=result)

    async def get_params(self, entry: QueueEntry) -> dict[str, t.Any]:
        """
        Resolve the full params of an entry.

        Offloaded params are read back from blob storage, params nested under a
        ``params`` key are unwrapped, anything else is returned as stored.
        """
        pointer = entry.params_gcs_path
        if pointer:
            return await self._blob_store.get(pointer)
        nested = entry.params.get("params")
        if isinstance(nested, dict) and nested:
            return nested
        return entry.params

    async def delete_params(self, entry: QueueEntry) -> None:
        pointer = entry.params.get(PARAMS_POINTER_KEY)
        if pointer:
            await self._blob_store.delete(pointer)

    async def get_and_delete_result(self, result_gcs_path: str) -> t.Any:
        result = await self._blob_store.get(result_gcs_path)
        await self._blob_store.delete(result_gcs_path)
        return result
