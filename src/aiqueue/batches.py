"""
Batch-level progress tracking and completion webhooks.
"""

from __future__ import annotations

import typing as t

import httpx
import structlog

from aiqueue.models import Batch, BatchStatus, BatchUpdateResult
from aiqueue.store import QueueStore

log = structlog.get_logger(__name__)


class BatchTracker:
    """
    Maintain the aggregate counters of queue batches.

    Parameters
    ----------
    store : QueueStore
        Store holding the batch records.
    client_factory : typing.Callable[[], httpx.AsyncClient]
        Async client factory used for webhook delivery.
    webhook_timeout : float
        Timeout in seconds of a webhook call.
    """

    def __init__(
        self,
        *,
        store: QueueStore,
        client_factory: t.Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        webhook_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._webhook_timeout = webhook_timeout

    async def create(
        self,
        *,
        batch_id: str,
        queue_name: str,
        total_items: int,
        webhook_url: str | None = None,
        metadata: dict[str, t.Any] | None = None,
    ) -> Batch:
        batch = Batch(
            batch_id=batch_id,
            queue_name=queue_name,
            total_items=total_items,
            webhook_url=webhook_url,
            metadata=metadata or {},
        )
        created = await self._store.create_batch(batch=batch)
        log.debug(event="Created batch", batch_id=batch_id, total_items=total_items)
        return created

    async def increment_bulk(
        self,
        *,
        batch_id: str,
        processing_delta: int = 0,
        completed_delta: int = 0,
        error_delta: int = 0,
        drain_processing: bool = True,
    ) -> Batch | None:
        """
        Apply bulk counter deltas and fire the webhook on completion.

        Parameters
        ----------
        batch_id : str
            Batch identifier.
        processing_delta : int
            Items entering (positive) or leaving (negative) processing.
        completed_delta : int
            Items that completed.
        error_delta : int
            Items that failed.
        drain_processing : bool
            Whether finished items leave ``processingItems``.

        Returns
        -------
        Batch | None
            Updated batch, or ``None`` when nothing was applied.
        """
        if processing_delta == 0 and completed_delta == 0 and error_delta == 0:
            return None

        result: BatchUpdateResult | None = await self._store.increment_batch_bulk(
            batch_id=batch_id,
            processing_delta=processing_delta,
            completed_delta=completed_delta,
            error_delta=error_delta,
            drain_processing=drain_processing,
        )
        if result is None:
            return None

        if result.should_trigger_webhook:
            log.info(event="Batch complete", batch_id=batch_id)
            if result.webhook_url:
                await self.trigger_webhook(batch=result.updated_batch)
        return result.updated_batch

    async def trigger_webhook(self, *, batch: Batch) -> None:
        if not batch.webhook_url:
            return

        payload = {
            "batchId": batch.batch_id,
            "status": batch.status,
            "totalItems": batch.total_items,
            "completedItems": batch.completed_items,
            "failedItems": batch.failed_items,
            "metadata": batch.metadata,
            "completedAt": batch.completed_at,
        }
        log.debug(event="Triggering batch webhook", batch_id=batch.batch_id, url=batch.webhook_url)
        try:
            async with self._client_factory(timeout=self._webhook_timeout) as client:
                response = await client.post(url=batch.webhook_url, json=payload)
        except httpx.HTTPError as e:
            log.error(event="Error triggering webhook", batch_id=batch.batch_id, error=str(e))
            return
        if response.is_error:
            log.error(
                event="Webhook failed",
                batch_id=batch.batch_id,
                status_code=response.status_code,
            )

    async def get_status(self, *, batch_id: str) -> BatchStatus | None:
        batch = await self._store.get_batch(batch_id=batch_id)
        if batch is None:
            return None
        return BatchStatus.from_batch(batch)
