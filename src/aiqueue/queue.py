"""
Queue engine: claims pending entries, admits them against rate limits, hands
them to a provider adapter and records outcomes.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import math
import typing as t
import uuid
from collections import defaultdict
from dataclasses import dataclass

import structlog

from aiqueue.batches import BatchTracker
from aiqueue.config import QueueSettings
from aiqueue.exceptions import BatchTimeoutError, QueueInsertError, is_deadline_exceeded
from aiqueue.models import (
    PARAMS_POINTER_KEY,
    RESULT_POINTER_KEY,
    BatchPlan,
    BatchStatus,
    Capacity,
    InsertResult,
    NewQueueEntry,
    ProcessOutcome,
    ProcessResult,
    QueueEntry,
    now_ms,
)
from aiqueue.offload import PayloadOffloader
from aiqueue.rate_limiter import RateLimiter
from aiqueue.store import QueueStore
from aiqueue.triggers import DispatchTrigger
from aiqueue.utils.logging import entry_context, logging_context

log = structlog.get_logger(__name__)

DEFAULT_GROUP = "default"
SMALL_PARAM_MAX_LENGTH = 100
PROGRESS_EVERY_N_ATTEMPTS = 5

UniqueKeyGenerator = t.Callable[..., str]
ProcessItem = t.Callable[[QueueEntry], t.Awaitable[t.Any]]
RetryHandler = t.Callable[["AiQueue", QueueEntry, BaseException], t.Awaitable[bool]]
PostProcessHook = t.Callable[[QueueEntry, ProcessResult], t.Awaitable[None]]
ProgressCallback = t.Callable[[BatchStatus], t.Any]


@dataclass(frozen=True)
class ProviderAdapter:
    """
    Provider-specific behaviour plugged into an ``AiQueue``.

    Parameters
    ----------
    queue_name : str
        Queue type; entries of this type are claimed by the queue.
    process_item : ProcessItem
        Coroutine performing the provider call for one entry (params resolved).
    unique_key_generator : UniqueKeyGenerator
        Builds the dedup key of a new entry. Called with keyword arguments
        ``type``, ``model``, ``entry_type``, ``task_params``, ``reference_key``
        and ``retry``.
    default_model : str | None
        Rate limiter key used when an entry's model has no limiter.
    group_by_model : bool
        When ``False`` every claimed entry shares the ``default`` limiter group.
    waits_for_external_callback : bool
        Leave successful entries in ``processing`` until a callback completes them.
    handle_retry : RetryHandler | None
        Retry policy override; the queue's default policy is used otherwise.
    dispatch_function_name : str | None
        Name passed to the dispatch trigger.
    retry_limit : int | None
        Overrides ``QueueSettings.retry_limit``.
    """

    queue_name: str
    process_item: ProcessItem
    unique_key_generator: UniqueKeyGenerator
    default_model: str | None = None
    group_by_model: bool = True
    waits_for_external_callback: bool = False
    handle_retry: RetryHandler | None = None
    dispatch_function_name: str | None = None
    retry_limit: int | None = None

    @property
    def function_name(self) -> str:
        if self.dispatch_function_name:
            return self.dispatch_function_name
        return f"launch{self.queue_name[:1].upper()}{self.queue_name[1:]}Queue"


def small_params(params: t.Mapping[str, t.Any]) -> dict[str, t.Any]:
    """Keep the params whose JSON text is short enough to feed a dedup key."""
    return {
        key: value
        for key, value in params.items()
        if len(json.dumps(value, default=str)) <= SMALL_PARAM_MAX_LENGTH
    }


def generate_batch_id() -> str:
    return f"batch_{now_ms()}_{uuid.uuid4().hex[:13]}"


class AiQueue:
    """
    Rate-limited processing engine for one queue type.

    Parameters
    ----------
    adapter : ProviderAdapter
        Provider behaviour.
    store : QueueStore
        Durable entry/batch store.
    offloader : PayloadOffloader
        Blob offloading of large params and results.
    trigger : DispatchTrigger
        Schedules future ``process_queue`` runs.
    rate_limiters : typing.Mapping[str, RateLimiter]
        Model name to limiter.
    settings : QueueSettings | None
        Engine tunables.
    batch_tracker : BatchTracker | None
        Batch counter tracker, built on ``store`` when omitted.
    post_process_hooks : typing.Mapping[str, PostProcessHook] | None
        Hooks run after a successful entry, keyed by ``params["type"]``.
    """

    def __init__(
        self,
        *,
        adapter: ProviderAdapter,
        store: QueueStore,
        offloader: PayloadOffloader,
        trigger: DispatchTrigger,
        rate_limiters: t.Mapping[str, RateLimiter],
        settings: QueueSettings | None = None,
        batch_tracker: BatchTracker | None = None,
        post_process_hooks: t.Mapping[str, PostProcessHook] | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.offloader = offloader
        self.trigger = trigger
        self.rate_limiters = dict(rate_limiters)
        self.settings = settings or QueueSettings()
        self.batch_tracker = batch_tracker or BatchTracker(
            store=store, webhook_timeout=self.settings.webhook_timeout_seconds
        )
        self.post_process_hooks = dict(post_process_hooks or {})

    @property
    def queue_name(self) -> str:
        return self.adapter.queue_name

    @property
    def retry_limit(self) -> int:
        if self.adapter.retry_limit is not None:
            return self.adapter.retry_limit
        return self.settings.retry_limit

    async def dispatch(self) -> None:
        log.debug(event="Dispatching queue run", function=self.adapter.function_name)
        await self.trigger.dispatch(function_name=self.adapter.function_name, data={})

    def unique_key(
        self,
        *,
        params: t.Mapping[str, t.Any],
        model: str | None,
        retry: bool,
        reference_key: str | None = None,
    ) -> str:
        if params.get("uniqueKey"):
            return params["uniqueKey"]
        return self.adapter.unique_key_generator(
            type=self.queue_name,
            model=model,
            entry_type=params.get("entryType"),
            task_params=small_params(params),
            reference_key=reference_key,
            retry=retry,
        )

    async def _insert(
        self, *, entries: list[QueueEntry], batch_id: str | None = None
    ) -> InsertResult:
        try:
            inserted = await self.store.insert_entries(entries=entries)
        except QueueInsertError as e:
            log.error(event="Failed to add entries to queue", queue=self.queue_name, error=str(e))
            return InsertResult(success=False, error=str(e), batch_id=batch_id)
        if len(inserted) < len(entries):
            log.warning(
                event="Some entries already existed and were not re-added",
                queue=self.queue_name,
                requested=len(entries),
                inserted=len(inserted),
            )
        return InsertResult(success=True, ids=[entry.id for entry in entries], batch_id=batch_id)

    async def add_to_queue(
        self,
        *,
        model: str,
        params: dict[str, t.Any],
        estimated_tokens: int = 0,
        retry: bool = False,
    ) -> InsertResult:
        """
        Enqueue one task and trigger a queue run.

        Parameters
        ----------
        model : str
            Model the task targets.
        params : dict[str, typing.Any]
            Task parameters; ``model`` is filled in when missing.
        estimated_tokens : int
            Token estimate used for rate-limit admission.
        retry : bool
            Whether this is a caller-side retry; distinguishes the dedup key.

        Returns
        -------
        InsertResult
            ``ids`` holds the entry key.
        """
        params = dict(params)
        if not params.get("model"):
            params["model"] = model
        key = self.unique_key(params=params, model=model, retry=retry)

        pointer = await self.offloader.store_large_params(params)
        entry = QueueEntry(
            id=key,
            type=self.queue_name,
            entry_type=params.get("entryType"),
            model=model,
            params=self.stored_params(params=params, pointer=pointer, model=model, retry=retry),
            estimated_tokens=estimated_tokens or 0,
            retry=retry,
        )
        result = await self._insert(entries=[entry])
        await self.dispatch()
        return result

    @staticmethod
    def stored_params(
        *,
        params: dict[str, t.Any],
        pointer: str | None,
        model: str | None,
        retry: bool,
    ) -> dict[str, t.Any]:
        if not pointer:
            return params
        return {
            PARAMS_POINTER_KEY: pointer,
            "entryType": params.get("entryType"),
            "model": params.get("model") or model,
            "retry": retry,
        }

    async def add_to_queue_batch(
        self,
        *,
        entries: t.Sequence[NewQueueEntry | t.Mapping[str, t.Any]],
        batch_id: str | None = None,
        webhook_url: str | None = None,
        metadata: dict[str, t.Any] | None = None,
        dispatch: bool = True,
    ) -> InsertResult:
        """
        Enqueue several tasks tracked together as one batch.

        The batch record is created before any entry is inserted. ``ids`` of
        the returned result are aligned with ``entries``.
        """
        new_entries = [
            entry if isinstance(entry, NewQueueEntry) else NewQueueEntry.model_validate(entry)
            for entry in entries
        ]
        batch_id = batch_id or generate_batch_id()

        keyed: list[tuple[str, NewQueueEntry, str | None, bool]] = []
        for entry in new_entries:
            model = entry.params.get("model") or entry.model
            retry = bool(entry.params.get("retry") or entry.retry)
            key = self.unique_key(
                params=entry.params,
                model=model,
                retry=retry,
                reference_key=entry.reference_key,
            )
            keyed.append((key, entry, model, retry))

        await self.batch_tracker.create(
            batch_id=batch_id,
            queue_name=self.queue_name,
            total_items=len(new_entries),
            webhook_url=webhook_url,
            metadata=metadata,
        )

        pointers = await asyncio.gather(
            *(self.offloader.store_large_params(entry.params) for entry in new_entries)
        )
        queue_entries = [
            QueueEntry(
                id=key,
                type=self.queue_name,
                entry_type=entry.params.get("entryType"),
                model=model,
                params=self.stored_params(
                    params=entry.params, pointer=pointer, model=model, retry=retry
                ),
                estimated_tokens=entry.estimated_tokens or 0,
                retry=retry,
                batch_id=batch_id,
            )
            for (key, entry, model, retry), pointer in zip(keyed, pointers)
        ]
        result = await self._insert(entries=queue_entries, batch_id=batch_id)

        if dispatch:
            log.debug(event="Dispatching batch", queue=self.queue_name, batch_id=batch_id)
            await self.dispatch()
        return result

    async def add_to_queue_batch_and_wait(
        self,
        *,
        entries: t.Sequence[NewQueueEntry | t.Mapping[str, t.Any]],
        batch_id: str | None = None,
        webhook_url: str | None = None,
        metadata: dict[str, t.Any] | None = None,
        max_wait_time: float = 300.0,
        poll_interval: float = 1.0,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, t.Any]:
        """Enqueue a batch, process it in-process and wait for its completion."""
        result = await self.add_to_queue_batch(
            entries=entries,
            batch_id=batch_id,
            webhook_url=webhook_url,
            metadata=metadata,
            dispatch=False,
        )
        await self.process_queue()
        status = await self.wait_for_batch_completion(
            batch_id=t.cast(str, result.batch_id),
            max_wait_time=max_wait_time,
            poll_interval=poll_interval,
            on_progress=on_progress,
        )
        return {"batchId": result.batch_id, "status": status}

    async def get_batch_status(self, batch_id: str) -> BatchStatus | None:
        return await self.batch_tracker.get_status(batch_id=batch_id)

    async def wait_for_batch_completion(
        self,
        *,
        batch_id: str,
        max_wait_time: float = 300.0,
        poll_interval: float = 1.0,
        on_progress: ProgressCallback | None = None,
    ) -> BatchStatus:
        """
        Poll a batch until it completes.

        Parameters
        ----------
        batch_id : str
            Batch to wait for.
        max_wait_time : float
            Polling budget in seconds.
        poll_interval : float
            Seconds between polls.
        on_progress : ProgressCallback | None
            Called (sync or async) with the status on every 5th poll.

        Returns
        -------
        BatchStatus
            Final status.

        Raises
        ------
        BatchTimeoutError
            When the batch is not complete within the budget.
        ValueError
            When ``poll_interval`` is not positive.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        max_attempts = math.ceil(max_wait_time / poll_interval)
        for attempt in range(max_attempts):
            status = await self.get_batch_status(batch_id)
            if status is not None:
                if on_progress is not None and attempt % PROGRESS_EVERY_N_ATTEMPTS == 0:
                    outcome = on_progress(status)
                    if inspect.isawaitable(outcome):
                        await outcome
                if status.status == "complete":
                    log.info(event="Batch completed", batch_id=batch_id)
                    return status
            await asyncio.sleep(poll_interval)

        log.error(
            event="Batch did not complete in time", batch_id=batch_id, max_wait_time=max_wait_time
        )
        raise BatchTimeoutError(f"Batch {batch_id} timed out after {max_wait_time}s")

    def group_key(self, entry: QueueEntry) -> str:
        if not self.adapter.group_by_model:
            return self.adapter.default_model or DEFAULT_GROUP
        model = entry.params.get("model") or entry.model
        return model or self.adapter.default_model or DEFAULT_GROUP

    def group_entries_by_model(
        self, entries: t.Sequence[QueueEntry]
    ) -> dict[str, list[QueueEntry]]:
        groups: dict[str, list[QueueEntry]] = defaultdict(list)
        for entry in entries:
            groups[self.group_key(entry)].append(entry)
        return dict(groups)

    def resolve_limiter(self, model_type: str | None) -> RateLimiter | None:
        if model_type is not None and model_type in self.rate_limiters:
            return self.rate_limiters[model_type]
        if self.adapter.default_model is not None:
            return self.rate_limiters.get(self.adapter.default_model)
        return None

    async def process_queue(self) -> None:
        """
        Drain pending entries of this queue.

        Runs claim cycles until no pending entry remains, at most
        ``max_drain_iterations`` times. A cycle that admits nothing (rate
        limits exhausted), an exhausted bound, or any unexpected error ends the
        run with a re-dispatch.
        """
        with logging_context(queue=self.queue_name):
            try:
                await self._drain()
            except Exception as e:
                log.error(event="Error in process_queue", error=str(e), exc_info=True)
                await self.dispatch()

    async def _drain(self) -> None:
        timeout = self.settings.processing_timeout_seconds
        if timeout is not None and not self.adapter.waits_for_external_callback:
            await self.store.reclaim_stale(
                queue_type=self.queue_name, older_than_ms=int(timeout * 1000)
            )

        for _ in range(self.settings.max_drain_iterations):
            claimed = await self.store.claim_pending(
                queue_type=self.queue_name, limit=self.settings.batch_limit
            )
            if not claimed:
                log.debug(event="No items in the queue")
                return
            log.info(event="Claimed items for processing", count=len(claimed))

            groups = self.group_entries_by_model(claimed)
            admitted = await asyncio.gather(
                *(
                    self.process_model_batch(model_type=model_type, entries=group)
                    for model_type, group in groups.items()
                )
            )

            remaining = await self.store.get_entries(
                queue_type=self.queue_name, status="pending", limit=1
            )
            if not remaining:
                return
            if sum(admitted) == 0:
                log.debug(event="No capacity left in any group, rescheduling")
                await self.dispatch()
                return

        log.warning(
            event="Drain iteration bound reached with work remaining, rescheduling",
            max_drain_iterations=self.settings.max_drain_iterations,
        )
        await self.dispatch()

    def build_optimal_batch(
        self, *, entries: t.Sequence[QueueEntry], available: Capacity
    ) -> BatchPlan:
        batch: list[QueueEntry] = []
        batch_tokens = 0
        batch_requests = 0
        for entry in entries:
            entry_tokens = entry.estimated_tokens or 0
            if (
                batch_requests + 1 > available.requests
                or batch_tokens + entry_tokens > available.tokens
            ):
                break
            batch.append(entry)
            batch_tokens += entry_tokens
            batch_requests += 1
        return BatchPlan(batch=batch, batch_tokens=batch_tokens, batch_requests=batch_requests)

    async def _reset_to_pending(self, entries: t.Sequence[QueueEntry]) -> None:
        await self.store.update_entries(ids=[entry.id for entry in entries], status="pending")

    async def process_model_batch(self, *, model_type: str, entries: list[QueueEntry]) -> int:
        """
        Admit and process one model group.

        Returns
        -------
        int
            Number of entries admitted for processing.
        """
        limiter = self.resolve_limiter(model_type)
        if limiter is None:
            log.error(event="No rate limiter found", model=model_type)
            await self.store.set_error(
                ids=[entry.id for entry in entries], trace="No rate limiter found"
            )
            await self._record_batch_outcomes(
                [(entry, ProcessOutcome(success=False, status="error")) for entry in entries],
                admitted=False,
            )
            return 0

        usage = await limiter.get_usage()
        available = Capacity(
            requests=limiter.max_requests - usage.current_requests,
            tokens=limiter.max_tokens - usage.current_usage,
        )
        if available.requests <= 0 or available.tokens <= 0:
            log.debug(event="Rate limits exceeded, waiting for next window", model=model_type)
            await self._reset_to_pending(entries)
            return 0

        plan = self.build_optimal_batch(entries=entries, available=available)
        if not plan.batch:
            log.debug(event="No capacity available for batch", model=model_type)
            await self._reset_to_pending(entries)
            return 0
        if len(plan.batch) < len(entries):
            await self._reset_to_pending(entries[len(plan.batch) :])

        log.debug(
            event="Processing model batch",
            model=model_type,
            size=len(plan.batch),
            tokens=plan.batch_tokens,
            available_tokens=available.tokens,
            requests=plan.batch_requests,
            available_requests=available.requests,
        )

        by_batch = self._group_by_batch(plan.batch)
        await asyncio.gather(
            *(
                self.batch_tracker.increment_bulk(batch_id=batch_id, processing_delta=len(members))
                for batch_id, members in by_batch.items()
            )
        )

        outcomes = await asyncio.gather(*(self.process_queue_entry(entry) for entry in plan.batch))
        await self._record_batch_outcomes(list(zip(plan.batch, outcomes)))
        return len(plan.batch)

    @staticmethod
    def _group_by_batch(entries: t.Iterable[QueueEntry]) -> dict[str, list[QueueEntry]]:
        by_batch: dict[str, list[QueueEntry]] = defaultdict(list)
        for entry in entries:
            if entry.batch_id:
                by_batch[entry.batch_id].append(entry)
        return dict(by_batch)

    async def _record_batch_outcomes(
        self,
        results: t.Sequence[tuple[QueueEntry, ProcessOutcome]],
        *,
        admitted: bool = True,
    ) -> None:
        per_batch: dict[str, list[ProcessOutcome]] = defaultdict(list)
        for entry, outcome in results:
            if entry.batch_id:
                per_batch[entry.batch_id].append(outcome)

        for batch_id, outcomes in per_batch.items():
            completed = sum(1 for o in outcomes if o.status in ("complete", "processing"))
            errors = sum(1 for o in outcomes if o.status == "error")
            retried = sum(1 for o in outcomes if o.status == "retry")
            log.debug(
                event="Updating batch counters",
                batch_id=batch_id,
                completed=completed,
                errors=errors,
                retried=retried,
            )
            await self.batch_tracker.increment_bulk(
                batch_id=batch_id,
                processing_delta=-retried,
                completed_delta=completed,
                error_delta=errors,
                drain_processing=admitted,
            )

    async def process_queue_entry(self, entry: QueueEntry) -> ProcessOutcome:
        """
        Process one claimed entry. Never raises; failures go through ``handle_retry``.
        """
        with logging_context(**entry_context(entry)):
            return await self._process_entry(entry)

    async def _process_entry(self, entry: QueueEntry) -> ProcessOutcome:
        try:
            params = await self.offloader.get_params(entry)
            log.debug(event="Processing queue entry", id=entry.id)
            raw = await self.adapter.process_item(entry.model_copy(update={"params": params}))
            result = ProcessResult.normalize(raw)

            if result.result:
                pointer = await self.offloader.store_large_result(result.result)
                if pointer:
                    result.result = {RESULT_POINTER_KEY: pointer}

            model_type = self.group_key(entry)
            limiter = self.resolve_limiter(model_type)
            if result.tokens_used:
                if limiter is not None:
                    await limiter.record_usage(tokens=result.tokens_used)
                else:
                    log.warning(
                        event="No rate limiter found, unable to record usage", model=model_type
                    )

            status = "processing" if self.adapter.waits_for_external_callback else "complete"
            await self.store.update_entries(
                ids=[entry.id],
                status=status,
                result=result.to_record(),
                tokens_used=result.tokens_used or 0,
            )

            hook = self.post_process_hooks.get(params.get("type"))
            if hook is not None:
                await hook(entry, result)
            return ProcessOutcome(success=True, status=status)
        except Exception as e:
            return await self._handle_failure(entry=entry, error=e)

    async def _handle_failure(self, *, entry: QueueEntry, error: Exception) -> ProcessOutcome:
        message = str(error) or "Unknown error"
        log.error(event="Error processing queue entry", id=entry.id, error=message)
        if is_deadline_exceeded(error=error):
            log.warning(event="Deadline exceeded, immediate retry scheduling", id=entry.id)

        try:
            retried = await self.handle_retry(entry=entry, error=error)
        except Exception as retry_error:
            log.error(event="Retry handling failed", id=entry.id, error=str(retry_error))
            retried = False

        if not retried:
            await self.store.set_error(ids=[entry.id], trace=message)
            return ProcessOutcome(success=False, status="error")
        return ProcessOutcome(success=False, status="retry")

    async def handle_retry(self, *, entry: QueueEntry, error: BaseException) -> bool:
        if self.adapter.handle_retry is not None:
            return await self.adapter.handle_retry(self, entry, error)
        return await self.default_handle_retry(entry=entry)

    async def default_handle_retry(self, *, entry: QueueEntry) -> bool:
        log.debug(
            event="Handling retry",
            id=entry.id,
            retry_count=entry.retry_count,
            retry_limit=self.retry_limit,
        )
        if entry.retry_count >= self.retry_limit:
            return False
        await self.store.update_entries(
            ids=[entry.id], status="pending", retry_count=entry.retry_count + 1
        )
        return True

    async def complete_from_callback(
        self,
        *,
        entry_ids: t.Sequence[str],
        results: t.Mapping[str, t.Any] | None = None,
    ) -> int:
        """
        Complete entries left in ``processing`` by a callback-waiting provider.

        Parameters
        ----------
        entry_ids : typing.Sequence[str]
            Entries finalised by the external callback.
        results : typing.Mapping[str, typing.Any] | None
            Optional callback payload per entry id, stored as the entry result.

        Returns
        -------
        int
            Number of entries updated.
        """
        results = results or {}
        updated = 0
        plain = [entry_id for entry_id in entry_ids if entry_id not in results]
        updated += await self.store.set_complete(ids=plain)
        for entry_id, payload in results.items():
            updated += await self.store.set_complete(
                ids=[entry_id], result=ProcessResult.normalize(payload).to_record()
            )
        log.info(event="Completed entries from callback", count=updated)
        return updated
