"""
Queue running an arbitrary coroutine per entry.
"""

from __future__ import annotations

import asyncio
import typing as t
from collections import Counter

import structlog

from aiqueue.config import default_generic_rate_limit_config
from aiqueue.models import QueueEntry
from aiqueue.offload import PayloadOffloader
from aiqueue.providers.keys import ai_queue_to_unique
from aiqueue.queue import AiQueue, ProviderAdapter, UniqueKeyGenerator
from aiqueue.rate_limiter import RateLimiter
from aiqueue.store import QueueStore
from aiqueue.triggers import DispatchTrigger

log = structlog.get_logger(__name__)

DEFAULT_LIMITER_KEY = "default"
ALL_TASKS = None

ProcessFn = t.Callable[[dict[str, t.Any]], t.Awaitable[t.Any]]


class ActiveTaskTracker:
    """
    Count in-flight entries per batch and let callers wait for them to finish.
    """

    def __init__(self) -> None:
        self._active: Counter[str | None] = Counter()
        self._condition = asyncio.Condition()

    def count(self, batch_id: str | None = ALL_TASKS) -> int:
        if batch_id is ALL_TASKS:
            return sum(self._active.values())
        return self._active[batch_id]

    async def start(self, batch_id: str | None) -> None:
        async with self._condition:
            self._active[batch_id] += 1

    async def finish(self, batch_id: str | None) -> None:
        async with self._condition:
            self._active[batch_id] -= 1
            if self._active[batch_id] <= 0:
                del self._active[batch_id]
            self._condition.notify_all()

    async def wait(self, batch_id: str | None = ALL_TASKS) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self.count(batch_id) == 0)


class GenericQueue(AiQueue):
    """
    Queue processing entries with a caller-provided coroutine.

    Parameters
    ----------
    queue_name : str
        Queue type, also used to derive the dispatch name ``launch<Name>Queue``.
    process_fn : ProcessFn
        Coroutine called with the resolved params of each entry.
    store : QueueStore
        Durable entry/batch store.
    offloader : PayloadOffloader
        Blob offloading of large payloads.
    trigger : DispatchTrigger
        Schedules future queue runs.
    rate_limiters : typing.Mapping[str, RateLimiter] | None
        Model name to limiter. When omitted and ``use_default_rate_limiter`` is
        set, a permissive ``default`` limiter is used.
    default_model : str | None
        Limiter key used when an entry's model has no limiter.
    wait_callback : bool
        Leave successful entries in ``processing`` until a callback completes them.
    retry_limit : int | None
        Overrides the settings retry limit.
    use_default_rate_limiter : bool
        Whether to fall back to the permissive default limiter.
    unique_key_generator : UniqueKeyGenerator
        Dedup key builder.
    **kwargs
        Forwarded to ``AiQueue`` (``settings``, ``batch_tracker``,
        ``post_process_hooks``).
    """

    def __init__(
        self,
        *,
        queue_name: str,
        process_fn: ProcessFn,
        store: QueueStore,
        offloader: PayloadOffloader,
        trigger: DispatchTrigger,
        rate_limiters: t.Mapping[str, RateLimiter] | None = None,
        default_model: str | None = None,
        wait_callback: bool = False,
        retry_limit: int | None = None,
        use_default_rate_limiter: bool = True,
        unique_key_generator: UniqueKeyGenerator = ai_queue_to_unique,
        **kwargs: t.Any,
    ) -> None:
        if not callable(process_fn):
            raise TypeError("process_fn must be callable")

        if rate_limiters is None:
            rate_limiters = {}
            if use_default_rate_limiter:
                rate_limiters = {
                    DEFAULT_LIMITER_KEY: RateLimiter.from_config(
                        default_generic_rate_limit_config()
                    )
                }
        if default_model is None and use_default_rate_limiter:
            default_model = DEFAULT_LIMITER_KEY

        self.process_fn = process_fn
        self.active_tasks = ActiveTaskTracker()

        adapter = ProviderAdapter(
            queue_name=queue_name,
            process_item=self._process_item,
            unique_key_generator=unique_key_generator,
            default_model=default_model,
            waits_for_external_callback=wait_callback,
            retry_limit=retry_limit,
        )
        super().__init__(
            adapter=adapter,
            store=store,
            offloader=offloader,
            trigger=trigger,
            rate_limiters=rate_limiters,
            **kwargs,
        )

    async def _process_item(self, entry: QueueEntry) -> t.Any:
        await self.active_tasks.start(entry.batch_id)
        try:
            return await self.process_fn(entry.params)
        finally:
            await self.active_tasks.finish(entry.batch_id)

    async def wait_for_completion(self, batch_id: str | None = None) -> None:
        """
        Wait until no entry (of ``batch_id``, or of any batch) is in flight.
        """
        count = self.active_tasks.count(batch_id)
        if count:
            log.debug(
                event="Waiting for active tasks",
                queue=self.queue_name,
                batch_id=batch_id,
                count=count,
            )
        await self.active_tasks.wait(batch_id)

    async def process_queue_and_wait(self, batch_id: str | None = None) -> None:
        await self.process_queue()
        await self.wait_for_completion(batch_id)
