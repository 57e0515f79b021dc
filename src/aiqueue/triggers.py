"""
Dispatch triggers schedule a future ``process_queue`` run for a queue.
"""

from __future__ import annotations

import asyncio
import typing as t

import httpx
import structlog

log = structlog.get_logger(__name__)

RunFactory = t.Callable[[dict[str, t.Any]], t.Awaitable[t.Any]]


class DispatchTrigger(t.Protocol):
    async def dispatch(
        self, *, function_name: str, data: dict[str, t.Any] | None = None
    ) -> None: ...


class LocalDispatchTrigger:
    """
    In-process trigger running registered coroutines as tracked tasks.

    Parameters
    ----------
    delay : float
        Seconds each dispatched run waits before starting.
    """

    def __init__(self, *, delay: float = 0.0) -> None:
        self._delay = delay
        self._registry: dict[str, RunFactory] = {}
        self._tasks: set[asyncio.Task[t.Any]] = set()
        self.dispatched: list[str] = []

    def register(self, *, function_name: str, run: RunFactory) -> None:
        self._registry[function_name] = run

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def dispatch(self, *, function_name: str, data: dict[str, t.Any] | None = None) -> None:
        self.dispatched.append(function_name)
        run = self._registry.get(function_name)
        if run is None:
            log.warning(
                event="No runner registered for dispatched function", function=function_name
            )
            return
        task = asyncio.create_task(self._run_later(run, data or {}))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    async def _run_later(self, run: RunFactory, data: dict[str, t.Any]) -> t.Any:
        if self._delay:
            await asyncio.sleep(self._delay)
        return await run(data)

    def _on_done(self, task: asyncio.Task[t.Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(event="Dispatched run failed", error=str(task.exception()))

    async def drain(self) -> None:
        """Wait until every dispatched run, including runs they trigger, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class HttpDispatchTrigger:
    """
    Trigger that posts to an HTTP task endpoint at ``<base_url>/<function_name>``.

    Parameters
    ----------
    base_url : str
        Base URL of the task functions.
    client_factory : typing.Callable[[], httpx.AsyncClient]
        Async client factory.
    headers : dict[str, str] | None
        Extra headers, e.g. authorization.
    """

    def __init__(
        self,
        *,
        base_url: str,
        client_factory: t.Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_factory = client_factory
        self._headers = headers or {}

    async def dispatch(self, *, function_name: str, data: dict[str, t.Any] | None = None) -> None:
        url = f"{self._base_url}/{function_name}"
        try:
            async with self._client_factory() as client:
                response = await client.post(
                    url=url,
                    json={"data": data or {}},
                    headers=self._headers,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            log.error(
                event="Failed to dispatch task", function=function_name, url=url, error=str(e)
            )
            return
        log.debug(event="Dispatched task", function=function_name)
