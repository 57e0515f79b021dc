"""
Request/response facade over the OpenAI and Gemini queues.

Callers enqueue a prompt, the queue runs in-process, and the dispatcher polls
the store until the entry reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import json
import math
import typing as t

import structlog

from aiqueue.exceptions import DispatchTimeoutError, QueueInsertError, TaskFailedError
from aiqueue.models import RESULT_POINTER_KEY, QueueEntry
from aiqueue.queue import AiQueue

log = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "gemini")
GEMINI_RESPONSE_TYPE = "application/json"
POLL_CHUNK_SIZE = 10
CHARS_PER_TOKEN = 4

DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_GEMINI_MODEL = "gemini-1.5-pro"

_background_runs: set[asyncio.Task[None]] = set()


def _select_queue(queues: t.Mapping[str, AiQueue], provider: str) -> AiQueue:
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f'Invalid AI provider: {provider}. Must be "openai" or "gemini"')
    return queues[provider]


def _schedule_run(queue: AiQueue) -> None:
    task = asyncio.create_task(queue.process_queue())
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)


def estimate_tokens(message: t.Any) -> int:
    """Rough token count of a message, at about four characters per token."""
    return math.ceil(len(json.dumps(message, default=str)) / CHARS_PER_TOKEN)


async def _read_result(queue: AiQueue, entry: QueueEntry) -> t.Any:
    record = entry.result if isinstance(entry.result, dict) else {"result": entry.result}
    inner = record.get("result")
    if isinstance(inner, dict) and inner.get(RESULT_POINTER_KEY):
        return await queue.offloader.get_and_delete_result(inner[RESULT_POINTER_KEY])
    return inner


async def _fetch_entry(queue: AiQueue, entry_id: str) -> QueueEntry | None:
    entries = await queue.store.get_entries(ids=[entry_id], queue_type=queue.queue_name, limit=1)
    return entries[0] if entries else None


async def dispatch_request(
    queues: t.Mapping[str, AiQueue],
    *,
    provider: str,
    model: str,
    prompt: str,
    message: t.Any,
    replacements: t.Sequence[t.Any] = (),
    history: t.Sequence[t.Any] = (),
    instruction_override: str | None = None,
    response_key: str | None = None,
    estimated_tokens: int = 1000,
    max_attempts: int = 30,
    poll_interval: float = 1.0,
) -> dict[str, t.Any]:
    """
    Enqueue one prompt and wait for its result.

    Parameters
    ----------
    queues : typing.Mapping[str, AiQueue]
        Provider name to queue.
    provider : str
        ``"openai"`` or ``"gemini"``.
    model : str
        Model to run the prompt on.
    prompt : str
        Prompt template name, also used as the entry type.
    message : typing.Any
        Message sent to the model.
    replacements : typing.Sequence[typing.Any]
        Template replacements.
    history : typing.Sequence[typing.Any]
        Chat history.
    instruction_override : str | None
        Replaces the template instruction.
    response_key : str | None
        Caller-side key echoed in the params.
    estimated_tokens : int
        Token estimate used for rate-limit admission.
    max_attempts : int
        Number of polls before giving up.
    poll_interval : float
        Seconds between polls.

    Returns
    -------
    dict[str, typing.Any]
        ``{"result": ..., "tokensUsed": ...}``.

    Raises
    ------
    ValueError
        Unsupported provider.
    QueueInsertError
        The entry could not be enqueued.
    TaskFailedError
        The entry ended in ``error``.
    DispatchTimeoutError
        The entry did not complete within ``max_attempts`` polls.
    """
    queue = _select_queue(queues, provider)
    params: dict[str, t.Any] = {
        "entryType": prompt,
        "prompt": prompt,
        "message": message,
        "replacements": list(replacements),
        "history": list(history),
        "instructionOverride": instruction_override,
        "responseKey": response_key,
    }
    if provider == "gemini":
        params["type"] = GEMINI_RESPONSE_TYPE

    inserted = await queue.add_to_queue(
        model=model, params=params, estimated_tokens=estimated_tokens, retry=False
    )
    if not inserted.success or not inserted.ids:
        raise QueueInsertError(f"Failed to add request to {provider} queue")

    _schedule_run(queue)

    entry_id = inserted.ids[0]
    for _ in range(max_attempts):
        entry = await _fetch_entry(queue, entry_id)
        if entry is not None:
            if entry.status == "complete":
                result = await _read_result(queue, entry)
                await queue.offloader.delete_params(entry)
                return {"result": result, "tokensUsed": entry.tokens_used}
            if entry.status == "error":
                raise TaskFailedError(entry.trace)
        await asyncio.sleep(poll_interval)

    raise DispatchTimeoutError("Queue processing timed out")


async def dispatch_openai_request(
    queues: t.Mapping[str, AiQueue], **kwargs: t.Any
) -> dict[str, t.Any]:
    return await dispatch_request(queues, provider="openai", **kwargs)


async def dispatch_gemini_request(
    queues: t.Mapping[str, AiQueue], **kwargs: t.Any
) -> dict[str, t.Any]:
    return await dispatch_request(queues, provider="gemini", **kwargs)


def _batch_params(
    request: t.Mapping[str, t.Any], *, provider: str, model: str, key: str
) -> dict[str, t.Any]:
    params = {
        "model": model,
        "modelOverride": model,
        "entryType": request.get("prompt"),
        "prompt": request.get("prompt"),
        "message": request.get("message"),
        "replacements": request.get("replacements") or [],
        "history": request.get("history") or [],
        "instructionOverride": request.get("instructionOverride"),
        "responseKey": key,
        "promptOverride": request.get("promptOverride"),
        "mockResponse": request.get("mockResponse"),
        "analyticsOptions": request.get("analyticsOptions"),
    }
    if provider == "gemini":
        params["type"] = GEMINI_RESPONSE_TYPE
    return params


async def batch_dispatch_requests(
    queues: t.Mapping[str, AiQueue],
    *,
    requests: t.Sequence[t.Mapping[str, t.Any]],
    provider: str,
    model: str,
    max_attempts: int = 60,
    poll_interval: float = 1.0,
    default_estimated_tokens: int = 1000,
) -> dict[str, t.Any]:
    """
    Enqueue several prompts as one batch and collect their results.

    Results are keyed by each request's ``responseKey`` (its index when
    absent). Failed entries, and entries still running after
    ``max_attempts`` polls, are left out of the result.
    """
    queue = _select_queue(queues, provider)

    keys: list[str] = []
    entries: list[dict[str, t.Any]] = []
    for index, request in enumerate(requests):
        request_model = request.get("model") or model
        key = request.get("responseKey") or str(index)
        keys.append(key)
        entries.append(
            {
                "model": request_model,
                "params": _batch_params(request, provider=provider, model=request_model, key=key),
                "estimatedTokens": request.get("estimatedTokens") or default_estimated_tokens,
                "retry": bool(request.get("retry")),
            }
        )

    log.debug(event="Adding batch entries", queue=provider, count=len(entries))
    inserted = await queue.add_to_queue_batch(entries=entries)
    entry_keys = dict(zip(inserted.ids, keys)) if inserted.success else {}

    await queue.process_queue()

    results: dict[str, t.Any] = {}
    failed: set[str] = set()
    for attempt in range(1, max_attempts + 1):
        outstanding = [i for i in entry_keys if entry_keys[i] not in results and i not in failed]
        if not outstanding:
            log.debug(event="All tasks complete", results=len(results), errors=len(failed))
            return results

        incomplete = 0
        for start in range(0, len(outstanding), POLL_CHUNK_SIZE):
            chunk = outstanding[start : start + POLL_CHUNK_SIZE]
            fetched = await asyncio.gather(*(_fetch_entry(queue, entry_id) for entry_id in chunk))
            for entry_id, entry in zip(chunk, fetched):
                if entry is None:
                    incomplete += 1
                elif entry.status == "complete" and entry.result:
                    results[entry_keys[entry_id]] = await _read_result(queue, entry)
                    await queue.offloader.delete_params(entry)
                elif entry.status == "error":
                    log.error(
                        event="Task failed", id=entry_id, trace=entry.trace or "Unknown error"
                    )
                    failed.add(entry_id)
                else:
                    incomplete += 1

        if incomplete == 0:
            log.debug(event="All tasks complete", results=len(results), errors=len(failed))
            return results
        log.debug(
            event="Waiting for tasks to complete",
            incomplete=incomplete,
            attempt=attempt,
            max_attempts=max_attempts,
        )
        await asyncio.sleep(poll_interval)

    log.warning(
        event="Timeout waiting for tasks to complete",
        results=len(results),
        total=len(entry_keys),
    )
    return results


def _with_estimates(requests: t.Sequence[t.Mapping[str, t.Any]]) -> list[dict[str, t.Any]]:
    return [
        {
            **request,
            "estimatedTokens": request.get("estimatedTokens")
            or estimate_tokens(request.get("message")),
        }
        for request in requests
    ]


async def batch_dispatch_openai_requests(
    queues: t.Mapping[str, AiQueue],
    *,
    requests: t.Sequence[t.Mapping[str, t.Any]],
    model: str | None = None,
    **kwargs: t.Any,
) -> dict[str, t.Any]:
    requests = _with_estimates(requests)
    log.debug(event="Batch dispatching OpenAI requests", count=len(requests))
    return await batch_dispatch_requests(
        queues,
        requests=requests,
        provider="openai",
        model=model or DEFAULT_OPENAI_MODEL,
        **kwargs,
    )


async def batch_dispatch_gemini_requests(
    queues: t.Mapping[str, AiQueue],
    *,
    requests: t.Sequence[t.Mapping[str, t.Any]],
    model: str | None = None,
    **kwargs: t.Any,
) -> dict[str, t.Any]:
    requests = _with_estimates(requests)
    log.debug(event="Batch dispatching Gemini requests", count=len(requests))
    return await batch_dispatch_requests(
        queues,
        requests=requests,
        provider="gemini",
        model=model or DEFAULT_GEMINI_MODEL,
        **kwargs,
    )
