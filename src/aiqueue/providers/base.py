"""
Shared provider plumbing: HTTP clients, prompt moderation and retry policies.
"""

from __future__ import annotations

import typing as t

import httpx
import structlog

from aiqueue.exceptions import AiQueueError, ProviderError
from aiqueue.models import QueueEntry, now_ms
from aiqueue.providers.keys import normalize_identifier
from aiqueue.queue import AiQueue, RetryHandler

log = structlog.get_logger(__name__)

CONTENT_POLICY_VIOLATION = "content_policy_violation"
SAFETY_CHECKS_PHRASE = "safety checks"
CONTENT_FILTER_PHRASES = ("filtered", "violated", "content policy", "safety check")

MODERATION_INSTRUCTION = (
    "Rewrite the following image generation prompt so it complies with content "
    "safety policies. Keep the scene, style and characters, remove or soften "
    "anything explicit, violent or otherwise disallowed. Reply with the rewritten "
    "prompt only."
)


class ProviderClient(t.Protocol):
    async def process(self, params: dict[str, t.Any]) -> t.Any: ...


class PromptModerator(t.Protocol):
    async def moderate(self, *, prompt: str, context: str = "") -> str: ...


def _response_body(response: httpx.Response) -> t.Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpFunctionClient:
    """
    Call a provider function exposed as a JSON-over-HTTP endpoint.

    The endpoint receives the shaped params as JSON and answers either
    ``{"result": ..., "tokensUsed": ...}`` or a bare JSON result.

    Parameters
    ----------
    url : str
        Endpoint URL.
    api_key : str | None
        Bearer token.
    client_factory : typing.Callable[..., httpx.AsyncClient]
        Async client factory.
    timeout : float
        Request timeout in seconds.
    """

    def __init__(
        self,
        *,
        url: str,
        api_key: str | None = None,
        client_factory: t.Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        timeout: float = 300.0,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._client_factory = client_factory
        self._timeout = timeout

    async def process(self, params: dict[str, t.Any]) -> t.Any:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with self._client_factory(timeout=self._timeout) as client:
            response = await client.post(url=self._url, json=params, headers=headers)
        body = _response_body(response)
        if response.is_error:
            raise ProviderError(
                f"Provider call to {self._url} failed with status {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        if isinstance(body, dict) and "result" in body:
            return {
                "result": body["result"],
                "tokensUsed": body.get("tokensUsed", body.get("tokens_used")),
            }
        return {"result": body}


class ChatCompletionPromptModerator:
    """
    Rewrite rejected prompts with an OpenAI-compatible chat completions endpoint.

    Falls back to the original prompt whenever the call fails or returns nothing.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        client_factory: t.Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        timeout: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._client_factory = client_factory
        self._timeout = timeout

    async def moderate(self, *, prompt: str, context: str = "") -> str:
        log.debug(event="Moderating image prompt", prompt=prompt[:100])
        instruction = MODERATION_INSTRUCTION
        if context:
            instruction = f"{instruction}\nContext: {context}"
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": instruction},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            async with self._client_factory(timeout=self._timeout) as client:
                response = await client.post(
                    url=f"{self._base_url}/chat/completions", json=payload, headers=headers
                )
                response.raise_for_status()
                content = response.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            log.error(event="Error moderating image prompt", error=str(e))
            return prompt

        moderated = (content or "").strip()
        if not moderated:
            log.error(event="Failed to moderate image prompt, no result returned")
            return prompt
        return moderated


def backoff_delay_ms(*, retry_count: int, cap_ms: int) -> int:
    return min(1000 * 2**retry_count, cap_ms)


def exponential_backoff_retry(*, cap_ms: int) -> RetryHandler:
    """
    Default retry policy that also logs an exponential backoff delay.

    The delay is informational: the entry goes back to ``pending`` at once and
    the next queue run picks it up.
    """

    async def handle_retry(queue: AiQueue, entry: QueueEntry, error: BaseException) -> bool:
        if entry.retry_count < queue.retry_limit:
            log.debug(
                event="Scheduling retry",
                id=entry.id,
                backoff_ms=backoff_delay_ms(retry_count=entry.retry_count, cap_ms=cap_ms),
            )
        return await queue.default_handle_retry(entry=entry)

    return handle_retry


def is_content_policy_violation(error: BaseException) -> bool:
    body = getattr(error, "body", None)
    if not isinstance(body, dict):
        return False
    detail = body.get("detail")
    if isinstance(detail, list):
        first = detail[0] if detail else None
        return isinstance(first, dict) and first.get("type") == CONTENT_POLICY_VIOLATION
    if isinstance(detail, str):
        return SAFETY_CHECKS_PHRASE in detail
    return False


def is_content_filtered(error: BaseException) -> bool:
    """
    Detect safety-filter rejections reported as a flag or in the error message.

    Matches an ``isContentFiltered`` flag on the error or its body, then falls
    back to a case-insensitive search for safety-filter phrasing.
    """
    body = getattr(error, "body", None)
    if getattr(error, "is_content_filtered", False) or (
        isinstance(body, dict) and body.get("isContentFiltered")
    ):
        return True
    message = str(error).lower()
    return any(phrase in message for phrase in CONTENT_FILTER_PHRASES)


async def resubmit_moderated(
    queue: AiQueue, entry: QueueEntry, moderator: PromptModerator
) -> str:
    """
    Queue a copy of ``entry`` with a moderated prompt and fail the original.

    Returns
    -------
    str
        Key of the moderated entry.
    """
    params = dict(await queue.offloader.get_params(entry))
    params.pop("uniqueKey", None)
    identifier = params.get("identifier")

    moderated_prompt = await moderator.moderate(
        prompt=params.get("prompt") or "",
        context=f"Character: {identifier}" if identifier else "",
    )
    base = normalize_identifier(identifier) if identifier else str(now_ms())
    moderated_identifier = f"{base}_moderated"

    new_params = {**params, "prompt": moderated_prompt, "identifier": moderated_identifier}
    key = queue.unique_key(params=new_params, model=entry.model, retry=False)
    pointer = await queue.offloader.store_large_params(new_params)
    moderated = QueueEntry(
        id=key,
        type=entry.type,
        entry_type=entry.entry_type,
        model=entry.model,
        params=queue.stored_params(
            params=new_params, pointer=pointer, model=entry.model, retry=False
        ),
        estimated_tokens=entry.estimated_tokens,
        retry_count=entry.retry_count + 1,
        batch_id=entry.batch_id,
    )
    inserted = await queue.store.insert_entries(entries=[moderated])
    if key not in inserted:
        raise AiQueueError(f"Moderated entry {key} already exists")

    await queue.store.set_error(
        ids=[entry.id],
        trace=f"Content policy violation - moderated version created as entry: {key}",
    )
    log.info(event="Created moderated entry", id=key, original_id=entry.id)
    return key


def content_policy_retry(
    *,
    moderator: PromptModerator,
    detector: t.Callable[[BaseException], bool] = is_content_policy_violation,
) -> RetryHandler:
    """
    Retry policy resubmitting content-policy rejections with a moderated prompt.

    ``detector`` decides which errors are content-policy rejections. Other
    failures, and moderation attempts that fail, use the default policy.
    """

    async def handle_retry(queue: AiQueue, entry: QueueEntry, error: BaseException) -> bool:
        if detector(error) and entry.retry_count < queue.retry_limit:
            log.info(
                event="Content policy violation, attempting moderation",
                id=entry.id,
                retry_count=entry.retry_count,
                retry_limit=queue.retry_limit,
            )
            try:
                await resubmit_moderated(queue, entry, moderator)
                return True
            except Exception as e:
                log.error(event="Failed to moderate prompt", id=entry.id, error=str(e))
        return await queue.default_handle_retry(entry=entry)

    return handle_retry
