import math
import typing as t

import structlog

from aiqueue.exceptions import ProviderError
from aiqueue.models import QueueEntry
from aiqueue.providers.base import ProviderClient, exponential_backoff_retry
from aiqueue.providers.keys import ai_queue_to_unique
from aiqueue.queue import ProviderAdapter

log = structlog.get_logger(__name__)

QUEUE_NAME = "groq"
DISPATCH_FUNCTION_NAME = "launchGroqQueue"
DEFAULT_MODEL = "whisper-large-v3-turbo"
RETRY_BACKOFF_CAP_MS = 60 * 1000
TOKENS_PER_CHARACTER = 0.25


def estimate_transcription_tokens(transcription: t.Any) -> int:
    """Approximate token usage of a transcription from its length."""
    try:
        length = len(transcription)
    except TypeError:
        return 0
    return math.ceil(length * TOKENS_PER_CHARACTER)


def groq_adapter(*, client: ProviderClient) -> ProviderAdapter:
    """
    Build the Groq Whisper transcription adapter.

    Entries carry ``audioPath`` and optional ``offset``, ``prompt``, ``uid``
    and ``sku``. Retries are handled by the queue, never by the client.
    """

    async def process_item(entry: QueueEntry) -> t.Any:
        params = entry.params
        uid = params.get("uid") or "admin"
        request = {
            "audioPath": params["audioPath"],
            "offset": params.get("offset") or 0,
            "prompt": params.get("prompt") or "",
            "model": params.get("model") or DEFAULT_MODEL,
            "retry": 0,
            "traceId": entry.id,
            "uid": uid,
            "sku": params.get("sku") or "unknown",
        }
        response = await client.process(request)
        transcription = response.get("result") if isinstance(response, dict) else response
        if isinstance(transcription, dict) and transcription.get("error"):
            raise ProviderError(str(transcription["error"]), body=transcription)
        log.debug(event="Transcribed audio", id=entry.id, audio_path=params["audioPath"])
        return {
            "result": transcription,
            "tokensUsed": estimate_transcription_tokens(transcription),
        }

    return ProviderAdapter(
        queue_name=QUEUE_NAME,
        process_item=process_item,
        unique_key_generator=ai_queue_to_unique,
        default_model=DEFAULT_MODEL,
        handle_retry=exponential_backoff_retry(cap_ms=RETRY_BACKOFF_CAP_MS),
        dispatch_function_name=DISPATCH_FUNCTION_NAME,
    )
