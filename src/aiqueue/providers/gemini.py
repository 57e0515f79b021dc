import typing as t

from aiqueue.models import QueueEntry
from aiqueue.providers.base import ProviderClient, exponential_backoff_retry
from aiqueue.providers.keys import ai_queue_to_unique
from aiqueue.queue import ProviderAdapter

QUEUE_NAME = "gemini"
DISPATCH_FUNCTION_NAME = "launchGeminiQueue"
RETRY_BACKOFF_CAP_MS = 30 * 60 * 1000
DEFAULT_RESPONSE_TYPE = "application/json"


def gemini_adapter(*, client: ProviderClient) -> ProviderAdapter:
    async def process_item(entry: QueueEntry) -> t.Any:
        params = dict(entry.params)
        params.setdefault("type", DEFAULT_RESPONSE_TYPE)
        return await client.process(params)

    return ProviderAdapter(
        queue_name=QUEUE_NAME,
        process_item=process_item,
        unique_key_generator=ai_queue_to_unique,
        handle_retry=exponential_backoff_retry(cap_ms=RETRY_BACKOFF_CAP_MS),
        dispatch_function_name=DISPATCH_FUNCTION_NAME,
    )
