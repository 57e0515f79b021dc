import typing as t

import structlog

from aiqueue.models import QueueEntry
from aiqueue.providers.base import ProviderClient
from aiqueue.providers.keys import book_import_queue_to_unique
from aiqueue.queue import ProviderAdapter

log = structlog.get_logger(__name__)

QUEUE_NAME = "bookImport"
DISPATCH_FUNCTION_NAME = "launchBookImportQueue"
DEFAULT_GROUP = "default"


def book_import_adapter(
    *, client: ProviderClient, retry_limit: int | None = None
) -> ProviderAdapter:
    """
    Build the audiobook import adapter (M4B transcription generation).
    """

    async def process_item(entry: QueueEntry) -> t.Any:
        uid = entry.params.get("uid")
        sku = entry.params.get("sku")
        if not uid or not sku:
            raise ValueError("Missing required parameters: uid and sku are required")

        log.info(event="Processing book import", uid=uid, sku=sku, id=entry.id)
        try:
            response = await client.process({"uid": uid, "item": {"sku": sku}, "entryType": "m4b"})
        except Exception as e:
            log.error(
                event="Book import attempt failed",
                uid=uid,
                sku=sku,
                attempt=entry.retry_count + 1,
                error=str(e),
            )
            raise

        result = response.get("result", response) if isinstance(response, dict) else response
        result = result if isinstance(result, dict) else {"transcriptions": result}
        return {
            "result": {
                "success": True,
                "transcriptionPath": result.get("transcriptions"),
                "metadata": result.get("metadata"),
                "sku": sku,
                "uid": uid,
            },
            "tokensUsed": 0,
        }

    return ProviderAdapter(
        queue_name=QUEUE_NAME,
        process_item=process_item,
        unique_key_generator=book_import_queue_to_unique,
        default_model=DEFAULT_GROUP,
        dispatch_function_name=DISPATCH_FUNCTION_NAME,
        retry_limit=retry_limit,
    )
