import typing as t

from aiqueue.models import QueueEntry
from aiqueue.providers.base import ProviderClient
from aiqueue.providers.keys import modal_queue_to_unique
from aiqueue.queue import ProviderAdapter

QUEUE_NAME = "modal"
DISPATCH_FUNCTION_NAME = "launchModalQueue"
DEFAULT_MODEL = "sdxl-outpaint-diffusers"
CALLBACK_PATH = "/v1/modal/callback"


def modal_adapter(*, client: ProviderClient, callback_base_url: str) -> ProviderAdapter:
    """
    Build the Modal outpainting adapter.

    Modal answers asynchronously: entries stay in ``processing`` after the
    request is accepted and are completed by the callback, which receives the
    entry id as ``resultKey``.
    """
    callback_url = f"{callback_base_url.rstrip('/')}{CALLBACK_PATH}"

    async def process_item(entry: QueueEntry) -> t.Any:
        params = entry.params
        return await client.process(
            {
                "entryType": entry.entry_type,
                "inputPath": params.get("inputPath"),
                "outputPathWithoutExtension": params.get("outputPathWithoutExtension"),
                "prompt": params.get("prompt"),
                "resultKey": entry.id,
                "callbackUrl": callback_url,
                "timestamp": entry.time_requested,
            }
        )

    return ProviderAdapter(
        queue_name=QUEUE_NAME,
        process_item=process_item,
        unique_key_generator=modal_queue_to_unique,
        default_model=DEFAULT_MODEL,
        waits_for_external_callback=True,
        dispatch_function_name=DISPATCH_FUNCTION_NAME,
    )
