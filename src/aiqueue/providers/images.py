"""
Image generation adapters (Fal, Wavespeed, ImageRouter).

All three share one ``default`` rate limiter per provider, so every claimed
entry lands in the same limiter group.
"""

import typing as t

import structlog

from aiqueue.models import QueueEntry
from aiqueue.providers.base import (
    PromptModerator,
    ProviderClient,
    content_policy_retry,
    is_content_filtered,
    is_content_policy_violation,
)
from aiqueue.providers.keys import fal_queue_to_unique
from aiqueue.queue import ProviderAdapter

log = structlog.get_logger(__name__)

DEFAULT_GROUP = "default"
DEFAULT_OUTPUT_FORMAT = "jpeg"

FAL_DEFAULT_MODEL = "imagen4-ultra"
WAVESPEED_DEFAULT_MODEL = "wavespeed-ai/flux-kontext-dev/multi"


def _output_path(params: t.Mapping[str, t.Any]) -> str | None:
    if params.get("outputPath"):
        return params["outputPath"]
    if params.get("outputPathWithoutExtension"):
        return f"{params['outputPathWithoutExtension']}.{DEFAULT_OUTPUT_FORMAT}"
    return None


def shape_image_request(
    params: t.Mapping[str, t.Any], *, default_model: str | None
) -> dict[str, t.Any]:
    """
    Project queue params onto an image generation request.

    Raises
    ------
    ValueError
        When the prompt is missing.
    """
    if not params.get("prompt"):
        raise ValueError("Image queue entry missing required field: prompt")
    request = {
        "entryType": params.get("entryType"),
        "prompt": params["prompt"],
        "model": params.get("model") or default_model,
        "outputPath": _output_path(params),
        "outputFormat": params.get("outputFormat") or DEFAULT_OUTPUT_FORMAT,
        "modelParams": params.get("modelParams") or {},
    }
    if params.get("pollingConfig"):
        request["pollingConfig"] = params["pollingConfig"]
    return request


def _image_adapter(
    *,
    queue_name: str,
    dispatch_function_name: str,
    client: ProviderClient,
    default_model: str | None,
    moderator: PromptModerator | None,
    content_policy_detector: t.Callable[[BaseException], bool] = is_content_policy_violation,
) -> ProviderAdapter:
    async def process_item(entry: QueueEntry) -> t.Any:
        request = shape_image_request(entry.params, default_model=default_model)
        log.debug(event="Processing image queue item", queue=queue_name, model=request["model"])
        return await client.process(request)

    return ProviderAdapter(
        queue_name=queue_name,
        process_item=process_item,
        unique_key_generator=fal_queue_to_unique,
        default_model=DEFAULT_GROUP,
        group_by_model=False,
        handle_retry=(
            content_policy_retry(moderator=moderator, detector=content_policy_detector)
            if moderator
            else None
        ),
        dispatch_function_name=dispatch_function_name,
    )


def fal_adapter(*, client: ProviderClient, moderator: PromptModerator) -> ProviderAdapter:
    return _image_adapter(
        queue_name="fal",
        dispatch_function_name="launchFalQueue",
        client=client,
        default_model=FAL_DEFAULT_MODEL,
        moderator=moderator,
    )


def wavespeed_adapter(*, client: ProviderClient, moderator: PromptModerator) -> ProviderAdapter:
    return _image_adapter(
        queue_name="wavespeed",
        dispatch_function_name="launchWavespeedQueue",
        client=client,
        default_model=WAVESPEED_DEFAULT_MODEL,
        moderator=moderator,
        content_policy_detector=is_content_filtered,
    )


def imagerouter_adapter(*, client: ProviderClient) -> ProviderAdapter:
    return _image_adapter(
        queue_name="imagerouter",
        dispatch_function_name="launchImageRouterQueue",
        client=client,
        default_model=None,
        moderator=None,
    )
