"""
Tests for provider adapters, key generators and provider retry policies.
"""

import json
import math
import re

import httpx
import pytest
import respx

from aiqueue.exceptions import ProviderError
from aiqueue.models import QueueEntry
from aiqueue.providers import (
    ChatCompletionPromptModerator,
    HttpFunctionClient,
    book_import_adapter,
    fal_adapter,
    gemini_adapter,
    groq_adapter,
    imagerouter_adapter,
    modal_adapter,
    openai_adapter,
    wavespeed_adapter,
)
from aiqueue.providers.base import (
    backoff_delay_ms,
    is_content_filtered,
    is_content_policy_violation,
)
from aiqueue.providers.groq import estimate_transcription_tokens
from aiqueue.providers.images import shape_image_request
from aiqueue.providers.keys import (
    ai_queue_to_unique,
    book_import_queue_to_unique,
    fal_queue_to_unique,
    modal_queue_to_unique,
    transcription_queue_to_unique,
)
from tests.mocks.providers import FakeModerator, FakeProviderClient, content_policy_error

FUNCTION_URL = "https://functions.example.com/generate"
CHAT_BASE_URL = "https://llm.example.com/v1"


def test_ai_queue_to_unique():
    key = ai_queue_to_unique(
        type="openai",
        model="meta/llama-3",
        entry_type="summary",
        task_params={},
        reference_key="ch1",
        retry=True,
    )
    assert key == "openai_meta_llama-3_summary_ch1_retry"

    generated = ai_queue_to_unique(type="openai", model="gpt-4o", entry_type="s", task_params={})
    assert re.fullmatch(r"openai_gpt-4o_s_\d+_[0-9a-f]{13}", generated)

    with pytest.raises(ValueError):
        ai_queue_to_unique(type="openai", model=None, entry_type="s", task_params={})


def test_modal_and_fal_keys():
    assert (
        modal_queue_to_unique(
            type="modal",
            entry_type="outpaint",
            task_params={"sceneId": "s1", "chapter": 2, "scene_number": 7},
        )
        == "modal_outpaint_s1_2_7"
    )
    assert (
        fal_queue_to_unique(
            type="fal",
            entry_type="character",
            task_params={"graphId": "g1", "identifier": "hero", "chapter": 3},
            retry=True,
        )
        == "fal_character_g1_hero_ch3_retry"
    )
    with pytest.raises(ValueError):
        fal_queue_to_unique(type="fal", entry_type="character", task_params={"graphId": "g1"})


def test_book_import_and_transcription_keys():
    key = book_import_queue_to_unique(
        type="bookImport", entry_type="m4b", task_params={"uid": "u1", "sku": "sku1"}
    )
    assert re.fullmatch(r"bookImport_m4b_u1_sku1_\d+", key)
    with pytest.raises(ValueError):
        book_import_queue_to_unique(type="bookImport", entry_type="m4b", task_params={"uid": "u"})

    assert (
        transcription_queue_to_unique(
            entry_type="transcribe",
            task_params={"uid": "u1", "sku": "s1", "chapter": 4, "unique": "x"},
        )
        == "transcribe_u1_s1_4_x"
    )
    with pytest.raises(ValueError):
        transcription_queue_to_unique(entry_type="transcribe", task_params={"uid": "u1"})


@pytest.mark.asyncio
async def test_http_function_client_returns_result_and_tokens():
    client = HttpFunctionClient(url=FUNCTION_URL, api_key="secret")
    with respx.mock:
        route = respx.post(FUNCTION_URL).mock(
            return_value=httpx.Response(200, json={"result": {"text": "hi"}, "tokensUsed": 12})
        )
        response = await client.process({"prompt": "hello"})

    assert response == {"result": {"text": "hi"}, "tokensUsed": 12}
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.read()) == {"prompt": "hello"}


@pytest.mark.asyncio
async def test_http_function_client_wraps_bare_bodies():
    client = HttpFunctionClient(url=FUNCTION_URL)
    with respx.mock:
        respx.post(FUNCTION_URL).mock(return_value=httpx.Response(200, json=["a", "b"]))
        assert await client.process({}) == {"result": ["a", "b"]}


@pytest.mark.asyncio
async def test_http_function_client_raises_provider_error():
    client = HttpFunctionClient(url=FUNCTION_URL)
    body = {"detail": [{"type": "content_policy_violation"}]}
    with respx.mock:
        respx.post(FUNCTION_URL).mock(return_value=httpx.Response(422, json=body))
        with pytest.raises(ProviderError) as excinfo:
            await client.process({})

    assert excinfo.value.status_code == 422
    assert excinfo.value.body == body
    assert is_content_policy_violation(excinfo.value)


@pytest.mark.asyncio
async def test_chat_completion_moderator():
    moderator = ChatCompletionPromptModerator(base_url=CHAT_BASE_URL, model="gpt-4o-mini")
    with respx.mock:
        route = respx.post(f"{CHAT_BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(
                200, json={"choices": [{"message": {"content": "  a calm knight  "}}]}
            )
        )
        moderated = await moderator.moderate(prompt="a bloody knight", context="Character: Sir")

    assert moderated == "a calm knight"
    payload = json.loads(route.calls.last.request.read())
    assert payload["model"] == "gpt-4o-mini"
    assert "Character: Sir" in payload["messages"][0]["content"]
    assert payload["messages"][1] == {"role": "user", "content": "a bloody knight"}


@pytest.mark.asyncio
async def test_chat_completion_moderator_falls_back_to_prompt():
    moderator = ChatCompletionPromptModerator(base_url=CHAT_BASE_URL, model="gpt-4o-mini")
    with respx.mock:
        respx.post(f"{CHAT_BASE_URL}/chat/completions").mock(
            side_effect=[
                httpx.Response(500),
                httpx.Response(200, json={"choices": [{"message": {"content": ""}}]}),
            ]
        )
        assert await moderator.moderate(prompt="original") == "original"
        assert await moderator.moderate(prompt="original") == "original"


def test_content_policy_detection():
    assert is_content_policy_violation(content_policy_error())
    assert is_content_policy_violation(
        ProviderError("x", body={"detail": "Image failed safety checks"})
    )
    assert not is_content_policy_violation(ProviderError("x", body={"detail": [{"type": "x"}]}))
    assert not is_content_policy_violation(ProviderError("x", body={"detail": []}))
    assert not is_content_policy_violation(RuntimeError("content_policy_violation"))


def test_content_filter_detection():
    assert is_content_filtered(RuntimeError("Image was filtered by safety check"))
    assert is_content_filtered(RuntimeError("Prompt VIOLATED the Content Policy"))
    assert is_content_filtered(ProviderError("rejected", body={"isContentFiltered": True}))
    assert not is_content_filtered(ProviderError("rejected", body={"isContentFiltered": False}))
    assert not is_content_filtered(RuntimeError("upstream timeout"))
    assert not is_content_policy_violation(RuntimeError("Image was filtered by safety check"))


def test_backoff_delay_is_capped():
    assert backoff_delay_ms(retry_count=0, cap_ms=60_000) == 1000
    assert backoff_delay_ms(retry_count=3, cap_ms=60_000) == 8000
    assert backoff_delay_ms(retry_count=10, cap_ms=60_000) == 60_000


def test_adapter_configuration():
    client = FakeProviderClient()
    moderator = FakeModerator()

    assert openai_adapter(client=client).function_name == "launchOpenAiQueue"
    assert gemini_adapter(client=client).function_name == "launchGeminiQueue"
    assert groq_adapter(client=client).default_model == "whisper-large-v3-turbo"

    fal = fal_adapter(client=client, moderator=moderator)
    assert (fal.queue_name, fal.function_name) == ("fal", "launchFalQueue")
    assert not fal.group_by_model
    assert fal.handle_retry is not None

    wavespeed = wavespeed_adapter(client=client, moderator=moderator)
    assert wavespeed.function_name == "launchWavespeedQueue"
    assert imagerouter_adapter(client=client).handle_retry is None

    modal = modal_adapter(client=client, callback_base_url="https://api.example.com/")
    assert modal.waits_for_external_callback
    assert modal.default_model == "sdxl-outpaint-diffusers"

    book_import = book_import_adapter(client=client, retry_limit=1)
    assert (book_import.function_name, book_import.retry_limit) == ("launchBookImportQueue", 1)


@pytest.mark.asyncio
async def test_gemini_adapter_defaults_json_response():
    client = FakeProviderClient()
    adapter = gemini_adapter(client=client)
    await adapter.process_item(QueueEntry(type="gemini", params={"prompt": "p"}))
    assert client.calls == [{"prompt": "p", "type": "application/json"}]


def test_shape_image_request():
    request = shape_image_request(
        {"prompt": "castle", "outputPathWithoutExtension": "out/scene1", "entryType": "scene"},
        default_model="imagen4-ultra",
    )
    assert request == {
        "entryType": "scene",
        "prompt": "castle",
        "model": "imagen4-ultra",
        "outputPath": "out/scene1.jpeg",
        "outputFormat": "jpeg",
        "modelParams": {},
    }
    with pytest.raises(ValueError):
        shape_image_request({}, default_model=None)


@pytest.mark.asyncio
async def test_wavespeed_adapter_forwards_polling_config():
    client = FakeProviderClient()
    adapter = wavespeed_adapter(client=client, moderator=FakeModerator())
    await adapter.process_item(
        QueueEntry(
            type="wavespeed",
            params={"prompt": "p", "outputPath": "a.png", "pollingConfig": {"maxAttempts": 3}},
        )
    )
    (call,) = client.calls
    assert call["model"] == "wavespeed-ai/flux-kontext-dev/multi"
    assert call["outputPath"] == "a.png"
    assert call["pollingConfig"] == {"maxAttempts": 3}


@pytest.mark.asyncio
async def test_modal_adapter_passes_callback_and_result_key():
    client = FakeProviderClient()
    adapter = modal_adapter(client=client, callback_base_url="https://api.example.com/")
    await adapter.process_item(
        QueueEntry(
            id="modal_outpaint_s1_1_1",
            type="modal",
            entry_type="outpaint",
            time_requested=123,
            params={"inputPath": "in.jpg", "outputPathWithoutExtension": "out", "prompt": "p"},
        )
    )
    (call,) = client.calls
    assert call["resultKey"] == "modal_outpaint_s1_1_1"
    assert call["callbackUrl"] == "https://api.example.com/v1/modal/callback"
    assert call["timestamp"] == 123


@pytest.mark.asyncio
async def test_groq_adapter_estimates_tokens_and_raises_on_error():
    client = FakeProviderClient({"result": "hello world!"}, {"result": {"error": "bad audio"}})
    adapter = groq_adapter(client=client)
    entry = QueueEntry(id="g1", type="groq", params={"audioPath": "a.m4a", "uid": "u"})

    result = await adapter.process_item(entry)
    assert result == {"result": "hello world!", "tokensUsed": 3}
    assert client.calls[0]["model"] == "whisper-large-v3-turbo"
    assert client.calls[0]["traceId"] == "g1"

    with pytest.raises(ProviderError):
        await adapter.process_item(entry)

    assert estimate_transcription_tokens("x" * 10) == math.ceil(2.5)
    assert estimate_transcription_tokens(None) == 0


@pytest.mark.asyncio
async def test_book_import_adapter():
    client = FakeProviderClient({"result": {"transcriptions": "t.json", "metadata": {"a": 1}}})
    adapter = book_import_adapter(client=client)

    result = await adapter.process_item(
        QueueEntry(type="bookImport", params={"uid": "u1", "sku": "s1"})
    )

    assert result == {
        "result": {
            "success": True,
            "transcriptionPath": "t.json",
            "metadata": {"a": 1},
            "sku": "s1",
            "uid": "u1",
        },
        "tokensUsed": 0,
    }
    with pytest.raises(ValueError):
        await adapter.process_item(QueueEntry(type="bookImport", params={"uid": "u1"}))


@pytest.mark.asyncio
async def test_content_policy_rejection_resubmits_moderated_entry(
    make_queue, make_limiter, store
):
    client = FakeProviderClient(content_policy_error(), default={"result": "image.jpeg"})
    moderator = FakeModerator("a calm portrait")
    queue = make_queue(
        fal_adapter(client=client, moderator=moderator),
        rate_limiters={"default": make_limiter(max_requests=10)},
    )
    params = {
        "entryType": "character",
        "prompt": "a violent portrait",
        "graphId": "g1",
        "identifier": "Sir Hero",
        "chapter": 1,
    }

    result = await queue.add_to_queue_batch(entries=[{"params": params}], dispatch=False)
    await queue.process_queue()

    original_key = "fal_character_g1_Sir Hero_ch1"
    moderated_key = "fal_character_g1_sir_hero_moderated_ch1"
    assert result.ids == [original_key]
    original, moderated = await store.get_entries(ids=[original_key, moderated_key])
    assert original.status == "error"
    assert original.trace == (
        f"Content policy violation - moderated version created as entry: {moderated_key}"
    )
    assert moderated.status == "complete"
    assert moderated.retry_count == 1
    assert moderated.batch_id == result.batch_id
    assert moderator.calls == [("a violent portrait", "Character: Sir Hero")]
    assert client.calls[-1]["prompt"] == "a calm portrait"

    status = await queue.get_batch_status(result.batch_id)
    assert (status.completed_items, status.failed_items, status.processing_items) == (1, 0, 0)
    assert status.is_complete


@pytest.mark.asyncio
async def test_content_policy_rejection_at_retry_limit_fails(make_queue, store):
    client = FakeProviderClient(default=content_policy_error())
    moderator = FakeModerator()
    queue = make_queue(fal_adapter(client=client, moderator=moderator))
    params = {
        "entryType": "scene",
        "prompt": "p",
        "graphId": "g1",
        "identifier": "x",
        "chapter": 1,
        "uniqueKey": "fal_limit",
    }
    await queue.add_to_queue(model="default", params=params)
    await store.update_entries(ids=["fal_limit"], retry_count=queue.retry_limit)

    await queue.process_queue()

    (entry,) = await store.get_entries(ids=["fal_limit"])
    assert entry.status == "error"
    assert moderator.calls == []


@pytest.mark.asyncio
async def test_failed_moderation_falls_back_to_default_retry(make_queue, store):
    client = FakeProviderClient(content_policy_error(), default={"result": "ok"})
    queue = make_queue(fal_adapter(client=client, moderator=FakeModerator()))
    params = {"entryType": "scene", "prompt": "p", "uniqueKey": "fal_nokey"}
    await queue.add_to_queue(model="default", params=params)

    await queue.process_queue()

    (entry,) = await store.get_entries(ids=["fal_nokey"])
    assert entry.status == "complete"
    assert entry.retry_count == 1
    assert len(await store.get_entries(queue_type="fal", limit=None)) == 1


@pytest.mark.asyncio
async def test_openai_backoff_policy_retries(make_queue, store):
    client = FakeProviderClient(RuntimeError("rate limited"), default={"result": "ok"})
    queue = make_queue(openai_adapter(client=client))
    await queue.add_to_queue(model="default", params={"entryType": "s", "uniqueKey": "o1"})

    await queue.process_queue()

    (entry,) = await store.get_entries(ids=["o1"])
    assert (entry.status, entry.retry_count) == ("complete", 1)


@pytest.mark.asyncio
async def test_wavespeed_safety_filter_resubmits_moderated_entry(
    make_queue, make_limiter, store
):
    client = FakeProviderClient(
        RuntimeError("Image was filtered by safety check"), default={"result": "image.jpeg"}
    )
    moderator = FakeModerator("a calm portrait")
    queue = make_queue(
        wavespeed_adapter(client=client, moderator=moderator),
        rate_limiters={"default": make_limiter(max_requests=10)},
    )
    params = {
        "entryType": "character",
        "prompt": "a violent portrait",
        "graphId": "g1",
        "identifier": "Sir Hero",
        "chapter": 1,
    }

    result = await queue.add_to_queue_batch(entries=[{"params": params}], dispatch=False)
    await queue.process_queue()

    original_key = "wavespeed_character_g1_Sir Hero_ch1"
    moderated_key = "wavespeed_character_g1_sir_hero_moderated_ch1"
    assert result.ids == [original_key]
    original, moderated = await store.get_entries(ids=[original_key, moderated_key])
    assert original.status == "error"
    assert moderated.status == "complete"
    assert moderator.calls == [("a violent portrait", "Character: Sir Hero")]
    assert client.calls[-1]["prompt"] == "a calm portrait"

    status = await queue.get_batch_status(result.batch_id)
    assert (status.completed_items, status.failed_items, status.processing_items) == (1, 0, 0)
