import asyncio
import json

import httpx
import pytest
import respx

from aiqueue.triggers import HttpDispatchTrigger, LocalDispatchTrigger


@pytest.mark.asyncio
async def test_local_trigger_runs_registered_function():
    trigger = LocalDispatchTrigger()
    received = []

    async def run(data):
        received.append(data)

    trigger.register(function_name="launchTestQueue", run=run)
    await trigger.dispatch(function_name="launchTestQueue", data={"a": 1})
    await trigger.drain()

    assert received == [{"a": 1}]
    assert trigger.dispatched == ["launchTestQueue"]
    assert trigger.pending_tasks == 0


@pytest.mark.asyncio
async def test_local_trigger_records_unknown_functions(trigger: LocalDispatchTrigger):
    await trigger.dispatch(function_name="launchMissingQueue")
    await trigger.drain()
    assert trigger.dispatched == ["launchMissingQueue"]


@pytest.mark.asyncio
async def test_local_trigger_drain_waits_for_chained_runs():
    trigger = LocalDispatchTrigger(delay=0.01)
    runs = []

    async def run(data):
        runs.append(data["n"])
        if data["n"] < 3:
            await trigger.dispatch(function_name="launchChainQueue", data={"n": data["n"] + 1})

    trigger.register(function_name="launchChainQueue", run=run)
    await trigger.dispatch(function_name="launchChainQueue", data={"n": 1})
    await trigger.drain()

    assert runs == [1, 2, 3]


@pytest.mark.asyncio
async def test_local_trigger_survives_failing_run():
    trigger = LocalDispatchTrigger()

    async def run(data):
        raise RuntimeError("run failed")

    trigger.register(function_name="launchBadQueue", run=run)
    await trigger.dispatch(function_name="launchBadQueue")
    await trigger.drain()
    await asyncio.sleep(0)
    assert trigger.pending_tasks == 0


@pytest.mark.asyncio
async def test_http_trigger_posts_payload():
    with respx.mock:
        route = respx.post("https://tasks.example.com/launchOpenAiQueue").mock(
            return_value=httpx.Response(200, json={})
        )
        trigger = HttpDispatchTrigger(
            base_url="https://tasks.example.com/", headers={"Authorization": "Bearer t"}
        )
        await trigger.dispatch(function_name="launchOpenAiQueue", data={"x": 1})

    assert route.called
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer t"
    assert json.loads(request.read()) == {"data": {"x": 1}}


@pytest.mark.asyncio
async def test_http_trigger_logs_failures_without_raising():
    with respx.mock:
        respx.post("https://tasks.example.com/launchFalQueue").mock(
            return_value=httpx.Response(503)
        )
        respx.post("https://tasks.example.com/launchGroqQueue").mock(
            side_effect=httpx.ConnectError("unreachable")
        )
        trigger = HttpDispatchTrigger(base_url="https://tasks.example.com")
        await trigger.dispatch(function_name="launchFalQueue")
        await trigger.dispatch(function_name="launchGroqQueue")
