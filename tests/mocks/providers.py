"""
Fake provider collaborators for queue tests.
"""

import typing as t

from aiqueue.exceptions import ProviderError
from aiqueue.models import QueueEntry
from aiqueue.queue import ProviderAdapter


def name_key(*, type: str, task_params: t.Mapping[str, t.Any], retry: bool = False, **_: t.Any):
    """Deterministic dedup key built from the ``name`` param."""
    suffix = "_retry" if retry else ""
    return f"{type}_{task_params['name']}{suffix}"


class FakeProviderClient:
    """
    Record calls and answer from a queue of scripted responses.

    Each scripted response is either a value returned as-is or an exception
    raised. Once the script is exhausted, ``default`` is returned.
    """

    def __init__(self, *responses: t.Any, default: t.Any = None) -> None:
        self._responses = list(responses)
        self.default = default if default is not None else {"result": "ok", "tokensUsed": 10}
        self.calls: list[dict[str, t.Any]] = []

    async def process(self, params: dict[str, t.Any]) -> t.Any:
        self.calls.append(params)
        response = self._responses.pop(0) if self._responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response


class FailingByNameClient(FakeProviderClient):
    """Fail every call whose params ``name`` is in ``failing``."""

    def __init__(self, *, failing: t.Iterable[str]) -> None:
        super().__init__()
        self.failing = set(failing)

    async def process(self, params: dict[str, t.Any]) -> t.Any:
        if params.get("name") in self.failing:
            self.calls.append(params)
            raise RuntimeError(f"boom {params['name']}")
        return await super().process(params)


class FakeModerator:
    def __init__(self, moderated: str = "a calm portrait") -> None:
        self.moderated = moderated
        self.calls: list[tuple[str, str]] = []

    async def moderate(self, *, prompt: str, context: str = "") -> str:
        self.calls.append((prompt, context))
        return self.moderated


def content_policy_error() -> ProviderError:
    return ProviderError(
        "Rejected by provider",
        status_code=422,
        body={"detail": [{"type": "content_policy_violation", "msg": "nope"}]},
    )


def client_adapter(
    client: FakeProviderClient,
    *,
    queue_name: str = "test",
    default_model: str | None = "default",
    **kwargs: t.Any,
) -> ProviderAdapter:
    async def process_item(entry: QueueEntry) -> t.Any:
        return await client.process(entry.params)

    return ProviderAdapter(
        queue_name=queue_name,
        process_item=process_item,
        unique_key_generator=kwargs.pop("unique_key_generator", name_key),
        default_model=default_model,
        **kwargs,
    )
