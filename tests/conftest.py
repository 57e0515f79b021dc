import typing as t
from pathlib import Path

import pytest

from aiqueue.blob import LocalBlobStore
from aiqueue.config import QueueSettings
from aiqueue.offload import PayloadOffloader
from aiqueue.queue import AiQueue, ProviderAdapter
from aiqueue.rate_limiter import RateLimiter
from aiqueue.store import SQLQueueStore
from aiqueue.triggers import LocalDispatchTrigger
from tests.mocks.clocks import FakeClock

QUEUE_ENV_VARS = (
    "FBDB_STORAGE_THRESHOLD",
    "QUEUE_BATCH_LIMIT",
    "QUEUE_RETRY_LIMIT",
    "QUEUE_MAX_DRAIN_ITERATIONS",
    "QUEUE_PROCESSING_TIMEOUT",
    "AIQUEUE_BLOB_ROOT",
    "AIQUEUE_WEBHOOK_TIMEOUT",
    "AIQUEUE_LOG_LEVEL",
    "AIQUEUE_LOG_JSON",
)


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch, tmp_path: Path):
    for name in QUEUE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AIQUEUE_DATABASE_URL", f"sqlite:///{(tmp_path / 'cli.db').as_posix()}")


@pytest.fixture
def store(tmp_path: Path) -> SQLQueueStore:
    """
    Create a sqlite-backed store in a temporary directory.
    """
    return SQLQueueStore.from_url(f"sqlite:///{(tmp_path / 'queue.db').as_posix()}")


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path / "blobs")


@pytest.fixture
def offloader(blob_store: LocalBlobStore) -> PayloadOffloader:
    return PayloadOffloader(blob_store=blob_store, threshold=0)


@pytest.fixture
def trigger() -> LocalDispatchTrigger:
    """
    Trigger without registered runners: dispatches are only recorded.
    """
    return LocalDispatchTrigger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> QueueSettings:
    return QueueSettings(batch_limit=50, retry_limit=3, max_drain_iterations=20)


@pytest.fixture
def make_limiter(clock: FakeClock) -> t.Callable[..., RateLimiter]:
    def _make(
        *, max_requests: int = 100, max_tokens: int | None = None, window_size_ms: int = 60_000
    ) -> RateLimiter:
        return RateLimiter(
            service_name="test",
            max_requests=max_requests,
            max_tokens=max_tokens,
            window_size_ms=window_size_ms,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_queue(
    store: SQLQueueStore,
    offloader: PayloadOffloader,
    trigger: LocalDispatchTrigger,
    settings: QueueSettings,
    make_limiter: t.Callable[..., RateLimiter],
) -> t.Callable[..., AiQueue]:
    """
    Build an ``AiQueue`` wired to the test store, blob store and trigger.

    Returns
    -------
    typing.Callable[..., AiQueue]
        Factory taking an adapter and optional ``rate_limiters``/``settings``.
    """

    def _make(
        adapter: ProviderAdapter,
        *,
        rate_limiters: t.Mapping[str, RateLimiter] | None = None,
        settings_override: QueueSettings | None = None,
        **kwargs: t.Any,
    ) -> AiQueue:
        if rate_limiters is None:
            rate_limiters = {"default": make_limiter()}
        return AiQueue(
            adapter=adapter,
            store=store,
            offloader=offloader,
            trigger=trigger,
            rate_limiters=rate_limiters,
            settings=settings_override or settings,
            **kwargs,
        )

    return _make
