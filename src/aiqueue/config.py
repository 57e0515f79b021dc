"""
Queue configuration.

Settings are plain pydantic models resolved from the environment (after
``load_dotenv``) once at process start, then injected into the queues.
"""

from __future__ import annotations

import os
import typing as t
from pathlib import Path

from dotenv import load_dotenv
from platformdirs import user_data_dir
from pydantic import BaseModel, ConfigDict, Field

APP_NAME = "aiqueue"
APP_AUTHOR = "aiqueue"

DEFAULT_DATA_DIR = Path(user_data_dir(APP_NAME, APP_AUTHOR))


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


class QueueSettings(BaseModel):
    """
    Engine-wide tunables.

    Parameters
    ----------
    storage_threshold : int
        Payloads whose JSON text is longer than this are offloaded to blob
        storage. ``0`` offloads everything.
    batch_limit : int
        Maximum number of entries claimed per cycle.
    retry_limit : int
        Maximum number of failure retries per entry.
    max_drain_iterations : int
        Upper bound on claim cycles performed by a single ``process_queue`` run.
    processing_timeout_seconds : float | None
        When set, entries stuck in ``processing`` longer than this are reset to
        ``pending`` at the start of a run.
    database_url : str
        SQLAlchemy URL of the queue store.
    blob_root : Path
        Root directory of the local blob store.
    webhook_timeout_seconds : float
        Timeout of batch completion webhook calls.
    log_level : str
        Level of the ``aiqueue`` loggers.
    log_json : bool
        Render log lines as JSON instead of the colored console format.
    """

    model_config = ConfigDict(frozen=True)

    storage_threshold: int = 0
    batch_limit: int = 2000
    retry_limit: int = 3
    max_drain_iterations: int = Field(default=100, ge=1)
    processing_timeout_seconds: float | None = None
    database_url: str = f"sqlite:///{(DEFAULT_DATA_DIR / f'{APP_NAME}.db').as_posix()}"
    blob_root: Path = DEFAULT_DATA_DIR / "blobs"
    webhook_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    log_json: bool = False


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_name: str
    max_requests: int
    max_tokens: int | None = None
    window_size_ms: int = 60_000


def load_settings(*, env_file: str | None = None) -> QueueSettings:
    """
    Build settings from environment variables.

    Parameters
    ----------
    env_file : str | None, optional
        Optional dotenv file to load before reading the environment.

    Returns
    -------
    QueueSettings
        Resolved settings.
    """
    load_dotenv(dotenv_path=env_file, override=False)
    defaults = QueueSettings()
    database_url = os.getenv("AIQUEUE_DATABASE_URL") or defaults.database_url
    blob_root = os.getenv("AIQUEUE_BLOB_ROOT")
    return QueueSettings(
        storage_threshold=_env_int("FBDB_STORAGE_THRESHOLD", defaults.storage_threshold),
        batch_limit=_env_int("QUEUE_BATCH_LIMIT", defaults.batch_limit),
        retry_limit=_env_int("QUEUE_RETRY_LIMIT", defaults.retry_limit),
        max_drain_iterations=_env_int(
            "QUEUE_MAX_DRAIN_ITERATIONS", defaults.max_drain_iterations
        ),
        processing_timeout_seconds=_env_float(
            "QUEUE_PROCESSING_TIMEOUT", defaults.processing_timeout_seconds
        ),
        database_url=database_url,
        blob_root=Path(blob_root).expanduser() if blob_root else defaults.blob_root,
        webhook_timeout_seconds=t.cast(
            float, _env_float("AIQUEUE_WEBHOOK_TIMEOUT", defaults.webhook_timeout_seconds)
        ),
        log_level=(os.getenv("AIQUEUE_LOG_LEVEL") or defaults.log_level).upper(),
        log_json=os.getenv("AIQUEUE_LOG_JSON", "").lower() in ("1", "true", "yes"),
    )


def _limit(
    *,
    service_name: str,
    env_prefix: str,
    max_requests: int,
    max_tokens: int | None = None,
    window_size_ms: int = 60_000,
) -> RateLimitConfig:
    tokens = max_tokens
    if max_tokens is not None:
        tokens = _env_int(f"{env_prefix}_MAX_TOKENS", max_tokens)
    return RateLimitConfig(
        service_name=service_name,
        max_requests=_env_int(f"{env_prefix}_MAX_REQUESTS", max_requests),
        max_tokens=tokens,
        window_size_ms=_env_int(f"{env_prefix}_WINDOW_SIZE", window_size_ms),
    )


def default_rate_limit_configs() -> dict[str, dict[str, RateLimitConfig]]:
    """
    Per-provider rate limit table, keyed by queue name then model name.

    Returns
    -------
    dict[str, dict[str, RateLimitConfig]]
        Rate limit configurations with environment overrides applied.
    """
    openai_mini = dict(env_prefix="OPENAI_GPT41MINI", max_requests=30_000, max_tokens=30_000_000)
    return {
        "gemini": {
            "gemini-1.5-pro": _limit(
                service_name="gemini-pro",
                env_prefix="GEMINI_PRO",
                max_requests=1000,
                max_tokens=4_000_000,
            ),
            "gemini-1.5-flash": _limit(
                service_name="gemini-flash",
                env_prefix="GEMINI_FLASH",
                max_requests=2000,
                max_tokens=4_000_000,
            ),
        },
        "openai": {
            "gpt-4": _limit(
                service_name="openai-gpt4",
                env_prefix="OPENAI",
                max_requests=30_000,
                max_tokens=30_000_000,
            ),
            "gpt-4o": _limit(
                service_name="openai-gpt-4o",
                env_prefix="OPENAI_GPT4O",
                max_requests=30_000,
                max_tokens=30_000_000,
            ),
            "gpt-4.1-mini": _limit(service_name="openai-gpt-4-1-mini", **openai_mini),
            "gpt-4o-2024-08-06": _limit(
                service_name="openai-gpt-4o-2024-08-06",
                env_prefix="OPENAI_GPT4O20240806",
                max_requests=30_000,
                max_tokens=30_000_000,
            ),
        },
        "modal": {
            "sdxl-outpaint-diffusers": _limit(
                service_name="modal-sdxl-outpaint",
                env_prefix="MODAL_SDXL",
                max_requests=1000,
            ),
        },
        "imagerouter": {
            "default": _limit(
                service_name="imagerouter-default",
                env_prefix="IMAGEROUTER",
                max_requests=10,
                window_size_ms=1000,
            ),
        },
        "fal": {
            "default": _limit(
                service_name="fal-default",
                env_prefix="FAL",
                max_requests=10,
                window_size_ms=1000,
            ),
        },
        "wavespeed": {
            "default": _limit(
                service_name="wavespeed-default",
                env_prefix="WAVESPEED",
                max_requests=100,
            ),
        },
        "openrouter": {
            "default": _limit(
                service_name="openrouter-default",
                env_prefix="OPENROUTER",
                max_requests=50,
                max_tokens=100_000,
                window_size_ms=5000,
            ),
            "transcription": _limit(
                service_name="openrouter-transcription",
                env_prefix="OPENROUTER_TRANSCRIPTION",
                max_requests=50,
                max_tokens=100_000,
                window_size_ms=5000,
            ),
        },
        "groq": {
            "whisper-large-v3-turbo": _limit(
                service_name="groq-whisper",
                env_prefix="GROQ_WHISPER",
                max_requests=275,
                max_tokens=1_000_000,
            ),
        },
        "bookImport": {
            "default": RateLimitConfig(
                service_name="book-import", max_requests=100, window_size_ms=60_000
            ),
        },
    }


def default_generic_rate_limit_config() -> RateLimitConfig:
    """
    Permissive limit used by generic queues without explicit limiters.
    """
    return _limit(
        service_name="generic-queue-default",
        env_prefix="DEFAULT",
        max_requests=100_000,
        max_tokens=100_000_000,
    )
