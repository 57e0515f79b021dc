from __future__ import annotations

import time
import typing as t
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


EntryStatus = t.Literal["pending", "processing", "complete", "error"]
BatchState = t.Literal["processing", "complete"]
OutcomeStatus = t.Literal["complete", "processing", "error", "retry"]

PARAMS_POINTER_KEY = "paramsGcsPath"
RESULT_POINTER_KEY = "resultGcsPath"


def now_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_record(self) -> dict[str, t.Any]:
        """Dump with the persisted camelCase field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class QueueEntry(_CamelModel):
    id: str | None = None
    type: str
    entry_type: str | None = None
    model: str | None = None
    params: dict[str, t.Any] = Field(default_factory=dict)
    estimated_tokens: int = 0
    status: EntryStatus = "pending"
    retry_count: int = 0
    retry: bool = False
    batch_id: str | None = None
    result: t.Any = None
    tokens_used: int = 0
    time_requested: int | None = None
    time_updated: int | None = None
    processing_started: int | None = None
    trace: str | None = None

    @property
    def params_gcs_path(self) -> str | None:
        return self.params.get(PARAMS_POINTER_KEY)


class NewQueueEntry(_CamelModel):
    """
    Caller-side description of an entry to enqueue in a batch.
    """

    model: str | None = None
    params: dict[str, t.Any] = Field(default_factory=dict)
    estimated_tokens: int = 0
    retry: bool = False
    reference_key: str | None = None


class Batch(_CamelModel):
    batch_id: str
    queue_name: str
    total_items: int
    processing_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    status: BatchState = "processing"
    webhook_url: str | None = None
    metadata: dict[str, t.Any] = Field(default_factory=dict)
    created_at: int | None = None
    updated_at: int | None = None
    completed_at: int | None = None

    @property
    def finished_items(self) -> int:
        return self.completed_items + self.failed_items


class BatchStatus(Batch):
    id: str
    completion_percentage: int = 0
    is_complete: bool = False

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchStatus":
        percentage = 0
        if batch.total_items > 0:
            percentage = round(batch.finished_items / batch.total_items * 100)
        return cls(
            id=batch.batch_id,
            completion_percentage=percentage,
            is_complete=batch.status == "complete",
            **batch.model_dump(),
        )


class InsertResult(_CamelModel):
    success: bool
    ids: list[str] = Field(default_factory=list)
    error: str | None = None
    batch_id: str | None = None


class ProcessResult(BaseModel):
    """
    Normalized return value of a provider ``process_item`` call.
    """

    model_config = ConfigDict(extra="allow")

    result: t.Any = None
    tokens_used: int | None = None

    @classmethod
    def normalize(cls, raw: t.Any) -> "ProcessResult":
        """
        Wrap a bare provider result.

        Mappings that already carry a truthy ``result`` key are taken as-is
        (``tokensUsed`` and ``tokens_used`` are both accepted); anything else
        becomes the ``result`` payload.
        """
        if isinstance(raw, ProcessResult):
            return raw
        if isinstance(raw, dict) and raw.get("result"):
            tokens = raw.get("tokensUsed", raw.get("tokens_used"))
            extra = {
                key: value
                for key, value in raw.items()
                if key not in ("result", "tokensUsed", "tokens_used")
            }
            return cls(result=raw["result"], tokens_used=tokens, **extra)
        return cls(result=raw)

    def to_record(self) -> dict[str, t.Any]:
        record = {key: value for key, value in self.model_dump().items() if key != "tokens_used"}
        if self.tokens_used is not None:
            record["tokensUsed"] = self.tokens_used
        return {key: value for key, value in record.items() if value is not None}


@dataclass(frozen=True)
class ProcessOutcome:
    success: bool
    status: OutcomeStatus


@dataclass(frozen=True)
class Capacity:
    requests: int
    tokens: float


@dataclass(frozen=True)
class BatchPlan:
    """
    Greedy admission result for one model group.

    Parameters
    ----------
    batch : list[QueueEntry]
        Admitted prefix of the claimed entries.
    batch_tokens : int
        Sum of estimated tokens of the admitted entries.
    batch_requests : int
        Number of admitted entries.
    """

    batch: list[QueueEntry]
    batch_tokens: int
    batch_requests: int


@dataclass(frozen=True)
class BatchUpdateResult:
    updated_batch: Batch
    should_trigger_webhook: bool

    @property
    def webhook_url(self) -> str | None:
        return self.updated_batch.webhook_url
