import typing as t

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class QueueEntryRow(Base):
    __tablename__ = "queue_entries"
    __table_args__ = (
        Index("ix_queue_entries_claim", "type", "status", "time_requested", "seq"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    entry_type: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    params: Mapped[dict] = mapped_column(JSON, nullable=False)
    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[t.Literal["pending", "processing", "complete", "error"]] = mapped_column(
        String, nullable=False, default="pending"
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    batch_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_requested: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processing_started: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    trace: Mapped[str | None] = mapped_column(String, nullable=True)
    # store-wide insertion counter, orders entries sharing a timestamp
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class BatchRow(Base):
    __tablename__ = "queue_batches"

    batch_id: Mapped[str] = mapped_column(String, primary_key=True)
    queue_name: Mapped[str] = mapped_column(String, nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False)
    processing_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[t.Literal["processing", "complete"]] = mapped_column(
        String, nullable=False, default="processing"
    )
    webhook_url: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
