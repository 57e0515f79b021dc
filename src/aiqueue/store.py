"""
Durable store for queue entries and batch records.
"""

from __future__ import annotations

import asyncio
import random
import typing as t

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from aiqueue.db.models import BatchRow, QueueEntryRow
from aiqueue.db.session import create_db_engine, get_db, init_db, make_session_factory
from aiqueue.exceptions import AiQueueError, QueueInsertError
from aiqueue.models import Batch, BatchUpdateResult, EntryStatus, QueueEntry, now_ms

log = structlog.get_logger(__name__)

CAS_BASE_DELAY_SECONDS = 0.05
CAS_MAX_DELAY_SECONDS = 2.0
CAS_MAX_ATTEMPTS = 5


class QueueStore(t.Protocol):
    async def claim_pending(self, *, queue_type: str, limit: int) -> list[QueueEntry]: ...

    async def get_entries(
        self,
        *,
        ids: t.Sequence[str] | None = None,
        queue_type: str | None = None,
        status: EntryStatus | None = None,
        batch_id: str | None = None,
        params_key: str | None = None,
        params_value: t.Any = None,
        time_requested_after: int | None = None,
        limit: int | None = 10,
    ) -> list[QueueEntry]: ...

    async def insert_entries(self, *, entries: t.Sequence[QueueEntry]) -> list[str]: ...

    async def update_entries(
        self,
        *,
        ids: t.Sequence[str],
        status: EntryStatus | None = None,
        retry_count: int | None = None,
        result: t.Any = None,
        tokens_used: int | None = None,
        trace: str | None = None,
    ) -> int: ...

    async def set_error(self, *, ids: t.Sequence[str], trace: str) -> int: ...

    async def set_complete(self, *, ids: t.Sequence[str], result: t.Any = None) -> int: ...

    async def delete_entries(self, *, ids: t.Sequence[str]) -> int: ...

    async def nuke(self, *, queue_type: str | None = None) -> int: ...

    async def reclaim_stale(self, *, queue_type: str, older_than_ms: int) -> int: ...

    async def create_batch(self, *, batch: Batch) -> Batch: ...

    async def get_batch(self, *, batch_id: str) -> Batch | None: ...

    async def increment_batch_bulk(
        self,
        *,
        batch_id: str,
        processing_delta: int = 0,
        completed_delta: int = 0,
        error_delta: int = 0,
        drain_processing: bool = True,
    ) -> BatchUpdateResult | None: ...


def _entry_from_row(row: t.Any) -> QueueEntry:
    return QueueEntry(
        id=row.id,
        type=row.type,
        entry_type=row.entry_type,
        model=row.model,
        params=row.params or {},
        estimated_tokens=row.estimated_tokens,
        status=row.status,
        retry_count=row.retry_count,
        retry=row.retry,
        batch_id=row.batch_id,
        result=row.result,
        tokens_used=row.tokens_used,
        time_requested=row.time_requested,
        time_updated=row.time_updated,
        processing_started=row.processing_started,
        trace=row.trace,
    )


def _batch_from_row(row: BatchRow) -> Batch:
    return Batch(
        batch_id=row.batch_id,
        queue_name=row.queue_name,
        total_items=row.total_items,
        processing_items=row.processing_items,
        completed_items=row.completed_items,
        failed_items=row.failed_items,
        status=row.status,
        webhook_url=row.webhook_url,
        metadata=row.batch_metadata or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def apply_batch_deltas(
    batch: Batch,
    *,
    processing_delta: int,
    completed_delta: int,
    error_delta: int,
    drain_processing: bool = True,
) -> dict[str, t.Any]:
    """
    Compute the counter values after applying bulk deltas.

    Finished items drain ``processingItems``; every counter is floored at 0
    and increments beyond ``totalItems`` are dropped, so
    ``completedItems + failedItems`` never exceeds it.

    Parameters
    ----------
    batch : Batch
        Current batch record.
    processing_delta : int
        Items entering (positive) or leaving (negative) processing.
    completed_delta : int
        Items that finished successfully.
    error_delta : int
        Items that finished in error.
    drain_processing : bool
        Whether finished items leave ``processingItems``. Items failed before
        they were admitted were never counted there.

    Returns
    -------
    dict[str, typing.Any]
        Column values to write, including ``status``/``completed_at`` when the
        update completes the batch.
    """
    processing = max(0, batch.processing_items + processing_delta)
    room = max(0, batch.total_items - batch.finished_items)
    completed_added = min(max(0, completed_delta), room)
    failed_added = min(max(0, error_delta), room - completed_added)
    if drain_processing:
        processing = max(0, processing - completed_added - failed_added)
    completed = batch.completed_items + completed_added
    failed = batch.failed_items + failed_added

    values: dict[str, t.Any] = {
        "processing_items": processing,
        "completed_items": completed,
        "failed_items": failed,
        "updated_at": now_ms(),
    }
    if completed + failed >= batch.total_items and batch.status != "complete":
        values["status"] = "complete"
        values["completed_at"] = values["updated_at"]
    return values


class SQLQueueStore:
    """
    SQLAlchemy-backed queue store.

    Claims and batch counter updates are single conditional statements, so
    concurrent workers sharing the database never claim the same entry twice
    nor lose a counter increment.
    """

    def __init__(self, *, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SQLQueueStore":
        engine = create_db_engine(database_url)
        init_db(engine)
        return cls(session_factory=make_session_factory(engine))

    async def claim_pending(self, *, queue_type: str, limit: int) -> list[QueueEntry]:
        table = QueueEntryRow.__table__
        now = now_ms()
        candidates = (
            select(table.c.id)
            .where(table.c.type == queue_type, table.c.status == "pending")
            .order_by(table.c.time_requested, table.c.seq)
            .limit(limit)
        )
        statement = (
            update(table)
            .where(table.c.id.in_(candidates), table.c.status == "pending")
            .values(status="processing", processing_started=now, time_updated=now)
            .returning(*table.c)
        )
        with get_db(self._session_factory) as db:
            rows = db.execute(statement).all()
            db.commit()
        rows = sorted(rows, key=lambda row: (row.time_requested, row.seq))
        log.debug(event="Claimed queue entries", queue=queue_type, count=len(rows))
        return [_entry_from_row(row) for row in rows]

    async def get_entries(
        self,
        *,
        ids: t.Sequence[str] | None = None,
        queue_type: str | None = None,
        status: EntryStatus | None = None,
        batch_id: str | None = None,
        params_key: str | None = None,
        params_value: t.Any = None,
        time_requested_after: int | None = None,
        limit: int | None = 10,
    ) -> list[QueueEntry]:
        statement = select(QueueEntryRow)
        if ids is not None:
            statement = statement.where(QueueEntryRow.id.in_(list(ids)))
        if queue_type is not None:
            statement = statement.where(QueueEntryRow.type == queue_type)
        if status is not None:
            statement = statement.where(QueueEntryRow.status == status)
        if batch_id is not None:
            statement = statement.where(QueueEntryRow.batch_id == batch_id)
        if params_key is not None:
            statement = statement.where(
                QueueEntryRow.params[params_key].as_string() == str(params_value)
            )
        if time_requested_after is not None:
            statement = statement.where(QueueEntryRow.time_requested > time_requested_after)
        statement = statement.order_by(QueueEntryRow.time_requested, QueueEntryRow.seq)
        if limit is not None:
            statement = statement.limit(limit)
        with get_db(self._session_factory) as db:
            return [_entry_from_row(row) for row in db.scalars(statement).all()]

    async def insert_entries(self, *, entries: t.Sequence[QueueEntry]) -> list[str]:
        """
        Insert new pending entries keyed by their ``id``.

        Repeated ids within the call keep their last occurrence; ids that
        already exist in the store are skipped, never overwritten.

        Returns
        -------
        list[str]
            Ids of the rows actually inserted, in call order.

        Raises
        ------
        QueueInsertError
            When the insert transaction fails.
        """
        deduplicated: dict[str, QueueEntry] = {}
        for entry in entries:
            if entry.id is None:
                raise ValueError("Queue entries need an id before insertion")
            deduplicated.pop(entry.id, None)
            deduplicated[entry.id] = entry

        if not deduplicated:
            return []

        now = now_ms()
        with get_db(self._session_factory) as db:
            existing = set(
                db.scalars(
                    select(QueueEntryRow.id).where(QueueEntryRow.id.in_(list(deduplicated)))
                ).all()
            )
            last_seq = db.scalar(select(func.coalesce(func.max(QueueEntryRow.seq), 0)))
            rows = []
            for offset, entry in enumerate(deduplicated.values(), start=1):
                if entry.id in existing:
                    log.debug(event="Queue entry already exists, not re-adding", id=entry.id)
                    continue
                rows.append(
                    QueueEntryRow(
                        id=entry.id,
                        type=entry.type,
                        entry_type=entry.entry_type,
                        model=entry.model,
                        params=entry.params,
                        estimated_tokens=entry.estimated_tokens,
                        status=entry.status,
                        retry_count=entry.retry_count,
                        retry=entry.retry,
                        batch_id=entry.batch_id,
                        result=entry.result,
                        tokens_used=entry.tokens_used,
                        time_requested=entry.time_requested or now,
                        time_updated=now,
                        trace=entry.trace or f"Added to queue at {now}",
                        seq=last_seq + offset,
                    )
                )
            inserted = [row.id for row in rows]
            db.add_all(rows)
            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise QueueInsertError(f"Failed to insert {len(rows)} queue entries: {e}") from e
        log.debug(event="Inserted queue entries", count=len(inserted), skipped=len(existing))
        return inserted

    def _update(self, *, ids: t.Sequence[str], values: dict[str, t.Any]) -> int:
        if not ids:
            return 0
        values["time_updated"] = now_ms()
        with get_db(self._session_factory) as db:
            result = db.execute(
                update(QueueEntryRow).where(QueueEntryRow.id.in_(list(ids))).values(**values)
            )
            db.commit()
        return result.rowcount

    async def update_entries(
        self,
        *,
        ids: t.Sequence[str],
        status: EntryStatus | None = None,
        retry_count: int | None = None,
        result: t.Any = None,
        tokens_used: int | None = None,
        trace: str | None = None,
    ) -> int:
        values: dict[str, t.Any] = {}
        if status is not None:
            values["status"] = status
            if status == "pending":
                values["processing_started"] = None
        if retry_count is not None:
            values["retry_count"] = retry_count
        if result is not None:
            values["result"] = result
        if tokens_used is not None:
            values["tokens_used"] = tokens_used
        if trace is not None:
            values["trace"] = trace
        return self._update(ids=ids, values=values)

    async def set_error(self, *, ids: t.Sequence[str], trace: str) -> int:
        return self._update(ids=ids, values={"status": "error", "trace": trace})

    async def set_complete(self, *, ids: t.Sequence[str], result: t.Any = None) -> int:
        values: dict[str, t.Any] = {"status": "complete"}
        if result is not None:
            values["result"] = result
        return self._update(ids=ids, values=values)

    async def delete_entries(self, *, ids: t.Sequence[str]) -> int:
        if not ids:
            return 0
        with get_db(self._session_factory) as db:
            result = db.execute(delete(QueueEntryRow).where(QueueEntryRow.id.in_(list(ids))))
            db.commit()
        return result.rowcount

    async def nuke(self, *, queue_type: str | None = None) -> int:
        """Delete every entry, or every entry of one queue type."""
        statement = delete(QueueEntryRow)
        if queue_type is not None:
            statement = statement.where(QueueEntryRow.type == queue_type)
        with get_db(self._session_factory) as db:
            result = db.execute(statement)
            db.commit()
        log.info(event="Nuked queue entries", queue=queue_type, count=result.rowcount)
        return result.rowcount

    async def reclaim_stale(self, *, queue_type: str, older_than_ms: int) -> int:
        cutoff = now_ms() - older_than_ms
        with get_db(self._session_factory) as db:
            result = db.execute(
                update(QueueEntryRow)
                .where(
                    QueueEntryRow.type == queue_type,
                    QueueEntryRow.status == "processing",
                    QueueEntryRow.processing_started < cutoff,
                )
                .values(status="pending", processing_started=None, time_updated=now_ms())
            )
            db.commit()
        if result.rowcount:
            log.warning(event="Reclaimed stale entries", queue=queue_type, count=result.rowcount)
        return result.rowcount

    async def summarize(self) -> list[tuple[str, str, int]]:
        """Count entries per queue type and status."""
        statement = (
            select(QueueEntryRow.type, QueueEntryRow.status, func.count())
            .group_by(QueueEntryRow.type, QueueEntryRow.status)
            .order_by(QueueEntryRow.type, QueueEntryRow.status)
        )
        with get_db(self._session_factory) as db:
            return [(row[0], row[1], row[2]) for row in db.execute(statement).all()]

    async def create_batch(self, *, batch: Batch) -> Batch:
        now = now_ms()
        row = BatchRow(
            batch_id=batch.batch_id,
            queue_name=batch.queue_name,
            total_items=batch.total_items,
            processing_items=batch.processing_items,
            completed_items=batch.completed_items,
            failed_items=batch.failed_items,
            status=batch.status,
            webhook_url=batch.webhook_url,
            batch_metadata=batch.metadata,
            created_at=batch.created_at or now,
            updated_at=now,
            completed_at=batch.completed_at,
        )
        with get_db(self._session_factory) as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return _batch_from_row(row)

    async def get_batch(self, *, batch_id: str) -> Batch | None:
        with get_db(self._session_factory) as db:
            row = db.get(BatchRow, batch_id)
            return _batch_from_row(row) if row is not None else None

    def _compare_and_swap(
        self,
        *,
        batch_id: str,
        processing_delta: int,
        completed_delta: int,
        error_delta: int,
        drain_processing: bool,
    ) -> tuple[bool, BatchUpdateResult | None]:
        with get_db(self._session_factory) as db:
            row = db.get(BatchRow, batch_id)
            if row is None:
                return True, None
            current = _batch_from_row(row)
            values = apply_batch_deltas(
                current,
                processing_delta=processing_delta,
                completed_delta=completed_delta,
                error_delta=error_delta,
                drain_processing=drain_processing,
            )
            result = db.execute(
                update(BatchRow)
                .where(
                    BatchRow.batch_id == batch_id,
                    BatchRow.processing_items == current.processing_items,
                    BatchRow.completed_items == current.completed_items,
                    BatchRow.failed_items == current.failed_items,
                    BatchRow.status == current.status,
                )
                .values(**values)
            )
            db.commit()
        if result.rowcount != 1:
            return False, None
        updated = current.model_copy(update=values)
        return True, BatchUpdateResult(
            updated_batch=updated,
            should_trigger_webhook=values.get("status") == "complete",
        )

    async def increment_batch_bulk(
        self,
        *,
        batch_id: str,
        processing_delta: int = 0,
        completed_delta: int = 0,
        error_delta: int = 0,
        drain_processing: bool = True,
    ) -> BatchUpdateResult | None:
        """
        Apply counter deltas to a batch with a compare-and-swap update.

        Contention (a concurrent writer changed the counters, or the database
        reported a lock) is retried with exponential backoff and jitter.

        Returns
        -------
        BatchUpdateResult | None
            The updated batch, or ``None`` for an unknown batch.

        Raises
        ------
        AiQueueError
            When the update still conflicts after the last attempt.
        """
        for attempt in range(CAS_MAX_ATTEMPTS):
            try:
                applied, update_result = self._compare_and_swap(
                    batch_id=batch_id,
                    processing_delta=processing_delta,
                    completed_delta=completed_delta,
                    error_delta=error_delta,
                    drain_processing=drain_processing,
                )
            except OperationalError as e:
                log.warning(
                    event="Batch update hit a locked database", batch_id=batch_id, error=str(e)
                )
                applied, update_result = False, None
            if applied:
                if update_result is None:
                    log.error(event="Batch not found", batch_id=batch_id)
                return update_result

            delay = min(CAS_BASE_DELAY_SECONDS * 2**attempt, CAS_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay / 2)
            log.debug(
                event="Batch update contention, retrying",
                batch_id=batch_id,
                attempt=attempt + 1,
                delay=delay,
            )
            await asyncio.sleep(delay)

        raise AiQueueError(
            f"Batch {batch_id} update still conflicting after {CAS_MAX_ATTEMPTS} attempts"
        )
