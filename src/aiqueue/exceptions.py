"""
Queue-specific runtime exceptions.
"""

from __future__ import annotations

import typing as t

DEADLINE_EXCEEDED_MARKER = "DEADLINE_EXCEEDED"


class AiQueueError(Exception):
    """
    Base class for every error raised by the queue engine.
    """


class QueueInsertError(AiQueueError):
    """
    The store refused to insert one or more queue entries.
    """


class BatchTimeoutError(AiQueueError, TimeoutError):
    """
    A batch did not reach ``complete`` within the caller's polling budget.
    """


class DispatchTimeoutError(AiQueueError, TimeoutError):
    """
    A dispatched request did not reach a terminal status within the polling budget.
    """


class TaskFailedError(AiQueueError):
    """
    A queue entry ended in ``error``.

    Parameters
    ----------
    trace : str | None
        Diagnostic trace stored on the failed entry.
    """

    def __init__(self, trace: str | None = None) -> None:
        self.trace = trace
        super().__init__(f"Task failed: {trace or 'Unknown error'}")


class ProviderError(AiQueueError):
    """
    Error reported by an external AI provider.

    Parameters
    ----------
    message : str
        Human readable message.
    status_code : int | None
        HTTP status code returned by the provider, when known.
    body : typing.Any
        Parsed response body, used for content-policy detection.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: t.Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def iter_exception_chain(error: BaseException) -> t.Iterator[BaseException]:
    """Yield ``error`` and every exception reachable through its causes and contexts."""
    seen: set[int] = set()
    pending: list[BaseException] = [error]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                pending.append(linked)


def is_deadline_exceeded(*, error: BaseException) -> bool:
    """
    Detect deadline-exceeded style failures anywhere in an exception chain.

    Parameters
    ----------
    error : BaseException
        Failure raised while processing an entry.

    Returns
    -------
    bool
        ``True`` when any exception of the chain mentions ``DEADLINE_EXCEEDED``.
    """
    return any(DEADLINE_EXCEEDED_MARKER in str(current) for current in iter_exception_chain(error))
