from aiqueue.exceptions import TaskFailedError, is_deadline_exceeded, iter_exception_chain


def test_is_deadline_exceeded_walks_the_chain():
    outer = RuntimeError("queue failure")
    outer.__cause__ = ValueError("provider call failed")
    outer.__cause__.__context__ = TimeoutError("DEADLINE_EXCEEDED")

    assert is_deadline_exceeded(error=outer)
    assert not is_deadline_exceeded(error=RuntimeError("plain failure"))


def test_iter_exception_chain_handles_cycles():
    first = RuntimeError("first")
    second = ValueError("second")
    first.__cause__ = second
    second.__context__ = first

    assert [str(e) for e in iter_exception_chain(first)] == ["first", "second"]


def test_task_failed_error_message():
    assert str(TaskFailedError("boom")) == "Task failed: boom"
    assert TaskFailedError().trace is None
