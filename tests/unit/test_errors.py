import asyncio

import pytest

from cellrunner.errors import (
    ExecutionCancelled,
    ExecutionError,
    ExecutionInterrupted,
    ExecutionTimeout,
    KernelConnectionError,
    KernelStartError,
    SessionNotFound,
    SessionUnavailable,
    error_kind,
)


@pytest.mark.parametrize(
    "exc,kind",
    [
        (KernelConnectionError("gone"), "ConnectionError"),
        (SessionUnavailable("dead"), "ConnectionError"),
        (KernelStartError("nope", status_code=500), "KernelStartError"),
        (ExecutionTimeout("slow"), "TimeoutError"),
        (ExecutionError("NameError", "x"), "ExecutionError"),
        (ExecutionInterrupted("stop"), "InterruptedError"),
        (ExecutionCancelled("never ran"), "CancelledError"),
        (asyncio.TimeoutError(), "TimeoutError"),
        (ConnectionResetError(), "ConnectionError"),
        (ValueError(), "ValueError"),
    ],
)
def test_error_kind(exc, kind):
    assert error_kind(exc) == kind


def test_builtin_bases():
    assert isinstance(ExecutionTimeout("slow"), TimeoutError)
    assert isinstance(KernelConnectionError("gone"), ConnectionError)
    assert not isinstance(ExecutionCancelled("x"), asyncio.CancelledError)


def test_execution_error_message():
    exc = ExecutionError("ValueError", "bad value", ["frame"])
    assert str(exc) == "ValueError: bad value"
    assert exc.traceback == ["frame"]


def test_not_found_message_is_unquoted():
    assert str(SessionNotFound("No session abc")) == "No session abc"
