"""
Exceptions raised by the kernel runtime.

System faults (connection loss, rejected kernel starts, timeouts) fail the in-flight request and
show up as session status events. ExecutionError is different: a kernel reporting an exception
raised by user code is an expected outcome and is surfaced as an error output on the cell, never
raised out of the runtime.
"""
from typing import List, Optional


class KernelRuntimeError(Exception):
    """Base class for everything raised by cellrunner."""

    # Name used for CellExecutionState.last_error.kind
    kind: str = "RuntimeError"


class KernelConnectionError(KernelRuntimeError, ConnectionError):
    """Transport-level failure. Recoverable by reopening or reconnecting the session."""

    kind = "ConnectionError"


class SessionUnavailable(KernelConnectionError):
    """Submitting to a session that is dead or disconnected fails fast with this."""


class KernelStartError(KernelRuntimeError):
    """The kernel server rejected a kernel start request."""

    kind = "KernelStartError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExecutionTimeout(KernelRuntimeError, TimeoutError):
    """No terminal reply arrived before the request deadline."""

    kind = "TimeoutError"


class ExecutionError(KernelRuntimeError):
    """
    The kernel reported an exception raised inside user code.

    Never raised by the runtime. It names the CellError kind and carries the kernel's ename,
    evalue, and traceback for callers that want to raise from a finished cell's state.
    """

    kind = "ExecutionError"

    def __init__(self, ename: str, evalue: str, traceback: Optional[List[str]] = None):
        super().__init__(f"{ename}: {evalue}")
        self.ename = ename
        self.evalue = evalue
        self.traceback = traceback or []


class ExecutionInterrupted(KernelRuntimeError, InterruptedError):
    """A running request was interrupted at the user's request."""

    kind = "InterruptedError"


class ExecutionCancelled(KernelRuntimeError):
    """
    A request was withdrawn before it finished, either cancelled while still queued or discarded
    because its session was restarted or closed.

    Deliberately not a subclass of asyncio.CancelledError, which would look like task
    cancellation to anything awaiting the request.
    """

    kind = "CancelledError"


class SessionNotFound(KernelRuntimeError, KeyError):
    kind = "SessionNotFound"

    def __str__(self):
        # KeyError.__str__ quotes its argument
        return Exception.__str__(self)


class UnknownServer(KernelRuntimeError, KeyError):
    kind = "UnknownServer"

    def __str__(self):
        return Exception.__str__(self)


def error_kind(exc: BaseException) -> str:
    """Taxonomy name for an exception, falling back to the class name for foreign errors."""
    if isinstance(exc, KernelRuntimeError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return "TimeoutError"
    if isinstance(exc, ConnectionError):
        return "ConnectionError"
    return type(exc).__name__
