from cellrunner.engine.orchestrator import RunAllReport
from cellrunner.errors import (
    ExecutionCancelled,
    ExecutionError,
    ExecutionInterrupted,
    ExecutionTimeout,
    KernelConnectionError,
    KernelRuntimeError,
    KernelStartError,
    SessionNotFound,
    SessionUnavailable,
    UnknownServer,
)
from cellrunner.models.execution import CellExecutionState, CellSpec, CellStatus
from cellrunner.models.servers import KernelServer
from cellrunner.models.sessions import KernelSession, SessionEvent, SessionStatus
from cellrunner.runtime import KernelRuntime
from cellrunner.settings import ErrorPolicy, RuntimeSettings

__version__ = "0.1.0"

__all__ = [
    "CellExecutionState",
    "CellSpec",
    "CellStatus",
    "ErrorPolicy",
    "ExecutionCancelled",
    "ExecutionError",
    "ExecutionInterrupted",
    "ExecutionTimeout",
    "KernelConnectionError",
    "KernelRuntime",
    "KernelRuntimeError",
    "KernelServer",
    "KernelSession",
    "KernelStartError",
    "RunAllReport",
    "RuntimeSettings",
    "SessionEvent",
    "SessionNotFound",
    "SessionStatus",
    "SessionUnavailable",
    "UnknownServer",
]
