from cellrunner.engine.correlator import MessageCorrelator, ReplyHandler
from cellrunner.engine.orchestrator import RunAllOrchestrator, RunAllReport
from cellrunner.engine.queue import ExecutionQueue
from cellrunner.engine.reconciler import OutputReconciler
from cellrunner.engine.registry import SessionRegistry

__all__ = [
    "ExecutionQueue",
    "MessageCorrelator",
    "OutputReconciler",
    "ReplyHandler",
    "RunAllOrchestrator",
    "RunAllReport",
    "SessionRegistry",
]
