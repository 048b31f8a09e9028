"""
The ExecutionQueue keeps one FIFO of ExecutionRequests per session with a single running slot.

 - The head of a session's queue is sent as an execute_request only when nothing else is running
   on that session and the session is idle or busy. While it's starting, the registry's status
   event triggers the send later.
 - The request's msg_id is its request_id, which is how the correlator routes the kernel's
   messages back to it.
 - When the running request settles (terminal reply, timeout, connection loss) the next one is
   promoted, so requests on a session run strictly one after another in submission order.
"""
import collections
import uuid
from typing import Deque, Dict, List, Optional

import structlog

from cellrunner.engine.correlator import MessageCorrelator, ReplyHandler
from cellrunner.engine.reconciler import OutputReconciler
from cellrunner.engine.registry import SessionRegistry
from cellrunner.errors import (
    ExecutionCancelled,
    ExecutionInterrupted,
    ExecutionTimeout,
    KernelConnectionError,
    KernelRuntimeError,
    SessionUnavailable,
)
from cellrunner.models.execution import ExecutionRequest
from cellrunner.models.messages import ExecuteReply
from cellrunner.models.messages.base import BaseKernelResponse
from cellrunner.models.sessions import SessionEvent, SessionStatus

logger = structlog.get_logger(__name__)


class _SessionQueue:
    def __init__(self):
        self.waiting: Deque[ExecutionRequest] = collections.deque()
        self.running: Optional[ExecutionRequest] = None


class _ExecutionHandler(ReplyHandler):
    def __init__(self, queue: "ExecutionQueue", request: ExecutionRequest):
        self.queue = queue
        self.request = request

    async def on_message(self, message: BaseKernelResponse) -> None:
        await self.queue.reconciler.on_message(self.request, message)

    async def on_settled(self, reply=None, exc=None) -> None:
        await self.queue._finish(self.request, reply=reply, exc=exc)


class ExecutionQueue:
    def __init__(
        self,
        registry: SessionRegistry,
        correlator: MessageCorrelator,
        reconciler: OutputReconciler,
        default_timeout: Optional[float] = None,
        interrupt_timeout: Optional[float] = 10.0,
    ):
        self.registry = registry
        self.correlator = correlator
        self.reconciler = reconciler
        self.default_timeout = default_timeout
        self.interrupt_timeout = interrupt_timeout

        self._queues: Dict[uuid.UUID, _SessionQueue] = {}
        # request_id -> request, for everything queued or running
        self._requests: Dict[str, ExecutionRequest] = {}

        registry.subscribe(self._on_session_event)

    def _queue(self, session_id: uuid.UUID) -> _SessionQueue:
        if session_id not in self._queues:
            self._queues[session_id] = _SessionQueue()
        return self._queues[session_id]

    def pending(self, session_id: uuid.UUID) -> List[ExecutionRequest]:
        """Requests waiting behind the running one, in the order they'll be sent."""
        queue = self._queues.get(session_id)
        return list(queue.waiting) if queue else []

    def running(self, session_id: uuid.UUID) -> Optional[ExecutionRequest]:
        queue = self._queues.get(session_id)
        return queue.running if queue else None

    def get_request(self, request_id: str) -> Optional[ExecutionRequest]:
        return self._requests.get(request_id)

    async def enqueue(
        self,
        session_id: uuid.UUID,
        cell_id: str,
        code: str,
        timeout: Optional[float] = None,
    ) -> ExecutionRequest:
        """
        Queue {code} for execution on a session. Await the returned request for the outcome.
        Raises SessionNotFound for unknown sessions and SessionUnavailable for sessions that
        are dead or disconnected, nothing is queued in either case.
        """
        status = self.registry.status(session_id)
        if not status.accepts_requests:
            raise SessionUnavailable(f"Kernel session {session_id} is {status.value}")

        request = ExecutionRequest(
            cell_id=cell_id,
            session_id=session_id,
            code=code,
            timeout=timeout if timeout is not None else self.default_timeout,
        )
        # Bind the settlement future to the running loop now
        request.settled
        self._queue(session_id).waiting.append(request)
        self._requests[request.request_id] = request
        logger.debug(
            "Queued execution",
            session_id=str(session_id),
            cell_id=cell_id,
            request_id=request.request_id,
        )
        await self.reconciler.on_queued(request)
        await self._pump(session_id)
        return request

    async def cancel(self, request_id: str) -> bool:
        """
        Withdraw a queued request without touching the network, or interrupt the kernel if the
        request is already running. Returns False when there is nothing to cancel.
        """
        request = self._requests.get(request_id)
        if request is None:
            return False
        queue = self._queue(request.session_id)
        if request in queue.waiting:
            queue.waiting.remove(request)
            self._requests.pop(request_id, None)
            logger.info(
                "Cancelled queued execution", request_id=request_id, cell_id=request.cell_id
            )
            await self.reconciler.on_cancelled(request)
            request.set_exception(
                ExecutionCancelled(f"Execution of cell {request.cell_id} was cancelled")
            )
            return True
        if queue.running is request:
            await self._interrupt(request)
            return True
        return False

    async def cancel_all(self, session_id: uuid.UUID) -> None:
        """Cancel everything queued on a session, then interrupt whatever is running."""
        queue = self._queues.get(session_id)
        if queue is None:
            return
        for request in list(queue.waiting):
            await self.cancel(request.request_id)
        if queue.running is not None:
            await self.cancel(queue.running.request_id)

    async def _interrupt(self, request: ExecutionRequest) -> None:
        request.mark_interrupted()
        logger.info(
            "Interrupting running execution",
            session_id=str(request.session_id),
            request_id=request.request_id,
        )
        try:
            await self.correlator.send(
                request.session_id, "interrupt_request", timeout=self.interrupt_timeout
            )
        except KernelConnectionError:
            logger.warning(
                "Could not send interrupt_request, interrupting through the REST API",
                session_id=str(request.session_id),
            )
            await self.registry.interrupt_kernel(request.session_id)

    async def _pump(self, session_id: uuid.UUID) -> None:
        queue = self._queues.get(session_id)
        if queue is None or queue.running is not None or not queue.waiting:
            return
        try:
            status = self.registry.status(session_id)
        except KernelRuntimeError:
            return
        if not status.can_execute:
            return

        request = queue.waiting.popleft()
        queue.running = request
        await self.reconciler.on_started(request)
        content = {
            "code": request.code,
            # Whether to carry on after an error is decided by the RunAllOrchestrator
            "stop_on_error": False,
        }
        try:
            await self.correlator.send(
                session_id,
                "execute_request",
                content,
                handler=_ExecutionHandler(self, request),
                msg_id=request.request_id,
                timeout=request.timeout,
            )
        except KernelConnectionError as e:
            await self._finish(request, exc=e)

    async def _finish(
        self,
        request: ExecutionRequest,
        reply: Optional[BaseKernelResponse] = None,
        exc: Optional[KernelRuntimeError] = None,
    ) -> None:
        queue = self._queues.get(request.session_id)
        if queue is not None and queue.running is request:
            queue.running = None
        self._requests.pop(request.request_id, None)

        if exc is None and isinstance(reply, ExecuteReply):
            state = await self.reconciler.on_reply(request, reply)
            if reply.content.execution_count is not None:
                self.registry.record_execution_count(
                    request.session_id, reply.content.execution_count
                )
            if request.interrupted:
                request.set_exception(
                    ExecutionInterrupted(f"Execution of cell {request.cell_id} was interrupted")
                )
            else:
                request.set_result(state)
        else:
            if exc is None:
                exc = KernelConnectionError(
                    f"Kernel answered execution of cell {request.cell_id} with {reply.msg_type}"
                )
            await self.reconciler.on_failed(request, exc)
            if isinstance(exc, ExecutionTimeout):
                await self.registry.report_timeout(request.session_id, request.request_id)
            request.set_exception(exc)
        await self._pump(request.session_id)

    async def _fail_waiting(self, session_id: uuid.UUID, exc: KernelRuntimeError) -> None:
        queue = self._queues.get(session_id)
        if queue is None:
            return
        while queue.waiting:
            request = queue.waiting.popleft()
            self._requests.pop(request.request_id, None)
            await self.reconciler.on_failed(request, exc)
            request.set_exception(exc)

    async def _on_session_event(self, event: SessionEvent) -> None:
        session_id = event.session_id
        if event.status.can_execute:
            await self._pump(session_id)
            return
        failed = event.status in (SessionStatus.disconnected, SessionStatus.dead)
        if not failed and event.reason != "restart":
            return
        if event.is_teardown:
            exc = ExecutionCancelled(f"Kernel session {session_id} was {event.reason}")
        else:
            exc = KernelConnectionError(
                f"Kernel session {session_id} is {event.status.value}: {event.reason}"
            )
        waiting = self.pending(session_id)
        if waiting:
            logger.info(
                "Failing queued executions",
                session_id=str(session_id),
                count=len(waiting),
                reason=event.reason,
            )
        await self._fail_waiting(session_id, exc)
        if event.status is SessionStatus.dead:
            self._queues.pop(session_id, None)
