"""
The OutputReconciler folds kernel messages into per-cell CellExecutionState and proposes every
change to the document model through a single callback.

It keeps a shadow copy of each cell's state so that a notebook UI (or the CLI) only has to
apply snapshots: outputs are appended in arrival order and never merged, a new execution of a
cell replaces its outputs wholesale, and the execution count always comes from the kernel.
"""
from typing import Awaitable, Callable, Dict, Optional

import structlog

from cellrunner.errors import error_kind
from cellrunner.models.execution import (
    CellError,
    CellExecutionState,
    CellStatus,
    ErrorOutput,
    ExecutionRequest,
    ResultOutput,
    StreamOutput,
)
from cellrunner.models.messages import (
    DisplayDataMessage,
    ErrorMessage,
    ExecuteReply,
    ExecuteResultMessage,
    StatusMessage,
    StreamMessage,
)
from cellrunner.models.messages.base import BaseKernelResponse
from cellrunner.tracebacks import describe_error

logger = structlog.get_logger(__name__)

CellStateCallback = Callable[[str, CellExecutionState], Awaitable[None]]


class OutputReconciler:
    def __init__(self, on_cell_state_change: Optional[CellStateCallback] = None):
        self.on_cell_state_change = on_cell_state_change
        self._states: Dict[str, CellExecutionState] = {}
        # cell_id -> request_id of the execution currently running it
        self._running: Dict[str, str] = {}

    def get_state(self, cell_id: str) -> CellExecutionState:
        if cell_id not in self._states:
            return CellExecutionState(cell_id=cell_id)
        return self._states[cell_id].model_copy(deep=True)

    def _state(self, cell_id: str) -> CellExecutionState:
        if cell_id not in self._states:
            self._states[cell_id] = CellExecutionState(cell_id=cell_id)
        return self._states[cell_id]

    def _run_by_other(self, request: ExecutionRequest) -> bool:
        running = self._running.get(request.cell_id)
        return running is not None and running != request.request_id

    def _release(self, request: ExecutionRequest) -> None:
        if self._running.get(request.cell_id) == request.request_id:
            del self._running[request.cell_id]

    async def _emit(self, state: CellExecutionState) -> CellExecutionState:
        snapshot = state.model_copy(deep=True)
        if self.on_cell_state_change is not None:
            try:
                await self.on_cell_state_change(state.cell_id, snapshot)
            except Exception:
                logger.exception("Error in cell state callback", cell_id=state.cell_id)
        return snapshot

    # Request lifecycle, driven by the ExecutionQueue
    async def on_queued(self, request: ExecutionRequest) -> None:
        if self._run_by_other(request):
            # An earlier execution of this cell is still running, it owns the state
            return
        state = self._state(request.cell_id)
        state.status = CellStatus.queued
        await self._emit(state)

    async def on_started(self, request: ExecutionRequest) -> None:
        self._running[request.cell_id] = request.request_id
        state = self._state(request.cell_id)
        state.status = CellStatus.running
        state.outputs = []
        state.execution_count = None
        state.last_error = None
        await self._emit(state)

    async def on_message(self, request: ExecutionRequest, message: BaseKernelResponse) -> None:
        state = self._state(request.cell_id)
        if isinstance(message, StatusMessage):
            execution_state = message.content.execution_state
            if execution_state == "busy" and state.status is not CellStatus.error:
                state.status = CellStatus.running
            elif execution_state == "idle" and state.status is not CellStatus.error:
                state.status = CellStatus.idle
            else:
                return
        elif isinstance(message, StreamMessage):
            state.outputs.append(StreamOutput(name=message.content.name, text=message.content.text))
        elif isinstance(message, DisplayDataMessage):
            state.outputs.append(
                ResultOutput(mime_bundle=message.content.data, metadata=message.content.metadata)
            )
        elif isinstance(message, ExecuteResultMessage):
            state.outputs.append(
                ResultOutput(
                    mime_bundle=message.content.data,
                    metadata=message.content.metadata,
                    execution_count=message.content.execution_count,
                )
            )
        elif isinstance(message, ErrorMessage):
            content = message.content
            state.outputs.append(
                ErrorOutput(name=content.ename, message=content.evalue, trace=content.traceback)
            )
            state.status = CellStatus.error
            state.last_error = self._user_error(content.ename, content.evalue, content.traceback)
        else:
            # execute_input, clear_output, comm traffic... nothing to fold in
            return
        await self._emit(state)

    async def on_reply(self, request: ExecutionRequest, reply: ExecuteReply) -> CellExecutionState:
        self._release(request)
        state = self._state(request.cell_id)
        content = reply.content
        if content.execution_count is not None:
            state.execution_count = content.execution_count

        if request.interrupted:
            state.status = CellStatus.error
            state.last_error = CellError(kind="InterruptedError", message="Execution interrupted")
        elif content.status == "error":
            state.status = CellStatus.error
            if not any(isinstance(chunk, ErrorOutput) for chunk in state.outputs):
                # Some kernels only report the exception on the reply
                state.outputs.append(
                    ErrorOutput(
                        name=content.ename or "Error",
                        message=content.evalue or "",
                        trace=content.traceback,
                    )
                )
            if state.last_error is None:
                state.last_error = self._user_error(
                    content.ename or "Error", content.evalue or "", content.traceback
                )
        elif content.status == "aborted":
            state.status = CellStatus.error
            state.last_error = CellError(
                kind="CancelledError", message="The kernel aborted the execution"
            )
        else:
            state.status = CellStatus.idle
        return await self._emit(state)

    async def on_failed(self, request: ExecutionRequest, exc: BaseException) -> CellExecutionState:
        """A system fault ended the request. Partial outputs stay."""
        if self._run_by_other(request):
            return self.get_state(request.cell_id)
        self._release(request)
        state = self._state(request.cell_id)
        state.status = CellStatus.error
        state.last_error = CellError(kind=error_kind(exc), message=str(exc))
        return await self._emit(state)

    async def on_cancelled(self, request: ExecutionRequest) -> CellExecutionState:
        """Withdrawn while still queued, the cell keeps its previous outputs."""
        if self._run_by_other(request):
            return self.get_state(request.cell_id)
        state = self._state(request.cell_id)
        if state.status is CellStatus.queued:
            state.status = CellStatus.idle
        state.last_error = CellError(kind="CancelledError", message="Execution cancelled")
        return await self._emit(state)

    def _user_error(self, ename: str, evalue: str, traceback) -> CellError:
        summary = describe_error(ename, evalue, traceback)
        return CellError(kind="ExecutionError", message=f"{ename}: {evalue}", hint=summary.hint)
