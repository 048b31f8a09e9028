import asyncio
import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr
from typing_extensions import Annotated

from cellrunner.models.sessions import utcnow


class CellStatus(str, enum.Enum):
    idle = "idle"
    queued = "queued"
    running = "running"
    error = "error"


# Output chunks, one per stream / display / result / error message in arrival order
class StreamOutput(BaseModel):
    output_type: Literal["stream"] = "stream"
    name: str = "stdout"
    text: str


class ResultOutput(BaseModel):
    output_type: Literal["result"] = "result"
    # mimetype -> data, e.g. {"text/plain": "4", "text/html": "<b>4</b>"}
    mime_bundle: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Only set for execute_result, display_data has no counter
    execution_count: Optional[int] = None


class ErrorOutput(BaseModel):
    output_type: Literal["error"] = "error"
    name: str
    message: str
    trace: List[str] = Field(default_factory=list)


OutputChunk = Annotated[
    Union[StreamOutput, ResultOutput, ErrorOutput],
    Field(discriminator="output_type"),
]


class CellError(BaseModel):
    # One of ConnectionError, KernelStartError, TimeoutError, ExecutionError, InterruptedError,
    # CancelledError
    kind: str
    message: str = ""
    hint: Optional[str] = None


class CellExecutionState(BaseModel):
    """
    Per-cell execution state proposed to the document model. The document owns the durable copy;
    the OutputReconciler only ever hands it updated snapshots.
    """

    cell_id: str
    status: CellStatus = CellStatus.idle
    execution_count: Optional[int] = None
    outputs: List[OutputChunk] = Field(default_factory=list)
    last_error: Optional[CellError] = None


class CellSpec(BaseModel):
    """A cell as handed over by the document model for "run all" or a single run."""

    cell_id: str
    code: str
    session_id: Optional[uuid.UUID] = None


class ExecutionRequest(BaseModel):
    """
    One queued or running execution of a cell's code.

    Awaiting the request waits for it to settle: the final CellExecutionState is returned when
    the kernel sent an execute_reply (even if user code raised, which is just an error output),
    and the system error is raised if the request timed out, lost its connection, or was
    cancelled or interrupted.
    """

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    cell_id: str
    session_id: uuid.UUID
    code: str
    submitted_at: datetime = Field(default_factory=utcnow)
    # Seconds to wait for the terminal reply once sent, None waits forever
    timeout: Optional[float] = None

    _settled: Optional[asyncio.Future] = PrivateAttr(default=None)
    _interrupted: bool = PrivateAttr(default=False)

    @property
    def settled(self) -> asyncio.Future:
        if self._settled is None:
            self._settled = asyncio.get_running_loop().create_future()
        return self._settled

    @property
    def done(self) -> bool:
        return self._settled is not None and self._settled.done()

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def mark_interrupted(self) -> None:
        self._interrupted = True

    def set_result(self, state: CellExecutionState) -> None:
        if not self.settled.done():
            self.settled.set_result(state)

    def set_exception(self, exc: BaseException) -> None:
        if not self.settled.done():
            self.settled.set_exception(exc)

    def __await__(self):
        return self.settled.__await__()
