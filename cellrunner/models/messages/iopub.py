"""
Broadcast messages on the iopub channel. Everything a kernel prints, displays, or raises while
executing a request shows up here, parented to that request's execute_request msg_id.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from cellrunner.models.messages.base import BaseKernelResponse


class IOPubResponse(BaseKernelResponse):
    channel: Optional[str] = "iopub"


class StatusContent(BaseModel):
    # starting | idle | busy | restarting | autorestarting | dead
    execution_state: str


class StatusMessage(IOPubResponse):
    msg_type: Literal["status"] = "status"
    content: StatusContent


class StreamContent(BaseModel):
    name: Literal["stdout", "stderr"] = "stdout"
    text: str = ""


class StreamMessage(IOPubResponse):
    msg_type: Literal["stream"] = "stream"
    content: StreamContent


class DisplayDataContent(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transient: Dict[str, Any] = Field(default_factory=dict)


class DisplayDataMessage(IOPubResponse):
    msg_type: Literal["display_data"] = "display_data"
    content: DisplayDataContent


class ExecuteResultContent(BaseModel):
    execution_count: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecuteResultMessage(IOPubResponse):
    msg_type: Literal["execute_result"] = "execute_result"
    content: ExecuteResultContent


class ErrorContent(BaseModel):
    ename: str = ""
    evalue: str = ""
    traceback: List[str] = Field(default_factory=list)


class ErrorMessage(IOPubResponse):
    msg_type: Literal["error"] = "error"
    content: ErrorContent
