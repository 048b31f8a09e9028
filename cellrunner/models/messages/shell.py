"""
Request/reply pairs on the shell and control channels. A reply's parent_header.msg_id is the
msg_id of the request it answers, which is what the MessageCorrelator keys on.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from cellrunner.models.messages.base import BaseKernelRequest, BaseKernelResponse


# Execution
class ExecuteRequestContent(BaseModel):
    code: str
    silent: bool = False
    store_history: bool = True
    user_expressions: Dict[str, Any] = Field(default_factory=dict)
    allow_stdin: bool = False
    stop_on_error: bool = True


class ExecuteRequest(BaseKernelRequest):
    msg_type: Literal["execute_request"] = "execute_request"
    content: ExecuteRequestContent


class ExecuteReplyContent(BaseModel):
    # ok | error | aborted
    status: str
    execution_count: Optional[int] = None
    ename: Optional[str] = None
    evalue: Optional[str] = None
    traceback: List[str] = Field(default_factory=list)


class ExecuteReply(BaseKernelResponse):
    msg_type: Literal["execute_reply"] = "execute_reply"
    content: ExecuteReplyContent


# Interrupts go over the control channel so they aren't stuck behind the running execute_request
class InterruptRequest(BaseKernelRequest):
    msg_type: Literal["interrupt_request"] = "interrupt_request"
    channel: Optional[str] = "control"
    content: Dict[str, Any] = Field(default_factory=dict)


class InterruptReplyContent(BaseModel):
    status: str = "ok"


class InterruptReply(BaseKernelResponse):
    msg_type: Literal["interrupt_reply"] = "interrupt_reply"
    content: InterruptReplyContent = Field(default_factory=InterruptReplyContent)


# Kernel info, sent right after connecting to get a first status update out of the kernel
class KernelInfoRequest(BaseKernelRequest):
    msg_type: Literal["kernel_info_request"] = "kernel_info_request"
    content: Dict[str, Any] = Field(default_factory=dict)


class KernelInfoReply(BaseKernelResponse):
    msg_type: Literal["kernel_info_reply"] = "kernel_info_reply"
    content: Dict[str, Any] = Field(default_factory=dict)
