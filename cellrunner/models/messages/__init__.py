from cellrunner.models.messages.base import (
    BaseKernelMessage,
    BaseKernelRequest,
    BaseKernelResponse,
    Header,
    ParentHeader,
)
from cellrunner.models.messages.discriminators import (
    TERMINAL_REPLY_TYPES,
    KernelMessage,
    build_request,
    parse_kernel_message,
    serialize_message,
)
from cellrunner.models.messages.iopub import (
    DisplayDataMessage,
    ErrorMessage,
    ExecuteResultMessage,
    StatusMessage,
    StreamMessage,
)
from cellrunner.models.messages.shell import (
    ExecuteReply,
    ExecuteRequest,
    ExecuteRequestContent,
    InterruptReply,
    InterruptRequest,
    KernelInfoReply,
    KernelInfoRequest,
)

__all__ = [
    "BaseKernelMessage",
    "BaseKernelRequest",
    "BaseKernelResponse",
    "DisplayDataMessage",
    "ErrorMessage",
    "ExecuteReply",
    "ExecuteRequest",
    "ExecuteRequestContent",
    "ExecuteResultMessage",
    "Header",
    "InterruptReply",
    "InterruptRequest",
    "KernelInfoReply",
    "KernelInfoRequest",
    "KernelMessage",
    "ParentHeader",
    "StatusMessage",
    "StreamMessage",
    "TERMINAL_REPLY_TYPES",
    "build_request",
    "parse_kernel_message",
    "serialize_message",
]
