from typing import Any, Dict, Optional, Type, Union

import orjson
from pydantic import Field, TypeAdapter
from typing_extensions import Annotated

from cellrunner.models.messages.base import BaseKernelRequest, BaseKernelResponse, Header
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
    InterruptReply,
    InterruptRequest,
    KernelInfoReply,
    KernelInfoRequest,
)

# Use: parse_kernel_message(<websocket frame>)
# Messages with a msg_type we don't model (execute_input, comm_open, clear_output, ...) or whose
# content doesn't validate fall back to BaseKernelResponse. They're still correlated by parent
# id, the reconciler just has nothing to fold them into.
KernelResponse = Annotated[
    Union[
        StatusMessage,
        StreamMessage,
        DisplayDataMessage,
        ExecuteResultMessage,
        ErrorMessage,
        ExecuteReply,
        InterruptReply,
        KernelInfoReply,
    ],
    Field(discriminator="msg_type"),
]

KernelMessage = Annotated[
    Union[KernelResponse, BaseKernelResponse],
    Field(union_mode="left_to_right"),
]

# Replies that end a request's pending entry in the MessageCorrelator
TERMINAL_REPLY_TYPES = (ExecuteReply, InterruptReply, KernelInfoReply)

REQUEST_TYPES: Dict[str, Type[BaseKernelRequest]] = {
    "execute_request": ExecuteRequest,
    "interrupt_request": InterruptRequest,
    "kernel_info_request": KernelInfoRequest,
}

_kernel_message_adapter = TypeAdapter(KernelMessage)


def parse_kernel_message(contents: Union[str, bytes]) -> BaseKernelResponse:
    """
    Two-pass parse: decode the frame, lift header.msg_type to the top level, then go through the
    discriminated union to a specific message model (or fall back to BaseKernelResponse).

    Raises ValueError (orjson.JSONDecodeError) for frames that aren't JSON and
    pydantic.ValidationError for JSON that isn't shaped like a kernel message at all.
    """
    data = orjson.loads(contents)
    if isinstance(data, dict):
        header = data.get("header") or {}
        data["msg_type"] = header.get("msg_type") if isinstance(header, dict) else None
        # Gateways send parent_header as {} or omit it for broadcasts
        if not data.get("parent_header"):
            data["parent_header"] = {}
    return _kernel_message_adapter.validate_python(data)


def build_request(
    msg_type: str,
    content: Any = None,
    session: str = "",
    msg_id: Optional[str] = None,
) -> BaseKernelRequest:
    """Build an outbound request by msg_type, e.g. build_request("execute_request", {"code": "1"})
    """
    try:
        request_class = REQUEST_TYPES[msg_type]
    except KeyError:
        raise ValueError(f"Unsupported outbound message type {msg_type!r}") from None
    header = Header(msg_type=msg_type, session=session)
    if msg_id:
        header.msg_id = msg_id
    if content is None:
        content = {}
    return request_class(header=header, content=content)


def serialize_message(message: BaseKernelRequest) -> str:
    return message.model_dump_json()
