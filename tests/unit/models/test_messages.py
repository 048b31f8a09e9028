import orjson
import pydantic
import pytest

from cellrunner.models.messages import (
    BaseKernelResponse,
    ErrorMessage,
    ExecuteReply,
    ExecuteRequest,
    StatusMessage,
    StreamMessage,
    build_request,
    parse_kernel_message,
    serialize_message,
)


def frame(msg_type, content, parent_header=None, **extra) -> bytes:
    return orjson.dumps(
        {
            "header": {"msg_id": "m-1", "msg_type": msg_type, "session": "kernel"},
            "parent_header": parent_header if parent_header is not None else {},
            "metadata": {},
            "content": content,
            "channel": "iopub",
            **extra,
        }
    )


class TestParseKernelMessage:
    def test_status(self):
        message = parse_kernel_message(
            frame("status", {"execution_state": "busy"}, {"msg_id": "req-1"})
        )

        assert isinstance(message, StatusMessage)
        assert message.content.execution_state == "busy"
        assert message.msg_id == "m-1"
        assert message.parent_id == "req-1"

    def test_stream(self):
        message = parse_kernel_message(frame("stream", {"name": "stderr", "text": "oops"}))

        assert isinstance(message, StreamMessage)
        assert message.content.name == "stderr"

    def test_error(self):
        content = {"ename": "NameError", "evalue": "x", "traceback": ["\x1b[0;31mNameError"]}
        message = parse_kernel_message(frame("error", content))

        assert isinstance(message, ErrorMessage)
        assert message.content.traceback == ["\x1b[0;31mNameError"]

    def test_execute_reply(self):
        message = parse_kernel_message(
            frame("execute_reply", {"status": "ok", "execution_count": 4}, {"msg_id": "req-1"})
        )

        assert isinstance(message, ExecuteReply)
        assert message.content.execution_count == 4

    def test_broadcast_without_parent(self):
        raw = orjson.loads(frame("status", {"execution_state": "idle"}))
        del raw["parent_header"]

        message = parse_kernel_message(orjson.dumps(raw))
        assert message.parent_id is None

    @pytest.mark.parametrize(
        "msg_type,content",
        [
            ("execute_input", {"code": "1", "execution_count": 1}),
            ("comm_msg", {"comm_id": "x", "data": {}}),
            # Known type, content that doesn't fit the model
            ("status", {"unexpected": True}),
        ],
    )
    def test_fallback_to_base_response(self, msg_type, content):
        message = parse_kernel_message(frame(msg_type, content))

        assert type(message) is BaseKernelResponse
        assert message.msg_type == msg_type

    def test_not_json(self):
        with pytest.raises(ValueError):
            parse_kernel_message(b"{not json")

    def test_not_a_message(self):
        with pytest.raises(pydantic.ValidationError):
            parse_kernel_message(b'{"hello": "world"}')


class TestBuildRequest:
    def test_execute_request(self):
        request = build_request("execute_request", {"code": "x = 1"}, session="s", msg_id="abc")

        assert isinstance(request, ExecuteRequest)
        assert request.msg_id == "abc"
        assert request.channel == "shell"
        assert request.content.code == "x = 1"
        assert request.content.silent is False

    def test_interrupt_goes_to_control(self):
        assert build_request("interrupt_request").channel == "control"

    def test_unsupported_type(self):
        with pytest.raises(ValueError):
            build_request("comm_open")

    def test_serialized_shape(self):
        request = build_request("kernel_info_request", session="client", msg_id="k-1")
        data = orjson.loads(serialize_message(request))

        assert data["msg_type"] == "kernel_info_request"
        assert data["header"]["msg_id"] == "k-1"
        assert data["header"]["session"] == "client"
        assert data["header"]["version"] == "5.3"
        assert data["parent_header"] == {"msg_id": None, "msg_type": None}
        assert data["content"] == {}
