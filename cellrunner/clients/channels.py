"""
KernelChannel is the transport for one kernel session: a websocket to the kernel server's
/api/kernels/{kernel_id}/channels endpoint that carries shell, control, and iopub messages
multiplexed as JSON frames.

 - Outbound: pydantic request models are serialized to JSON and written to the socket
 - Inbound: frames are parsed into KernelMessage models and handed to the on_message callback,
   one at a time, in the order they came off the wire
 - An unexpected close is reported once through on_disconnect as a KernelConnectionError.
   Reconnecting is the SessionRegistry's decision, the channel never retries by itself.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

import pydantic
import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from cellrunner.errors import KernelConnectionError
from cellrunner.models.messages import BaseKernelRequest, parse_kernel_message, serialize_message
from cellrunner.models.messages.base import BaseKernelResponse

logger = logging.getLogger(__name__)

MessageCallback = Callable[[BaseKernelResponse], Awaitable[None]]
DisconnectCallback = Callable[[KernelConnectionError], Awaitable[None]]


class KernelChannel:
    def __init__(
        self,
        ws_url: str,
        headers: Optional[Dict[str, str]] = None,
        on_message: Optional[MessageCallback] = None,
        on_disconnect: Optional[DisconnectCallback] = None,
        open_timeout: float = 10.0,
        log_context: Optional[dict] = None,
    ):
        self.ws_url = ws_url
        self.headers = headers or {}
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self.open_timeout = open_timeout
        # Bound as structlog contextvars in the reader task, e.g. {"kernel_session_id": ...}
        self.log_context = log_context or {}

        self.ws: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self._closing

    async def connect(self) -> None:
        logger.debug("Connecting to kernel channels", extra={"ws_url": self.ws_url})
        try:
            self.ws = await connect(
                self.ws_url,
                additional_headers=self.headers,
                open_timeout=self.open_timeout,
                # Rich outputs like images easily exceed the 1 MiB default
                max_size=None,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise KernelConnectionError(f"Could not open websocket to {self.ws_url}: {e}") from e
        self._closing = False
        self._reader_task = asyncio.create_task(self._read_loop())

    async def send(self, message: BaseKernelRequest) -> None:
        if not self.connected:
            raise KernelConnectionError(f"Websocket to {self.ws_url} is not open")
        logger.debug(
            "Sending kernel message",
            extra={"msg_type": message.msg_type, "msg_id": message.msg_id},
        )
        try:
            await self.ws.send(serialize_message(message))
        except ConnectionClosed as e:
            raise KernelConnectionError(f"Websocket to {self.ws_url} closed: {e}") from e

    async def close(self) -> None:
        """Intentional close, not reported through on_disconnect."""
        self._closing = True
        if self.ws is not None:
            await self.ws.close()
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

    async def _read_loop(self) -> None:
        structlog.contextvars.bind_contextvars(**self.log_context)
        reason = "connection closed"
        try:
            while True:
                raw = await self.ws.recv()
                await self._dispatch(raw)
        except ConnectionClosed as e:
            reason = str(e)
        if self._closing:
            return
        self.ws = None
        logger.warning("Kernel websocket closed unexpectedly", extra={"reason": reason})
        if self.on_disconnect:
            await self.on_disconnect(
                KernelConnectionError(f"Websocket to {self.ws_url} closed unexpectedly: {reason}")
            )

    async def _dispatch(self, raw) -> None:
        try:
            message = parse_kernel_message(raw)
        except (ValueError, pydantic.ValidationError):
            logger.warning("Skipping unparseable kernel message", exc_info=True)
            return
        if type(message) is BaseKernelResponse:
            logger.debug(
                "Received un-modeled kernel message",
                extra={"msg_type": message.msg_type, "parent_id": message.parent_id},
            )
        if self.on_message is None:
            return
        # Errors in callbacks are logged, they must not kill the receive loop
        try:
            await self.on_message(message)
        except Exception:
            logger.exception(
                "Error handling kernel message",
                extra={"msg_type": message.msg_type, "msg_id": message.msg_id},
            )
