"""
The MessageCorrelator pairs outbound requests with the kernel messages they cause.

Every kernel message names the request it belongs to in parent_header.msg_id. When a request is
sent through the correlator a pending entry keyed by (session_id, msg_id) is recorded before the
frame is written, so even the fastest reply finds it. Messages with a matching parent id go to
the entry's ReplyHandler; everything else goes to session-level subscribers.

An entry is removed on its terminal reply (execute_reply of any status, interrupt_reply,
kernel_info_reply), on timeout, or when its session fails. iopub messages never end an entry,
an error output in particular is not a reply.
"""
import asyncio
import collections
import uuid
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

import structlog

from cellrunner.engine.registry import SessionRegistry
from cellrunner.errors import (
    ExecutionCancelled,
    ExecutionTimeout,
    KernelConnectionError,
    KernelRuntimeError,
)
from cellrunner.models.messages import TERMINAL_REPLY_TYPES, build_request
from cellrunner.models.messages.base import BaseKernelResponse
from cellrunner.models.sessions import SessionEvent, SessionStatus

logger = structlog.get_logger(__name__)

MessageSubscriber = Callable[[uuid.UUID, BaseKernelResponse], Awaitable[None]]
PendingKey = Tuple[uuid.UUID, str]


class ReplyHandler:
    """
    Receives the messages caused by one request. Subclass and override what you need, both
    methods are awaited in message order and exceptions they raise are logged and dropped.
    """

    async def on_message(self, message: BaseKernelResponse) -> None:
        pass

    async def on_settled(
        self,
        reply: Optional[BaseKernelResponse] = None,
        exc: Optional[KernelRuntimeError] = None,
    ) -> None:
        """Called exactly once, with the terminal reply or with the error that ended the wait."""
        pass


class PendingRequest:
    def __init__(self, session_id: uuid.UUID, msg_id: str, msg_type: str, handler: ReplyHandler):
        self.session_id = session_id
        self.msg_id = msg_id
        self.msg_type = msg_type
        self.handler = handler
        self.reply: asyncio.Future = asyncio.get_running_loop().create_future()
        self.timeout_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> PendingKey:
        return (self.session_id, self.msg_id)


class MessageCorrelator:
    def __init__(self, registry: SessionRegistry, expired_memory: int = 1000):
        self.registry = registry
        self._pending: Dict[PendingKey, PendingRequest] = {}
        # Ids of requests that were force-completed, so their late replies can be dropped
        self._expired: Deque[PendingKey] = collections.deque(maxlen=expired_memory)
        self._expired_keys: Set[PendingKey] = set()
        self._subscribers: List[Tuple[Optional[uuid.UUID], MessageSubscriber]] = []

        registry.route_messages_to(self.on_message)
        registry.subscribe(self._on_session_event)

    def subscribe(
        self, fn: MessageSubscriber, session_id: Optional[uuid.UUID] = None
    ) -> Callable[[], None]:
        """
        Receive messages that aren't parented to a pending request, e.g. the trailing idle status
        after an execute_reply or output broadcast by another client. Returns an unsubscribe
        function.
        """
        entry = (session_id, fn)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def is_pending(self, session_id: uuid.UUID, msg_id: str) -> bool:
        return (session_id, msg_id) in self._pending

    def pending_count(self, session_id: Optional[uuid.UUID] = None) -> int:
        if session_id is None:
            return len(self._pending)
        return sum(1 for sid, _ in self._pending if sid == session_id)

    async def send(
        self,
        session_id: uuid.UUID,
        msg_type: str,
        content: Any = None,
        handler: Optional[ReplyHandler] = None,
        *,
        msg_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Send a request to a session's kernel and track it until its terminal reply. Returns the
        msg_id. Raises SessionUnavailable if the session can't take requests and
        KernelConnectionError if the write fails, in which case nothing stays pending.
        """
        channel = self.registry.get_channel(session_id)
        request = build_request(
            msg_type,
            content,
            session=self.registry.client_session_id(session_id),
            msg_id=msg_id,
        )
        pending = PendingRequest(session_id, request.msg_id, msg_type, handler or ReplyHandler())
        self._pending[pending.key] = pending
        if timeout is not None:
            pending.timeout_task = asyncio.create_task(self._expire_after(pending, timeout))

        try:
            await channel.send(request)
        except KernelConnectionError:
            self._discard(pending)
            raise
        logger.debug(
            "Sent kernel request",
            session_id=str(session_id),
            msg_type=msg_type,
            msg_id=request.msg_id,
        )
        return request.msg_id

    async def request(
        self,
        session_id: uuid.UUID,
        msg_type: str,
        content: Any = None,
        timeout: Optional[float] = None,
    ) -> Optional[BaseKernelResponse]:
        """Send a request and wait for its terminal reply."""
        msg_id = await self.send(session_id, msg_type, content, timeout=timeout)
        pending = self._pending.get((session_id, msg_id))
        if pending is None:
            # Reply arrived before we got here, nothing left to wait on
            return None
        return await pending.reply

    async def on_message(self, session_id: uuid.UUID, message: BaseKernelResponse) -> None:
        parent_id = message.parent_id
        key = (session_id, parent_id)
        pending = self._pending.get(key) if parent_id else None
        if pending is None:
            if parent_id and key in self._expired_keys:
                logger.info(
                    "Discarding late message for an expired request",
                    session_id=str(session_id),
                    msg_type=message.msg_type,
                    parent_id=parent_id,
                )
                return
            await self._notify_subscribers(session_id, message)
            return

        try:
            await pending.handler.on_message(message)
        except Exception:
            logger.exception(
                "Error in reply handler", msg_type=message.msg_type, parent_id=parent_id
            )
        if isinstance(message, TERMINAL_REPLY_TYPES):
            await self._settle(pending, reply=message)

    async def fail_session(self, session_id: uuid.UUID, exc: KernelRuntimeError) -> None:
        """Force-complete every pending request of a session with {exc}."""
        for pending in [p for p in self._pending.values() if p.session_id == session_id]:
            await self._settle(pending, exc=exc)

    async def _on_session_event(self, event: SessionEvent) -> None:
        failed = event.status in (SessionStatus.disconnected, SessionStatus.dead)
        if not failed and event.reason != "restart":
            return
        if event.is_teardown:
            exc = ExecutionCancelled(f"Kernel session {event.session_id} was {event.reason}")
        else:
            exc = KernelConnectionError(
                f"Kernel session {event.session_id} is {event.status.value}: {event.reason}"
            )
        await self.fail_session(event.session_id, exc)

    async def _expire_after(self, pending: PendingRequest, timeout: float) -> None:
        await asyncio.sleep(timeout)
        logger.warning(
            "Kernel request timed out",
            session_id=str(pending.session_id),
            msg_type=pending.msg_type,
            msg_id=pending.msg_id,
            timeout=timeout,
        )
        await self._settle(
            pending,
            exc=ExecutionTimeout(f"No reply to {pending.msg_type} within {timeout} seconds"),
        )

    async def _settle(
        self,
        pending: PendingRequest,
        reply: Optional[BaseKernelResponse] = None,
        exc: Optional[KernelRuntimeError] = None,
    ) -> None:
        if self._pending.get(pending.key) is not pending:
            return
        self._discard(pending)
        if exc is not None:
            self._remember_expired(pending.key)
            pending.reply.set_exception(exc)
            # Nobody may be awaiting .reply, don't let asyncio complain about it
            pending.reply.exception()
        else:
            pending.reply.set_result(reply)
        try:
            await pending.handler.on_settled(reply=reply, exc=exc)
        except Exception:
            logger.exception("Error settling kernel request", msg_id=pending.msg_id)

    def _discard(self, pending: PendingRequest) -> None:
        self._pending.pop(pending.key, None)
        task = pending.timeout_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _remember_expired(self, key: PendingKey) -> None:
        if len(self._expired) == self._expired.maxlen:
            self._expired_keys.discard(self._expired[0])
        self._expired.append(key)
        self._expired_keys.add(key)

    async def _notify_subscribers(self, session_id: uuid.UUID, message: BaseKernelResponse) -> None:
        for subscribed_to, fn in list(self._subscribers):
            if subscribed_to is not None and subscribed_to != session_id:
                continue
            try:
                await fn(session_id, message)
            except Exception:
                logger.exception("Error in kernel message subscriber", msg_type=message.msg_type)
