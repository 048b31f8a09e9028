"""
The SessionRegistry owns configured kernel servers and live kernel sessions.

 - open / close / restart / reconnect sessions, one KernelChannel per session
 - single writer of KernelSession.status: kernel status messages, channel loss, and lifecycle
   calls all go through ._set_status, which publishes a SessionEvent to subscribers
 - every inbound kernel message is forwarded to the message sink (the MessageCorrelator)
   after the registry has looked at it for status updates

Lifecycle: create one registry per application, call .init() once servers are configured and
.teardown() on shutdown. Pass the instance to whatever needs it rather than reaching for a
module-level global.
"""
import asyncio
import functools
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
import structlog

from cellrunner.clients.channels import KernelChannel
from cellrunner.clients.gateway import GatewayClient
from cellrunner.errors import (
    KernelConnectionError,
    KernelRuntimeError,
    KernelStartError,
    SessionNotFound,
    SessionUnavailable,
    UnknownServer,
)
from cellrunner.models.messages import KernelInfoReply, StatusMessage, build_request
from cellrunner.models.messages.base import BaseKernelResponse
from cellrunner.models.servers import KernelServer, KernelSpec, RemoteKernel, ServerStatus
from cellrunner.models.sessions import (
    KERNEL_STATE_TO_SESSION_STATUS,
    KernelSession,
    SessionEvent,
    SessionStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

SessionCallback = Callable[[SessionEvent], Awaitable[None]]
MessageSink = Callable[[uuid.UUID, BaseKernelResponse], Awaitable[None]]
GatewayFactory = Callable[[KernelServer], GatewayClient]
ChannelFactory = Callable[..., KernelChannel]


class _SessionEntry:
    def __init__(self, session: KernelSession):
        self.session = session
        self.channel: Optional[KernelChannel] = None
        # header.session for messages we send, new one per kernel connection
        self.client_session = uuid.uuid4().hex


class SessionRegistry:
    def __init__(
        self,
        servers: Iterable[KernelServer] = (),
        gateway_factory: Optional[GatewayFactory] = None,
        channel_factory: ChannelFactory = KernelChannel,
        http_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        idle_timeout: Optional[float] = None,
        reap_interval: float = 30.0,
    ):
        self.http_timeout = http_timeout
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self.gateway_factory = gateway_factory or self._default_gateway_factory
        self.channel_factory = channel_factory

        self.servers: Dict[str, KernelServer] = {}
        self._gateways: Dict[str, GatewayClient] = {}
        self._sessions: Dict[uuid.UUID, _SessionEntry] = {}
        self._subscribers: List[SessionCallback] = []
        self._message_sink: Optional[MessageSink] = None
        self._reaper_task: Optional[asyncio.Task] = None

        for server in servers:
            self.add_server(server)

    def _default_gateway_factory(self, server: KernelServer) -> GatewayClient:
        return GatewayClient(server, timeout=httpx.Timeout(self.http_timeout))

    # Lifecycle
    async def init(self) -> None:
        if self.idle_timeout and self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_idle_sessions())

    async def teardown(self) -> None:
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        for gateway in self._gateways.values():
            await gateway.aclose()
        self._gateways.clear()

    # Kernel servers
    def add_server(self, server: KernelServer) -> None:
        existing = self.servers.get(server.id)
        if existing and self._sessions_on(server.id):
            if existing.base_url != server.base_url:
                raise ValueError(
                    f"Kernel server {server.id} has open sessions, only its token can change"
                )
            self.rotate_token(server.id, server.auth_token)
            return
        self.servers[server.id] = server
        self._gateways.pop(server.id, None)

    async def remove_server(self, server_id: str) -> None:
        for session in self._sessions_on(server_id):
            await self.close_session(session.id)
        self.servers.pop(server_id, None)
        gateway = self._gateways.pop(server_id, None)
        if gateway:
            await gateway.aclose()

    def rotate_token(self, server_id: str, auth_token: Optional[str]) -> None:
        server = self._server(server_id)
        self.servers[server_id] = server.model_copy(update={"auth_token": auth_token})
        if server_id in self._gateways:
            self._gateways[server_id].rotate_token(auth_token)
        logger.info("Rotated kernel server token", server_id=server_id)

    def gateway(self, server_id: str) -> GatewayClient:
        if server_id not in self._gateways:
            self._gateways[server_id] = self.gateway_factory(self._server(server_id))
        return self._gateways[server_id]

    async def ping(self, server_id: str) -> ServerStatus:
        return await self.gateway(server_id).ping()

    async def list_kernelspecs(self, server_id: str) -> List[KernelSpec]:
        return await self.gateway(server_id).get_kernelspecs()

    async def list_kernels(self, server_id: str) -> List[RemoteKernel]:
        """Kernels running on the server, including ones no session here is connected to."""
        return await self.gateway(server_id).list_kernels()

    async def find_server_with_language(
        self, language: str = "python"
    ) -> Optional[Tuple[KernelServer, KernelSpec]]:
        """First reachable server offering a kernelspec for {language}, in configuration order."""
        language = language.lower()
        for server_id, server in self.servers.items():
            try:
                specs = await self.list_kernelspecs(server_id)
            except KernelConnectionError:
                logger.warning("Skipping unreachable kernel server", server_id=server_id)
                continue
            for spec in specs:
                if spec.spec.language.lower() == language or language in spec.name.lower():
                    return server, spec
        return None

    def _server(self, server_id: str) -> KernelServer:
        try:
            return self.servers[server_id]
        except KeyError:
            raise UnknownServer(f"No kernel server configured with id {server_id!r}") from None

    async def _running_kernel(self, server_id: str, kernel_id: str) -> RemoteKernel:
        for remote in await self.list_kernels(server_id):
            if remote.id == kernel_id:
                return remote
        raise KernelStartError(
            f"No kernel {kernel_id!r} is running on server {server_id!r}", status_code=404
        )

    def _sessions_on(self, server_id: str) -> List[KernelSession]:
        return [e.session for e in self._sessions.values() if e.session.server_id == server_id]

    # Subscriptions
    def subscribe(self, fn: SessionCallback) -> Callable[[], None]:
        """
        Register an async callback awaited with a SessionEvent on every status change. Returns a
        function that removes the subscription. Callbacks run in subscription order.
        """
        self._subscribers.append(fn)

        def unsubscribe():
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return unsubscribe

    def route_messages_to(self, sink: MessageSink) -> None:
        self._message_sink = sink

    # Session lookups
    @property
    def sessions(self) -> List[KernelSession]:
        return [entry.session.model_copy() for entry in self._sessions.values()]

    def _entry(self, session_id: uuid.UUID) -> _SessionEntry:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"No kernel session with id {session_id}") from None

    def get_session(self, session_id: uuid.UUID) -> KernelSession:
        return self._entry(session_id).session.model_copy()

    def status(self, session_id: uuid.UUID) -> SessionStatus:
        return self._entry(session_id).session.status

    def get_channel(self, session_id: uuid.UUID) -> KernelChannel:
        entry = self._entry(session_id)
        if not entry.session.status.accepts_requests or entry.channel is None:
            raise SessionUnavailable(
                f"Kernel session {session_id} is {entry.session.status.value}"
            )
        return entry.channel

    def client_session_id(self, session_id: uuid.UUID) -> str:
        return self._entry(session_id).client_session

    def record_execution_count(self, session_id: uuid.UUID, execution_count: int) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        if execution_count <= entry.session.execution_count:
            # Only a restart (which resets to 0) should ever make the counter go backwards
            logger.warning(
                "Kernel reported a non-increasing execution count",
                session_id=str(session_id),
                previous=entry.session.execution_count,
                reported=execution_count,
            )
        entry.session.execution_count = execution_count

    # Session lifecycle
    async def open_session(
        self, server_id: str, kernel_name: str = "python3", kernel_id: Optional[str] = None
    ) -> KernelSession:
        """
        Start a kernel on {server_id} and connect to it. The returned session is 'starting', it
        moves to 'idle' (or 'busy') once the kernel sends its first status message.

        With {kernel_id} the session attaches to a kernel that is already running on the server
        instead, and {kernel_name} is taken from that kernel. Closing such a session leaves the
        kernel running.
        """
        self._server(server_id)
        if kernel_id is None:
            remote = await self.gateway(server_id).start_kernel(kernel_name)
        else:
            remote = await self._running_kernel(server_id, kernel_id)
        session = KernelSession(
            server_id=server_id,
            kernel_name=remote.name,
            kernel_id=remote.id,
            owns_kernel=kernel_id is None,
        )
        entry = _SessionEntry(session)
        self._sessions[session.id] = entry
        logger.info(
            "Opening kernel session",
            session_id=str(session.id),
            server_id=server_id,
            kernel_id=remote.id,
            attached=not session.owns_kernel,
        )
        await self._publish(SessionEvent(session_id=session.id, status=SessionStatus.starting))

        try:
            await self._connect(entry)
        except KernelConnectionError as e:
            await self._shutdown_kernel(entry)
            await self._set_status(entry, SessionStatus.dead, reason=str(e))
            self._sessions.pop(session.id, None)
            raise
        return session.model_copy()

    async def close_session(self, session_id: uuid.UUID, reason: str = "closed") -> None:
        """
        Best-effort shutdown notice to the server, then release local resources regardless of
        whether the server acknowledged it.
        """
        entry = self._entry(session_id)
        logger.info("Closing kernel session", session_id=str(session_id), reason=reason)
        await self._close_channel(entry)
        await self._shutdown_kernel(entry)
        await self._set_status(entry, SessionStatus.dead, reason=reason)
        self._sessions.pop(session_id, None)

    async def restart_session(self, session_id: uuid.UUID) -> KernelSession:
        """
        Replace the session's kernel with a fresh one, which the session owns even if it was
        attached to the old one. Queued requests are discarded (subscribers
        see a 'starting' event with reason 'restart') and the execution count goes back to 0.
        """
        entry = self._entry(session_id)
        logger.info("Restarting kernel session", session_id=str(session_id))
        await self._set_status(entry, SessionStatus.starting, reason="restart")
        await self._close_channel(entry)
        await self._shutdown_kernel(entry)

        entry.session.execution_count = 0
        entry.session.created_at = utcnow()
        entry.client_session = uuid.uuid4().hex
        try:
            remote = await self.gateway(entry.session.server_id).start_kernel(
                entry.session.kernel_name
            )
            entry.session.kernel_id = remote.id
            entry.session.owns_kernel = True
            await self._connect(entry)
        except KernelRuntimeError as e:
            await self._set_status(entry, SessionStatus.dead, reason=str(e))
            raise
        return entry.session.model_copy()

    async def reconnect_session(self, session_id: uuid.UUID) -> KernelSession:
        """Open a new channel to the same kernel after the previous one was lost."""
        entry = self._entry(session_id)
        if entry.session.status is SessionStatus.dead:
            raise SessionUnavailable(f"Kernel session {session_id} is dead, open a new one")
        await self._close_channel(entry)
        entry.client_session = uuid.uuid4().hex
        await self._set_status(entry, SessionStatus.starting, reason="reconnect")
        try:
            await self._connect(entry)
        except KernelConnectionError as e:
            await self._set_status(entry, SessionStatus.disconnected, reason=str(e))
            raise
        return entry.session.model_copy()

    async def report_timeout(self, session_id: uuid.UUID, request_id: str) -> None:
        """Tell subscribers an execution missed its deadline. The kernel may well still be busy."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        await self._set_status(entry, entry.session.status, reason=f"timeout: {request_id}")

    async def interrupt_kernel(self, session_id: uuid.UUID) -> None:
        """Interrupt through the REST API, for when the control channel isn't usable."""
        entry = self._entry(session_id)
        await self.gateway(entry.session.server_id).interrupt_kernel(entry.session.kernel_id)

    async def wait_for_kernel_idle(self, session_id: uuid.UUID, timeout: float = 60.0) -> None:
        """Wait for the kernel to be idle"""

        async def _wait():
            while True:
                status = self.status(session_id)
                if status is SessionStatus.idle:
                    return
                if not status.accepts_requests:
                    raise SessionUnavailable(f"Kernel session {session_id} is {status.value}")
                await asyncio.sleep(0.05)

        logger.debug("Waiting for kernel to be idle", session_id=str(session_id))
        await asyncio.wait_for(_wait(), timeout=timeout)

    async def evict_idle_sessions(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        """Close sessions that have been idle longer than idle_timeout."""
        if not self.idle_timeout:
            return []
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.idle_timeout)
        evicted = []
        for session_id, entry in list(self._sessions.items()):
            session = entry.session
            if session.status is SessionStatus.idle and session.last_activity < cutoff:
                await self.close_session(session_id, reason="evicted")
                evicted.append(session_id)
        return evicted

    async def _reap_idle_sessions(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.evict_idle_sessions()
            except Exception:
                logger.exception("Error evicting idle kernel sessions")

    # Internals
    async def _connect(self, entry: _SessionEntry) -> None:
        session = entry.session
        server = self._server(session.server_id)
        channel = self.channel_factory(
            ws_url=server.channels_url(session.kernel_id),
            headers=server.auth_headers,
            on_message=functools.partial(self._on_channel_message, session.id),
            on_disconnect=None,
            open_timeout=self.connect_timeout,
            log_context={"kernel_session_id": str(session.id)},
        )
        # Bound after construction so a late report from a replaced channel can be recognized
        channel.on_disconnect = functools.partial(self._on_channel_lost, session.id, channel)
        await channel.connect()
        entry.channel = channel
        # Get the kernel talking, its status messages move the session out of 'starting'
        await channel.send(build_request("kernel_info_request", session=entry.client_session))

    async def _close_channel(self, entry: _SessionEntry) -> None:
        channel, entry.channel = entry.channel, None
        if channel is None:
            return
        try:
            await channel.close()
        except Exception:
            logger.warning("Error closing kernel channel", exc_info=True)

    async def _shutdown_kernel(self, entry: _SessionEntry) -> None:
        if not entry.session.kernel_id:
            return
        if not entry.session.owns_kernel:
            logger.info(
                "Leaving attached kernel running",
                session_id=str(entry.session.id),
                kernel_id=entry.session.kernel_id,
            )
            return
        try:
            await self.gateway(entry.session.server_id).shutdown_kernel(entry.session.kernel_id)
        except KernelRuntimeError as e:
            logger.warning(
                "Kernel shutdown was not acknowledged",
                session_id=str(entry.session.id),
                kernel_id=entry.session.kernel_id,
                error=str(e),
            )

    async def _set_status(
        self, entry: _SessionEntry, status: SessionStatus, reason: Optional[str] = None
    ) -> None:
        previous = entry.session.status
        if previous is status and reason is None:
            return
        entry.session.status = status
        logger.debug(
            "Kernel session status changed",
            session_id=str(entry.session.id),
            status=status.value,
            previous=previous.value,
            reason=reason,
        )
        event = SessionEvent(
            session_id=entry.session.id, status=status, previous=previous, reason=reason
        )
        await self._publish(event)

    async def _publish(self, event: SessionEvent) -> None:
        for fn in list(self._subscribers):
            try:
                await fn(event)
            except Exception:
                logger.exception(
                    "Error in session status subscriber", session_id=str(event.session_id)
                )

    async def _on_channel_message(self, session_id: uuid.UUID, message: BaseKernelResponse) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        entry.session.last_activity = utcnow()
        if isinstance(message, StatusMessage):
            status = KERNEL_STATE_TO_SESSION_STATUS.get(message.content.execution_state)
            if status is not None:
                await self._set_status(entry, status)
        elif isinstance(message, KernelInfoReply):
            if entry.session.status is SessionStatus.starting:
                await self._set_status(entry, SessionStatus.idle)
        if self._message_sink is not None:
            await self._message_sink(session_id, message)

    async def _on_channel_lost(
        self, session_id: uuid.UUID, channel: KernelChannel, exc: KernelConnectionError
    ) -> None:
        entry = self._sessions.get(session_id)
        if entry is None or entry.channel is not channel:
            return
        entry.channel = None
        await self._set_status(entry, SessionStatus.disconnected, reason=str(exc))
