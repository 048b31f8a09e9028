"""
KernelRuntime wires the engine together and is what applications talk to.

    async with KernelRuntime(on_cell_state_change=apply_to_document) as runtime:
        session = await runtime.open_session()
        state = await runtime.run_cell("cell-1", "print('hello')", session.id)

One instance per application. Components get their collaborators passed in explicitly:
registry -> correlator -> queue (+ reconciler) -> orchestrator. Subscription order on the
registry matters, pending requests are failed by the correlator before the queue fails what's
waiting behind them.
"""
import uuid
from typing import Awaitable, Callable, Iterable, List, Optional

import structlog

from cellrunner.clients.channels import KernelChannel
from cellrunner.engine.correlator import MessageCorrelator
from cellrunner.engine.orchestrator import RunAllOrchestrator, RunAllReport
from cellrunner.engine.queue import ExecutionQueue
from cellrunner.engine.reconciler import CellStateCallback, OutputReconciler
from cellrunner.engine.registry import ChannelFactory, GatewayFactory, SessionRegistry
from cellrunner.errors import UnknownServer
from cellrunner.models.execution import CellExecutionState, CellSpec, ExecutionRequest
from cellrunner.models.servers import KernelServer, KernelSpec, RemoteKernel, ServerStatus
from cellrunner.models.sessions import KernelSession, SessionEvent
from cellrunner.settings import DEFAULT_SERVER_ID, ErrorPolicy, RuntimeSettings, load_servers

logger = structlog.get_logger(__name__)

SessionStateCallback = Callable[[SessionEvent], Awaitable[None]]


class KernelRuntime:
    def __init__(
        self,
        servers: Optional[Iterable[KernelServer]] = None,
        settings: Optional[RuntimeSettings] = None,
        on_cell_state_change: Optional[CellStateCallback] = None,
        on_session_state_change: Optional[SessionStateCallback] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        channel_factory: ChannelFactory = KernelChannel,
    ):
        self.settings = settings or RuntimeSettings()
        if servers is None:
            servers = load_servers(self.settings)
        self.on_session_state_change = on_session_state_change

        self.registry = SessionRegistry(
            servers,
            gateway_factory=gateway_factory,
            channel_factory=channel_factory,
            http_timeout=self.settings.http_timeout,
            connect_timeout=self.settings.connect_timeout,
            idle_timeout=self.settings.idle_session_timeout,
        )
        self.correlator = MessageCorrelator(self.registry)
        self.reconciler = OutputReconciler(on_cell_state_change)
        self.queue = ExecutionQueue(
            self.registry,
            self.correlator,
            self.reconciler,
            default_timeout=self.settings.execution_timeout,
            interrupt_timeout=self.settings.interrupt_timeout,
        )
        self.orchestrator = RunAllOrchestrator(
            self.queue, error_policy=self.settings.run_all_error_policy
        )
        # Last, so applications hear about a status change after the engine reacted to it
        self.registry.subscribe(self._on_session_event)

    @property
    def on_cell_state_change(self) -> Optional[CellStateCallback]:
        return self.reconciler.on_cell_state_change

    @on_cell_state_change.setter
    def on_cell_state_change(self, fn: Optional[CellStateCallback]) -> None:
        self.reconciler.on_cell_state_change = fn

    async def _on_session_event(self, event: SessionEvent) -> None:
        if self.on_session_state_change is not None:
            await self.on_session_state_change(event)

    # Lifecycle
    async def init(self) -> None:
        await self.registry.init()

    async def teardown(self) -> None:
        self.orchestrator.stop()
        await self.registry.teardown()

    async def __aenter__(self) -> "KernelRuntime":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown()

    # Servers
    @property
    def servers(self) -> List[KernelServer]:
        return list(self.registry.servers.values())

    def add_server(self, server: KernelServer) -> None:
        self.registry.add_server(server)

    async def remove_server(self, server_id: str) -> None:
        await self.registry.remove_server(server_id)

    def rotate_token(self, server_id: str, auth_token: Optional[str]) -> None:
        self.registry.rotate_token(server_id, auth_token)

    async def ping(self, server_id: str) -> ServerStatus:
        return await self.registry.ping(server_id)

    async def list_kernelspecs(self, server_id: str) -> List[KernelSpec]:
        return await self.registry.list_kernelspecs(server_id)

    async def list_kernels(self, server_id: str) -> List[RemoteKernel]:
        return await self.registry.list_kernels(server_id)

    async def _pick_server(self) -> str:
        if len(self.registry.servers) == 1:
            return next(iter(self.registry.servers))
        if DEFAULT_SERVER_ID in self.registry.servers:
            return DEFAULT_SERVER_ID
        found = await self.registry.find_server_with_language("python")
        if found is None:
            raise UnknownServer("No reachable kernel server with a Python kernel is configured")
        server, spec = found
        logger.info("Picked kernel server", server_id=server.id, kernel_name=spec.name)
        return server.id

    # Sessions
    @property
    def sessions(self) -> List[KernelSession]:
        return self.registry.sessions

    def get_session(self, session_id: uuid.UUID) -> KernelSession:
        return self.registry.get_session(session_id)

    async def open_session(
        self,
        server_id: Optional[str] = None,
        kernel_name: Optional[str] = None,
        wait: bool = True,
        timeout: float = 60.0,
        kernel_id: Optional[str] = None,
    ) -> KernelSession:
        """
        Start a kernel and connect to it. With wait=True (the default) this returns once the
        kernel reported itself idle. Without a server_id the only configured server, the
        'default' one, or the first one that offers a Python kernel is used. With a kernel_id
        the session attaches to that already running kernel instead of starting one.
        """
        if server_id is None:
            server_id = await self._pick_server()
        session = await self.registry.open_session(
            server_id, kernel_name or self.settings.default_kernel_name, kernel_id=kernel_id
        )
        if wait:
            await self.registry.wait_for_kernel_idle(session.id, timeout=timeout)
            session = self.registry.get_session(session.id)
        return session

    async def close_session(self, session_id: uuid.UUID) -> None:
        await self.registry.close_session(session_id)

    async def restart_session(
        self, session_id: uuid.UUID, wait: bool = True, timeout: float = 60.0
    ) -> KernelSession:
        session = await self.registry.restart_session(session_id)
        if wait:
            await self.registry.wait_for_kernel_idle(session_id, timeout=timeout)
            session = self.registry.get_session(session_id)
        return session

    async def reconnect_session(self, session_id: uuid.UUID) -> KernelSession:
        return await self.registry.reconnect_session(session_id)

    async def wait_for_kernel_idle(self, session_id: uuid.UUID, timeout: float = 60.0) -> None:
        await self.registry.wait_for_kernel_idle(session_id, timeout=timeout)

    # Execution
    async def submit(
        self,
        cell_id: str,
        code: str,
        session_id: uuid.UUID,
        timeout: Optional[float] = None,
    ) -> ExecutionRequest:
        """Queue a cell and return right away, await the request for its outcome."""
        return await self.queue.enqueue(session_id, cell_id, code, timeout=timeout)

    async def run_cell(
        self,
        cell_id: str,
        code: str,
        session_id: uuid.UUID,
        timeout: Optional[float] = None,
    ) -> CellExecutionState:
        """
        Run one cell and wait for it. Errors raised by user code come back as an 'error' state,
        system faults (timeout, lost connection, cancel, interrupt) are raised.
        """
        request = await self.submit(cell_id, code, session_id, timeout=timeout)
        return await request

    async def run_all(
        self,
        cells: Iterable[CellSpec],
        session_id: Optional[uuid.UUID] = None,
        error_policy: Optional[ErrorPolicy] = None,
        timeout: Optional[float] = None,
    ) -> RunAllReport:
        return await self.orchestrator.run_all(
            cells, session_id=session_id, error_policy=error_policy, timeout=timeout
        )

    async def cancel(self, request_id: str) -> bool:
        return await self.queue.cancel(request_id)

    async def cancel_all(self, session_id: uuid.UUID) -> None:
        await self.queue.cancel_all(session_id)

    def stop_run_all(self) -> None:
        self.orchestrator.stop()

    def cell_state(self, cell_id: str) -> CellExecutionState:
        return self.reconciler.get_state(cell_id)
