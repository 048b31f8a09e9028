import pytest

from cellrunner.models.servers import KernelServer
from cellrunner.runtime import KernelRuntime
from cellrunner.settings import RuntimeSettings
from tests.fakes import FakeKernel, FakeKernelServer


@pytest.fixture
def kernel_server() -> FakeKernelServer:
    return FakeKernelServer()


@pytest.fixture
def server() -> KernelServer:
    return KernelServer(id="local", base_url="localhost:8888", auth_token="secret-token")


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(_env_file=None)


@pytest.fixture
def cell_updates() -> list:
    return []


@pytest.fixture
def session_events() -> list:
    return []


@pytest.fixture
async def runtime(kernel_server, server, settings, cell_updates, session_events):
    async def record_cell(cell_id, state):
        cell_updates.append(state)

    async def record_session(event):
        session_events.append(event)

    runtime = KernelRuntime(
        servers=[server],
        settings=settings,
        on_cell_state_change=record_cell,
        on_session_state_change=record_session,
        gateway_factory=kernel_server.gateway_factory,
        channel_factory=kernel_server.channel_factory,
    )
    await runtime.init()
    yield runtime
    await runtime.teardown()


@pytest.fixture
async def session(runtime):
    return await runtime.open_session("local", timeout=5)


@pytest.fixture
def kernel(kernel_server, session) -> FakeKernel:
    return kernel_server.kernels[session.kernel_id]
