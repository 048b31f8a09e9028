import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from cellrunner.engine.registry import SessionRegistry
from cellrunner.errors import (
    KernelStartError,
    SessionNotFound,
    SessionUnavailable,
    UnknownServer,
)
from cellrunner.models.servers import KernelServer
from cellrunner.models.sessions import SessionStatus, utcnow
from tests.fakes import FakeKernel, wait_until


@pytest.fixture
async def registry(kernel_server, server):
    registry = SessionRegistry(
        [server],
        gateway_factory=kernel_server.gateway_factory,
        channel_factory=kernel_server.channel_factory,
        idle_timeout=60,
    )
    yield registry
    await registry.teardown()


async def open_idle(registry, server_id="local"):
    session = await registry.open_session(server_id)
    await registry.wait_for_kernel_idle(session.id, timeout=5)
    return registry.get_session(session.id)


async def test_open_session_sends_kernel_info(registry, kernel_server):
    session = await open_idle(registry)

    assert session.status is SessionStatus.idle
    channel = kernel_server.channels[0]
    assert channel.ws_url == f"ws://localhost:8888/api/kernels/{session.kernel_id}/channels"
    assert channel.headers == {"Authorization": "token secret-token"}
    assert [m.msg_type for m in channel.sent] == ["kernel_info_request"]


async def test_sessions_are_copies(registry):
    session = await open_idle(registry)
    session.status = SessionStatus.dead

    assert registry.get_session(session.id).status is SessionStatus.idle


async def test_subscribe_and_unsubscribe(registry):
    subscriber = AsyncMock()
    unsubscribe = registry.subscribe(subscriber)
    session = await open_idle(registry)
    assert subscriber.await_count >= 2

    unsubscribe()
    subscriber.reset_mock()
    await registry.close_session(session.id)
    subscriber.assert_not_awaited()


async def test_subscriber_errors_are_contained(registry):
    registry.subscribe(AsyncMock(side_effect=RuntimeError("boom")))
    session = await open_idle(registry)
    assert session.status is SessionStatus.idle


async def test_channel_loss_marks_disconnected(registry, kernel_server):
    session = await open_idle(registry)
    await kernel_server.kernels[session.kernel_id].drop()

    assert registry.status(session.id) is SessionStatus.disconnected
    with pytest.raises(SessionUnavailable):
        registry.get_channel(session.id)
    with pytest.raises(SessionUnavailable):
        await registry.wait_for_kernel_idle(session.id, timeout=1)


async def test_stale_channel_loss_is_ignored(registry, kernel_server):
    session = await open_idle(registry)
    old_channel = kernel_server.channels[0]
    await registry.reconnect_session(session.id)
    await registry.wait_for_kernel_idle(session.id, timeout=5)

    await old_channel.on_disconnect(ConnectionError("late report"))
    assert registry.status(session.id) is SessionStatus.idle


async def test_reconnect_dead_session(registry, kernel_server):
    session = await open_idle(registry)
    await registry.close_session(session.id)

    with pytest.raises(SessionNotFound):
        await registry.reconnect_session(session.id)


async def test_kernel_reported_dead(registry, kernel_server):
    session = await open_idle(registry)
    kernel = kernel_server.kernels[session.kernel_id]
    kernel.emit("status", {"execution_state": "dead"}, None)

    await wait_until(lambda: registry.status(session.id) is SessionStatus.dead)


async def test_execution_count_only_increases(registry):
    session = await open_idle(registry)
    registry.record_execution_count(session.id, 3)
    registry.record_execution_count(session.id, 2)

    # Logged, but the kernel's number is taken as is
    assert registry.get_session(session.id).execution_count == 2


async def test_evict_idle_sessions(registry, kernel_server):
    stale = await open_idle(registry)
    fresh = await open_idle(registry)

    later = utcnow() + timedelta(seconds=90)
    registry._sessions[fresh.id].session.last_activity = later
    evicted = await registry.evict_idle_sessions(now=later)

    assert evicted == [stale.id]
    assert stale.kernel_id not in kernel_server.kernels
    assert [s.id for s in registry.sessions] == [fresh.id]


async def test_evict_disabled_without_timeout(kernel_server, server):
    registry = SessionRegistry(
        [server],
        gateway_factory=kernel_server.gateway_factory,
        channel_factory=kernel_server.channel_factory,
    )
    await open_idle(registry)
    assert await registry.evict_idle_sessions(now=utcnow() + timedelta(days=1)) == []
    await registry.teardown()


async def test_rotate_token(registry, kernel_server):
    await registry.list_kernelspecs("local")
    registry.rotate_token("local", "fresh-token")
    await registry.list_kernelspecs("local")

    assert kernel_server.requests[0].headers["Authorization"] == "token secret-token"
    assert kernel_server.requests[1].headers["Authorization"] == "token fresh-token"
    assert registry.servers["local"].auth_token == "fresh-token"


async def test_add_server_with_open_sessions(registry):
    await open_idle(registry)

    with pytest.raises(ValueError):
        registry.add_server(KernelServer(id="local", base_url="elsewhere:9999"))

    # Same url is just a token change
    registry.add_server(KernelServer(id="local", base_url="localhost:8888", auth_token="new"))
    assert registry.servers["local"].auth_token == "new"


async def test_remove_server_closes_its_sessions(registry, kernel_server):
    session = await open_idle(registry)
    await registry.remove_server("local")

    assert registry.sessions == []
    assert session.kernel_id not in kernel_server.kernels
    with pytest.raises(UnknownServer):
        await registry.ping("local")


async def test_find_server_with_language(kernel_server):
    registry = SessionRegistry(
        [
            KernelServer(id="r-only", base_url="r-host"),
            KernelServer(id="python", base_url="py-host"),
        ],
        gateway_factory=kernel_server.gateway_factory,
    )
    original = kernel_server.handler
    r_kernelspecs = {
        "kernelspecs": {"ir": {"name": "ir", "spec": {"display_name": "R", "language": "R"}}}
    }

    def handler(request):
        if request.url.host == "r-host":
            return httpx.Response(200, json=r_kernelspecs)
        return original(request)

    kernel_server.handler = handler
    found = await registry.find_server_with_language("python")
    assert found is not None
    server, spec = found
    assert server.id == "python"
    assert spec.name == "python3"
    assert await registry.find_server_with_language("julia") is None
    await registry.teardown()



async def test_report_timeout_keeps_status(registry):
    session = await open_idle(registry)
    subscriber = AsyncMock()
    registry.subscribe(subscriber)

    await registry.report_timeout(session.id, "req-1")

    (event,), _ = subscriber.await_args
    assert event.status is SessionStatus.idle
    assert event.previous is SessionStatus.idle
    assert event.reason == "timeout: req-1"
    assert registry.status(session.id) is SessionStatus.idle
    # Sessions that are already gone are ignored
    await registry.report_timeout(uuid.uuid4(), "req-2")
    assert subscriber.await_count == 1


async def test_list_kernels(registry, kernel_server):
    session = await open_idle(registry)
    kernel_server.kernels["other"] = FakeKernel("other", name="ir")

    kernels = {k.id: k for k in await registry.list_kernels("local")}

    assert set(kernels) == {session.kernel_id, "other"}
    assert kernels["other"].name == "ir"
    assert kernels["other"].connections == 0


async def test_attach_to_running_kernel(registry, kernel_server):
    existing = FakeKernel("existing", name="python3")
    kernel_server.kernels["existing"] = existing

    session = await registry.open_session("local", kernel_name="ignored", kernel_id="existing")
    await registry.wait_for_kernel_idle(session.id, timeout=5)

    assert session.kernel_id == "existing"
    assert session.kernel_name == "python3"
    assert session.owns_kernel is False
    assert not [r for r in kernel_server.requests if r.method == "POST"]
    assert existing.received == ["kernel_info_request"]

    await registry.close_session(session.id)
    # Someone else started it, so it keeps running
    assert "existing" in kernel_server.kernels
    assert not existing.shut_down
    assert not [r for r in kernel_server.requests if r.method == "DELETE"]


async def test_attach_to_unknown_kernel(registry, kernel_server):
    with pytest.raises(KernelStartError) as exc_info:
        await registry.open_session("local", kernel_id="missing")

    assert exc_info.value.status_code == 404
    assert registry.sessions == []
    assert kernel_server.channels == []


async def test_restart_attached_session_owns_new_kernel(registry, kernel_server):
    kernel_server.kernels["existing"] = FakeKernel("existing")
    session = await registry.open_session("local", kernel_id="existing")
    await registry.wait_for_kernel_idle(session.id, timeout=5)

    restarted = await registry.restart_session(session.id)
    await registry.wait_for_kernel_idle(session.id, timeout=5)

    assert restarted.kernel_id != "existing"
    assert restarted.owns_kernel is True
    assert "existing" in kernel_server.kernels

    await registry.close_session(session.id)
    assert restarted.kernel_id not in kernel_server.kernels
