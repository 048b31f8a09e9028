import json

import httpx
import pytest

from cellrunner.clients.gateway import GatewayClient
from cellrunner.errors import KernelConnectionError, KernelStartError
from cellrunner.models.servers import KernelServer


@pytest.fixture
def server() -> KernelServer:
    return KernelServer(id="local", base_url="http://localhost:8888/", auth_token="abc")


def make_client(server, handler) -> GatewayClient:
    return GatewayClient(server, transport=httpx.MockTransport(handler))


async def test_ping(server):
    seen = []

    def handler(request: httpx.Request):
        path = request.url.path.rstrip("/")
        seen.append((request.method, path, request.headers.get("Authorization")))
        if path == "/api":
            return httpx.Response(200, json={"version": "2.14.0"})
        return httpx.Response(200, json=[])

    status = await make_client(server, handler).ping()

    assert status.success
    assert status.version == "2.14.0"
    assert seen == [("GET", "/api/kernels", "token abc"), ("GET", "/api", "token abc")]


async def test_ping_without_version_endpoint(server):
    def handler(request: httpx.Request):
        if request.url.path.rstrip("/") == "/api":
            return httpx.Response(404, text="Not Found")
        return httpx.Response(200, json=[])

    status = await make_client(server, handler).ping()
    assert status.success
    assert status.version is None


@pytest.mark.parametrize("status_code", [401, 403])
async def test_ping_invalid_token(server, status_code):
    def handler(request: httpx.Request):
        return httpx.Response(status_code)

    status = await make_client(server, handler).ping()
    assert not status.success
    assert "invalid token" in status.message


async def test_ping_unreachable(server):
    def handler(request: httpx.Request):
        raise httpx.ConnectError("Connection refused", request=request)

    status = await make_client(server, handler).ping()
    assert not status.success
    assert "not reachable" in status.message


async def test_timeout_is_a_connection_error(server):
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(KernelConnectionError, match="timed out"):
        await make_client(server, handler).list_kernels()


async def test_get_kernelspecs(server):
    def handler(request: httpx.Request):
        return httpx.Response(
            200,
            json={
                "default": "python3",
                "kernelspecs": {
                    "python3": {
                        "name": "python3",
                        "spec": {"display_name": "Python 3", "language": "python", "argv": []},
                        "resources": {},
                    },
                    "ir": {"name": "ir", "spec": {"display_name": "R", "language": "R"}},
                },
            },
        )

    specs = await make_client(server, handler).get_kernelspecs()
    assert [spec.name for spec in specs] == ["python3", "ir"]
    assert specs[0].spec.display_name == "Python 3"
    assert specs[1].spec.language == "R"


async def test_list_kernels(server):
    def handler(request: httpx.Request):
        assert request.method == "GET"
        assert request.url.path == "/api/kernels"
        return httpx.Response(
            200,
            json=[
                {
                    "id": "k-1",
                    "name": "python3",
                    "last_activity": "2026-10-19T09:30:00.000000Z",
                    "execution_state": "busy",
                    "connections": 2,
                },
                {"id": "k-2", "name": "ir"},
            ],
        )

    kernels = await make_client(server, handler).list_kernels()

    assert [k.id for k in kernels] == ["k-1", "k-2"]
    assert kernels[0].execution_state == "busy"
    assert kernels[0].connections == 2
    assert kernels[0].last_activity.year == 2026
    assert kernels[1].execution_state is None


async def test_list_kernels_error(server):
    def handler(request: httpx.Request):
        return httpx.Response(500, json={"message": "boom"})

    with pytest.raises(KernelConnectionError, match="Failed to list kernels"):
        await make_client(server, handler).list_kernels()


async def test_start_kernel(server):
    def handler(request: httpx.Request):
        assert request.method == "POST"
        assert request.url.path == "/api/kernels"
        assert json.loads(request.content) == {"name": "python3"}
        return httpx.Response(
            201,
            json={
                "id": "k-1",
                "name": "python3",
                "last_activity": "2024-01-01T00:00:00.000000Z",
                "execution_state": "starting",
                "connections": 0,
            },
        )

    kernel = await make_client(server, handler).start_kernel("python3")
    assert kernel.id == "k-1"
    assert kernel.execution_state == "starting"


async def test_start_kernel_rejected(server):
    def handler(request: httpx.Request):
        return httpx.Response(500, json={"message": "No such kernel named cobol"})

    with pytest.raises(KernelStartError) as exc_info:
        await make_client(server, handler).start_kernel("cobol")
    assert exc_info.value.status_code == 500
    assert "No such kernel named cobol" in str(exc_info.value)


async def test_start_kernel_bad_token(server):
    def handler(request: httpx.Request):
        return httpx.Response(403)

    with pytest.raises(KernelConnectionError, match="invalid token"):
        await make_client(server, handler).start_kernel("python3")


@pytest.mark.parametrize("status_code", [204, 404])
async def test_shutdown_kernel(server, status_code):
    def handler(request: httpx.Request):
        assert request.method == "DELETE"
        assert request.url.path == "/api/kernels/k-1"
        return httpx.Response(status_code)

    await make_client(server, handler).shutdown_kernel("k-1")


async def test_interrupt_kernel(server):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request.url.path)
        return httpx.Response(204)

    await make_client(server, handler).interrupt_kernel("k-1")
    assert seen == ["/api/kernels/k-1/interrupt"]


async def test_rotate_token(server):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json=[])

    client = make_client(server, handler)
    await client.list_kernels()
    client.rotate_token("xyz")
    await client.list_kernels()
    client.rotate_token(None)
    await client.list_kernels()
    await client.aclose()

    assert seen == ["token abc", "token xyz", None]
