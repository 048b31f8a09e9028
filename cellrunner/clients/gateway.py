"""
GatewayClient talks to a kernel server's REST API (Jupyter Server, Jupyter Kernel Gateway,
Enterprise Gateway...) to list kernelspecs and to start, interrupt, and shut down kernels.
The per-kernel websocket is handled by cellrunner.clients.channels.KernelChannel.
"""
import logging
from typing import List, Optional

import httpx
import pydantic

from cellrunner.errors import KernelConnectionError, KernelStartError
from cellrunner.models.servers import KernelServer, KernelSpec, RemoteKernel, ServerStatus

logger = logging.getLogger(__name__)


class GatewayClient:
    def __init__(
        self,
        server: KernelServer,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = httpx.Timeout(10.0),
    ):
        self.server = server
        self.headers = {**server.auth_headers}
        if headers:
            self.headers.update(headers)

        self.client = httpx.AsyncClient(
            base_url=server.api_url,
            headers=self.headers,
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def rotate_token(self, auth_token: Optional[str]) -> None:
        """Swap the auth token used for future requests, open websockets are unaffected."""
        self.server = self.server.model_copy(update={"auth_token": auth_token})
        self.client.headers.pop("Authorization", None)
        self.client.headers.update(self.server.auth_headers)
        self.headers = dict(self.client.headers)

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Send a request, translating transport failures into KernelConnectionError. HTTP error
        statuses are left to the caller via resp.raise_for_status() since what they mean depends
        on the endpoint.
        """
        try:
            return await self.client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise KernelConnectionError(
                f"Connection to kernel server {self.server.id} timed out"
            ) from e
        except httpx.TransportError as e:
            raise KernelConnectionError(
                f"Kernel server {self.server.id} at {self.server.base_url} is not reachable: {e}"
            ) from e

    def _raise_for_status(self, resp: httpx.Response, message: str) -> None:
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if resp.status_code in (401, 403):
                raise KernelConnectionError(
                    f"{message}: invalid token for kernel server {self.server.id}"
                ) from e
            raise KernelConnectionError(f"{message}: {e}") from e

    async def ping(self) -> ServerStatus:
        """Check that the server is reachable and the token is accepted."""
        try:
            resp = await self._request("GET", "/kernels")
            self._raise_for_status(resp, "Connection failed")
            # GET /api returns {"version": "..."} on Jupyter Server, not all gateways serve it
            version_resp = await self._request("GET", "")
        except KernelConnectionError as e:
            logger.warning("Kernel server ping failed", extra={"server_id": self.server.id})
            return ServerStatus(success=False, message=str(e))
        version = None
        if version_resp.is_success:
            try:
                version = version_resp.json().get("version")
            except ValueError:
                pass
        return ServerStatus(success=True, message="Connected successfully", version=version)

    async def get_kernelspecs(self) -> List[KernelSpec]:
        resp = await self._request("GET", "/kernelspecs")
        self._raise_for_status(resp, "Failed to get available kernels")
        kernelspecs = resp.json().get("kernelspecs", {})
        specs = []
        for name, item in kernelspecs.items():
            specs.append(KernelSpec(name=name, spec=item.get("spec") or {}))
        return specs

    async def list_kernels(self) -> List[RemoteKernel]:
        resp = await self._request("GET", "/kernels")
        self._raise_for_status(resp, "Failed to list kernels")
        return pydantic.TypeAdapter(List[RemoteKernel]).validate_python(resp.json())

    async def start_kernel(self, kernel_name: str) -> RemoteKernel:
        resp = await self._request("POST", "/kernels", json={"name": kernel_name})
        if resp.status_code in (401, 403):
            self._raise_for_status(resp, "Failed to start kernel")
        if resp.is_error:
            try:
                detail = resp.json().get("message") or resp.text
            except ValueError:
                detail = resp.text
            raise KernelStartError(
                f"Kernel server {self.server.id} rejected starting a {kernel_name!r} kernel: "
                f"{resp.status_code} {detail}",
                status_code=resp.status_code,
            )
        kernel = RemoteKernel.model_validate(resp.json())
        logger.info(
            "Started kernel",
            extra={"server_id": self.server.id, "kernel_id": kernel.id, "kernel_name": kernel_name},
        )
        return kernel

    async def shutdown_kernel(self, kernel_id: str) -> None:
        resp = await self._request("DELETE", f"/kernels/{kernel_id}", timeout=60)
        if resp.status_code == 404:
            # Already gone, which is what we wanted
            logger.debug("Kernel already shut down", extra={"kernel_id": kernel_id})
            return
        self._raise_for_status(resp, f"Failed to shut down kernel {kernel_id}")
        logger.info("Shut down kernel", extra={"server_id": self.server.id, "kernel_id": kernel_id})

    async def interrupt_kernel(self, kernel_id: str) -> None:
        resp = await self._request("POST", f"/kernels/{kernel_id}/interrupt")
        self._raise_for_status(resp, f"Failed to interrupt kernel {kernel_id}")
