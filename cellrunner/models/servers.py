from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class KernelServer(BaseModel):
    """
    A configured kernel gateway. Records come from user configuration and are never persisted or
    edited here, apart from token rotation.
    """

    id: str
    base_url: str
    auth_token: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def normalize_base_url(cls, value: str) -> str:
        # Users tend to type "localhost:8888" or paste urls with a trailing slash or /api suffix
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            value = "http://" + value
        if value.endswith("/api"):
            value = value[: -len("/api")]
        return value

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api"

    @property
    def ws_url(self) -> str:
        # http -> ws, https -> wss
        return "ws" + self.base_url[len("http") :]

    def channels_url(self, kernel_id: str) -> str:
        return f"{self.ws_url}/api/kernels/{kernel_id}/channels"

    @property
    def auth_headers(self) -> Dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"token {self.auth_token}"}


class KernelSpecDetails(BaseModel):
    display_name: str = ""
    language: str = ""
    argv: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KernelSpec(BaseModel):
    name: str
    spec: KernelSpecDetails = Field(default_factory=KernelSpecDetails)


class RemoteKernel(BaseModel):
    """A kernel as reported by the gateway's /api/kernels endpoints."""

    id: str
    name: str
    last_activity: Optional[datetime] = None
    execution_state: Optional[str] = None
    connections: Optional[int] = None


class ServerStatus(BaseModel):
    success: bool
    message: str
    version: Optional[str] = None
