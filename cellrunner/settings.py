"""
Runtime configuration, loaded from CELLRUNNER_* environment variables (or a .env file).

Kernel servers come either from a single CELLRUNNER_SERVER_URL / CELLRUNNER_SERVER_TOKEN pair
or from a JSON file listing several, e.g.

    [{"id": "local", "base_url": "localhost:8888", "auth_token": "abc"}]
"""
import enum
import logging
from pathlib import Path
from typing import List, Optional

import orjson
from pydantic import TypeAdapter
from pydantic_settings import BaseSettings, SettingsConfigDict

from cellrunner.models.servers import KernelServer

logger = logging.getLogger(__name__)

DEFAULT_SERVER_ID = "default"


class ErrorPolicy(str, enum.Enum):
    # Run-all keeps going past a failed cell and surfaces every error
    continue_on_error = "continue"
    # Run-all stops submitting cells after the first failure
    stop_on_error = "stop"


class RuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CELLRUNNER_", env_file=".env", extra="ignore")

    server_url: Optional[str] = None
    server_token: Optional[str] = None
    servers_file: Optional[Path] = None

    default_kernel_name: str = "python3"
    # Seconds to wait for an execute_reply, None waits forever
    execution_timeout: Optional[float] = None
    # Seconds to wait for an interrupt_reply before giving up on it
    interrupt_timeout: float = 10.0
    http_timeout: float = 10.0
    connect_timeout: float = 10.0
    # Sessions idle for longer than this many seconds get shut down, None disables eviction
    idle_session_timeout: Optional[float] = None
    run_all_error_policy: ErrorPolicy = ErrorPolicy.continue_on_error

    log_level: str = "INFO"
    json_logs: bool = False


def load_servers(settings: RuntimeSettings) -> List[KernelServer]:
    servers = []
    if settings.servers_file:
        raw = orjson.loads(Path(settings.servers_file).read_bytes())
        servers.extend(TypeAdapter(List[KernelServer]).validate_python(raw))
        logger.debug(
            "Loaded kernel servers from file",
            extra={"servers_file": str(settings.servers_file), "count": len(servers)},
        )
    if settings.server_url:
        if any(server.id == DEFAULT_SERVER_ID for server in servers):
            logger.warning(
                f"{settings.servers_file} already defines a {DEFAULT_SERVER_ID!r} server, "
                "ignoring CELLRUNNER_SERVER_URL"
            )
        else:
            servers.append(
                KernelServer(
                    id=DEFAULT_SERVER_ID,
                    base_url=settings.server_url,
                    auth_token=settings.server_token,
                )
            )
    return servers
