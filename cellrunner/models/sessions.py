import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, enum.Enum):
    starting = "starting"
    idle = "idle"
    busy = "busy"
    disconnected = "disconnected"
    dead = "dead"

    @property
    def accepts_requests(self) -> bool:
        """Whether an ExecutionRequest may be submitted (queued) against a session."""
        return self not in (SessionStatus.disconnected, SessionStatus.dead)

    @property
    def can_execute(self) -> bool:
        """Whether the head of the queue may be sent to the kernel right now."""
        return self in (SessionStatus.idle, SessionStatus.busy)


# Kernel execution_state values from iopub status messages -> session status
KERNEL_STATE_TO_SESSION_STATUS = {
    "starting": SessionStatus.starting,
    "restarting": SessionStatus.starting,
    "autorestarting": SessionStatus.starting,
    "idle": SessionStatus.idle,
    "busy": SessionStatus.busy,
    "dead": SessionStatus.dead,
}


class KernelSession(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    server_id: str
    kernel_name: str
    # Assigned by the kernel server, changes when the session is restarted
    kernel_id: Optional[str] = None
    status: SessionStatus = SessionStatus.starting
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    # Last execution counter reported by the kernel. Only a restart resets it to 0.
    execution_count: int = 0
    # False when the session attached to a kernel someone else started, closing it then leaves
    # the kernel running
    owns_kernel: bool = True


class SessionEvent(BaseModel):
    """
    Published by the SessionRegistry whenever a session changes status, and with the unchanged
    status when an execution on the session times out.
    """

    session_id: uuid.UUID
    status: SessionStatus
    previous: Optional[SessionStatus] = None
    # "restart", "closed", "evicted", "timeout: <request_id>", or a description of the
    # transport failure
    reason: Optional[str] = None

    @property
    def is_teardown(self) -> bool:
        """The session is going away on purpose rather than failing."""
        return self.reason in ("restart", "closed", "evicted")

    @property
    def is_timeout(self) -> bool:
        """An execution on the session missed its deadline, the session status is unchanged."""
        return bool(self.reason) and self.reason.startswith("timeout:")
