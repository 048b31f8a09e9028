import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cellrunner.models.sessions import utcnow

PROTOCOL_VERSION = "5.3"


class Header(BaseModel):
    model_config = ConfigDict(extra="allow")

    msg_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    msg_type: str
    session: str = ""
    username: str = "cellrunner"
    date: datetime = Field(default_factory=utcnow)
    version: str = PROTOCOL_VERSION


class ParentHeader(BaseModel):
    # Empty ({}) for unsolicited broadcasts, a full Header otherwise
    model_config = ConfigDict(extra="allow")

    msg_id: Optional[str] = None
    msg_type: Optional[str] = None


class BaseKernelMessage(BaseModel):
    header: Header
    parent_header: ParentHeader = Field(default_factory=ParentHeader)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    content: Any = None  # override in subclasses to be a pydantic model
    channel: Optional[str] = None
    # Copy of header.msg_type at the top level, the same way jupyter_client message dicts carry
    # it, so the tagged union can discriminate on it. Override in subclasses to be Literal
    msg_type: Optional[str] = None

    @model_validator(mode="after")
    def set_msg_type(self):
        self.msg_type = self.header.msg_type
        return self

    @property
    def msg_id(self) -> str:
        return self.header.msg_id

    @property
    def parent_id(self) -> Optional[str]:
        return self.parent_header.msg_id


class BaseKernelRequest(BaseKernelMessage):
    """Messages we send to the kernel"""

    channel: Optional[str] = "shell"


class BaseKernelResponse(BaseKernelMessage):
    """Messages the kernel (or the gateway on its behalf) sends to us"""

    pass
