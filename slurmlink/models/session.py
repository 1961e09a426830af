"""Connection state and session models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr

from slurmlink.models.responses import ErrorInfo


class ConnectionState(str, Enum):
    disconnected = "Disconnected"
    connecting = "Connecting"
    connected = "Connected"
    expired = "Expired"


class SessionInfo(BaseModel):
    """The single authenticated session. Never holds a credential."""

    state: ConnectionState
    host: str
    username: str
    port: int = 22
    connected_at: datetime


class ConnectionStatus(BaseModel):
    state: ConnectionState
    session: Optional[SessionInfo] = None
    last_error: Optional[ErrorInfo] = None


class ConnectRequest(BaseModel):
    """Request body for POST /connect."""

    username: str
    password: SecretStr
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
