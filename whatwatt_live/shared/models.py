"""
MODULE OVERVIEW:
Typed data structures shared by the auth probe, the parser and the stream
manager, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
`ConnectionConfig` is the only thing a caller has to build to talk to a device.
It is treated as immutable: a settings change produces a new instance and the
manager decides from the diff whether the live connection must be restarted.
"""
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from whatwatt_live.shared.config import settings

# Fields whose change invalidates the open connection and the cached auth
CONNECTION_FIELDS = ("host", "port", "use_tls", "username", "password")


class AuthScheme(str, Enum):
    NONE = "none"
    BASIC = "basic"
    DIGEST = "digest"


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORING = "erroring"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    STOPPED = "stopped"


class ConnectionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str
    port: int = Field(default_factory=lambda: settings.DEFAULT_PORT, gt=0, lt=65536)
    use_tls: bool = False
    username: str = ""
    password: str = ""
    auth_scheme: Literal["auto", "digest", "basic"] = "auto"
    verify_tls: bool = True

    timeout: float = Field(default_factory=lambda: settings.REQUEST_TIMEOUT_S, gt=0)
    # None: a chunk read may take as long as the heartbeat allows
    read_timeout: Optional[float] = None
    heartbeat_timeout: float = Field(default_factory=lambda: settings.HEARTBEAT_TIMEOUT_S, gt=0)
    heartbeat_interval: float = Field(default_factory=lambda: settings.HEARTBEAT_CHECK_INTERVAL_S, gt=0)

    reconnect_delay: float = Field(default_factory=lambda: settings.RECONNECT_BASE_DELAY_S, ge=0)
    max_reconnect_attempts: int = Field(default_factory=lambda: settings.RECONNECT_MAX_ATTEMPTS, ge=0)
    max_backoff_multiplier: int = Field(default_factory=lambda: settings.RECONNECT_MAX_MULTIPLIER, ge=1)

    # Identity handed to the address resolver on reconnect
    device_id: Optional[str] = None

    @field_validator("host")
    @classmethod
    def _host_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Host is required")
        return value

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        # IPv6 literals need brackets in the authority
        host = f"[{self.host}]" if ":" in self.host and not self.host.startswith("[") else self.host
        return f"{scheme}://{host}:{self.port}"

    @property
    def effective_read_timeout(self) -> float:
        return self.read_timeout if self.read_timeout is not None else self.heartbeat_timeout

    def connection_key(self) -> tuple:
        return tuple(getattr(self, name) for name in CONNECTION_FIELDS)

    def needs_restart(self, other: "ConnectionConfig") -> bool:
        return self.connection_key() != other.connection_key()


class Frame(BaseModel):
    """One server-sent event block."""
    event: str = "message"
    data: str = ""


class StreamStatus(BaseModel):
    connected: bool
    reconnect_attempts: int
    url: Optional[str]
    state: ConnectionState


class AddressResolution(BaseModel):
    """Answer of an address-resolution collaborator for one device."""
    success: bool
    ip_updated: bool = False
    connection_host: Optional[str] = None
    connection_port: Optional[int] = None
    found: bool = False
    error: Optional[str] = None
