"""Pydantic models shared by the routing services and the HTTP API."""
from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Optional

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, computed_field, field_validator

# Endpoint address meaning "the native server on this host"
LOCAL = "local"


def is_local_address(address: Optional[str]) -> bool:
    return address is None or address == "" or address == LOCAL


_HTTP_URL = TypeAdapter(AnyHttpUrl)


def is_server_address(address: Optional[str]) -> bool:
    """True for the local sentinel or an http(s) URL with a host and a valid port."""
    if is_local_address(address):
        return True
    try:
        _HTTP_URL.validate_python(address)
    except ValidationError:
        return False
    return True


class PortType(str, Enum):
    """Direction of a MIDI port."""
    INPUT = "input"
    OUTPUT = "output"


class RouteState(str, Enum):
    """Health of a route as seen by the routing engine."""
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


class Endpoint(BaseModel):
    """One side of a route: a port on some port server."""
    server_address: str = LOCAL
    port_id: str = Field(min_length=1)
    port_name: str = ""

    @field_validator("server_address")
    @classmethod
    def _check_server_address(cls, value: str) -> str:
        if not is_server_address(value):
            raise ValueError(f"must be '{LOCAL}' or an http(s) URL")
        return value


class RouteIn(BaseModel):
    """Input model used to create a route; ``id`` is optional for local callers."""
    id: Optional[str] = None
    enabled: bool = True
    source: Endpoint
    destination: Endpoint
    owner_peer: Optional[str] = None


class Route(RouteIn):
    """A stored route."""
    id: str


class RouteUpdate(BaseModel):
    enabled: bool


class RouteStatus(BaseModel):
    """Derived per-route health; never persisted."""
    route_id: str
    status: RouteState
    error: Optional[str] = None
    messages_routed: int = 0
    last_message_time: Optional[float] = None


class VirtualPortIn(BaseModel):
    name: str = Field(min_length=1)
    type: PortType
    is_auto_created: bool = False
    associated_route_id: Optional[str] = None


class VirtualPortConfig(VirtualPortIn):
    """A software-declared port the native server should materialize."""
    id: str
    created_at: float


class PortInfo(BaseModel):
    """A port as enumerated by a port server (by array position)."""
    id: int
    name: str
    type: PortType

    @computed_field
    @property
    def port_id(self) -> str:
        return f"{self.type.value}-{self.id}"


class PortList(BaseModel):
    inputs: List[PortInfo] = []
    outputs: List[PortInfo] = []


MidiByte = Annotated[int, Field(ge=0, le=255)]


class MidiMessage(BaseModel):
    message: List[MidiByte] = Field(min_length=1)


class DiscoveredServer(BaseModel):
    """A peer (or this instance) heard on the discovery channel."""
    server_name: str
    api_address: str
    port_server_port: int
    last_seen: float
    is_local: bool = False


class Announcement(BaseModel):
    """Discovery datagram; field aliases keep the wire format camelCase."""
    model_config = ConfigDict(populate_by_name=True)

    kind: str = Field(alias="type")
    protocol_version: int = Field(alias="version")
    server_name: str = Field(alias="serverName")
    api_address: str = Field(alias="apiUrl")
    port_server_port: int = Field(alias="midiServerPort")
    timestamp: float


class ProcessStatus(BaseModel):
    """Status of the native MIDI server process on this host."""
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    url: Optional[str] = None


class ServerNameIn(BaseModel):
    name: str = Field(min_length=1)


class LogEntry(BaseModel):
    id: str
    timestamp: float
    severity: str
    message: str
    source: str
