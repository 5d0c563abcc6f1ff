"""HTTP clients for the MIDI port-server wire contract.

One implementation serves both the native server on this host and the
``/midi`` surface of peer instances. Failures are raised as
``PortServerError`` subclasses so callers can tell transport problems and
missing ports apart from everything else.
"""

from __future__ import annotations

import abc
import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from midirouter.core.logging import get_logger
from midirouter.models.schemas import PortInfo, PortList, PortType, Route, RouteIn

log = get_logger("PortClient")

_PORT_ID = re.compile(r"^(input|output)-(\d+)$")


class PortServerError(Exception):
    """A port-server call failed."""

    reprovision = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PortServerTransportError(PortServerError):
    """Connection refused, reset or timed out."""

    reprovision = True


class PortServerUnavailableError(PortServerError):
    """The server answered but cannot reach its MIDI backend (502/503/504)."""

    reprovision = True


class PortNotFoundError(PortServerError):
    """The port (or route) does not exist on the target server."""

    reprovision = True


def parse_port_id(port_id: str) -> Tuple[Optional[str], str]:
    """Split ``input-3`` into ``("input", "3")``.

    ``virtual:<id>`` identifiers and anything else that does not look like
    ``<direction>-<index>`` are returned unchanged with no direction.
    """
    if port_id.startswith("virtual:"):
        return None, port_id
    m = _PORT_ID.match(port_id)
    if not m:
        return None, port_id
    return m.group(1), m.group(2)


def _port_path(port_id: str) -> str:
    return parse_port_id(port_id)[1]


def error_for(message: str, status_code: Optional[int] = None) -> PortServerError:
    """Classify an error reply into the matching exception type."""
    if status_code == 404 or "not found" in message.lower():
        return PortNotFoundError(message, status_code)
    if status_code in (502, 503, 504) or "bad gateway" in message.lower():
        return PortServerUnavailableError(message, status_code)
    return PortServerError(message, status_code)


def _error_text(resp: httpx.Response) -> str:
    msg = f"HTTP {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return msg
    if isinstance(data, dict):
        if data.get("error"):
            return str(data["error"])
        if data.get("detail"):
            return str(data["detail"])
    return msg


def _ports(names: List[str], kind: PortType) -> List[PortInfo]:
    return [PortInfo(id=i, name=name, type=kind) for i, name in enumerate(names)]


class PortServer(Protocol):
    """What the engine, propagation and API need from a port server."""

    async def health(self) -> Dict[str, Any]: ...

    async def list_ports(self) -> PortList: ...

    async def open_port(self, port_id: str, name: str, port_type: PortType) -> bool: ...

    async def close_port(self, port_id: str) -> bool: ...

    async def get_messages(self, port_id: str) -> List[List[int]]: ...

    async def send_message(self, port_id: str, message: List[int]) -> None: ...

    async def get_routes(self) -> List[Route]: ...

    async def create_route(self, route: RouteIn) -> Route: ...

    async def update_route(self, route_id: str, enabled: bool) -> Route: ...

    async def delete_route(self, route_id: str) -> bool: ...

    async def get_virtual_ports(self) -> Dict[str, List[str]]: ...

    async def create_virtual_port(self, port_id: str, name: str, port_type: PortType) -> bool: ...

    async def delete_virtual_port(self, port_id: str) -> bool: ...


class HttpPortClient(abc.ABC):
    """
    Port-server client over a shared httpx.AsyncClient.

    Subclasses only decide the base URL; everything else is the same wire
    contract whether the server is local or remote.
    """

    def __init__(self, client: httpx.AsyncClient, timeout_s: float = 5.0, health_timeout_s: float = 1.0):
        self._client = client
        self._timeout = timeout_s
        self._health_timeout = health_timeout_s

    @abc.abstractmethod
    def base_url(self) -> str:
        """Base URL every wire path is appended to."""

    async def _request(self, method: str, path: str, *, json: Any = None, timeout: Optional[float] = None) -> Any:
        url = f"{self.base_url()}{path}"
        try:
            resp = await self._client.request(method, url, json=json, timeout=timeout or self._timeout)
        except httpx.TimeoutException as e:
            log.debug("%s %s timed out", method, url)
            raise PortServerTransportError("Request timeout") from e
        except httpx.HTTPError as e:
            log.debug("%s %s failed: %s", method, url, e)
            raise PortServerTransportError(f"Request failed: {e}") from e
        except (httpx.InvalidURL, ValueError, OverflowError) as e:
            # Malformed address or port; reopening will not help
            raise PortServerError(f"Invalid server address: {e}") from e

        if resp.status_code >= 400:
            raise error_for(_error_text(resp), resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise PortServerError("Invalid JSON response", resp.status_code) from e

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health", timeout=self._health_timeout)

    async def list_ports(self) -> PortList:
        raw = await self._request("GET", "/ports")
        return PortList(
            inputs=_ports(raw.get("inputs", []), PortType.INPUT),
            outputs=_ports(raw.get("outputs", []), PortType.OUTPUT),
        )

    async def open_port(self, port_id: str, name: str, port_type: PortType) -> bool:
        data = await self._request(
            "POST", f"/port/{_port_path(port_id)}", json={"name": name, "type": PortType(port_type).value}
        )
        return bool(data.get("success", True))

    async def close_port(self, port_id: str) -> bool:
        data = await self._request("DELETE", f"/port/{_port_path(port_id)}")
        return bool(data.get("success", True))

    async def get_messages(self, port_id: str) -> List[List[int]]:
        data = await self._request("GET", f"/port/{_port_path(port_id)}/messages")
        return [list(m) for m in data.get("messages", [])]

    async def send_message(self, port_id: str, message: List[int]) -> None:
        data = await self._request("POST", f"/port/{_port_path(port_id)}/send", json={"message": list(message)})
        if isinstance(data, dict) and data.get("success") is False:
            raise error_for(str(data.get("error") or "Send failed"))

    async def get_routes(self) -> List[Route]:
        data = await self._request("GET", "/routes")
        return [Route.model_validate(r) for r in data.get("routes", [])]

    async def create_route(self, route: RouteIn) -> Route:
        data = await self._request("POST", "/routes", json=route.model_dump(mode="json", exclude_none=True))
        return Route.model_validate(data.get("route", data))

    async def update_route(self, route_id: str, enabled: bool) -> Route:
        data = await self._request("PUT", f"/routes/{route_id}", json={"enabled": enabled})
        return Route.model_validate(data.get("route", data))

    async def delete_route(self, route_id: str) -> bool:
        data = await self._request("DELETE", f"/routes/{route_id}")
        return bool(data.get("success", True))

    async def get_virtual_ports(self) -> Dict[str, List[str]]:
        data = await self._request("GET", "/virtual-ports")
        return {"inputs": list(data.get("inputs", [])), "outputs": list(data.get("outputs", []))}

    async def create_virtual_port(self, port_id: str, name: str, port_type: PortType) -> bool:
        data = await self._request(
            "POST", f"/virtual-ports/{port_id}", json={"name": name, "type": PortType(port_type).value}
        )
        return bool(data.get("success", True))

    async def delete_virtual_port(self, port_id: str) -> bool:
        data = await self._request("DELETE", f"/virtual-ports/{port_id}")
        return bool(data.get("success", True))


class LocalPortClient(HttpPortClient):
    """Client for the native server on this host.

    The port is looked up on every call so a restarted native server on a
    different port is picked up without replacing the client.
    """

    def __init__(self, client: httpx.AsyncClient, port_provider: Callable[[], Optional[int]], **kwargs):
        super().__init__(client, **kwargs)
        self._port_provider = port_provider

    def base_url(self) -> str:
        port = self._port_provider()
        if not port:
            raise PortServerUnavailableError("MIDI server not running")
        return f"http://localhost:{port}"

    def __repr__(self) -> str:
        return f"LocalPortClient(port={self._port_provider()})"


class RemotePortClient(HttpPortClient):
    """Client for a peer's port-server surface at a fixed base URL."""

    def __init__(self, client: httpx.AsyncClient, server_url: str, **kwargs):
        super().__init__(client, **kwargs)
        self._base = server_url.rstrip("/")

    def base_url(self) -> str:
        return self._base

    def __repr__(self) -> str:
        return f"RemotePortClient({self._base!r})"
