"""Per-address cache of port-server clients.

Owned by the composition root and handed to the engine, propagation and the
API so every caller shares one client (and one connection pool) per server.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

import httpx

from midirouter.models.schemas import LOCAL, is_local_address
from midirouter.services.port_client import LocalPortClient, PortServer, RemotePortClient

ClientFactory = Callable[[str], PortServer]


class ClientRegistry:
    """Maps a server address to its cached client."""

    def __init__(self, factory: ClientFactory, self_address: Optional[str] = None):
        self._factory = factory
        self._clients: Dict[str, PortServer] = {}
        self.self_address = self_address

    def is_local(self, address: Optional[str]) -> bool:
        """True for the local sentinel and for this instance's own address."""
        if is_local_address(address):
            return True
        return self.self_address is not None and address.rstrip("/") == self.self_address.rstrip("/")

    def key_for(self, address: Optional[str]) -> str:
        return LOCAL if self.is_local(address) else address.rstrip("/")

    def get(self, address: Optional[str]) -> PortServer:
        key = self.key_for(address)
        client = self._clients.get(key)
        if client is None:
            client = self._factory(key)
            self._clients[key] = client
        return client

    def lookup(self, address: Optional[str]) -> PortServer:
        """Like ``get``, but a client for an address seen for the first time is not kept."""
        key = self.key_for(address)
        client = self._clients.get(key)
        if client is None:
            if key == LOCAL:
                return self.get(key)
            client = self._factory(key)
        return client

    def local(self) -> PortServer:
        return self.get(LOCAL)

    def clear(self) -> None:
        self._clients.clear()

    def __len__(self) -> int:
        return len(self._clients)


def http_client_factory(
    client: httpx.AsyncClient,
    local_port: Callable[[], Optional[int]],
    timeout_s: float = 5.0,
    health_timeout_s: float = 1.0,
) -> ClientFactory:
    """Build real HTTP clients sharing one httpx.AsyncClient."""

    def factory(key: str) -> PortServer:
        if key == LOCAL:
            return LocalPortClient(client, local_port, timeout_s=timeout_s, health_timeout_s=health_timeout_s)
        return RemotePortClient(client, key, timeout_s=timeout_s, health_timeout_s=health_timeout_s)

    return factory
