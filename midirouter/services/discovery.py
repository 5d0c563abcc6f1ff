"""UDP broadcast peer discovery.

Every instance announces itself on a well-known port and listens for the
announcements of others. Heard servers (our own echo included) are kept in
a table that expires entries not re-announced within the TTL.
"""

from __future__ import annotations

import asyncio
import json
import socket
import time
from typing import Callable, Dict, List, Optional, Tuple

import netifaces
from pydantic import ValidationError

from midirouter.core.logging import get_logger
from midirouter.metrics.prometheus import KNOWN_PEERS
from midirouter.models.schemas import Announcement, DiscoveredServer

log = get_logger("Discovery")

ANNOUNCE_TYPE = "midi-server-announce"
PROTOCOL_VERSION = 1
GLOBAL_BROADCAST = "255.255.255.255"

ServerCallback = Callable[[DiscoveredServer], None]


def _ipv4_interfaces() -> List[Tuple[str, str]]:
    """``(addr, netmask)`` of every non-loopback IPv4 interface."""
    found = []
    try:
        for iface in netifaces.interfaces():
            addrs = netifaces.ifaddresses(iface)
            for info in addrs.get(netifaces.AF_INET, []):
                addr = info.get("addr")
                if not addr or addr.startswith("127.") or addr == "0.0.0.0":
                    continue
                found.append((addr, info.get("netmask") or "255.255.255.255"))
    except (OSError, ValueError) as e:
        log.error("Error getting network interfaces: %s", e)
    return found


def local_ipv4_addresses() -> List[str]:
    return [addr for addr, _ in _ipv4_interfaces()]


def broadcast_address(addr: str, netmask: str) -> str:
    """Directed broadcast address of ``addr``'s subnet (``addr | ~netmask``)."""
    a = int.from_bytes(socket.inet_aton(addr), "big")
    m = int.from_bytes(socket.inet_aton(netmask), "big")
    return socket.inet_ntoa(((a | (~m & 0xFFFFFFFF)) & 0xFFFFFFFF).to_bytes(4, "big"))


def get_broadcast_addresses() -> List[str]:
    targets = [GLOBAL_BROADCAST]
    for addr, netmask in _ipv4_interfaces():
        try:
            target = broadcast_address(addr, netmask)
        except OSError:
            continue
        if target not in targets:
            targets.append(target)
    return targets


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Hands every received datagram to the owning service."""

    def __init__(self, service: "DiscoveryService"):
        self._service = service

    def datagram_received(self, data: bytes, addr) -> None:
        self._service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.debug("Discovery socket error: %s", exc)


class DiscoveryService:
    """
    Announces this instance and tracks peers heard on the broadcast port.

    The table is keyed by API address. ``server_added_callback`` fires when an
    address is first inserted and ``server_removed_callback`` once per expiry.
    """

    def __init__(
        self,
        api_url: str,
        midi_server_port: int,
        *,
        server_name: Optional[str] = None,
        port: int = 41234,
        broadcast_interval_s: float = 5.0,
        server_ttl_s: float = 15.0,
        server_added_callback: Optional[ServerCallback] = None,
        server_removed_callback: Optional[ServerCallback] = None,
        clock: Callable[[], float] = time.time,
        broadcast_targets: Callable[[], List[str]] = get_broadcast_addresses,
    ):
        self.api_url = api_url.rstrip("/")
        self.midi_server_port = midi_server_port
        self._server_name = server_name or socket.gethostname()
        self._port = port
        self._broadcast_interval = broadcast_interval_s
        self._ttl = server_ttl_s
        self.server_added_callback = server_added_callback
        self.server_removed_callback = server_removed_callback
        self._clock = clock
        self._broadcast_targets = broadcast_targets

        self._servers: Dict[str, DiscoveredServer] = {}
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._broadcast_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._transport is not None

    @property
    def server_name(self) -> str:
        return self._server_name

    def set_server_name(self, name: str) -> None:
        self._server_name = name
        log.info("Server name set to %s", name)
        local = self._servers.get(self.api_url)
        if local is not None:
            local.server_name = name

    async def start(self) -> bool:
        if self._transport is not None:
            return True
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(("0.0.0.0", self._port))
            transport, _ = await loop.create_datagram_endpoint(lambda: DiscoveryProtocol(self), sock=sock)
        except OSError as e:
            sock.close()
            log.error("Failed to start discovery on UDP %d: %s", self._port, e)
            return False

        self._transport = transport
        log.info("Discovery listening on UDP %d as %r (%s)", self._port, self._server_name, self.api_url)
        self.broadcast()
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        return True

    async def stop(self) -> None:
        for task in (self._broadcast_task, self._cleanup_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._broadcast_task = self._cleanup_task = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._servers.clear()
        KNOWN_PEERS.set(0)
        log.info("Discovery stopped")

    def build_announcement(self) -> bytes:
        ann = Announcement(
            kind=ANNOUNCE_TYPE,
            protocol_version=PROTOCOL_VERSION,
            server_name=self._server_name,
            api_address=self.api_url,
            port_server_port=self.midi_server_port,
            timestamp=self._clock(),
        )
        return json.dumps(ann.model_dump(by_alias=True)).encode("utf-8")

    def broadcast(self) -> None:
        if self._transport is None:
            return
        payload = self.build_announcement()
        for target in self._broadcast_targets():
            try:
                self._transport.sendto(payload, (target, self._port))
            except OSError as e:
                log.debug("Broadcast to %s failed: %s", target, e)

    async def _broadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self._broadcast_interval)
            self.broadcast()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ttl / 2)
            self.cleanup_stale_servers()

    def handle_datagram(self, data: bytes, addr=None) -> Optional[DiscoveredServer]:
        """Insert or refresh the sender; malformed datagrams are dropped."""
        try:
            ann = Announcement.model_validate(json.loads(data.decode("utf-8")))
        except (ValueError, ValidationError):
            return None
        if ann.kind != ANNOUNCE_TYPE or ann.protocol_version != PROTOCOL_VERSION:
            return None

        key = ann.api_address.rstrip("/")
        now = self._clock()
        existing = self._servers.get(key)
        if existing is not None:
            existing.last_seen = now
            existing.server_name = ann.server_name
            existing.port_server_port = ann.port_server_port
            return existing

        server = DiscoveredServer(
            server_name=ann.server_name,
            api_address=key,
            port_server_port=ann.port_server_port,
            last_seen=now,
            is_local=key == self.api_url,
        )
        self._servers[key] = server
        self._update_gauge()
        if not server.is_local:
            log.info("Discovered server %s at %s", server.server_name, key)
        if self.server_added_callback:
            self.server_added_callback(server.model_copy())
        return server

    def cleanup_stale_servers(self) -> List[DiscoveredServer]:
        now = self._clock()
        removed = []
        for key, server in list(self._servers.items()):
            if server.is_local or now - server.last_seen <= self._ttl:
                continue
            del self._servers[key]
            removed.append(server)
            log.info("Server %s at %s expired", server.server_name, key)
            if self.server_removed_callback:
                self.server_removed_callback(server.model_copy())
        if removed:
            self._update_gauge()
        return removed

    def _update_gauge(self) -> None:
        KNOWN_PEERS.set(sum(1 for s in self._servers.values() if not s.is_local))

    def get_servers(self) -> List[DiscoveredServer]:
        return [s.model_copy() for s in self._servers.values()]

    def get_server(self, api_address: str) -> Optional[DiscoveredServer]:
        server = self._servers.get(api_address.rstrip("/"))
        return server.model_copy() if server else None
