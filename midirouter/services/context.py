"""Composition root: builds every routing service and owns their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

import httpx

from midirouter.core.config import Settings
from midirouter.core.log_buffer import LogBuffer
from midirouter.core.logging import SERVICE_NAME, get_logger
from midirouter.models.schemas import DiscoveredServer
from midirouter.services.client_registry import ClientFactory, ClientRegistry, http_client_factory
from midirouter.services.discovery import DiscoveryService, local_ipv4_addresses
from midirouter.services.native_server import NativeServerMonitor
from midirouter.services.outcome import Outcome, best_effort
from midirouter.services.propagation import RoutePropagator, peer_address
from midirouter.services.routing_engine import RoutingEngine
from midirouter.services.storage import RoutesStorage, VirtualPortsStorage

log = get_logger("Context")


def advertised_api_url(settings: Settings) -> str:
    """URL peers use to reach this instance's API."""
    if settings.advertise_url:
        return settings.advertise_url.rstrip("/")
    addresses = local_ipv4_addresses()
    host = addresses[0] if addresses else "127.0.0.1"
    return f"http://{host}:{settings.api_port}"


class RoutingContext:
    """
    Everything one instance runs, wired together.

    The API layer reaches services through ``app.state.ctx``; tests build a
    context with a fake client factory and discovery disabled.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        *,
        client_factory: Optional[ClientFactory] = None,
        api_url: Optional[str] = None,
        discovery_enabled: Optional[bool] = None,
        log_buffer: Optional[LogBuffer] = None,
    ):
        self.settings = settings
        self.http = http
        self.api_url = (api_url or advertised_api_url(settings)).rstrip("/")
        self.self_address = peer_address(self.api_url)

        self.log_buffer = log_buffer or LogBuffer(settings.log_buffer_size)
        self.native = NativeServerMonitor(
            http, settings.midi_server_port, settings.midi_server_pid, settings.health_timeout_s
        )
        factory = client_factory or http_client_factory(
            http, self.native.current_port, settings.request_timeout_s, settings.health_timeout_s
        )
        self.clients = ClientRegistry(factory, self.self_address)

        self.routes = RoutesStorage(settings.config_dir, settings.save_debounce_s)
        self.virtual_ports = VirtualPortsStorage(settings.config_dir, settings.save_debounce_s)

        self.engine = RoutingEngine(
            self.routes,
            self.clients,
            poll_interval_s=settings.poll_interval_s,
            reopen_cooldown_s=settings.reopen_cooldown_s,
            reopen_backoff_max_s=settings.reopen_backoff_max_s,
            poll_error_log_window_s=settings.poll_error_log_window_s,
        )

        enabled = settings.discovery_enabled if discovery_enabled is None else discovery_enabled
        self.discovery: Optional[DiscoveryService] = None
        if enabled:
            self.discovery = DiscoveryService(
                self.api_url,
                settings.midi_server_port,
                server_name=settings.server_name,
                port=settings.discovery_port,
                broadcast_interval_s=settings.broadcast_interval_s,
                server_ttl_s=settings.server_ttl_s,
                server_added_callback=self._on_server_added,
            )

        self.propagator = RoutePropagator(
            self.discovery, self.clients, self.routes, self.self_address, self.engine.on_routes_changed
        )
        self._sync_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        logging.getLogger(SERVICE_NAME).addHandler(self.log_buffer)
        log.info("Starting as %s", self.self_address)
        await self.native.refresh()
        await self.recreate_virtual_ports()
        if self.discovery is not None:
            await self.discovery.start()
        await self.engine.start()
        if self.discovery is not None:
            self._sync_task = asyncio.create_task(self._peer_sync_loop())

    async def stop(self) -> None:
        tasks = [t for t in (self._sync_task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._sync_task = None
        self._background.clear()

        await self.engine.stop()
        if self.discovery is not None:
            await self.discovery.stop()
        await self.routes.flush()
        await self.virtual_ports.flush()
        self.clients.clear()
        log.info("Stopped")
        logging.getLogger(SERVICE_NAME).removeHandler(self.log_buffer)

    # -------------------------------------------------------------- helpers

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def recreate_virtual_ports(self) -> List[Outcome]:
        ports = self.virtual_ports.get_all()
        if not ports:
            return []
        log.info("Recreating %d virtual ports", len(ports))
        local = self.clients.local()
        return list(
            await asyncio.gather(
                *(
                    best_effort("local", local.create_virtual_port(p.id, p.name, p.type), log, f"Recreate virtual port {p.name}")
                    for p in ports
                )
            )
        )

    def _on_server_added(self, server: DiscoveredServer) -> None:
        if server.is_local or server.port_server_port <= 0:
            return
        log.info("New peer %s, syncing routes", server.server_name)
        self.spawn(self._sync_once())

    async def _sync_once(self) -> int:
        try:
            return await self.propagator.sync_routes_from_peers()
        except Exception:
            log.exception("Route sync failed")
            return 0

    async def _peer_sync_loop(self) -> None:
        # Give discovery one broadcast round to hear peers
        await asyncio.sleep(self.settings.broadcast_interval_s)
        while True:
            await self._sync_once()
            await asyncio.sleep(self.settings.peer_sync_interval_s)
