"""Best-effort replication of route CRUD across discovered peers."""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from midirouter.core.logging import get_logger
from midirouter.metrics.prometheus import PROPAGATIONS
from midirouter.models.schemas import DiscoveredServer, Endpoint, Route, RouteIn, is_local_address
from midirouter.services.client_registry import ClientRegistry
from midirouter.services.discovery import DiscoveryService
from midirouter.services.outcome import Outcome, best_effort
from midirouter.services.port_client import PortServerError
from midirouter.services.storage import DuplicateRouteError, RoutesStorage

log = get_logger("Propagation")

# Every instance serves the port-server contract under this prefix
PORT_SERVER_PREFIX = "/midi"


def peer_address(api_url: str) -> str:
    """Port-server address of an instance reachable at ``api_url``."""
    return f"{api_url.rstrip('/')}{PORT_SERVER_PREFIX}"


def localize(route: Route, address: str) -> Route:
    """Rewrite ``local`` endpoints and owner to the concrete ``address``."""

    def _endpoint(ep: Endpoint) -> Endpoint:
        if is_local_address(ep.server_address):
            return ep.model_copy(update={"server_address": address})
        return ep.model_copy()

    owner = route.owner_peer
    return route.model_copy(
        update={
            "source": _endpoint(route.source),
            "destination": _endpoint(route.destination),
            "owner_peer": address if is_local_address(owner) else owner,
        }
    )


class RoutePropagator:
    """Pushes local route operations to peers and pulls missing routes back.

    Failures against one peer never affect the others or the caller; each
    push returns one ``Outcome`` per targeted peer.
    """

    def __init__(
        self,
        discovery: Optional[DiscoveryService],
        clients: ClientRegistry,
        routes: RoutesStorage,
        self_address: str,
        on_routes_changed: Optional[Callable[[], None]] = None,
    ):
        self._discovery = discovery
        self._clients = clients
        self._routes = routes
        self.self_address = self_address
        self._on_routes_changed = on_routes_changed

    def peers(self, exclude: Optional[str] = None) -> List[str]:
        """Port-server addresses of every eligible non-local peer."""
        if self._discovery is None:
            return []
        excluded = exclude.rstrip("/") if exclude else None
        targets = []
        for server in self._discovery.get_servers():
            if not self._eligible(server):
                continue
            address = peer_address(server.api_address)
            if address == excluded or self._clients.is_local(address):
                continue
            targets.append(address)
        return targets

    @staticmethod
    def _eligible(server: DiscoveredServer) -> bool:
        return not server.is_local and server.port_server_port > 0

    async def _push(self, operation: str, targets: List[str], make_call) -> List[Outcome]:
        if not targets:
            return []
        outcomes = await asyncio.gather(
            *(best_effort(t, make_call(self._clients.get(t)), log, f"Propagate {operation}") for t in targets)
        )
        for outcome in outcomes:
            PROPAGATIONS.labels(operation=operation, status="ok" if outcome.ok else "error").inc()
        ok = sum(1 for o in outcomes if o.ok)
        log.info("Propagated %s to %d/%d peers", operation, ok, len(outcomes))
        return list(outcomes)

    async def propagate_create(self, route: Route, exclude: Optional[str] = None) -> List[Outcome]:
        payload = RouteIn.model_validate(localize(route, self.self_address).model_dump())
        return await self._push("create", self.peers(exclude), lambda c: c.create_route(payload))

    async def propagate_update(self, route_id: str, enabled: bool, exclude: Optional[str] = None) -> List[Outcome]:
        return await self._push("update", self.peers(exclude), lambda c: c.update_route(route_id, enabled))

    async def propagate_delete(self, route_id: str, exclude: Optional[str] = None) -> List[Outcome]:
        return await self._push("delete", self.peers(exclude), lambda c: c.delete_route(route_id))

    async def sync_routes_from_peers(self) -> int:
        """Create locally every peer route whose id is not known here yet."""
        targets = self.peers()
        if not targets:
            return 0
        results = await asyncio.gather(*(self._fetch(t) for t in targets))

        created = 0
        for address, routes in zip(targets, results):
            for route in routes:
                if route.id in self._routes:
                    continue
                remote = localize(route, address)
                try:
                    self._routes.create(remote, route_id=route.id)
                except DuplicateRouteError:
                    continue
                created += 1
                log.info("Synced route %s from %s", route.id, address)

        if created:
            log.info("Synced %d routes from peers", created)
            if self._on_routes_changed:
                self._on_routes_changed()
        return created

    async def _fetch(self, address: str) -> List[Route]:
        try:
            return await self._clients.get(address).get_routes()
        except PortServerError as e:
            log.warning("Route sync from %s failed: %s", address, e)
            return []
