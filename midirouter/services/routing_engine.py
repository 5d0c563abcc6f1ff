"""Routing engine: provisions ports and relays MIDI between servers.

Two independent activities share the engine state:

* reconciliation (``sync_ports``) opens every port the enabled routes need
  and closes the ones nobody needs any more;
* the poll loop drains each route source on a fast fixed interval and
  forwards every message to every route sharing that source. A source
  still being drained by an earlier tick is skipped, so a stalled server
  holds at most one request per source.

Both run on the event loop only, so the open-port and status tables need no
locking. Route health (``RouteStatus``) is driven purely by poll and forward
outcomes and by reconciliation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from midirouter.core.logging import get_logger
from midirouter.metrics.prometheus import (
    FORWARD_ERRORS,
    MESSAGES_ROUTED,
    POLL_ERRORS,
    POLL_TICK_LATENCY,
    PORT_REOPENS,
)
from midirouter.models.schemas import Endpoint, PortType, Route, RouteState, RouteStatus
from midirouter.services.client_registry import ClientRegistry
from midirouter.services.outcome import Outcome, best_effort
from midirouter.services.port_client import PortServerError
from midirouter.services.storage import RoutesStorage

log = get_logger("Engine")

PortKey = Tuple[str, str]

StatusCallback = Callable[[RouteStatus], None]
MessageCallback = Callable[[str, List[int]], None]


@dataclass
class OpenPortState:
    """A port the engine opened itself and must close when unreferenced."""
    port_id: str
    server_address: str
    type: PortType
    name: str
    ref_count: int = 1


class RoutingEngine:
    """
    Polls route sources and forwards captured messages to destinations.

    Only routes owned by this instance are run; replicated copies of peer
    routes are left to their owner so each source queue has one reader.
    """

    def __init__(
        self,
        routes: RoutesStorage,
        clients: ClientRegistry,
        *,
        poll_interval_s: float = 0.05,
        reopen_cooldown_s: float = 5.0,
        reopen_backoff_max_s: Optional[float] = None,
        poll_error_log_window_s: float = 60.0,
        status_changed_callback: Optional[StatusCallback] = None,
        message_routed_callback: Optional[MessageCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._routes = routes
        self._clients = clients
        self._poll_interval = poll_interval_s
        self._reopen_cooldown = reopen_cooldown_s
        self._reopen_backoff_max = max(reopen_backoff_max_s or reopen_cooldown_s, reopen_cooldown_s)
        self._poll_error_log_window = poll_error_log_window_s
        self.status_changed_callback = status_changed_callback
        self.message_routed_callback = message_routed_callback
        self._clock = clock
        self._wall_clock = wall_clock

        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._statuses: Dict[str, RouteStatus] = {}
        self._open_ports: Dict[PortKey, OpenPortState] = {}
        self._last_reopen: Dict[PortKey, float] = {}
        self._reopen_attempts: Dict[PortKey, int] = {}
        self._last_poll_error_log: Dict[PortKey, float] = {}
        # Sources with a get_messages call still outstanding
        self._polling: Set[PortKey] = set()

        # Reconciliation guard: at most one pass in flight, at most one pending.
        self._sync_running = False
        self._sync_pending = False
        self._sync_task: Optional[asyncio.Task] = None
        self.sync_passes = 0
        self.poll_count = 0

    # ------------------------------------------------------------------ state

    @property
    def running(self) -> bool:
        return self._running

    def get_route_statuses(self) -> List[RouteStatus]:
        return [s.model_copy() for s in self._statuses.values()]

    def get_route_status(self, route_id: str) -> Optional[RouteStatus]:
        status = self._statuses.get(route_id)
        return status.model_copy() if status else None

    def open_ports(self) -> Dict[PortKey, OpenPortState]:
        return dict(self._open_ports)

    def is_owned(self, route: Route) -> bool:
        return self._clients.is_local(route.owner_peer)

    def _owned_routes(self) -> List[Route]:
        return [r for r in self._routes.get_all() if self.is_owned(r)]

    def _port_key(self, endpoint: Endpoint) -> PortKey:
        return self._clients.key_for(endpoint.server_address), endpoint.port_id

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for route in self._owned_routes():
            self._statuses[route.id] = RouteStatus(
                route_id=route.id,
                status=RouteState.ACTIVE if route.enabled else RouteState.DISABLED,
            )
        log.info("Starting with %d owned routes", len(self._statuses))
        self.on_routes_changed()
        self._poll_task = asyncio.create_task(self._poll_loop())
        log.info("Started (poll interval %.0f ms)", self._poll_interval * 1000)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        await self.wait_idle()
        # In-flight ticks finish on their own; their results are dropped.
        self._ticks.clear()
        await self.close_all_ports()
        self._statuses.clear()
        self._last_reopen.clear()
        self._reopen_attempts.clear()
        self._last_poll_error_log.clear()
        self._polling.clear()
        log.info("Stopped")

    # ---------------------------------------------------------- reconciliation

    def on_routes_changed(self) -> None:
        """Request a reconciliation pass; coalesces with one already running."""
        if not self._running:
            return
        if self._sync_running:
            log.debug("sync in progress, marking pending")
            self._sync_pending = True
            return
        self._sync_running = True
        self._sync_pending = False
        self._sync_task = asyncio.create_task(self._run_sync())

    async def _run_sync(self) -> None:
        try:
            while True:
                try:
                    await self.sync_ports()
                except Exception:
                    log.exception("Port reconciliation failed")
                if not self._sync_pending or not self._running:
                    break
                self._sync_pending = False
        finally:
            self._sync_running = False

    async def wait_idle(self) -> None:
        """Wait until no reconciliation pass is running or pending."""
        while self._sync_task is not None and not self._sync_task.done():
            await asyncio.shield(self._sync_task)

    async def sync_ports(self) -> None:
        """Make the provisioned port set match the enabled routes."""
        self.sync_passes += 1
        owned = self._owned_routes()
        needed: Dict[PortKey, OpenPortState] = {}

        for route in owned:
            if not route.enabled:
                continue
            for endpoint, kind in ((route.source, PortType.INPUT), (route.destination, PortType.OUTPUT)):
                key = self._port_key(endpoint)
                if key in needed:
                    needed[key].ref_count += 1
                else:
                    needed[key] = OpenPortState(
                        port_id=endpoint.port_id,
                        server_address=key[0],
                        type=kind,
                        name=endpoint.port_name,
                    )

        closes = []
        for key, state in list(self._open_ports.items()):
            if key not in needed:
                del self._open_ports[key]
                self._forget_port(key)
                closes.append(self._close_port(state))
        await asyncio.gather(*closes)

        opens = []
        for key, wanted in needed.items():
            current = self._open_ports.get(key)
            if current is None:
                self._open_ports[key] = wanted
                opens.append(self._open_port(wanted))
            else:
                current.ref_count = wanted.ref_count
        await asyncio.gather(*opens)

        self._refresh_statuses(owned)

    def _refresh_statuses(self, owned: List[Route]) -> None:
        owned_ids = set()
        for route in owned:
            owned_ids.add(route.id)
            status = self._statuses.get(route.id)
            if status is None:
                status = RouteStatus(
                    route_id=route.id,
                    status=RouteState.ACTIVE if route.enabled else RouteState.DISABLED,
                )
                self._statuses[route.id] = status
            elif not route.enabled:
                status.status = RouteState.DISABLED
                status.error = None
            elif status.status == RouteState.DISABLED:
                status.status = RouteState.ACTIVE
                status.error = None
            self._emit_status(status)

        for route_id in list(self._statuses):
            if route_id not in owned_ids:
                del self._statuses[route_id]

    async def _open_port(self, state: OpenPortState) -> Outcome:
        log.info("Opening port %s (%s) on %s", state.name or state.port_id, state.type.value, state.server_address)
        client = self._clients.get(state.server_address)
        return await best_effort(
            state.server_address,
            client.open_port(state.port_id, state.name, state.type),
            log,
            f"Open port {state.port_id}",
        )

    async def _close_port(self, state: OpenPortState) -> Outcome:
        client = self._clients.get(state.server_address)
        return await best_effort(
            state.server_address,
            client.close_port(state.port_id),
            log,
            f"Close port {state.port_id}",
        )

    async def close_all_ports(self) -> List[Outcome]:
        states = list(self._open_ports.values())
        self._open_ports.clear()
        return list(await asyncio.gather(*(self._close_port(s) for s in states)))

    def _forget_port(self, key: PortKey) -> None:
        self._last_reopen.pop(key, None)
        self._reopen_attempts.pop(key, None)
        self._last_poll_error_log.pop(key, None)

    # ----------------------------------------------------------------- polling

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            tick = asyncio.create_task(self._tick())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)

    async def _tick(self) -> None:
        try:
            await self.poll_routes()
        except Exception:
            log.exception("Poll tick failed")

    async def poll_routes(self) -> None:
        """Run one poll/forward tick over every enabled owned route."""
        self.poll_count += 1
        groups: Dict[PortKey, List[Route]] = {}
        for route in self._owned_routes():
            if route.enabled:
                groups.setdefault(self._port_key(route.source), []).append(route)
        # A source still being drained or forwarded by an earlier tick is skipped
        groups = {key: routes for key, routes in groups.items() if key not in self._polling}

        if self.poll_count % 100 == 0:
            log.debug("Poll cycle %d, %d sources", self.poll_count, len(groups))
        if not groups:
            return
        self._polling.update(groups)
        with POLL_TICK_LATENCY.time():
            await asyncio.gather(*(self._poll_source_and_forward(key, routes) for key, routes in groups.items()))

    async def _poll_source_and_forward(self, key: PortKey, routes: List[Route]) -> None:
        try:
            await self._drain_source(key, routes)
        finally:
            self._polling.discard(key)

    async def _drain_source(self, key: PortKey, routes: List[Route]) -> None:
        address, port_id = key
        client = self._clients.get(address)
        try:
            messages = await client.get_messages(port_id)
        except PortServerError as e:
            if self._running:
                await self._on_poll_failure(key, routes, e)
            return
        if not self._running:
            return
        self._reopen_attempts.pop(key, None)
        if not messages:
            return

        log.debug("Got %d messages from %s port %s", len(messages), address, port_id)
        for message in messages:
            for route in routes:
                await self.forward_message(route, message)

    async def _on_poll_failure(self, key: PortKey, routes: List[Route], error: PortServerError) -> None:
        POLL_ERRORS.inc()
        text = str(error)
        if error.reprovision:
            await self._maybe_reopen(key)

        now = self._clock()
        last = self._last_poll_error_log.get(key)
        if last is None or now - last >= self._poll_error_log_window:
            log.error("Poll error for %s port %s: %s", key[0], key[1], text)
            self._last_poll_error_log[key] = now

        for route in routes:
            self._set_error(route.id, text)

    async def forward_message(self, route: Route, message: List[int]) -> bool:
        """Send one message to a route's destination and record the outcome."""
        dest = route.destination
        key = self._port_key(dest)
        client = self._clients.get(key[0])
        try:
            await client.send_message(dest.port_id, message)
        except PortServerError as e:
            if not self._running:
                return False
            FORWARD_ERRORS.inc()
            log.warning("Forward failed to %s port %s: %s", key[0], dest.port_id, e)
            if e.reprovision:
                await self._maybe_reopen(key)
            self._set_error(route.id, str(e))
            return False
        if not self._running:
            return False

        MESSAGES_ROUTED.inc()
        self._reopen_attempts.pop(key, None)
        status = self._statuses.get(route.id)
        if status is not None:
            status.status = RouteState.ACTIVE
            status.error = None
            status.messages_routed += 1
            status.last_message_time = self._wall_clock()
            self._emit_status(status)
        if self.message_routed_callback:
            self.message_routed_callback(route.id, list(message))
        return True

    def _reopen_window(self, key: PortKey) -> float:
        attempts = self._reopen_attempts.get(key, 0)
        if attempts <= 1:
            return self._reopen_cooldown
        return min(self._reopen_cooldown * 2 ** (attempts - 1), self._reopen_backoff_max)

    async def _maybe_reopen(self, key: PortKey) -> bool:
        """Re-open a failing port unless one was attempted within the cooldown."""
        state = self._open_ports.get(key)
        if state is None:
            return False
        now = self._clock()
        last = self._last_reopen.get(key)
        if last is not None and now - last < self._reopen_window(key):
            return False
        self._last_reopen[key] = now
        self._reopen_attempts[key] = self._reopen_attempts.get(key, 0) + 1
        PORT_REOPENS.labels(type=state.type.value).inc()
        log.info("Retrying port open: %s (%s) on %s", state.name or state.port_id, state.type.value, state.server_address)
        await self._open_port(state)
        return True

    def _set_error(self, route_id: str, message: str) -> None:
        status = self._statuses.get(route_id)
        if status is None:
            return
        status.status = RouteState.ERROR
        status.error = message
        self._emit_status(status)

    def _emit_status(self, status: RouteStatus) -> None:
        if self.status_changed_callback:
            self.status_changed_callback(status.model_copy())
