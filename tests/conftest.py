# tests/conftest.py
import asyncio
from typing import Dict, List, Optional

import pytest

from midirouter.core.config import Settings
from midirouter.models.schemas import PortInfo, PortList, PortType, Route, RouteIn
from midirouter.services.client_registry import ClientRegistry
from midirouter.services.port_client import PortNotFoundError, PortServerError
from midirouter.services.storage import RoutesStorage


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePortServer:
    """In-memory port server speaking the client contract."""

    def __init__(self, address: str, inputs=("In A", "In B"), outputs=("Out A", "Out B")):
        self.address = address
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.queues: Dict[str, List[List[int]]] = {}
        self.sent: List[tuple] = []
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.poll_calls: List[str] = []
        self.routes: Dict[str, Route] = {}
        self.route_calls: List[tuple] = []
        self.virtual_ports: Dict[str, tuple] = {}
        # Set to an exception instance to make the matching call fail
        self.poll_error: Optional[PortServerError] = None
        self.send_error: Optional[PortServerError] = None
        self.error: Optional[PortServerError] = None
        # When set, get_messages waits for the event before answering
        self.poll_gate: Optional[asyncio.Event] = None
        self.poll_delay = 0.0
        self.polls_in_flight = 0
        self.max_polls_in_flight = 0

    def inject(self, port_id: str, *messages: List[int]) -> None:
        self.queues.setdefault(port_id, []).extend(list(m) for m in messages)

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    async def health(self):
        self._check()
        return {"status": "ok"}

    async def list_ports(self) -> PortList:
        self._check()
        return PortList(
            inputs=[PortInfo(id=i, name=n, type=PortType.INPUT) for i, n in enumerate(self.inputs)],
            outputs=[PortInfo(id=i, name=n, type=PortType.OUTPUT) for i, n in enumerate(self.outputs)],
        )

    async def open_port(self, port_id, name, port_type) -> bool:
        self._check()
        self.opened.append(port_id)
        return True

    async def close_port(self, port_id) -> bool:
        self._check()
        self.closed.append(port_id)
        return True

    async def get_messages(self, port_id) -> List[List[int]]:
        self._check()
        self.poll_calls.append(port_id)
        self.polls_in_flight += 1
        self.max_polls_in_flight = max(self.max_polls_in_flight, self.polls_in_flight)
        try:
            if self.poll_gate is not None:
                await self.poll_gate.wait()
            if self.poll_delay:
                await asyncio.sleep(self.poll_delay)
        finally:
            self.polls_in_flight -= 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.queues.pop(port_id, [])

    async def send_message(self, port_id, message) -> None:
        self._check()
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((port_id, list(message)))

    async def get_routes(self) -> List[Route]:
        self._check()
        return list(self.routes.values())

    async def create_route(self, route: RouteIn) -> Route:
        self._check()
        self.route_calls.append(("create", route))
        stored = Route(**route.model_dump(exclude={"id"}), id=route.id or f"route-{len(self.routes)}")
        self.routes[stored.id] = stored
        return stored

    async def update_route(self, route_id, enabled) -> Route:
        self._check()
        self.route_calls.append(("update", route_id, enabled))
        if route_id not in self.routes:
            raise PortNotFoundError("Route not found", 404)
        self.routes[route_id] = self.routes[route_id].model_copy(update={"enabled": enabled})
        return self.routes[route_id]

    async def delete_route(self, route_id) -> bool:
        self._check()
        self.route_calls.append(("delete", route_id))
        return self.routes.pop(route_id, None) is not None

    async def get_virtual_ports(self):
        self._check()
        return {
            "inputs": [n for n, t in self.virtual_ports.values() if t == PortType.INPUT],
            "outputs": [n for n, t in self.virtual_ports.values() if t == PortType.OUTPUT],
        }

    async def create_virtual_port(self, port_id, name, port_type) -> bool:
        self._check()
        self.virtual_ports[port_id] = (name, PortType(port_type))
        return True

    async def delete_virtual_port(self, port_id) -> bool:
        self._check()
        return self.virtual_ports.pop(port_id, None) is not None


class FakeNetwork:
    """Client factory handing out one FakePortServer per address."""

    def __init__(self):
        self.servers: Dict[str, FakePortServer] = {}

    def __call__(self, address: str) -> FakePortServer:
        return self[address]

    def __getitem__(self, address: str) -> FakePortServer:
        address = address.rstrip("/")
        if address not in self.servers:
            self.servers[address] = FakePortServer(address)
        return self.servers[address]


SELF_ADDRESS = "http://10.0.0.1:3001/midi"
PEER_B = "http://10.0.0.2:3001/midi"
PEER_C = "http://10.0.0.3:3001/midi"


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def registry(network):
    return ClientRegistry(network, SELF_ADDRESS)


@pytest.fixture
def routes_store(tmp_path):
    return RoutesStorage(tmp_path, debounce_s=0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_dir=tmp_path,
        poll_interval_s=3600,
        save_debounce_s=0.01,
        discovery_port=0,
        advertise_url="http://10.0.0.1:3001",
    )


def make_route(route_id: str, src=("local", "input-0"), dst=("local", "output-0"), enabled=True, owner=None) -> RouteIn:
    return RouteIn(
        id=route_id,
        enabled=enabled,
        source={"server_address": src[0], "port_id": src[1], "port_name": f"{src[1]} name"},
        destination={"server_address": dst[0], "port_id": dst[1], "port_name": f"{dst[1]} name"},
        owner_peer=owner,
    )
