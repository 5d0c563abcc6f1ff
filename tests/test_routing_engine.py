# tests/test_routing_engine.py
import asyncio
import logging

import pytest

from conftest import PEER_B, PEER_C, SELF_ADDRESS, make_route
from midirouter.models.schemas import RouteState
from midirouter.services.port_client import PortServerError, PortServerTransportError
from midirouter.services.routing_engine import RoutingEngine

NOTE_ON = [0x90, 60, 100]


def _engine(routes_store, registry, clock, **kwargs):
    kwargs.setdefault("poll_interval_s", 3600)
    return RoutingEngine(routes_store, registry, clock=clock, wall_clock=clock, **kwargs)


@pytest.mark.anyio
async def test_message_crosses_servers_within_one_tick(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", src=("local", "input-0"), dst=(PEER_B, "output-1")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()

        assert network[PEER_B].sent == [("output-1", NOTE_ON)]
        status = engine.get_route_status("r1")
        assert status.status == RouteState.ACTIVE
        assert status.messages_routed == 1
        assert status.last_message_time == clock.now
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_shared_source_is_polled_once_and_fans_out(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=("local", "output-0")))
    routes_store.create(make_route("r2", dst=(PEER_B, "output-0")))
    routes_store.create(make_route("r3", dst=(PEER_C, "output-1")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        network["local"].inject("input-0", NOTE_ON, [0x80, 60, 0])
        await engine.poll_routes()

        assert network["local"].poll_calls == ["input-0"]
        assert network["local"].sent == [("output-0", NOTE_ON), ("output-0", [0x80, 60, 0])]
        assert network[PEER_B].sent == [("output-0", NOTE_ON), ("output-0", [0x80, 60, 0])]
        assert network[PEER_C].sent == [("output-1", NOTE_ON), ("output-1", [0x80, 60, 0])]
        assert [engine.get_route_status(r).messages_routed for r in ("r1", "r2", "r3")] == [2, 2, 2]

        # Drained: nothing is forwarded twice
        await engine.poll_routes()
        assert len(network[PEER_B].sent) == 2
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_message_callbacks_fire(routes_store, registry, network, clock):
    routed, statuses = [], []
    routes_store.create(make_route("r1"))
    engine = _engine(
        routes_store, registry, clock,
        message_routed_callback=lambda rid, msg: routed.append((rid, msg)),
        status_changed_callback=statuses.append,
    )
    await engine.start()
    await engine.wait_idle()
    try:
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()
        assert routed == [("r1", NOTE_ON)]
        assert statuses[-1].messages_routed == 1
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_disabling_route_closes_port_only_when_unreferenced(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", src=("local", "input-0"), dst=(PEER_B, "output-0")))
    routes_store.create(make_route("r2", src=("local", "input-1"), dst=(PEER_B, "output-0")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        assert network[PEER_B].opened == ["output-0"]
        assert engine.open_ports()[(PEER_B, "output-0")].ref_count == 2

        routes_store.update("r1", enabled=False)
        engine.on_routes_changed()
        await engine.wait_idle()
        assert network[PEER_B].closed == []
        assert network["local"].closed == ["input-0"]
        assert engine.open_ports()[(PEER_B, "output-0")].ref_count == 1
        assert engine.get_route_status("r1").status == RouteState.DISABLED

        routes_store.update("r2", enabled=False)
        engine.on_routes_changed()
        await engine.wait_idle()
        assert network[PEER_B].closed == ["output-0"]
        assert engine.open_ports() == {}

        routes_store.update("r1", enabled=True)
        engine.on_routes_changed()
        await engine.wait_idle()
        assert network[PEER_B].opened == ["output-0", "output-0"]
        assert engine.get_route_status("r1").status == RouteState.ACTIVE
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_disabled_routes_are_not_polled(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", enabled=False))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()
        assert network["local"].poll_calls == []
        assert engine.get_route_status("r1").status == RouteState.DISABLED
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_deleted_route_loses_status(routes_store, registry, network, clock):
    routes_store.create(make_route("r1"))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        routes_store.delete("r1")
        engine.on_routes_changed()
        await engine.wait_idle()
        assert engine.get_route_status("r1") is None
        assert engine.get_route_statuses() == []
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_routes_owned_by_peers_are_left_alone(routes_store, registry, network, clock):
    routes_store.create(make_route("theirs", src=(PEER_B, "input-0"), dst=("local", "output-0"), owner=PEER_B))
    routes_store.create(make_route("mine", src=(PEER_B, "input-1"), dst=(PEER_C, "output-0"), owner=SELF_ADDRESS))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        assert engine.get_route_status("theirs") is None
        assert engine.get_route_status("mine") is not None
        assert network[PEER_B].opened == ["input-1"]

        await engine.poll_routes()
        assert network[PEER_B].poll_calls == ["input-1"]
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_unreachable_destination_reopens_once_per_cooldown(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=(PEER_B, "output-1")))
    engine = _engine(routes_store, registry, clock, reopen_cooldown_s=5.0)
    await engine.start()
    await engine.wait_idle()
    peer = network[PEER_B]
    try:
        assert peer.opened == ["output-1"]
        peer.send_error = PortServerTransportError("Request failed: connection refused")

        for _ in range(10):
            network["local"].inject("input-0", NOTE_ON)
            await engine.poll_routes()
            clock.advance(0.05)

        status = engine.get_route_status("r1")
        assert status.status == RouteState.ERROR
        assert "connection refused" in status.error
        # One re-open on the first failure, none for the rest of the window
        assert peer.opened == ["output-1", "output-1"]

        clock.advance(5.0)
        for _ in range(3):
            network["local"].inject("input-0", NOTE_ON)
            await engine.poll_routes()
        assert peer.opened == ["output-1"] * 3

        peer.send_error = None
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()
        status = engine.get_route_status("r1")
        assert status.status == RouteState.ACTIVE
        assert status.error is None
        assert status.messages_routed == 1
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_plain_errors_do_not_trigger_reopen(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=(PEER_B, "output-1")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        network[PEER_B].send_error = PortServerError("Invalid message")
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()
        assert engine.get_route_status("r1").error == "Invalid message"
        assert network[PEER_B].opened == ["output-1"]
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_backoff_grows_up_to_cap(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=(PEER_B, "output-1")))
    engine = _engine(routes_store, registry, clock, reopen_cooldown_s=5.0, reopen_backoff_max_s=20.0)
    await engine.start()
    await engine.wait_idle()
    peer = network[PEER_B]
    peer.send_error = PortServerTransportError("Request timeout")

    async def fail_once():
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()

    try:
        await fail_once()                # attempt 1
        clock.advance(5.0)
        await fail_once()                # attempt 2, window now 10 s
        clock.advance(5.0)
        await fail_once()
        assert len(peer.opened) == 3
        clock.advance(5.0)
        await fail_once()                # attempt 3, window now 20 s
        assert len(peer.opened) == 4
        clock.advance(19.0)
        await fail_once()
        assert len(peer.opened) == 4
        clock.advance(1.0)
        await fail_once()
        assert len(peer.opened) == 5
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_poll_failure_marks_every_route_and_throttles_logging(routes_store, registry, network, clock, caplog):
    routes_store.create(make_route("r1", src=(PEER_B, "input-0"), dst=("local", "output-0")))
    routes_store.create(make_route("r2", src=(PEER_B, "input-0"), dst=("local", "output-1")))
    engine = _engine(routes_store, registry, clock, poll_error_log_window_s=60.0)
    await engine.start()
    await engine.wait_idle()
    network[PEER_B].poll_error = PortServerTransportError("Request failed: connection refused")
    caplog.set_level(logging.ERROR, logger="Midi-Router.Engine")

    def poll_error_logs():
        return [r for r in caplog.records if r.getMessage().startswith("Poll error")]

    try:
        for _ in range(20):
            await engine.poll_routes()
            clock.advance(1.0)
        assert len(poll_error_logs()) == 1
        assert engine.get_route_status("r1").status == RouteState.ERROR
        assert engine.get_route_status("r2").status == RouteState.ERROR

        clock.advance(60.0)
        await engine.poll_routes()
        assert len(poll_error_logs()) == 2
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_rapid_changes_coalesce_into_one_extra_pass(routes_store, registry, network, clock):
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    assert engine.sync_passes == 1

    for i in range(5):
        routes_store.create(make_route(f"r{i}", src=("local", f"input-{i}")))
        engine.on_routes_changed()
    await engine.wait_idle()
    try:
        assert engine.sync_passes == 3
        assert sorted(network["local"].opened) == sorted([f"input-{i}" for i in range(5)] + ["output-0"])
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_stop_closes_ports_and_clears_state(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=(PEER_B, "output-0")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    await engine.stop()

    assert network["local"].closed == ["input-0"]
    assert network[PEER_B].closed == ["output-0"]
    assert engine.open_ports() == {}
    assert engine.get_route_statuses() == []
    assert not engine.running


@pytest.mark.anyio
async def test_open_failure_does_not_block_other_ports(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", dst=(PEER_B, "output-0")))
    network[PEER_B].error = PortServerTransportError("Request timeout")
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    try:
        assert network["local"].opened == ["input-0"]
        assert set(engine.open_ports()) == {("local", "input-0"), (PEER_B, "output-0")}
    finally:
        network[PEER_B].error = None
        await engine.stop()


@pytest.mark.anyio
async def test_message_count_survives_disable_and_restarts_with_new_id(routes_store, registry, network, clock):
    routes_store.create(make_route("r1"))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()

    async def route_one():
        network["local"].inject("input-0", NOTE_ON)
        await engine.poll_routes()

    async def reconcile():
        engine.on_routes_changed()
        await engine.wait_idle()

    try:
        await route_one()
        routes_store.update("r1", enabled=False)
        await reconcile()
        status = engine.get_route_status("r1")
        assert status.status == RouteState.DISABLED
        assert status.messages_routed == 1

        routes_store.update("r1", enabled=True)
        await reconcile()
        await route_one()
        assert engine.get_route_status("r1").messages_routed == 2

        routes_store.delete("r1")
        routes_store.create(make_route("r2"))
        await reconcile()
        await route_one()
        assert engine.get_route_status("r1") is None
        assert engine.get_route_status("r2").messages_routed == 1
    finally:
        await engine.stop()


@pytest.mark.anyio
async def test_stalled_source_does_not_hold_up_other_routes(routes_store, registry, network, clock):
    routes_store.create(make_route("stalled", src=(PEER_B, "input-0"), dst=("local", "output-0")))
    routes_store.create(make_route("healthy", src=("local", "input-1"), dst=("local", "output-1")))
    engine = _engine(routes_store, registry, clock)
    await engine.start()
    await engine.wait_idle()
    peer = network[PEER_B]
    peer.poll_gate = asyncio.Event()

    first = asyncio.create_task(engine.poll_routes())
    try:
        while peer.polls_in_flight == 0:
            await asyncio.sleep(0)
        await asyncio.sleep(0)

        for _ in range(5):
            network["local"].inject("input-1", NOTE_ON)
            await engine.poll_routes()

        # Later ticks skip the source whose first request never answered
        assert peer.poll_calls == ["input-0"]
        assert peer.max_polls_in_flight == 1
        assert network["local"].sent == [("output-1", NOTE_ON)] * 5
        assert engine.get_route_status("healthy").messages_routed == 5
    finally:
        peer.poll_gate.set()
        await first
        await engine.stop()


@pytest.mark.anyio
async def test_poll_loop_forwards_each_message_once_from_slow_source(routes_store, registry, network, clock):
    routes_store.create(make_route("r1", src=(PEER_B, "input-0"), dst=("local", "output-0")))
    peer = network[PEER_B]
    peer.poll_delay = 0.05
    engine = _engine(routes_store, registry, clock, poll_interval_s=0.005)
    await engine.start()
    await engine.wait_idle()
    messages = [[0x90, 60 + i, 100] for i in range(5)]
    try:
        for message in messages:
            peer.inject("input-0", message)
            await asyncio.sleep(0.03)
        await asyncio.sleep(0.3)

        assert network["local"].sent == [("output-0", m) for m in messages]
        assert engine.get_route_status("r1").messages_routed == 5
        assert len(peer.poll_calls) > 1
        assert peer.max_polls_in_flight == 1
    finally:
        await engine.stop()
