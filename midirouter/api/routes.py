"""Dashboard API.

Route CRUD here is the origin of replicated operations: the local store is
updated first, the engine reconciles, and the operation is pushed to peers
in the background after the response is sent.
"""
from __future__ import annotations

import socket

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from midirouter.core.logging import get_logger
from midirouter.models.schemas import (
    Endpoint,
    MidiMessage,
    Route,
    RouteIn,
    RouteUpdate,
    ServerNameIn,
    VirtualPortIn,
    is_local_address,
    is_server_address,
)
from midirouter.services.context import RoutingContext
from midirouter.services.outcome import best_effort
from midirouter.services.port_client import PortNotFoundError, PortServerError
from midirouter.services.storage import DuplicateRouteError, generate_id

log = get_logger("API")
router = APIRouter()


def _ctx(request: Request) -> RoutingContext:
    return request.app.state.ctx


def _upstream_error(e: PortServerError) -> HTTPException:
    """Map a port-server failure onto the status code the dashboard sees."""
    if isinstance(e, PortNotFoundError):
        return HTTPException(404, detail=e.message)
    return HTTPException(502, detail=e.message)


def _server(ctx: RoutingContext, address: str):
    """Client for an address taken from the URL; unknown hosts are not cached."""
    if not is_server_address(address):
        raise HTTPException(422, detail=f"Invalid server address: {address}")
    return ctx.clients.lookup(address)


def _dump(route: Route) -> dict:
    return route.model_dump(mode="json")


# ---------------------------------------------------------------- service


@router.get("/health")
async def health():
    return {"status": "ok", "service": "midirouter"}


@router.get("/status")
async def status(request: Request):
    """Native MIDI server status, re-probed on every call."""
    return await _ctx(request).native.refresh()


@router.get("/config")
async def config(request: Request):
    ctx = _ctx(request)
    return {
        "midi_server_port": ctx.native.port,
        "api_url": ctx.api_url,
        "self_address": ctx.self_address,
        "server_name": ctx.discovery.server_name if ctx.discovery else (ctx.settings.server_name or socket.gethostname()),
        "discovery_enabled": ctx.discovery is not None,
    }


@router.get("/logs")
async def get_logs(request: Request):
    return {"logs": _ctx(request).log_buffer.get_all()}


@router.delete("/logs")
async def clear_logs(request: Request):
    _ctx(request).log_buffer.clear()
    return {"success": True}


# -------------------------------------------------------------- discovery


@router.get("/discovery/servers")
async def discovered_servers(request: Request):
    ctx = _ctx(request)
    return {"servers": ctx.discovery.get_servers() if ctx.discovery else []}


@router.get("/discovery/status")
async def discovery_status(request: Request):
    ctx = _ctx(request)
    servers = ctx.discovery.get_servers() if ctx.discovery else []
    return {
        "enabled": ctx.discovery is not None,
        "running": bool(ctx.discovery and ctx.discovery.running),
        "server_name": ctx.discovery.server_name if ctx.discovery else None,
        "local_url": ctx.api_url,
        "discovered_count": sum(1 for s in servers if not s.is_local),
    }


@router.post("/discovery/name")
async def set_server_name(body: ServerNameIn, request: Request):
    ctx = _ctx(request)
    if ctx.discovery is None:
        raise HTTPException(409, detail="Discovery is disabled")
    ctx.discovery.set_server_name(body.name)
    return {"success": True, "server_name": body.name}


# ------------------------------------------------------------ local ports


@router.get("/local/ports")
async def local_ports(request: Request):
    try:
        return await _ctx(request).clients.local().list_ports()
    except PortServerError as e:
        raise _upstream_error(e)


# ------------------------------------------------------------------ routes


@router.get("/routes")
async def list_routes(request: Request):
    return {"routes": [_dump(r) for r in _ctx(request).routes.get_all()]}


@router.get("/routes/status")
async def route_statuses(request: Request):
    return {"statuses": _ctx(request).engine.get_route_statuses()}


@router.post("/routes/sync")
async def sync_routes(request: Request):
    created = await _ctx(request).propagator.sync_routes_from_peers()
    return {"success": True, "created": created}


@router.post("/routes", status_code=201)
async def create_route(body: RouteIn, request: Request, background: BackgroundTasks):
    ctx = _ctx(request)
    try:
        route = ctx.routes.create(body)
    except DuplicateRouteError:
        raise HTTPException(409, detail=f"Route {body.id} already exists")
    log.info("Created route %s", route.id)
    ctx.engine.on_routes_changed()
    background.add_task(ctx.propagator.propagate_create, route)
    return {"success": True, "route": _dump(route)}


@router.put("/routes/{route_id}")
async def update_route(route_id: str, body: RouteUpdate, request: Request, background: BackgroundTasks):
    ctx = _ctx(request)
    route = ctx.routes.update(route_id, enabled=body.enabled)
    if route is None:
        raise HTTPException(404, detail="Route not found")
    log.info("Route %s %s", route_id, "enabled" if body.enabled else "disabled")
    ctx.engine.on_routes_changed()
    background.add_task(ctx.propagator.propagate_update, route_id, body.enabled)
    return {"success": True, "route": _dump(route)}


@router.delete("/routes/{route_id}")
async def delete_route(route_id: str, request: Request, background: BackgroundTasks):
    ctx = _ctx(request)
    if not ctx.routes.delete(route_id):
        raise HTTPException(404, detail="Route not found")
    log.info("Deleted route %s", route_id)
    ctx.engine.on_routes_changed()
    background.add_task(ctx.propagator.propagate_delete, route_id)
    return {"success": True}


# ----------------------------------------------------------- virtual ports


@router.get("/virtual-ports")
async def list_virtual_ports(request: Request):
    ctx = _ctx(request)
    live = None
    try:
        live = await ctx.clients.local().get_virtual_ports()
    except PortServerError as e:
        log.debug("Live virtual ports unavailable: %s", e)
    return {"virtual_ports": ctx.virtual_ports.get_all(), "live": live}


@router.post("/virtual-ports", status_code=201)
async def create_virtual_port(body: VirtualPortIn, request: Request):
    """Persist the port, then ask the native server to materialize it."""
    ctx = _ctx(request)
    port = ctx.virtual_ports.create(body)
    outcome = await best_effort(
        "local", ctx.clients.local().create_virtual_port(port.id, port.name, port.type), log, "Create virtual port"
    )
    return {"success": True, "virtual_port": port, "materialized": outcome.ok, "error": outcome.error}


@router.delete("/virtual-ports/{port_id}")
async def delete_virtual_port(port_id: str, request: Request):
    ctx = _ctx(request)
    if ctx.virtual_ports.get(port_id) is None:
        raise HTTPException(404, detail="Virtual port not found")
    await best_effort("local", ctx.clients.local().delete_virtual_port(port_id), log, "Delete virtual port")
    ctx.virtual_ports.delete(port_id)
    return {"success": True}


# ------------------------------------------------------- any port server


@router.get("/servers/{address:path}/ports")
async def server_ports(address: str, request: Request):
    try:
        return await _server(_ctx(request), address).list_ports()
    except PortServerError as e:
        raise _upstream_error(e)


@router.get("/servers/{address:path}/health")
async def server_health(address: str, request: Request):
    try:
        return await _server(_ctx(request), address).health()
    except PortServerError as e:
        raise _upstream_error(e)


@router.post("/servers/{address:path}/port/{port_id}/send")
async def server_send(address: str, port_id: str, body: MidiMessage, request: Request):
    try:
        await _server(_ctx(request), address).send_message(port_id, body.message)
    except PortServerError as e:
        raise _upstream_error(e)
    return {"success": True}


@router.get("/servers/{address:path}/routes")
async def server_routes(address: str, request: Request):
    ctx = _ctx(request)
    if ctx.clients.is_local(address):
        return {"routes": [_dump(r) for r in ctx.routes.get_all()]}
    try:
        routes = await _server(ctx, address).get_routes()
    except PortServerError as e:
        raise _upstream_error(e)
    return {"routes": [_dump(r) for r in routes]}


def _normalize_for_remote(body: RouteIn, address: str, self_address: str) -> RouteIn:
    """Resolve ``local`` endpoints from the point of view of the dashboard host."""

    def _resolve(ep: Endpoint, local_means: str) -> Endpoint:
        if is_local_address(ep.server_address):
            return ep.model_copy(update={"server_address": local_means})
        return ep

    return body.model_copy(
        update={
            "id": body.id or generate_id("route"),
            "source": _resolve(body.source, address),
            "destination": _resolve(body.destination, self_address),
            "owner_peer": body.owner_peer or address,
        }
    )


async def _replicate_remote_create(ctx: RoutingContext, route: Route, origin: str) -> None:
    if route.id not in ctx.routes:
        try:
            ctx.routes.create(route, route_id=route.id)
        except DuplicateRouteError:
            pass
        else:
            ctx.engine.on_routes_changed()
    await ctx.propagator.propagate_create(route, exclude=origin)


async def _replicate_remote_update(ctx: RoutingContext, route_id: str, enabled: bool, origin: str) -> None:
    if ctx.routes.update(route_id, enabled=enabled) is not None:
        ctx.engine.on_routes_changed()
    await ctx.propagator.propagate_update(route_id, enabled, exclude=origin)


async def _replicate_remote_delete(ctx: RoutingContext, route_id: str, origin: str) -> None:
    if ctx.routes.delete(route_id):
        ctx.engine.on_routes_changed()
    await ctx.propagator.propagate_delete(route_id, exclude=origin)


@router.post("/servers/{address:path}/routes", status_code=201)
async def server_create_route(address: str, body: RouteIn, request: Request, background: BackgroundTasks):
    """Create a route on another server; this host and the other peers get a copy."""
    ctx = _ctx(request)
    if ctx.clients.is_local(address):
        return await create_route(body, request, background)
    origin = ctx.clients.key_for(address)
    payload = _normalize_for_remote(body, origin, ctx.self_address)
    try:
        route = await _server(ctx, origin).create_route(payload)
    except PortServerError as e:
        raise _upstream_error(e)
    log.info("Created route %s on %s", route.id, origin)
    background.add_task(_replicate_remote_create, ctx, route, origin)
    return {"success": True, "route": _dump(route)}


@router.put("/servers/{address:path}/routes/{route_id}")
async def server_update_route(
    address: str, route_id: str, body: RouteUpdate, request: Request, background: BackgroundTasks
):
    ctx = _ctx(request)
    if ctx.clients.is_local(address):
        return await update_route(route_id, body, request, background)
    origin = ctx.clients.key_for(address)
    try:
        route = await _server(ctx, origin).update_route(route_id, body.enabled)
    except PortServerError as e:
        raise _upstream_error(e)
    background.add_task(_replicate_remote_update, ctx, route_id, body.enabled, origin)
    return {"success": True, "route": _dump(route)}


@router.delete("/servers/{address:path}/routes/{route_id}")
async def server_delete_route(address: str, route_id: str, request: Request, background: BackgroundTasks):
    ctx = _ctx(request)
    if ctx.clients.is_local(address):
        return await delete_route(route_id, request, background)
    origin = ctx.clients.key_for(address)
    try:
        await _server(ctx, origin).delete_route(route_id)
    except PortServerError as e:
        raise _upstream_error(e)
    background.add_task(_replicate_remote_delete, ctx, route_id, origin)
    return {"success": True}
