"""Port-server contract served to peers under ``/midi``.

Route CRUD is answered from the local route store and is where replicated
operations land; it never propagates further. Every other path is proxied
to the native server on this host.
"""
from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from midirouter.core.logging import get_logger
from midirouter.models.schemas import RouteIn, RouteUpdate
from midirouter.services.context import RoutingContext
from midirouter.services.proxy import bad_gateway, forward

log = get_logger("PortServerAPI")
router = APIRouter()


def _ctx(request: Request) -> RoutingContext:
    return request.app.state.ctx


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "error": f"{what} not found"})


@router.get("/routes")
async def list_routes(request: Request):
    ctx = _ctx(request)
    return {"routes": [r.model_dump(mode="json") for r in ctx.routes.get_all()]}


@router.post("/routes", status_code=201)
async def create_route(body: RouteIn, request: Request, response: Response):
    """Store a route pushed by a peer; an already-known id is a no-op."""
    ctx = _ctx(request)
    if body.id and body.id in ctx.routes:
        response.status_code = 200
        return {"success": True, "route": ctx.routes.get(body.id).model_dump(mode="json")}
    route = ctx.routes.create(body)
    log.info("Received route %s from peer (owner %s)", route.id, route.owner_peer)
    ctx.engine.on_routes_changed()
    return {"success": True, "route": route.model_dump(mode="json")}


@router.put("/routes/{route_id}")
async def update_route(route_id: str, body: RouteUpdate, request: Request):
    ctx = _ctx(request)
    route = ctx.routes.update(route_id, enabled=body.enabled)
    if route is None:
        return _not_found("Route")
    ctx.engine.on_routes_changed()
    return {"success": True, "route": route.model_dump(mode="json")}


@router.delete("/routes/{route_id}")
async def delete_route(route_id: str, request: Request):
    ctx = _ctx(request)
    if not ctx.routes.delete(route_id):
        return _not_found("Route")
    ctx.engine.on_routes_changed()
    return {"success": True}


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def native_passthrough(path: str, request: Request):
    """Everything else goes to the native server unchanged."""
    ctx = _ctx(request)
    base = ctx.native.url
    if not base:
        return bad_gateway("MIDI server not running")
    return await forward(ctx.http, request, base, path, timeout_s=ctx.settings.request_timeout_s)
