"""Reverse proxy from the ``/midi`` surface to the native server.

Peers speak the port-server contract to ``<api>/midi``; route CRUD is
answered here, everything else is streamed through to the native server.
"""
from __future__ import annotations

from typing import Dict, Mapping

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from midirouter.core.logging import get_logger

log = get_logger("Proxy")

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}


def _strip_hop_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP}


def bad_gateway(message: str) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": "Bad Gateway", "message": message})


async def forward(
    client: httpx.AsyncClient, req: Request, upstream_base: str, subpath: str, *, timeout_s: float = 5.0
) -> Response:
    """Forward ``req`` to ``{upstream_base}/{subpath}`` and stream the response back."""
    base = upstream_base[:-1] if upstream_base.endswith("/") else upstream_base
    path = subpath if subpath.startswith("/") else f"/{subpath}"
    target_url = f"{base}{path}"

    headers = _strip_hop_headers(dict(req.headers))
    headers.pop("host", None)
    headers.pop("content-length", None)
    body = await req.body()

    upstream_request = client.build_request(
        req.method, target_url, params=req.query_params, headers=headers, content=body,
        timeout=httpx.Timeout(timeout_s),
    )
    try:
        upstream_response = await client.send(upstream_request, stream=True, follow_redirects=False)
    except httpx.HTTPError as e:
        log.warning("Proxy %s %s failed: %s", req.method, target_url, e)
        return bad_gateway(str(e) or e.__class__.__name__)

    resp_headers = _strip_hop_headers(dict(upstream_response.headers))
    resp_headers.pop("content-length", None)

    async def iter_upstream():
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        finally:
            await upstream_response.aclose()

    return StreamingResponse(iter_upstream(), status_code=upstream_response.status_code, headers=resp_headers)
