from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

metrics_router = APIRouter()

MESSAGES_ROUTED = Counter("midirouter_messages_routed_total", "MIDI messages forwarded to a destination")
FORWARD_ERRORS = Counter("midirouter_forward_errors_total", "Failed sends to a route destination")
POLL_ERRORS = Counter("midirouter_poll_errors_total", "Failed reads from a route source")
PORT_REOPENS = Counter("midirouter_port_reopens_total", "Port re-open attempts after a failure", ["type"])
POLL_TICK_LATENCY = Histogram("midirouter_poll_tick_seconds", "Duration of one poll/forward tick")
KNOWN_PEERS = Gauge("midirouter_known_peers", "Non-local servers currently in the peer table")
PROPAGATIONS = Counter("midirouter_propagations_total", "Route operations pushed to peers", ["operation", "status"])


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus exposition endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
