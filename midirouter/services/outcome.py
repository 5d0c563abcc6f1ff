"""Result type for best-effort network calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Optional

import httpx

from midirouter.services.port_client import PortServerError


@dataclass(frozen=True)
class Outcome:
    """What happened to one fire-and-forget call.

    Failures are only logged; callers inspect ``ok`` when they care (tests,
    metrics) and otherwise carry on.
    """

    target: str
    ok: bool
    error: Optional[str] = None


async def best_effort(target: str, call: Awaitable, log: logging.Logger, what: str) -> Outcome:
    """Await ``call``; network failures become a failed Outcome instead of an exception."""
    try:
        await call
    except (PortServerError, httpx.HTTPError) as e:
        log.warning("%s failed on %s: %s", what, target, e)
        return Outcome(target, False, str(e))
    return Outcome(target, True)
