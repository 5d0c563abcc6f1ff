"""Status of the native MIDI server process on this host.

Spawning and stopping the binary belongs to whoever launched it; this
module only answers "is it there and on which port".
"""

from __future__ import annotations

from typing import Optional

import httpx

from midirouter.core.logging import get_logger
from midirouter.models.schemas import ProcessStatus

log = get_logger("NativeServer")


class NativeServerMonitor:
    def __init__(self, client: httpx.AsyncClient, port: Optional[int], pid: Optional[int] = None,
                 health_timeout_s: float = 1.0):
        self._client = client
        self.port = port
        self.pid = pid
        self._health_timeout = health_timeout_s
        self._running = False

    @property
    def url(self) -> Optional[str]:
        return f"http://localhost:{self.port}" if self.port else None

    def current_port(self) -> Optional[int]:
        return self.port

    def status(self) -> ProcessStatus:
        return ProcessStatus(running=self._running, pid=self.pid, port=self.port, url=self.url)

    async def refresh(self) -> ProcessStatus:
        """Probe ``/health`` and update the cached running flag."""
        running = False
        if self.url:
            try:
                r = await self._client.get(f"{self.url}/health", timeout=self._health_timeout)
                running = r.status_code < 400
            except httpx.HTTPError as e:
                log.debug("Native server health probe failed: %s", e)
        if running != self._running:
            log.info("Native server on port %s is %s", self.port, "up" if running else "down")
        self._running = running
        return self.status()
