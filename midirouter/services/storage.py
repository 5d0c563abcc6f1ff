"""Durable in-memory stores for routes and virtual ports.

Each store is a dict keyed by id, loaded from one JSON document at startup
and rewritten after mutations. Reads never touch the disk; the file is a
backup of the in-memory state, not the source of truth.
"""

from __future__ import annotations

import asyncio
import json
import os
import random
import string
import time
from pathlib import Path
from typing import Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from midirouter.core.logging import get_logger
from midirouter.models.schemas import PortType, Route, RouteIn, VirtualPortConfig, VirtualPortIn

log = get_logger("Storage")

ROUTES_FILE = "routes.json"
VIRTUAL_PORTS_FILE = "virtual-ports.json"

_ID_ALPHABET = string.ascii_lowercase + string.digits

T = TypeVar("T", bound=BaseModel)


def generate_id(prefix: str) -> str:
    """``<prefix>-<epoch ms>-<7 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class DuplicateRouteError(ValueError):
    """A route with this id already exists."""


class JsonStore(Generic[T]):
    """
    Dict-backed store persisted as ``{<key>: [records...]}``.

    Saves are coalesced: a mutation marks the store dirty and arms a single
    timer; everything changed before it fires lands in one write. ``flush``
    writes any pending change immediately and can be awaited on shutdown.
    """

    def __init__(self, path: Path, key: str, model: Type[T], debounce_s: float = 0.1):
        self._path = Path(path)
        self._key = key
        self._model = model
        self._debounce = debounce_s
        self._items: Dict[str, T] = {}
        self._dirty = False
        self._timer: Optional[asyncio.Task] = None
        self.writes = 0
        self._ensure_dir()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_dir(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error("Failed to create config directory %s: %s", self._path.parent, e)

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            doc = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.error("Failed to load %s: %s", self._path, e)
            return
        self._items.clear()
        for raw in doc.get(self._key, []) if isinstance(doc, dict) else []:
            try:
                item = self._model.model_validate(raw)
            except ValidationError as e:
                log.warning("Skipping invalid record in %s: %s", self._path, e)
                continue
            self._items[item.id] = item
        log.info("Loaded %d %s from %s", len(self._items), self._key, self._path)

    def _schedule_save(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No scheduler to coalesce on; write now.
            self.save_now()
            return
        if self._timer is None or self._timer.done():
            self._timer = loop.create_task(self._save_later())

    async def _save_later(self) -> None:
        await asyncio.sleep(self._debounce)
        self._timer = None
        self.save_now()

    def save_now(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        doc = {self._key: [item.model_dump(mode="json") for item in self._items.values()]}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
            self.writes += 1
        except OSError as e:
            log.error("Failed to save %s: %s", self._path, e)

    async def flush(self) -> None:
        """Write pending changes now and cancel the debounce timer."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        self.save_now()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def get_all(self) -> List[T]:
        return list(self._items.values())

    def get(self, item_id: str) -> Optional[T]:
        return self._items.get(item_id)

    def _put(self, item: T) -> T:
        self._items[item.id] = item
        self._schedule_save()
        return item

    def update(self, item_id: str, **changes) -> Optional[T]:
        existing = self._items.get(item_id)
        if existing is None:
            return None
        return self._put(existing.model_copy(update=changes))

    def delete(self, item_id: str) -> bool:
        if self._items.pop(item_id, None) is None:
            return False
        self._schedule_save()
        return True

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items


class RoutesStorage(JsonStore[Route]):
    """Routing rules known to this instance (own and replicated)."""

    def __init__(self, config_dir: Path, debounce_s: float = 0.1):
        super().__init__(Path(config_dir) / ROUTES_FILE, "routes", Route, debounce_s)

    def create(self, data: RouteIn, route_id: Optional[str] = None, owner_peer: Optional[str] = None) -> Route:
        route_id = route_id or data.id or generate_id("route")
        if route_id in self._items:
            raise DuplicateRouteError(route_id)
        route = Route(
            id=route_id,
            enabled=data.enabled,
            source=data.source.model_copy(),
            destination=data.destination.model_copy(),
            owner_peer=owner_peer if owner_peer is not None else data.owner_peer,
        )
        return self._put(route)

    def get_enabled(self) -> List[Route]:
        return [r for r in self._items.values() if r.enabled]


class VirtualPortsStorage(JsonStore[VirtualPortConfig]):
    """Virtual ports this instance asks its native server to materialize."""

    def __init__(self, config_dir: Path, debounce_s: float = 0.1):
        super().__init__(Path(config_dir) / VIRTUAL_PORTS_FILE, "virtual_ports", VirtualPortConfig, debounce_s)

    def create(self, data: VirtualPortIn) -> VirtualPortConfig:
        port = VirtualPortConfig(id=generate_id("virtual"), created_at=time.time(), **data.model_dump())
        return self._put(port)

    def get_by_type(self, port_type: PortType) -> List[VirtualPortConfig]:
        return [p for p in self._items.values() if p.type == PortType(port_type)]

    def get_by_route_id(self, route_id: str) -> List[VirtualPortConfig]:
        return [p for p in self._items.values() if p.associated_route_id == route_id]
