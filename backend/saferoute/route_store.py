from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from .engine_errors import RouteNotFoundError
from .models import PreferenceProfile
from .ranking import Route
from .settings import settings


@dataclass(frozen=True)
class PlannedRoute:
    """A ranked route together with the request it answered, ready to be tracked."""

    route: Route
    profile: PreferenceProfile
    destination: tuple[float, float]
    request_id: str


@dataclass
class _StoredRoute:
    stored_at: float
    planned: PlannedRoute


class PlannedRouteStore:
    def __init__(
        self,
        *,
        ttl_s: int,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: OrderedDict[str, _StoredRoute] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: _StoredRoute) -> bool:
        return (self._clock() - entry.stored_at) > self._ttl_s

    def put(self, planned: PlannedRoute) -> None:
        route_id = planned.route.id
        with self._lock:
            if route_id in self._items:
                self._items.move_to_end(route_id)
            self._items[route_id] = _StoredRoute(stored_at=self._clock(), planned=planned)
            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def get(self, route_id: str) -> PlannedRoute | None:
        with self._lock:
            entry = self._items.get(route_id)
            if entry is None or self._expired(entry):
                self._items.pop(route_id, None)
                self._misses += 1
                return None
            self._items.move_to_end(route_id)
            self._hits += 1
            return entry.planned

    def require(self, route_id: str) -> PlannedRoute:
        planned = self.get(route_id)
        if planned is None:
            raise RouteNotFoundError(route_id)
        return planned

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }


ROUTE_STORE = PlannedRouteStore(
    ttl_s=settings.route_store_ttl_s,
    max_entries=settings.route_store_max_entries,
)
