from typing import Dict, Any, List, Optional, Pattern, Tuple, Callable, TYPE_CHECKING
import time

import structlog

from qsys_bridge.domain.engine.engine_client import EngineClient
from qsys_bridge.domain.patterns import compile_pattern

if TYPE_CHECKING:
    from qsys_bridge.domain.connection.connection_manager import ConnectionManager

logger = structlog.get_logger(__name__)

DISCOVERY_TTL = 1.0


class DiscoveryCache:
    """Single-entry discovery snapshot with a short TTL.

    The entry is always replaced wholesale, never mutated.
    """

    def __init__(self, ttl: float = DISCOVERY_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._components: Optional[Tuple[Dict[str, Any], ...]] = None
        self._timestamp = 0.0
        self.hits = 0
        self.rebuilds = 0

    def get(self) -> Optional[Tuple[Dict[str, Any], ...]]:
        """Get the snapshot if it is still fresh"""

        if self._components is None:
            return None

        if self._clock() - self._timestamp >= self.ttl:
            return None

        self.hits += 1
        return self._components

    def store(self, components: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], ...]:
        """Replace the cached snapshot"""

        self._components = tuple(components)
        self._timestamp = self._clock()
        self.rebuilds += 1
        return self._components

    def invalidate(self):
        self._components = None
        self._timestamp = 0.0

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        return {
            "cached": self._components is not None,
            "hits": self.hits,
            "rebuilds": self.rebuilds
        }


def build_snapshot(engine: EngineClient) -> List[Dict[str, Any]]:
    """Flatten every component, with full control state, into plain records"""

    snapshot = []
    for name, component in engine.components.items():
        snapshot.append({
            "name": name,
            "type": component.type or "unknown",
            "controlCount": len(component.controls),
            "controls": [
                control.state.to_discovery_dict(control_name)
                for control_name, control in component.controls.items()
            ]
        })
    return snapshot


def project(
    components: Tuple[Dict[str, Any], ...],
    pattern: Optional[Pattern[str]],
    include_controls: bool
) -> List[Dict[str, Any]]:
    """Apply the component-name filter and optionally strip control detail"""

    result = [c for c in components if pattern is None or pattern.search(c["name"])]

    if not include_controls:
        result = [
            {"name": c["name"], "type": c["type"], "controlCount": c["controlCount"]}
            for c in result
        ]

    return result


class DiscoveryService:
    """Serves discovery requests from the cache, rebuilding when stale"""

    def __init__(self, connection: "ConnectionManager", cache: DiscoveryCache):
        self.connection = connection
        self.cache = cache

    async def discover(
        self,
        component_filter: Optional[str] = None,
        include_controls: bool = False
    ) -> List[Dict[str, Any]]:
        """Inventory of components, optionally filtered by a name regex"""

        pattern = compile_pattern(component_filter, "component")

        await self.connection.ensure_connected()

        components = self.cache.get()
        if components is None:
            # Full unfiltered rebuild so a narrow request never poisons a later broad one
            components = self.cache.store(build_snapshot(self.connection.require_engine()))
            logger.debug("Discovery snapshot rebuilt", components=len(components))

        return project(components, pattern, include_controls)
