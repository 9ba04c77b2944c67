"""
Location-aware response cache for the TensorTours client.

Responses are grouped into categories keyed by (operation kind, radius). A
lookup is a hit when an entry in the category is younger than the TTL and was
requested from within a maximum distance of the query origin.
"""

import copy
import logging
import math
from typing import Any, Callable, Dict, Optional, Tuple, Union

from tourshared.models import CacheEntry, OperationKind, now_millis

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0

CacheCategory = Tuple[str, Union[int, float]]


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


def category_kind(operation_kind: Union[OperationKind, str], qualifier: Optional[str] = None) -> str:
    """Build a category kind such as ``places:history``."""
    kind = operation_kind.value if isinstance(operation_kind, OperationKind) else operation_kind
    return f"{kind}:{qualifier}" if qualifier else kind


class ResponseCache:
    """
    TTL cache of backend responses anchored to request locations.

    Expired entries are evicted lazily during lookups. Callers always receive
    deep copies, never references into the cache.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_distance_meters: float = 300.0,
        clock: Callable[[], int] = now_millis
    ):
        self.ttl_millis = ttl_seconds * 1000
        self.max_distance_meters = max_distance_meters
        self._clock = clock
        self._categories: Dict[CacheCategory, Dict[str, CacheEntry]] = {}

    def lookup(self, category: CacheCategory, origin_lat: float, origin_lng: float) -> Optional[Any]:
        """
        Find a fresh cached payload requested near the given origin.

        Returns:
            A copy of the first matching payload, or None
        """
        entries = self._categories.get(category)
        if not entries:
            return None

        now = self._clock()
        for signature in list(entries):
            entry = entries[signature]
            if entry.age_millis(now) >= self.ttl_millis:
                del entries[signature]
                continue

            distance = haversine_meters(origin_lat, origin_lng, entry.origin_lat, entry.origin_lng)
            if distance <= self.max_distance_meters:
                logger.debug(f"Cache hit for {category} ({distance:.0f}m from cached origin)")
                return copy.deepcopy(entry.payload)

        if not entries:
            del self._categories[category]
        return None

    def store(
        self,
        category: CacheCategory,
        signature: str,
        origin_lat: float,
        origin_lng: float,
        payload: Any
    ) -> None:
        """Store a payload under the category, replacing any entry with the same signature."""
        self._categories.setdefault(category, {})[signature] = CacheEntry(
            created_at_millis=self._clock(),
            origin_lat=origin_lat,
            origin_lng=origin_lng,
            payload=copy.deepcopy(payload),
        )

    def invalidate(self, operation_kind: Optional[str] = None, radius: Optional[Union[int, float]] = None) -> None:
        """
        Clear cached entries.

        Args:
            operation_kind: Only clear categories of this kind and its qualified kinds (all if None)
            radius: With a kind, only clear that single category
        """
        if operation_kind is None:
            self._categories.clear()
        elif radius is not None:
            self._categories.pop((operation_kind, radius), None)
        else:
            # "places" also clears qualified kinds such as "places:history"
            matching = [c for c in self._categories
                        if c[0] == operation_kind or c[0].startswith(f"{operation_kind}:")]
            for category in matching:
                del self._categories[category]

        logger.debug(f"Cache invalidated (kind={operation_kind}, radius={radius})")

    def stats(self) -> Dict[str, Any]:
        """Category and entry counts for diagnostics."""
        return {
            'categories': len(self._categories),
            'entries': sum(len(entries) for entries in self._categories.values()),
            'by_category': {f"{kind}@{radius}": len(entries)
                            for (kind, radius), entries in self._categories.items()},
        }
