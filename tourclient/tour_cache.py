"""
Tour prefetch cache for the TensorTours client.

LRU cache of tour payloads keyed by place id and tour type. After places are
loaded the cache is prefilled in the background; tours that are not generated
yet are remembered as misses and retried when one of them is requested again.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from tourclient.scheduler import CancellableTimer
from tourshared.models import now_millis

logger = logging.getLogger(__name__)

FetchFunction = Callable[[str, str], Awaitable[Any]]

MAX_SIZE = 500
RETRY_DEBOUNCE_SECONDS = 0.5
RETRY_STAGGER_SECONDS = 0.2
RETRY_COOLDOWN_MILLIS = 30_000

HIT = "hit"
MISS = "miss"


@dataclass
class TourCacheEntry:
    status: str
    data: Any
    last_accessed: int
    last_attempt: int


class TourPrefetchCache:
    """
    LRU tour cache with background prefill.

    A miss never overwrites a hit. Requesting a known miss schedules one
    debounced retry pass over every miss that is out of its cooldown.
    """

    def __init__(
        self,
        max_size: int = MAX_SIZE,
        retry_debounce: float = RETRY_DEBOUNCE_SECONDS,
        retry_stagger: float = RETRY_STAGGER_SECONDS,
        retry_cooldown_millis: int = RETRY_COOLDOWN_MILLIS,
        clock: Callable[[], int] = now_millis
    ):
        self.max_size = max_size
        self.retry_debounce = retry_debounce
        self.retry_stagger = retry_stagger
        self.retry_cooldown_millis = retry_cooldown_millis
        self._clock = clock

        self._entries: "OrderedDict[Tuple[str, str], TourCacheEntry]" = OrderedDict()
        self._fetch: Optional[FetchFunction] = None
        self._retry_timer = CancellableTimer("tour-cache-retry")
        self._tasks: Set[asyncio.Task] = set()

    def get(self, place_id: str, tour_type: str) -> Optional[Any]:
        """Cached tour data, or None. Requesting a known miss triggers a retry pass."""
        key = (place_id, tour_type)
        entry = self._entries.get(key)

        if entry is None:
            return None

        if entry.status == MISS:
            logger.debug(f"Tour cache miss for {place_id} [{tour_type}]; scheduling retry of misses")
            self._schedule_retry()
            return None

        entry.last_accessed = self._clock()
        self._entries.move_to_end(key)
        return entry.data

    def set(self, place_id: str, tour_type: str, data: Any) -> None:
        now = self._clock()
        key = (place_id, tour_type)
        self._entries.pop(key, None)
        self._entries[key] = TourCacheEntry(HIT, data, now, now)
        self._evict()

    def record_miss(self, place_id: str, tour_type: str) -> None:
        """Remember that a tour could not be fetched yet."""
        key = (place_id, tour_type)
        existing = self._entries.get(key)
        if existing is not None and existing.status == HIT:
            return

        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = TourCacheEntry(MISS, None, now, now)
        self._evict()

    def prefill(self, place_ids: Iterable[str], tour_type: str, fetch: FetchFunction) -> int:
        """
        Start staggered background fetches for every place not already cached.

        Returns:
            Number of fetches started
        """
        self._fetch = fetch

        to_fetch = []
        for place_id in place_ids:
            if not place_id:
                continue
            existing = self._entries.get((place_id, tour_type))
            if existing is not None and existing.status == HIT:
                continue
            to_fetch.append(place_id)

        if not to_fetch:
            logger.debug("Tour cache prefill skipped; everything already cached")
            return 0

        logger.debug(f"Prefilling tour cache with {len(to_fetch)} items")
        for index, place_id in enumerate(to_fetch):
            self._start_fetch(place_id, tour_type, index * self.retry_stagger, fetch)
        return len(to_fetch)

    def _start_fetch(self, place_id: str, tour_type: str, delay: float, fetch: FetchFunction) -> None:
        task = asyncio.get_running_loop().create_task(self._fetch_into_cache(place_id, tour_type, delay, fetch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch_into_cache(self, place_id: str, tour_type: str, delay: float, fetch: FetchFunction) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            data = await fetch(place_id, tour_type)
        except Exception as e:
            logger.debug(f"Tour cache fetch missed for {place_id}: {e}")
            self.record_miss(place_id, tour_type)
            return
        self.set(place_id, tour_type, data)

    def _schedule_retry(self) -> None:
        if self._fetch is None or self._retry_timer.is_pending:
            return
        self._retry_timer.schedule(self.retry_debounce, self._retry_misses)

    def _retry_misses(self) -> None:
        fetch = self._fetch
        if fetch is None:
            return

        now = self._clock()
        misses: List[Tuple[str, str]] = []
        on_cooldown = 0
        for key, entry in self._entries.items():
            if entry.status != MISS:
                continue
            if now - entry.last_attempt < self.retry_cooldown_millis:
                on_cooldown += 1
                continue
            misses.append(key)

        if not misses:
            if on_cooldown:
                logger.debug(f"{on_cooldown} tour cache misses on cooldown; skipping retry")
            return

        logger.debug(f"Retrying {len(misses)} tour cache misses ({on_cooldown} on cooldown)")
        for index, (place_id, tour_type) in enumerate(misses):
            self._start_fetch(place_id, tour_type, index * self.retry_stagger, fetch)

    def _evict(self) -> None:
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        """Drop everything and cancel background work (e.g. on sign-out)."""
        self._entries.clear()
        self._fetch = None
        self._retry_timer.cancel()
        for task in list(self._tasks):
            task.cancel()
        logger.debug("Tour cache cleared")

    async def wait_idle(self) -> None:
        """Wait for pending retry and prefetch work to finish."""
        await self._retry_timer.wait_closed()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> Dict[str, int]:
        hits = sum(1 for entry in self._entries.values() if entry.status == HIT)
        return {'total': len(self._entries), 'hits': hits, 'misses': len(self._entries) - hits}
