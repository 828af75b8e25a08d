"""
STAC match result cache
TTL + LRU cache for scenario match results keyed by a cheap rolling hash of
the input text, with a periodic background sweep of expired entries.
"""
import asyncio
import contextlib
import logging
import string
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.exceptions import CacheError
from models.stac import CacheEntry, MatchResult

logger = logging.getLogger(__name__)

KEY_PREFIX_LENGTH = 1000
_BASE36_DIGITS = string.digits + string.ascii_lowercase


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def generate_cache_key(text: str) -> str:
    """
    32-bit rolling hash (h = h * 31 + code) over the first 1000 characters.

    Not collision resistant; a collision only returns another text's matches.
    """
    value = 0
    for char in text[:KEY_PREFIX_LENGTH]:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


class MatchResultCache:
    """
    Thread-safe TTL + LRU cache of match results.

    Entries are kept in access order: a hit moves the entry to the end, so
    the first entry is always the one with the oldest ``last_accessed_at``
    and is the one evicted on overflow.
    """

    def __init__(self, max_size: int = 100, ttl: timedelta = timedelta(minutes=30),
                 cleanup_interval: timedelta = timedelta(minutes=10),
                 clock: Callable[[], datetime] = datetime.now):
        self.max_size = max_size
        self.ttl = ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @contextlib.contextmanager
    def _locked(self, operation: str):
        try:
            with self._lock:
                yield
        except CacheError:
            raise
        except Exception as e:
            raise CacheError(f"Cache {operation} failed: {e}") from e

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at > self.ttl

    def get_entry(self, text: str, scope: Any = None) -> Optional[CacheEntry]:
        """
        Look up the entry for a text, refreshing its access time.

        Expired entries and entries stored under a different scope (an older
        knowledge base snapshot) are evicted and reported as a miss.
        """
        key = generate_cache_key(text)
        with self._locked("lookup"):
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            now = self._clock()
            if self._is_expired(entry, now) or entry.scope is not scope:
                del self._entries[key]
                self.misses += 1
                return None

            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def get(self, text: str, scope: Any = None) -> Optional[List[MatchResult]]:
        entry = self.get_entry(text, scope)
        return list(entry.result) if entry else None

    def set(self, text: str, result: Sequence[MatchResult], scope: Any = None) -> CacheEntry:
        key = generate_cache_key(text)
        with self._locked("store"):
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"[MatchResultCache] Evicted least recently used entry {evicted_key}")

            entry = CacheEntry(key=key, result=tuple(result), created_at=now, last_accessed_at=now,
                               scope=scope)
            self._entries[key] = entry
            return entry

    async def get_or_compute(self, text: str, compute_fn: Callable[[], Awaitable[Sequence[MatchResult]]],
                             bypass_cache: bool = False, scope: Any = None,
                             is_current: Optional[Callable[[], bool]] = None) -> List[MatchResult]:
        """
        Return cached matches for ``text`` or compute and cache them

        Args:
            text: Input text (only the first 1000 characters form the key)
            compute_fn: Coroutine factory producing fresh matches; its errors propagate
            bypass_cache: Skip the lookup but still store the fresh result
            scope: Identity the result depends on; entries from another scope miss
            is_current: Checked after computing; a stale scope's result is returned but not stored

        Cache failures are logged and treated as a miss.
        """
        if not bypass_cache:
            try:
                entry = self.get_entry(text, scope)
            except CacheError as e:
                logger.warning(f"[MatchResultCache] Lookup failed, treating as miss: {e}")
                entry = None
            if entry is not None:
                return list(entry.result)

        result = list(await compute_fn())
        if is_current is not None and not is_current():
            logger.debug("[MatchResultCache] Scope replaced during computation, result not cached")
            return result

        try:
            self.set(text, result, scope)
        except CacheError as e:
            logger.warning(f"[MatchResultCache] Store failed, result not cached: {e}")
        return result

    def purge_expired(self) -> int:
        """Remove every TTL-expired entry. Returns the number removed."""
        with self._locked("cleanup"):
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._locked("clear"):
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }

    def start_cleanup_task(self) -> asyncio.Task:
        """Schedule the periodic expiry sweep on the running event loop"""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        return self._cleanup_task

    async def stop_cleanup_task(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval.total_seconds())
            try:
                removed = self.purge_expired()
            except CacheError as e:
                logger.warning(f"[MatchResultCache] Periodic cleanup failed: {e}")
                continue
            if removed:
                logger.debug(f"[MatchResultCache] Periodic cleanup removed {removed} expired entries")
