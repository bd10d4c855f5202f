"""Read-through cache with per-family TTLs and push-based invalidation.

Keys are readable strings such as ``"inventory.snapshot"`` or
``"customers.detail:CUST-000004"``; the text before the first dot names the
:class:`~beipoa_erp.constants.CacheFamily`. TTLs only bound how long an
untouched value may live. Freshness after a write comes from the mutating
operation invalidating the families it declared.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

from . import log
from .constants import DEFAULT_CACHE_TTLS, CacheFamily, CacheKey


KeyLike = Union[CacheKey, str]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    cached_at: float
    expires_at: float


def cache_key(key: KeyLike, param: Optional[str] = None) -> str:
    """Render a logical key, optionally narrowed to one record."""

    text = key.value if isinstance(key, CacheKey) else str(key)
    return f"{text}:{param}" if param is not None else text


def family_of(key: KeyLike) -> CacheFamily:
    """Resolve the family a key belongs to.

    Raises:
        ValueError: If the key does not start with a known family name.
    """

    text = cache_key(key)
    return CacheFamily(text.split(".", 1)[0])


class CacheLayer:
    """In-process TTL cache.

    Args:
        ttls: Seconds to live per family. Families missing from the mapping
            use the package defaults.
        clock: Monotonic time source, injectable for tests.
        bypass_when: When it returns ``True``, :meth:`get_or_load` neither reads
            nor stores cached values. Wired to "the caller holds the mutation
            lock" so values computed mid-transaction are never cached.
    """

    def __init__(
        self,
        ttls: Optional[Mapping[CacheFamily, float]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        bypass_when: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._ttls: Dict[CacheFamily, float] = dict(DEFAULT_CACHE_TTLS)
        if ttls:
            self._ttls.update(ttls)
        self._clock = clock
        self._bypass_when = bypass_when
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[CacheFamily, int] = {}
        self._guard = threading.Lock()
        self.hits = 0
        self.misses = 0

    def ttl_for(self, key: KeyLike) -> float:
        return self._ttls[family_of(key)]

    def get(self, key: KeyLike) -> Tuple[Any, bool]:
        """Return ``(value, True)`` on a fresh hit, ``(None, False)`` otherwise."""

        text = cache_key(key)
        now = self._clock()
        with self._guard:
            entry = self._entries.get(text)
            if entry is None:
                self.misses += 1
                log.debug("Cache MISS for '%s'", text)
                return None, False
            if now > entry.expires_at:
                del self._entries[text]
                self.misses += 1
                log.debug("Cache entry for '%s' expired", text)
                return None, False
            self.hits += 1
        log.debug("Cache HIT for '%s'", text)
        return entry.value, True

    def put(self, key: KeyLike, value: Any, ttl: Optional[float] = None, *, generation: Optional[int] = None) -> bool:
        """Store ``value`` under ``key``.

        With ``generation`` set the value is only stored when no invalidation
        has touched the key's family since that generation was read.
        """

        text = cache_key(key)
        family = family_of(text)
        seconds = self._ttls[family] if ttl is None else ttl
        now = self._clock()
        with self._guard:
            if generation is not None and self._generations.get(family, 0) != generation:
                log.debug("Discarded load of '%s' overlapping an invalidation", text)
                return False
            self._entries[text] = CacheEntry(
                key=text, value=value, cached_at=now, expires_at=now + seconds)
        log.debug("Cached '%s' for %ss", text, seconds)
        return True

    def invalidate(self, keys: Iterable[KeyLike]) -> int:
        """Drop the given keys and any parameterised variants of them."""

        targets = {cache_key(key) for key in keys}
        with self._guard:
            doomed = [
                text for text in self._entries
                if text in targets or text.split(":", 1)[0] in targets
            ]
            for text in doomed:
                del self._entries[text]
            self._bump(family_of(text) for text in targets)
        if doomed:
            log.debug("Invalidated cache keys: %s", ", ".join(sorted(doomed)))
        return len(doomed)

    def invalidate_families(self, families: Iterable[CacheFamily]) -> int:
        wanted = set(families)
        with self._guard:
            doomed = [text for text in self._entries if family_of(text) in wanted]
            for text in doomed:
                del self._entries[text]
            self._bump(wanted)
        log.debug(
            "Invalidated %d cache entries for families: %s",
            len(doomed),
            ", ".join(sorted(family.value for family in wanted)),
        )
        return len(doomed)

    def invalidate_all(self) -> None:
        with self._guard:
            self._entries.clear()
            self._bump(self._ttls)
        log.debug("Cleared all cache entries")

    def _bump(self, families: Iterable[CacheFamily]) -> None:
        # Caller holds _guard.
        for family in set(families):
            self._generations[family] = self._generations.get(family, 0) + 1

    def generation(self, key: KeyLike) -> int:
        """Count of invalidations that have touched the family of ``key``."""

        family = family_of(key)
        with self._guard:
            return self._generations.get(family, 0)

    def purge_expired(self) -> int:
        """Remove every expired entry and report how many were dropped."""

        now = self._clock()
        with self._guard:
            doomed = [text for text, entry in self._entries.items() if now > entry.expires_at]
            for text in doomed:
                del self._entries[text]
        if doomed:
            log.debug("Purged %d expired cache entries", len(doomed))
        return len(doomed)

    def get_or_load(
        self,
        key: KeyLike,
        loader: Callable[[], Any],
        *,
        force_refresh: bool = False,
        ttl: Optional[float] = None,
    ) -> Any:
        """Serve ``key`` from the cache, or call ``loader`` and cache its result.

        ``force_refresh`` skips the lookup, calls the loader and repopulates
        the entry for callers that distrust the cached copy. A value whose
        family was invalidated while the loader ran is returned but not
        stored, since it may predate the write that caused the invalidation.
        """

        if self._bypass_when is not None and self._bypass_when():
            return loader()

        if not force_refresh:
            value, hit = self.get(key)
            if hit:
                return value

        started = self.generation(key)
        value = loader()
        self.put(key, value, ttl, generation=started)
        return value

    def stats(self) -> Dict[str, int]:
        with self._guard:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
