"""
Feed cache layer.

Ranked pages keyed by viewer and a hash of everything that shapes the
ranking, with a reverse index so new content or a trend spike only evicts
the feeds that showed that author or topic. A longer-lived per-viewer copy
backs degraded mode.
"""
import fnmatch
import hashlib
import logging
from threading import Lock
from typing import Dict, FrozenSet, Iterable, Optional, Set, Tuple

from feedrank.core.cache import CacheInterface, InMemoryCache
from feedrank.models.schemas import RankedFeed, RankingOptions, ScoringWeights

logger = logging.getLogger(__name__)

CONFIG_HASH_LENGTH = 16
# Index size that triggers the first sweep for expired or evicted pages
INDEX_SWEEP_MIN = 256


class RankingConfigKey:
    """Hash of the inputs a cached page depends on."""

    @staticmethod
    def build(
        weights: ScoringWeights,
        variant_id: Optional[str],
        candidate_version: str,
        options: RankingOptions,
        personalized: bool = True,
    ) -> str:
        raw = "|".join([
            weights.fingerprint(),
            variant_id or "-",
            candidate_version,
            options.cache_fields(),
            "p" if personalized else "np",
        ])
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:CONFIG_HASH_LENGTH]


class FeedCache:
    """
    Usage:
        cache = FeedCache(ttl_sec=120)
        await cache.put("viewer_1", config_hash, feed, topics=["technology"])
        cache.invalidate_author("alice")
    """

    def __init__(
        self,
        cache: Optional[CacheInterface[RankedFeed]] = None,
        ttl_sec: float = 120,
        stale_ttl_sec: float = 900,
        max_entries: Optional[int] = None,
    ) -> None:
        self._cache = cache or InMemoryCache[RankedFeed](default_ttl_seconds=ttl_sec, max_entries=max_entries)
        self._stale: InMemoryCache[RankedFeed] = InMemoryCache(
            default_ttl_seconds=stale_ttl_sec, max_entries=max_entries
        )
        self._ttl = ttl_sec
        # key -> (authors, topics) it was indexed under
        self._key_tags: Dict[str, Tuple[FrozenSet[str], FrozenSet[str]]] = {}
        self._author_index: Dict[str, Set[str]] = {}
        self._topic_index: Dict[str, Set[str]] = {}
        self._sweep_at = INDEX_SWEEP_MIN
        self._index_lock = Lock()

    @staticmethod
    def key(viewer_id: str, config_hash: str) -> str:
        return f"feed:{viewer_id}:{config_hash}"

    @property
    def indexed_keys(self) -> int:
        """Cached pages tracked by the author/topic index."""
        return len(self._key_tags)

    async def get(self, viewer_id: str, config_hash: str) -> Optional[RankedFeed]:
        return self._cache.get(self.key(viewer_id, config_hash))

    async def put(
        self,
        viewer_id: str,
        config_hash: str,
        feed: RankedFeed,
        ttl: Optional[float] = None,
        topics: Iterable[str] = (),
    ) -> None:
        """Store a page and index it by the authors and topics it contains."""
        key = self.key(viewer_id, config_hash)
        self._cache.set(key, feed, ttl if ttl is not None else self._ttl)
        self._stale.set(viewer_id, feed)

        authors = frozenset(item.author_id for item in feed.items)
        topic_set = frozenset(t.lower() for t in topics)
        with self._index_lock:
            self._unlink(key)
            self._key_tags[key] = (authors, topic_set)
            for author_id in authors:
                self._author_index.setdefault(author_id, set()).add(key)
            for topic in topic_set:
                self._topic_index.setdefault(topic, set()).add(key)
            if len(self._key_tags) >= self._sweep_at:
                self._sweep_dead()

    def get_stale(self, viewer_id: str) -> Optional[RankedFeed]:
        """Last page served to this viewer, kept past normal expiry and invalidation."""
        return self._stale.get(viewer_id)

    def invalidate(self, pattern: str) -> int:
        """Evict every key matching a glob pattern."""
        with self._index_lock:
            for key in [k for k in self._key_tags if fnmatch.fnmatchcase(k, pattern)]:
                self._unlink(key)
        removed = self._cache.delete_matching(pattern)
        if removed:
            logger.debug(f"Invalidated {removed} cached feeds matching {pattern}")
        return removed

    def invalidate_viewer(self, viewer_id: str) -> int:
        # Exact hash shape so viewer "a" never matches viewer "a:b"
        return self.invalidate(self.key(viewer_id, "[0-9a-f]" * CONFIG_HASH_LENGTH))

    def invalidate_author(self, author_id: str) -> int:
        with self._index_lock:
            keys = set(self._author_index.get(author_id, ()))
            for key in keys:
                self._unlink(key)
        return self._delete_keys(keys)

    def invalidate_topic(self, topic: str) -> int:
        with self._index_lock:
            keys = set(self._topic_index.get(topic.lower(), ()))
            for key in keys:
                self._unlink(key)
        return self._delete_keys(keys)

    def _delete_keys(self, keys: Set[str]) -> int:
        return sum(1 for key in keys if self._cache.delete(key))

    # Index helpers below run with the index lock held

    def _unlink(self, key: str) -> None:
        tags = self._key_tags.pop(key, None)
        if tags is None:
            return
        authors, topics = tags
        for index, names in ((self._author_index, authors), (self._topic_index, topics)):
            for name in names:
                keys = index.get(name)
                if keys is None:
                    continue
                keys.discard(key)
                if not keys:
                    del index[name]

    def _sweep_dead(self) -> None:
        """Drop index entries whose pages expired or were evicted."""
        dead = [key for key in self._key_tags if not self._cache.exists(key)]
        for key in dead:
            self._unlink(key)
        self._sweep_at = max(INDEX_SWEEP_MIN, 2 * len(self._key_tags))
        if dead:
            logger.debug(f"Pruned {len(dead)} expired feeds from the invalidation index")

    def clear(self) -> None:
        self._cache.clear()
        self._stale.clear()
        with self._index_lock:
            self._key_tags.clear()
            self._author_index.clear()
            self._topic_index.clear()
            self._sweep_at = INDEX_SWEEP_MIN
