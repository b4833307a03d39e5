"""
Co-engagement signal.

Viewers whose affinity maps point the same way tend to like the same things.
This keeps a bounded, in-process index of recent viewers' affinity maps and
answers two questions for the ranking pipeline:

- For a warm viewer: what do the most similar viewers care about?
- For a cold-start viewer: what does the community as a whole care about?

Similarity is cosine over the sparse topic:/author: affinity maps.
"""
import logging
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Set, Tuple

from feedrank.models.schemas import PersonalizationProfile
from feedrank.services.scoring import sparse_cosine

logger = logging.getLogger(__name__)

# Viewers compared per lookup, drawn from those sharing the strongest keys
CANDIDATE_LIMIT = 200

# Keys returned for a cold-start viewer
COMMUNITY_KEYS = 20


class CollaborativeSignal:
    """
    Usage:
        signal = CollaborativeSignal(max_viewers=5000)
        signal.observe(profile)
        peers = signal.peer_affinities(other_profile)
    """

    def __init__(
        self,
        max_viewers: int = 5000,
        neighbours: int = 20,
        min_similarity: float = 0.1,
        candidate_limit: int = CANDIDATE_LIMIT,
        community_keys: int = COMMUNITY_KEYS,
    ) -> None:
        if max_viewers < 1 or neighbours < 1:
            raise ValueError("max_viewers and neighbours must be positive")
        self._max_viewers = max_viewers
        self._neighbours = neighbours
        self._min_similarity = min_similarity
        self._candidate_limit = candidate_limit
        self._community_keys = community_keys

        # viewer_id -> affinity map, least recently observed first
        self._vectors: "OrderedDict[str, Dict[str, float]]" = OrderedDict()
        # affinity key -> viewers holding it
        self._holders: Dict[str, Set[str]] = {}
        # affinity key -> sum of held affinities
        self._totals: Dict[str, float] = {}

    @property
    def viewer_count(self) -> int:
        return len(self._vectors)

    def observe(self, profile: PersonalizationProfile) -> None:
        """Record the viewer's current affinities, replacing any earlier copy."""
        viewer_id = profile.viewer_id
        self._unlink(viewer_id)
        if not profile.affinities:
            return

        vector = dict(profile.affinities)
        self._vectors[viewer_id] = vector
        for key, value in vector.items():
            self._holders.setdefault(key, set()).add(viewer_id)
            self._totals[key] = self._totals.get(key, 0.0) + value

        while len(self._vectors) > self._max_viewers:
            oldest = next(iter(self._vectors))
            self._unlink(oldest)
            logger.debug("Evicted viewer from co-engagement index", extra={"viewer_id": oldest})

    def forget(self, viewer_id: str) -> None:
        self._unlink(viewer_id)

    def similar_viewers(
        self,
        viewer_id: str,
        affinities: Mapping[str, float],
        limit: Optional[int] = None,
    ) -> List[Tuple[str, float]]:
        """
        Most similar other viewers, strongest first.

        Only viewers sharing at least one key are compared, and at most
        `candidate_limit` of them, collected from the viewer's strongest
        keys down. Matches under `min_similarity` are dropped.

        Returns:
            (viewer_id, similarity) pairs, ties broken by viewer id
        """
        limit = limit or self._neighbours
        candidates: Set[str] = set()
        for key, _ in sorted(affinities.items(), key=lambda kv: (-kv[1], kv[0])):
            for other in sorted(self._holders.get(key, ())):
                if other != viewer_id:
                    candidates.add(other)
                if len(candidates) >= self._candidate_limit:
                    break
            if len(candidates) >= self._candidate_limit:
                break

        scored = []
        for other in candidates:
            similarity = sparse_cosine(affinities, self._vectors[other])
            if similarity >= self._min_similarity:
                scored.append((other, similarity))
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return scored[:limit]

    def peer_affinities(self, profile: PersonalizationProfile) -> Dict[str, float]:
        """
        Affinities the viewer's peers hold, each in [0,1].

        A warm viewer gets the similarity-weighted mean of its neighbours'
        maps. A cold-start viewer has nothing to compare, so it gets the
        community's strongest keys instead. Empty when nobody qualifies.
        """
        if profile.is_cold_start:
            return self.community_affinities()

        neighbours = self.similar_viewers(profile.viewer_id, profile.affinities)
        if not neighbours:
            return {}

        total_similarity = sum(similarity for _, similarity in neighbours)
        blended: Dict[str, float] = {}
        for other, similarity in neighbours:
            for key, value in self._vectors[other].items():
                blended[key] = blended.get(key, 0.0) + similarity * value
        return {key: min(1.0, value / total_similarity) for key, value in blended.items()}

    def community_affinities(self) -> Dict[str, float]:
        """Mean affinity over every indexed viewer, strongest keys only."""
        if not self._vectors:
            return {}
        population = len(self._vectors)
        ranked = sorted(self._totals.items(), key=lambda kv: (-kv[1], kv[0]))
        return {key: min(1.0, total / population) for key, total in ranked[: self._community_keys]}

    def _unlink(self, viewer_id: str) -> None:
        vector = self._vectors.pop(viewer_id, None)
        if vector is None:
            return
        for key, value in vector.items():
            holders = self._holders.get(key)
            if holders is not None:
                holders.discard(viewer_id)
                if not holders:
                    del self._holders[key]
                    self._totals.pop(key, None)
                    continue
            self._totals[key] = self._totals.get(key, 0.0) - value
