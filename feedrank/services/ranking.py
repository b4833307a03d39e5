"""
Ranking engine service.
Hybrid multi-factor scoring with quality floor, discovery blend,
author-diversity pass and pagination.
"""
import base64
import binascii
import json
import logging
import random
from abc import ABC, abstractmethod
from collections import Counter, deque
from datetime import datetime
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from feedrank.core.exceptions import DataQualityError, InvalidInputError
from feedrank.models.schemas import (
    FACTORS,
    ContentItem,
    Factor,
    FactorScores,
    FeedMetadata,
    PersonalizationProfile,
    RankedFeed,
    RankedResult,
    RankingOptions,
    RankingParameters,
    ScoringWeights,
    author_key,
    topic_key,
    utcnow,
)
from feedrank.services.scoring import (
    centroid,
    clamp_unit,
    cosine_similarity,
    engagement_score,
    freshness_score,
    trending_boost,
    wilson_lower_bound,
)

logger = logging.getLogger(__name__)

# Text length at which the quality length factor saturates
QUALITY_LENGTH_TARGET = 280
# Thresholds used for metadata counts and explanations
PERSONALIZED_THRESHOLD = 0.5
TRENDING_THRESHOLD = 0.3


class ScoringContext:
    """Per-request inputs shared by every scoring strategy."""

    def __init__(
        self,
        profile: PersonalizationProfile,
        candidates: Sequence[ContentItem],
        trend_signals: Mapping[str, float],
        now: datetime,
        params: RankingParameters,
        peer_affinities: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.profile = profile
        self.peer_affinities = peer_affinities or {}
        self.trend_signals = {k.lower(): v for k, v in trend_signals.items()}
        self.now = now
        self.params = params
        self.cold_start = profile.is_cold_start
        self.author_counts = Counter(item.author_id for item in candidates)
        self.centroid = centroid(item.embedding for item in candidates if item.embedding)

    def trending(self, item: ContentItem) -> float:
        return trending_boost(item, self.trend_signals, cap=self.params.trend_boost_cap)

    def peer_affinity(self, item: ContentItem) -> float:
        """Strongest peer affinity over the item's topics and author."""
        if not self.peer_affinities:
            return 0.0
        keys = [topic_key(t) for t in item.topics] + [author_key(item.author_id)]
        return max((self.peer_affinities.get(k, 0.0) for k in keys), default=0.0)


# =============================================================================
# Scoring Strategy (Strategy Pattern)
# =============================================================================


class ScoringStrategy(ABC):
    """Abstract base class for factor scoring strategies."""

    factor: Factor

    @abstractmethod
    def score(self, item: ContentItem, context: ScoringContext) -> float:
        """
        Calculate this factor's subscore.

        Returns:
            Value in [0,1]; out-of-range values are clamped by the engine
        """
        pass

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        """Human-readable reason, or None when the factor is unremarkable."""
        return None


class RelevanceScoring(ScoringStrategy):
    """
    Viewer affinity, lifted toward what similar viewers like.

    Cold-start viewers have no affinity, so their base is trending plus
    engagement confidence. Peers may fill `peer_affinity_blend` of the
    headroom between the base and 1; a base of 1 stays 1.
    """

    factor = Factor.RELEVANCE

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        if context.cold_start:
            confidence = wilson_lower_bound(item.total_engagement, max(item.views, item.total_engagement))
            base = 0.5 * context.trending(item) + 0.5 * confidence
        else:
            base = context.profile.affinity_for(item)
        peer = context.peer_affinity(item)
        if peer <= 0:
            return base
        return base + (1.0 - base) * context.params.peer_affinity_blend * peer

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        if value < PERSONALIZED_THRESHOLD:
            return None
        if not context.cold_start:
            affinities = context.profile.affinities
            for topic in item.topics:
                if affinities.get(topic_key(topic), 0.0) >= PERSONALIZED_THRESHOLD:
                    return f"Matches your interest in {topic}"
            if affinities.get(author_key(item.author_id), 0.0) >= PERSONALIZED_THRESHOLD:
                return f"From {item.author_id}, whom you engage with"
        if context.peer_affinity(item) >= PERSONALIZED_THRESHOLD:
            return "Liked by viewers with similar interests"
        return None


class SocialScoring(ScoringStrategy):
    factor = Factor.SOCIAL

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        return engagement_score(item)

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        return "Popular with the community" if value >= 0.5 else None


class FreshnessScoring(ScoringStrategy):
    factor = Factor.FRESHNESS

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        rate = context.params.decay_rates.for_kind(item.kind)
        return freshness_score(item, context.now, rate)

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        return "Recently posted" if value >= 0.7 else None


class QualityScoring(ScoringStrategy):
    """Confidence-adjusted engagement ratio plus a small length factor."""

    factor = Factor.QUALITY

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        engaged = item.total_engagement
        ratio = wilson_lower_bound(engaged, max(item.views, engaged))
        length = min(1.0, len(item.text.strip()) / QUALITY_LENGTH_TARGET)
        return 0.8 * ratio + 0.2 * length

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        return "High-quality content" if value >= 0.6 else None


class DiversityScoring(ScoringStrategy):
    """Distance from the candidate centroid, or author rarity without embeddings."""

    factor = Factor.DIVERSITY

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        if item.embedding and context.centroid is not None:
            return (1.0 - cosine_similarity(item.embedding, context.centroid)) / 2.0
        count = context.author_counts.get(item.author_id, 0)
        if count == 0:
            return 0.5
        return 1.0 / count

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        return "Adds variety to your feed" if value >= 0.7 else None


class TrendingScoring(ScoringStrategy):
    factor = Factor.TRENDING

    def score(self, item: ContentItem, context: ScoringContext) -> float:
        return context.trending(item)

    def explain(self, item: ContentItem, value: float, context: ScoringContext) -> Optional[str]:
        return "Trending now" if value >= TRENDING_THRESHOLD else None


def default_strategies() -> List[ScoringStrategy]:
    return [
        RelevanceScoring(),
        SocialScoring(),
        FreshnessScoring(),
        QualityScoring(),
        DiversityScoring(),
        TrendingScoring(),
    ]


class ScoredItem:
    """A candidate with its factor scores and final score."""

    __slots__ = ("item", "factors", "score", "explanations", "discovery")

    def __init__(
        self,
        item: ContentItem,
        factors: FactorScores,
        score: float,
        explanations: List[str],
    ) -> None:
        self.item = item
        self.factors = factors
        self.score = score
        self.explanations = explanations
        self.discovery = False

    def sort_key(self) -> Tuple[float, float, str]:
        created = self.item.created_at.timestamp() if self.item.created_at else 0.0
        return (-self.score, -created, self.item.id)


# =============================================================================
# Ranking Engine
# =============================================================================


class RankingEngine:
    """
    Main ranking engine service.
    Orchestrates quality filtering, scoring, blending, diversity and paging.
    Stateless between calls; safe to share across requests.
    """

    def __init__(
        self,
        params: Optional[RankingParameters] = None,
        strategies: Optional[List[ScoringStrategy]] = None,
    ) -> None:
        """
        Initialize ranking engine with scoring strategies.

        Args:
            params: Ranking constants (default: library defaults)
            strategies: One strategy per factor (default: all six built-ins)
        """
        self._params = params or RankingParameters()
        self._strategies = strategies or default_strategies()
        covered = {s.factor for s in self._strategies}
        missing = set(FACTORS) - covered
        if missing:
            raise ValueError(f"No scoring strategy for: {sorted(f.value for f in missing)}")

    @property
    def params(self) -> RankingParameters:
        return self._params

    def rank(
        self,
        candidates: Sequence[ContentItem],
        profile: PersonalizationProfile,
        weights: ScoringWeights,
        options: RankingOptions,
        trend_signals: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
        rng: Optional[random.Random] = None,
        peer_affinities: Optional[Mapping[str, float]] = None,
    ) -> RankedFeed:
        """
        Rank candidates for a viewer.

        Args:
            candidates: Pool of candidate items
            profile: Viewer profile (affinities, cold-start state)
            weights: Effective weights resolved by the caller
            options: Paging and tuning options
            trend_signals: Topic -> velocity; empty means trending-agnostic
            now: Reference time for freshness
            rng: Randomness for the discovery blend
            peer_affinities: Key -> affinity held by similar viewers

        Returns:
            RankedFeed with items, metadata and the next cursor
        """
        now = now or utcnow()
        rng = rng or random.Random()
        offset = self._resolve_offset(options)
        if options.diversity_factor is not None:
            weights = weights.with_factor(Factor.DIVERSITY, options.diversity_factor)

        # Step 1: Quality floor
        eligible, excluded = self._apply_quality_floor(candidates)
        if not eligible:
            return RankedFeed(
                metadata=FeedMetadata(
                    candidate_count=len(candidates),
                    excluded_count=excluded,
                    algorithm_version=self._params.algorithm_version,
                    weights=weights,
                )
            )

        # Step 2: Score candidates
        context = ScoringContext(profile, eligible, trend_signals or {}, now, self._params, peer_affinities)
        scored = [self._score(item, weights, context) for item in eligible]

        # Step 3: Sort by score (descending), newer first on ties
        scored.sort(key=ScoredItem.sort_key)

        # Step 4: Discovery blend
        ratio = options.discovery_ratio
        if ratio is None:
            ratio = self._params.discovery_ratio
        ordered = self._blend_discovery(scored, profile, options.limit, ratio, rng)

        # Step 5: Author diversity
        max_run = options.max_consecutive_same_author or self._params.max_consecutive_same_author
        ordered = self._enforce_author_cap(ordered, max_run)

        # Step 6: Paginate
        page = ordered[offset : offset + options.limit]
        has_more = len(ordered) > offset + options.limit
        next_cursor = self._encode_cursor(offset + options.limit) if has_more else None

        logger.debug(
            f"Ranked {len(candidates)} candidates -> {len(eligible)} eligible -> "
            f"returning {len(page)} items"
        )

        return RankedFeed(
            items=self._to_results(page, offset),
            metadata=self._build_metadata(page, context, len(candidates), excluded, weights),
            next_cursor=next_cursor,
            has_more=has_more,
        )

    def score_item(
        self,
        item: ContentItem,
        profile: PersonalizationProfile,
        trend_signals: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> FactorScores:
        """Factor scores for a lone item (no candidate set, so diversity is neutral)."""
        context = ScoringContext(profile, [], trend_signals or {}, now or utcnow(), self._params)
        return self._score(item, ScoringWeights.default(), context).factors

    def popularity_order(
        self,
        candidates: Sequence[ContentItem],
        options: RankingOptions,
    ) -> RankedFeed:
        """Non-personalized engagement ordering used as the breaker fallback."""
        offset = self._resolve_offset(options)
        eligible, excluded = self._apply_quality_floor(candidates)
        ranked = sorted(eligible, key=lambda i: (-engagement_score(i), i.id))
        page = ranked[offset : offset + options.limit]
        has_more = len(ranked) > offset + options.limit

        items = [
            RankedResult(
                item_id=item.id,
                author_id=item.author_id,
                rank=offset + i + 1,
                score=engagement_score(item),
            )
            for i, item in enumerate(page)
        ]
        return RankedFeed(
            items=items,
            metadata=FeedMetadata(
                total_score=sum(r.score for r in items),
                candidate_count=len(candidates),
                excluded_count=excluded,
                algorithm_version=f"{self._params.algorithm_version}-popularity",
                is_personalized=False,
            ),
            next_cursor=self._encode_cursor(offset + options.limit) if has_more else None,
            has_more=has_more,
        )

    # -------------------------------------------------------------------------
    # Pipeline steps
    # -------------------------------------------------------------------------

    def _apply_quality_floor(
        self,
        candidates: Sequence[ContentItem],
    ) -> Tuple[List[ContentItem], int]:
        """Drop malformed and below-floor items before scoring."""
        seen: Set[str] = set()
        eligible: List[ContentItem] = []
        excluded = 0
        for item in candidates:
            try:
                self._check_item(item, seen)
            except DataQualityError as e:
                excluded += 1
                logger.info(f"Excluded candidate {e.item_id}: {e.reason}")
                continue
            seen.add(item.id)
            eligible.append(item)
        return eligible, excluded

    def _check_item(self, item: ContentItem, seen: Set[str]) -> None:
        if item.created_at is None:
            raise DataQualityError(item.id, "missing created_at")
        if item.id in seen:
            raise DataQualityError(item.id, "duplicate item")
        if len(item.text.strip()) < self._params.min_content_length:
            raise DataQualityError(item.id, "content below minimum length")
        if item.total_engagement < self._params.min_engagement:
            raise DataQualityError(item.id, "engagement below floor")

    def _score(
        self,
        item: ContentItem,
        weights: ScoringWeights,
        context: ScoringContext,
    ) -> ScoredItem:
        values: Dict[str, float] = {}
        explanations: List[str] = []
        for strategy in self._strategies:
            value = clamp_unit(strategy.score(item, context))
            values[strategy.factor.value] = value
            reason = strategy.explain(item, value, context)
            if reason:
                explanations.append(reason)

        factors = FactorScores(**values)
        final = clamp_unit(sum(weights.get(f) * factors.get(f) for f in FACTORS))
        return ScoredItem(item, factors, final, explanations)

    def _blend_discovery(
        self,
        scored: List[ScoredItem],
        profile: PersonalizationProfile,
        limit: int,
        ratio: float,
        rng: random.Random,
    ) -> List[ScoredItem]:
        """
        Swap the tail of the first page for items outside the viewer's top
        affinities, drawn by score from beyond the personalized head and
        spread over evenly spaced slots.
        """
        count = round(limit * ratio)
        if count <= 0 or profile.is_cold_start or len(scored) <= limit - count:
            return scored

        top = set(profile.top_affinities(self._params.top_affinity_count))
        head = scored[: limit - count]
        tail = scored[limit - count :]
        pool = [s for s in tail if not (self._affinity_keys(s.item) & top)]
        picks = self._weighted_sample(pool, count, rng)
        if not picks:
            return scored

        page = list(head)
        for i, pick in enumerate(picks):
            pick.discovery = True
            slot = round((i + 1) * limit / (len(picks) + 1))
            page.insert(min(slot, len(page)), pick)

        picked = {id(p) for p in picks}
        return page + [s for s in tail if id(s) not in picked]

    @staticmethod
    def _weighted_sample(
        pool: List[ScoredItem],
        count: int,
        rng: random.Random,
    ) -> List[ScoredItem]:
        pool = list(pool)
        picks: List[ScoredItem] = []
        while pool and len(picks) < count:
            weights = [s.score + 1e-6 for s in pool]
            choice = rng.choices(range(len(pool)), weights=weights, k=1)[0]
            picks.append(pool.pop(choice))
        return picks

    @staticmethod
    def _affinity_keys(item: ContentItem) -> Set[str]:
        return {topic_key(t) for t in item.topics} | {author_key(item.author_id)}

    @staticmethod
    def _enforce_author_cap(ordered: List[ScoredItem], max_run: int) -> List[ScoredItem]:
        """
        Single forward pass: an item that would extend a same-author run past
        `max_run` is deferred and released as soon as another author breaks
        the run. When only the capped author's items remain, they are dropped;
        a single-author set is left untouched.
        """
        if len({s.item.author_id for s in ordered}) <= 1:
            return ordered

        result: List[ScoredItem] = []
        deferred: Deque[ScoredItem] = deque()
        incoming = iter(ordered)
        run_author: Optional[str] = None
        run_length = 0

        def fits(scored: ScoredItem) -> bool:
            return scored.item.author_id != run_author or run_length < max_run

        while True:
            if deferred and fits(deferred[0]):
                chosen = deferred.popleft()
            else:
                chosen = None
                for scored in incoming:
                    if fits(scored):
                        chosen = scored
                        break
                    deferred.append(scored)
                if chosen is None:
                    break

            author = chosen.item.author_id
            run_length = run_length + 1 if author == run_author else 1
            run_author = author
            result.append(chosen)

        if deferred:
            logger.debug(f"Dropped {len(deferred)} items over the same-author cap")
        return result

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def _to_results(self, page: List[ScoredItem], offset: int) -> List[RankedResult]:
        results = []
        for i, s in enumerate(page):
            explanations = list(s.explanations)
            if s.discovery:
                explanations.append("Something new for you")
            results.append(
                RankedResult(
                    item_id=s.item.id,
                    author_id=s.item.author_id,
                    rank=offset + i + 1,
                    score=s.score,
                    discovery=s.discovery,
                    factor_scores=s.factors,
                    explanations=explanations,
                )
            )
        return results

    def _build_metadata(
        self,
        page: List[ScoredItem],
        context: ScoringContext,
        candidate_count: int,
        excluded: int,
        weights: ScoringWeights,
    ) -> FeedMetadata:
        personalized = 0
        if not context.cold_start:
            personalized = sum(1 for s in page if s.factors.relevance >= PERSONALIZED_THRESHOLD)
        ages = [s.item.age_hours(context.now) for s in page]

        return FeedMetadata(
            total_score=sum(s.score for s in page),
            candidate_count=candidate_count,
            excluded_count=excluded,
            personalized_count=personalized,
            trending_count=sum(1 for s in page if s.factors.trending >= TRENDING_THRESHOLD),
            discovery_count=sum(1 for s in page if s.discovery),
            diversity_score=len({s.item.author_id for s in page}) / len(page) if page else 0.0,
            average_age_hours=sum(ages) / len(ages) if ages else 0.0,
            algorithm_version=self._params.algorithm_version,
            weights=weights,
        )

    # -------------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------------

    def _resolve_offset(self, options: RankingOptions) -> int:
        if options.cursor:
            return self.decode_cursor(options.cursor)
        return options.offset

    @staticmethod
    def decode_cursor(cursor: str) -> int:
        """Decode pagination cursor to offset."""
        try:
            decoded = base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8")
            offset = json.loads(decoded)["offset"]
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
            raise InvalidInputError("Invalid cursor", {"cursor": cursor}) from e
        if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
            raise InvalidInputError("Invalid cursor", {"cursor": cursor})
        return offset

    @staticmethod
    def _encode_cursor(offset: int) -> str:
        """Encode offset to pagination cursor."""
        data = {"offset": offset}
        return base64.b64encode(json.dumps(data).encode("utf-8")).decode("utf-8")
