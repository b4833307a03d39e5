"""
Scoring primitives.

Pure, deterministic functions shared by the ranking engine and the session
optimizer. Anything time-dependent takes `now` explicitly.
"""
import math
from datetime import datetime
from statistics import NormalDist
from typing import Iterable, List, Mapping, Optional, Sequence

from feedrank.models.schemas import ContentItem

# Engagement channel weights and the count at which the score saturates.
ENGAGEMENT_WEIGHTS = (
    ("likes", 0.4),
    ("reposts", 0.3),
    ("replies", 0.2),
    ("views", 0.1),
)
ENGAGEMENT_SATURATION = 10_000
_ENGAGEMENT_CEILING = math.log1p(ENGAGEMENT_SATURATION) * sum(w for _, w in ENGAGEMENT_WEIGHTS)


def clamp_unit(value: float) -> float:
    """Clamp to [0,1]; NaN and infinities become 0."""
    if value is None or not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def engagement_score(item: ContentItem) -> float:
    """Log-scaled weighted engagement, normalized to [0,1]."""
    raw = sum(weight * math.log1p(getattr(item, field)) for field, weight in ENGAGEMENT_WEIGHTS)
    return clamp_unit(raw / _ENGAGEMENT_CEILING)


def freshness_score(item: ContentItem, now: datetime, decay_rate: float) -> float:
    """
    Exponential time decay: exp(-decay_rate * age_hours).

    Args:
        item: Item with a creation timestamp
        now: Reference time
        decay_rate: Decay per hour (lambda)

    Returns:
        1.0 for a brand-new (or future-dated) item, falling toward 0 with age.
        Items without a timestamp score 0.
    """
    if item.created_at is None:
        return 0.0
    return clamp_unit(math.exp(-decay_rate * item.age_hours(now)))


def trending_boost(
    item: ContentItem,
    signals: Mapping[str, float],
    base: float = 1.0,
    cap: float = 0.8,
) -> float:
    """Capped boost from the hottest of the item's topics (or its own trend flag)."""
    velocities = [clamp_unit(signals.get(topic.lower(), 0.0)) for topic in item.topics]
    if item.trend_boost is not None:
        velocities.append(item.trend_boost)
    velocity = max(velocities, default=0.0)
    return clamp_unit(min(cap, base * velocity))


def wilson_lower_bound(positive: float, total: float, confidence: float = 0.95) -> float:
    """
    Lower bound of the Wilson score interval for a binomial proportion.

    Returns 0 when there are no observations. `positive` is clipped to
    `total`, and the result never exceeds positive / total.
    """
    if total <= 0:
        return 0.0
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    positive = min(max(positive, 0.0), total)
    z = NormalDist().inv_cdf(1 - (1 - confidence) / 2)
    p_hat = positive / total
    z2 = z * z

    centre = p_hat + z2 / (2 * total)
    margin = z * math.sqrt((p_hat * (1 - p_hat) + z2 / (4 * total)) / total)
    bound = (centre - margin) / (1 + z2 / total)
    return min(p_hat, max(0.0, bound))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0 for mismatched or zero-length vectors."""
    if not a or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0 or not math.isfinite(norm):
        return 0.0
    return max(-1.0, min(1.0, dot / norm))


def sparse_cosine(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine similarity of two sparse key -> weight maps; 0 when either is empty."""
    if not a or not b:
        return 0.0
    if len(b) < len(a):
        a, b = b, a
    dot = sum(value * b.get(key, 0.0) for key, value in a.items())
    if dot == 0:
        return 0.0
    norm = math.sqrt(sum(v * v for v in a.values())) * math.sqrt(sum(v * v for v in b.values()))
    if norm == 0 or not math.isfinite(norm):
        return 0.0
    return max(-1.0, min(1.0, dot / norm))


def centroid(vectors: Iterable[Sequence[float]]) -> Optional[List[float]]:
    """Element-wise mean of same-length vectors; None when there are none."""
    vectors = [v for v in vectors if v]
    if not vectors:
        return None
    size = len(vectors[0])
    same_size = [v for v in vectors if len(v) == size]
    return [sum(v[i] for v in same_size) / len(same_size) for i in range(size)]
