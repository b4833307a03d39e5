"""
Unit tests for the session optimizer.
"""
from datetime import timedelta

import pytest

from feedrank.config import Settings
from feedrank.core.exceptions import InvalidInputError, NotFoundError
from feedrank.models.schemas import (
    ActionRecord,
    Factor,
    FactorScores,
    InteractionEvent,
    InteractionKind,
    ScoringWeights,
    ServedItem,
    SessionState,
    VariantSpec,
)
from feedrank.repositories.memory import (
    InMemoryContentStore,
    InMemoryProfileStorage,
    InMemorySessionStorage,
)
from feedrank.services.experiments import ExperimentManager
from feedrank.services.feed_cache import FeedCache
from feedrank.services.profiles import ProfileStore
from feedrank.services.ranking import RankingEngine
from feedrank.services.sessions import (
    AdaptiveParameters,
    ContrastAttribution,
    ProportionalAttribution,
    SessionOptimizer,
    compute_metrics,
    compute_reward,
)


class _Harness:
    """Session optimizer wired to in-memory collaborators."""

    def __init__(self, items=(), params=None):
        self.content_store = InMemoryContentStore(items)
        self.profile_storage = InMemoryProfileStorage()
        self.records = InMemorySessionStorage()
        self.profiles = ProfileStore(self.profile_storage, settings=Settings())
        self.experiments = ExperimentManager()
        self.feed_cache = FeedCache()
        self.optimizer = SessionOptimizer(
            profiles=self.profiles,
            content_store=self.content_store,
            record_storage=self.records,
            experiments=self.experiments,
            feed_cache=self.feed_cache,
            engine=RankingEngine(),
            params=params or AdaptiveParameters(),
        )

    async def close(self):
        await self.optimizer.close()
        await self.profiles.drain()


def _event(now, item_id, kind=InteractionKind.LIKE, seconds=0, **fields):
    fields.setdefault("viewer_id", "v1")
    fields.setdefault("session_id", "s1")
    return InteractionEvent(
        item_id=item_id,
        kind=kind,
        timestamp=now + timedelta(seconds=seconds),
        **fields,
    )


@pytest.fixture
def tech_items(make_item):
    """Old, unengaged technology posts."""
    return [
        make_item(f"t{i}", author_id=f"author_{i}", age_hours=72, topics=["technology"], text="x")
        for i in range(20)
    ]


@pytest.fixture
def fresh_tech_items(make_item):
    """Recent, well-engaged technology posts: freshness and social already score high."""
    return [
        make_item(
            f"f{i}",
            author_id=f"author_{i}",
            age_hours=1,
            topics=["technology"],
            likes=20,
            reposts=3,
            replies=2,
            views=200,
        )
        for i in range(20)
    ]


class TestReward:
    def test_like_at_top_slot(self, now):
        assert compute_reward(_event(now, "p1")) == pytest.approx(0.95)

    def test_dwell_bonus_and_deep_position(self, now):
        event = _event(now, "p1", kind=InteractionKind.VIEW, time_spent_ms=30_000, position=20)
        assert compute_reward(event) == pytest.approx(0.6)

    def test_position_penalty_shrinks_with_depth(self, now):
        assert compute_reward(_event(now, "p1", position=10)) == pytest.approx(0.975)
        assert compute_reward(_event(now, "p1", position=40)) == pytest.approx(1.0)

    def test_clamped(self, now):
        assert compute_reward(_event(now, "p1", kind=InteractionKind.SHARE)) == 1.0
        assert compute_reward(_event(now, "p1", kind=InteractionKind.HIDE)) == -1.0

    def test_window_metrics(self, now):
        kinds = [InteractionKind.VIEW, InteractionKind.VIEW, InteractionKind.LIKE, InteractionKind.SKIP]
        actions = [
            ActionRecord(kind=kind, item_id=f"p{i}", timestamp=now, time_spent_ms=1000)
            for i, kind in enumerate(kinds)
        ]
        stale = ActionRecord(kind=InteractionKind.LIKE, item_id="old", timestamp=now - timedelta(hours=1))

        metrics = compute_metrics([stale] + actions, now, window_sec=300)

        assert metrics.click_through_rate == pytest.approx(0.5)
        assert metrics.interaction_rate == pytest.approx(0.25)
        assert metrics.time_per_item_ms == pytest.approx(1000)
        assert metrics.satisfaction_score == pytest.approx(0.5)


class TestAttribution:
    def test_contrast_credits_factors_above_reference(self):
        scores = FactorScores(relevance=0.5, freshness=0.9, social=0.4)
        reference = FactorScores(relevance=0.2, freshness=0.9, social=0.6)

        relevance = ContrastAttribution().attribute(scores, ScoringWeights.default(), reference)

        assert relevance[Factor.RELEVANCE] == pytest.approx(1.0)
        assert relevance[Factor.FRESHNESS] == 0.0
        assert relevance[Factor.SOCIAL] == 0.0

    def test_contrast_with_nothing_standing_out(self):
        scores = FactorScores(freshness=0.5)

        relevance = ContrastAttribution().attribute(scores, ScoringWeights.default(), scores)

        assert not any(relevance.values())

    def test_proportional_uses_share_of_score(self):
        weights = ScoringWeights.normalized({Factor.RELEVANCE: 1.0, Factor.FRESHNESS: 1.0})
        scores = FactorScores(relevance=0.3, freshness=0.9)

        relevance = ProportionalAttribution().attribute(scores, weights, FactorScores())

        assert relevance[Factor.RELEVANCE] == pytest.approx(0.25)
        assert relevance[Factor.FRESHNESS] == pytest.approx(0.75)


class TestSessionOptimizer:
    @pytest.mark.asyncio
    async def test_likes_raise_relevance_weight(self, tech_items, now):
        harness = _Harness(tech_items)
        optimizer = harness.optimizer

        weights = None
        for i, item in enumerate(tech_items):
            weights = await optimizer.record_feedback(_event(now, item.id, seconds=2 * i))

        session = optimizer.get_session("s1")
        assert weights.relevance > session.start_weights.relevance
        assert sum(weights.as_dict().values()) == pytest.approx(1.0)
        assert len(session.actions) == 20
        await harness.close()

    @pytest.mark.asyncio
    async def test_likes_on_fresh_popular_posts_raise_relevance_weight(self, fresh_tech_items, now):
        harness = _Harness(fresh_tech_items)
        optimizer = harness.optimizer

        weights = None
        for i, item in enumerate(fresh_tech_items):
            weights = await optimizer.record_feedback(_event(now, item.id, seconds=2 * i))

        session = optimizer.get_session("s1")
        assert session.weight_shifts == 1
        assert weights.relevance > session.start_weights.relevance
        assert weights.freshness < session.start_weights.freshness
        assert sum(weights.as_dict().values()) == pytest.approx(1.0)
        await harness.close()

    @pytest.mark.asyncio
    async def test_first_unserved_event_only_seeds_reference(self, tech_items, now):
        harness = _Harness(tech_items)

        await harness.optimizer.record_feedback(_event(now, "t0"))

        session = harness.optimizer.get_session("s1")
        assert session.weight_shifts == 0
        assert session.factor_baseline is not None
        assert session.factor_baseline.relevance == pytest.approx(0.3)
        await harness.close()

    @pytest.mark.asyncio
    async def test_stability_period_limits_shifts(self, tech_items, now):
        harness = _Harness(tech_items)
        optimizer = harness.optimizer

        await optimizer.record_feedback(_event(now, "t0"))
        await optimizer.record_feedback(_event(now, "t1", seconds=10))
        await optimizer.record_feedback(_event(now, "t2", seconds=20))
        assert optimizer.get_session("s1").weight_shifts == 1

        await optimizer.record_feedback(_event(now, "t3", seconds=311))
        assert optimizer.get_session("s1").weight_shifts == 2
        await harness.close()

    @pytest.mark.asyncio
    async def test_small_rewards_do_not_shift(self, tech_items, now):
        harness = _Harness(tech_items, AdaptiveParameters(adaptation_threshold=0.5))

        await harness.optimizer.record_feedback(_event(now, "t0", kind=InteractionKind.VIEW))

        session = harness.optimizer.get_session("s1")
        assert session.weight_shifts == 0
        assert session.weights == session.start_weights
        await harness.close()

    @pytest.mark.asyncio
    async def test_served_snapshot_drives_attribution(self, now):
        harness = _Harness([])
        optimizer = harness.optimizer
        await optimizer.start_session("v1", "s1", now=now)
        optimizer.record_served("s1", [
            ServedItem(
                item_id="gone",
                author_id="a1",
                topics=["chess"],
                factor_scores=FactorScores(freshness=1.0, social=0.2),
            ),
            ServedItem(
                item_id="older",
                author_id="a2",
                topics=["go"],
                factor_scores=FactorScores(freshness=0.2, social=0.6),
            ),
        ])

        weights = await optimizer.record_feedback(_event(now, "gone"))

        default = ScoringWeights.default()
        assert weights.freshness > default.freshness
        assert weights.social < default.social
        assert harness.profiles.peek("v1").affinities["topic:chess"] > 0
        await harness.close()

    @pytest.mark.asyncio
    async def test_unknown_item_only_updates_metrics(self, now):
        harness = _Harness([])

        weights = await harness.optimizer.record_feedback(_event(now, "missing"))

        assert weights == ScoringWeights.default()
        assert len(harness.optimizer.get_session("s1").actions) == 1
        await harness.close()

    @pytest.mark.asyncio
    async def test_duplicate_events_are_ignored(self, tech_items, now):
        harness = _Harness(tech_items)
        optimizer = harness.optimizer

        await optimizer.record_feedback(_event(now, "t0", event_id="e1"))
        await optimizer.record_feedback(_event(now, "t0", seconds=1, event_id="e1"))

        assert len(optimizer.get_session("s1").actions) == 1
        await harness.close()

    @pytest.mark.asyncio
    async def test_end_session_persists_learned_weights(self, tech_items, now):
        harness = _Harness(tech_items)
        optimizer = harness.optimizer
        for i, item in enumerate(tech_items):
            await optimizer.record_feedback(_event(now, item.id, seconds=2 * i))

        record = await optimizer.end_session("s1")
        await harness.profiles.drain()

        assert record.weights_persisted is True
        assert record.action_count == 20
        assert record.duration_sec == pytest.approx(38)
        assert harness.records.get("s1") == record
        profile = harness.profiles.peek("v1")
        assert profile.weights.relevance > ScoringWeights.default().relevance
        assert optimizer.is_ended("s1")
        with pytest.raises(NotFoundError):
            optimizer.get_session("s1")

    @pytest.mark.asyncio
    async def test_short_session_keeps_profile_weights(self, tech_items, now):
        harness = _Harness(tech_items)
        await harness.optimizer.record_feedback(_event(now, "t0"))

        record = await harness.optimizer.end_session("s1")
        await harness.profiles.drain()

        assert record.weights_persisted is False
        assert harness.profiles.peek("v1").weights == ScoringWeights.default()

    @pytest.mark.asyncio
    async def test_feedback_after_end_is_rejected(self, tech_items, now):
        harness = _Harness(tech_items)
        await harness.optimizer.record_feedback(_event(now, "t0"))
        await harness.optimizer.end_session("s1")

        with pytest.raises(InvalidInputError):
            await harness.optimizer.submit_feedback(_event(now, "t1", seconds=5))
        with pytest.raises(InvalidInputError):
            await harness.optimizer.start_session("v1", "s1")
        await harness.close()

    @pytest.mark.asyncio
    async def test_session_belongs_to_one_viewer(self, tech_items, now):
        harness = _Harness(tech_items)
        await harness.optimizer.start_session("v1", "s1", now=now)

        with pytest.raises(InvalidInputError):
            await harness.optimizer.record_feedback(_event(now, "t0", viewer_id="v2"))
        await harness.close()

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self, tech_items, now):
        harness = _Harness(tech_items, AdaptiveParameters(queue_size=1))
        optimizer = harness.optimizer

        first = await optimizer.submit_feedback(_event(now, "t0"))
        second = await optimizer.submit_feedback(_event(now, "t1", seconds=1))

        assert first is True
        assert second is False
        await harness.close()

    @pytest.mark.asyncio
    async def test_sweep_idles_then_ends(self, now):
        harness = _Harness([])
        optimizer = harness.optimizer
        await optimizer.start_session("v1", "s1", now=now)

        assert await optimizer.sweep(now + timedelta(seconds=121)) == []
        assert optimizer.get_session("s1").state == SessionState.IDLE

        ended = await optimizer.sweep(now + timedelta(seconds=1801))
        assert ended == ["s1"]
        assert harness.records.get("s1") is not None
        assert optimizer.active_count == 0
        await harness.close()

    @pytest.mark.asyncio
    async def test_experiment_variant_seeds_and_collects(self, tech_items, now):
        harness = _Harness(tech_items)
        experiment = harness.experiments.start_experiment(
            variants=[
                VariantSpec(id="fresh", weights={"freshness": 1.0}),
                VariantSpec(id="social", weights={"social": 1.0}),
            ],
            sample_size=100,
            confidence_level=0.95,
            experiment_id="exp1",
        )
        variant_id = harness.experiments.assign_variant("v1", experiment.id)

        session = await harness.optimizer.start_session("v1", "s1", now=now)
        assert session.variant_id == variant_id
        expected = Factor.FRESHNESS if variant_id == "fresh" else Factor.SOCIAL
        assert session.weights.get(expected) == pytest.approx(1.0)

        await harness.optimizer.record_feedback(_event(now, "t0", seconds=1))
        await harness.optimizer.end_session("s1")

        results = harness.experiments.get_results("exp1")
        by_id = {v.variant_id: v for v in results.variants}
        assert by_id[variant_id].sessions == 1
        await harness.close()
