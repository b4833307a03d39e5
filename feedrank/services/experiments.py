"""
Experiment manager.
Deterministic variant assignment, enrollment limits, lifecycle and
streaming outcome statistics for A/B tests between weight configurations.
"""
import hashlib
import logging
import math
import uuid
from datetime import datetime
from statistics import NormalDist
from threading import Lock
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from feedrank.core.exceptions import (
    ExperimentConfigurationError,
    ExperimentStateError,
    NotFoundError,
)
from feedrank.models.schemas import (
    FACTORS,
    AveragingMode,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    ExperimentVariant,
    RunningStat,
    ScoringWeights,
    SessionMetrics,
    VariantResult,
    VariantSpec,
    utcnow,
)

logger = logging.getLogger(__name__)

# Session length at which the retention signal saturates
RETENTION_TARGET_SEC = 15 * 60

_TRANSITIONS = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: set(),
}


class Enrollment(NamedTuple):
    """A viewer's variant in a running experiment."""

    experiment_id: str
    variant_id: str
    weights: ScoringWeights


def assignment_bucket(experiment_id: str, viewer_id: str, buckets: int) -> int:
    """Stable bucket from SHA-256 of `experiment_id:viewer_id`."""
    digest = hashlib.sha256(f"{experiment_id}:{viewer_id}".encode("utf-8")).hexdigest()
    return int(digest, 16) % buckets


class ExperimentManager:
    """
    Registry of experiments.

    Usage:
        manager = ExperimentManager()
        exp = manager.start_experiment(variants, sample_size=1000, confidence_level=0.95)
        variant_id = manager.assign_variant("viewer_1", exp.id)
    """

    def __init__(
        self,
        averaging: AveragingMode = "sma",
        ema_alpha: float = 0.2,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._averaging = averaging
        self._ema_alpha = ema_alpha
        self._clock = clock

        self._experiments: Dict[str, Experiment] = {}
        self._assignments: Dict[Tuple[str, str], str] = {}
        self._enrollments: Dict[Tuple[str, str], str] = {}
        self._lock = Lock()

    # -------------------------------------------------------------------------
    # Creation & lifecycle
    # -------------------------------------------------------------------------

    def create_experiment(
        self,
        name: str,
        variants: Sequence[VariantSpec],
        sample_size: int,
        confidence_level: float,
        description: str = "",
        experiment_id: Optional[str] = None,
    ) -> Experiment:
        """
        Validate and register a draft experiment.

        Raises:
            ExperimentConfigurationError: On any invalid parameter
        """
        if len(variants) < 2:
            raise ExperimentConfigurationError("at least two variants are required")
        ids = [v.id for v in variants]
        if len(set(ids)) != len(ids):
            raise ExperimentConfigurationError("variant ids must be unique")
        if sample_size is None or sample_size <= 0:
            raise ExperimentConfigurationError("sample size must be positive")
        if confidence_level is None or not 0.0 < confidence_level < 1.0:
            raise ExperimentConfigurationError("confidence level must be in (0, 1)")

        built = [self._build_variant(spec) for spec in variants]
        experiment = Experiment(
            id=experiment_id or f"exp_{uuid.uuid4().hex[:12]}",
            name=name,
            description=description,
            variants=built,
            sample_size=sample_size,
            confidence_level=confidence_level,
            created_at=self._clock(),
        )

        with self._lock:
            if experiment.id in self._experiments:
                raise ExperimentConfigurationError(f"experiment {experiment.id} already exists")
            self._experiments[experiment.id] = experiment

        logger.info(
            f"Experiment created with {len(built)} variants, sample_size={sample_size}",
            extra={"experiment_id": experiment.id},
        )
        return experiment

    def start_experiment(
        self,
        variants: Sequence[VariantSpec],
        sample_size: int,
        confidence_level: float,
        name: str = "experiment",
        description: str = "",
        experiment_id: Optional[str] = None,
    ) -> Experiment:
        """Create and immediately run an experiment."""
        experiment = self.create_experiment(
            name, variants, sample_size, confidence_level, description, experiment_id
        )
        return self.transition(experiment.id, ExperimentStatus.RUNNING)

    def transition(self, experiment_id: str, status: ExperimentStatus) -> Experiment:
        """
        Move an experiment through its lifecycle.

        Raises:
            NotFoundError: Unknown experiment
            ExperimentStateError: Transition not allowed from the current status
        """
        with self._lock:
            experiment = self._get(experiment_id)
            if status not in _TRANSITIONS[experiment.status]:
                raise ExperimentStateError(experiment_id, experiment.status.value, status.value)

            experiment.status = status
            if status == ExperimentStatus.RUNNING and experiment.started_at is None:
                experiment.started_at = self._clock()
            elif status == ExperimentStatus.COMPLETED:
                experiment.ended_at = self._clock()

        logger.info(f"Experiment moved to {status.value}", extra={"experiment_id": experiment_id})
        return experiment

    def get_experiment(self, experiment_id: str) -> Experiment:
        with self._lock:
            return self._get(experiment_id)

    def list_experiments(self) -> List[Experiment]:
        with self._lock:
            return list(self._experiments.values())

    def _get(self, experiment_id: str) -> Experiment:
        # Caller holds the lock
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)
        return experiment

    @staticmethod
    def _build_variant(spec: VariantSpec) -> ExperimentVariant:
        if spec.capacity is not None and spec.capacity <= 0:
            raise ExperimentConfigurationError(f"variant {spec.id}: capacity must be positive")

        known = {f.value for f in FACTORS}
        unknown = set(spec.weights) - known
        if unknown:
            raise ExperimentConfigurationError(f"variant {spec.id}: unknown factors {sorted(unknown)}")
        for factor, value in spec.weights.items():
            if not math.isfinite(value) or value < 0:
                raise ExperimentConfigurationError(
                    f"variant {spec.id}: weight for {factor} must be finite and non-negative"
                )
        if spec.weights and sum(spec.weights.values()) <= 0:
            raise ExperimentConfigurationError(f"variant {spec.id}: weights must not all be zero")

        weights = ScoringWeights.normalized(spec.weights) if spec.weights else ScoringWeights.default()
        return ExperimentVariant(
            id=spec.id,
            name=spec.name or spec.id,
            weights=weights,
            capacity=spec.capacity,
        )

    # -------------------------------------------------------------------------
    # Assignment & enrollment
    # -------------------------------------------------------------------------

    def assign_variant(self, viewer_id: str, experiment_id: str) -> str:
        """
        Deterministic variant for a viewer. Pure in (experiment id, variant
        list, viewer id), so it is stable across restarts.
        """
        key = (experiment_id, viewer_id)
        with self._lock:
            cached = self._assignments.get(key)
            if cached is not None:
                return cached
            experiment = self._get(experiment_id)
            bucket = assignment_bucket(experiment_id, viewer_id, len(experiment.variants))
            variant_id = experiment.variants[bucket].id
            self._assignments[key] = variant_id
        return variant_id

    def enroll(self, viewer_id: str, experiment_id: str) -> Optional[Enrollment]:
        """
        Enroll a viewer in a running experiment.

        Returns None when the experiment is not running, the sample size is
        reached, or the viewer's variant is at capacity.
        """
        variant_id = self.assign_variant(viewer_id, experiment_id)
        key = (experiment_id, viewer_id)
        with self._lock:
            experiment = self._get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                return None
            variant = experiment.variant(variant_id)
            if key not in self._enrollments:
                if experiment.enrolled >= experiment.sample_size or not variant.has_capacity:
                    return None
                self._enrollments[key] = variant_id
                experiment.enrolled += 1
                variant.enrolled += 1
        return Enrollment(experiment_id, variant_id, variant.weights)

    def resolve_override(self, viewer_id: str) -> Optional[Enrollment]:
        """Weights override from the first running experiment that takes the viewer."""
        for experiment in self.list_experiments():
            if experiment.status != ExperimentStatus.RUNNING:
                continue
            enrollment = self.enroll(viewer_id, experiment.id)
            if enrollment is not None:
                return enrollment
        return None

    # -------------------------------------------------------------------------
    # Outcomes & results
    # -------------------------------------------------------------------------

    def record_outcome(
        self,
        experiment_id: str,
        variant_id: str,
        metrics: SessionMetrics,
        duration_sec: float,
    ) -> bool:
        """Fold one session's outcome into its variant. Ignored unless running."""
        with self._lock:
            experiment = self._get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                logger.debug(
                    f"Outcome dropped, experiment is {experiment.status.value}",
                    extra={"experiment_id": experiment_id},
                )
                return False
            variant = experiment.variant(variant_id)
            if variant is None:
                raise NotFoundError("Variant", variant_id)

            stats = variant.metrics
            stats.sessions += 1
            stats.engagement.add(metrics.interaction_rate, self._ema_alpha)
            stats.retention.add(min(duration_sec / RETENTION_TARGET_SEC, 1.0), self._ema_alpha)
            stats.satisfaction.add(metrics.satisfaction_score, self._ema_alpha)
        return True

    def get_results(self, experiment_id: str) -> ExperimentResults:
        with self._lock:
            experiment = self._get(experiment_id)
            z = NormalDist().inv_cdf(1 - (1 - experiment.confidence_level) / 2)
            variants = [
                VariantResult(
                    variant_id=v.id,
                    name=v.name,
                    enrolled=v.enrolled,
                    sessions=v.metrics.sessions,
                    engagement=v.metrics.engagement.value(self._averaging),
                    retention=v.metrics.retention.value(self._averaging),
                    satisfaction=v.metrics.satisfaction.value(self._averaging),
                    engagement_margin=_margin(v.metrics.engagement, z),
                    retention_margin=_margin(v.metrics.retention, z),
                    satisfaction_margin=_margin(v.metrics.satisfaction, z),
                )
                for v in experiment.variants
            ]
            sampled = [v for v in variants if v.sessions > 0]
            leading = max(sampled, key=lambda v: v.engagement).variant_id if sampled else None

            return ExperimentResults(
                experiment_id=experiment.id,
                status=experiment.status,
                sample_size=experiment.sample_size,
                confidence_level=experiment.confidence_level,
                enrolled=experiment.enrolled,
                sample_size_reached=experiment.enrolled >= experiment.sample_size,
                averaging=self._averaging,
                variants=variants,
                leading_variant=leading,
            )


def _margin(stat: RunningStat, z: float) -> Optional[float]:
    if stat.count < 2:
        return None
    return z * math.sqrt(stat.variance / stat.count)
