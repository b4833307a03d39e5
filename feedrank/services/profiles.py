"""
Personalization profile store.

Hot profiles live in an in-memory cache; durable storage is read in the
background and written fire-and-forget, so ranking never waits on it.
Updates are optimistic compare-and-swap on the cached entry.

Until a viewer's durable profile has been loaded, local updates are kept in
a per-viewer journal and replayed onto the stored profile once it arrives,
so a write made against a cold placeholder never replaces durable state.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Coroutine, Dict, List, Mapping, Optional, Set, Union

from feedrank.config import Settings, get_settings
from feedrank.core.cache import CacheInterface, InMemoryCache
from feedrank.core.exceptions import DependencyUnavailableError
from feedrank.models.interfaces import ProfileStorage
from feedrank.models.schemas import Factor, PersonalizationProfile, utcnow
from feedrank.services.collaborative import CollaborativeSignal
from feedrank.services.scoring import clamp_unit

logger = logging.getLogger(__name__)

ProfileEdit = Callable[[PersonalizationProfile], PersonalizationProfile]

# Journaled edits kept per viewer while durable storage is unreachable
MAX_PENDING_EDITS = 256


class ProfileStore:
    """
    Owns per-viewer personalization profiles.

    Usage:
        store = ProfileStore(storage)
        profile = await store.get_profile("viewer_1")
        store.apply_update("viewer_1", {Factor.RELEVANCE: 0.05})
    """

    def __init__(
        self,
        storage: ProfileStorage,
        cache: Optional[CacheInterface[PersonalizationProfile]] = None,
        settings: Optional[Settings] = None,
        signal: Optional[CollaborativeSignal] = None,
    ) -> None:
        settings = settings or get_settings()
        self._storage = storage
        self._signal = signal
        self._cache = cache or InMemoryCache[PersonalizationProfile](
            default_ttl_seconds=settings.PROFILE_CACHE_TTL_SEC
        )
        self._max_weight_step = settings.MAX_WEIGHT_STEP
        self._learning_rate = settings.AFFINITY_LEARNING_RATE
        self._half_life_hours = settings.AFFINITY_HALF_LIFE_HOURS
        self._affinity_floor = settings.AFFINITY_FLOOR
        self._cas_retries = settings.PROFILE_CAS_RETRIES
        self._refresh_timeout = settings.PROFILE_REFRESH_TIMEOUT_MS / 1000

        self._tasks: Set[asyncio.Task] = set()
        self._degraded = False
        # viewer_id -> edits applied locally before the durable copy was loaded
        self._pending: Dict[str, List[ProfileEdit]] = {}
        self._loading: Set[str] = set()

    @property
    def is_degraded(self) -> bool:
        """True while the last durable-storage call failed."""
        return self._degraded

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_profile(self, viewer_id: str) -> PersonalizationProfile:
        """
        Return the cached profile, or a cold-start default right away.

        A miss caches the default and schedules a background load from
        durable storage; edits made before the load lands are replayed onto
        the loaded profile.
        """
        cached = self._cache.get(viewer_id)
        if cached is not None:
            return cached
        return self._start_load(viewer_id)

    def peek(self, viewer_id: str) -> Optional[PersonalizationProfile]:
        """Cached profile without scheduling a load."""
        return self._cache.get(viewer_id)

    def _start_load(self, viewer_id: str) -> PersonalizationProfile:
        placeholder = PersonalizationProfile(viewer_id=viewer_id)
        if not self._cache.compare_and_set(viewer_id, None, placeholder):
            return self._cache.get(viewer_id) or placeholder
        self._pending.setdefault(viewer_id, [])
        self._spawn_load(viewer_id)
        return placeholder

    def _spawn_load(self, viewer_id: str) -> None:
        if viewer_id in self._loading:
            return
        self._loading.add(viewer_id)
        self._spawn(self._refresh(viewer_id))

    async def _refresh(self, viewer_id: str) -> None:
        try:
            stored = await asyncio.wait_for(
                self._storage.load_profile(viewer_id),
                timeout=self._refresh_timeout,
            )
        except Exception as e:
            self._degraded = True
            logger.warning(
                f"Profile load failed, serving defaults: {type(e).__name__}: {e}",
                extra={"viewer_id": viewer_id},
            )
            return
        finally:
            self._loading.discard(viewer_id)

        self._degraded = False
        edits = self._pending.pop(viewer_id, [])
        if stored is None and not edits:
            return

        merged = stored or PersonalizationProfile(viewer_id=viewer_id)
        for edit in edits:
            merged = self._stamp(edit(merged), merged)
        self._cache.set(viewer_id, merged)
        self._observe(merged)

        if edits:
            logger.debug(
                f"Replayed {len(edits)} local profile edits onto loaded profile",
                extra={"viewer_id": viewer_id},
            )
            self._spawn(self._persist(merged))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def apply_update(
        self,
        viewer_id: str,
        delta: Mapping[Union[Factor, str], float],
    ) -> PersonalizationProfile:
        """
        Merge a weight delta into the viewer's profile.

        Each entry is bounded to +/- MAX_WEIGHT_STEP before merging, and the
        merged vector is renormalized.

        Raises:
            DependencyUnavailableError: If compare-and-swap kept losing races
        """

        def build(current: PersonalizationProfile) -> PersonalizationProfile:
            return current.model_copy(update={
                "weights": current.weights.with_delta(delta, max_step=self._max_weight_step),
            })

        return self._update(viewer_id, build)

    def record_affinity(
        self,
        viewer_id: str,
        target: str,
        signed_strength: float,
        now: Optional[datetime] = None,
    ) -> PersonalizationProfile:
        """
        Move one affinity toward 1 (positive strength) or 0 (negative).

        Every entry first decays toward 0 with the configured half-life since
        it was last brought up to date; entries under the floor are dropped.
        """
        now = now or utcnow()
        strength = max(-1.0, min(1.0, signed_strength))

        def build(current: PersonalizationProfile) -> PersonalizationProfile:
            affinities = {}
            touched = {}
            for key, value in current.affinities.items():
                last = current.affinity_touched_at.get(key, now)
                hours = max(0.0, (now - last).total_seconds() / 3600.0)
                decayed = value * 0.5 ** (hours / self._half_life_hours)
                if decayed >= self._affinity_floor:
                    affinities[key] = decayed
                    touched[key] = now

            value = affinities.get(target, 0.0)
            if strength >= 0:
                value += strength * (1.0 - value) * self._learning_rate
            else:
                value += strength * value * self._learning_rate
            value = clamp_unit(value)

            if value >= self._affinity_floor:
                affinities[target] = value
                touched[target] = now
            else:
                affinities.pop(target, None)
                touched.pop(target, None)

            return current.model_copy(update={
                "affinities": affinities,
                "affinity_touched_at": touched,
                "interaction_count": current.interaction_count + 1,
            })

        return self._update(viewer_id, build)

    def _update(self, viewer_id: str, edit: ProfileEdit) -> PersonalizationProfile:
        for attempt in range(self._cas_retries):
            current = self._cache.get(viewer_id)
            base = current if current is not None else self._start_load(viewer_id)
            updated = self._stamp(edit(base), base)
            if self._cache.compare_and_set(viewer_id, base, updated):
                self._observe(updated)
                self._commit(viewer_id, edit, updated)
                return updated
            logger.debug(f"Profile CAS conflict (attempt {attempt + 1})", extra={"viewer_id": viewer_id})

        raise DependencyUnavailableError("profile_store", "compare-and-set retries exhausted")

    def _commit(self, viewer_id: str, edit: ProfileEdit, updated: PersonalizationProfile) -> None:
        pending = self._pending.get(viewer_id)
        if pending is None:
            self._spawn(self._persist(updated))
            return

        # Durable copy not loaded yet: persist after replaying onto it
        pending.append(edit)
        if len(pending) > MAX_PENDING_EDITS:
            del pending[0]
            logger.warning("Profile edit journal full, dropping oldest edit", extra={"viewer_id": viewer_id})
        self._spawn_load(viewer_id)

    def _observe(self, profile: PersonalizationProfile) -> None:
        if self._signal is not None:
            self._signal.observe(profile)

    @staticmethod
    def _stamp(updated: PersonalizationProfile, base: PersonalizationProfile) -> PersonalizationProfile:
        return updated.model_copy(update={
            "version": base.version + 1,
            "updated_at": utcnow(),
        })

    async def _persist(self, profile: PersonalizationProfile) -> None:
        try:
            await self._storage.save_profile(profile)
        except Exception as e:
            self._degraded = True
            logger.error(
                f"Profile persistence failed: {type(e).__name__}: {e}",
                extra={"viewer_id": profile.viewer_id},
            )

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every in-flight load/persist task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
