"""Online preference learning from user interactions.

Every interaction nudges up to three preference patterns for the user: the
component's manufacturer (brand), its category, and, when the outcome is
known, the component itself (success). A substitution with a known outcome
also moves the success pattern of the part it replaced. Patterns are kept in
a PreferenceStore and interactions in an append-only InteractionStore.

Decay: a pattern's confidence shrinks by ``decay_factor`` per whole elapsed
``decay_period_days`` before each update, and at scoring time the pattern's
deviation from neutral (0.5) is scaled the same way. The stored value itself
is never decayed, so a history of successes alone can only move it up.
"""

import asyncio
import logging
import math
import weakref
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from .config import (
    AVAILABILITY_SCORE_BONUS,
    CATEGORY_WEIGHTS,
    CONFIDENCE_THRESHOLD,
    DECAY_FACTOR,
    DECAY_PERIOD_DAYS,
    LEARNING_RATE,
    MAX_CONFIDENCE,
    MAX_RECOMMENDATIONS,
    MIN_INTERACTIONS,
)
from .errors import ValidationError
from .models import (
    PATTERN_TYPES,
    PROJECT_OUTCOMES,
    ComponentRecord,
    ComponentUsage,
    PersonalizedRecommendation,
    PreferencePattern,
    ProjectContext,
    ProjectModification,
    UserInteraction,
    UserPreferenceProfile,
    utcnow,
)
from .ports import CatalogRepository, InteractionStore, PreferenceStore

logger = logging.getLogger(__name__)

# Confidence a brand-new pattern starts with
INITIAL_CONFIDENCE = {
    "brand": 0.3,
    "category": 0.2,
    "success": 0.4,
}
CONFIDENCE_STEP = 0.05

# Signal for interactions that carry neither a rating nor an explicit outcome
IMPLICIT_SIGNALS = {
    "component_selected": 0.5,
    "component_purchased": 0.5,
    "component_substituted": 0.25,
    "project_completed": 1.0,
    "project_failed": -1.0,
}

# A substitution with a known outcome moves the replaced part the opposite way, at half strength
REPLACED_SIGNAL_SHARE = 0.5

# Default rating of a used component when the project report gives none
OUTCOME_RATINGS = {"success": 5.0, "partial": 3.0, "failure": 1.0}

# Reported for a subject the user has no pattern for
NEUTRAL_STRENGTH = {"strength": 0.5, "confidence": 0.1}

ADVANCED_CATEGORIES = frozenset({"microcontroller", "fpga", "rf module"})
INTERMEDIATE_CATEGORIES = frozenset({"sensor", "display", "motor driver"})


@dataclass
class LearnerConfig:
    learning_rate: float = LEARNING_RATE
    decay_factor: float = DECAY_FACTOR
    decay_period_days: float = DECAY_PERIOD_DAYS
    min_interactions: int = MIN_INTERACTIONS
    confidence_threshold: float = CONFIDENCE_THRESHOLD
    max_recommendations: int = MAX_RECOMMENDATIONS
    max_confidence: float = MAX_CONFIDENCE
    category_weights: dict[str, float] = field(default_factory=lambda: dict(CATEGORY_WEIGHTS))
    availability_bonus: float = AVAILABILITY_SCORE_BONUS


def interaction_signal(interaction: UserInteraction) -> float:
    """Map an interaction to a signal in [-1, 1].

    A rating wins over an explicit success flag, which wins over the
    implicit signal of the interaction type.
    """
    if interaction.rating is not None:
        return (interaction.rating - 3) / 2
    if interaction.success is not None:
        return 1.0 if interaction.success else -1.0
    return IMPLICIT_SIGNALS.get(interaction.type, 0.0)


def outcome_known(interaction: UserInteraction) -> bool:
    return interaction.success is not None or interaction.type in ("project_completed", "project_failed")


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def infer_difficulty(category: str | None) -> str:
    if not category:
        return "beginner"
    cat = category.lower()
    if cat in ADVANCED_CATEGORIES:
        return "advanced"
    if cat in INTERMEDIATE_CATEGORIES:
        return "intermediate"
    return "beginner"


class PreferenceLearner:
    """Learns per-user preference patterns and turns them into recommendations."""

    def __init__(
        self,
        catalog: CatalogRepository,
        preferences: PreferenceStore,
        interactions: InteractionStore,
        config: LearnerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._catalog = catalog
        self._preferences = preferences
        self._interactions = interactions
        self.config = config or LearnerConfig()
        self._clock = clock
        # Serializes read-modify-write of one user's patterns. Entries vanish once no task holds them.
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    # =========================================================================
    # DECAY
    # =========================================================================

    def elapsed_periods(self, last_updated: datetime, now: datetime) -> int:
        seconds = (now - last_updated).total_seconds()
        if seconds <= 0:
            return 0
        return math.floor(seconds / (self.config.decay_period_days * 86400))

    def recency(self, pattern: PreferencePattern, now: datetime) -> float:
        return self.config.decay_factor ** self.elapsed_periods(pattern.last_updated, now)

    # =========================================================================
    # LEARNING
    # =========================================================================

    async def resolve_component(self, interaction: UserInteraction) -> ComponentRecord | None:
        """Catalog record the interaction refers to, or None."""
        if not interaction.component_id:
            return None
        component = await self._catalog.get_by_id(interaction.component_id)
        if component is None:
            logger.info(
                f"Interaction for unknown component {interaction.component_id}, "
                f"only the success pattern can be updated"
            )
        return component

    def _pattern_updates(
        self, interaction: UserInteraction, component: ComponentRecord | None
    ) -> list[tuple[str, str, float]]:
        signal = interaction_signal(interaction)
        updates: list[tuple[str, str, float]] = []
        if component is not None and component.manufacturer:
            updates.append(("brand", component.manufacturer, signal))
        if component is not None and component.category:
            updates.append(("category", component.category, signal))
        if interaction.component_id and outcome_known(interaction):
            updates.append(("success", interaction.component_id, signal))
            replaced = interaction.original_choice
            if (
                interaction.type == "component_substituted"
                and replaced
                and replaced != interaction.component_id
            ):
                updates.append(("success", replaced, -signal * REPLACED_SIGNAL_SHARE))
        return updates

    async def update_patterns(
        self, interaction: UserInteraction, component: ComponentRecord | None
    ) -> list[PreferencePattern]:
        """Apply one interaction to the user's patterns. Returns them as stored."""
        updates = self._pattern_updates(interaction, component)
        if not updates:
            return []

        now = self._clock()
        updated = []
        async with self._lock_for(interaction.user_id):
            for pattern_type, subject, signal in updates:
                existing = await self._preferences.get(interaction.user_id, pattern_type, subject)
                if existing is None:
                    pattern = self._new_pattern(interaction.user_id, pattern_type, subject, signal, now)
                else:
                    pattern = self._apply_signal(existing, signal, now)
                await self._preferences.set(pattern)
                updated.append(pattern)

        logger.debug(
            f"Recorded {interaction.type} for {interaction.user_id}: "
            f"patterns={[(p.pattern_type, p.subject) for p in updated]}"
        )
        return updated

    async def record_interaction(self, interaction: UserInteraction) -> list[PreferencePattern]:
        """Resolve the component, append the interaction, then update patterns.

        A catalog failure leaves nothing behind: the interaction is only
        appended once its component lookup succeeded.
        """
        component = await self.resolve_component(interaction)
        await self._interactions.append(interaction)
        return await self.update_patterns(interaction, component)

    def project_interactions(
        self,
        user_id: str,
        project_id: str,
        outcome: str,
        components_used: list[ComponentUsage],
        modifications: list[ProjectModification] = (),
    ) -> list[UserInteraction]:
        """Expand a finished project into the interactions to learn from.

        Each used component becomes a rated selection; substitutions (per
        component or listed as modifications) become substitution events that
        name the replaced part. The project itself is recorded last.
        """
        if outcome not in PROJECT_OUTCOMES:
            raise ValidationError(f"Unknown project outcome: {outcome!r}. Expected one of {sorted(PROJECT_OUTCOMES)}")
        now = self._clock()
        success = outcome == "success"
        events = []
        for usage in components_used:
            events.append(UserInteraction(
                user_id=user_id,
                type="component_selected",
                timestamp=now,
                component_id=usage.component_id,
                project_id=project_id,
                success=success,
                rating=usage.performance_rating or OUTCOME_RATINGS[outcome],
            ))
            if usage.substituted_with:
                events.append(UserInteraction(
                    user_id=user_id,
                    type="component_substituted",
                    timestamp=now,
                    component_id=usage.substituted_with,
                    project_id=project_id,
                    success=success,
                    original_choice=usage.component_id,
                    alternative_choice=usage.substituted_with,
                ))
        for mod in modifications:
            if mod.type != "component_substitution":
                continue
            events.append(UserInteraction(
                user_id=user_id,
                type="component_substituted",
                timestamp=now,
                component_id=mod.actual_implementation,
                project_id=project_id,
                success=mod.impact == "positive",
                original_choice=mod.original_plan,
                alternative_choice=mod.actual_implementation,
            ))
        events.append(UserInteraction(
            user_id=user_id,
            type="project_failed" if outcome == "failure" else "project_completed",
            timestamp=now,
            project_id=project_id,
            success=None if outcome == "partial" else success,
        ))
        return events

    async def learn_from_project(
        self,
        user_id: str,
        project_id: str,
        outcome: str,
        components_used: list[ComponentUsage],
        modifications: list[ProjectModification] = (),
    ) -> list[PreferencePattern]:
        updated = []
        for event in self.project_interactions(user_id, project_id, outcome, components_used, modifications):
            updated.extend(await self.record_interaction(event))
        return updated

    def _new_pattern(
        self, user_id: str, pattern_type: str, subject: str, signal: float, now: datetime
    ) -> PreferencePattern:
        return PreferencePattern(
            user_id=user_id,
            pattern_type=pattern_type,
            subject=subject,
            value=_clamp(0.5 + signal * self.config.learning_rate),
            confidence=INITIAL_CONFIDENCE[pattern_type],
            sample_size=1,
            last_updated=now,
        )

    def _apply_signal(self, pattern: PreferencePattern, signal: float, now: datetime) -> PreferencePattern:
        decayed = pattern.confidence * self.recency(pattern, now)
        return replace(
            pattern,
            value=_clamp(pattern.value + signal * self.config.learning_rate),
            confidence=min(self.config.max_confidence, decayed + CONFIDENCE_STEP),
            sample_size=pattern.sample_size + 1,
            last_updated=max(now, pattern.last_updated),
        )

    # =========================================================================
    # PROFILE
    # =========================================================================

    async def _is_cold(self, user_id: str) -> bool:
        return await self._interactions.count(user_id) < self.config.min_interactions

    async def get_preference_strength(self, user_id: str, pattern_type: str, subject: str) -> dict[str, float]:
        """How strongly the user leans towards one brand, category or component.

        Confidence is reported after decay. A subject the user never touched
        is neutral: strength 0.5, confidence 0.1.
        """
        if pattern_type not in PATTERN_TYPES:
            raise ValidationError(f"Unknown pattern type: {pattern_type!r}. Expected one of {list(PATTERN_TYPES)}")
        pattern = await self._preferences.get(user_id, pattern_type, subject)
        if pattern is None:
            return dict(NEUTRAL_STRENGTH)
        return {
            "strength": round(pattern.value, 4),
            "confidence": round(pattern.confidence * self.recency(pattern, self._clock()), 4),
        }

    async def get_profile(self, user_id: str) -> UserPreferenceProfile | None:
        """Aggregate profile, or None while the user has too few interactions."""
        interactions = await self._interactions.list_for_user(user_id)
        if len(interactions) < self.config.min_interactions:
            return None
        patterns = await self._preferences.list_for_user(user_id)

        brands = sorted(
            (p for p in patterns if p.pattern_type == "brand" and p.value > 0.6 and p.confidence > 0.4),
            key=lambda p: (-p.value, p.subject),
        )
        categories = sorted(
            (p for p in patterns if p.pattern_type == "category" and p.value > 0.5),
            key=lambda p: (-p.value, p.subject),
        )

        return UserPreferenceProfile(
            user_id=user_id,
            preferred_brands=[p.subject for p in brands[:5]],
            preferred_categories=[p.subject for p in categories[:10]],
            budget_range=await self._budget_range(interactions),
            skill_level=self._skill_level(interactions),
            weights=dict(self.config.category_weights),
            interaction_count=len(interactions),
            pattern_count=len(patterns),
        )

    async def _budget_range(self, interactions: list[UserInteraction]) -> dict[str, float]:
        prices = []
        for interaction in interactions:
            if interaction.type != "component_purchased" or not interaction.component_id:
                continue
            component = await self._catalog.get_by_id(interaction.component_id)
            if component is not None and component.price > 0:
                prices.append(component.price)
        if not prices:
            return {"min": 0.0, "max": 100.0}
        return {"min": min(prices), "max": max(prices)}

    @staticmethod
    def _skill_level(interactions: list[UserInteraction]) -> str:
        completed = sum(
            1 for i in interactions
            if i.type == "project_completed" and i.success is not False
        )
        if completed >= 10:
            return "advanced"
        if completed >= 3:
            return "intermediate"
        return "beginner"

    # =========================================================================
    # SCORING / RECOMMENDATION
    # =========================================================================

    async def _pattern_index(self, user_id: str) -> dict[tuple[str, str], PreferencePattern]:
        patterns = await self._preferences.list_for_user(user_id)
        return {(p.pattern_type, p.subject): p for p in patterns}

    def _score(
        self,
        component: ComponentRecord,
        index: dict[tuple[str, str], PreferencePattern],
        now: datetime,
    ) -> float:
        weights = self.config.category_weights
        score = 0.5
        subjects = {
            "brand": component.manufacturer,
            "category": component.category,
            "success": component.id,
        }
        for pattern_type in PATTERN_TYPES:
            subject = subjects[pattern_type]
            pattern = index.get((pattern_type, subject)) if subject else None
            if pattern is not None:
                score += weights.get(pattern_type, 0.0) * (pattern.value - 0.5) * self.recency(pattern, now)
        if component.in_stock:
            score += self.config.availability_bonus
        return round(_clamp(score), 4)

    async def score_candidate(self, user_id: str, component: ComponentRecord) -> float | None:
        """Preference score in [0, 1], or None for a cold-start user."""
        if await self._is_cold(user_id):
            return None
        index = await self._pattern_index(user_id)
        return self._score(component, index, self._clock())

    def _explain(
        self,
        component: ComponentRecord,
        index: dict[tuple[str, str], PreferencePattern],
        score: float,
    ) -> str:
        reasons = []
        brand = index.get(("brand", component.manufacturer)) if component.manufacturer else None
        if brand is not None and brand.value > 0.7:
            reasons.append(f"you frequently choose {component.manufacturer} components")
        category = index.get(("category", component.category)) if component.category else None
        if category is not None and category.value > 0.6:
            reasons.append(f"you often work with {component.category} components")
        success = index.get(("success", component.id))
        if success is not None and success.value > 0.8:
            reasons.append("you've had success with this component in past projects")

        match = round(score * 100)
        if not reasons:
            return f"Recommended based on your project patterns ({match}% match)"
        return f"Recommended because {' and '.join(reasons)} ({match}% match)"

    async def explain(self, user_id: str, component: ComponentRecord, score: float) -> str:
        index = await self._pattern_index(user_id)
        return self._explain(component, index, score)

    async def recommend(
        self, user_id: str, context: ProjectContext | None = None
    ) -> list[PersonalizedRecommendation]:
        """Top catalog components for the user, [] on cold start."""
        profile = await self.get_profile(user_id)
        if profile is None:
            logger.debug(f"Cold start for {user_id}, no recommendations")
            return []

        candidates = await self._catalog.get_all()
        if profile.preferred_categories:
            preferred = set(profile.preferred_categories)
            candidates = [c for c in candidates if c.category in preferred]
        if context is not None:
            if context.budget is not None:
                candidates = [c for c in candidates if c.price <= context.budget]
            if context.existing_components:
                existing = set(context.existing_components)
                candidates = [c for c in candidates if c.id not in existing]

        index = await self._pattern_index(user_id)
        now = self._clock()
        results = []
        for candidate in candidates:
            score = self._score(candidate, index, now)
            if score < self.config.confidence_threshold:
                continue
            results.append(PersonalizedRecommendation(
                item_id=candidate.id,
                title=candidate.name,
                description=candidate.description or "Recommended component based on your preferences",
                score=score,
                reasoning=self._explain(candidate, index, score),
                difficulty=infer_difficulty(candidate.category),
                estimated_cost=candidate.price,
            ))

        results.sort(key=lambda r: (-r.score, r.item_id))
        return results[: self.config.max_recommendations]

    async def learning_stats(self, user_id: str) -> dict[str, Any]:
        """Counts and confidence summary for monitoring."""
        patterns = await self._preferences.list_for_user(user_id)
        by_type = {t: 0 for t in PATTERN_TYPES}
        for p in patterns:
            by_type[p.pattern_type] = by_type.get(p.pattern_type, 0) + 1
        avg_confidence = sum(p.confidence for p in patterns) / len(patterns) if patterns else 0.0
        last = max((p.last_updated for p in patterns), default=None)
        return {
            "user_id": user_id,
            "total_interactions": await self._interactions.count(user_id),
            "pattern_count": len(patterns),
            "patterns_by_type": by_type,
            "average_confidence": round(avg_confidence, 4),
            "last_updated": last.isoformat() if last else None,
        }
