"""Recommendation orchestrator.

RecommendationService composes the analyzer, alternative finder and
preference learner behind a cache-aside layer and enforces the error policy:
ValidationError reaches the caller, every other failure is recorded in the
error log and replaced by the documented fallback value.
"""

import asyncio
import copy
import json
import logging
from datetime import datetime
from typing import Any, Callable

from .ai import HTTPTextService
from .alternatives import AlternativeFinder, FinderConfig
from .cache import DailyQuota, TTLCache
from .compatibility import CompatibilityAnalyzer
from .config import (
    AI_DAILY_LIMIT,
    AI_SERVICE_TIMEOUT,
    AI_SERVICE_URL,
    CACHE_MAX_SIZE,
    CACHE_TTL_HOURS,
    CATALOG_PATH,
    ERROR_LOG_MAX_SIZE,
    HEALTH_MAX_AI_ERRORS,
    HEALTH_MAX_ERRORS_PER_HOUR,
    MAX_BATCH_SIZE,
    PERSONALIZED_CACHE_TTL_HOURS,
    PREFERENCE_DB_PATH,
)
from .db import InteractionLog, PreferenceDatabase
from .errors import ErrorLog, ExternalServiceError, InsufficientDataError, ValidationError, classify
from .models import (
    CompatibilityAnalysis,
    ComponentUsage,
    ProjectContext,
    ProjectModification,
    UserInteraction,
    utcnow,
)
from .ports import AITextService, CacheStore, CatalogRepository, InteractionStore, PreferenceStore
from .preferences import NEUTRAL_STRENGTH, LearnerConfig, PreferenceLearner
from .stores import InMemoryCatalog, InMemoryInteractionStore, InMemoryPreferenceStore

logger = logging.getLogger(__name__)

EMPTY_ANALYSIS = CompatibilityAnalysis(overall_score=0.0)
SEVERITY_ORDER = ("critical", "high", "medium", "low")


def cache_key(operation: str, args: dict[str, Any]) -> str:
    """Deterministic key: operation name plus canonical JSON of the arguments."""
    return f"{operation}:{json.dumps(args, sort_keys=True, default=str)}"


def _require_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _require_id_list(values: Any, name: str) -> list[str]:
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{name} must be a list of ids")
    return [_require_id(v, name) for v in values]


def _as_context(context: ProjectContext | dict[str, Any] | None) -> ProjectContext | None:
    if context is None or isinstance(context, ProjectContext):
        return context
    return ProjectContext.from_dict(context)


def rule_based_explanation(component_ids: list[str], analysis: dict[str, Any]) -> str:
    """Plain summary of an analysis, used when no AI text is available."""
    names = ", ".join(component_ids)
    score = analysis["overall_score"]
    if not analysis["issues"]:
        return f"{names} look compatible (score {score:g}/100). No issues found."
    parts = [f"{names}: compatibility score {score:g}/100."]
    worst = sorted(analysis["issues"], key=lambda i: SEVERITY_ORDER.index(i["severity"]))
    parts.append(
        f"{len(worst)} issue(s): " + "; ".join(f"[{i['severity']}] {i['description']}" for i in worst) + "."
    )
    if analysis["required_modifications"]:
        parts.append("Required: " + "; ".join(analysis["required_modifications"]) + ".")
    return " ".join(parts)


class RecommendationService:
    """Single entry point for all recommendation operations."""

    def __init__(
        self,
        catalog: CatalogRepository,
        preferences: PreferenceStore,
        interactions: InteractionStore,
        cache: CacheStore | None = None,
        ai: AITextService | None = None,
        analyzer: CompatibilityAnalyzer | None = None,
        finder_config: FinderConfig | None = None,
        learner_config: LearnerConfig | None = None,
        error_log: ErrorLog | None = None,
        ai_timeout: float = AI_SERVICE_TIMEOUT,
        cache_ttl_hours: float = CACHE_TTL_HOURS,
        personalized_ttl_hours: float = PERSONALIZED_CACHE_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.interactions = interactions
        self.cache = cache if cache is not None else TTLCache(max_size=CACHE_MAX_SIZE)
        self.ai = ai
        self.analyzer = analyzer or CompatibilityAnalyzer()
        self.finder = AlternativeFinder(catalog, self.analyzer, finder_config)
        self.learner = PreferenceLearner(catalog, preferences, interactions, learner_config, clock)
        self.errors = error_log or ErrorLog(max_size=ERROR_LOG_MAX_SIZE)
        self.ai_timeout = ai_timeout
        self.cache_ttl_hours = cache_ttl_hours
        self.personalized_ttl_hours = personalized_ttl_hours
        self._clock = clock
        self._ai_failures = 0  # Consecutive, reset on success

    def _absorb(self, error: Exception, operation: str, **context: Any) -> None:
        self.errors.record(error, {"operation": operation, **context})

    # Callers get their own copy, so mutating a result never reaches the cache
    def _cached(self, key: str) -> Any | None:
        value = self.cache.get(key)
        return copy.deepcopy(value) if value is not None else None

    def _store(self, key: str, value: Any, ttl_hours: float) -> None:
        self.cache.set(key, copy.deepcopy(value), ttl_hours)

    # =========================================================================
    # ALTERNATIVES
    # =========================================================================

    async def _alternatives(self, component_id: str, context: ProjectContext | None) -> list[dict[str, Any]]:
        """Cache-aside lookup that raises on failure. Shared by single and batch calls."""
        key = cache_key("alternatives", {
            "component_id": component_id,
            "context": context.to_dict() if context else None,
        })
        cached = self._cached(key)
        if cached is not None:
            return cached
        alternatives = await self.finder.find_alternatives(component_id, context)
        result = [a.to_dict() for a in alternatives]
        self._store(key, result, self.cache_ttl_hours)
        return result

    async def get_component_alternatives(
        self, component_id: str, context: ProjectContext | dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Ranked substitutes for a component; [] if it can't be resolved."""
        component_id = _require_id(component_id, "component_id")
        ctx = _as_context(context)
        try:
            return await self._alternatives(component_id, ctx)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "get_component_alternatives", component_id=component_id)
            return []

    async def get_component_alternatives_batch(
        self, component_ids: list[str], context: ProjectContext | dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Alternatives for many components. One entry per id, in input order; failures don't abort the batch."""
        ids = _require_id_list(component_ids, "component_ids")
        if len(ids) > MAX_BATCH_SIZE:
            raise ValidationError(f"Too many components in batch (max {MAX_BATCH_SIZE})")
        ctx = _as_context(context)

        results = await asyncio.gather(
            *(self._alternatives(cid, ctx) for cid in ids),
            return_exceptions=True,
        )

        entries = []
        for cid, result in zip(ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self._absorb(result, "get_component_alternatives_batch", component_id=cid)
                kind, retryable = classify(result)
                entries.append({
                    "component_id": cid,
                    "alternatives": [],
                    "error": {"kind": kind, "message": str(result), "retryable": retryable},
                })
            else:
                entries.append({"component_id": cid, "alternatives": result})
        return entries

    # =========================================================================
    # COMPATIBILITY
    # =========================================================================

    async def _analysis(self, ids: list[str]) -> dict[str, Any]:
        key = cache_key("compatibility", {"component_ids": ids})
        cached = self._cached(key)
        if cached is not None:
            return cached

        records = [await self.catalog.get_by_id(cid) for cid in ids]
        # A degenerate spec is the caller's error even when another id is unknown
        for record in records:
            if record is not None:
                record.spec.validate()
        missing = [cid for cid, record in zip(ids, records) if record is None]
        if missing:
            raise InsufficientDataError(
                f"Component not found: {', '.join(missing)}", {"component_ids": missing}
            )

        result = self.analyzer.analyze([r.spec for r in records]).to_dict()
        self._store(key, result, self.cache_ttl_hours)
        return result

    @staticmethod
    def _compatibility_ids(component_ids: list[str]) -> list[str]:
        ids = sorted(set(_require_id_list(component_ids, "component_ids")))
        if len(ids) < 2:
            raise ValidationError("Compatibility analysis needs at least 2 distinct components")
        return ids

    async def analyze_compatibility(self, component_ids: list[str]) -> dict[str, Any]:
        """Compatibility analysis of two or more catalog components.

        Order of ids does not matter. Unknown components give a zero-score
        empty analysis; fewer than two ids is a ValidationError.
        """
        ids = self._compatibility_ids(component_ids)
        try:
            return await self._analysis(ids)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "analyze_compatibility", component_ids=ids)
            return EMPTY_ANALYSIS.to_dict()

    async def explain_compatibility(self, component_ids: list[str]) -> dict[str, Any]:
        """Analysis plus a prose explanation, phrased by the AI service when available.

        When the analysis itself falls back, the AI service is not asked and
        nothing is cached.
        """
        ids = self._compatibility_ids(component_ids)
        try:
            analysis = await self._analysis(ids)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "explain_compatibility", component_ids=ids)
            analysis = EMPTY_ANALYSIS.to_dict()
            return {
                "analysis": analysis,
                "explanation": rule_based_explanation(ids, analysis),
                "source": "rules",
            }

        result = {"analysis": analysis, "explanation": None, "source": "rules"}
        if self.ai is not None:
            key = cache_key("explain", {"component_ids": ids})
            cached = self._cached(key)
            if cached is not None:
                return cached
            prompt = self._explain_prompt(ids, analysis)
            try:
                text = await asyncio.wait_for(self.ai.enrich(prompt), timeout=self.ai_timeout)
            except asyncio.TimeoutError:
                self._ai_failures += 1
                self._absorb(
                    ExternalServiceError(f"AI service timed out after {self.ai_timeout:g}s"),
                    "explain_compatibility", component_ids=ids,
                )
            except Exception as e:
                self._ai_failures += 1
                self._absorb(e, "explain_compatibility", component_ids=ids)
            else:
                self._ai_failures = 0
                result.update(explanation=text, source="ai")
                self._store(key, result, self.cache_ttl_hours)
                return result

        result["explanation"] = rule_based_explanation(ids, analysis)
        return result

    @staticmethod
    def _explain_prompt(ids: list[str], analysis: dict[str, Any]) -> str:
        lines = [
            f"Components: {', '.join(ids)}",
            f"Compatibility score: {analysis['overall_score']:g}/100",
        ]
        for issue in analysis["issues"]:
            lines.append(f"- {issue['severity']} {issue['dimension']} issue: {issue['description']}")
        for mod in analysis["required_modifications"]:
            lines.append(f"- required: {mod}")
        lines.append("Explain whether these parts can be used together and what to change.")
        return "\n".join(lines)

    # =========================================================================
    # PREFERENCES
    # =========================================================================

    async def _record(self, interaction: UserInteraction, operation: str) -> dict[str, Any]:
        """Append, then learn. ``recorded`` tells whether the interaction was stored.

        A failed catalog lookup or append stores nothing. A failed pattern
        update after the append still counts as recorded.
        """
        try:
            component = await self.learner.resolve_component(interaction)
            await self.interactions.append(interaction)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, operation, user_id=interaction.user_id, type=interaction.type)
            return {"recorded": False, "patterns_updated": 0}
        try:
            patterns = await self.learner.update_patterns(interaction, component)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, operation, user_id=interaction.user_id, type=interaction.type)
            return {"recorded": True, "patterns_updated": 0}
        return {"recorded": True, "patterns_updated": len(patterns)}

    async def record_interaction(self, payload: UserInteraction | dict[str, Any]) -> dict[str, Any]:
        """Validate and learn from one interaction event."""
        if isinstance(payload, UserInteraction):
            interaction = payload
        else:
            interaction = UserInteraction.from_dict(payload, now=self._clock())
        return await self._record(interaction, "record_interaction")

    async def learn_from_project_completion(
        self,
        user_id: str,
        project_id: str,
        outcome: str,
        components_used: list[ComponentUsage | dict[str, Any]],
        modifications: list[ProjectModification | dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Learn from a finished project: one event per used or substituted part, plus the project itself.

        Events are recorded one by one; a failing event is counted and the
        rest still go through.
        """
        user_id = _require_id(user_id, "user_id")
        project_id = _require_id(project_id, "project_id")
        if not isinstance(components_used, (list, tuple)):
            raise ValidationError("components_used must be a list")
        if modifications is not None and not isinstance(modifications, (list, tuple)):
            raise ValidationError("modifications must be a list")
        usages = [u if isinstance(u, ComponentUsage) else ComponentUsage.from_dict(u) for u in components_used]
        mods = [
            m if isinstance(m, ProjectModification) else ProjectModification.from_dict(m)
            for m in modifications or ()
        ]
        events = self.learner.project_interactions(user_id, project_id, outcome, usages, mods)

        recorded = failed = patterns = 0
        for event in events:
            result = await self._record(event, "learn_from_project_completion")
            if result["recorded"]:
                recorded += 1
            else:
                failed += 1
            patterns += result["patterns_updated"]
        logger.info(
            f"Project {project_id} ({outcome}) for {user_id}: "
            f"{recorded} interactions recorded, {failed} failed"
        )
        return {"interactions_recorded": recorded, "interactions_failed": failed, "patterns_updated": patterns}

    async def get_preference_strength(self, user_id: str, pattern_type: str, subject: str) -> dict[str, float]:
        """Strength and confidence of one learned preference; neutral on failure."""
        user_id = _require_id(user_id, "user_id")
        subject = _require_id(subject, "subject")
        try:
            return await self.learner.get_preference_strength(user_id, pattern_type, subject)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "get_preference_strength", user_id=user_id)
            return dict(NEUTRAL_STRENGTH)

    async def get_personalized_recommendations(
        self, user_id: str, context: ProjectContext | dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Personalized component picks; [] on cold start or failure."""
        user_id = _require_id(user_id, "user_id")
        ctx = _as_context(context)
        try:
            count = await self.interactions.count(user_id)
            key = cache_key("recommendations", {
                "user_id": user_id,
                "interactions": count,
                "context": ctx.to_dict() if ctx else None,
            })
            cached = self._cached(key)
            if cached is not None:
                return cached
            recommendations = await self.learner.recommend(user_id, ctx)
            result = [r.to_dict() for r in recommendations]
            self._store(key, result, self.personalized_ttl_hours)
            return result
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "get_personalized_recommendations", user_id=user_id)
            return []

    async def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        """Preference profile, or None on cold start or failure."""
        user_id = _require_id(user_id, "user_id")
        try:
            count = await self.interactions.count(user_id)
            key = cache_key("profile", {"user_id": user_id, "interactions": count})
            cached = self._cached(key)
            if cached is not None:
                return cached
            profile = await self.learner.get_profile(user_id)
            if profile is None:
                return None
            result = profile.to_dict()
            self._store(key, result, self.personalized_ttl_hours)
            return result
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "get_user_profile", user_id=user_id)
            return None

    async def get_learning_stats(self, user_id: str) -> dict[str, Any]:
        user_id = _require_id(user_id, "user_id")
        try:
            return await self.learner.learning_stats(user_id)
        except ValidationError:
            raise
        except Exception as e:
            self._absorb(e, "get_learning_stats", user_id=user_id)
            return {"user_id": user_id, "total_interactions": 0, "pattern_count": 0}

    # =========================================================================
    # HEALTH
    # =========================================================================

    def health(self) -> dict[str, Any]:
        stats = self.errors.stats()
        issues = []
        if stats["errors_last_hour"] > HEALTH_MAX_ERRORS_PER_HOUR:
            issues.append(f"High error rate: {stats['errors_last_hour']} errors in the last hour")
        if self._ai_failures >= HEALTH_MAX_AI_ERRORS:
            issues.append(f"AI service failing: {self._ai_failures} consecutive errors")
        cache_stats = self.cache.stats() if isinstance(self.cache, TTLCache) else None
        return {
            "healthy": not issues,
            "issues": issues,
            "error_stats": stats,
            "cache": cache_stats,
            "ai_enabled": self.ai is not None,
        }

    async def close(self) -> None:
        if isinstance(self.ai, HTTPTextService):
            await self.ai.close()


def build_service() -> tuple[RecommendationService, PreferenceDatabase | None]:
    """Wire the service from environment configuration.

    Returns the service and the SQLite database (if one is configured) so the
    caller can close it on shutdown.
    """
    if CATALOG_PATH:
        catalog = InMemoryCatalog.from_file(CATALOG_PATH)
    else:
        logger.warning("CATALOG_PATH not set, starting with an empty catalog")
        catalog = InMemoryCatalog()

    db: PreferenceDatabase | None = None
    if PREFERENCE_DB_PATH:
        db = PreferenceDatabase(PREFERENCE_DB_PATH)
        preferences: PreferenceStore = db
        interactions: InteractionStore = InteractionLog(db)
    else:
        logger.info("PREFERENCE_DB_PATH not set, learned preferences are kept in memory")
        preferences = InMemoryPreferenceStore()
        interactions = InMemoryInteractionStore()

    ai = None
    if AI_SERVICE_URL:
        ai = HTTPTextService(quota=DailyQuota("AI service", AI_DAILY_LIMIT))
        logger.info("AI text service enabled")

    return RecommendationService(catalog, preferences, interactions, ai=ai), db
