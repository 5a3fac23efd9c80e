"""Substitute component search.

Candidates come from the same catalog category as the target. Each one is
scored against the target with the compatibility analyzer, then nudged by
availability and price proximity. Ranking is fully deterministic: no
randomness, no clock, ties broken by component id.
"""

import logging
from dataclasses import dataclass

from .compatibility import CompatibilityAnalyzer
from .config import (
    AVAILABILITY_BONUS,
    MAX_ALTERNATIVES,
    MIN_COMPATIBILITY_SCORE,
    PRICE_PROXIMITY_BONUS,
    PRICE_PROXIMITY_PCT,
    SPEC_SCORE_WEIGHT,
)
from .errors import InsufficientDataError
from .models import (
    CompatibilityAnalysis,
    ComponentAlternative,
    ComponentRecord,
    PriceComparison,
    ProjectContext,
)
from .ports import CatalogRepository

logger = logging.getLogger(__name__)


@dataclass
class FinderConfig:
    max_alternatives: int = MAX_ALTERNATIVES
    min_compatibility_score: float = MIN_COMPATIBILITY_SCORE
    spec_score_weight: float = SPEC_SCORE_WEIGHT
    availability_bonus: float = AVAILABILITY_BONUS
    price_proximity_bonus: float = PRICE_PROXIMITY_BONUS
    price_proximity_pct: float = PRICE_PROXIMITY_PCT


def compare_prices(original: ComponentRecord, alternative: ComponentRecord) -> PriceComparison:
    """Savings are positive when the alternative is cheaper."""
    savings = original.price - alternative.price
    percent_diff = abs(savings / original.price) * 100 if original.price > 0 else 0.0
    return PriceComparison(
        original=original.price,
        alternative=alternative.price,
        savings=round(savings, 4),
        percent_diff=round(percent_diff, 2),
    )


def explain_alternative(
    original: ComponentRecord,
    candidate: ComponentRecord,
    score: float,
    analysis: CompatibilityAnalysis,
) -> str:
    """Human-readable list of the factors behind a suggestion."""
    reasons = []
    if original.category and original.category == candidate.category:
        reasons.append(f"same category ({original.category})")
    if original.manufacturer and original.manufacturer == candidate.manufacturer:
        reasons.append(f"same manufacturer ({original.manufacturer})")
    if candidate.in_stock:
        reasons.append(f"in stock ({candidate.quantity} available)")

    delta = original.price - candidate.price
    if delta > 0:
        reasons.append(f"costs less (${delta:.2f} savings)")
    elif delta < 0:
        reasons.append(f"costs more (${-delta:.2f} extra)")

    if analysis.issues:
        reasons.append(f"{len(analysis.issues)} technical difference(s) to consider")

    if reasons:
        text = f"This component is suggested because it has {', '.join(reasons)}. "
    else:
        text = "This component is a possible substitute. "
    text += f"Compatibility score: {score:g}%."
    if analysis.issues:
        text += " Note: Review technical differences before substituting."
    return text


class AlternativeFinder:
    """Ranks substitutes for a catalog component."""

    def __init__(
        self,
        catalog: CatalogRepository,
        analyzer: CompatibilityAnalyzer | None = None,
        config: FinderConfig | None = None,
    ):
        self._catalog = catalog
        self._analyzer = analyzer or CompatibilityAnalyzer()
        self.config = config or FinderConfig()

    def combined_score(
        self, spec_score: float, original: ComponentRecord, candidate: ComponentRecord
    ) -> float:
        """Weighted analyzer score plus availability and price-proximity bonuses, capped at 100."""
        cfg = self.config
        score = cfg.spec_score_weight * spec_score
        if candidate.in_stock:
            score += cfg.availability_bonus
        # Same number the caller sees in price_comparison; a free original reports 0%
        if compare_prices(original, candidate).percent_diff <= cfg.price_proximity_pct:
            score += cfg.price_proximity_bonus
        return round(min(100.0, max(0.0, score)), 2)

    async def find_alternatives(
        self, target_id: str, context: ProjectContext | None = None
    ) -> list[ComponentAlternative]:
        """Return up to max_alternatives substitutes, best first.

        Raises:
            InsufficientDataError: target not in the catalog.
            ValidationError: target specification is degenerate.
        """
        target = await self._catalog.get_by_id(target_id)
        if target is None:
            raise InsufficientDataError(
                f"Component not found: {target_id}", {"component_id": target_id}
            )
        target.spec.validate()

        if not target.category:
            logger.info(f"Component {target_id} has no category, no candidates to compare")
            return []

        candidates = await self._catalog.get_by_category(target.category)
        budget = context.budget if context else None

        alternatives: list[ComponentAlternative] = []
        for candidate in candidates:
            if candidate.id == target.id:
                continue
            if budget is not None and candidate.price > budget:
                continue

            analysis = self._analyzer.analyze_pair(target.spec, candidate.spec)
            score = self.combined_score(analysis.overall_score, target, candidate)
            if score < self.config.min_compatibility_score:
                continue

            alternatives.append(ComponentAlternative(
                component_id=candidate.id,
                name=candidate.name,
                compatibility_score=score,
                price_comparison=compare_prices(target, candidate),
                usability_impact="minimal" if score > 80 else "moderate",
                explanation=explain_alternative(target, candidate, score, analysis),
                required_modifications=list(analysis.required_modifications),
            ))

        alternatives.sort(key=ComponentAlternative.sort_key)
        logger.debug(
            f"Alternatives for {target_id}: {len(alternatives)} of {len(candidates)} catalog entries passed"
        )
        return alternatives[: self.config.max_alternatives]
