"""Multi-dimensional technical compatibility analysis.

Two components are compared along four independent dimensions (voltage,
protocol, physical, environmental). A dimension that either side does not
declare is skipped rather than failed. Groups of more than two components are
analyzed pairwise and the scores averaged.
"""

import itertools
import logging
from typing import Sequence

from .errors import ValidationError
from .models import (
    CompatibilityAnalysis,
    CompatibilityIssue,
    CompatibilitySuggestion,
    ComponentSpec,
)
from .mounting import mountings_conflict

logger = logging.getLogger(__name__)

# Points subtracted from 100 per issue
SEVERITY_PENALTIES = {
    "critical": 40,
    "high": 25,
    "medium": 15,
    "low": 5,
}

NARROW_VOLTAGE_OVERLAP = 0.5  # Volts

# Required modification text per dimension
MOD_LEVEL_SHIFTER = "Add voltage level shifter circuit"
MOD_PROTOCOL_CONVERSION = "Implement protocol conversion in firmware"
MOD_ADAPTER_BOARD = "Use an adapter board or a mixed-technology footprint"
MOD_THERMAL = "Add thermal management or choose wider-rated parts"


def score_issues(issues: Sequence[CompatibilityIssue]) -> float:
    """100 minus the severity penalties, floored at 0."""
    penalty = sum(SEVERITY_PENALTIES[issue.severity] for issue in issues)
    return float(max(0, 100 - penalty))


def _fmt_names(names: Sequence[str]) -> str:
    return ", ".join(names) if names else "none"


# =============================================================================
# DIMENSION CHECKS
# =============================================================================


def check_voltage(a: ComponentSpec, b: ComponentSpec) -> list[CompatibilityIssue]:
    if a.voltage is None or b.voltage is None:
        return []
    overlap = a.voltage.overlap(b.voltage)
    ids = [a.component_id, b.component_id]
    if overlap <= 0:
        return [CompatibilityIssue(
            dimension="voltage",
            severity="critical",
            description=(
                f"Voltage ranges don't overlap: {a.component_id} ({a.voltage}) "
                f"vs {b.component_id} ({b.voltage})"
            ),
            affected_components=ids,
            remedy="Use a voltage level shifter or separate power supplies",
        )]
    if overlap < NARROW_VOLTAGE_OVERLAP:
        return [CompatibilityIssue(
            dimension="voltage",
            severity="medium",
            description=(
                f"Narrow voltage overlap ({overlap:.2f}V) between "
                f"{a.component_id} and {b.component_id}"
            ),
            affected_components=ids,
            remedy="Verify supply tolerances stay inside the shared range",
        )]
    return []


def check_protocols(a: ComponentSpec, b: ComponentSpec) -> list[CompatibilityIssue]:
    if not a.protocols or not b.protocols:
        return []
    common = {p.lower() for p in a.protocols} & {p.lower() for p in b.protocols}
    if common:
        return []
    return [CompatibilityIssue(
        dimension="protocol",
        severity="medium",
        description=(
            f"No common communication protocol: {a.component_id} ({_fmt_names(a.protocols)}) "
            f"vs {b.component_id} ({_fmt_names(b.protocols)})"
        ),
        affected_components=[a.component_id, b.component_id],
        remedy="Use a protocol converter or bridge",
    )]


def check_physical(a: ComponentSpec, b: ComponentSpec) -> list[CompatibilityIssue]:
    if not mountings_conflict(a.mounting, b.mounting):
        return []
    return [CompatibilityIssue(
        dimension="physical",
        severity="low",
        description=(
            f"Mounting mismatch: {a.component_id} is {a.mounting}, "
            f"{b.component_id} is {b.mounting}"
        ),
        affected_components=[a.component_id, b.component_id],
        remedy="Use an adapter board",
    )]


def check_environmental(a: ComponentSpec, b: ComponentSpec) -> list[CompatibilityIssue]:
    if a.temperature is None or b.temperature is None:
        return []
    if a.temperature.overlap(b.temperature) > 0:
        return []
    return [CompatibilityIssue(
        dimension="environmental",
        severity="medium",
        description=(
            f"Operating temperature ranges don't overlap: {a.component_id} ({a.temperature}) "
            f"vs {b.component_id} ({b.temperature})"
        ),
        affected_components=[a.component_id, b.component_id],
        remedy="Choose components rated for a common temperature range",
    )]


CHECKS = (check_voltage, check_protocols, check_physical, check_environmental)


# =============================================================================
# SUGGESTIONS / MODIFICATIONS
# =============================================================================


def _suggestion_for(issue: CompatibilityIssue) -> CompatibilitySuggestion | None:
    if issue.dimension == "voltage":
        if issue.severity not in ("critical", "high"):
            return None
        return CompatibilitySuggestion(
            kind="addition",
            description="Add voltage level shifter",
            components=list(issue.affected_components),
            difficulty="medium",
        )
    if issue.dimension == "protocol":
        return CompatibilitySuggestion(
            kind="addition",
            description="Add protocol converter",
            components=list(issue.affected_components),
            difficulty="medium",
        )
    if issue.dimension == "physical":
        return CompatibilitySuggestion(
            kind="modification",
            description="Use an adapter board for mixed mounting types",
            components=list(issue.affected_components),
            difficulty="easy",
        )
    return CompatibilitySuggestion(
        kind="replacement",
        description="Replace with parts rated for a wider temperature range",
        components=list(issue.affected_components),
        difficulty="medium",
    )


def _modification_for(issue: CompatibilityIssue) -> str | None:
    if issue.dimension == "voltage":
        return MOD_LEVEL_SHIFTER if issue.severity in ("critical", "high") else None
    return {
        "protocol": MOD_PROTOCOL_CONVERSION,
        "physical": MOD_ADAPTER_BOARD,
        "environmental": MOD_THERMAL,
    }[issue.dimension]


# =============================================================================
# ANALYZER
# =============================================================================


class CompatibilityAnalyzer:
    """Scores technical compatibility of two or more component specs.

    Stateless and deterministic; safe to share between requests.
    """

    def analyze_pair(self, a: ComponentSpec, b: ComponentSpec) -> CompatibilityAnalysis:
        issues: list[CompatibilityIssue] = []
        for check in CHECKS:
            issues.extend(check(a, b))
        return self._build(score_issues(issues), [issues])

    def analyze(self, specs: Sequence[ComponentSpec]) -> CompatibilityAnalysis:
        """Analyze every unordered pair and merge the results.

        Raises:
            ValidationError: fewer than two specs, or a spec with min > max.
        """
        if len(specs) < 2:
            raise ValidationError(
                f"Compatibility analysis needs at least 2 components, got {len(specs)}"
            )
        for spec in specs:
            spec.validate()

        pair_scores: list[float] = []
        pair_issues: list[list[CompatibilityIssue]] = []
        for a, b in itertools.combinations(specs, 2):
            issues: list[CompatibilityIssue] = []
            for check in CHECKS:
                issues.extend(check(a, b))
            pair_scores.append(score_issues(issues))
            pair_issues.append(issues)

        overall = round(sum(pair_scores) / len(pair_scores), 2)
        analysis = self._build(overall, pair_issues)
        logger.debug(
            f"Analyzed {len(specs)} components ({len(pair_scores)} pairs): "
            f"score={analysis.overall_score}, issues={len(analysis.issues)}"
        )
        return analysis

    def _build(
        self, score: float, issue_groups: list[list[CompatibilityIssue]]
    ) -> CompatibilityAnalysis:
        """Deduplicate issues, suggestions and modifications, keeping first-seen order."""
        issues: list[CompatibilityIssue] = []
        suggestions: list[CompatibilitySuggestion] = []
        modifications: list[str] = []
        seen_issues: set[tuple[str, str]] = set()
        seen_suggestions: set[tuple[str, str]] = set()

        for group in issue_groups:
            for issue in group:
                key = (issue.dimension, issue.description)
                if key in seen_issues:
                    continue
                seen_issues.add(key)
                issues.append(issue)

                suggestion = _suggestion_for(issue)
                if suggestion is not None:
                    s_key = (suggestion.kind, suggestion.description)
                    if s_key not in seen_suggestions:
                        seen_suggestions.add(s_key)
                        suggestions.append(suggestion)

                mod = _modification_for(issue)
                if mod is not None and mod not in modifications:
                    modifications.append(mod)

        return CompatibilityAnalysis(
            overall_score=score,
            issues=issues,
            suggestions=suggestions,
            required_modifications=modifications,
        )
