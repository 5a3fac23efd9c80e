"""Data model for components, compatibility results and learned preferences.

Everything that leaves the core is converted with ``to_dict()`` so results are
JSON-serializable at the MCP boundary and can be cached as plain data.
Everything that enters from outside goes through ``from_dict()``, which
validates and raises ValidationError instead of guessing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from .errors import ValidationError
from .mounting import detect_mounting_type, normalize_mounting
from .parsers import (
    parse_current_range,
    parse_humidity_range,
    parse_name_list,
    parse_temperature_range,
    parse_voltage_range,
)

Dimension = Literal["voltage", "protocol", "physical", "environmental"]
Severity = Literal["low", "medium", "high", "critical"]
SuggestionKind = Literal["replacement", "addition", "modification"]
Difficulty = Literal["easy", "medium", "hard"]
UsabilityImpact = Literal["minimal", "moderate", "significant"]
PatternType = Literal["brand", "category", "success"]
InteractionType = Literal[
    "component_selected",
    "component_substituted",
    "project_completed",
    "project_failed",
    "component_purchased",
    "component_rated",
]
SkillLevel = Literal["beginner", "intermediate", "advanced"]
ProjectOutcome = Literal["success", "failure", "partial"]

SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
PATTERN_TYPES: tuple[str, ...] = ("brand", "category", "success")
INTERACTION_TYPES = frozenset({
    "component_selected",
    "component_substituted",
    "project_completed",
    "project_failed",
    "component_purchased",
    "component_rated",
})
PROJECT_OUTCOMES = frozenset({"success", "failure", "partial"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}")
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# =============================================================================
# SPECIFICATIONS
# =============================================================================


@dataclass(frozen=True)
class Range:
    """Closed numeric range, e.g. an operating voltage of 3.3-5.0 V."""

    min: float
    max: float
    unit: str = ""

    def validate(self, name: str = "range") -> None:
        if self.min > self.max:
            raise ValidationError(
                f"Invalid {name}: min {self.min}{self.unit} exceeds max {self.max}{self.unit}"
            )

    def overlap(self, other: "Range") -> float:
        """Width of the intersection, 0 when the ranges are disjoint or only touch."""
        return max(0.0, min(self.max, other.max) - max(self.min, other.min))

    def to_dict(self) -> dict[str, Any]:
        return {"min": self.min, "max": self.max, "unit": self.unit}

    def __str__(self) -> str:
        return f"{self.min:g}-{self.max:g}{self.unit}"

    @classmethod
    def from_value(cls, value: Any, unit: str, name: str) -> "Range | None":
        """Build from {'min':..,'max':..}, [min, max], a single number or text like '3.3-5V'."""
        if value is None or value == "":
            return None
        if isinstance(value, Range):
            return value
        parsed: tuple[float, float] | None
        if isinstance(value, dict):
            lo = value.get("min", value.get("max"))
            hi = value.get("max", value.get("min"))
            if lo is None or hi is None:
                raise ValidationError(f"Invalid {name}: needs min or max")
            parsed = (_as_float(lo, name), _as_float(hi, name))
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            parsed = (_as_float(value[0], name), _as_float(value[1], name))
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            parsed = (float(value), float(value))
        elif isinstance(value, str):
            parser = _RANGE_PARSERS.get(name, parse_temperature_range)
            parsed = parser(value)
            if parsed is None:
                raise ValidationError(f"Unparseable {name}: {value!r}")
        else:
            raise ValidationError(f"Invalid {name}: {value!r}")
        rng = cls(parsed[0], parsed[1], unit)
        rng.validate(name)
        return rng


_RANGE_PARSERS = {
    "voltage": parse_voltage_range,
    "current": parse_current_range,
    "temperature": parse_temperature_range,
    "humidity": parse_humidity_range,
}


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}")


# Where each field lives in the nested {"electrical": {...}, ...} layout.
# Flat records with the same keys at the top level are accepted too.
_SPEC_SECTIONS = {
    "voltage": "electrical",
    "current": "electrical",
    "package": "mechanical",
    "mounting": "mechanical",
    "dimensions": "mechanical",
    "temperature": "environmental",
    "humidity": "environmental",
    "protocols": "communication",
    "interfaces": "communication",
    "accuracy": "performance",
    "response_time": "performance",
}


def _spec_field(data: dict[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    section = data.get(_SPEC_SECTIONS[key])
    if isinstance(section, dict):
        return section.get(key)
    return None


@dataclass
class ComponentSpec:
    """Technical specification bundle of one component.

    Any dimension may be missing; a missing dimension means the matching
    compatibility check is skipped, not failed.
    """

    component_id: str
    voltage: Range | None = None
    current: Range | None = None
    package: str | None = None
    mounting: str | None = None
    dimensions: dict[str, float] | None = None
    temperature: Range | None = None
    humidity: Range | None = None
    protocols: tuple[str, ...] = ()
    interfaces: tuple[str, ...] = ()
    accuracy: float | None = None
    response_time: float | None = None

    def validate(self) -> None:
        """Raise ValidationError for degenerate ranges."""
        for name in ("voltage", "current", "temperature", "humidity"):
            rng = getattr(self, name)
            if rng is not None:
                rng.validate(f"{name} of {self.component_id}")

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, component_id: str, category: str | None = None
    ) -> "ComponentSpec":
        data = data or {}
        package = _spec_field(data, "package")
        declared = _spec_field(data, "mounting")
        mounting = normalize_mounting(declared)
        if declared and mounting is None:
            raise ValidationError(f"Unknown mounting type for {component_id}: {declared!r}")
        if mounting is None:
            mounting = detect_mounting_type(package, category)

        dimensions = _spec_field(data, "dimensions")
        if dimensions is not None and not isinstance(dimensions, dict):
            raise ValidationError(f"Invalid dimensions for {component_id}: {dimensions!r}")

        accuracy = _spec_field(data, "accuracy")
        response_time = _spec_field(data, "response_time")

        return cls(
            component_id=component_id,
            voltage=Range.from_value(_spec_field(data, "voltage"), "V", "voltage"),
            current=Range.from_value(_spec_field(data, "current"), "A", "current"),
            package=package or None,
            mounting=mounting,
            dimensions=dimensions,
            temperature=Range.from_value(_spec_field(data, "temperature"), "°C", "temperature"),
            humidity=Range.from_value(_spec_field(data, "humidity"), "%", "humidity"),
            protocols=tuple(parse_name_list(_spec_field(data, "protocols"))),
            interfaces=tuple(parse_name_list(_spec_field(data, "interfaces"))),
            accuracy=_as_float(accuracy, "accuracy") if accuracy is not None else None,
            response_time=_as_float(response_time, "response_time") if response_time is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "electrical": {
                "voltage": self.voltage.to_dict() if self.voltage else None,
                "current": self.current.to_dict() if self.current else None,
            },
            "mechanical": {
                "package": self.package,
                "mounting": self.mounting,
                "dimensions": self.dimensions,
            },
            "environmental": {
                "temperature": self.temperature.to_dict() if self.temperature else None,
                "humidity": self.humidity.to_dict() if self.humidity else None,
            },
            "communication": {
                "protocols": list(self.protocols),
                "interfaces": list(self.interfaces),
            },
            "performance": {
                "accuracy": self.accuracy,
                "response_time": self.response_time,
            },
        }


@dataclass
class ComponentRecord:
    """A catalog entry. Owned by the catalog repository, read-only to the core."""

    id: str
    name: str
    category: str | None
    manufacturer: str | None
    price: float
    quantity: int
    spec: ComponentSpec
    description: str = ""

    @property
    def in_stock(self) -> bool:
        return self.quantity > 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComponentRecord":
        component_id = data.get("id")
        if component_id is None or str(component_id).strip() == "":
            raise ValidationError("Component record is missing an id")
        component_id = str(component_id).strip()
        category = data.get("category") or None
        price = data.get("price", data.get("purchase_price"))
        quantity = data.get("quantity", data.get("stock", 0))
        return cls(
            id=component_id,
            name=str(data.get("name") or component_id),
            category=category,
            manufacturer=data.get("manufacturer") or None,
            price=_as_float(price, "price") if price is not None else 0.0,
            quantity=int(_as_float(quantity or 0, "quantity")),
            spec=ComponentSpec.from_dict(
                data.get("specifications", data.get("spec")), component_id, category
            ),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "manufacturer": self.manufacturer,
            "price": self.price,
            "quantity": self.quantity,
            "description": self.description,
            "specifications": self.spec.to_dict(),
        }


# =============================================================================
# COMPATIBILITY
# =============================================================================


@dataclass
class CompatibilityIssue:
    """One detected incompatibility between two components."""

    dimension: Dimension
    severity: Severity
    description: str
    affected_components: list[str]
    remedy: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension,
            "severity": self.severity,
            "description": self.description,
            "affected_components": list(self.affected_components),
            "remedy": self.remedy,
        }


@dataclass
class CompatibilitySuggestion:
    """Something the user can add or change to resolve an issue."""

    kind: SuggestionKind
    description: str
    components: list[str]
    difficulty: Difficulty

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "components": list(self.components),
            "difficulty": self.difficulty,
        }


@dataclass
class CompatibilityAnalysis:
    overall_score: float
    issues: list[CompatibilityIssue] = field(default_factory=list)
    suggestions: list[CompatibilitySuggestion] = field(default_factory=list)
    required_modifications: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "issues": [i.to_dict() for i in self.issues],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "required_modifications": list(self.required_modifications),
        }


# =============================================================================
# ALTERNATIVES
# =============================================================================


@dataclass
class PriceComparison:
    original: float
    alternative: float
    savings: float
    percent_diff: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original,
            "alternative": self.alternative,
            "savings": self.savings,
            "percent_diff": self.percent_diff,
        }


@dataclass
class ComponentAlternative:
    component_id: str
    name: str
    compatibility_score: float
    price_comparison: PriceComparison
    usability_impact: UsabilityImpact
    explanation: str
    required_modifications: list[str] = field(default_factory=list)

    def sort_key(self) -> tuple[float, str]:
        """Score descending, then id ascending."""
        return (-self.compatibility_score, self.component_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component_id": self.component_id,
            "name": self.name,
            "compatibility_score": self.compatibility_score,
            "price_comparison": self.price_comparison.to_dict(),
            "usability_impact": self.usability_impact,
            "explanation": self.explanation,
            "required_modifications": list(self.required_modifications),
        }


@dataclass
class ProjectContext:
    """Optional project information that narrows a lookup."""

    project_id: str | None = None
    project_type: str | None = None
    budget: float | None = None
    existing_components: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProjectContext | None":
        if not data:
            return None
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid context: {data!r}")
        budget = data.get("budget")
        if budget is not None:
            budget = _as_float(budget, "budget")
            if budget < 0:
                raise ValidationError(f"Invalid budget: {budget}")
        existing = data.get("existing_components") or data.get("current_components") or []
        if not isinstance(existing, (list, tuple)):
            raise ValidationError(f"Invalid existing_components: {existing!r}")
        return cls(
            project_id=data.get("project_id"),
            project_type=data.get("project_type"),
            budget=budget,
            existing_components=tuple(sorted(str(c) for c in existing)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "project_type": self.project_type,
            "budget": self.budget,
            "existing_components": list(self.existing_components),
        }


# =============================================================================
# PREFERENCES
# =============================================================================


@dataclass
class PreferencePattern:
    """Learned strength of one user's affinity for a brand, category or component."""

    user_id: str
    pattern_type: PatternType
    subject: str
    value: float
    confidence: float
    sample_size: int
    last_updated: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.pattern_type, self.subject)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "pattern_type": self.pattern_type,
            "subject": self.subject,
            "value": self.value,
            "confidence": self.confidence,
            "sample_size": self.sample_size,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PreferencePattern":
        return cls(
            user_id=data["user_id"],
            pattern_type=data["pattern_type"],
            subject=data["subject"],
            value=float(data["value"]),
            confidence=float(data["confidence"]),
            sample_size=int(data["sample_size"]),
            last_updated=_parse_timestamp(data["last_updated"]) or utcnow(),
        )


@dataclass(frozen=True)
class UserInteraction:
    """Immutable interaction event. Append-only."""

    user_id: str
    type: InteractionType
    timestamp: datetime
    component_id: str | None = None
    project_id: str | None = None
    success: bool | None = None
    rating: float | None = None
    original_choice: str | None = None
    alternative_choice: str | None = None

    @classmethod
    def from_dict(cls, data: Any, now: datetime | None = None) -> "UserInteraction":
        """Validate a raw interaction payload.

        Accepts metadata either nested under "metadata" or at the top level.
        """
        if not isinstance(data, dict):
            raise ValidationError("Interaction must be an object")

        user_id = data.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("Interaction is missing user_id")

        itype = data.get("type", data.get("interaction_type"))
        if itype not in INTERACTION_TYPES:
            raise ValidationError(
                f"Unknown interaction type: {itype!r}. Expected one of {sorted(INTERACTION_TYPES)}"
            )

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Interaction metadata must be an object")

        def meta(key: str) -> Any:
            return metadata.get(key, data.get(key))

        success = meta("success")
        if success is not None and not isinstance(success, bool):
            raise ValidationError(f"success must be a boolean, got {success!r}")

        rating = meta("rating")
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, (int, float)):
                raise ValidationError(f"rating must be a number, got {rating!r}")
            if not 1 <= rating <= 5:
                raise ValidationError(f"rating must be between 1 and 5, got {rating}")
            rating = float(rating)
        elif itype == "component_rated":
            raise ValidationError("component_rated interactions need a rating")

        component_id = data.get("component_id")
        if itype in ("component_selected", "component_substituted", "component_purchased", "component_rated"):
            if not component_id:
                raise ValidationError(f"{itype} interactions need a component_id")

        timestamp = _parse_timestamp(meta("timestamp")) or now or utcnow()

        return cls(
            user_id=user_id.strip(),
            type=itype,
            timestamp=timestamp,
            component_id=str(component_id) if component_id else None,
            project_id=data.get("project_id"),
            success=success,
            rating=rating,
            original_choice=meta("original_choice"),
            alternative_choice=meta("alternative_choice"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "type": self.type,
            "component_id": self.component_id,
            "project_id": self.project_id,
            "metadata": {
                "success": self.success,
                "rating": self.rating,
                "timestamp": self.timestamp.isoformat(),
                "original_choice": self.original_choice,
                "alternative_choice": self.alternative_choice,
            },
        }


@dataclass(frozen=True)
class ComponentUsage:
    """How one component fared in a finished project."""

    component_id: str
    quantity_used: int = 1
    performance_rating: float | None = None
    substituted_with: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "ComponentUsage":
        if not isinstance(data, dict):
            raise ValidationError("Component usage must be an object")
        component_id = data.get("component_id")
        if not isinstance(component_id, str) or not component_id.strip():
            raise ValidationError("Component usage is missing component_id")

        quantity = data.get("quantity_used", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(f"quantity_used must be a non-negative integer, got {quantity!r}")

        rating = data.get("performance_rating")
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
                raise ValidationError(f"performance_rating must be between 1 and 5, got {rating!r}")
            rating = float(rating)

        # Older payloads carry a separate was_substituted flag
        substituted = data.get("substituted_with")
        if data.get("was_substituted") is False:
            substituted = None
        return cls(
            component_id=component_id.strip(),
            quantity_used=quantity,
            performance_rating=rating,
            substituted_with=str(substituted) if substituted else None,
        )


@dataclass(frozen=True)
class ProjectModification:
    """A deviation from the project plan. Only component substitutions are learned from."""

    type: str
    original_plan: str | None = None
    actual_implementation: str | None = None
    impact: str = "neutral"
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "ProjectModification":
        if not isinstance(data, dict):
            raise ValidationError("Project modification must be an object")
        mod_type = data.get("type")
        if not isinstance(mod_type, str) or not mod_type:
            raise ValidationError("Project modification is missing type")
        impact = data.get("impact", "neutral")
        if impact not in ("positive", "negative", "neutral"):
            raise ValidationError(f"Unknown modification impact: {impact!r}")
        if mod_type == "component_substitution" and not data.get("actual_implementation"):
            raise ValidationError("component_substitution needs actual_implementation")
        return cls(
            type=mod_type,
            original_plan=data.get("original_plan"),
            actual_implementation=data.get("actual_implementation"),
            impact=impact,
            reason=data.get("reason") or "",
        )


@dataclass
class UserPreferenceProfile:
    """Aggregate view of a user's patterns. Recomputed, never stored."""

    user_id: str
    preferred_brands: list[str]
    preferred_categories: list[str]
    budget_range: dict[str, float]
    skill_level: SkillLevel
    weights: dict[str, float]
    interaction_count: int
    pattern_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "preferred_brands": list(self.preferred_brands),
            "preferred_categories": list(self.preferred_categories),
            "budget_range": dict(self.budget_range),
            "skill_level": self.skill_level,
            "weights": dict(self.weights),
            "interaction_count": self.interaction_count,
            "pattern_count": self.pattern_count,
        }


@dataclass
class PersonalizedRecommendation:
    item_id: str
    title: str
    description: str
    score: float
    reasoning: str
    difficulty: SkillLevel
    estimated_cost: float | None = None

    @property
    def relevance_score(self) -> int:
        return round(self.score * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "component",
            "item_id": self.item_id,
            "title": self.title,
            "description": self.description,
            "score": self.score,
            "relevance_score": self.relevance_score,
            "reasoning": self.reasoning,
            "estimated_cost": self.estimated_cost,
            "difficulty": self.difficulty,
        }
