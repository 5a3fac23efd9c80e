"""Tests for the recommendation orchestrator: caching, fallbacks and error policy."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from partwise_mcp.errors import ErrorLog, ExternalServiceError, ValidationError
from partwise_mcp.models import ComponentRecord, ComponentSpec, Range
from partwise_mcp.service import RecommendationService, cache_key
from partwise_mcp.stores import InMemoryCatalog, InMemoryInteractionStore, InMemoryPreferenceStore


class FlakyCatalog(InMemoryCatalog):
    """Catalog whose lookups for selected ids blow up like an unavailable backend."""

    def __init__(self, records, broken=()):
        super().__init__(records)
        self.broken = set(broken)

    async def get_by_id(self, component_id):
        if component_id in self.broken:
            raise ConnectionError(f"catalog unavailable for {component_id}")
        return await super().get_by_id(component_id)


class SpyCache:
    """CacheStore that remembers the TTL of every write."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ttl_hours):
        self.data[key] = value
        self.ttls[key] = ttl_hours


@pytest.fixture
def records(make_component):
    return [
        make_component("C1", voltage="3.3-5V", protocols=["I2C", "SPI"]),
        make_component("C2", voltage="6-9V", protocols=["I2C"]),
        make_component("C3", voltage=None, protocols=["I2C"]),
        make_component("ALT", price=9.5, quantity=4, voltage="3.3-5V", protocols=["I2C", "SPI"]),
        make_component("MCU1", category="Microcontroller", manufacturer="Espressif", price=5.0),
        make_component("MCU2", category="Microcontroller", manufacturer="Espressif", price=6.0),
    ]


def make_service(records, broken=(), **kwargs):
    return RecommendationService(
        FlakyCatalog(records, broken),
        InMemoryPreferenceStore(),
        InMemoryInteractionStore(),
        **kwargs,
    )


@pytest.fixture
def service(records):
    return make_service(records)


def selection(user_id="u1", component_id="MCU1", **metadata):
    return {"user_id": user_id, "type": "component_selected", "component_id": component_id, "metadata": metadata}


class TestCacheKey:
    def test_argument_order_irrelevant(self):
        assert cache_key("op", {"a": 1, "b": 2}) == cache_key("op", {"b": 2, "a": 1})

    def test_operation_prefix(self):
        assert cache_key("alternatives", {"x": 1}).startswith("alternatives:")


class TestAlternatives:
    @pytest.mark.asyncio
    async def test_returns_plain_dicts(self, service):
        result = await service.get_component_alternatives("C1")
        assert result
        assert {"component_id", "compatibility_score", "price_comparison", "explanation"} <= set(result[0])

    @pytest.mark.asyncio
    async def test_deterministic(self, service):
        first = await service.get_component_alternatives("C1")
        service.cache.clear()
        second = await service.get_component_alternatives("C1")
        assert first == second

    @pytest.mark.asyncio
    async def test_cache_hit_skips_finder(self, service):
        service.finder.find_alternatives = AsyncMock(wraps=service.finder.find_alternatives)
        first = await service.get_component_alternatives("C1", {"budget": 50})
        second = await service.get_component_alternatives("C1", {"budget": 50})
        assert first == second
        assert service.finder.find_alternatives.await_count == 1

    @pytest.mark.asyncio
    async def test_cached_result_is_a_copy(self, service):
        first = await service.get_component_alternatives("C1")
        expected = [dict(a) for a in first]
        first[0]["compatibility_score"] = -1
        first.clear()
        assert await service.get_component_alternatives("C1") == expected

    @pytest.mark.asyncio
    async def test_catalog_results_cached_for_24h(self, records):
        cache = SpyCache()
        service = make_service(records, cache=cache)
        await service.get_component_alternatives("C1")
        assert list(cache.ttls.values()) == [24]

    @pytest.mark.asyncio
    async def test_unknown_component_falls_back(self, service):
        assert await service.get_component_alternatives("NOPE") == []
        assert service.errors.recent()[-1].kind == "insufficient_data"

    @pytest.mark.asyncio
    async def test_repository_failure_falls_back(self, records):
        service = make_service(records, broken={"C1"})
        assert await service.get_component_alternatives("C1") == []
        record = service.errors.recent()[-1]
        assert record.kind == "external_service"
        assert record.retryable
        assert record.context["operation"] == "get_component_alternatives"

    @pytest.mark.asyncio
    async def test_failures_not_cached(self, records):
        service = make_service(records, broken={"C1"})
        await service.get_component_alternatives("C1")
        assert len(service.cache) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", ["", "   ", None, 42])
    async def test_invalid_id(self, service, bad):
        with pytest.raises(ValidationError):
            await service.get_component_alternatives(bad)

    @pytest.mark.asyncio
    async def test_invalid_context(self, service):
        with pytest.raises(ValidationError):
            await service.get_component_alternatives("C1", {"budget": -5})


class TestBatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort(self, records):
        service = make_service(records, broken={"C2"})
        results = await service.get_component_alternatives_batch(["C1", "C2", "C3"])
        assert [r["component_id"] for r in results] == ["C1", "C2", "C3"]
        failed = [r for r in results if "error" in r]
        assert len(failed) == 1
        assert failed[0]["component_id"] == "C2"
        assert failed[0]["alternatives"] == []
        assert failed[0]["error"]["kind"] == "external_service"
        assert failed[0]["error"]["retryable"] is True
        assert len(service.errors) == 1

    @pytest.mark.asyncio
    async def test_unknown_component_in_batch(self, service):
        results = await service.get_component_alternatives_batch(["C1", "NOPE"])
        assert results[1]["error"]["kind"] == "insufficient_data"
        assert results[1]["error"]["retryable"] is False

    @pytest.mark.asyncio
    async def test_matches_single_lookup(self, service):
        single = await service.get_component_alternatives("C1")
        batch = await service.get_component_alternatives_batch(["C1"])
        assert batch == [{"component_id": "C1", "alternatives": single}]

    @pytest.mark.asyncio
    async def test_too_many(self, service):
        with pytest.raises(ValidationError, match="max 50"):
            await service.get_component_alternatives_batch([f"C{i}" for i in range(51)])

    @pytest.mark.asyncio
    async def test_not_a_list(self, service):
        with pytest.raises(ValidationError):
            await service.get_component_alternatives_batch("C1")


class TestCompatibility:
    @pytest.mark.asyncio
    async def test_disjoint_voltage(self, service):
        result = await service.analyze_compatibility(["C1", "C2"])
        assert [i["severity"] for i in result["issues"]] == ["critical"]
        assert result["overall_score"] <= 60

    @pytest.mark.asyncio
    async def test_three_components_one_without_voltage(self, service):
        result = await service.analyze_compatibility(["C1", "C2", "C3"])
        voltage = [i for i in result["issues"] if i["dimension"] == "voltage"]
        assert len(voltage) == 1
        assert voltage[0]["affected_components"] == ["C1", "C2"]

    @pytest.mark.asyncio
    async def test_order_independent_and_cached(self, service):
        service.analyzer.analyze = MagicMock(wraps=service.analyzer.analyze)
        first = await service.analyze_compatibility(["C2", "C1"])
        second = await service.analyze_compatibility(["C1", "C2"])
        assert first == second
        assert service.analyzer.analyze.call_count == 1

    @pytest.mark.asyncio
    async def test_cached_analysis_is_a_copy(self, service):
        first = await service.analyze_compatibility(["C1", "C2"])
        first["issues"].clear()
        first["overall_score"] = 100.0
        second = await service.analyze_compatibility(["C1", "C2"])
        assert second["overall_score"] == 60.0
        assert len(second["issues"]) == 1

    @pytest.mark.asyncio
    async def test_needs_two_distinct(self, service):
        with pytest.raises(ValidationError):
            await service.analyze_compatibility(["C1"])
        with pytest.raises(ValidationError):
            await service.analyze_compatibility(["C1", "C1"])

    @pytest.mark.asyncio
    async def test_unknown_component_zero_analysis(self, service):
        result = await service.analyze_compatibility(["C1", "NOPE"])
        assert result == {"overall_score": 0.0, "issues": [], "suggestions": [], "required_modifications": []}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ids", [["BAD", "OTHER"], ["AAA", "BAD"]])
    async def test_degenerate_spec_is_rejected(self, records, ids):
        service = make_service(records)
        bad = ComponentRecord("BAD", "Bad", "Sensors", None, 1.0, 1, ComponentSpec("BAD", voltage=Range(5, 3, "V")))
        service.catalog.get_by_id = AsyncMock(side_effect=lambda cid: bad if cid == "BAD" else None)
        with pytest.raises(ValidationError):
            await service.analyze_compatibility(ids)
        with pytest.raises(ValidationError):
            await service.explain_compatibility(ids)
        assert len(service.errors) == 0


class TestExplainCompatibility:
    @pytest.mark.asyncio
    async def test_rules_without_ai(self, service):
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "rules"
        assert "compatibility score 60/100" in result["explanation"]
        assert "[critical]" in result["explanation"]
        assert "Add voltage level shifter circuit" in result["explanation"]

    @pytest.mark.asyncio
    async def test_rules_for_clean_pair(self, service):
        result = await service.explain_compatibility(["C1", "ALT"])
        assert result["explanation"] == "ALT, C1 look compatible (score 100/100). No issues found."

    @pytest.mark.asyncio
    async def test_ai_text(self, records):
        ai = AsyncMock()
        ai.enrich.return_value = "They need a level shifter."
        service = make_service(records, ai=ai)
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "ai"
        assert result["explanation"] == "They need a level shifter."
        assert "critical voltage issue" in ai.enrich.call_args.args[0]

        await service.explain_compatibility(["C2", "C1"])
        assert ai.enrich.await_count == 1

    @pytest.mark.asyncio
    async def test_analysis_failure_skips_ai(self, records):
        ai = AsyncMock()
        ai.enrich.return_value = "They need a level shifter."
        service = make_service(records, broken={"C2"}, ai=ai)
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "rules"
        assert result["analysis"]["overall_score"] == 0.0
        ai.enrich.assert_not_awaited()
        assert len(service.cache) == 0

        service.catalog.broken.clear()
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "ai"
        assert result["analysis"]["overall_score"] == 60.0

    @pytest.mark.asyncio
    async def test_ai_timeout_falls_back(self, records):
        async def slow(prompt):
            await asyncio.sleep(1)
            return "too late"

        ai = AsyncMock()
        ai.enrich.side_effect = slow
        service = make_service(records, ai=ai, ai_timeout=0.01)
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "rules"
        record = service.errors.recent()[-1]
        assert record.kind == "external_service"
        assert "timed out" in record.message

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back(self, records):
        ai = AsyncMock()
        ai.enrich.side_effect = ExternalServiceError("quota exceeded")
        service = make_service(records, ai=ai)
        result = await service.explain_compatibility(["C1", "C2"])
        assert result["source"] == "rules"
        assert result["explanation"]


class TestPreferences:
    @pytest.mark.asyncio
    async def test_record_interaction(self, service):
        assert await service.record_interaction(selection(success=True)) == {
            "recorded": True, "patterns_updated": 3,
        }

    @pytest.mark.asyncio
    async def test_invalid_interaction_raises(self, service):
        with pytest.raises(ValidationError):
            await service.record_interaction({"user_id": "u1", "type": "component_rated", "component_id": "C1"})

    @pytest.mark.asyncio
    async def test_store_failure_is_absorbed(self, service):
        service.interactions.append = AsyncMock(side_effect=OSError("disk full"))
        result = await service.record_interaction(selection())
        assert result == {"recorded": False, "patterns_updated": 0}
        assert service.errors.recent()[-1].kind == "external_service"

    @pytest.mark.asyncio
    async def test_catalog_failure_records_nothing(self, records):
        service = make_service(records, broken={"MCU1"})
        result = await service.record_interaction(selection())
        assert result == {"recorded": False, "patterns_updated": 0}
        assert await service.interactions.count("u1") == 0

    @pytest.mark.asyncio
    async def test_pattern_failure_keeps_interaction(self, service):
        service.learner._preferences.set = AsyncMock(side_effect=OSError("disk full"))
        result = await service.record_interaction(selection())
        assert result == {"recorded": True, "patterns_updated": 0}
        assert await service.interactions.count("u1") == 1
        assert service.errors.recent()[-1].context["operation"] == "record_interaction"

    @pytest.mark.asyncio
    async def test_cold_start(self, service):
        for _ in range(4):
            await service.record_interaction(selection(success=True))
        assert await service.get_personalized_recommendations("u1") == []
        assert await service.get_user_profile("u1") is None

    @pytest.mark.asyncio
    async def test_warm_user(self, service):
        for _ in range(5):
            await service.record_interaction(selection(success=True))
        recs = await service.get_personalized_recommendations("u1")
        assert [r["item_id"] for r in recs] == ["MCU1", "MCU2"]
        profile = await service.get_user_profile("u1")
        assert profile["preferred_brands"] == ["Espressif"]

    @pytest.mark.asyncio
    async def test_new_interaction_retires_cached_recommendations(self, service):
        for _ in range(5):
            await service.record_interaction(selection(success=True))
        service.learner.recommend = AsyncMock(wraps=service.learner.recommend)
        await service.get_personalized_recommendations("u1")
        await service.get_personalized_recommendations("u1")
        assert service.learner.recommend.await_count == 1
        await service.record_interaction(selection(component_id="MCU2", success=True))
        await service.get_personalized_recommendations("u1")
        assert service.learner.recommend.await_count == 2

    @pytest.mark.asyncio
    async def test_personalized_ttl(self, records):
        cache = SpyCache()
        service = make_service(records, cache=cache)
        for _ in range(5):
            await service.record_interaction(selection(success=True))
        await service.get_personalized_recommendations("u1")
        await service.get_user_profile("u1")
        assert sorted(cache.ttls.values()) == [6, 6]

    @pytest.mark.asyncio
    async def test_learning_stats(self, service):
        await service.record_interaction(selection())
        stats = await service.get_learning_stats("u1")
        assert stats["total_interactions"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_on_recommendations(self, service):
        service.interactions.count = AsyncMock(side_effect=RuntimeError("db locked"))
        assert await service.get_personalized_recommendations("u1") == []
        assert await service.get_user_profile("u1") is None
        assert len(service.errors) == 2


class TestProjectCompletion:
    @pytest.mark.asyncio
    async def test_counts(self, service):
        result = await service.learn_from_project_completion("u1", "p1", "success", [
            {"component_id": "MCU1"},
            {"component_id": "C1", "substituted_with": "ALT"},
        ])
        # MCU1: brand, category, success. C1: the same three.
        # ALT replacing C1: brand, category, success for ALT and for C1.
        assert result == {"interactions_recorded": 4, "interactions_failed": 0, "patterns_updated": 10}
        assert await service.interactions.count("u1") == 4

    @pytest.mark.asyncio
    async def test_substitution_modification(self, service):
        result = await service.learn_from_project_completion(
            "u1", "p1", "partial", [],
            [{"type": "component_substitution", "original_plan": "MCU1",
              "actual_implementation": "MCU2", "impact": "positive"}],
        )
        assert result == {"interactions_recorded": 2, "interactions_failed": 0, "patterns_updated": 4}
        strength = await service.get_preference_strength("u1", "success", "MCU1")
        assert strength["strength"] == 0.45

    @pytest.mark.asyncio
    async def test_failed_event_does_not_stop_the_rest(self, records):
        service = make_service(records, broken={"MCU2"})
        result = await service.learn_from_project_completion(
            "u1", "p1", "success", [{"component_id": "MCU1"}, {"component_id": "MCU2"}]
        )
        assert result == {"interactions_recorded": 2, "interactions_failed": 1, "patterns_updated": 3}
        assert service.errors.recent()[-1].context["operation"] == "learn_from_project_completion"

    @pytest.mark.asyncio
    async def test_reaches_warm_start(self, service):
        await service.learn_from_project_completion(
            "u1", "p1", "success", [{"component_id": "MCU1"}] * 4
        )
        recs = await service.get_personalized_recommendations("u1")
        assert [r["item_id"] for r in recs] == ["MCU1", "MCU2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [
        ("u1", "p1", "abandoned", [{"component_id": "MCU1"}]),
        ("u1", "", "success", [{"component_id": "MCU1"}]),
        ("u1", "p1", "success", "MCU1"),
        ("u1", "p1", "success", [{"component_id": ""}]),
        ("u1", "p1", "success", [{"component_id": "MCU1", "performance_rating": 9}]),
        ("u1", "p1", "success", [], {"type": "component_substitution"}),
        ("u1", "p1", "success", [], [{"type": "component_substitution", "original_plan": "MCU1"}]),
    ])
    async def test_invalid(self, service, args):
        with pytest.raises(ValidationError):
            await service.learn_from_project_completion(*args)
        assert await service.interactions.count("u1") == 0


class TestPreferenceStrength:
    @pytest.mark.asyncio
    async def test_learned(self, service):
        await service.record_interaction(selection())
        assert await service.get_preference_strength("u1", "brand", "Espressif") == {
            "strength": 0.55, "confidence": 0.3,
        }

    @pytest.mark.asyncio
    async def test_neutral_for_unknown_subject(self, service):
        assert await service.get_preference_strength("u1", "category", "Relays") == {
            "strength": 0.5, "confidence": 0.1,
        }

    @pytest.mark.asyncio
    async def test_store_failure_is_neutral(self, service):
        service.learner._preferences.get = AsyncMock(side_effect=OSError("db locked"))
        assert await service.get_preference_strength("u1", "brand", "Espressif") == {
            "strength": 0.5, "confidence": 0.1,
        }
        assert service.errors.recent()[-1].context["operation"] == "get_preference_strength"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pattern_type,subject", [("colour", "red"), ("brand", ""), ("brand", None)])
    async def test_invalid(self, service, pattern_type, subject):
        with pytest.raises(ValidationError):
            await service.get_preference_strength("u1", pattern_type, subject)


class TestHealth:
    def test_healthy(self, service):
        report = service.health()
        assert report["healthy"] is True
        assert report["issues"] == []
        assert report["ai_enabled"] is False

    @pytest.mark.asyncio
    async def test_error_rate(self, service):
        for _ in range(11):
            await service.get_component_alternatives("NOPE")
        report = service.health()
        assert report["healthy"] is False
        assert "error rate" in report["issues"][0]
        assert report["error_stats"]["errors_by_kind"] == {"insufficient_data": 11}

    @pytest.mark.asyncio
    async def test_repeated_ai_failures(self, records):
        ai = AsyncMock()
        ai.enrich.side_effect = ExternalServiceError("down")
        service = make_service(records, ai=ai, error_log=ErrorLog(max_size=100))
        for _ in range(5):
            await service.explain_compatibility(["C1", "C2"])
        report = service.health()
        assert report["healthy"] is False
        assert any("AI service" in issue for issue in report["issues"])

    @pytest.mark.asyncio
    async def test_ai_recovery_resets(self, records):
        ai = AsyncMock()
        ai.enrich.side_effect = [ExternalServiceError("down")] * 4 + ["fine"]
        service = make_service(records, ai=ai)
        for _ in range(5):
            await service.explain_compatibility(["C1", "C2"])
        assert service.health()["healthy"] is True
