"""Unit tests for ContextEnhancer (loadspec.parser.context_enhancer).

Tests cover:
- build_context component merging and initial confidence
- infer_missing_fields keyword inference and default penalties
- resolve_ambiguities detection, idempotence and confidence monotonicity
- extract_duration helper
"""

from __future__ import annotations

import pytest

from loadspec.parser.context_enhancer import (
    BASE_CONFIDENCE,
    ContextEnhancer,
    extract_duration,
)
from loadspec.parser.models import DurationUnit, ParseContext, StructuredData


@pytest.fixture
def enhancer() -> ContextEnhancer:
    return ContextEnhancer()


# ---------------------------------------------------------------------------
# build_context
# ---------------------------------------------------------------------------


class TestBuildContext:
    @pytest.mark.unit
    def test_curl_components(self, curl_context):
        components = curl_context.extracted_components
        assert components.methods == ["POST"]
        assert components.urls == ["https://api.example.com/users"]
        assert components.headers == {"Content-Type": "application/json"}
        assert components.bodies == ['{"name":"a"}']
        assert curl_context.confidence == 1.0

    @pytest.mark.unit
    def test_empty_input_uses_base_confidence(self, enhancer):
        context = enhancer.build_context("", StructuredData(), [])
        assert context.confidence == BASE_CONFIDENCE
        assert context.original_input == ""
        assert context.extracted_components.methods == []

    @pytest.mark.unit
    def test_counts_collected(self, context_builder, natural_language_command):
        context = context_builder(natural_language_command)
        assert context.extracted_components.counts == [200]

    @pytest.mark.unit
    def test_cleaned_input_single_line(self, context_builder, raw_http_request):
        context = context_builder(raw_http_request)
        assert "\n" not in context.cleaned_input
        assert context.extracted_components.headers["Authorization"] == "Bearer abc123"

    @pytest.mark.unit
    def test_confidence_bounds(self, context_builder, curl_command, raw_http_request, concatenated_command):
        for raw in ("", "???", curl_command, raw_http_request, concatenated_command):
            assert 0.0 <= context_builder(raw).confidence <= 1.0


# ---------------------------------------------------------------------------
# infer_missing_fields
# ---------------------------------------------------------------------------


class TestInferMissingFields:
    @pytest.mark.unit
    def test_defaults_cost_confidence(self, enhancer, curl_context):
        inferred = enhancer.infer_missing_fields(curl_context)
        fields = inferred.inferred_fields
        assert fields.test_type == "load"
        assert fields.load_pattern == "constant"
        assert fields.duration.total_seconds() == 30
        assert fields.defaulted == ["testType", "duration", "loadPattern"]
        assert inferred.confidence == pytest.approx(0.85)

    @pytest.mark.unit
    def test_keywords_detected(self, enhancer, context_builder, natural_language_command):
        context = context_builder(natural_language_command)
        inferred = enhancer.infer_missing_fields(context)
        fields = inferred.inferred_fields
        assert fields.test_type == "spike"
        assert fields.load_pattern == "spike"
        assert fields.duration.value == 5
        assert fields.duration.unit == DurationUnit.MINUTES
        assert fields.defaulted == []
        assert inferred.confidence == context.confidence

    @pytest.mark.unit
    def test_stress_defaults_to_ramp(self, enhancer, context_builder):
        inferred = enhancer.infer_missing_fields(context_builder("stress the checkout with 500 users"))
        assert inferred.inferred_fields.test_type == "stress"
        assert inferred.inferred_fields.load_pattern == "ramp"
        assert "loadPattern" in inferred.inferred_fields.defaulted

    @pytest.mark.unit
    def test_input_context_not_mutated(self, enhancer, curl_context):
        enhancer.infer_missing_fields(curl_context)
        assert curl_context.inferred_fields.test_type is None
        assert curl_context.confidence == 1.0


# ---------------------------------------------------------------------------
# resolve_ambiguities
# ---------------------------------------------------------------------------


class TestResolveAmbiguities:
    @pytest.mark.unit
    def test_empty_context_flags_critical_fields(self, enhancer, empty_context):
        resolved = enhancer.resolve_ambiguities(empty_context)
        by_field = {a.field: a for a in resolved.ambiguities}
        assert {"method", "url", "userCount"} <= set(by_field)
        assert len(by_field["method"].possible_values) >= 2
        assert len(by_field["url"].possible_values) >= 2
        assert resolved.confidence == pytest.approx(0.1)

    @pytest.mark.unit
    def test_resolved_twice_is_unchanged(self, enhancer, context_builder, natural_language_command):
        once = enhancer.resolve_ambiguities(context_builder(natural_language_command))
        twice = enhancer.resolve_ambiguities(once)
        assert twice == once

    @pytest.mark.unit
    def test_confidence_never_raised(self, enhancer, context_builder, curl_command, concatenated_command):
        contexts = [
            context_builder(raw) for raw in ("", "GET /users", curl_command, concatenated_command)
        ]
        contexts.append(ParseContext(confidence=0.05))
        for context in contexts:
            assert enhancer.resolve_ambiguities(context).confidence <= context.confidence

    @pytest.mark.unit
    def test_multiple_urls(self, enhancer, context_builder, concatenated_command):
        resolved = enhancer.resolve_ambiguities(context_builder(concatenated_command))
        url = next(a for a in resolved.ambiguities if a.field == "url")
        assert url.possible_values == [
            "https://api.example.com/products",
            "https://api.example.com/cart",
        ]

    @pytest.mark.unit
    def test_relative_url_offers_base_hosts(self, enhancer, context_builder):
        resolved = enhancer.resolve_ambiguities(context_builder("GET /users"))
        url = next(a for a in resolved.ambiguities if a.field == "url")
        assert "http://localhost:8080/users" in url.possible_values

    @pytest.mark.unit
    def test_authentication_mentioned_without_header(self, enhancer, context_builder):
        resolved = enhancer.resolve_ambiguities(
            context_builder("GET https://shop.internal/orders using my bearer token")
        )
        assert "authentication" in resolved.ambiguity_fields()

    @pytest.mark.unit
    def test_body_without_content_type(self, enhancer, context_builder):
        resolved = enhancer.resolve_ambiguities(context_builder('POST https://shop.internal/a {"a": 1}'))
        assert "content-type" in resolved.ambiguity_fields()

    @pytest.mark.unit
    def test_max_ambiguities_respected(self, empty_context):
        resolved = ContextEnhancer(max_ambiguities=1).resolve_ambiguities(empty_context)
        assert [a.field for a in resolved.ambiguities] == ["method"]

    @pytest.mark.unit
    def test_fully_specified_input_has_no_critical_ambiguity(self, enhancer, curl_context):
        fields = enhancer.resolve_ambiguities(curl_context).ambiguity_fields()
        assert "method" not in fields
        assert "url" not in fields


class TestExtractDuration:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text,seconds",
        [("hold for 90s", 90), ("run 5 minutes", 300), ("soak 2 hours", 7200), ("10 mins", 600)],
    )
    def test_durations(self, text, seconds):
        assert extract_duration(text).total_seconds() == seconds

    @pytest.mark.unit
    def test_no_duration(self):
        assert extract_duration("no numbers here") is None
