"""Unit tests for ResponseParser (loadspec.parser.response_parser).

Tests cover:
- clean_response fence and prose stripping
- Backfilling of fields the AI left out, with assumptions
- Payload variable typing
- Confidence scoring, ambiguities and suggestions
- Fallback routing and SchemaValidationError
"""

from __future__ import annotations

import json

import pytest

from loadspec.parser.context_enhancer import ContextEnhancer
from loadspec.parser.models import HTTPMethod, LoadPatternType, TestType, VariableType
from loadspec.parser.response_parser import (
    ResponseParser,
    SchemaValidationError,
    clean_response,
    generate_test_name,
    infer_http_method,
    infer_variable_type,
)


@pytest.fixture
def parser() -> ResponseParser:
    return ResponseParser()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestCleanResponse:
    @pytest.mark.unit
    def test_strips_code_fences(self):
        assert clean_response('```json\n{"a": 1}\n```') == '{"a": 1}'

    @pytest.mark.unit
    def test_strips_surrounding_prose(self):
        assert clean_response('Here you go: {"a": "}"} hope it helps') == '{"a": "}"}'

    @pytest.mark.unit
    def test_nested_objects(self):
        assert clean_response('x {"a": {"b": 2}} y') == '{"a": {"b": 2}}'

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "no json at all"])
    def test_nothing_to_extract(self, raw):
        assert clean_response(raw) is None


class TestInference:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text,method",
        [
            ("please create a new order", "POST"),
            ("update the profile", "PUT"),
            ("remove the cart", "DELETE"),
            ("fetch the list", "GET"),
            ("send this payload", "POST"),
            ("", "GET"),
        ],
    )
    def test_infer_http_method(self, text, method):
        assert infer_http_method(text) == method

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("userUuid", VariableType.UUID),
            ("orderId", VariableType.RANDOM_ID),
            ("timestamp", VariableType.TIMESTAMP),
            ("birthDate", VariableType.TIMESTAMP),
            ("userName", VariableType.RANDOM_STRING),
        ],
    )
    def test_infer_variable_type(self, name, expected):
        assert infer_variable_type(name) == expected

    @pytest.mark.unit
    def test_generate_test_name(self):
        assert generate_test_name("load", "POST", "https://a.io/api/users") == "Load Test - POST /api/users"
        assert generate_test_name("spike", "GET", "") == "Spike Test - GET /"


# ---------------------------------------------------------------------------
# ResponseParser.parse
# ---------------------------------------------------------------------------


class TestParse:
    @pytest.mark.unit
    def test_complete_response(self, parser, sample_ai_json, curl_context):
        result = parser.parse(sample_ai_json, curl_context)
        spec = result.spec
        assert spec.name == "Create users load test"
        assert spec.test_type == TestType.LOAD
        assert spec.requests[0].method == HTTPMethod.POST
        assert spec.load_pattern.virtual_users == 50
        assert spec.id.startswith("test_")
        assert result.assumptions == []
        assert result.ambiguities == []
        assert result.used_fallback is False
        assert result.confidence == 1.0

    @pytest.mark.unit
    def test_undeclared_placeholder_gets_variable(self, parser, sample_ai_json, curl_context):
        result = parser.parse(sample_ai_json, curl_context)
        (variable,) = result.spec.requests[0].payload.variables
        assert variable.name == "userName"
        assert variable.type == VariableType.RANDOM_STRING
        assert variable.parameters == {"length": 10}

    @pytest.mark.unit
    def test_fenced_response(self, parser, sample_ai_json, curl_context):
        result = parser.parse(f"Sure!\n```json\n{sample_ai_json}\n```", curl_context)
        assert result.spec.name == "Create users load test"

    @pytest.mark.unit
    def test_missing_fields_backfilled(self, parser, context_builder, natural_language_command):
        context = ContextEnhancer().infer_missing_fields(context_builder(natural_language_command))
        raw = json.dumps({"requests": [{"url": "https://shop.internal/checkout"}]})
        result = parser.parse(raw, context)
        spec = result.spec
        assert spec.test_type == TestType.SPIKE
        assert spec.requests[0].method == HTTPMethod.GET
        assert spec.name == "Spike Test - GET /checkout"
        assert spec.load_pattern.type == LoadPatternType.SPIKE
        assert spec.load_pattern.virtual_users == 200
        assert spec.load_pattern.baseline_vus == 20
        assert spec.duration.total_seconds() == 300
        assert [a.field for a in result.assumptions] == ["testType", "method", "loadPattern", "duration"]

    @pytest.mark.unit
    def test_snake_case_keys_accepted(self, parser, empty_context):
        raw = json.dumps({
            "test_type": "stress",
            "load_pattern": {"type": "ramp", "virtual_users": 5, "ramp_up_time": "1m"},
            "requests": [{"method": "get", "url": "https://shop.internal/a"}],
            "duration": "10m",
        })
        spec = parser.parse(raw, empty_context).spec
        assert spec.test_type == TestType.STRESS
        assert spec.load_pattern.type == LoadPatternType.RAMP_UP
        assert spec.load_pattern.virtual_users == 5
        assert spec.duration.total_seconds() == 600

    @pytest.mark.unit
    def test_body_gets_content_type(self, parser, empty_context):
        raw = json.dumps({
            "requests": [{"method": "POST", "url": "https://shop.internal/x", "payload": {"a": 1}}],
        })
        request = parser.parse(raw, empty_context).spec.requests[0]
        assert request.headers == {"Content-Type": "application/json"}
        assert request.payload.template == '{"a": 1}'

    @pytest.mark.unit
    def test_no_requests_lowers_confidence(self, parser, empty_context):
        result = parser.parse('{"name": "x"}', empty_context)
        assert result.confidence == pytest.approx(0.7)
        assert [a.field for a in result.ambiguities] == ["url"]
        assert result.suggestions == ["Provide the full target URL including host"]

    @pytest.mark.unit
    def test_write_request_without_payload(self, parser, empty_context):
        raw = json.dumps({"requests": [{"method": "PUT", "url": "https://shop.internal/x"}]})
        result = parser.parse(raw, empty_context)
        assert "payload" in [a.field for a in result.ambiguities]

    @pytest.mark.unit
    def test_defaulted_duration_reported(self, parser, sample_ai_json, curl_context):
        context = ContextEnhancer().infer_missing_fields(curl_context)
        result = parser.parse(sample_ai_json, context)
        assert "duration" in [a.field for a in result.ambiguities]
        assert "Specify how long the test should run" in result.suggestions

    @pytest.mark.unit
    def test_custom_variable_rules(self, empty_context):
        parser = ResponseParser(variable_type_rules=(("name", VariableType.SEQUENCE),))
        raw = json.dumps({
            "requests": [{"method": "POST", "url": "https://a.io", "payload": {"template": "{{name}}"}}],
        })
        (variable,) = parser.parse(raw, empty_context).spec.requests[0].payload.variables
        assert variable.type == VariableType.SEQUENCE
        assert variable.parameters == {"start": 1, "step": 1}


class TestParseFailures:
    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "I cannot help with that", "[1, 2, 3]"])
    def test_unparseable_routes_to_fallback(self, parser, curl_context, raw):
        result = parser.parse(raw, curl_context)
        assert result.used_fallback is True
        assert result.confidence < 0.5
        assert result.warnings[0] == "AI response could not be parsed; used fallback parser"
        assert [a.field for a in result.ambiguities] == ["aiResponse"]
        assert result.spec.requests[0].url == "https://api.example.com/users"

    @pytest.mark.unit
    def test_schema_mismatch_raises(self, parser, empty_context):
        raw = json.dumps({"requests": [{"method": "FETCH", "url": "/a"}]})
        with pytest.raises(SchemaValidationError, match="does not match schema"):
            parser.parse(raw, empty_context)
