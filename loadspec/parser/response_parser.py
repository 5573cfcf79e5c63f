"""Normalisation and enhancement of raw AI provider output.

``ResponseParser.parse`` cleans the raw completion, parses it, backfills any
field the model left out, and scores the result. Unparseable output is
routed to the deterministic fallback parser instead of raising; JSON that
parses but cannot be shaped into a ``LoadTestSpec`` raises
``SchemaValidationError`` so the caller can run validation-level recovery.
"""

from __future__ import annotations

import json
import re
import secrets
import time
from collections.abc import Sequence
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from loadspec.parser.context_enhancer import DEFAULT_DURATION, TEST_TYPE_KEYWORDS, match_keywords
from loadspec.parser.fallback import IntelligentFallbackParser
from loadspec.parser.models import (
    Ambiguity,
    Assumption,
    LoadTestSpec,
    ParseContext,
    VariableType,
)
from loadspec.parser.preprocessor import parse_json_lenient
from loadspec.utils import clamp


class SchemaValidationError(ValueError):
    """AI output parsed as JSON but does not fit the LoadTestSpec schema."""


# Ordered: the first substring found in the variable name wins, so "uuid"
# must precede "id".
DEFAULT_VARIABLE_TYPE_RULES: tuple[tuple[str, VariableType], ...] = (
    ("uuid", VariableType.UUID),
    ("id", VariableType.RANDOM_ID),
    ("time", VariableType.TIMESTAMP),
    ("date", VariableType.TIMESTAMP),
)

DEFAULT_VARIABLE_PARAMETERS: dict[VariableType, dict[str, Any]] = {
    VariableType.RANDOM_STRING: {"length": 10},
    VariableType.RANDOM_ID: {"min": 1000, "max": 999999},
    VariableType.SEQUENCE: {"start": 1, "step": 1},
    VariableType.INCREMENTAL: {"start": 1, "step": 1},
    VariableType.TIMESTAMP: {"format": "iso"},
    VariableType.UUID: {},
}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_FENCE = re.compile(r"```(?:json|JSON)?")

# Ordered: first keyword group found in the input decides the method.
METHOD_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("POST", ("post", "create", "submit", "add")),
    ("PUT", ("put", "update", "replace")),
    ("DELETE", ("delete", "remove")),
    ("PATCH", ("patch", "modify")),
    ("GET", ("get", "fetch", "retrieve", "read", "list")),
    ("POST", ("payload", "body", "data")),
)

_DATA_METHODS = ("POST", "PUT", "PATCH")
_PLACEHOLDER_URLS = ("", "/")


class ParsedResponse(BaseModel):
    """An enhanced spec plus the metadata describing how much to trust it."""
    spec: LoadTestSpec
    confidence: float = Field(ge=0.0, le=1.0)
    ambiguities: list[Ambiguity] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    assumptions: list[Assumption] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    used_fallback: bool = False


def clean_response(raw: str) -> Optional[str]:
    """Strip code fences and any text outside the outermost braces."""
    if not raw:
        return None
    text = _FENCE.sub("", raw).strip()
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    # Unbalanced; let the lenient parser try the tail as-is.
    end = text.rfind("}")
    return text[start:end + 1] if end > start else None


def infer_http_method(text: str) -> str:
    lowered = text.lower()
    for method, keywords in METHOD_KEYWORDS:
        if any(re.search(r"\b" + keyword + r"\b", lowered) for keyword in keywords):
            return method
    return "GET"


def infer_variable_type(
    name: str, rules: Sequence[tuple[str, VariableType]] = DEFAULT_VARIABLE_TYPE_RULES
) -> VariableType:
    lowered = name.lower()
    for pattern, variable_type in rules:
        if pattern in lowered:
            return variable_type
    return VariableType.RANDOM_STRING


def generate_test_name(test_type: str, method: str, url: str) -> str:
    """``"Load Test - POST /api/users"`` style name from the first request."""
    path = urlparse(url).path if "://" in url else url
    return f"{test_type.capitalize()} Test - {method} {path or '/'}"


def _camel_keys(data: dict[str, Any]) -> dict[str, Any]:
    # Only the keys of this mapping; nested payload templates keep their spelling.
    return {to_camel(key) if "_" in key else key: value for key, value in data.items()}


class ResponseParser:
    """Turn raw AI completions into enhanced ``LoadTestSpec`` objects.

    Args:
        fallback: Parser used when the completion is not parseable.
        variable_type_rules: Ordered ``(substring, type)`` table used to
            type undeclared payload placeholders.
    """

    def __init__(
        self,
        fallback: Optional[IntelligentFallbackParser] = None,
        variable_type_rules: Sequence[tuple[str, VariableType]] = DEFAULT_VARIABLE_TYPE_RULES,
    ) -> None:
        self.fallback = fallback or IntelligentFallbackParser()
        self.variable_type_rules = tuple(variable_type_rules)

    def parse(self, raw: str, context: ParseContext) -> ParsedResponse:
        cleaned = clean_response(raw)
        data = parse_json_lenient(cleaned) if cleaned else None
        if not isinstance(data, dict):
            return self._fallback(context)

        assumptions: list[Assumption] = []
        enhanced = self._backfill(data, context, assumptions)
        try:
            spec = LoadTestSpec.model_validate(enhanced)
        except ValidationError as exc:
            raise SchemaValidationError(f"AI response does not match schema: {exc}") from exc

        ambiguities = self._ambiguities(spec, context)
        return ParsedResponse(
            spec=spec,
            confidence=self._confidence(spec, context.original_input),
            ambiguities=ambiguities,
            suggestions=self._suggestions(ambiguities),
            assumptions=assumptions,
        )

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def _backfill(self, data: dict[str, Any], context: ParseContext, assumptions: list[Assumption]) -> dict[str, Any]:
        spec = _camel_keys(data)
        text = context.original_input
        inferred = context.inferred_fields

        if not spec.get("id"):
            spec["id"] = f"test_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

        if not spec.get("testType"):
            test_type = inferred.test_type or match_keywords(text.lower(), TEST_TYPE_KEYWORDS) or "load"
            spec["testType"] = test_type
            assumptions.append(Assumption(
                field="testType", assumed_value=test_type, reason="Test type not returned; inferred from input"
            ))

        requests = [_camel_keys(r) for r in spec.get("requests") or [] if isinstance(r, dict)]
        for request in requests:
            self._backfill_request(request, text, assumptions)
        spec["requests"] = requests

        first = requests[0] if requests else {}
        if not spec.get("name"):
            spec["name"] = generate_test_name(
                str(spec["testType"]), str(first.get("method", "GET")).upper(), str(first.get("url", ""))
            )
        if not spec.get("description"):
            spec["description"] = text

        if isinstance(spec.get("loadPattern"), dict):
            spec["loadPattern"] = _camel_keys(spec["loadPattern"])
        else:
            spec["loadPattern"] = self._default_load_pattern(str(spec["testType"]), context, assumptions)

        if not spec.get("duration"):
            duration = inferred.duration or DEFAULT_DURATION
            spec["duration"] = duration.model_dump(mode="json")
            assumptions.append(Assumption(
                field="duration",
                assumed_value=duration.to_compact(),
                reason="Duration not returned; using the inferred or default value",
            ))
        return spec

    def _backfill_request(self, request: dict[str, Any], text: str, assumptions: list[Assumption]) -> None:
        if not request.get("method"):
            request["method"] = infer_http_method(text)
            assumptions.append(Assumption(
                field="method", assumed_value=request["method"],
                reason="Method not returned; inferred from input wording",
                alternatives=["GET", "POST"],
            ))
        method = str(request["method"]).upper()
        payload = request.get("payload")
        if isinstance(payload, (str, list)) or (isinstance(payload, dict) and "template" not in payload):
            payload = {"template": payload, "variables": []}
        if payload and method in _DATA_METHODS and not request.get("headers"):
            request["headers"] = {"Content-Type": "application/json"}
        if isinstance(payload, dict):
            template = payload.get("template")
            if not isinstance(template, str):
                template = json.dumps(template)
            declared = {v.get("name") for v in payload.get("variables") or [] if isinstance(v, dict)}
            variables = list(payload.get("variables") or [])
            for name in dict.fromkeys(_PLACEHOLDER.findall(template)):
                if name in declared:
                    continue
                variable_type = infer_variable_type(name, self.variable_type_rules)
                variables.append({
                    "name": name,
                    "type": variable_type.value,
                    "parameters": dict(DEFAULT_VARIABLE_PARAMETERS.get(variable_type, {})),
                })
            request["payload"] = {**payload, "template": template, "variables": variables}

    @staticmethod
    def _default_load_pattern(test_type: str, context: ParseContext, assumptions: list[Assumption]) -> dict[str, Any]:
        counts = context.extracted_components.counts
        users = counts[0] if counts else 10
        if test_type == "spike":
            pattern = {"type": "spike", "virtualUsers": users, "baselineVus": max(1, users // 10)}
        elif test_type == "stress":
            pattern = {
                "type": "ramp-up",
                "virtualUsers": users,
                "rampUpTime": {"value": 2, "unit": "minutes"},
            }
        elif test_type == "endurance":
            pattern = {"type": "constant", "virtualUsers": min(users, 50)}
        else:
            pattern = {"type": "constant", "virtualUsers": users}
        assumptions.append(Assumption(
            field="loadPattern",
            assumed_value=f"{pattern['type']}, {pattern['virtualUsers']} virtual users",
            reason="Load pattern not returned; derived from test type",
        ))
        return pattern

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def _confidence(spec: LoadTestSpec, original_input: str) -> float:
        confidence = 1.0
        if not spec.requests:
            confidence -= 0.3
        if any(r.url.strip() in _PLACEHOLDER_URLS for r in spec.requests):
            confidence -= 0.2
        pattern = spec.load_pattern
        if pattern.virtual_users is None and pattern.requests_per_second is None:
            confidence -= 0.1
        lowered = original_input.lower()
        if spec.test_type.value in lowered:
            confidence += 0.1
        if any(r.method.value.lower() in lowered.split() for r in spec.requests):
            confidence += 0.1
        return clamp(confidence)

    @staticmethod
    def _ambiguities(spec: LoadTestSpec, context: ParseContext) -> list[Ambiguity]:
        ambiguities: list[Ambiguity] = []
        urls = [r.url for r in spec.requests]
        if not urls or any(u.strip() in _PLACEHOLDER_URLS or u.startswith("/") for u in urls):
            ambiguities.append(Ambiguity(
                field="url",
                possible_values=[u for u in urls if u] or ["http://localhost:8080"],
                reason="Target URL is missing or relative",
            ))
        pattern = spec.load_pattern
        if pattern.virtual_users is None and pattern.requests_per_second is None:
            ambiguities.append(Ambiguity(
                field="userCount", possible_values=["1", "10", "100"], reason="Load parameters unclear"
            ))
        for request in spec.requests:
            if request.method.value in _DATA_METHODS and request.payload is None:
                ambiguities.append(Ambiguity(
                    field="payload",
                    possible_values=["{}"],
                    reason=f"{request.method.value} request has no payload",
                ))
                break
        if "duration" in context.inferred_fields.defaulted:
            ambiguities.append(Ambiguity(
                field="duration",
                possible_values=["30s", "1m", "5m"],
                reason="Duration not stated in input; default used",
            ))
        return ambiguities

    @staticmethod
    def _suggestions(ambiguities: list[Ambiguity]) -> list[str]:
        messages = {
            "url": "Provide the full target URL including host",
            "userCount": "Specify the number of virtual users or requests per second",
            "payload": "Provide the request body for write requests",
            "duration": "Specify how long the test should run",
        }
        return [messages[a.field] for a in ambiguities if a.field in messages]

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _fallback(self, context: ParseContext) -> ParsedResponse:
        result = self.fallback.parse(context.original_input)
        return ParsedResponse(
            spec=result.spec,
            confidence=result.confidence,
            ambiguities=[Ambiguity(
                field="aiResponse", possible_values=[], reason="AI response could not be parsed"
            )],
            suggestions=["Rephrase the command with an explicit method, URL, and user count"],
            assumptions=result.assumptions,
            warnings=["AI response could not be parsed; used fallback parser", *result.warnings],
            used_fallback=True,
        )
