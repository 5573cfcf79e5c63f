"""Deterministic, non-AI parsing.

Used when the AI response cannot be parsed, when the AI path is disabled,
or once recovery has exhausted the AI strategies. The output is always a
structurally complete ``LoadTestSpec`` that passes ``CommandValidator``;
every substituted default is recorded as an ``Assumption`` and confidence
stays below ``MAX_FALLBACK_CONFIDENCE``.
"""

from __future__ import annotations

import json
import re
import time
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from loadspec.parser.context_enhancer import TEST_TYPE_KEYWORDS, extract_duration, match_keywords
from loadspec.parser.models import (
    Assumption,
    Duration,
    DurationUnit,
    HTTPMethod,
    LoadPattern,
    LoadPatternType,
    LoadTestSpec,
    PayloadSpec,
    RequestSpec,
    TestType,
)
from loadspec.parser.preprocessor import InputPreprocessor, parse_json_lenient
from loadspec.utils import clamp

PLACEHOLDER_URL = "http://example.com"
DEFAULT_VIRTUAL_USERS = 10
DEFAULT_DURATION_SECONDS = 30
BASE_FALLBACK_CONFIDENCE = 0.45
MAX_FALLBACK_CONFIDENCE = 0.49
MIN_FALLBACK_CONFIDENCE = 0.1

_USERS = re.compile(r"\b(\d+)\s*(?:virtual\s+users?|vus?|users?|concurrent|clients?|threads?)\b", re.IGNORECASE)
_RPS = re.compile(r"\b(\d+(?:\.\d+)?)\s*(?:rps|req(?:uests)?\s*/\s*s(?:ec)?|requests?\s+per\s+second)\b", re.IGNORECASE)
_LABELLED_URL = re.compile(r"\b(?:url|endpoint|host)\s*[:=]\s*(\S+)", re.IGNORECASE)
_DOMAIN = re.compile(r"\b((?:[a-z0-9-]+\.)+(?:com|org|net|io|dev|app|local))(/\S*)?\b", re.IGNORECASE)
_NAME = re.compile(r"^\s*name\s*[:=]\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_METHOD_WITH_DATA = ("POST", "PUT", "PATCH")


class FallbackParseResult(BaseModel):
    """Spec produced without the AI provider, plus what it assumed."""
    spec: LoadTestSpec
    confidence: float = Field(ge=0.0, le=1.0)
    assumptions: list[Assumption] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class IntelligentFallbackParser:
    """Regex-driven extraction of a minimal load test specification."""

    def __init__(self, preprocessor: Optional[InputPreprocessor] = None) -> None:
        self.preprocessor = preprocessor or InputPreprocessor()

    def parse(self, raw_input: str) -> FallbackParseResult:
        text = self.preprocessor.sanitize(raw_input)
        structured = self.preprocessor.extract_structured_data(text)
        assumptions: list[Assumption] = []
        warnings: list[str] = []

        urls = self._candidate_urls(text, structured.urls)
        if not urls:
            urls = [PLACEHOLDER_URL]
            assumptions.append(Assumption(
                field="url",
                assumed_value=PLACEHOLDER_URL,
                reason="No URL found in input",
                alternatives=["http://localhost:8080"],
            ))

        methods = list(structured.methods)
        body = self._first_body(structured.json_blocks)
        if not methods:
            default_method = "POST" if body is not None else "GET"
            methods = [default_method]
            assumptions.append(Assumption(
                field="method",
                assumed_value=default_method,
                reason="No HTTP method specified" + (" (body present)" if body else ""),
                alternatives=["GET", "POST"],
            ))

        requests = []
        for index, url in enumerate(urls):
            method = HTTPMethod(methods[index] if index < len(methods) else methods[-1])
            requests.append(self._build_request(method, url, structured.headers, body))

        load_pattern = self._load_pattern(text, assumptions)
        duration = self._duration(text, assumptions)

        test_type_value = match_keywords(text.lower(), TEST_TYPE_KEYWORDS)
        if test_type_value is None:
            test_type = TestType.BASELINE
            assumptions.append(Assumption(
                field="testType", assumed_value="baseline", reason="No test type keywords found"
            ))
        else:
            test_type = TestType(test_type_value)

        if structured.json_blocks and body is None:
            warnings.append("Request body could not be parsed as JSON and was dropped")
        if len(urls) > 1:
            warnings.append(f"Input contains {len(urls)} URLs; one request was created per URL")

        spec = LoadTestSpec(
            id=f"fallback-{int(time.time() * 1000)}",
            name=self._test_name(text, urls[0]),
            description=text or "Fallback load test",
            test_type=test_type,
            requests=requests,
            load_pattern=load_pattern,
            duration=duration,
        )
        return FallbackParseResult(
            spec=spec,
            confidence=self._confidence(assumptions, warnings, urls),
            assumptions=assumptions,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _candidate_urls(text: str, extracted: list[str]) -> list[str]:
        urls = [u for u in extracted if u.startswith(("http://", "https://", "/"))]
        if urls:
            return urls
        labelled = _LABELLED_URL.search(text)
        if labelled:
            value = labelled.group(1).rstrip(",;.")
            return [value if "://" in value or value.startswith("/") else f"https://{value}"]
        domain = _DOMAIN.search(text)
        if domain:
            return [f"https://{domain.group(1)}{domain.group(2) or ''}"]
        return []

    @staticmethod
    def _first_body(blocks: list[str]) -> Optional[str]:
        for block in blocks:
            parsed = parse_json_lenient(block)
            if isinstance(parsed, (dict, list)):
                return json.dumps(parsed)
        return None

    @staticmethod
    def _build_request(
        method: HTTPMethod, url: str, headers: dict[str, str], body: Optional[str]
    ) -> RequestSpec:
        request_headers = dict(headers)
        payload = None
        if body is not None and method.value in _METHOD_WITH_DATA:
            payload = PayloadSpec(template=body)
            request_headers.setdefault("Content-Type", "application/json")
        return RequestSpec(method=method, url=url, headers=request_headers, payload=payload)

    @staticmethod
    def _load_pattern(text: str, assumptions: list[Assumption]) -> LoadPattern:
        users_match = _USERS.search(text)
        rps_match = _RPS.search(text)
        users = int(users_match.group(1)) if users_match else 0
        rps = float(rps_match.group(1)) if rps_match else None
        if users <= 0:
            users = DEFAULT_VIRTUAL_USERS
            assumptions.append(Assumption(
                field="loadPattern",
                assumed_value=f"constant, {DEFAULT_VIRTUAL_USERS} virtual users",
                reason=(
                    f"Using default load pattern: {DEFAULT_VIRTUAL_USERS} requests/second "
                    f"for {DEFAULT_DURATION_SECONDS} seconds"
                ),
                alternatives=["1", "50", "100"],
            ))
        return LoadPattern(
            type=LoadPatternType.CONSTANT,
            virtual_users=users,
            requests_per_second=rps if rps and rps > 0 else None,
        )

    @staticmethod
    def _duration(text: str, assumptions: list[Assumption]) -> Duration:
        duration = extract_duration(text)
        if duration is None or duration.value <= 0:
            assumptions.append(Assumption(
                field="duration",
                assumed_value=f"{DEFAULT_DURATION_SECONDS}s",
                reason="No usable duration found in input",
                alternatives=["1m", "5m"],
            ))
            return Duration(value=DEFAULT_DURATION_SECONDS, unit=DurationUnit.SECONDS)
        return duration

    @staticmethod
    def _test_name(text: str, url: str) -> str:
        explicit = _NAME.search(text)
        if explicit:
            return explicit.group(1).strip()[:80]
        first_line = text.split("\n", 1)[0].strip() if text else ""
        if first_line and len(first_line) <= 80 and "://" not in first_line:
            return first_line
        host = urlparse(url).hostname
        if host and url != PLACEHOLDER_URL:
            return f"Load test for {host}"
        return "Fallback load test"

    @staticmethod
    def _confidence(assumptions: list[Assumption], warnings: list[str], urls: list[str]) -> float:
        confidence = BASE_FALLBACK_CONFIDENCE
        confidence -= 0.05 * len(assumptions)
        confidence -= 0.05 * len(warnings)
        if urls and urls[0] != PLACEHOLDER_URL:
            confidence += 0.05
        return clamp(confidence, MIN_FALLBACK_CONFIDENCE, MAX_FALLBACK_CONFIDENCE)
