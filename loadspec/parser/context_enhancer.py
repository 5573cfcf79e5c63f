"""Parse-context construction, field inference, and ambiguity detection.

Every public method takes a ``ParseContext`` and returns a new one; the
input context is never mutated. Confidence only moves down as ambiguities
and defaults accumulate, and never leaves ``[0, 1]``.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Optional

from loadspec.parser.models import (
    Ambiguity,
    Duration,
    DurationUnit,
    ExtractedComponents,
    HintType,
    InferredFields,
    ParseContext,
    ParsingHint,
    StructuredData,
)
from loadspec.utils import clamp, unique

BASE_CONFIDENCE = 0.3
DEFAULT_PENALTY = 0.05
CRITICAL_AMBIGUITY_PENALTY = 0.2
AMBIGUITY_PENALTY = 0.05
CONFIDENCE_FLOOR = 0.1

CRITICAL_FIELDS = frozenset({"method", "url"})

DEFAULT_TEST_TYPE = "load"
DEFAULT_DURATION = Duration(value=30, unit=DurationUnit.SECONDS)
DEFAULT_LOAD_PATTERN = "constant"

# Ordered: the first matching keyword group decides.
TEST_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("spike", ("spike", "burst", "sudden")),
    ("stress", ("stress", "breaking point", "breaking", "limit test")),
    ("endurance", ("endurance", "soak", "sustained", "long-running", "long running")),
    ("volume", ("volume", "large data", "bulk")),
)

LOAD_PATTERN_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("ramp", ("ramp", "gradually", "gradual", "increase")),
    ("spike", ("spike", "burst")),
    ("step", ("step", "staircase")),
    ("constant", ("constant", "steady", "fixed rate", "stable")),
)

_DURATION = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)\b", re.IGNORECASE
)
_DURATION_UNITS: dict[str, DurationUnit] = {
    "s": DurationUnit.SECONDS,
    "m": DurationUnit.MINUTES,
    "h": DurationUnit.HOURS,
}

_AUTH_HEADERS = ("Authorization", "X-Api-Key", "Api-Key", "X-Auth-Token", "Cookie")
_AUTH_WORDS = re.compile(r"\b(auth\w*|token|bearer|api[- ]?key|login|credentials?)\b", re.IGNORECASE)

FALLBACK_URLS = ("http://localhost:8080", "https://api.example.com")


def match_keywords(text: str, table: Sequence[tuple[str, tuple[str, ...]]]) -> Optional[str]:
    for value, keywords in table:
        if any(re.search(r"\b" + re.escape(word), text) for word in keywords):
            return value
    return None


def extract_duration(text: str) -> Optional[Duration]:
    """Return the first explicit ``N seconds/minutes/hours`` in *text*."""
    match = _DURATION.search(text)
    if not match:
        return None
    unit = _DURATION_UNITS[match.group(2)[0].lower()]
    return Duration(value=float(match.group(1)), unit=unit)


def _lower_confidence(confidence: float, penalty: float) -> float:
    # Never raises a value that is already under the floor.
    return clamp(max(confidence - penalty, min(confidence, CONFIDENCE_FLOOR)))


class ContextEnhancer:
    """Build and progressively enrich a ``ParseContext``.

    Args:
        max_ambiguities: Ceiling on ambiguities carried by one context.
    """

    def __init__(self, max_ambiguities: int = 5) -> None:
        self.max_ambiguities = max_ambiguities

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build_context(
        self,
        original_input: str,
        structured: StructuredData,
        hints: Sequence[ParsingHint],
    ) -> ParseContext:
        """Merge preprocessing output and detection hints into a fresh context."""
        def hint_values(hint_type: HintType) -> list[str]:
            return [h.value for h in hints if h.type == hint_type]

        headers = dict(structured.headers)
        for value in hint_values(HintType.HEADERS):
            name, _, header_value = value.partition(":")
            title = "-".join(p[:1].upper() + p[1:].lower() for p in name.strip().split("-"))
            if title and header_value.strip() and title not in headers:
                headers[title] = header_value.strip()

        components = ExtractedComponents(
            methods=unique([m.upper() for m in [*structured.methods, *hint_values(HintType.METHOD)]]),
            urls=unique([*structured.urls, *hint_values(HintType.URL)]),
            headers=headers,
            bodies=unique([*structured.json_blocks, *hint_values(HintType.BODY)]),
            counts=unique(int(v) for v in hint_values(HintType.COUNT) if v.isdigit()),
        )
        return ParseContext(
            original_input=original_input or "",
            cleaned_input=re.sub(r"\s+", " ", original_input or "").strip(),
            extracted_components=components,
            confidence=self._initial_confidence(components, hints),
        )

    @staticmethod
    def _initial_confidence(components: ExtractedComponents, hints: Sequence[ParsingHint]) -> float:
        confidence = BASE_CONFIDENCE
        if components.methods:
            confidence += 0.15
        if components.urls:
            confidence += 0.2
        if components.headers:
            confidence += 0.1
        if components.bodies:
            confidence += 0.15
        strong_hints = sum(1 for h in hints if h.confidence > 0.8)
        confidence += min(0.05 * strong_hints, 0.2)
        return clamp(confidence)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def infer_missing_fields(self, context: ParseContext) -> ParseContext:
        """Fill test type, duration, and load pattern from keywords or defaults."""
        text = context.cleaned_input.lower()
        defaulted: list[str] = []

        test_type = match_keywords(text, TEST_TYPE_KEYWORDS)
        if test_type is None:
            test_type = DEFAULT_TEST_TYPE
            defaulted.append("testType")

        duration = extract_duration(text)
        if duration is None:
            duration = DEFAULT_DURATION.model_copy()
            defaulted.append("duration")

        load_pattern = match_keywords(text, LOAD_PATTERN_KEYWORDS)
        if load_pattern is None:
            if test_type == "spike":
                load_pattern = "spike"
            elif test_type == "stress":
                load_pattern = "ramp"
            else:
                load_pattern = DEFAULT_LOAD_PATTERN
            defaulted.append("loadPattern")

        confidence = context.confidence
        for _ in defaulted:
            confidence = _lower_confidence(confidence, DEFAULT_PENALTY)

        return context.model_copy(update={
            "inferred_fields": InferredFields(
                test_type=test_type,
                duration=duration,
                load_pattern=load_pattern,
                defaulted=defaulted,
            ),
            "confidence": confidence,
        })

    # ------------------------------------------------------------------
    # Ambiguities
    # ------------------------------------------------------------------

    def resolve_ambiguities(self, context: ParseContext) -> ParseContext:
        """Append ambiguities for under-determined fields.

        Fields that already carry an ambiguity are skipped, so running this
        twice on the same context is a no-op.
        """
        covered = context.ambiguity_fields()
        found: list[Ambiguity] = []
        for detect in (
            self._method_ambiguity,
            self._url_ambiguity,
            self._user_count_ambiguity,
            self._authentication_ambiguity,
            self._content_type_ambiguity,
        ):
            ambiguity = detect(context)
            if ambiguity is None or ambiguity.field in covered:
                continue
            if len(context.ambiguities) + len(found) >= self.max_ambiguities:
                break
            found.append(ambiguity)

        if not found:
            return context

        confidence = context.confidence
        for ambiguity in found:
            penalty = (
                CRITICAL_AMBIGUITY_PENALTY
                if ambiguity.field in CRITICAL_FIELDS
                else AMBIGUITY_PENALTY
            )
            confidence = _lower_confidence(confidence, penalty)

        return context.model_copy(update={
            "ambiguities": [*context.ambiguities, *found],
            "confidence": confidence,
        })

    @staticmethod
    def _method_ambiguity(context: ParseContext) -> Optional[Ambiguity]:
        methods = context.extracted_components.methods
        if not methods:
            return Ambiguity(
                field="method",
                possible_values=["GET", "POST"],
                reason="No HTTP method specified",
            )
        if len(methods) > 1:
            return Ambiguity(
                field="method",
                possible_values=list(methods),
                reason="Multiple HTTP methods found",
            )
        return None

    @staticmethod
    def _url_ambiguity(context: ParseContext) -> Optional[Ambiguity]:
        urls = context.extracted_components.urls
        if not urls:
            return Ambiguity(
                field="url",
                possible_values=list(FALLBACK_URLS),
                reason="No URL specified",
            )
        if len(urls) > 1:
            return Ambiguity(field="url", possible_values=list(urls), reason="Multiple URLs found")
        if urls[0].startswith("/"):
            return Ambiguity(
                field="url",
                possible_values=[f"{base}{urls[0]}" for base in FALLBACK_URLS],
                reason="Relative URL needs a base host",
            )
        return None

    @staticmethod
    def _user_count_ambiguity(context: ParseContext) -> Optional[Ambiguity]:
        counts = context.extracted_components.counts
        if not counts:
            return Ambiguity(
                field="userCount",
                possible_values=["1", "10", "100"],
                reason="No user count specified",
            )
        if len(counts) > 1:
            return Ambiguity(
                field="userCount",
                possible_values=[str(c) for c in counts],
                reason="Multiple user counts found",
            )
        return None

    @staticmethod
    def _authentication_ambiguity(context: ParseContext) -> Optional[Ambiguity]:
        headers = context.extracted_components.headers
        auth = [f"{name}: {headers[name]}" for name in _AUTH_HEADERS if name in headers]
        if len(auth) > 1:
            return Ambiguity(
                field="authentication",
                possible_values=auth,
                reason="Multiple authentication headers found",
            )
        if not auth and _AUTH_WORDS.search(context.cleaned_input):
            return Ambiguity(
                field="authentication",
                possible_values=["Bearer <token>", "Basic <credentials>", "X-Api-Key: <key>"],
                reason="Authentication mentioned but no credentials header given",
            )
        return None

    @staticmethod
    def _content_type_ambiguity(context: ParseContext) -> Optional[Ambiguity]:
        components = context.extracted_components
        if components.bodies and "Content-Type" not in components.headers:
            return Ambiguity(
                field="content-type",
                possible_values=["application/json", "application/x-www-form-urlencoded"],
                reason="Request body present without a Content-Type header",
            )
        return None
