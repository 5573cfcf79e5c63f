"""Input format classification.

Formats are decided by one dispatcher walking an ordered list of
``FormatRule`` entries. Each rule pairs a predicate with a scoring function;
the first rule whose predicate holds wins, and ``natural_language`` always
matches last. Hints are extracted once per input and shared by every rule.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from loadspec.parser.models import (
    FormatCandidate,
    FormatDetectionResult,
    HintType,
    InputFormat,
    ParsingHint,
    TextPosition,
)
from loadspec.parser.preprocessor import HTTP_METHODS
from loadspec.utils import clamp

# Per-type hint confidences.
METHOD_HINT_CONFIDENCE = 0.9
URL_HINT_CONFIDENCE = 0.95
HEADER_HINT_CONFIDENCE = 0.8
BODY_HINT_CONFIDENCE = 0.9
INVALID_BODY_HINT_CONFIDENCE = 0.5
COUNT_HINT_CONFIDENCE = 0.8

_METHOD = re.compile(r"\b(" + "|".join(HTTP_METHODS) + r")\b", re.IGNORECASE)
_URL = re.compile(r"https?://[^\s<>\"'{}|\\^`\[\]]+")
_HEADER = re.compile(r"^[ \t]*([A-Za-z][\w-]*):[ \t]*(?!//)([^\r\n]+)$", re.MULTILINE)
_BODY = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")
_COUNT = re.compile(
    r"\b(\d+)\s*(?:virtual\s+users?|vus?|users?|concurrent|parallel|threads?|clients?)\b",
    re.IGNORECASE,
)

_CURL = re.compile(r"(?:^|[\s;|&])curl\s", re.IGNORECASE)
_CURL_FLAG = re.compile(r"\s(?:-X|-H|-d|--data(?:-raw|-binary)?|--header|--request|-u)\s")
_REQUEST_LINE = re.compile(
    r"^(" + "|".join(HTTP_METHODS) + r")\s+\S+\s+HTTP/\d(?:\.\d)?\s*$", re.MULTILINE
)
_HOST_LINE = re.compile(r"^Host:\s*\S+", re.MULTILINE | re.IGNORECASE)
_USER_AGENT_LINE = re.compile(r"^User-Agent:\s*\S+", re.MULTILINE | re.IGNORECASE)
_NL_KEYWORDS = re.compile(
    r"\b(test|load|performance|users?|requests?|endpoint|please|create|need|want|simulate)\b",
    re.IGNORECASE,
)
NL_INDICATORS: tuple[str, ...] = (
    "please", "can you", "i want", "i need", "create a test", "load test",
    "performance test", "test with", "simulate", "run a", "hit the",
)


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionInput:
    """Everything a rule may look at for one input."""

    text: str
    hints: tuple[ParsingHint, ...]

    def values(self, hint_type: HintType) -> list[str]:
        return [h.value for h in self.hints if h.type == hint_type]

    def has(self, hint_type: HintType) -> bool:
        return any(h.type == hint_type for h in self.hints)


@dataclass(frozen=True)
class FormatRule:
    """One entry of the detection cascade."""

    format: InputFormat
    base_confidence: float
    predicate: Callable[[DetectionInput], bool]
    score: Callable[[DetectionInput, float], float]


def _complexity_multiplier(data: DetectionInput) -> float:
    return 0.7 + min(len(data.hints) * 0.05, 0.2) + min(len(data.text) / 2000, 0.1)


def _is_curl(data: DetectionInput) -> bool:
    return bool(_CURL.search(" " + data.text)) and data.has(HintType.URL)


def _score_curl(data: DetectionInput, base: float) -> float:
    flags = len(_CURL_FLAG.findall(data.text + " "))
    return base + min(flags * 0.01, 0.04)


def _raw_http_indicators(text: str) -> int:
    return sum(
        1 for pattern in (_REQUEST_LINE, _HOST_LINE, _USER_AGENT_LINE) if pattern.search(text)
    )


def _is_http_raw(data: DetectionInput) -> bool:
    return bool(_REQUEST_LINE.search(data.text)) or _raw_http_indicators(data.text) >= 2


def _score_http_raw(data: DetectionInput, base: float) -> float:
    return base + 0.05 * (_raw_http_indicators(data.text) - 1)


def _is_concatenated(data: DetectionInput) -> bool:
    methods = {m.upper() for m in data.values(HintType.METHOD)}
    return len(methods) > 1 or len(set(data.values(HintType.URL))) > 1


def _is_json_with_text(data: DetectionInput) -> bool:
    if not data.has(HintType.BODY):
        return False
    remaining = _BODY.sub("", data.text).strip()
    return len(remaining) > 20


def _is_mixed_structured(data: DetectionInput) -> bool:
    structured = data.has(HintType.URL) or data.has(HintType.HEADERS) or data.has(HintType.METHOD)
    return structured and bool(_NL_KEYWORDS.search(data.text))


def _score_with_complexity(data: DetectionInput, base: float) -> float:
    return base * _complexity_multiplier(data)


def _score_natural_language(data: DetectionInput, base: float) -> float:
    lowered = data.text.lower()
    score = base + 0.15 * sum(1 for phrase in NL_INDICATORS if phrase in lowered)
    if not data.hints:
        score += 0.4
    return min(score, 0.9) * _complexity_multiplier(data)


DEFAULT_RULES: tuple[FormatRule, ...] = (
    FormatRule(InputFormat.CURL_COMMAND, 0.95, _is_curl, _score_curl),
    FormatRule(InputFormat.HTTP_RAW, 0.85, _is_http_raw, _score_http_raw),
    FormatRule(InputFormat.CONCATENATED_REQUESTS, 0.8, _is_concatenated, _score_with_complexity),
    FormatRule(InputFormat.JSON_WITH_TEXT, 0.7, _is_json_with_text, _score_with_complexity),
    FormatRule(InputFormat.MIXED_STRUCTURED, 0.6, _is_mixed_structured, _score_with_complexity),
    FormatRule(InputFormat.NATURAL_LANGUAGE, 0.1, lambda _data: True, _score_natural_language),
)


# ---------------------------------------------------------------------------
# Hint extraction
# ---------------------------------------------------------------------------


def _position(match: re.Match[str], group: int = 0) -> TextPosition:
    return TextPosition(start=match.start(group), end=match.end(group))


def extract_hints(text: str) -> list[ParsingHint]:
    """Return every method, url, header, body, and count hint in *text*."""
    hints: list[ParsingHint] = []
    for match in _METHOD.finditer(text):
        hints.append(ParsingHint(
            type=HintType.METHOD,
            value=match.group(1).upper(),
            confidence=METHOD_HINT_CONFIDENCE,
            position=_position(match),
        ))
    for match in _URL.finditer(text):
        hints.append(ParsingHint(
            type=HintType.URL,
            value=match.group(0).rstrip(",;.)"),
            confidence=URL_HINT_CONFIDENCE,
            position=_position(match),
        ))
    for match in _HEADER.finditer(text):
        hints.append(ParsingHint(
            type=HintType.HEADERS,
            value=f"{match.group(1)}: {match.group(2).strip()}",
            confidence=HEADER_HINT_CONFIDENCE,
            position=_position(match),
        ))
    for match in _BODY.finditer(text):
        block = match.group(0)
        try:
            json.loads(block)
            confidence = BODY_HINT_CONFIDENCE
        except (json.JSONDecodeError, ValueError):
            if '"' not in block or (":" not in block and "," not in block):
                continue
            confidence = INVALID_BODY_HINT_CONFIDENCE
        hints.append(ParsingHint(
            type=HintType.BODY, value=block, confidence=confidence, position=_position(match)
        ))
    for match in _COUNT.finditer(text):
        hints.append(ParsingHint(
            type=HintType.COUNT,
            value=match.group(1),
            confidence=COUNT_HINT_CONFIDENCE,
            position=_position(match),
        ))
    hints.sort(key=lambda h: h.position.start)
    return hints


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class FormatDetector:
    """Classify sanitised input into an ``InputFormat``.

    Args:
        rules: Ordered rule list; defaults to ``DEFAULT_RULES``. The last
            rule must always match.
        enable_pattern_matching: When ``False`` only the final catch-all
            rule is evaluated.
        enable_multi_format_detection: When ``True`` every other matching
            rule is reported in ``FormatDetectionResult.alternatives``.
    """

    def __init__(
        self,
        rules: tuple[FormatRule, ...] = DEFAULT_RULES,
        enable_pattern_matching: bool = True,
        enable_multi_format_detection: bool = True,
    ) -> None:
        if not rules:
            raise ValueError("FormatDetector needs at least one rule")
        self.rules = rules
        self.enable_pattern_matching = enable_pattern_matching
        self.enable_multi_format_detection = enable_multi_format_detection
        self._last: Optional[FormatDetectionResult] = None

    def detect_format(self, text: str) -> FormatDetectionResult:
        if not isinstance(text, str):
            text = ""
        data = DetectionInput(text=text, hints=tuple(extract_hints(text)))
        rules = self.rules if self.enable_pattern_matching else self.rules[-1:]

        matched: list[FormatCandidate] = []
        for rule in rules:
            if not rule.predicate(data):
                continue
            confidence = clamp(rule.score(data, rule.base_confidence))
            matched.append(FormatCandidate(format=rule.format, confidence=confidence))
            if not self.enable_multi_format_detection:
                break

        if matched:
            winner, alternatives = matched[0], matched[1:]
        else:
            winner, alternatives = FormatCandidate(format=InputFormat.NATURAL_LANGUAGE, confidence=0.0), []

        result = FormatDetectionResult(
            format=winner.format,
            confidence=winner.confidence,
            hints=list(data.hints),
            alternatives=alternatives,
        )
        self._last = result
        return result

    def get_confidence(self, result: Optional[FormatDetectionResult] = None) -> float:
        """Confidence of *result*, or of the most recent detection."""
        result = result or self._last
        return result.confidence if result else 0.0

    def get_parsing_hints(self, result: Optional[FormatDetectionResult] = None) -> list[ParsingHint]:
        """Hints of *result*, or of the most recent detection."""
        result = result or self._last
        return list(result.hints) if result else []
