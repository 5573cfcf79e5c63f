"""Input sanitisation and coarse structure extraction.

The preprocessor is the first pipeline stage. It never raises: empty or
non-text input degrades to an empty string and an empty ``StructuredData``.
"""

from __future__ import annotations

import json
import re
from typing import Any

from loadspec.parser.models import StructuredData
from loadspec.utils import unique

HTTP_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SPACE_RUNS = re.compile(r" +")
_BLANK_RUNS = re.compile(r"\n{3,}")

# One level of nesting covers request bodies seen in practice.
_JSON_BLOCK = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")

# Absolute URLs, or path-rooted forms not glued to a preceding word
# (so "application/json" is not mistaken for a path).
_URL = re.compile(r"https?://[^\s'\"<>]+|(?<![\w/:.~-])/[A-Za-z0-9_\-.~%{}]+(?:/[^\s'\"<>]*)?")
_URL_TRAILING = ",;)'\"."

_HEADER_LINE = re.compile(r"^[ \t]*([A-Za-z][A-Za-z0-9-]*):[ \t]*([^\r\n\\]+)$", re.MULTILINE)
_HEADER_QUOTED = re.compile(r"['\"]([A-Za-z][A-Za-z-]*)['\"]\s*:\s*['\"]([^'\"\\]+)['\"]")
_HEADER_CURL = re.compile(r"(?:-H|--header)\s+['\"]([A-Za-z][A-Za-z0-9-]*):\s*([^'\"\\]+)['\"]")

_METHOD = re.compile(r"\b(" + "|".join(HTTP_METHODS) + r")\b")
_KEY_VALUE = re.compile(r"(\w+)\s*[:=]\s*([^\n\r,;]+)")

# Headers are only trusted from the line-start form when the key looks like
# a real header name; prose such as "Note: ..." is filtered by this list.
_HEADER_HINT_WORDS = (
    "accept", "authorization", "cache", "content", "cookie", "host", "origin",
    "referer", "user-agent", "x-", "api-key", "if-", "connection", "token",
)

_SEPARATORS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\n\s*-{3,}\s*\n"),
    re.compile(r"\n\s*={3,}\s*\n"),
    re.compile(r"\n\s*Request\s*\d*\s*:?\s*\n", re.IGNORECASE),
    re.compile(r"\n\s*\d+\.\s+(?=\S)"),
)


def _title_case_header(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


def _clean_header_value(value: str) -> str:
    value = value.strip()
    value = re.sub(r"['\"\\]+$", "", value)
    value = re.sub(r"^['\"]", "", value)
    return value.strip()


def _looks_like_header(name: str) -> bool:
    lowered = name.lower()
    return any(lowered.startswith(word) or word in lowered for word in _HEADER_HINT_WORDS)


class InputPreprocessor:
    """Sanitise raw text and pull out URLs, headers, bodies, and methods."""

    def sanitize(self, raw: Any) -> str:
        """Return a cleaned copy of *raw*.

        Control characters (other than newline and tab) are removed, line
        endings normalised, runs of spaces collapsed, each line trimmed, and
        three or more consecutive newlines reduced to a single blank line.
        """
        if not isinstance(raw, str) or not raw:
            return ""
        text = _CONTROL_CHARS.sub(" ", raw)
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = _SPACE_RUNS.sub(" ", text)
        text = "\n".join(line.strip() for line in text.split("\n"))
        text = _BLANK_RUNS.sub("\n\n", text)
        return text.strip()

    def normalize_whitespace(self, text: str) -> str:
        """Collapse all whitespace, newlines included, into single spaces."""
        if not isinstance(text, str):
            return ""
        return re.sub(r"\s+", " ", text).strip()

    def extract_structured_data(self, text: Any) -> StructuredData:
        if not isinstance(text, str) or not text.strip():
            return StructuredData()
        return StructuredData(
            json_blocks=self._extract_json_blocks(text),
            urls=self._extract_urls(text),
            headers=self._extract_headers(text),
            methods=self._extract_methods(text),
            key_value_pairs=self._extract_key_values(text),
        )

    def separate_requests(self, text: str) -> list[str]:
        """Split *text* into individual request descriptions.

        Splits on markdown separators (``---``/``===``), ``Request N:``
        markers, and numbered-list markers. Empty segments are discarded.
        """
        if not isinstance(text, str) or not text.strip():
            return []
        segments = [text]
        for separator in _SEPARATORS:
            next_segments: list[str] = []
            for segment in segments:
                next_segments.extend(separator.split("\n" + segment))
            segments = next_segments
        return [segment.strip() for segment in segments if segment.strip()]

    # ------------------------------------------------------------------
    # Extractors
    # ------------------------------------------------------------------

    def _extract_json_blocks(self, text: str) -> list[str]:
        blocks: list[str] = []
        for match in _JSON_BLOCK.finditer(text):
            block = normalize_json_block(match.group(0))
            if block is not None:
                blocks.append(block)
        return unique(blocks)

    def _extract_urls(self, text: str) -> list[str]:
        urls = []
        for match in _URL.finditer(text):
            url = match.group(0).rstrip(_URL_TRAILING)
            if url and url != "/":
                urls.append(url)
        return unique(urls)

    def _extract_headers(self, text: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        for pattern in (_HEADER_CURL, _HEADER_QUOTED, _HEADER_LINE):
            for match in pattern.finditer(text):
                name, value = match.group(1), _clean_header_value(match.group(2))
                if not value or value.startswith("//"):
                    continue
                if pattern is not _HEADER_CURL and not _looks_like_header(name):
                    continue
                headers.setdefault(_title_case_header(name), value)
        return headers

    def _extract_methods(self, text: str) -> list[str]:
        return unique(match.group(1) for match in _METHOD.finditer(text.upper()))

    def _extract_key_values(self, text: str) -> dict[str, str]:
        pairs: dict[str, str] = {}
        for match in _KEY_VALUE.finditer(text):
            key, value = match.group(1), match.group(2).strip()
            if value.startswith("//"):
                continue
            pairs.setdefault(key, value)
        return pairs


# ---------------------------------------------------------------------------
# Lenient JSON
# ---------------------------------------------------------------------------

def repair_json(text: str) -> str:
    """Best-effort repair of near-JSON: quote style, bare keys, trailing commas."""
    repaired = text.replace("'", '"')
    repaired = re.sub(r"([{,]\s*)([A-Za-z_]\w*)\s*:", r'\1"\2":', repaired)
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    return repaired


def parse_json_lenient(text: str) -> Any | None:
    """Parse *text* as JSON, trying one repair pass; ``None`` if unrecoverable."""
    for candidate in (text, repair_json(text)):
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
    return None


def normalize_json_block(text: str) -> str | None:
    """Return *text* if it is valid JSON, its repaired form if repairable, else ``None``."""
    for candidate in (text, repair_json(text)):
        try:
            json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        return candidate
    return None
