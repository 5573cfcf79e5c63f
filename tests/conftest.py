"""Shared pytest fixtures for the loadspec test suite.

Provides reusable fixtures for:
- Representative raw commands (curl, raw HTTP, natural language, concatenated)
- A fake AI provider with scripted completions and failures
- Pre-built parse contexts
- Deterministic clocks and sleeps for monitoring and recovery tests
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from loadspec.config import ConfigManager, ParserConfig
from loadspec.ollama_client import AIProviderError, CompletionRequest, CompletionResponse, TokenUsage
from loadspec.parser.context_enhancer import ContextEnhancer
from loadspec.parser.format_detector import FormatDetector
from loadspec.parser.models import ParseContext
from loadspec.parser.preprocessor import InputPreprocessor
from loadspec.utils import ConsoleLogger


# ---------------------------------------------------------------------------
# Sample commands
# ---------------------------------------------------------------------------

CURL_COMMAND = (
    "curl -X POST https://api.example.com/users "
    "-H 'Content-Type: application/json' -d '{\"name\":\"a\"}'"
)

RAW_HTTP_REQUEST = (
    "POST /api/orders HTTP/1.1\n"
    "Host: shop.internal\n"
    "Content-Type: application/json\n"
    "Authorization: Bearer abc123\n"
    "\n"
    '{"sku": "A-1", "qty": 2}'
)

NATURAL_LANGUAGE_COMMAND = "Run a spike test with 200 users against https://shop.internal/checkout for 5 minutes"

CONCATENATED_COMMAND = (
    "1. GET https://api.example.com/products\n"
    "2. POST https://api.example.com/cart {\"id\": 1}"
)


@pytest.fixture
def curl_command() -> str:
    return CURL_COMMAND


@pytest.fixture
def raw_http_request() -> str:
    return RAW_HTTP_REQUEST


@pytest.fixture
def natural_language_command() -> str:
    return NATURAL_LANGUAGE_COMMAND


@pytest.fixture
def concatenated_command() -> str:
    return CONCATENATED_COMMAND


# ---------------------------------------------------------------------------
# Contexts
# ---------------------------------------------------------------------------


def build_context(raw: str) -> ParseContext:
    """Run preprocessing, detection and context building for *raw*."""
    pre = InputPreprocessor()
    text = pre.sanitize(raw)
    detection = FormatDetector().detect_format(text)
    return ContextEnhancer().build_context(raw, pre.extract_structured_data(text), detection.hints)


@pytest.fixture
def context_builder():
    return build_context


@pytest.fixture
def curl_context() -> ParseContext:
    return build_context(CURL_COMMAND)


@pytest.fixture
def empty_context() -> ParseContext:
    return ParseContext(original_input="", cleaned_input="", confidence=0.3)


# ---------------------------------------------------------------------------
# AI provider
# ---------------------------------------------------------------------------


SAMPLE_AI_SPEC: dict[str, Any] = {
    "name": "Create users load test",
    "description": "POST users with 50 virtual users",
    "testType": "load",
    "requests": [
        {
            "method": "POST",
            "url": "https://api.example.com/users",
            "headers": {"Content-Type": "application/json", "Authorization": "Bearer t"},
            "payload": {"template": '{"name": "{{userName}}"}', "variables": []},
        }
    ],
    "loadPattern": {"type": "constant", "virtualUsers": 50},
    "duration": {"value": 2, "unit": "minutes"},
}


class FakeProvider:
    """Scripted ``AIProvider``: each call pops the next text or exception."""

    provider_name = "fake"

    def __init__(self, *outcomes: str | Exception) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return CompletionResponse(text=outcome, model="fake-model", token_usage=TokenUsage(prompt=10, completion=20))

    async def is_available(self) -> bool:
        return True


@pytest.fixture
def sample_ai_json() -> str:
    return json.dumps(SAMPLE_AI_SPEC)


@pytest.fixture
def fake_provider_factory():
    """Factory building a ``FakeProvider`` from scripted outcomes.

    Example::

        provider = fake_provider_factory(AIProviderError("Rate limit exceeded"), valid_json)
    """
    return FakeProvider


@pytest.fixture
def rate_limit_error() -> AIProviderError:
    return AIProviderError("Ollama rate limit exceeded (HTTP 429)", status_code=429)


# ---------------------------------------------------------------------------
# Configuration, clocks, logging
# ---------------------------------------------------------------------------


@pytest.fixture
def config_manager() -> ConfigManager:
    return ConfigManager(ParserConfig())


@pytest.fixture
def quiet_logger() -> ConsoleLogger:
    return ConsoleLogger("error")


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Async stand-in for ``asyncio.sleep`` that records requested delays."""
    return AsyncMock(return_value=None)
