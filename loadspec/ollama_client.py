"""AI provider contract and its async Ollama implementation.

The pipeline only depends on the ``AIProvider`` protocol: ``complete`` takes
a ``CompletionRequest`` and returns a ``CompletionResponse``, raising
``AIProviderError`` on failure. Error messages deliberately contain the
keywords the recovery system classifies on ("timeout", "rate limit",
"network", "invalid response").

Typical usage::

    client = OllamaClient()
    if await client.is_available():
        resp = await client.complete(CompletionRequest(prompt="...", system_prompt="..."))
        print(resp.text)
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field


class AIProviderError(Exception):
    """Raised by providers when a completion cannot be obtained."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion


class CompletionRequest(BaseModel):
    """Provider-agnostic completion request."""

    prompt: str
    system_prompt: str = ""
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    format: str = Field(default="structured", description="'structured' requests JSON output")


class CompletionResponse(BaseModel):
    text: str = Field(default="", description="Generated text")
    model: str = Field(default="", description="Model that produced the response")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    duration_ms: float = Field(default=0.0, description="Server-side generation time in ms")


@runtime_checkable
class AIProvider(Protocol):
    """What the pipeline needs from an AI backend."""

    provider_name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    async def is_available(self) -> bool: ...


class OllamaClient:
    """``AIProvider`` backed by a local Ollama server.

    Each completion is tried on ``model`` and, unless the server reported a
    rate limit, once more on ``fallback_model``. A fresh ``httpx.AsyncClient``
    is opened per call.
    """

    provider_name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: int = 30,
        model: str = "qwen2.5-coder:14b",
        fallback_model: str = "llama3.1:8b",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.model = model
        self.fallback_model = fallback_model

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
        )

    @staticmethod
    def build_payload(request: CompletionRequest, model: str) -> dict[str, Any]:
        """Translate a ``CompletionRequest`` into an ``/api/generate`` body."""
        payload: dict[str, Any] = {
            "model": model,
            "prompt": request.prompt,
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.format == "structured":
            payload["format"] = "json"
        return payload

    @staticmethod
    def to_completion(data: dict[str, Any], model: str) -> CompletionResponse:
        """Map a non-streaming generate body onto a ``CompletionResponse``.

        Ollama reports ``total_duration`` in nanoseconds. Missing or null
        counters read as zero.
        """
        return CompletionResponse(
            text=data.get("response") or "",
            model=data.get("model") or model,
            token_usage=TokenUsage(
                prompt=data.get("prompt_eval_count") or 0,
                completion=data.get("eval_count") or 0,
            ),
            duration_ms=(data.get("total_duration") or 0) / 1_000_000.0,
        )

    def _as_provider_error(self, exc: Exception, model: str) -> AIProviderError:
        if isinstance(exc, httpx.TimeoutException):
            return AIProviderError(f"Ollama request timeout after {self.timeout}s ({model})")
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status == 429:
                return AIProviderError("Ollama rate limit exceeded (HTTP 429)", status_code=429)
            return AIProviderError(
                f"Ollama returned HTTP {status} for {model}: {exc.response.text[:300]}",
                status_code=status,
            )
        if isinstance(exc, httpx.HTTPError):
            return AIProviderError(f"Network error talking to Ollama at {self.base_url}: {exc}")
        return AIProviderError(f"Invalid response from {model}: body is not JSON")

    async def _generate(self, request: CompletionRequest, model: str) -> CompletionResponse:
        try:
            async with self._client() as client:
                response = await client.post("/api/generate", json=self.build_payload(request, model))
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise self._as_provider_error(exc, model) from exc
        if not isinstance(data, dict):
            raise AIProviderError(f"Invalid response from {model}: body is not a JSON object")
        try:
            return self.to_completion(data, model)
        except (TypeError, ValueError) as exc:
            raise AIProviderError(f"Invalid response from {model}: {exc}") from exc

    # ------------------------------------------------------------------
    # AIProvider
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Generate a completion, switching to the fallback model once.

        Raises:
            AIProviderError: When both models fail, the server is rate
                limiting, or the completion is blank.
        """
        try:
            result = await self._generate(request, self.model)
        except AIProviderError as exc:
            if exc.rate_limited or not self.fallback_model or self.fallback_model == self.model:
                raise
            result = await self._generate(request, self.fallback_model)

        if not result.text.strip():
            raise AIProviderError(f"Invalid response: empty completion from {result.model}")
        return result

    async def is_available(self) -> bool:
        """``True`` when the server answers ``GET /api/tags`` with 200."""
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
