"""loadspec configuration.

Centralised, typed configuration for every parsing stage. All settings use
Pydantic v2 models so they can be validated at construction time and
serialised to/from JSON or environment variables without boiler-plate.

``ConfigManager`` owns the process-wide configuration: reads hand out deep
copies and updates replace the whole object, so callers never share mutable
state with the pipeline.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class ConfigError(Exception):
    """Raised when a configuration update fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PreprocessingConfig(_Section):
    """Input sanitisation and structure extraction."""

    enable_sanitization: bool = Field(default=True)
    enable_structure_extraction: bool = Field(default=True)
    max_input_length: int = Field(default=10000, gt=0, description="Inputs are truncated beyond this")
    normalize_whitespace: bool = Field(default=True)
    separate_requests: bool = Field(default=True)


class FormatDetectionConfig(_Section):
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    enable_multi_format_detection: bool = Field(default=True)
    enable_pattern_matching: bool = Field(default=True)


class ContextEnhancementConfig(_Section):
    enable_inference: bool = Field(default=True)
    enable_ambiguity_resolution: bool = Field(default=True)
    max_ambiguities: int = Field(default=5, ge=0)
    inference_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)


class AIProviderConfig(_Section):
    """Tunables for the AI-assisted parsing step."""

    enabled: bool = Field(default=True, description="Set False to go straight to the fallback parser")
    max_retries: int = Field(default=3, ge=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    enable_validation_retries: bool = Field(default=True)
    timeout_ms: int = Field(default=30000, gt=0)
    retry_delay_ms: int = Field(default=1000, ge=0, description="Base delay for retry backoff")


class FallbackConfig(_Section):
    enable_smart_fallback: bool = Field(default=True)
    fallback_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_fallback_attempts: int = Field(default=2, ge=0)


class MonitoringConfig(_Section):
    enable_metrics: bool = Field(default=True)
    enable_diagnostics: bool = Field(default=True)
    log_level: str = Field(default="info", pattern="^(debug|info|warn|error)$")
    metrics_retention_ms: int = Field(default=86_400_000, gt=0, description="24 hours")


class OllamaConfig(_Section):
    """Configuration for the local Ollama server used as AI provider."""

    url: str = Field(default="http://localhost:11434")
    model: str = Field(default="qwen2.5-coder:14b")
    fallback_model: str = Field(default="llama3.1:8b")


class ParserConfig(_Section):
    """Every tunable consumed by the parsing pipeline."""

    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    format_detection: FormatDetectionConfig = Field(default_factory=FormatDetectionConfig)
    context_enhancement: ContextEnhancementConfig = Field(default_factory=ContextEnhancementConfig)
    ai_provider: AIProviderConfig = Field(default_factory=AIProviderConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file.

        Returns:
            The path where the file was written.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2, by_alias=True), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "ParserConfig":
        """Load a previously-saved configuration from JSON.

        Args:
            path: The JSON file to read.

        Returns:
            A validated ``ParserConfig`` instance.
        """
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "ParserConfig":
        """Build a ``ParserConfig`` from environment variables.

        Recognised variables (all optional):
            LOADSPEC_OLLAMA_URL, LOADSPEC_MODEL, LOADSPEC_FALLBACK_MODEL,
            LOADSPEC_TIMEOUT_MS, LOADSPEC_MAX_RETRIES, LOADSPEC_DISABLE_AI,
            LOADSPEC_LOG_LEVEL, LOADSPEC_MAX_INPUT_LENGTH.
        """
        ollama_kwargs: dict[str, Any] = {}
        if os.environ.get("LOADSPEC_OLLAMA_URL"):
            ollama_kwargs["url"] = os.environ["LOADSPEC_OLLAMA_URL"]
        if os.environ.get("LOADSPEC_MODEL"):
            ollama_kwargs["model"] = os.environ["LOADSPEC_MODEL"]
        if os.environ.get("LOADSPEC_FALLBACK_MODEL"):
            ollama_kwargs["fallback_model"] = os.environ["LOADSPEC_FALLBACK_MODEL"]

        ai_kwargs: dict[str, Any] = {}
        if os.environ.get("LOADSPEC_TIMEOUT_MS"):
            ai_kwargs["timeout_ms"] = int(os.environ["LOADSPEC_TIMEOUT_MS"])
        if os.environ.get("LOADSPEC_MAX_RETRIES"):
            ai_kwargs["max_retries"] = int(os.environ["LOADSPEC_MAX_RETRIES"])
        if os.environ.get("LOADSPEC_DISABLE_AI", "").lower() in ("1", "true", "yes"):
            ai_kwargs["enabled"] = False

        monitoring_kwargs: dict[str, Any] = {}
        if os.environ.get("LOADSPEC_LOG_LEVEL"):
            monitoring_kwargs["log_level"] = os.environ["LOADSPEC_LOG_LEVEL"].lower()

        preprocessing_kwargs: dict[str, Any] = {}
        if os.environ.get("LOADSPEC_MAX_INPUT_LENGTH"):
            preprocessing_kwargs["max_input_length"] = int(os.environ["LOADSPEC_MAX_INPUT_LENGTH"])

        return cls(
            preprocessing=PreprocessingConfig(**preprocessing_kwargs),
            ai_provider=AIProviderConfig(**ai_kwargs),
            monitoring=MonitoringConfig(**monitoring_kwargs),
            ollama=OllamaConfig(**ollama_kwargs),
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_validation_error(exc: ValidationError) -> list[str]:
    errors: list[str] = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"])
        errors.append(f"{location}: {err['msg']}")
    return errors


class ConfigManager:
    """Owner of the process-wide ``ParserConfig``.

    Constructed once at startup and passed to every pipeline stage that
    needs tunables.
    """

    def __init__(self, config: ParserConfig | None = None) -> None:
        self._config = config.model_copy(deep=True) if config else ParserConfig()

    def get_config(self) -> ParserConfig:
        """Return a deep copy of the active configuration."""
        return self._config.model_copy(deep=True)

    def update_config(self, partial: dict[str, Any]) -> ParserConfig:
        """Deep-merge *partial* into the active configuration.

        Keys may be snake_case or camelCase. The merged result is validated
        as a whole and replaces the active configuration only if valid.

        Raises:
            ConfigError: If the merged configuration is invalid.
        """
        merged = _deep_merge(self._config.model_dump(by_alias=True), _aliased(partial))
        errors = self.validate_config(merged)
        if errors:
            raise ConfigError(errors)
        self._config = ParserConfig.model_validate(merged)
        return self.get_config()

    def reset_to_defaults(self) -> ParserConfig:
        self._config = ParserConfig()
        return self.get_config()

    @staticmethod
    def validate_config(config: ParserConfig | dict[str, Any]) -> list[str]:
        """Return human-readable problems with *config*; empty when valid."""
        raw = config.model_dump(by_alias=True) if isinstance(config, ParserConfig) else config
        try:
            ParserConfig.model_validate(raw)
        except ValidationError as exc:
            return _format_validation_error(exc)
        return []


def _aliased(partial: dict[str, Any]) -> dict[str, Any]:
    """Rewrite snake_case keys to their camelCase aliases, recursively."""
    result: dict[str, Any] = {}
    for key, value in partial.items():
        alias = to_camel(key) if "_" in key else key
        result[alias] = _aliased(value) if isinstance(value, dict) else value
    return result
