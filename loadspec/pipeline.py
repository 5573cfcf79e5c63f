"""loadspec command parser pipeline.

Turns a free-text load test description into a validated ``LoadTestSpec``:

    preprocess -> detect format -> build/enhance context -> build prompt
    -> AI call -> parse/validate response -> (on failure) classify & recover

Every top-level ``parse`` call records exactly one ``ParseAttempt`` and one
``DiagnosticInfo`` per executed stage.

Usage::

    python -m loadspec.pipeline "POST https://api.example.com/users with 50 users for 2 minutes"
    python -m loadspec.pipeline "spike test on /api/search" --no-ai --export diagnostics.json
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import Field
from rich.panel import Panel

from loadspec.config import ConfigError, ConfigManager, ParserConfig
from loadspec.monitoring.diagnostics import DiagnosticAnalyzer
from loadspec.monitoring.metrics import ParseAttempt, ParseStage, ParsingMetricsCollector, PerformanceMonitor
from loadspec.ollama_client import AIProvider, AIProviderError, CompletionRequest, OllamaClient
from loadspec.parser.context_enhancer import ContextEnhancer
from loadspec.parser.fallback import IntelligentFallbackParser
from loadspec.parser.format_detector import FormatDetector
from loadspec.parser.models import (
    Ambiguity,
    Assumption,
    CamelModel,
    InputFormat,
    LoadPatternType,
    LoadTestSpec,
    ParseContext,
    StructuredData,
)
from loadspec.parser.preprocessor import InputPreprocessor
from loadspec.parser.response_parser import ParsedResponse, ResponseParser, SchemaValidationError
from loadspec.parser.validator import CommandValidator, ValidationContext, ValidationResult
from loadspec.prompting.prompt_builder import EnhancedPrompt, SmartPromptBuilder
from loadspec.recovery.errors import (
    ErrorLevel,
    ParseError,
    ParseFailure,
    RecoveryContext,
    RecoveryStrategy,
    StrategyKind,
)
from loadspec.recovery.recovery import ErrorRecoveryConfig, ErrorRecoverySystem
from loadspec.utils import (
    ConsoleLogger,
    console,
    format_ms,
    load_json_object,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
    unique,
)

HIGH_CONSTANT_LOAD_USERS = 100
LOW_INPUT_CONFIDENCE = 0.5

_AUTH_HEADERS = {"authorization", "x-api-key", "api-key", "x-auth-token", "cookie"}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ParseOutcome(CamelModel):
    """A successfully parsed command and everything known about how."""

    attempt_id: str
    spec: LoadTestSpec
    confidence: float = Field(ge=0.0, le=1.0)
    assumptions: list[Assumption] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    ambiguities: list[Ambiguity] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    detected_format: InputFormat = InputFormat.NATURAL_LANGUAGE
    format_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    used_fallback: bool = False
    retry_count: int = 0
    recovery_path: list[str] = Field(default_factory=list)


class ParseExplanation(CamelModel):
    extracted_components: dict[str, Any] = Field(default_factory=dict)
    assumptions: list[str] = Field(default_factory=list)
    ambiguity_resolutions: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


@dataclass
class _AttemptState:
    """Per-call bookkeeping feeding the recorded ``ParseAttempt``."""

    detected_format: InputFormat = InputFormat.NATURAL_LANGUAGE
    format_confidence: float = 0.0
    used_fallback: bool = False
    retry_count: int = 0
    recovery_path: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SmartCommandParser:
    """Top-level parser wiring every pipeline stage together.

    Collaborators are injected; anything omitted is built from the config
    manager's current configuration. Per-call state lives in local
    variables, so concurrent ``parse`` calls do not interfere.

    Attributes:
        provider: AI backend, or ``None`` to always use the fallback parser.
        config_manager: Source of tunables, re-read on every call.
        metrics: Shared telemetry store.
        recovery: Failure classification and recovery driver.
    """

    def __init__(
        self,
        provider: Optional[AIProvider] = None,
        config_manager: Optional[ConfigManager] = None,
        metrics: Optional[ParsingMetricsCollector] = None,
        recovery: Optional[ErrorRecoverySystem] = None,
        logger: Optional[ConsoleLogger] = None,
    ) -> None:
        self.provider = provider
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager.get_config()
        self.logger = logger or ConsoleLogger(config.monitoring.log_level)
        self.metrics = metrics or ParsingMetricsCollector(
            retention_ms=config.monitoring.metrics_retention_ms,
            confidence_threshold=config.format_detection.confidence_threshold,
        )
        self.monitor = PerformanceMonitor(self.metrics)
        self.recovery = recovery or ErrorRecoverySystem(
            ErrorRecoveryConfig.from_parser_config(config), logger=self.logger
        )
        self.preprocessor = InputPreprocessor()
        self.prompt_builder = SmartPromptBuilder()
        self.fallback_parser = IntelligentFallbackParser(self.preprocessor)
        self.response_parser = ResponseParser(fallback=self.fallback_parser)
        self.validator = CommandValidator()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def parse(self, raw_input: str) -> ParseOutcome:
        """Parse one command.

        Raises:
            ParseFailure: When every recovery strategy was exhausted.
        """
        config = self.config_manager.get_config()
        attempt_id = f"parse_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        started = time.perf_counter()
        state = _AttemptState()
        outcome: Optional[ParseOutcome] = None
        error_type: Optional[str] = None
        error_message: Optional[str] = None
        try:
            outcome = await self._run(raw_input, attempt_id, config, state)
            return outcome
        except ParseFailure as exc:
            error_type, error_message = exc.error.type, exc.error.message
            raise
        except Exception as exc:
            error_type, error_message = type(exc).__name__, str(exc)
            raise
        finally:
            if config.monitoring.enable_metrics:
                self.metrics.record_parse_attempt(ParseAttempt(
                    id=attempt_id,
                    timestamp=self.metrics.clock(),
                    input_length=len(raw_input) if isinstance(raw_input, str) else 0,
                    detected_format=state.detected_format.value,
                    format_confidence=state.format_confidence,
                    confidence=outcome.confidence if outcome else 0.0,
                    response_time_ms=(time.perf_counter() - started) * 1000,
                    success=outcome is not None,
                    error_type=error_type,
                    error_message=error_message,
                    used_fallback=state.used_fallback,
                    retry_count=state.retry_count,
                    assumptions=len(outcome.assumptions) if outcome else 0,
                    warnings=len(outcome.warnings) if outcome else 0,
                ))

    def explain_parsing(self, spec: LoadTestSpec, context: ParseContext) -> ParseExplanation:
        """Describe what was extracted, assumed, and resolved for *spec*."""
        inferred = context.inferred_fields
        assumed = {
            "testType": inferred.test_type,
            "duration": inferred.duration.to_compact() if inferred.duration else None,
            "loadPattern": inferred.load_pattern,
        }
        suggestions = {
            "method": "Specify the HTTP method explicitly (GET, POST, ...)",
            "url": "Provide the full target URL including scheme and host",
            "userCount": "State the number of virtual users",
            "authentication": "Include the Authorization header the API expects",
            "content-type": "Add a Content-Type header for request bodies",
        }
        return ParseExplanation(
            extracted_components=context.extracted_components.to_json_dict(),
            assumptions=[
                f"{name}: defaulted to {assumed.get(name)}" for name in inferred.defaulted
            ],
            ambiguity_resolutions=[
                f"{a.field}: resolved to {_resolved_value(spec, a)} ({a.reason})" for a in context.ambiguities
            ],
            suggestions=unique(suggestions[a.field] for a in context.ambiguities if a.field in suggestions),
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _stage(self, attempt_id: str, stage: ParseStage, config: ParserConfig):
        if not config.monitoring.enable_diagnostics:
            return nullcontext({})
        return self.monitor.stage(attempt_id, stage)

    async def _run(
        self, raw_input: str, attempt_id: str, config: ParserConfig, state: _AttemptState
    ) -> ParseOutcome:
        raw = raw_input if isinstance(raw_input, str) else ""
        warnings: list[str] = []

        with self._stage(attempt_id, ParseStage.PREPROCESSING, config) as details:
            pre = config.preprocessing
            text = raw
            if len(text) > pre.max_input_length:
                text = text[: pre.max_input_length]
                warnings.append(f"Input truncated to {pre.max_input_length} characters")
            if pre.enable_sanitization:
                text = self.preprocessor.sanitize(text)
            structured = (
                self.preprocessor.extract_structured_data(text)
                if pre.enable_structure_extraction else StructuredData()
            )
            details.update(inputLength=len(raw), urls=len(structured.urls), methods=len(structured.methods))
        self.logger.debug("preprocess", f"{len(structured.urls)} url(s), {len(structured.methods)} method(s)")

        with self._stage(attempt_id, ParseStage.FORMAT_DETECTION, config) as details:
            detector = FormatDetector(
                enable_pattern_matching=config.format_detection.enable_pattern_matching,
                enable_multi_format_detection=config.format_detection.enable_multi_format_detection,
            )
            detection = detector.detect_format(text)
            state.detected_format = detection.format
            state.format_confidence = detection.confidence
            details.update(format=detection.format.value, confidence=detection.confidence)
        threshold = config.format_detection.confidence_threshold
        if detection.confidence < threshold:
            warnings.append(
                f"Format detection confidence {detection.confidence:.2f} is below threshold {threshold:.2f}"
            )
        self.logger.debug("detect", f"{detection.format.value} ({detection.confidence:.2f})")

        with self._stage(attempt_id, ParseStage.CONTEXT_ENHANCEMENT, config) as details:
            enhancement = config.context_enhancement
            enhancer = ContextEnhancer(max_ambiguities=enhancement.max_ambiguities)
            context = enhancer.build_context(raw, structured, detection.hints)
            cleaned = self.preprocessor.normalize_whitespace(text) if pre.normalize_whitespace else text
            context = context.model_copy(update={"cleaned_input": cleaned})
            if pre.separate_requests and detection.format == InputFormat.CONCATENATED_REQUESTS:
                segments = self.preprocessor.separate_requests(text)
                if len(segments) > 1:
                    context = context.model_copy(update={"request_segments": segments})
            if enhancement.enable_inference:
                context = enhancer.infer_missing_fields(context)
            if enhancement.enable_ambiguity_resolution:
                context = enhancer.resolve_ambiguities(context)
            details.update(confidence=context.confidence, ambiguities=len(context.ambiguities))
        self.logger.debug(
            "context", f"confidence {context.confidence:.2f}, {len(context.ambiguities)} ambiguities"
        )

        if self.provider is None or not config.ai_provider.enabled:
            self.logger.warn("pipeline", "AI provider unavailable; using fallback parser")
            warnings.append("AI provider unavailable; used fallback parser")
            parsed, validation = self._fallback_attempt(attempt_id, context, config)
            state.used_fallback = True
        else:
            prompt = self.prompt_builder.build_prompt(context)
            try:
                parsed, validation = await self._ai_attempt(attempt_id, prompt, context, config)
            except (AIProviderError, SchemaValidationError) as exc:
                error = self.recovery.classify_error(exc, _error_level(exc), {"attemptId": attempt_id})
                self.logger.warn("pipeline", f"{error.type}: {error.message}")
                parsed, validation = await self._recover(error, attempt_id, prompt, context, config, state)
                warnings.append(f"Recovered from {error.type} via {' -> '.join(state.recovery_path)}")
            state.used_fallback = state.used_fallback or parsed.used_fallback

        warnings.extend(parsed.warnings)
        warnings.extend(self._input_warnings(context, parsed.spec))
        warnings.extend(issue.message for issue in validation.warnings)

        return ParseOutcome(
            attempt_id=attempt_id,
            spec=parsed.spec,
            confidence=validation.confidence,
            assumptions=_unique_assumptions(parsed.assumptions),
            warnings=unique(warnings),
            ambiguities=_unique_ambiguities([*context.ambiguities, *parsed.ambiguities]),
            suggestions=unique([*parsed.suggestions, *validation.suggestions]),
            detected_format=detection.format,
            format_confidence=detection.confidence,
            used_fallback=state.used_fallback,
            retry_count=state.retry_count,
            recovery_path=list(state.recovery_path),
        )

    async def _ai_attempt(
        self,
        attempt_id: str,
        prompt: EnhancedPrompt,
        context: ParseContext,
        config: ParserConfig,
    ) -> tuple[ParsedResponse, ValidationResult]:
        assert self.provider is not None
        ai = config.ai_provider
        with self._stage(attempt_id, ParseStage.AI_PARSING, config) as details:
            request = CompletionRequest(
                prompt=self.prompt_builder.render_prompt(prompt, context),
                system_prompt=prompt.system_prompt,
                temperature=ai.temperature,
                max_tokens=ai.max_tokens,
            )
            try:
                response = await asyncio.wait_for(self.provider.complete(request), timeout=ai.timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise AIProviderError(f"AI provider request timeout after {ai.timeout_ms}ms") from exc
            except AIProviderError:
                raise
            except Exception as exc:
                # Injected providers may raise anything; recovery classifies on the message.
                raise AIProviderError(str(exc) or type(exc).__name__) from exc
            parsed = self.response_parser.parse(response.text, context)
            details.update(model=response.model, tokens=response.token_usage.total, usedFallback=parsed.used_fallback)
        return parsed, self._validate(attempt_id, parsed, context, config)

    def _fallback_attempt(
        self, attempt_id: str, context: ParseContext, config: ParserConfig
    ) -> tuple[ParsedResponse, ValidationResult]:
        with self._stage(attempt_id, ParseStage.FALLBACK, config) as details:
            result = self.fallback_parser.parse(context.original_input)
            details.update(confidence=result.confidence, assumptions=len(result.assumptions))
        parsed = ParsedResponse(
            spec=result.spec,
            confidence=result.confidence,
            assumptions=result.assumptions,
            warnings=result.warnings,
            used_fallback=True,
        )
        return parsed, self._validate(attempt_id, parsed, context, config)

    def _validate(
        self, attempt_id: str, parsed: ParsedResponse, context: ParseContext, config: ParserConfig
    ) -> ValidationResult:
        with self._stage(attempt_id, ParseStage.VALIDATION, config) as details:
            validation = self.validator.validate(parsed.spec, ValidationContext(
                original_input=context.original_input,
                confidence=parsed.confidence,
                ambiguities=[a.field for a in context.ambiguities],
            ))
            details.update(errors=len(validation.errors), warnings=len(validation.warnings))
            if not validation.can_proceed:
                problems = "; ".join(issue.message for issue in validation.errors)
                raise SchemaValidationError(f"Specification failed validation: {problems}")
        return validation

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _available_strategies(self, error: ParseError, config: ParserConfig) -> list[RecoveryStrategy]:
        strategies: list[RecoveryStrategy] = []
        own = error.recovery_strategy
        if own.strategy == StrategyKind.RETRY:
            for attempt_number in range(2, config.ai_provider.max_retries + 1):
                strategies.append(self.recovery.create_retry_strategy(
                    own.confidence, attempt_number, retry_delay_ms=own.retry_delay_ms
                ))
        fallback = config.fallback
        if fallback.enable_smart_fallback and fallback.max_fallback_attempts > 0:
            strategies.append(self.recovery.create_fallback_strategy(fallback.fallback_confidence_threshold))
        return strategies

    async def _recover(
        self,
        error: ParseError,
        attempt_id: str,
        prompt: EnhancedPrompt,
        context: ParseContext,
        config: ParserConfig,
        state: _AttemptState,
    ) -> tuple[ParsedResponse, ValidationResult]:
        recovery_context = RecoveryContext(
            original_input=context.original_input,
            available_strategies=self._available_strategies(error, config),
            timeout_ms=config.ai_provider.timeout_ms * (config.ai_provider.max_retries + 1),
            last_error=error,
        )

        async def attempt(strategy: RecoveryStrategy, rctx: RecoveryContext) -> tuple[ParsedResponse, ValidationResult]:
            if strategy.strategy == StrategyKind.FALLBACK:
                result = self._fallback_attempt(attempt_id, context, config)
                state.used_fallback = True
                return result
            next_prompt = prompt
            if strategy.strategy == StrategyKind.ENHANCE_PROMPT:
                failure = rctx.last_error.message if rctx.last_error else error.message
                next_prompt = self.prompt_builder.build_recovery_prompt(context, failure)
            try:
                return await self._ai_attempt(attempt_id, next_prompt, context, config)
            except (AIProviderError, SchemaValidationError) as exc:
                raise ParseFailure(self.recovery.classify_error(exc, _error_level(exc))) from exc

        result = await self.recovery.recover(error, recovery_context, attempt)
        state.retry_count = result.attempts_used
        state.recovery_path = list(result.recovery_path)
        if not result.success:
            last = result.error or error
            self.logger.error("pipeline", f"recovery failed: {result.summary()}")
            raise ParseFailure(last, result.recovery_path, result.attempts_used)
        self.logger.warn("pipeline", result.summary())
        return result.result

    # ------------------------------------------------------------------
    # Warnings
    # ------------------------------------------------------------------

    @staticmethod
    def _input_warnings(context: ParseContext, spec: LoadTestSpec) -> list[str]:
        warnings = []
        if context.confidence < LOW_INPUT_CONFIDENCE:
            warnings.append(f"Input was unclear; context confidence is {context.confidence:.2f}")
        if context.ambiguities:
            warnings.append(f"{len(context.ambiguities)} ambiguous field(s) were resolved with defaults")
        for request in spec.requests:
            header_names = {name.lower() for name in request.headers}
            if "api" in request.url.lower() and not header_names & _AUTH_HEADERS:
                warnings.append("API endpoint has no Authorization header; add one if the API requires it")
                break
        pattern = spec.load_pattern
        if pattern.type == LoadPatternType.CONSTANT and (pattern.virtual_users or 0) > HIGH_CONSTANT_LOAD_USERS:
            warnings.append(
                f"{pattern.virtual_users} users with a constant load pattern; consider ramping up"
            )
        return warnings


def _error_level(exc: Exception) -> ErrorLevel:
    return ErrorLevel.VALIDATION if isinstance(exc, SchemaValidationError) else ErrorLevel.AI


def _unique_assumptions(assumptions: list[Assumption]) -> list[Assumption]:
    seen: set[tuple[str, str]] = set()
    result = []
    for assumption in assumptions:
        key = (assumption.field, assumption.assumed_value)
        if key not in seen:
            seen.add(key)
            result.append(assumption)
    return result


def _unique_ambiguities(ambiguities: list[Ambiguity]) -> list[Ambiguity]:
    seen: set[str] = set()
    result = []
    for ambiguity in ambiguities:
        if ambiguity.field not in seen:
            seen.add(ambiguity.field)
            result.append(ambiguity)
    return result


def _resolved_value(spec: LoadTestSpec, ambiguity: Ambiguity) -> str:
    first = spec.requests[0] if spec.requests else None
    if ambiguity.field == "method" and first:
        return first.method.value
    if ambiguity.field == "url" and first:
        return first.url
    if ambiguity.field == "userCount" and spec.load_pattern.virtual_users is not None:
        return str(spec.load_pattern.virtual_users)
    if ambiguity.field in ("authentication", "content-type") and first:
        wanted = "authorization" if ambiguity.field == "authentication" else "content-type"
        value = next((v for k, v in first.headers.items() if k.lower() == wanted), None)
        return value or "none"
    return ambiguity.possible_values[0] if ambiguity.possible_values else "unresolved"


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


async def _run_cli(args: Any) -> int:
    config_manager = ConfigManager(ParserConfig.from_env())
    if args.config:
        try:
            config_manager.update_config(load_json_object(args.config))
        except (OSError, ValueError, ConfigError) as exc:
            print_error(f"Cannot use config file {args.config}: {exc}")
            return 2
    config = config_manager.get_config()
    if args.no_ai:
        config.ai_provider.enabled = False
    if args.ollama_url:
        config.ollama.url = args.ollama_url
    if args.model:
        config.ollama.model = args.model
    config_manager = ConfigManager(config)

    provider: Optional[AIProvider] = None
    if config.ai_provider.enabled:
        client = OllamaClient(
            base_url=config.ollama.url,
            timeout=max(1, config.ai_provider.timeout_ms // 1000),
            model=config.ollama.model,
            fallback_model=config.ollama.fallback_model,
        )
        if await client.is_available():
            provider = client
        else:
            print_warning(f"Ollama not reachable at {config.ollama.url}; using the fallback parser.")

    parser = SmartCommandParser(provider=provider, config_manager=config_manager)
    exit_code = 0
    try:
        outcome = await parser.parse(args.command)
    except ParseFailure as exc:
        print_error(f"Parsing failed: {exc}")
        for suggestion in exc.error.suggestions:
            console.print(f"  - {suggestion}")
        exit_code = 1
    else:
        console.print(Panel(f"[bold]{outcome.spec.name}[/bold]", style="cyan"))
        print_summary_table({
            "Format": f"{outcome.detected_format.value} ({outcome.format_confidence:.2f})",
            "Confidence": f"{outcome.confidence:.2f}",
            "Requests": len(outcome.spec.requests),
            "Used fallback": outcome.used_fallback,
            "Recovery": " -> ".join(outcome.recovery_path) or "none",
        }, title="Parse result")
        for assumption in outcome.assumptions:
            console.print(f"  [dim]assumed[/dim] {assumption.describe()}")
        for warning in outcome.warnings:
            print_warning(f"  {warning}")
        console.print_json(json.dumps(outcome.spec.to_json_dict()))
        attempts = parser.metrics.get_parse_attempts()
        if attempts:
            print_success(f"Parsed in {format_ms(attempts[-1].response_time_ms)}")

    if args.export:
        analyzer = DiagnosticAnalyzer(parser.metrics, config_manager, logger=parser.logger)
        path = await analyzer.save_diagnostic_data(args.export)
        console.print(f"Diagnostics written to [bold]{path}[/bold]")
    return exit_code


def main() -> None:
    """CLI entry point for ``python -m loadspec.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="loadspec -- turn a load test description into a structured specification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m loadspec.pipeline \"GET https://api.example.com/health 20 users 1 minute\"\n"
            "  python -m loadspec.pipeline \"curl -X POST ...\" --no-ai --export diag.json\n"
        ),
    )
    parser.add_argument("command", help="The load test description to parse")
    parser.add_argument("--no-ai", action="store_true", help="Skip the AI provider and use the fallback parser")
    parser.add_argument("--export", default=None, help="Write diagnostic data as JSON to this file")
    parser.add_argument("--config", default=None, help="JSON file with a partial camelCase configuration")
    parser.add_argument("--ollama-url", default=None, help="Ollama base URL (default: http://localhost:11434)")
    parser.add_argument("--model", default=None, help="Primary Ollama model")

    args = parser.parse_args()
    sys.exit(asyncio.run(_run_cli(args)))


if __name__ == "__main__":
    main()
