"""Failure classification and confidence-ranked recovery.

``classify_error`` maps an exception to a ``ParseError`` using an ordered
keyword rule table per level, then attaches the default strategy for the
resulting type. ``recover`` walks candidate strategies in descending
confidence through an explicit state machine::

    CLASSIFYING -> (DELAYING ->) ATTEMPTING -> SUCCEEDED
                                     |
                                     +-> next candidate ... -> EXHAUSTED

A per-error attempt counter caps the number of recovery-function calls at
``max_retries + 1`` for each ``ParseError``.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from loadspec.config import ParserConfig
from loadspec.recovery.errors import (
    DEADLINE_EXCEEDED,
    MAX_RETRIES_EXCEEDED,
    ErrorLevel,
    ParseError,
    ParseFailure,
    RecoveryContext,
    RecoveryResult,
    RecoveryState,
    RecoveryStrategy,
    StrategyKind,
)
from loadspec.utils import ConsoleLogger

RecoveryFn = Callable[[RecoveryStrategy, RecoveryContext], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ErrorRecoveryConfig:
    max_retries: int = 3
    retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 5000
    enable_retry: bool = True
    enable_fallback: bool = True
    enable_prompt_enhancement: bool = True

    @classmethod
    def from_parser_config(cls, config: ParserConfig) -> "ErrorRecoveryConfig":
        return cls(
            max_retries=config.ai_provider.max_retries,
            retry_delay_ms=config.ai_provider.retry_delay_ms,
            enable_retry=config.ai_provider.max_retries > 0,
            enable_fallback=config.fallback.enable_smart_fallback,
            enable_prompt_enhancement=config.ai_provider.enable_validation_retries,
        )


# ---------------------------------------------------------------------------
# Classification table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationRule:
    level: ErrorLevel
    keywords: tuple[str, ...]
    error_type: str


DEFAULT_CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(ErrorLevel.INPUT, ("invalid format",), "invalid_format"),
    ClassificationRule(ErrorLevel.INPUT, ("malformed",), "malformed_input"),
    ClassificationRule(ErrorLevel.INPUT, ("missing", "empty input"), "missing_data"),
    ClassificationRule(ErrorLevel.AI, ("rate limit", "too many requests", "429"), "rate_limit"),
    ClassificationRule(ErrorLevel.AI, ("timeout", "timed out"), "ai_timeout"),
    ClassificationRule(ErrorLevel.AI, ("network", "connect", "connection"), "network_error"),
    ClassificationRule(
        ErrorLevel.AI, ("invalid response", "invalid json", "empty completion", "too short"),
        "invalid_ai_response",
    ),
)

LEVEL_DEFAULT_TYPES: dict[ErrorLevel, str] = {
    ErrorLevel.INPUT: "input_processing_error",
    ErrorLevel.AI: "unknown_error",
    ErrorLevel.VALIDATION: "schema_validation_error",
}

LEVEL_SUGGESTIONS: dict[ErrorLevel, tuple[str, ...]] = {
    ErrorLevel.INPUT: (
        "Check the command for typos or stray characters",
        "Include an HTTP method and a full URL",
        "Describe load as e.g. '50 users for 2 minutes'",
    ),
    ErrorLevel.AI: (
        "Check that the AI provider is running and reachable",
        "Retry later if the provider is rate limiting",
        "Try a simpler, more explicit command",
    ),
    ErrorLevel.VALIDATION: (
        "Verify the URL and HTTP method",
        "Specify user count and duration explicitly",
        "Make sure request bodies are valid JSON",
    ),
}


class ErrorRecoverySystem:
    """Classify pipeline failures and drive recovery strategies.

    Args:
        config: Retry limits, delays, and per-strategy switches.
        rules: Ordered classification rules; first match per level wins.
        sleep: Awaitable delay function, injectable for tests.
        clock: Monotonic clock in seconds, used for ``timeout_ms`` budgets.
        logger: Console logger for recovery progress.
    """

    def __init__(
        self,
        config: Optional[ErrorRecoveryConfig] = None,
        rules: tuple[ClassificationRule, ...] = DEFAULT_CLASSIFICATION_RULES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[ConsoleLogger] = None,
    ) -> None:
        self.config = config or ErrorRecoveryConfig()
        self.rules = rules
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or ConsoleLogger()
        self._attempts: dict[str, int] = {}
        self._stats: Counter[str] = Counter()
        self._strategy_stats: Counter[str] = Counter()
        self._default_strategies: dict[str, Callable[[], RecoveryStrategy]] = {
            "rate_limit": lambda: self.create_retry_strategy(
                0.9, retry_delay_ms=self.config.retry_delay_ms * 2
            ),
            "ai_timeout": lambda: self.create_retry_strategy(0.8),
            "network_error": lambda: self.create_retry_strategy(0.8),
            "invalid_ai_response": lambda: self.create_prompt_enhancement_strategy(0.7),
            "unknown_error": lambda: self.create_retry_strategy(0.5),
            "invalid_format": lambda: self.create_fallback_strategy(0.8),
            "malformed_input": lambda: self.create_fallback_strategy(0.8),
            "missing_data": lambda: self.create_prompt_enhancement_strategy(0.6),
            "input_processing_error": lambda: self.create_fallback_strategy(0.6),
            "schema_validation_error": lambda: self.create_prompt_enhancement_strategy(0.6),
        }

    # ------------------------------------------------------------------
    # Strategy factories
    # ------------------------------------------------------------------

    def create_retry_strategy(
        self,
        confidence: float = 0.6,
        attempt_number: int = 1,
        retry_delay_ms: Optional[int] = None,
    ) -> RecoveryStrategy:
        """Retry whose confidence decays and delay doubles per attempt."""
        decayed = max(0.1, confidence - (attempt_number - 1) * 0.1)
        base_delay = self.config.retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        delay = min(self.config.max_retry_delay_ms, base_delay * 2 ** (attempt_number - 1))
        return RecoveryStrategy(
            strategy=StrategyKind.RETRY,
            can_recover=self.config.enable_retry and attempt_number <= self.config.max_retries,
            confidence=round(decayed, 4),
            estimated_success=round(decayed * 0.9, 4),
            retry_delay_ms=delay,
            max_retries=self.config.max_retries,
            attempt_number=attempt_number,
        )

    def create_fallback_strategy(self, confidence: float = 0.6) -> RecoveryStrategy:
        return RecoveryStrategy(
            strategy=StrategyKind.FALLBACK,
            can_recover=self.config.enable_fallback,
            confidence=confidence,
            estimated_success=confidence,
        )

    def create_prompt_enhancement_strategy(self, confidence: float = 0.7) -> RecoveryStrategy:
        return RecoveryStrategy(
            strategy=StrategyKind.ENHANCE_PROMPT,
            can_recover=self.config.enable_prompt_enhancement,
            confidence=confidence,
            estimated_success=round(confidence * 0.9, 4),
            max_retries=1,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_error(
        self,
        error: BaseException | str,
        level: ErrorLevel,
        context: Optional[dict[str, Any]] = None,
    ) -> ParseError:
        message = str(error) or type(error).__name__
        lowered = message.lower()
        error_type = LEVEL_DEFAULT_TYPES[level]
        for rule in self.rules:
            if rule.level == level and any(k in lowered for k in rule.keywords):
                error_type = rule.error_type
                break

        factory = self._default_strategies.get(error_type)
        strategy = factory() if factory else self._level_default_strategy(level)
        return ParseError(
            level=level,
            type=error_type,
            message=message,
            recovery_strategy=strategy,
            suggestions=list(LEVEL_SUGGESTIONS[level]),
            context=dict(context or {}),
            original_error=error if isinstance(error, BaseException) else None,
        )

    def _level_default_strategy(self, level: ErrorLevel) -> RecoveryStrategy:
        if level == ErrorLevel.INPUT:
            return self.create_fallback_strategy(0.6)
        if level == ErrorLevel.AI:
            return self.create_retry_strategy(0.5)
        return self.create_prompt_enhancement_strategy(0.5)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(
        self,
        parse_error: ParseError,
        recovery_context: RecoveryContext,
        recovery_fn: RecoveryFn,
    ) -> RecoveryResult:
        """Try recoverable strategies in descending confidence order.

        Returns on the first strategy whose ``recovery_fn`` call succeeds.
        Failures raised by ``recovery_fn`` are classified (``ParseFailure``
        keeps its own ``ParseError``) and the next candidate is tried.
        """
        states = [RecoveryState.CLASSIFYING]
        candidates = sorted(
            (
                s for s in [parse_error.recovery_strategy, *recovery_context.available_strategies]
                if s.can_recover
            ),
            key=lambda s: s.confidence,
            reverse=True,
        )
        deadline = (
            self._clock() + recovery_context.timeout_ms / 1000
            if recovery_context.timeout_ms is not None
            else None
        )
        path: list[str] = []
        attempts_used = 0
        last_error = parse_error
        self._stats["recoveries"] += 1

        def finish(success: bool, result: Any = None, confidence: float = 0.0) -> RecoveryResult:
            states.append(RecoveryState.SUCCEEDED if success else RecoveryState.EXHAUSTED)
            self._stats["succeeded" if success else "failed"] += 1
            return RecoveryResult(
                success=success,
                confidence=confidence,
                attempts_used=attempts_used,
                recovery_path=path,
                result=result,
                error=None if success else last_error,
                states=states,
            )

        for strategy in candidates:
            used = self._attempts.get(parse_error.error_id, 0)
            if used > self.config.max_retries:
                path.append(MAX_RETRIES_EXCEEDED)
                self.logger.warn("recovery", f"max retries exceeded for {parse_error.type}")
                return finish(False)

            delay_s = (strategy.retry_delay_ms or 0) / 1000 if strategy.strategy == StrategyKind.RETRY else 0
            if deadline is not None and self._clock() + delay_s > deadline:
                path.append(DEADLINE_EXCEEDED)
                self.logger.warn("recovery", f"recovery deadline reached for {parse_error.type}")
                return finish(False)
            if delay_s > 0:
                states.append(RecoveryState.DELAYING)
                await self._sleep(delay_s)

            states.append(RecoveryState.ATTEMPTING)
            self._attempts[parse_error.error_id] = used + 1
            attempts_used += 1
            path.append(strategy.strategy.value)
            recovery_context.previous_attempts.append(strategy.strategy.value)
            self.logger.debug("recovery", f"attempting {strategy.describe()} for {parse_error.type}")
            try:
                result = await recovery_fn(strategy, recovery_context)
            except Exception as exc:  # noqa: BLE001
                last_error = (
                    exc.error if isinstance(exc, ParseFailure)
                    else self.classify_error(exc, parse_error.level)
                )
                recovery_context.last_error = last_error
                self._strategy_stats[f"{strategy.strategy.value}:failed"] += 1
                self.logger.warn("recovery", f"{strategy.strategy.value} failed: {last_error.message}")
                continue

            self._strategy_stats[f"{strategy.strategy.value}:succeeded"] += 1
            self.logger.info("recovery", f"recovered via {strategy.strategy.value}")
            return finish(True, result, strategy.confidence)

        return finish(False)

    def reset_recovery_attempts(self, error_id: Optional[str] = None) -> None:
        """Forget attempt counts for one error, or for all errors."""
        if error_id is None:
            self._attempts.clear()
        else:
            self._attempts.pop(error_id, None)

    def get_recovery_stats(self) -> dict[str, Any]:
        recoveries = self._stats["recoveries"]
        return {
            "total_recoveries": recoveries,
            "successful": self._stats["succeeded"],
            "failed": self._stats["failed"],
            "success_rate": self._stats["succeeded"] / recoveries if recoveries else 0.0,
            "tracked_errors": len(self._attempts),
            "by_strategy": dict(self._strategy_stats),
        }
