"""Error and recovery records shared by the recovery system and pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorLevel(str, Enum):
    """Pipeline layer a failure originated from."""

    INPUT = "input"
    AI = "ai"
    VALIDATION = "validation"


class StrategyKind(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    ENHANCE_PROMPT = "enhance_prompt"


class RecoveryState(str, Enum):
    """States of one ``recover()`` run."""

    CLASSIFYING = "classifying"
    ATTEMPTING = "attempting"
    DELAYING = "delaying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(frozen=True)
class RecoveryStrategy:
    """A named approach to recovering from a failure.

    Only created through the factories on ``ErrorRecoverySystem``, which
    apply global enable/disable switches via ``can_recover``.
    """

    strategy: StrategyKind
    can_recover: bool
    confidence: float
    estimated_success: float
    retry_delay_ms: Optional[int] = None
    max_retries: Optional[int] = None
    attempt_number: int = 1

    def describe(self) -> str:
        delay = f", delay {self.retry_delay_ms}ms" if self.retry_delay_ms else ""
        return f"{self.strategy.value} (confidence {self.confidence:.2f}{delay})"


@dataclass
class ParseError:
    """A classified pipeline failure."""

    level: ErrorLevel
    type: str
    message: str
    recovery_strategy: RecoveryStrategy
    suggestions: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    original_error: Optional[BaseException] = None
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.error_id,
            "level": self.level.value,
            "type": self.type,
            "message": self.message,
            "suggestions": list(self.suggestions),
            "recoveryStrategy": self.recovery_strategy.strategy.value,
        }


@dataclass
class RecoveryContext:
    """Inputs handed to every recovery attempt.

    Attributes:
        original_input: The raw command being parsed.
        available_strategies: Extra candidates besides the error's own.
        previous_attempts: Strategy names already tried by earlier calls.
        timeout_ms: Optional wall-clock budget for one ``recover()`` call.
    """

    original_input: str
    available_strategies: list[RecoveryStrategy] = field(default_factory=list)
    previous_attempts: list[str] = field(default_factory=list)
    timeout_ms: Optional[int] = None
    last_error: Optional[ParseError] = None


@dataclass
class RecoveryResult:
    success: bool
    confidence: float
    attempts_used: int
    recovery_path: list[str] = field(default_factory=list)
    result: Any = None
    error: Optional[ParseError] = None
    states: list[RecoveryState] = field(default_factory=list)

    def summary(self) -> str:
        status = "RECOVERED" if self.success else "FAILED"
        path = " -> ".join(self.recovery_path) or "none"
        return f"{status} after {self.attempts_used} attempt(s); path: {path}"


class ParseFailure(Exception):
    """Terminal failure of a top-level parse; carries the last ``ParseError``."""

    def __init__(
        self,
        error: ParseError,
        recovery_path: Optional[list[str]] = None,
        attempts_used: int = 0,
    ) -> None:
        self.error = error
        self.recovery_path = list(recovery_path or [])
        self.attempts_used = attempts_used
        self.confidence = 0.0
        super().__init__(f"[{error.level.value}:{error.type}] {error.message}")
