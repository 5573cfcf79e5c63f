"""Parse telemetry collection and stage timing.

Provides Pydantic v2 records for one top-level parse (``ParseAttempt``) and
one pipeline stage execution (``DiagnosticInfo``), the in-memory
``ParsingMetricsCollector`` that keeps them inside a retention window and
aggregates them, and the ``PerformanceMonitor`` that brackets stages.

All timestamps are seconds since the epoch taken from an injectable clock;
durations and latencies are milliseconds.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any, Optional

from pydantic import Field, computed_field

from loadspec.parser.models import CamelModel, FrozenCamelModel


class ParseStage(str, Enum):
    PREPROCESSING = "preprocessing"
    FORMAT_DETECTION = "format_detection"
    CONTEXT_ENHANCEMENT = "context_enhancement"
    AI_PARSING = "ai_parsing"
    VALIDATION = "validation"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ParseAttempt(FrozenCamelModel):
    """Telemetry for one top-level parse call. Written exactly once."""

    id: str
    timestamp: float = Field(..., description="Seconds since the epoch")
    input_length: int = Field(default=0, ge=0)
    detected_format: str = Field(default="natural_language")
    format_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    response_time_ms: float = Field(default=0.0, ge=0.0)
    success: bool = Field(default=False)
    error_type: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    used_fallback: bool = Field(default=False)
    retry_count: int = Field(default=0, ge=0)
    assumptions: int = Field(default=0, ge=0, description="Number of assumptions made")
    warnings: int = Field(default=0, ge=0, description="Number of warnings emitted")


class DiagnosticInfo(FrozenCamelModel):
    """One pipeline stage execution within a parse attempt."""

    parse_attempt_id: str
    timestamp: float
    stage: ParseStage
    details: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = Field(default=0.0, ge=0.0)
    success: bool = Field(default=True)
    error: Optional[str] = Field(default=None)


class StageStats(CamelModel):
    stage: ParseStage
    average_duration_ms: float = 0.0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    executions: int = 0


class ParsingMetrics(CamelModel):
    """Aggregates over a set of parse attempts."""

    total_requests: int = 0
    successful_parses: int = 0
    failed_parses: int = 0
    fallback_used: int = 0
    average_response_time: float = Field(default=0.0, description="Mean latency in ms")
    average_confidence: float = Field(default=0.0, description="Mean confidence of successful parses")
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    format_detection_accuracy: float = Field(
        default=0.0, description="Share of attempts whose format confidence met the threshold"
    )
    retry_count: int = 0
    stage_stats: list[StageStats] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def success_rate(self) -> float:
        return self.successful_parses / self.total_requests if self.total_requests else 0.0

    @computed_field  # type: ignore[misc]
    @property
    def fallback_ratio(self) -> float:
        return self.fallback_used / self.total_requests if self.total_requests else 0.0

    @computed_field  # type: ignore[misc]
    @property
    def retry_ratio(self) -> float:
        return self.retry_count / self.total_requests if self.total_requests else 0.0


def calculate_stage_stats(diagnostics: list[DiagnosticInfo]) -> list[StageStats]:
    """Mean duration and success rate per stage, in first-seen stage order."""
    grouped: dict[ParseStage, list[DiagnosticInfo]] = {}
    for diag in diagnostics:
        grouped.setdefault(diag.stage, []).append(diag)
    return [
        StageStats(
            stage=stage,
            average_duration_ms=sum(d.duration_ms for d in items) / len(items),
            success_rate=sum(1 for d in items if d.success) / len(items),
            executions=len(items),
        )
        for stage, items in grouped.items()
    ]


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

class ParsingMetricsCollector:
    """In-memory store of parse attempts and stage diagnostics.

    Records older than ``retention_ms`` are purged on every write. Reads
    return copies, so callers never hold references into the store.

    Args:
        retention_ms: Retention window in milliseconds (default 24h).
        confidence_threshold: Format confidence counted as an accurate
            detection.
        clock: Returns the current time in seconds since the epoch.
    """

    def __init__(
        self,
        retention_ms: int = 86_400_000,
        confidence_threshold: float = 0.7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention_ms = retention_ms
        self.confidence_threshold = confidence_threshold
        self.clock = clock
        self._attempts: list[ParseAttempt] = []
        self._diagnostics: list[DiagnosticInfo] = []

    # -- writes ------------------------------------------------------------

    def record_parse_attempt(self, attempt: ParseAttempt) -> None:
        self._attempts.append(attempt)
        self._purge()

    def record_diagnostic(self, diagnostic: DiagnosticInfo) -> None:
        self._diagnostics.append(diagnostic)
        self._purge()

    def reset(self) -> None:
        self._attempts = []
        self._diagnostics = []

    def _purge(self) -> None:
        cutoff = self.clock() - self.retention_ms / 1000
        self._attempts = [a for a in self._attempts if a.timestamp > cutoff]
        self._diagnostics = [d for d in self._diagnostics if d.timestamp > cutoff]

    # -- reads -------------------------------------------------------------

    def get_parse_attempts(
        self,
        from_timestamp: Optional[float] = None,
        to_timestamp: Optional[float] = None,
    ) -> list[ParseAttempt]:
        attempts = list(self._attempts)
        if from_timestamp is not None:
            attempts = [a for a in attempts if a.timestamp >= from_timestamp]
        if to_timestamp is not None:
            attempts = [a for a in attempts if a.timestamp <= to_timestamp]
        return attempts

    def get_attempt(self, attempt_id: str) -> Optional[ParseAttempt]:
        return next((a for a in self._attempts if a.id == attempt_id), None)

    def get_diagnostics(self, parse_attempt_id: Optional[str] = None) -> list[DiagnosticInfo]:
        if parse_attempt_id is None:
            return list(self._diagnostics)
        return [d for d in self._diagnostics if d.parse_attempt_id == parse_attempt_id]

    def get_metrics(self) -> ParsingMetrics:
        return self.get_aggregated_metrics()

    def get_aggregated_metrics(
        self,
        from_timestamp: Optional[float] = None,
        to_timestamp: Optional[float] = None,
    ) -> ParsingMetrics:
        attempts = self.get_parse_attempts(from_timestamp, to_timestamp)
        return self.calculate_metrics(attempts)

    def calculate_metrics(self, attempts: list[ParseAttempt]) -> ParsingMetrics:
        if not attempts:
            return ParsingMetrics()

        successful = [a for a in attempts if a.success]
        errors = Counter(a.error_type for a in attempts if not a.success and a.error_type)
        ids = {a.id for a in attempts}
        diagnostics = [d for d in self._diagnostics if d.parse_attempt_id in ids]

        return ParsingMetrics(
            total_requests=len(attempts),
            successful_parses=len(successful),
            failed_parses=len(attempts) - len(successful),
            fallback_used=sum(1 for a in attempts if a.used_fallback),
            average_response_time=sum(a.response_time_ms for a in attempts) / len(attempts),
            average_confidence=(
                sum(a.confidence for a in successful) / len(successful) if successful else 0.0
            ),
            errors_by_type=dict(errors),
            format_detection_accuracy=(
                sum(1 for a in attempts if a.format_confidence >= self.confidence_threshold)
                / len(attempts)
            ),
            retry_count=sum(a.retry_count for a in attempts),
            stage_stats=calculate_stage_stats(diagnostics),
        )

    def export_data(self) -> dict[str, Any]:
        """One JSON-serialisable snapshot of aggregates and raw records."""
        return {
            "metrics": self.get_metrics().to_json_dict(),
            "attempts": [a.to_json_dict() for a in self._attempts],
            "diagnostics": [d.to_json_dict() for d in self._diagnostics],
        }


# ---------------------------------------------------------------------------
# Stage bracketing
# ---------------------------------------------------------------------------

class PerformanceMonitor:
    """Time pipeline stages and record one ``DiagnosticInfo`` per stage.

    Example::

        with monitor.stage(attempt_id, ParseStage.PREPROCESSING) as details:
            details["inputLength"] = len(text)
            ...
    """

    def __init__(self, collector: ParsingMetricsCollector) -> None:
        self.collector = collector
        self._active: dict[tuple[str, ParseStage], float] = {}

    def start_stage(self, parse_attempt_id: str, stage: ParseStage) -> None:
        self._active[(parse_attempt_id, ParseStage(stage))] = self.collector.clock()

    def end_stage(
        self,
        parse_attempt_id: str,
        stage: ParseStage,
        success: bool,
        details: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[DiagnosticInfo]:
        """Close an open stage; returns ``None`` if it was never started."""
        key = (parse_attempt_id, ParseStage(stage))
        started = self._active.pop(key, None)
        if started is None:
            return None
        now = self.collector.clock()
        diagnostic = DiagnosticInfo(
            parse_attempt_id=parse_attempt_id,
            timestamp=now,
            stage=key[1],
            details=dict(details or {}),
            duration_ms=max(0.0, (now - started) * 1000),
            success=success,
            error=error,
        )
        self.collector.record_diagnostic(diagnostic)
        return diagnostic

    @contextmanager
    def stage(self, parse_attempt_id: str, stage: ParseStage) -> Iterator[dict[str, Any]]:
        """Bracket a block as a stage; failures are recorded and re-raised."""
        details: dict[str, Any] = {}
        self.start_stage(parse_attempt_id, stage)
        try:
            yield details
        except Exception as exc:
            self.end_stage(parse_attempt_id, stage, False, details, error=str(exc) or type(exc).__name__)
            raise
        self.end_stage(parse_attempt_id, stage, True, details)

    def get_active_operations(self) -> list[dict[str, Any]]:
        now = self.collector.clock()
        return [
            {"parseAttemptId": attempt_id, "stage": stage.value, "durationMs": (now - started) * 1000}
            for (attempt_id, stage), started in self._active.items()
        ]
