"""Diagnostic analysis over collected parse telemetry.

``DiagnosticAnalyzer`` turns the records held by ``ParsingMetricsCollector``
into a ``DiagnosticReport`` (summary, recommendations, configuration deltas,
detailed analysis), drills into single attempts, and groups attempts into
explicitly started and ended debug sessions for manual postmortems.
"""

from __future__ import annotations

import math
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import Field

from loadspec.config import ConfigManager, ParserConfig
from loadspec.monitoring.metrics import (
    DiagnosticInfo,
    ParseAttempt,
    ParsingMetrics,
    ParsingMetricsCollector,
    StageStats,
)
from loadspec.parser.models import CamelModel
from loadspec.utils import ConsoleLogger, save_json

ACCURACY_RECOMMENDATION_THRESHOLD = 0.8
SLOW_RESPONSE_MS = 1500
FALLBACK_RATIO_THRESHOLD = 0.3
RETRY_RATIO_THRESHOLD = 0.5

TIMEOUT_SUGGESTION_LATENCY_MS = 3000
MIN_SUGGESTED_TIMEOUT_MS = 5000
ACCURACY_SUGGESTION_THRESHOLD = 0.7
MIN_SUGGESTED_THRESHOLD = 0.5

RECOMMENDATIONS = {
    "accuracy": "Consider improving format detection patterns or lowering confidence threshold",
    "latency": "Response times are high - consider optimizing AI provider settings or input preprocessing",
    "fallback": "High fallback usage detected - review AI provider configuration and prompts",
    "retry": "High retry rate - consider adjusting retry logic or improving input validation",
}


# ---------------------------------------------------------------------------
# Report models
# ---------------------------------------------------------------------------

class ErrorFrequency(CamelModel):
    type: str
    count: int
    percentage: float


class ReportSummary(CamelModel):
    total_attempts: int = 0
    success_rate: float = 0.0
    detection_accuracy: float = 0.0
    average_response_time: float = 0.0
    most_common_errors: list[ErrorFrequency] = Field(default_factory=list)
    performance_by_stage: list[StageStats] = Field(default_factory=list)


class FallbackUsage(CamelModel):
    frequency: float = 0.0
    success_rate: float = 0.0
    common_triggers: list[str] = Field(default_factory=list)


class DetailedAnalysis(CamelModel):
    slowest_attempts: list[ParseAttempt] = Field(default_factory=list)
    failed_attempts: list[ParseAttempt] = Field(default_factory=list)
    fallback_usage: FallbackUsage = Field(default_factory=FallbackUsage)


class DiagnosticReport(CamelModel):
    """Everything the analyzer derives from one window of attempts."""

    summary: ReportSummary = Field(default_factory=ReportSummary)
    recommendations: list[str] = Field(default_factory=list)
    config_suggestions: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Partial camelCase config accepted by ConfigManager.update_config",
    )
    detailed_analysis: DetailedAnalysis = Field(default_factory=DetailedAnalysis)


class AttemptAnalysis(CamelModel):
    attempt: Optional[ParseAttempt] = None
    diagnostics: list[DiagnosticInfo] = Field(default_factory=list)
    timeline: list[dict[str, Any]] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


@dataclass
class DebugSession:
    """Attempt ids and notes grouped for a manual postmortem."""

    id: str
    start_time: float
    end_time: Optional[float] = None
    parse_attempts: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class DiagnosticAnalyzer:
    """Derive reports, recommendations and config deltas from telemetry.

    Args:
        collector: Source of parse attempts and stage diagnostics.
        config_manager: Receives suggestions in ``apply_config_suggestions``
            and supplies the current values they are compared against.
        logger: Console logger.
    """

    def __init__(
        self,
        collector: ParsingMetricsCollector,
        config_manager: Optional[ConfigManager] = None,
        logger: Optional[ConsoleLogger] = None,
    ) -> None:
        self.collector = collector
        self.config_manager = config_manager or ConfigManager()
        self.logger = logger or ConsoleLogger()
        self._sessions: dict[str, DebugSession] = {}

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(
        self,
        from_timestamp: Optional[float] = None,
        to_timestamp: Optional[float] = None,
    ) -> DiagnosticReport:
        attempts = self.collector.get_parse_attempts(from_timestamp, to_timestamp)
        metrics = self.collector.calculate_metrics(attempts)
        return DiagnosticReport(
            summary=self._summary(attempts, metrics),
            recommendations=self._recommendations(attempts, metrics),
            config_suggestions=self._config_suggestions(metrics, self.config_manager.get_config()),
            detailed_analysis=self._detailed_analysis(attempts),
        )

    @staticmethod
    def _summary(attempts: list[ParseAttempt], metrics: ParsingMetrics) -> ReportSummary:
        errors = sorted(metrics.errors_by_type.items(), key=lambda item: item[1], reverse=True)
        return ReportSummary(
            total_attempts=len(attempts),
            success_rate=metrics.success_rate,
            detection_accuracy=metrics.format_detection_accuracy,
            average_response_time=metrics.average_response_time,
            most_common_errors=[
                ErrorFrequency(type=name, count=count, percentage=count / len(attempts) * 100)
                for name, count in errors[:5]
            ],
            performance_by_stage=metrics.stage_stats,
        )

    @staticmethod
    def _recommendations(attempts: list[ParseAttempt], metrics: ParsingMetrics) -> list[str]:
        if not attempts:
            return []
        recommendations = []
        if metrics.format_detection_accuracy < ACCURACY_RECOMMENDATION_THRESHOLD:
            recommendations.append(RECOMMENDATIONS["accuracy"])
        if metrics.average_response_time > SLOW_RESPONSE_MS:
            recommendations.append(RECOMMENDATIONS["latency"])
        if metrics.fallback_ratio > FALLBACK_RATIO_THRESHOLD:
            recommendations.append(RECOMMENDATIONS["fallback"])
        if metrics.retry_ratio > RETRY_RATIO_THRESHOLD:
            recommendations.append(RECOMMENDATIONS["retry"])
        return recommendations

    @staticmethod
    def _config_suggestions(metrics: ParsingMetrics, config: ParserConfig) -> dict[str, dict[str, Any]]:
        if metrics.total_requests == 0:
            return {}
        suggestions: dict[str, dict[str, Any]] = {}

        timed_out = metrics.errors_by_type.get("ai_timeout", 0) > 0
        if metrics.average_response_time > TIMEOUT_SUGGESTION_LATENCY_MS or timed_out:
            current = config.ai_provider.timeout_ms
            proposed = max(MIN_SUGGESTED_TIMEOUT_MS, math.ceil(metrics.average_response_time * 1.5))
            if proposed > current:
                suggestions["aiProvider"] = {"timeoutMs": proposed}

        if metrics.format_detection_accuracy < ACCURACY_SUGGESTION_THRESHOLD:
            current = config.format_detection.confidence_threshold
            proposed = round(max(MIN_SUGGESTED_THRESHOLD, metrics.average_confidence - 0.1), 2)
            if proposed < current:
                suggestions["formatDetection"] = {"confidenceThreshold": proposed}

        return suggestions

    @staticmethod
    def _detailed_analysis(attempts: list[ParseAttempt]) -> DetailedAnalysis:
        if not attempts:
            return DetailedAnalysis()
        failed = [a for a in attempts if not a.success]
        fallback = [a for a in attempts if a.used_fallback]
        triggers = Counter(a.error_type for a in failed if a.error_type)
        return DetailedAnalysis(
            slowest_attempts=sorted(attempts, key=lambda a: a.response_time_ms, reverse=True)[:10],
            failed_attempts=failed[:10],
            fallback_usage=FallbackUsage(
                frequency=len(fallback) / len(attempts),
                success_rate=(sum(1 for a in fallback if a.success) / len(fallback)) if fallback else 0.0,
                common_triggers=[name for name, _ in triggers.most_common(5)],
            ),
        )

    def apply_config_suggestions(
        self, report: Optional[DiagnosticReport] = None
    ) -> dict[str, dict[str, Any]]:
        """Push the report's config deltas into the config manager.

        Returns:
            The deltas that were applied (empty when there were none).
        """
        report = report or self.generate_report()
        if report.config_suggestions:
            self.config_manager.update_config(report.config_suggestions)
            self.logger.info("diagnostics", f"applied config suggestions: {report.config_suggestions}")
        return report.config_suggestions

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    def analyze_parse_attempt(self, parse_attempt_id: str) -> AttemptAnalysis:
        attempt = self.collector.get_attempt(parse_attempt_id)
        diagnostics = self.collector.get_diagnostics(parse_attempt_id)
        return AttemptAnalysis(
            attempt=attempt,
            diagnostics=diagnostics,
            timeline=[
                {"stage": d.stage.value, "durationMs": d.duration_ms, "success": d.success}
                for d in diagnostics
            ],
            issues=self._identify_issues(attempt, diagnostics),
            suggestions=self._attempt_suggestions(attempt, diagnostics),
        )

    @staticmethod
    def _identify_issues(attempt: Optional[ParseAttempt], diagnostics: list[DiagnosticInfo]) -> list[str]:
        if attempt is None:
            return ["Parse attempt not found"]
        issues = []
        if not attempt.success:
            issues.append(f"Parsing failed: {attempt.error_message or 'Unknown error'}")
        if attempt.response_time_ms > 10_000:
            issues.append("Response time exceeded 10 seconds")
        if attempt.confidence < 0.5:
            issues.append("Low confidence score in parsing result")
        if attempt.retry_count > 2:
            issues.append("High number of retries required")
        failed_stages = [d.stage.value for d in diagnostics if not d.success]
        if failed_stages:
            issues.append(f"Failed stages: {', '.join(failed_stages)}")
        return issues

    @staticmethod
    def _attempt_suggestions(attempt: Optional[ParseAttempt], diagnostics: list[DiagnosticInfo]) -> list[str]:
        if attempt is None:
            return []
        suggestions = []
        if attempt.input_length > 5000:
            suggestions.append("Consider breaking down large inputs into smaller chunks")
        if attempt.assumptions > 3:
            suggestions.append("High number of assumptions made - provide more explicit input")
        if attempt.warnings > 2:
            suggestions.append("Multiple warnings generated - review input format and completeness")
        slow = [d.stage.value for d in diagnostics if d.duration_ms > 2000]
        if slow:
            suggestions.append(f"Optimize slow stages: {', '.join(slow)}")
        return suggestions

    # ------------------------------------------------------------------
    # Debug sessions
    # ------------------------------------------------------------------

    def start_debug_session(self, tags: Optional[list[str]] = None) -> str:
        now = self.collector.clock()
        session_id = f"debug_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"
        self._sessions[session_id] = DebugSession(id=session_id, start_time=now, tags=list(tags or []))
        return session_id

    def end_debug_session(self, session_id: str) -> Optional[DebugSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.end_time = self.collector.clock()
        return session

    def add_to_debug_session(self, session_id: str, parse_attempt_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.parse_attempts.append(parse_attempt_id)
        return True

    def add_debug_note(self, session_id: str, note: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        stamp = datetime.fromtimestamp(self.collector.clock(), tz=timezone.utc).isoformat()
        session.notes.append(f"{stamp}: {note}")
        return True

    def get_debug_session_report(self, session_id: str) -> dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            return {"session": None, "attempts": [], "summary": None}
        attempts = [a for a in self.collector.get_parse_attempts() if a.id in session.parse_attempts]
        end = session.end_time if session.end_time is not None else self.collector.clock()
        return {
            "session": session.to_dict(),
            "attempts": [a.to_json_dict() for a in attempts],
            "summary": {
                "durationMs": (end - session.start_time) * 1000,
                "totalAttempts": len(attempts),
                "successRate": (sum(1 for a in attempts if a.success) / len(attempts)) if attempts else 0.0,
                "averageResponseTime": (
                    sum(a.response_time_ms for a in attempts) / len(attempts) if attempts else 0.0
                ),
            },
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_diagnostic_data(self) -> dict[str, Any]:
        """Report, raw telemetry and debug sessions as one serialisable dict."""
        return {
            "report": self.generate_report().to_json_dict(),
            "rawData": self.collector.export_data(),
            "debugSessions": [s.to_dict() for s in self._sessions.values()],
        }

    async def save_diagnostic_data(self, path: str | Path) -> Path:
        target = Path(path)
        await save_json(self.export_diagnostic_data(), target)
        self.logger.info("diagnostics", f"diagnostic data written to {target}")
        return target
