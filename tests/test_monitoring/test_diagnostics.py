"""Unit tests for DiagnosticAnalyzer (loadspec.monitoring.diagnostics).

Tests cover:
- generate_report summary, recommendations and detailed analysis
- Config suggestions and apply_config_suggestions
- analyze_parse_attempt issues and suggestions
- Debug sessions
- Export and save
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from loadspec.config import ConfigManager, ParserConfig
from loadspec.monitoring.diagnostics import RECOMMENDATIONS, DiagnosticAnalyzer
from loadspec.monitoring.metrics import (
    DiagnosticInfo,
    ParseAttempt,
    ParseStage,
    ParsingMetricsCollector,
)


@pytest.fixture
def collector(fake_clock) -> ParsingMetricsCollector:
    return ParsingMetricsCollector(clock=fake_clock)


@pytest.fixture
def analyzer(collector, config_manager, quiet_logger) -> DiagnosticAnalyzer:
    return DiagnosticAnalyzer(collector, config_manager, logger=quiet_logger)


def _record(collector: ParsingMetricsCollector, attempt_id: str, **kwargs) -> ParseAttempt:
    attempt = ParseAttempt(id=attempt_id, timestamp=collector.clock(), **kwargs)
    collector.record_parse_attempt(attempt)
    return attempt


def _healthy(collector: ParsingMetricsCollector, attempt_id: str) -> ParseAttempt:
    return _record(
        collector, attempt_id, success=True, confidence=0.9, format_confidence=0.9, response_time_ms=100
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class TestGenerateReport:
    @pytest.mark.unit
    def test_empty_report(self, analyzer):
        report = analyzer.generate_report()
        assert report.summary.total_attempts == 0
        assert report.recommendations == []
        assert report.config_suggestions == {}
        assert report.detailed_analysis.slowest_attempts == []

    @pytest.mark.unit
    def test_healthy_traffic_has_no_recommendations(self, analyzer, collector):
        for i in range(3):
            _healthy(collector, f"a{i}")
        report = analyzer.generate_report()
        assert report.summary.success_rate == 1.0
        assert report.recommendations == []
        assert report.config_suggestions == {}

    @pytest.mark.unit
    def test_all_recommendations(self, analyzer, collector):
        for i in range(2):
            _record(
                collector, f"a{i}", success=True, confidence=0.9, format_confidence=0.1,
                response_time_ms=2000, used_fallback=True, retry_count=1,
            )
        assert analyzer.generate_report().recommendations == [
            "Consider improving format detection patterns or lowering confidence threshold",
            "Response times are high - consider optimizing AI provider settings or input preprocessing",
            "High fallback usage detected - review AI provider configuration and prompts",
            "High retry rate - consider adjusting retry logic or improving input validation",
        ]

    @pytest.mark.unit
    def test_single_recommendation(self, analyzer, collector):
        _record(collector, "slow", success=True, confidence=0.9, format_confidence=0.9, response_time_ms=1600)
        assert analyzer.generate_report().recommendations == [RECOMMENDATIONS["latency"]]

    @pytest.mark.unit
    def test_most_common_errors(self, analyzer, collector):
        _healthy(collector, "ok")
        for i in range(2):
            _record(collector, f"t{i}", error_type="ai_timeout", format_confidence=0.9)
        _record(collector, "r", error_type="rate_limit", format_confidence=0.9)
        errors = analyzer.generate_report().summary.most_common_errors
        assert [(e.type, e.count) for e in errors] == [("ai_timeout", 2), ("rate_limit", 1)]
        assert errors[0].percentage == pytest.approx(50.0)

    @pytest.mark.unit
    def test_detailed_analysis(self, analyzer, collector):
        _record(collector, "fast", success=True, response_time_ms=10, used_fallback=True)
        _record(collector, "slow", success=True, response_time_ms=900)
        _record(collector, "failed", error_type="ai_timeout", response_time_ms=500, used_fallback=True)
        detail = analyzer.generate_report().detailed_analysis
        assert [a.id for a in detail.slowest_attempts] == ["slow", "failed", "fast"]
        assert [a.id for a in detail.failed_attempts] == ["failed"]
        assert detail.fallback_usage.frequency == pytest.approx(2 / 3)
        assert detail.fallback_usage.success_rate == pytest.approx(0.5)
        assert detail.fallback_usage.common_triggers == ["ai_timeout"]

    @pytest.mark.unit
    def test_report_window(self, analyzer, collector, fake_clock):
        _healthy(collector, "early")
        fake_clock.advance(100)
        _healthy(collector, "late")
        report = analyzer.generate_report(from_timestamp=fake_clock.now)
        assert report.summary.total_attempts == 1


# ---------------------------------------------------------------------------
# Config suggestions
# ---------------------------------------------------------------------------


class TestConfigSuggestions:
    @staticmethod
    def _analyzer(collector, quiet_logger, **sections) -> DiagnosticAnalyzer:
        manager = ConfigManager(ParserConfig.model_validate(sections))
        return DiagnosticAnalyzer(collector, manager, logger=quiet_logger)

    @pytest.mark.unit
    def test_timeout_raised_for_slow_responses(self, collector, quiet_logger):
        analyzer = self._analyzer(collector, quiet_logger, aiProvider={"timeoutMs": 5000})
        _record(collector, "a", success=True, confidence=0.9, format_confidence=0.9, response_time_ms=4000)
        assert analyzer.generate_report().config_suggestions == {"aiProvider": {"timeoutMs": 6000}}

    @pytest.mark.unit
    def test_timeout_errors_trigger_minimum_timeout(self, collector, quiet_logger):
        analyzer = self._analyzer(collector, quiet_logger, aiProvider={"timeoutMs": 3000})
        _healthy(collector, "ok")
        _record(collector, "t", error_type="ai_timeout", format_confidence=0.9, response_time_ms=100)
        assert analyzer.generate_report().config_suggestions == {"aiProvider": {"timeoutMs": 5000}}

    @pytest.mark.unit
    def test_timeout_never_lowered(self, analyzer, collector):
        _record(collector, "a", success=True, confidence=0.9, format_confidence=0.9, response_time_ms=4000)
        assert "aiProvider" not in analyzer.generate_report().config_suggestions

    @pytest.mark.unit
    @pytest.mark.parametrize("confidence,expected", [(0.75, 0.65), (0.55, 0.5)])
    def test_threshold_lowered_when_accuracy_poor(self, analyzer, collector, confidence, expected):
        _record(collector, "a", success=True, confidence=confidence, format_confidence=0.3, response_time_ms=100)
        suggestions = analyzer.generate_report().config_suggestions
        assert suggestions == {"formatDetection": {"confidenceThreshold": expected}}

    @pytest.mark.unit
    def test_threshold_never_raised(self, analyzer, collector):
        _record(collector, "a", success=True, confidence=0.95, format_confidence=0.3, response_time_ms=100)
        assert analyzer.generate_report().config_suggestions == {}

    @pytest.mark.unit
    def test_apply_config_suggestions(self, collector, quiet_logger):
        analyzer = self._analyzer(collector, quiet_logger, aiProvider={"timeoutMs": 5000})
        _record(collector, "a", success=True, confidence=0.75, format_confidence=0.3, response_time_ms=4000)

        applied = analyzer.apply_config_suggestions()

        assert applied == {
            "aiProvider": {"timeoutMs": 6000},
            "formatDetection": {"confidenceThreshold": 0.65},
        }
        config = analyzer.config_manager.get_config()
        assert config.ai_provider.timeout_ms == 6000
        assert config.format_detection.confidence_threshold == 0.65

    @pytest.mark.unit
    def test_apply_without_suggestions(self, analyzer, collector):
        _healthy(collector, "ok")
        assert analyzer.apply_config_suggestions() == {}
        assert analyzer.config_manager.get_config() == ParserConfig()


# ---------------------------------------------------------------------------
# Single attempts
# ---------------------------------------------------------------------------


class TestAnalyzeParseAttempt:
    @pytest.mark.unit
    def test_unknown_attempt(self, analyzer):
        analysis = analyzer.analyze_parse_attempt("missing")
        assert analysis.attempt is None
        assert analysis.issues == ["Parse attempt not found"]
        assert analysis.suggestions == []

    @pytest.mark.unit
    def test_troubled_attempt(self, analyzer, collector):
        _record(
            collector, "bad", error_message="AI provider request timeout after 30000ms",
            response_time_ms=12_000, retry_count=3, input_length=6000, assumptions=4, warnings=3,
        )
        collector.record_diagnostic(DiagnosticInfo(
            parse_attempt_id="bad", timestamp=collector.clock(), stage=ParseStage.AI_PARSING,
            duration_ms=11_000, success=False, error="timeout",
        ))
        analysis = analyzer.analyze_parse_attempt("bad")
        assert analysis.issues == [
            "Parsing failed: AI provider request timeout after 30000ms",
            "Response time exceeded 10 seconds",
            "Low confidence score in parsing result",
            "High number of retries required",
            "Failed stages: ai_parsing",
        ]
        assert analysis.suggestions == [
            "Consider breaking down large inputs into smaller chunks",
            "High number of assumptions made - provide more explicit input",
            "Multiple warnings generated - review input format and completeness",
            "Optimize slow stages: ai_parsing",
        ]
        assert analysis.timeline == [{"stage": "ai_parsing", "durationMs": 11_000, "success": False}]

    @pytest.mark.unit
    def test_clean_attempt(self, analyzer, collector):
        _healthy(collector, "ok")
        analysis = analyzer.analyze_parse_attempt("ok")
        assert analysis.issues == []
        assert analysis.suggestions == []


# ---------------------------------------------------------------------------
# Debug sessions
# ---------------------------------------------------------------------------


class TestDebugSessions:
    @pytest.mark.unit
    def test_session_lifecycle(self, analyzer, collector, fake_clock):
        session_id = analyzer.start_debug_session(tags=["checkout"])
        assert session_id.startswith(f"debug_{int(fake_clock.now * 1000)}_")

        _healthy(collector, "a1")
        _record(collector, "a2", error_type="rate_limit", response_time_ms=300)
        assert analyzer.add_to_debug_session(session_id, "a1")
        assert analyzer.add_to_debug_session(session_id, "a2")
        assert analyzer.add_debug_note(session_id, "provider was throttling")

        fake_clock.advance(2)
        session = analyzer.end_debug_session(session_id)
        assert session.end_time == fake_clock.now
        assert session.tags == ["checkout"]

        report = analyzer.get_debug_session_report(session_id)
        assert [a["id"] for a in report["attempts"]] == ["a1", "a2"]
        assert report["summary"] == {
            "durationMs": pytest.approx(2000),
            "totalAttempts": 2,
            "successRate": 0.5,
            "averageResponseTime": pytest.approx(200),
        }

    @pytest.mark.unit
    def test_note_prefixed_with_iso_timestamp(self, analyzer, fake_clock):
        session_id = analyzer.start_debug_session()
        analyzer.add_debug_note(session_id, "hello")
        stamp = datetime.fromtimestamp(fake_clock.now, tz=timezone.utc).isoformat()
        note = analyzer.get_debug_session_report(session_id)["session"]["notes"][0]
        assert note == f"{stamp}: hello"

    @pytest.mark.unit
    def test_unknown_session(self, analyzer):
        assert analyzer.end_debug_session("nope") is None
        assert analyzer.add_to_debug_session("nope", "a1") is False
        assert analyzer.add_debug_note("nope", "x") is False
        assert analyzer.get_debug_session_report("nope") == {"session": None, "attempts": [], "summary": None}

    @pytest.mark.unit
    def test_session_ids_unique(self, analyzer):
        assert analyzer.start_debug_session() != analyzer.start_debug_session()


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    @pytest.mark.unit
    def test_export_diagnostic_data(self, analyzer, collector):
        _healthy(collector, "a1")
        analyzer.start_debug_session()
        data = analyzer.export_diagnostic_data()
        assert set(data) == {"report", "rawData", "debugSessions"}
        assert data["report"]["summary"]["totalAttempts"] == 1
        assert len(data["rawData"]["attempts"]) == 1
        assert len(data["debugSessions"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_diagnostic_data(self, analyzer, collector, tmp_path: Path):
        _healthy(collector, "a1")
        target = await analyzer.save_diagnostic_data(tmp_path / "exports" / "diagnostics.json")
        saved = json.loads(target.read_text(encoding="utf-8"))
        assert saved["rawData"]["attempts"][0]["id"] == "a1"
        assert "recommendations" in saved["report"]
