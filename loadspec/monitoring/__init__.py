"""Parse telemetry, stage timing, and diagnostic analysis.

Usage::

    from loadspec.monitoring import ParsingMetricsCollector, DiagnosticAnalyzer

    collector = ParsingMetricsCollector()
    report = DiagnosticAnalyzer(collector).generate_report()
    print(report.recommendations)
"""

from loadspec.monitoring.diagnostics import DebugSession, DiagnosticAnalyzer, DiagnosticReport
from loadspec.monitoring.metrics import (
    DiagnosticInfo,
    ParseAttempt,
    ParseStage,
    ParsingMetrics,
    ParsingMetricsCollector,
    PerformanceMonitor,
)

__all__ = [
    "ParsingMetricsCollector",
    "PerformanceMonitor",
    "DiagnosticAnalyzer",
    "DiagnosticReport",
    "DebugSession",
    "ParseAttempt",
    "ParseStage",
    "ParsingMetrics",
    "DiagnosticInfo",
]
