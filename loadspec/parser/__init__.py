"""loadspec command parsing stages.

Sanitises raw load test descriptions, classifies their format, builds an
enriched parse context, turns AI completions into ``LoadTestSpec`` objects,
and provides the deterministic fallback parser and the validator.

Usage::

    from loadspec.parser import InputPreprocessor, FormatDetector, ContextEnhancer

    pre = InputPreprocessor()
    text = pre.sanitize(raw)
    detection = FormatDetector().detect_format(text)
    context = ContextEnhancer().build_context(raw, pre.extract_structured_data(text), detection.hints)
"""

from loadspec.parser.context_enhancer import ContextEnhancer
from loadspec.parser.fallback import FallbackParseResult, IntelligentFallbackParser
from loadspec.parser.format_detector import FormatDetector, FormatRule
from loadspec.parser.models import (
    Ambiguity,
    Assumption,
    FormatDetectionResult,
    InputFormat,
    LoadTestSpec,
    ParseContext,
    ParsingHint,
    StructuredData,
)
from loadspec.parser.preprocessor import InputPreprocessor
from loadspec.parser.response_parser import ParsedResponse, ResponseParser, SchemaValidationError
from loadspec.parser.validator import CommandValidator, ValidationContext, ValidationResult

__all__ = [
    "InputPreprocessor",
    "FormatDetector",
    "FormatRule",
    "ContextEnhancer",
    "ResponseParser",
    "ParsedResponse",
    "SchemaValidationError",
    "IntelligentFallbackParser",
    "FallbackParseResult",
    "CommandValidator",
    "ValidationContext",
    "ValidationResult",
    "Ambiguity",
    "Assumption",
    "FormatDetectionResult",
    "InputFormat",
    "LoadTestSpec",
    "ParseContext",
    "ParsingHint",
    "StructuredData",
]
