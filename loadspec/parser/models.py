"""Pydantic v2 models for the loadspec command parser.

Defines the working data passed between pipeline stages (structured data,
hints, parse context, ambiguities) and the final ``LoadTestSpec`` artifact
handed to callers. Python attributes are snake_case; the JSON form uses the
camelCase names the AI provider is prompted with.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-serialisable dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FrozenCamelModel(CamelModel):
    """Immutable variant used for per-request pipeline data."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class InputFormat(str, Enum):
    """Syntactic shape of a raw command."""
    CURL_COMMAND = "curl_command"
    HTTP_RAW = "http_raw"
    JSON_WITH_TEXT = "json_with_text"
    MIXED_STRUCTURED = "mixed_structured"
    CONCATENATED_REQUESTS = "concatenated_requests"
    NATURAL_LANGUAGE = "natural_language"


class HintType(str, Enum):
    """Kind of fragment a ``ParsingHint`` points at."""
    METHOD = "method"
    URL = "url"
    HEADERS = "headers"
    BODY = "body"
    COUNT = "count"


class HTTPMethod(str, Enum):
    """HTTP methods a load test request may use."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class TestType(str, Enum):
    """Load test classification."""
    __test__ = False

    LOAD = "load"
    SPIKE = "spike"
    STRESS = "stress"
    ENDURANCE = "endurance"
    VOLUME = "volume"
    BASELINE = "baseline"


class LoadPatternType(str, Enum):
    """Shape of the virtual-user curve."""
    CONSTANT = "constant"
    RAMP_UP = "ramp-up"
    SPIKE = "spike"
    STEP = "step"


class DurationUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"


class VariableType(str, Enum):
    """Generator used to fill a ``{{placeholder}}`` in a payload template."""
    RANDOM_ID = "random_id"
    UUID = "uuid"
    TIMESTAMP = "timestamp"
    RANDOM_STRING = "random_string"
    SEQUENCE = "sequence"
    LITERAL = "literal"
    INCREMENTAL = "incremental"
    CUSTOM = "custom"


_UNIT_SECONDS: dict[DurationUnit, int] = {
    DurationUnit.SECONDS: 1,
    DurationUnit.MINUTES: 60,
    DurationUnit.HOURS: 3600,
}

_UNIT_ALIASES: dict[str, DurationUnit] = {
    "s": DurationUnit.SECONDS,
    "sec": DurationUnit.SECONDS,
    "secs": DurationUnit.SECONDS,
    "second": DurationUnit.SECONDS,
    "seconds": DurationUnit.SECONDS,
    "m": DurationUnit.MINUTES,
    "min": DurationUnit.MINUTES,
    "mins": DurationUnit.MINUTES,
    "minute": DurationUnit.MINUTES,
    "minutes": DurationUnit.MINUTES,
    "h": DurationUnit.HOURS,
    "hr": DurationUnit.HOURS,
    "hrs": DurationUnit.HOURS,
    "hour": DurationUnit.HOURS,
    "hours": DurationUnit.HOURS,
}

_COMPACT_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


# ---------------------------------------------------------------------------
# Preprocessing & detection
# ---------------------------------------------------------------------------

class StructuredData(FrozenCamelModel):
    """Coarse structure pulled out of raw input by the preprocessor."""
    json_blocks: list[str] = Field(default_factory=list, description="Parseable JSON blocks")
    urls: list[str] = Field(default_factory=list, description="Absolute and path-rooted URLs")
    headers: dict[str, str] = Field(default_factory=dict, description="Title-Cased header map")
    methods: list[str] = Field(default_factory=list, description="HTTP methods mentioned")
    key_value_pairs: dict[str, str] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (
            self.json_blocks or self.urls or self.headers or self.methods or self.key_value_pairs
        )


class TextPosition(FrozenCamelModel):
    start: int = Field(default=0, ge=0)
    end: int = Field(default=0, ge=0)


class ParsingHint(FrozenCamelModel):
    """A typed, positioned, confidence-scored fragment of the input."""
    type: HintType
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    position: TextPosition = Field(default_factory=TextPosition)


class FormatCandidate(FrozenCamelModel):
    format: InputFormat
    confidence: float = Field(ge=0.0, le=1.0)


class FormatDetectionResult(FrozenCamelModel):
    """Outcome of one ``FormatDetector.detect_format`` pass."""
    format: InputFormat = Field(default=InputFormat.NATURAL_LANGUAGE)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    hints: list[ParsingHint] = Field(default_factory=list)
    alternatives: list[FormatCandidate] = Field(
        default_factory=list, description="Lower-priority formats whose rules also matched"
    )

    def hints_of(self, hint_type: HintType) -> list[ParsingHint]:
        return [h for h in self.hints if h.type == hint_type]


# ---------------------------------------------------------------------------
# Parse context
# ---------------------------------------------------------------------------

class Duration(CamelModel):
    """Test duration as ``value`` + ``unit``.

    Also accepts compact strings (``"30s"``, ``"5 minutes"``) and bare
    numbers of seconds, which AI providers frequently return instead of the
    structured form.
    """

    value: float = Field(default=30)
    unit: DurationUnit = Field(default=DurationUnit.SECONDS)

    @model_validator(mode="before")
    @classmethod
    def _coerce_shorthand(cls, data: Any) -> Any:
        if isinstance(data, bool):
            return data
        if isinstance(data, (int, float)):
            return {"value": data, "unit": DurationUnit.SECONDS}
        if isinstance(data, str):
            match = _COMPACT_DURATION.match(data)
            if not match:
                raise ValueError(f"unrecognised duration: {data!r}")
            unit = _UNIT_ALIASES.get(match.group(2).lower() or "s")
            if unit is None:
                raise ValueError(f"unrecognised duration unit: {match.group(2)!r}")
            return {"value": float(match.group(1)), "unit": unit}
        if isinstance(data, dict) and isinstance(data.get("unit"), str):
            unit = _UNIT_ALIASES.get(data["unit"].lower())
            if unit is not None:
                return {**data, "unit": unit}
        return data

    def total_seconds(self) -> float:
        return self.value * _UNIT_SECONDS[self.unit]

    def to_compact(self) -> str:
        """Render as ``30s`` / ``5m`` / ``1h``."""
        value = int(self.value) if float(self.value).is_integer() else self.value
        return f"{value}{self.unit.value[0]}"


class ExtractedComponents(FrozenCamelModel):
    """Merged, de-duplicated fragments from preprocessing and detection."""
    methods: list[str] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    bodies: list[str] = Field(default_factory=list)
    counts: list[int] = Field(default_factory=list)


class InferredFields(FrozenCamelModel):
    test_type: Optional[str] = None
    duration: Optional[Duration] = None
    load_pattern: Optional[str] = None
    defaulted: list[str] = Field(
        default_factory=list, description="Fields filled from defaults rather than input"
    )


class Ambiguity(FrozenCamelModel):
    """A field that could not be determined with high confidence."""
    field: str
    possible_values: list[str] = Field(default_factory=list)
    reason: str = ""


class ParseContext(FrozenCamelModel):
    """Working context, enriched stage by stage via ``model_copy(update=...)``."""
    original_input: str = ""
    cleaned_input: str = ""
    extracted_components: ExtractedComponents = Field(default_factory=ExtractedComponents)
    inferred_fields: InferredFields = Field(default_factory=InferredFields)
    ambiguities: list[Ambiguity] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    request_segments: list[str] = Field(
        default_factory=list, description="Separated request blocks for concatenated input"
    )

    def ambiguity_fields(self) -> set[str]:
        return {a.field for a in self.ambiguities}


# ---------------------------------------------------------------------------
# Load test specification
# ---------------------------------------------------------------------------

class VariableDefinition(CamelModel):
    """Generator definition for one payload placeholder."""
    name: str
    type: VariableType = VariableType.RANDOM_STRING
    parameters: dict[str, Any] = Field(default_factory=dict)


class PayloadSpec(CamelModel):
    template: str = Field(default="", description="Body template with {{placeholders}}")
    variables: list[VariableDefinition] = Field(default_factory=list)

    @field_validator("template", mode="before")
    @classmethod
    def _template_as_text(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class ResponseValidation(CamelModel):
    type: str = Field(default="status_code", description="status_code, response_time, content or header")
    condition: str = Field(default="equals")
    expected_value: Any = None


class RequestSpec(CamelModel):
    """One HTTP request in the test."""
    method: HTTPMethod = HTTPMethod.GET
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    payload: Optional[PayloadSpec] = None
    validation: list[ResponseValidation] = Field(default_factory=list)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class LoadStage(CamelModel):
    duration: Duration
    target: int = Field(ge=0)


_PATTERN_ALIASES: dict[str, str] = {
    "ramp": "ramp-up",
    "rampup": "ramp-up",
    "ramp_up": "ramp-up",
    "ramp up": "ramp-up",
    "steady": "constant",
    "steps": "step",
}


class LoadPattern(CamelModel):
    """Virtual-user curve over the test duration."""
    type: LoadPatternType = LoadPatternType.CONSTANT
    virtual_users: Optional[int] = None
    requests_per_second: Optional[float] = None
    ramp_up_time: Optional[Duration] = None
    plateau_time: Optional[Duration] = None
    ramp_down_time: Optional[Duration] = None
    baseline_vus: Optional[int] = None
    spike_intensity: Optional[int] = None
    stages: list[LoadStage] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _PATTERN_ALIASES.get(lowered, lowered)
        return value


class DataExtraction(CamelModel):
    name: str
    source: str = Field(default="body", description="body, header or status")
    expression: str = ""


class WorkflowStep(CamelModel):
    id: str
    name: str = ""
    request: RequestSpec
    think_time: Optional[Duration] = None
    extract: list[DataExtraction] = Field(default_factory=list)


class CorrelationRule(CamelModel):
    source_step: str
    source_field: str
    target_step: str
    target_field: str


_TEST_TYPE_ALIASES: dict[str, str] = {
    "performance": "load",
    "soak": "endurance",
    "benchmark": "baseline",
}


class LoadTestSpec(CamelModel):
    """The pipeline's final artifact."""
    id: str = ""
    name: str = ""
    description: str = ""
    test_type: TestType = TestType.LOAD
    requests: list[RequestSpec] = Field(default_factory=list)
    load_pattern: LoadPattern = Field(default_factory=LoadPattern)
    duration: Optional[Duration] = None
    workflow: Optional[list[WorkflowStep]] = None
    data_correlation: Optional[list[CorrelationRule]] = None

    @field_validator("test_type", mode="before")
    @classmethod
    def _normalise_test_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _TEST_TYPE_ALIASES.get(lowered, lowered)
        return value


# ---------------------------------------------------------------------------
# Outcome metadata
# ---------------------------------------------------------------------------

class Assumption(CamelModel):
    """A default substituted for a value the input did not provide."""
    field: str
    assumed_value: str
    reason: str = ""
    alternatives: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        return f"{self.field}: assumed {self.assumed_value} ({self.reason})"
