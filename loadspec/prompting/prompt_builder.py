"""Prompt construction for AI-assisted command parsing.

Builds a provider-agnostic ``EnhancedPrompt`` from a ``ParseContext``: a
fixed base instruction block, a format-specific fragment, examples chosen
from a small library by relevance, one clarification per ambiguity, and
parsing/fallback instructions. ``render_prompt`` flattens it into the text
sent to the provider.
"""

from __future__ import annotations

import json
import re
import textwrap
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field

from loadspec.parser.models import (
    Ambiguity,
    Duration,
    DurationUnit,
    HTTPMethod,
    LoadPattern,
    LoadPatternType,
    LoadTestSpec,
    ParseContext,
    PayloadSpec,
    RequestSpec,
    TestType,
    VariableDefinition,
    VariableType,
)

MAX_EXAMPLES = 5
MAX_EXAMPLES_PER_RULE = 2


class PromptExample(BaseModel):
    """A worked input/output pair shown to the model."""
    input: str
    output: LoadTestSpec
    description: str = ""
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)


class EnhancedPrompt(BaseModel):
    system_prompt: str
    contextual_examples: list[PromptExample] = Field(default_factory=list)
    clarifications: list[str] = Field(default_factory=list)
    parsing_instructions: list[str] = Field(default_factory=list)
    fallback_instructions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Fixed text blocks
# ---------------------------------------------------------------------------

_BASE_INSTRUCTIONS = textwrap.dedent("""\
    You are an assistant that converts load test descriptions into structured
    load test specifications. Descriptions arrive as curl commands, raw HTTP
    requests, JSON fragments, natural language, or a mix of these.

    Respond with a single JSON object and nothing else. The object has:
    - "id": string
    - "name": short descriptive name
    - "description": what the test does
    - "testType": one of "load", "spike", "stress", "endurance", "volume", "baseline"
    - "requests": array of {"method", "url", "headers", "payload": {"template", "variables"}}
    - "loadPattern": {"type": "constant" | "ramp-up" | "spike" | "step",
      "virtualUsers", "requestsPerSecond", "rampUpTime", "plateauTime"}
    - "duration": {"value": number, "unit": "seconds" | "minutes" | "hours"}

    Payload templates use {{variableName}} placeholders; declare every
    placeholder in "variables" with a "type" of random_id, uuid, timestamp,
    random_string, sequence, or literal.
    """)

_FORMAT_INSTRUCTIONS: dict[str, str] = {
    "curl": textwrap.dedent("""\
        The input is a curl command. Take the method from -X (GET when absent,
        POST when -d is present), headers from every -H flag, and the request
        body from -d/--data. Load parameters may follow the command in prose.
        """),
    "http": textwrap.dedent("""\
        The input is a raw HTTP request. Take the method and path from the
        request line, build the absolute URL from the Host header, and keep
        the remaining headers and body as-is.
        """),
    "json_mixed": textwrap.dedent("""\
        The input mixes a JSON body with descriptive text. Use the JSON as the
        payload template and read the method, URL, and load parameters from
        the surrounding text.
        """),
    "concatenated": textwrap.dedent("""\
        The input describes several requests. Emit one entry in "requests" per
        described request, preserving their order.
        """),
    "mixed": textwrap.dedent("""\
        The input mixes structured fragments (URLs, headers, methods) with
        prose. Prefer the structured fragments for request fields and the
        prose for load parameters.
        """),
    "natural": textwrap.dedent("""\
        The input is natural language. Infer the request and load parameters
        from the description and choose conservative defaults for anything
        left unstated.
        """),
}

_LOW_CONFIDENCE_NOTE = textwrap.dedent("""\
    Input analysis confidence is low. Prefer simple, conservative values and
    list every assumption you make in the description.
    """)

_AMBIGUITY_NOTE = textwrap.dedent("""\
    Some fields are ambiguous. Resolve each one using the clarifications
    below; when none applies, pick the first listed candidate.
    """)

_CLARIFICATION_TEMPLATES: dict[str, Callable[[Ambiguity], str]] = {
    "method": lambda a: f"HTTP method is unclear. Choose between: {', '.join(a.possible_values)}.",
    "url": lambda a: f"Target URL is unclear. Likely candidates: {', '.join(a.possible_values)}.",
    "userCount": lambda a: (
        f"Number of virtual users is unclear. Consider: {', '.join(a.possible_values)}."
    ),
    "duration": lambda a: f"Test duration is unclear. Consider: {', '.join(a.possible_values)}.",
    "content-type": lambda a: (
        f"A body is present without a Content-Type. Use one of: {', '.join(a.possible_values)}."
    ),
    "authentication": lambda a: (
        f"Authentication is unclear. Options: {', '.join(a.possible_values)}."
    ),
}

_FORMAT_NOTES: dict[str, str] = {
    "curl": "Extract all parameters from the curl flags.",
    "http": "Use the request line and Host header to build the URL.",
    "concatenated": "Several requests were detected; keep them as separate entries.",
    "json_mixed": "Use the embedded JSON as the request payload.",
    "mixed": "Combine structured fragments with the surrounding description.",
}

AMBIGUOUS_INPUT_NOTE = (
    "Input appears ambiguous or incomplete. Make reasonable assumptions and document them clearly."
)

_BASE_FALLBACK_INSTRUCTIONS: tuple[str, ...] = (
    "If the HTTP method is missing, use GET; use POST when a body is present.",
    "If the URL is relative, prefix it with http://localhost:8080.",
    "If no user count is given, use 10 virtual users.",
    "If no duration is given, use 30 seconds.",
)


# ---------------------------------------------------------------------------
# Example library
# ---------------------------------------------------------------------------


def _duration(value: float, unit: DurationUnit) -> Duration:
    return Duration(value=value, unit=unit)


EXAMPLE_LIBRARY: tuple[PromptExample, ...] = (
    PromptExample(
        input="POST to /api/users with 50 users for 2 minutes, body {\"name\": \"{{name}}\"}",
        description="Simple POST load test with a templated body",
        output=LoadTestSpec(
            id="example_post_users",
            name="Load Test - POST /api/users",
            description="POST user creation with 50 concurrent users",
            test_type=TestType.LOAD,
            requests=[RequestSpec(
                method=HTTPMethod.POST,
                url="/api/users",
                headers={"Content-Type": "application/json"},
                payload=PayloadSpec(
                    template='{"name": "{{name}}"}',
                    variables=[VariableDefinition(
                        name="name", type=VariableType.RANDOM_STRING, parameters={"length": 10}
                    )],
                ),
            )],
            load_pattern=LoadPattern(type=LoadPatternType.CONSTANT, virtual_users=50),
            duration=_duration(2, DurationUnit.MINUTES),
        ),
    ),
    PromptExample(
        input="Spike test GET https://api.example.com/health with 1000 users",
        description="Spike test against a health endpoint",
        output=LoadTestSpec(
            id="example_spike_health",
            name="Spike Test - GET /health",
            description="Sudden burst of 1000 users against the health check",
            test_type=TestType.SPIKE,
            requests=[RequestSpec(method=HTTPMethod.GET, url="https://api.example.com/health")],
            load_pattern=LoadPattern(
                type=LoadPatternType.SPIKE, virtual_users=1000, baseline_vus=10, spike_intensity=100
            ),
            duration=_duration(5, DurationUnit.MINUTES),
        ),
    ),
    PromptExample(
        input=(
            "curl -X POST https://api.shop.com/orders -H 'Content-Type: application/json' "
            "-d '{\"productId\": \"{{productId}}\", \"quantity\": 1}' with 20 users"
        ),
        description="curl command with a JSON body",
        output=LoadTestSpec(
            id="example_curl_orders",
            name="Load Test - POST /orders",
            description="Order creation from a curl command",
            test_type=TestType.LOAD,
            requests=[RequestSpec(
                method=HTTPMethod.POST,
                url="https://api.shop.com/orders",
                headers={"Content-Type": "application/json"},
                payload=PayloadSpec(
                    template='{"productId": "{{productId}}", "quantity": 1}',
                    variables=[VariableDefinition(
                        name="productId",
                        type=VariableType.RANDOM_ID,
                        parameters={"min": 1000, "max": 999999},
                    )],
                ),
            )],
            load_pattern=LoadPattern(type=LoadPatternType.CONSTANT, virtual_users=20),
            duration=_duration(1, DurationUnit.MINUTES),
        ),
    ),
    PromptExample(
        input="Stress test /api/login ramping up to 200 users over 5 minutes",
        description="Stress test with a ramp-up",
        output=LoadTestSpec(
            id="example_stress_login",
            name="Stress Test - POST /api/login",
            description="Ramp login traffic to 200 users to find the breaking point",
            test_type=TestType.STRESS,
            requests=[RequestSpec(
                method=HTTPMethod.POST,
                url="/api/login",
                headers={"Content-Type": "application/json"},
                payload=PayloadSpec(
                    template='{"username": "{{username}}", "password": "secret"}',
                    variables=[VariableDefinition(
                        name="username", type=VariableType.RANDOM_STRING, parameters={"length": 10}
                    )],
                ),
            )],
            load_pattern=LoadPattern(
                type=LoadPatternType.RAMP_UP,
                virtual_users=200,
                ramp_up_time=_duration(2, DurationUnit.MINUTES),
            ),
            duration=_duration(5, DurationUnit.MINUTES),
        ),
    ),
    PromptExample(
        input="GET https://api.example.com/products with header Authorization: Bearer abc123, 25 users",
        description="Authenticated GET",
        output=LoadTestSpec(
            id="example_get_products",
            name="Load Test - GET /products",
            description="Authenticated product listing",
            test_type=TestType.LOAD,
            requests=[RequestSpec(
                method=HTTPMethod.GET,
                url="https://api.example.com/products",
                headers={"Authorization": "Bearer abc123"},
            )],
            load_pattern=LoadPattern(type=LoadPatternType.CONSTANT, virtual_users=25),
            duration=_duration(30, DurationUnit.SECONDS),
        ),
    ),
)


# ---------------------------------------------------------------------------
# Example selection rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionRule:
    """Picks candidate examples when ``applies`` holds for the context."""

    name: str
    priority: int
    applies: Callable[[ParseContext], bool]
    candidates: Callable[[PromptExample], bool]


def _methods(context: ParseContext) -> list[str]:
    return context.extracted_components.methods


def _uses_method(example: PromptExample, method: str) -> bool:
    return any(r.method.value == method for r in example.output.requests)


DEFAULT_SELECTION_RULES: tuple[SelectionRule, ...] = (
    SelectionRule(
        "post_requests", 10,
        lambda ctx: "POST" in _methods(ctx),
        lambda ex: _uses_method(ex, "POST"),
    ),
    SelectionRule(
        "high_user_count", 20,
        lambda ctx: any(c > 100 for c in ctx.extracted_components.counts),
        lambda ex: (ex.output.load_pattern.virtual_users or 0) > 100,
    ),
    SelectionRule(
        "spike_tests", 30,
        lambda ctx: ctx.inferred_fields.test_type == "spike",
        lambda ex: ex.output.test_type == TestType.SPIKE,
    ),
    SelectionRule(
        "get_requests", 40,
        lambda ctx: "GET" in _methods(ctx),
        lambda ex: _uses_method(ex, "GET"),
    ),
    SelectionRule(
        "stress_tests", 50,
        lambda ctx: ctx.inferred_fields.test_type == "stress",
        lambda ex: ex.output.test_type == TestType.STRESS,
    ),
    SelectionRule("catch_all", 1000, lambda ctx: True, lambda ex: True),
)


def _url_tokens(url: str) -> set[str]:
    return {t for t in re.split(r"[/?&=.:]+", url.lower()) if t and t not in ("http", "https", "www")}


def score_example(example: PromptExample, context: ParseContext) -> float:
    """Weighted relevance of *example* to *context* in ``[0, 1]``."""
    score = 0.0
    spec = example.output
    methods = set(context.extracted_components.methods)
    if methods & {r.method.value for r in spec.requests}:
        score += 0.3
    inferred = context.inferred_fields
    if inferred.test_type and inferred.test_type == spec.test_type.value:
        score += 0.3
    if inferred.load_pattern and spec.load_pattern.type.value.startswith(inferred.load_pattern):
        score += 0.2
    context_tokens: set[str] = set()
    for url in context.extracted_components.urls:
        context_tokens |= _url_tokens(url)
    example_tokens: set[str] = set()
    for request in spec.requests:
        example_tokens |= _url_tokens(request.url)
    if context_tokens & example_tokens:
        score += 0.2
    return min(score, 1.0)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def infer_prompt_format(context: ParseContext) -> str:
    """Re-derive the likely input shape from the context alone."""
    text = context.original_input
    components = context.extracted_components
    if re.search(r"\bcurl\s", text, re.IGNORECASE):
        return "curl"
    if re.search(r"^(GET|POST|PUT|DELETE|PATCH|HEAD|OPTIONS)\s+\S+\s+HTTP/\d", text, re.MULTILINE):
        return "http"
    if len(components.methods) > 1 or len(components.urls) > 1:
        return "concatenated"
    if components.bodies and len(text) > 100:
        return "json_mixed"
    if components.urls or components.methods:
        return "mixed"
    return "natural"


class SmartPromptBuilder:
    """Compose prompts tailored to one parse context.

    Args:
        examples: Library to select worked examples from.
        selection_rules: Example selection rules; evaluated by ascending
            ``priority``.
    """

    def __init__(
        self,
        examples: tuple[PromptExample, ...] = EXAMPLE_LIBRARY,
        selection_rules: tuple[SelectionRule, ...] = DEFAULT_SELECTION_RULES,
    ) -> None:
        self.examples = examples
        self.selection_rules = tuple(sorted(selection_rules, key=lambda r: r.priority))

    def build_prompt(self, context: ParseContext) -> EnhancedPrompt:
        return EnhancedPrompt(
            system_prompt=self.build_system_prompt(context),
            contextual_examples=self.select_relevant_examples(context),
            clarifications=self.add_clarifications(context),
            parsing_instructions=self.build_parsing_instructions(context),
            fallback_instructions=self.build_fallback_instructions(context),
        )

    def build_system_prompt(self, context: ParseContext) -> str:
        parts = [_BASE_INSTRUCTIONS, _FORMAT_INSTRUCTIONS[infer_prompt_format(context)]]
        if context.confidence < 0.5:
            parts.append(_LOW_CONFIDENCE_NOTE)
        if context.ambiguities:
            parts.append(_AMBIGUITY_NOTE)
        return "\n".join(parts).strip()

    def select_relevant_examples(self, context: ParseContext) -> list[PromptExample]:
        """Top examples per matching rule, deduplicated, at most five."""
        selected: list[PromptExample] = []
        seen: set[str] = set()
        for rule in self.selection_rules:
            if len(selected) >= MAX_EXAMPLES:
                break
            if not rule.applies(context):
                continue
            scored = sorted(
                (
                    example.model_copy(update={"relevance_score": score_example(example, context)})
                    for example in self.examples
                    if rule.candidates(example)
                ),
                key=lambda ex: ex.relevance_score,
                reverse=True,
            )
            for example in scored[:MAX_EXAMPLES_PER_RULE]:
                if example.input in seen or len(selected) >= MAX_EXAMPLES:
                    continue
                seen.add(example.input)
                selected.append(example)
        return selected

    def add_clarifications(self, context: ParseContext) -> list[str]:
        clarifications = []
        for ambiguity in context.ambiguities:
            template = _CLARIFICATION_TEMPLATES.get(ambiguity.field)
            if template is None:
                clarifications.append(
                    f"{ambiguity.field} is unclear ({ambiguity.reason}). "
                    f"Options: {', '.join(ambiguity.possible_values)}."
                )
            else:
                clarifications.append(template(ambiguity))
        note = _FORMAT_NOTES.get(infer_prompt_format(context))
        if note:
            clarifications.append(note)
        if context.confidence < 0.6:
            clarifications.append(AMBIGUOUS_INPUT_NOTE)
        return clarifications

    def build_parsing_instructions(self, context: ParseContext) -> list[str]:
        components = context.extracted_components
        inferred = context.inferred_fields
        instructions: list[str] = []
        if len(components.methods) == 1:
            instructions.append(f"Use HTTP method: {components.methods[0]}")
        if len(components.urls) == 1:
            instructions.append(f"Target URL: {components.urls[0]}")
        if len(components.counts) == 1:
            instructions.append(f"User count: {components.counts[0]}")
        if components.headers:
            instructions.append(f"Include headers: {json.dumps(components.headers)}")
        if inferred.test_type:
            instructions.append(f"Test type: {inferred.test_type}")
        if inferred.load_pattern:
            instructions.append(f"Load pattern: {inferred.load_pattern}")
        if inferred.duration:
            instructions.append(f"Duration: {inferred.duration.to_compact()}")
        for index, segment in enumerate(context.request_segments, start=1):
            instructions.append(f"Request {index}: {segment}")
        return instructions

    def build_fallback_instructions(self, context: ParseContext) -> list[str]:
        instructions = list(_BASE_FALLBACK_INSTRUCTIONS)
        if context.confidence < 0.3:
            instructions.append("Input is very unclear; produce the simplest valid GET load test.")
        if len(context.ambiguities) > 3:
            instructions.append("Many fields are ambiguous; favour the first candidate for each.")
        return instructions

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_prompt(self, prompt: EnhancedPrompt, context: ParseContext) -> str:
        """Flatten *prompt* into the user message sent to the provider."""
        sections: list[str] = []
        if prompt.contextual_examples:
            lines = ["## Examples", ""]
            for example in prompt.contextual_examples:
                lines.append(f"Input: {example.input}")
                lines.append(f"Output: {json.dumps(example.output.to_json_dict())}")
                lines.append("")
            sections.append("\n".join(lines))
        for title, items in (
            ("## Clarifications", prompt.clarifications),
            ("## Parsing instructions", prompt.parsing_instructions),
            ("## If information is missing", prompt.fallback_instructions),
        ):
            if items:
                sections.append("\n".join([title, "", *(f"- {item}" for item in items)]))
        sections.append(f"## Command\n\n{context.original_input}")
        return "\n\n".join(sections)

    def build_recovery_prompt(self, context: ParseContext, failure: str) -> EnhancedPrompt:
        """Prompt used after a failed attempt; explains what went wrong."""
        prompt = self.build_prompt(context)
        extra = [
            f"A previous attempt failed: {failure}",
            "Return only one JSON object that matches the schema exactly.",
        ]
        return prompt.model_copy(update={"clarifications": [*prompt.clarifications, *extra]})
