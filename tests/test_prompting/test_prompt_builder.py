"""Unit tests for SmartPromptBuilder (loadspec.prompting.prompt_builder).

Tests cover:
- System prompt composition per input format and confidence
- Example selection rules, relevance scoring and limits
- Clarifications, parsing and fallback instructions
- Prompt rendering and recovery prompts
"""

from __future__ import annotations

import pytest

from loadspec.parser.context_enhancer import ContextEnhancer
from loadspec.parser.models import Ambiguity, ParseContext
from loadspec.prompting.prompt_builder import (
    AMBIGUOUS_INPUT_NOTE,
    EXAMPLE_LIBRARY,
    MAX_EXAMPLES,
    SelectionRule,
    SmartPromptBuilder,
    infer_prompt_format,
    score_example,
)


@pytest.fixture
def builder() -> SmartPromptBuilder:
    return SmartPromptBuilder()


@pytest.fixture
def spike_context(context_builder, natural_language_command) -> ParseContext:
    return ContextEnhancer().infer_missing_fields(context_builder(natural_language_command))


# ---------------------------------------------------------------------------
# Format and system prompt
# ---------------------------------------------------------------------------


class TestSystemPrompt:
    @pytest.mark.unit
    def test_prompt_format_per_input(
        self, context_builder, curl_command, raw_http_request, concatenated_command, natural_language_command
    ):
        assert infer_prompt_format(context_builder(curl_command)) == "curl"
        assert infer_prompt_format(context_builder(raw_http_request)) == "http"
        assert infer_prompt_format(context_builder(concatenated_command)) == "concatenated"
        assert infer_prompt_format(context_builder(natural_language_command)) == "mixed"
        assert infer_prompt_format(context_builder("make it fast")) == "natural"

    @pytest.mark.unit
    def test_confident_curl_prompt(self, builder, curl_context):
        prompt = builder.build_system_prompt(curl_context)
        assert prompt.startswith("You are an assistant that converts load test descriptions")
        assert "The input is a curl command." in prompt
        assert "confidence is low" not in prompt
        assert "Some fields are ambiguous" not in prompt

    @pytest.mark.unit
    def test_low_confidence_and_ambiguity_notes(self, builder, empty_context):
        context = ContextEnhancer().resolve_ambiguities(empty_context)
        prompt = builder.build_system_prompt(context)
        assert "The input is natural language." in prompt
        assert "Input analysis confidence is low." in prompt
        assert "Some fields are ambiguous." in prompt


# ---------------------------------------------------------------------------
# Examples
# ---------------------------------------------------------------------------


class TestExampleSelection:
    @pytest.mark.unit
    def test_post_context_prefers_post_examples(self, builder, curl_context):
        examples = builder.select_relevant_examples(curl_context)
        assert [e.output.id for e in examples] == ["example_post_users", "example_curl_orders"]
        assert all(e.relevance_score == pytest.approx(0.5) for e in examples)

    @pytest.mark.unit
    def test_spike_context_leads_with_spike_example(self, builder, spike_context):
        examples = builder.select_relevant_examples(spike_context)
        assert examples[0].output.id == "example_spike_health"
        assert examples[0].relevance_score == pytest.approx(0.5)

    @pytest.mark.unit
    def test_empty_context_uses_catch_all(self, builder, empty_context):
        examples = builder.select_relevant_examples(empty_context)
        assert [e.output.id for e in examples] == [EXAMPLE_LIBRARY[0].output.id, EXAMPLE_LIBRARY[1].output.id]

    @pytest.mark.unit
    def test_limits_and_uniqueness(self, context_builder, curl_command, natural_language_command):
        rules = tuple(
            SelectionRule(f"everything_{i}", i, lambda ctx: True, lambda ex: True) for i in range(5)
        )
        builder = SmartPromptBuilder(selection_rules=rules)
        for raw in (curl_command, natural_language_command, ""):
            examples = builder.select_relevant_examples(context_builder(raw))
            inputs = [e.input for e in examples]
            assert len(examples) <= MAX_EXAMPLES
            assert len(inputs) == len(set(inputs))

    @pytest.mark.unit
    def test_rules_evaluated_by_priority(self):
        late = SelectionRule("late", 50, lambda ctx: True, lambda ex: True)
        early = SelectionRule("early", 5, lambda ctx: True, lambda ex: True)
        builder = SmartPromptBuilder(selection_rules=(late, early))
        assert [r.name for r in builder.selection_rules] == ["early", "late"]

    @pytest.mark.unit
    def test_score_example_bounded(self, spike_context):
        for example in EXAMPLE_LIBRARY:
            assert 0.0 <= score_example(example, spike_context) <= 1.0


# ---------------------------------------------------------------------------
# Clarifications and instructions
# ---------------------------------------------------------------------------


class TestClarifications:
    @pytest.mark.unit
    def test_one_clarification_per_ambiguity(self, builder, empty_context):
        context = ContextEnhancer().resolve_ambiguities(empty_context)
        clarifications = builder.add_clarifications(context)
        assert clarifications[0] == "HTTP method is unclear. Choose between: GET, POST."
        assert clarifications[1].startswith("Target URL is unclear.")
        assert clarifications[2].startswith("Number of virtual users is unclear.")
        assert clarifications[-1] == AMBIGUOUS_INPUT_NOTE

    @pytest.mark.unit
    def test_unknown_field_uses_generic_text(self, builder):
        context = ParseContext(
            confidence=0.9,
            ambiguities=[Ambiguity(field="region", possible_values=["eu", "us"], reason="two regions named")],
        )
        assert builder.add_clarifications(context) == [
            "region is unclear (two regions named). Options: eu, us."
        ]

    @pytest.mark.unit
    def test_format_note_added(self, builder, curl_context):
        assert builder.add_clarifications(curl_context) == ["Extract all parameters from the curl flags."]


class TestInstructions:
    @pytest.mark.unit
    def test_parsing_instructions_from_components(self, builder, curl_context):
        assert builder.build_parsing_instructions(curl_context) == [
            "Use HTTP method: POST",
            "Target URL: https://api.example.com/users",
            'Include headers: {"Content-Type": "application/json"}',
        ]

    @pytest.mark.unit
    def test_parsing_instructions_from_inference(self, builder, curl_context):
        context = ContextEnhancer().infer_missing_fields(curl_context)
        instructions = builder.build_parsing_instructions(context)
        assert instructions[-3:] == ["Test type: load", "Load pattern: constant", "Duration: 30s"]

    @pytest.mark.unit
    def test_request_segments_listed(self, builder, empty_context):
        context = empty_context.model_copy(update={"request_segments": ["GET /a", "POST /b"]})
        assert builder.build_parsing_instructions(context) == ["Request 1: GET /a", "Request 2: POST /b"]

    @pytest.mark.unit
    def test_fallback_instructions(self, builder, curl_context, empty_context):
        assert len(builder.build_fallback_instructions(curl_context)) == 4
        crowded = empty_context.model_copy(update={
            "confidence": 0.1,
            "ambiguities": [Ambiguity(field=f"f{i}") for i in range(4)],
        })
        extra = builder.build_fallback_instructions(crowded)[4:]
        assert extra == [
            "Input is very unclear; produce the simplest valid GET load test.",
            "Many fields are ambiguous; favour the first candidate for each.",
        ]


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestRendering:
    @pytest.mark.unit
    def test_render_prompt_sections(self, builder, curl_context, curl_command):
        prompt = builder.build_prompt(curl_context)
        text = builder.render_prompt(prompt, curl_context)
        assert text.startswith("## Examples")
        assert '"testType": "load"' in text
        assert "## Parsing instructions\n\n- Use HTTP method: POST" in text
        assert "## If information is missing" in text
        assert text.endswith(f"## Command\n\n{curl_command}")

    @pytest.mark.unit
    def test_render_without_examples(self, curl_context, curl_command):
        builder = SmartPromptBuilder(examples=())
        text = builder.render_prompt(builder.build_prompt(curl_context), curl_context)
        assert "## Examples" not in text
        assert text.startswith("## Clarifications")

    @pytest.mark.unit
    def test_recovery_prompt_explains_failure(self, builder, curl_context):
        prompt = builder.build_recovery_prompt(curl_context, "AI response does not match schema")
        assert prompt.clarifications[-2] == "A previous attempt failed: AI response does not match schema"
        assert prompt.clarifications[-1] == "Return only one JSON object that matches the schema exactly."
        assert prompt.system_prompt == builder.build_system_prompt(curl_context)
