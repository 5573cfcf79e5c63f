"""Prompt construction for the AI-assisted parsing step."""

from .prompt_builder import (
    EXAMPLE_LIBRARY,
    EnhancedPrompt,
    PromptExample,
    SelectionRule,
    SmartPromptBuilder,
)

__all__ = [
    "SmartPromptBuilder",
    "EnhancedPrompt",
    "PromptExample",
    "SelectionRule",
    "EXAMPLE_LIBRARY",
]
