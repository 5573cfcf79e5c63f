"""Shared utility functions for loadspec.

Provides JSON I/O, numeric and ordering helpers shared by the pipeline stages,
Rich-based console reporting, and the level-filtered ``ConsoleLogger`` every
stage writes its progress through.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TypeVar

from rich.console import Console
from rich.table import Table

console = Console()

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Numeric / collection helpers
# ---------------------------------------------------------------------------


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clamp *value* into ``[lower, upper]``."""
    return max(lower, min(upper, value))


def unique(items: Iterable[T]) -> list[T]:
    """Return *items* without duplicates, preserving first-seen order."""
    seen: set[Any] = set()
    result: list[T] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json_object(path: str | Path) -> dict[str, Any]:
    """Read a JSON file whose top level must be an object.

    Used for partial configuration files passed on the command line.

    Raises:
        FileNotFoundError: The file does not exist.
        ValueError: The file is not JSON, or its top level is not an object.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data


async def save_json(data: dict[str, Any] | list[Any], path: str | Path) -> None:
    """Write *data* as indented UTF-8 JSON, creating missing directories.

    Serialisation happens on the loop thread; only the file write is pushed
    to the default executor. Values JSON cannot encode are written via ``str``.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    await asyncio.get_running_loop().run_in_executor(None, target.write_text, content, "utf-8")


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_ms(milliseconds: float) -> str:
    """Render a latency for tables.

    ``850`` -> ``"850ms"``, ``1200`` -> ``"1.2s"``, ``95000`` -> ``"1m 35s"``.
    """
    if milliseconds < 1000:
        return f"{max(milliseconds, 0):.0f}ms"
    seconds = milliseconds / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes}m {rest}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_summary_table(rows: dict[str, Any], title: str = "Parse result") -> None:
    """Render *rows* as a label/value table on the shared console."""
    table = Table(title=title, title_justify="left", header_style="bold cyan")
    table.add_column("Field", style="dim", no_wrap=True)
    table.add_column("Value", overflow="fold")
    for label, value in rows.items():
        table.add_row(label, "-" if value is None else str(value))
    console.print(table)


def _status(style: str, message: str) -> None:
    console.print(f"[{style}]{message}[/{style}]", highlight=False)


def print_success(message: str) -> None:
    _status("bold green", message)


def print_error(message: str) -> None:
    _status("bold red", message)


def print_warning(message: str) -> None:
    _status("yellow", message)


# ---------------------------------------------------------------------------
# Level-filtered console logging
# ---------------------------------------------------------------------------

LOG_LEVELS: dict[str, int] = {"debug": 10, "info": 20, "warn": 30, "error": 40}

_LEVEL_STYLES: dict[str, str] = {
    "debug": "dim",
    "info": "cyan",
    "warn": "bold yellow",
    "error": "bold red",
}


class ConsoleLogger:
    """Prefixed, coloured Rich output gated by ``monitoring.logLevel``.

    Messages below the configured level are dropped. Each line is tagged
    with the pipeline component that emitted it, e.g.
    ``[recovery] retrying after rate limit``.
    """

    def __init__(self, level: str = "info", out: Console | None = None) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {level!r}; expected one of {sorted(LOG_LEVELS)}")
        self.level = level
        self.console = out or console

    def enabled_for(self, level: str) -> bool:
        return LOG_LEVELS[level] >= LOG_LEVELS[self.level]

    def log(self, level: str, component: str, message: str) -> None:
        if not self.enabled_for(level):
            return
        style = _LEVEL_STYLES[level]
        self.console.print(
            f"[{style}]{level.upper():<5}[/{style}] [bold]\\[{component}][/bold] {message}",
            highlight=False,
        )

    def debug(self, component: str, message: str) -> None:
        self.log("debug", component, message)

    def info(self, component: str, message: str) -> None:
        self.log("info", component, message)

    def warn(self, component: str, message: str) -> None:
        self.log("warn", component, message)

    def error(self, component: str, message: str) -> None:
        self.log("error", component, message)
