"""Unit tests for shared utilities (loadspec.utils).

Tests cover:
- clamp, unique
- load_json_object / save_json
- format_ms
- ConsoleLogger level filtering
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from rich.console import Console

from loadspec.utils import (
    ConsoleLogger,
    clamp,
    format_ms,
    load_json_object,
    save_json,
    unique,
)


class TestHelpers:
    @pytest.mark.unit
    @pytest.mark.parametrize("value,expected", [(-0.5, 0.0), (0.4, 0.4), (1.7, 1.0)])
    def test_clamp(self, value, expected):
        assert clamp(value) == expected

    @pytest.mark.unit
    def test_clamp_custom_bounds(self):
        assert clamp(0.05, lower=0.1) == 0.1

    @pytest.mark.unit
    def test_unique_preserves_order(self):
        assert unique(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestJsonIO:
    @pytest.mark.unit
    def test_load_json_object(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text('{"aiProvider": {"enabled": false}}', encoding="utf-8")
        assert load_json_object(path) == {"aiProvider": {"enabled": False}}

    @pytest.mark.unit
    def test_load_json_object_rejects_arrays(self, tmp_path: Path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError, match="expected a JSON object"):
            load_json_object(path)

    @pytest.mark.unit
    def test_load_json_object_rejects_malformed_json(self, tmp_path: Path):
        path = tmp_path / "broken.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(ValueError):
            load_json_object(path)

    @pytest.mark.unit
    def test_load_json_object_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_json_object(tmp_path / "missing.json")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_json_creates_parents(self, tmp_path: Path):
        target = tmp_path / "a" / "b" / "out.json"
        await save_json({"key": "värde"}, target)
        assert json.loads(target.read_text(encoding="utf-8")) == {"key": "värde"}


class TestFormatting:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "milliseconds,expected",
        [(850, "850ms"), (-3, "0ms"), (1200, "1.2s"), (59_940, "59.9s"), (95_000, "1m 35s")],
    )
    def test_format_ms(self, milliseconds, expected):
        assert format_ms(milliseconds) == expected


class TestConsoleLogger:
    def _logger(self, level: str) -> tuple[ConsoleLogger, Console]:
        out = Console(record=True, width=120)
        return ConsoleLogger(level, out=out), out

    @pytest.mark.unit
    def test_messages_below_level_dropped(self):
        logger, out = self._logger("warn")
        logger.info("pipeline", "hidden message")
        logger.warn("pipeline", "shown message")
        text = out.export_text()
        assert "hidden message" not in text
        assert "shown message" in text

    @pytest.mark.unit
    def test_component_prefix(self):
        logger, out = self._logger("debug")
        logger.debug("recovery", "retrying")
        assert "[recovery]" in out.export_text()

    @pytest.mark.unit
    def test_enabled_for(self):
        logger, _ = self._logger("info")
        assert logger.enabled_for("error")
        assert not logger.enabled_for("debug")

    @pytest.mark.unit
    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            ConsoleLogger("trace")
