"""Unit tests for ParserConfig and ConfigManager (loadspec.config).

Tests cover:
- Section defaults
- camelCase / snake_case aliasing
- ParserConfig save/load, from_env
- ConfigManager get/update/reset/validate
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from loadspec.config import (
    AIProviderConfig,
    ConfigError,
    ConfigManager,
    MonitoringConfig,
    ParserConfig,
    PreprocessingConfig,
)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class TestSectionDefaults:
    @pytest.mark.unit
    def test_preprocessing_defaults(self):
        cfg = PreprocessingConfig()
        assert cfg.enable_sanitization is True
        assert cfg.enable_structure_extraction is True
        assert cfg.max_input_length == 10000
        assert cfg.normalize_whitespace is True
        assert cfg.separate_requests is True

    @pytest.mark.unit
    def test_ai_provider_defaults(self):
        cfg = AIProviderConfig()
        assert cfg.max_retries == 3
        assert cfg.temperature == 0.1
        assert cfg.enable_validation_retries is True
        assert cfg.timeout_ms == 30000

    @pytest.mark.unit
    def test_monitoring_defaults(self):
        cfg = MonitoringConfig()
        assert cfg.enable_metrics is True
        assert cfg.log_level == "info"
        assert cfg.metrics_retention_ms == 24 * 60 * 60 * 1000

    @pytest.mark.unit
    def test_aggregate_defaults(self):
        cfg = ParserConfig()
        assert cfg.format_detection.confidence_threshold == 0.7
        assert cfg.context_enhancement.max_ambiguities == 5
        assert cfg.fallback.fallback_confidence_threshold == 0.5
        assert cfg.fallback.max_fallback_attempts == 2

    @pytest.mark.unit
    def test_temperature_above_two_rejected(self):
        with pytest.raises(ValidationError):
            AIProviderConfig(temperature=2.5)

    @pytest.mark.unit
    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError):
            MonitoringConfig(log_level="verbose")

    @pytest.mark.unit
    def test_camel_case_keys_accepted(self):
        cfg = ParserConfig.model_validate({"aiProvider": {"timeoutMs": 5000}})
        assert cfg.ai_provider.timeout_ms == 5000

    @pytest.mark.unit
    def test_dump_uses_camel_case(self):
        data = ParserConfig().model_dump(by_alias=True)
        assert "maxInputLength" in data["preprocessing"]
        assert "metricsRetentionMs" in data["monitoring"]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.unit
    def test_save_and_load_round_trip(self, tmp_path: Path):
        cfg = ParserConfig(ai_provider=AIProviderConfig(max_retries=1))
        target = cfg.save(tmp_path / "nested" / "config.json")
        assert target.exists()
        raw = json.loads(target.read_text(encoding="utf-8"))
        assert raw["aiProvider"]["maxRetries"] == 1
        assert ParserConfig.load(target).ai_provider.max_retries == 1

    @pytest.mark.unit
    def test_from_env(self):
        env = {
            "LOADSPEC_OLLAMA_URL": "http://gpu-box:11434",
            "LOADSPEC_MODEL": "mistral:7b",
            "LOADSPEC_TIMEOUT_MS": "45000",
            "LOADSPEC_MAX_RETRIES": "1",
            "LOADSPEC_DISABLE_AI": "true",
            "LOADSPEC_LOG_LEVEL": "DEBUG",
            "LOADSPEC_MAX_INPUT_LENGTH": "500",
        }
        with patch.dict(os.environ, env, clear=False):
            cfg = ParserConfig.from_env()
        assert cfg.ollama.url == "http://gpu-box:11434"
        assert cfg.ollama.model == "mistral:7b"
        assert cfg.ai_provider.timeout_ms == 45000
        assert cfg.ai_provider.max_retries == 1
        assert cfg.ai_provider.enabled is False
        assert cfg.monitoring.log_level == "debug"
        assert cfg.preprocessing.max_input_length == 500

    @pytest.mark.unit
    def test_from_env_without_variables_uses_defaults(self):
        keys = [k for k in os.environ if k.startswith("LOADSPEC_")]
        with patch.dict(os.environ, {}, clear=False):
            for key in keys:
                os.environ.pop(key)
            cfg = ParserConfig.from_env()
        assert cfg == ParserConfig()


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class TestConfigManager:
    @pytest.mark.unit
    def test_get_config_returns_copy(self):
        manager = ConfigManager()
        cfg = manager.get_config()
        cfg.ai_provider.max_retries = 99
        assert manager.get_config().ai_provider.max_retries == 3

    @pytest.mark.unit
    def test_constructor_copies_input(self):
        original = ParserConfig()
        manager = ConfigManager(original)
        original.ai_provider.max_retries = 7
        assert manager.get_config().ai_provider.max_retries == 3

    @pytest.mark.unit
    def test_update_deep_merges_section(self):
        manager = ConfigManager()
        updated = manager.update_config({"aiProvider": {"timeoutMs": 60000}})
        assert updated.ai_provider.timeout_ms == 60000
        assert updated.ai_provider.max_retries == 3

    @pytest.mark.unit
    def test_update_accepts_snake_case(self):
        manager = ConfigManager()
        manager.update_config({"format_detection": {"confidence_threshold": 0.55}})
        assert manager.get_config().format_detection.confidence_threshold == 0.55

    @pytest.mark.unit
    def test_invalid_update_raises_and_keeps_previous(self):
        manager = ConfigManager()
        with pytest.raises(ConfigError) as exc_info:
            manager.update_config({"aiProvider": {"temperature": 5}})
        assert any("aiProvider.temperature" in e for e in exc_info.value.errors)
        assert manager.get_config().ai_provider.temperature == 0.1

    @pytest.mark.unit
    def test_reset_to_defaults(self):
        manager = ConfigManager()
        manager.update_config({"monitoring": {"logLevel": "debug"}})
        assert manager.reset_to_defaults().monitoring.log_level == "info"

    @pytest.mark.unit
    def test_validate_config_valid(self):
        assert ConfigManager.validate_config(ParserConfig()) == []

    @pytest.mark.unit
    def test_validate_config_reports_every_problem(self):
        errors = ConfigManager.validate_config({
            "aiProvider": {"maxRetries": -1},
            "formatDetection": {"confidenceThreshold": 3},
        })
        assert len(errors) == 2
        assert any(e.startswith("aiProvider.maxRetries") for e in errors)
        assert any(e.startswith("formatDetection.confidenceThreshold") for e in errors)
