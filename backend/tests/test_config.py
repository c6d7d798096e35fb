"""Tests for engine configuration."""

import os
from unittest.mock import patch

from docsorter.config import Settings


class TestSettings:
    def test_default_settings(self):
        """Defaults match the documented engine behavior."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.use_ai is True
        assert settings.ai_confidence_threshold == 0.5
        assert settings.ai_batch_size == 3
        assert settings.ai_batch_delay_ms == 100
        assert settings.cache_max_size == 1000
        assert settings.cache_max_age_seconds == 7 * 24 * 60 * 60
        assert settings.cache_compression_threshold == 1024
        assert settings.inference_max_retries == 3
        assert settings.watermark_min_occurrences == 3
        assert settings.watermark_page_overlap_threshold == 0.5

    def test_settings_from_env(self):
        """Environment variables override defaults, case-insensitively."""
        with patch.dict(os.environ, {
            "USE_AI": "false",
            "AI_CONFIDENCE_THRESHOLD": "0.8",
            "AI_BATCH_SIZE": "5",
            "INFERENCE_BASE_URL": "http://custom-host:8000/v1",
            "INFERENCE_TIMEOUT": "12.5",
            "ENABLE_SIGNATURE_DETECTION": "0",
        }):
            settings = Settings(_env_file=None)

        assert settings.use_ai is False
        assert settings.ai_confidence_threshold == 0.8
        assert settings.ai_batch_size == 5
        assert settings.inference_base_url == "http://custom-host:8000/v1"
        assert settings.inference_timeout == 12.5
        assert settings.enable_signature_detection is False

    def test_settings_model_config(self):
        assert Settings.model_config.get("env_file") == ".env"
        assert Settings.model_config.get("case_sensitive") is False


class TestDerivedConfig:
    def test_inference_config_uses_batch_size_as_ceiling(self):
        settings = Settings(_env_file=None, ai_batch_size=4, inference_model="local-model")

        config = settings.get_inference_config()

        assert config["max_concurrent"] == 4
        assert config["model"] == "local-model"
        assert set(config) == {
            "base_url", "api_key", "model", "timeout", "max_tokens", "temperature",
            "max_retries", "base_delay", "max_delay", "max_concurrent",
        }

    def test_watermark_options(self):
        settings = Settings(_env_file=None, watermark_min_occurrences=4)

        options = settings.get_watermark_options()

        assert options == {
            "min_occurrences": 4,
            "page_overlap_threshold": 0.5,
            "min_length": 5,
            "max_length": 100,
        }
