"""Unit tests for the config module."""

import os
from pathlib import Path
from unittest.mock import patch

from pydantic import ValidationError
import pytest

from crawl_engine.config import DEFAULT_USER_AGENT, Settings


pytestmark = pytest.mark.unit


class TestConfig:
    """Test configuration loading and validation."""

    def test_values_come_from_environment(self):
        settings = Settings()  # type: ignore[call-arg]

        assert settings.crawl_db_path == Path("crawl_data/test.sqlite")
        assert settings.http_timeout == 5
        assert settings.crawler_user_agent == "TestCrawler/1.0 (+https://example.test/bot)"
        assert settings.scheduler_enabled is False
        assert settings.log_json is False

    def test_defaults_without_environment(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)  # type: ignore[call-arg]

        assert settings.crawler_user_agent == DEFAULT_USER_AGENT
        assert settings.robots_cache_ttl_hours == 24
        assert settings.max_fetch_attempts == 3
        assert settings.retry_backoff_base_seconds == 2.0
        assert settings.default_request_delay_ms == 1000
        assert settings.scheduler_enabled is True

    def test_default_job_limits(self):
        settings = Settings(default_max_pages=25, default_max_depth=1)  # type: ignore[call-arg]

        assert settings.get_default_job_limits() == {
            "max_pages": 25,
            "max_depth": 1,
            "request_delay_ms": 0,
            "max_concurrent": 1,
        }

    @patch.dict(os.environ, {"CRAWLER_USER_AGENT": "   "}, clear=False)
    def test_blank_user_agent_is_rejected(self):
        with pytest.raises(ValidationError, match="CRAWLER_USER_AGENT must not be empty"):
            Settings()  # type: ignore[call-arg]

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("http_timeout", 0),
            ("max_fetch_attempts", 0),
            ("retry_backoff_base_seconds", 1.0),
            ("default_max_pages", 0),
            ("scheduler_poll_seconds", 0),
        ],
    )
    def test_out_of_range_values_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})  # type: ignore[arg-type]
