"""Tests for Settings configuration model."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from taskclock.config import Settings


class TestDefaults:
    def test_default_database_path(self):
        s = Settings()
        assert s.database_path == Path("data/taskclock.db")

    def test_default_scheduler_values(self):
        s = Settings()
        assert s.scheduler_timezone == "UTC"
        assert s.dispatch_interval_seconds == 30
        assert s.due_batch_size == 100

    def test_default_executor_values(self):
        s = Settings()
        assert s.executor_concurrency == 4
        assert s.execution_timeout_seconds == 600

    def test_default_log_level(self):
        s = Settings()
        assert s.log_level == "INFO"


class TestValidation:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(dispatch_interval_seconds=0)

    def test_concurrency_at_least_one(self):
        with pytest.raises(ValidationError):
            Settings(executor_concurrency=0)

    def test_timeout_can_be_disabled(self):
        s = Settings(execution_timeout_seconds=None)
        assert s.execution_timeout_seconds is None


class TestEnvIgnoredUnderPytest:
    def test_env_vars_do_not_leak_into_tests(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DUE_BATCH_SIZE", "7")
        assert Settings().due_batch_size == 100
