"""Tests for environment settings."""

from pathlib import Path

import pytest

from batchprompt.config import Settings
from batchprompt.transport import DEFAULT_BASE_URL, DEFAULT_CONNECT_TIMEOUT


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("BATCHPROMPT_URL", "BATCHPROMPT_JOBS_DB", "BATCHPROMPT_JOBS_URL", "BATCHPROMPT_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env()
        assert settings.backend_url == DEFAULT_BASE_URL
        assert settings.connect_timeout == DEFAULT_CONNECT_TIMEOUT
        assert settings.jobs_url is None

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BATCHPROMPT_URL", "http://build-box:3000")
        monkeypatch.setenv("BATCHPROMPT_JOBS_DB", str(tmp_path / "jobs.db"))
        monkeypatch.setenv("BATCHPROMPT_TIMEOUT", "2.5")

        settings = Settings.from_env()

        assert settings.backend_url == "http://build-box:3000"
        assert settings.jobs_db_path == Path(tmp_path / "jobs.db")
        assert settings.connect_timeout == 2.5

    @pytest.mark.parametrize("value", ["soon", "", "0", "-3"])
    def test_bad_timeout_rejected(self, monkeypatch, value):
        monkeypatch.setenv("BATCHPROMPT_TIMEOUT", value)
        with pytest.raises(ValueError, match="BATCHPROMPT_TIMEOUT"):
            Settings.from_env()
