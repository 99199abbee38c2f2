"""
Tests for the CLI interface.
"""

import pytest
import yaml
from typer.testing import CliRunner

from feed_quota_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from feed_quota_guard.storage.repository import StateRepository

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    """Write a config whose only platform is disabled, so nothing hits the network."""
    config = {
        "quota": {"daily_limit": 10000},
        "platforms": {"youtube": {"api_key": "test", "enabled": False}},
        "storage": {"db_path": str(tmp_path / "cli.db")},
        "schedules": [
            {
                "id": 1,
                "channel_id": "UCabc",
                "platform": "youtube",
                "priority": 4,
                "slots": [{"day": "monday", "time": "09:00"}],
            }
        ],
    }
    path = tmp_path / "feed_quota_guard.yaml"
    path.write_text(yaml.dump(config), encoding="utf-8")
    return str(path)


@pytest.fixture
def empty_config_path(tmp_path):
    """Config without schedules."""
    path = tmp_path / "empty.yaml"
    path.write_text(yaml.dump({
        "quota": {"daily_limit": 10000},
        "storage": {"db_path": str(tmp_path / "empty.db")},
    }), encoding="utf-8")
    return str(path)


class TestCLI:
    """Test CLI commands."""

    def test_no_command_shows_hint(self, config_path):
        result = runner.invoke(app, ["--config", config_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init_seeds_schedules(self, config_path, tmp_path):
        """Init creates the database and copies configured schedules."""
        result = runner.invoke(app, ["--config", config_path, "init", "--seed-schedules"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert "Seeded 1 schedules" in result.output
        schedules = StateRepository(str(tmp_path / "cli.db")).load_schedules()
        assert [s.channel_id for s in schedules] == ["UCabc"]

    def test_status(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Quota" in result.output
        assert "Used: 0 / 10,000" in result.output
        assert "Cache" in result.output
        assert "Schedules" in result.output

    def test_run_once(self, config_path):
        """A single tick runs and prints its summary."""
        result = runner.invoke(app, ["--config", config_path, "run", "--once"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Tick Result" in result.output

    def test_schedules_lists_upcoming(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "schedules", "-n", "5"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Upcoming Checks" in result.output
        assert "UCabc" in result.output

    def test_schedules_empty(self, empty_config_path):
        result = runner.invoke(app, ["--config", empty_config_path, "schedules"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No active schedules found" in result.output

    def test_suggestions(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "suggestions", "--schedule", "1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Schedule 1" in result.output
        assert "No suggestions" in result.output

    def test_suggestions_unknown_schedule(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "suggestions", "-s", "99"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown schedule 99" in result.output

    def test_clear_cache(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "clear-cache", "--platform", "youtube"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Removed 0 cache entries" in result.output

    def test_reset_quota(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "reset-quota", "-y"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Quota reset" in result.output

    def test_reset_quota_aborted(self, config_path):
        result = runner.invoke(app, ["--config", config_path, "reset-quota"], input="n\n")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Aborted" in result.output

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("quota:\n  daily_limit: -1\n", encoding="utf-8")

        result = runner.invoke(app, ["--config", str(path), "status"])

        assert result.exit_code == EXIT_CODE_FAIL
