"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for feed poller configs.
"""

import os
import tempfile

import pytest
import yaml

from feed_quota_guard.config.loader import (
    AppConfig,
    FetchConfig,
    load_config,
    parse_config,
)
from feed_quota_guard.core.quota import OperationPriority
from feed_quota_guard.storage.models import ScheduleSlot


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            if isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "quota": {
                "daily_limit": 5000,
                "essential_reserve_percent": 10,
                "operation_costs": {"search": 120},
                "operation_priorities": {"search": "Medium"},
            },
            "fetch": {"max_retries": 3, "base_delay": 0.5},
            "orchestrator": {"max_workers": 8},
            "platforms": {
                "youtube": {"api_key": "abc"},
                "tiktok": {"access_token": "tok", "enabled": False},
            },
            "schedules": [
                {
                    "id": 1,
                    "channel_id": "UCabc",
                    "platform": "youtube",
                    "priority": 5,
                    "timezone": "America/New_York",
                    "slots": [{"day": "monday", "time": "09:30"}],
                }
            ],
        }

        config = load_config(self._write_config(config_data))

        assert config.quota.daily_limit == 5000
        assert config.quota.essential_reserve_percent == 10.0
        assert config.quota.operation_costs == {"search": 120}
        assert config.quota.operation_priorities == {"search": OperationPriority.MEDIUM}
        assert config.fetch.max_retries == 3
        assert config.fetch.max_delay == FetchConfig().max_delay
        assert config.orchestrator.max_workers == 8
        assert config.platforms["youtube"].api_key == "abc"
        assert not config.platforms["tiktok"].enabled

        schedule = config.schedules[0]
        assert schedule.priority == 5
        assert schedule.timezone == "America/New_York"
        assert schedule.slots == (ScheduleSlot.parse("monday", "09:30"),)

    def test_minimal_config_uses_defaults(self):
        """Only the quota limit is required."""
        config = load_config(self._write_config({"quota": {"daily_limit": 10000}}))

        assert isinstance(config, AppConfig)
        assert config.quota.window_timezone == "America/Los_Angeles"
        assert config.scheduler.tolerance_minutes == 5
        assert config.prefetch.confidence_threshold == 0.6
        assert config.cache.ttl_by_type is None
        assert config.schedules == ()

    def test_unquoted_slot_time(self):
        """YAML reads 9:30 unquoted as a base-60 integer; it still parses."""
        text = (
            "quota:\n"
            "  daily_limit: 100\n"
            "schedules:\n"
            "  - id: 1\n"
            "    channel_id: UCabc\n"
            "    platform: youtube\n"
            "    slots:\n"
            "      - day: friday\n"
            "        time: 9:30\n"
        )

        config = load_config(self._write_config(text))

        assert config.schedules[0].slots[0].label() == "friday 09:30"

    def test_credentials_from_environment(self, monkeypatch):
        """Secrets can be read from named environment variables."""
        monkeypatch.setenv("TEST_YT_KEY", "from-env")
        config = parse_config({
            "quota": {"daily_limit": 100},
            "platforms": {"youtube": {"api_key_env": "TEST_YT_KEY"}},
        })

        assert config.platforms["youtube"].api_key == "from-env"

    def test_missing_file_raises_error(self):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        """Test that an empty config file is rejected."""
        with pytest.raises(ValueError, match="empty"):
            load_config(self._write_config(""))

    def test_invalid_yaml_raises_error(self):
        """Test that malformed YAML is reported."""
        with pytest.raises(yaml.YAMLError):
            load_config(self._write_config("quota: [unclosed"))


class TestConfigValidation:
    """Test strict rejection of invalid values."""

    def test_missing_quota_section(self):
        with pytest.raises(ValueError, match="Missing required 'quota' section"):
            parse_config({"fetch": {}})

    def test_missing_daily_limit(self):
        with pytest.raises(ValueError, match="daily_limit"):
            parse_config({"quota": {}})

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            parse_config({"quota": {"daily_limit": 1}, "budget": {}})

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in fetch"):
            parse_config({"quota": {"daily_limit": 1}, "fetch": {"retries": 2}})

    def test_wrong_types(self):
        """Strings and booleans are not accepted for numbers."""
        with pytest.raises(ValueError, match="must be an integer"):
            parse_config({"quota": {"daily_limit": "10000"}})
        with pytest.raises(ValueError, match="must be an integer"):
            parse_config({"quota": {"daily_limit": True}})
        with pytest.raises(ValueError, match="must be true or false"):
            parse_config({"quota": {"daily_limit": 1}, "prefetch": {"enabled": "yes"}})

    def test_out_of_range_values(self):
        with pytest.raises(ValueError):
            parse_config({"quota": {"daily_limit": 0}})
        with pytest.raises(ValueError):
            parse_config({"quota": {"daily_limit": 1, "essential_reserve_percent": 100}})
        with pytest.raises(ValueError):
            parse_config({"quota": {"daily_limit": 1}, "orchestrator": {"max_workers": 0}})
        with pytest.raises(ValueError):
            parse_config({"quota": {"daily_limit": 1, "thresholds": {"moderate": 90, "high": 50}}})

    def test_invalid_priority_name(self):
        with pytest.raises(ValueError, match="must be one of"):
            parse_config({"quota": {"daily_limit": 1, "operation_priorities": {"search": "urgent"}}})

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="not a known timezone"):
            parse_config({"quota": {"daily_limit": 1, "window_timezone": "Mars/Olympus"}})

    def test_unknown_platform(self):
        with pytest.raises(ValueError, match="Unknown platform 'vimeo'"):
            parse_config({"quota": {"daily_limit": 1}, "platforms": {"vimeo": {}}})

    def test_duplicate_schedule_ids(self):
        schedule = {"id": 1, "channel_id": "UCabc", "platform": "youtube"}
        with pytest.raises(ValueError, match="Duplicate schedule id"):
            parse_config({"quota": {"daily_limit": 1}, "schedules": [schedule, dict(schedule)]})

    def test_invalid_schedule(self):
        """Schedule field errors name the offending entry."""
        base = {"id": 1, "channel_id": "UCabc", "platform": "youtube"}
        with pytest.raises(ValueError, match="schedules\\[0\\]"):
            parse_config({"quota": {"daily_limit": 1}, "schedules": [dict(base, priority=9)]})
        with pytest.raises(ValueError, match="weekday must be one of"):
            parse_config({
                "quota": {"daily_limit": 1},
                "schedules": [dict(base, slots=[{"day": "someday", "time": "09:00"}])],
            })
        with pytest.raises(ValueError, match="between 00:00 and 23:59"):
            parse_config({
                "quota": {"daily_limit": 1},
                "schedules": [dict(base, slots=[{"day": "monday", "time": "25:00"}])],
            })
        with pytest.raises(ValueError, match="Missing required 'channel_id'"):
            parse_config({"quota": {"daily_limit": 1}, "schedules": [{"id": 2, "platform": "youtube"}]})
