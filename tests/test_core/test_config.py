"""Tests for config.yml loading and timing constants."""

from pathlib import Path

import pytest

from greeter.config import AppConfig, Settings

REPO_CONFIG = str(Path(__file__).parents[2] / "config.yml")


def _write_config(tmp_path: Path, body: str) -> str:
    path = tmp_path / "config.yml"
    path.write_text(body)
    return str(path)


class TestAppConfig:
    def test_repository_config_defaults(self):
        config = AppConfig(Settings(config_path=REPO_CONFIG, is_offline=False))

        assert config.greeting.target_time_local == "09:00"
        assert config.greeting.window_minutes == 15
        assert config.polling.interval_minutes == 10
        assert config.queue.batch_size == 200
        assert config.queue.visibility_timeout_seconds == 30
        assert config.retry.batch_size == 10
        assert config.retry.max_attempts == 3
        assert config.tracker.record_ttl_hours == 48
        assert config.trigger.offline_delay_seconds is None

    def test_offline_changes_timing_only(self):
        online = AppConfig(Settings(config_path=REPO_CONFIG, is_offline=False))
        offline = AppConfig(Settings(config_path=REPO_CONFIG, is_offline=True))

        assert offline.polling.interval_minutes == 1
        assert offline.queue.consume_interval_seconds == 10
        assert offline.retry.interval_minutes == 2
        assert offline.trigger.offline_delay_seconds == 60
        # Guarantees are unchanged
        assert offline.retry.max_attempts == online.retry.max_attempts
        assert offline.greeting.window_minutes == online.greeting.window_minutes

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        config = AppConfig(Settings(config_path=str(tmp_path / "absent.yml"), is_offline=False))

        template = config.greeting.message_template
        assert template == "Hey, {first_name} {last_name} it's your birthday"
        assert config.retry.mode == "deliver"

    def test_window_shorter_than_poll_interval_is_rejected(self, tmp_path: Path):
        path = _write_config(
            tmp_path,
            "greeting:\n  window_minutes: 5\npolling:\n  interval_minutes: 10\n",
        )
        with pytest.raises(ValueError, match="window_minutes"):
            AppConfig(Settings(config_path=path, is_offline=False))

    def test_unknown_retry_mode_is_rejected(self, tmp_path: Path):
        path = _write_config(tmp_path, "retry:\n  mode: shrug\n")
        with pytest.raises(ValueError, match="retry mode"):
            AppConfig(Settings(config_path=path, is_offline=False))

    def test_lease_must_outlast_webhook_timeout(self, tmp_path: Path):
        path = _write_config(tmp_path, "tracker:\n  lease_seconds: 10\n")
        with pytest.raises(ValueError, match="lease_seconds"):
            AppConfig(Settings(config_path=path, webhook_timeout_seconds=10.0))

    def test_repository_lease_default(self):
        config = AppConfig(Settings(config_path=REPO_CONFIG, is_offline=False))

        assert config.tracker.lease_seconds == 60
