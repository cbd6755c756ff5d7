import argparse
import configparser
from datetime import datetime, timezone

import pytest

from locomotive.config_manager import (
    CONFIG_DELIMITERS, TEMPLATE_PATH, ConfigValidator, build_settings, load_config, resolve_cutoff,
    scheduled_speed_limit, split_paths, update_config,
)
from locomotive.utils import ConfigurationError


def _args(**overrides):
    values = dict(
        host="seedbox.example", source=None, target=None, username=None, password=None, port=None,
        private_keyfile=None, public_keyfile=None, working_dir=None, speed_limit=None,
        connection_limit=None, transfer_limit=None, max_retries=None, newer_than=None,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def _config(text: str) -> configparser.ConfigParser:
    config = configparser.ConfigParser(interpolation=None, delimiters=CONFIG_DELIMITERS)
    config.read_string(text)
    return config


BASE_CONFIG = """
[SERVER]
username = user
password = secret
port = 22

[PATHS]
source = /remote/a:/remote/b
target = /local/x:/local/y

[TRANSFER]
speed_limit = 1000
transfer_limit = 4

[REMOVE_SOURCES]
remove = true
exclude = keep, archive

[HOOKS]
post_processors = /usr/local/bin/notify

[NOTIFICATIONS_PUSHOVER]
enable = true
events = transferComplete, itemMoved
api_token = tok
user_key = usr

[NOTIFICATIONS_PROWL]
enable = false
events = transferComplete
"""


class TestUpdateConfig:

    def test_creates_config_from_template(self, tmp_path):
        config_path = tmp_path / "home" / "config.ini"

        update_config(str(config_path))

        assert config_path.read_text() == TEMPLATE_PATH.read_text()

    def test_adds_missing_options_and_keeps_user_values(self, tmp_path):
        config_path = tmp_path / "config.ini"
        config_path.write_text("[SERVER]\nusername = alice\n")

        update_config(str(config_path))

        config = load_config(str(config_path))
        assert config.get("SERVER", "username") == "alice"
        assert config.get("SERVER", "port") == "22"
        assert config.has_section("REMOVE_SOURCES")
        assert list((tmp_path / "backup").iterdir())

    def test_missing_template_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            update_config(str(tmp_path / "config.ini"), str(tmp_path / "missing.template"))


def test_load_config_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "nope.ini"))


def test_schedule_keys_with_colons_survive_loading(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[SPEED_SCHEDULE]\n08:00-17:59 = 500000\n")

    config = load_config(str(config_path))

    assert dict(config.items("SPEED_SCHEDULE")) == {"08:00-17:59": "500000"}


def test_split_paths():
    assert split_paths("/a:/b/: ") == ["/a", "/b/"]
    assert split_paths(None) == []


class TestSpeedSchedule:

    def test_matching_window(self):
        schedule = {"08:00-17:59": "500000"}
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 9, 30)) == 500000
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 19, 0)) is None

    def test_window_wraps_midnight(self):
        schedule = {"23:00-06:00": "0"}
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 2, 0)) == 0
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 23, 30)) == 0
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 12, 0)) is None

    def test_last_matching_window_wins(self):
        schedule = {"00:00-23:59": "100", "12:00-13:00": "200"}
        assert scheduled_speed_limit(schedule, datetime(2024, 1, 1, 12, 30)) == 200

    def test_bad_window_raises(self):
        with pytest.raises(ConfigurationError):
            scheduled_speed_limit({"8am-5pm": "1"}, datetime(2024, 1, 1))


def test_resolve_cutoff():
    last_run = datetime(2024, 3, 1, 8, 0)
    assert resolve_cutoff(None, last_run) is None
    assert resolve_cutoff("last_run", last_run) == last_run
    assert resolve_cutoff("2024-01-31", last_run) == datetime(2024, 1, 31)
    with pytest.raises(ConfigurationError):
        resolve_cutoff("yesterday", last_run)


def test_resolve_cutoff_with_offset_is_naive_local_time():
    cutoff = resolve_cutoff("2024-01-01T00:00:00+00:00", datetime.now())

    assert cutoff.tzinfo is None
    expected = datetime(2024, 1, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert cutoff == expected
    # comparable with naive mtimes from the remote listing
    assert datetime.fromtimestamp(1700000000) >= cutoff


class TestBuildSettings:

    def test_config_values(self):
        settings = build_settings(_config(BASE_CONFIG), _args())

        assert settings.sources == ["/remote/a", "/remote/b"]
        assert settings.targets == ["/local/x", "/local/y"]
        assert settings.username == "user"
        assert settings.speed_limit == 1000
        assert settings.transfer_limit == 4
        assert settings.connection_limit == 25
        assert settings.max_retries == 5
        assert settings.remove_sources is True
        assert settings.remove_exclude == ["keep", "archive"]
        assert settings.post_processors == "/usr/local/bin/notify"
        assert list(settings.notifications) == ["pushover"]
        assert settings.notifications["pushover"]["api_token"] == "tok"

    def test_cli_overrides_config(self):
        args = _args(source="/cli/src", target="/cli/dst", username="bob", transfer_limit=9, speed_limit=5)

        settings = build_settings(_config(BASE_CONFIG), args)

        assert settings.sources == ["/cli/src"]
        assert settings.targets == ["/cli/dst"]
        assert settings.username == "bob"
        assert settings.transfer_limit == 9
        assert settings.speed_limit == 5

    def test_schedule_applies_unless_cli_sets_speed(self):
        config = _config(BASE_CONFIG + "\n[SPEED_SCHEDULE]\n00:00-23:59 = 777\n")
        now = datetime(2024, 1, 1, 12, 0)

        assert build_settings(config, _args(), now).speed_limit == 777
        assert build_settings(config, _args(speed_limit=5), now).speed_limit == 5

    def test_missing_source_raises(self):
        config = _config("[SERVER]\nusername = user\n")
        with pytest.raises(ConfigurationError):
            build_settings(config, _args(target="/local"))

    def test_missing_username_raises(self):
        config = _config("[SERVER]\nusername =\n")
        with pytest.raises(ConfigurationError):
            build_settings(config, _args(source="/remote", target="/local"))

    def test_non_numeric_limit_raises(self):
        config = _config(BASE_CONFIG.replace("transfer_limit = 4", "transfer_limit = lots"))
        with pytest.raises(ConfigurationError):
            build_settings(config, _args())


class TestConfigValidator:

    def test_valid_config(self):
        assert ConfigValidator(_config(BASE_CONFIG)).validate() is True

    def test_template_is_valid_with_warnings(self):
        config = configparser.ConfigParser(interpolation=None, delimiters=CONFIG_DELIMITERS)
        config.read(TEMPLATE_PATH)
        validator = ConfigValidator(config)
        assert validator.validate() is True
        assert validator.warnings

    def test_missing_section_is_an_error(self):
        validator = ConfigValidator(_config("[SERVER]\nusername = user\n"))
        assert validator.validate() is False
        assert any("[TRANSFER]" in error for error in validator.errors)

    def test_bad_values_are_errors(self):
        text = BASE_CONFIG.replace("port = 22", "port = ssh").replace("remove = true", "remove = maybe")
        text += "\n[SPEED_SCHEDULE]\nnoon = fast\n"
        validator = ConfigValidator(_config(text))

        assert validator.validate() is False
        assert len(validator.errors) == 4

    def test_unknown_notification_event_is_a_warning(self):
        text = BASE_CONFIG.replace("events = transferComplete, itemMoved", "events = transferExploded")
        validator = ConfigValidator(_config(text))

        assert validator.validate() is True
        assert any("transferExploded" in warning for warning in validator.warnings)
