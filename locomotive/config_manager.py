"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file. It includes
functionality to:
- Create a new configuration file from the packaged template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values.
- Load the configuration into a `ConfigParser` object.
- Validate the configuration.
- Merge the configuration with command line options into a `Settings` object,
  including the time-of-day speed schedule.
"""
import argparse
import configparser
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import configupdater

from .notifiers import EVENT_TITLES, NOTIFIERS
from .utils import ConfigurationError

APP_HOME = Path(os.getenv("LOCOMOTIVE_HOME", Path.home() / ".locomotive"))
TEMPLATE_PATH = Path(__file__).resolve().parent / "config.ini.template"
NOTIFICATION_SECTION_PREFIX = "NOTIFICATIONS_"
LAST_RUN_CUTOFF = "last_run"
CONFIG_DELIMITERS = ("=",)


@dataclass
class Settings:
    """Effective options for one run: config file values overridden by the CLI."""
    host: str
    sources: List[str]
    targets: List[str]
    username: str
    password: str = ""
    port: int = 22
    private_keyfile: Optional[str] = None
    public_keyfile: Optional[str] = None
    lftp_path: str = "lftp"
    working_dir: str = str(APP_HOME / "working")
    database_path: str = str(APP_HOME / "locomotive.sqlite")
    speed_limit: int = 0
    connection_limit: int = 25
    transfer_limit: int = 3
    max_retries: int = 5
    newer_than: Optional[str] = None
    remove_sources: bool = False
    remove_exclude: List[str] = field(default_factory=list)
    post_processors: str = ""
    notifications: Dict[str, Dict[str, str]] = field(default_factory=dict)


def update_config(config_path: str, template_path: str = str(TEMPLATE_PATH)) -> None:
    """Updates an existing config.ini from a template, preserving user values.

    This function compares the user's configuration file with a template. It adds
    any new sections or options present in the template to the user's config
    file. Existing user-defined values, comments, and file structure are
    preserved.

    If the configuration file is modified, a timestamped backup of the original
    file is created in a `backup` subdirectory. If no configuration file exists
    at `config_path`, one is created from the template.

    Args:
        config_path: The path to the user's configuration file.
        template_path: The path to the template file.

    Raises:
        ConfigurationError: If the template is missing or the config cannot be written.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)
    logging.debug("STATE: Checking for configuration updates...")

    if not template_file.is_file():
        raise ConfigurationError(f"Config template '{template_path}' not found.")

    if not config_file.is_file():
        logging.warning(f"Configuration file not found at '{config_path}'.")
        logging.warning("Creating a new one from the template. Please review and fill it out.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_file, config_file)
        except OSError as e:
            raise ConfigurationError(f"Could not create config file: {e}") from e
        return

    try:
        updater = configupdater.ConfigUpdater(delimiters=CONFIG_DELIMITERS)
        updater.read(config_file, encoding='utf-8')
        template_updater = configupdater.ConfigUpdater(delimiters=CONFIG_DELIMITERS)
        template_updater.read(template_file, encoding='utf-8')

        changes_made = False
        for section_name in template_updater.sections():
            template_section = template_updater[section_name]
            if not updater.has_section(section_name):
                user_section = updater.add_section(section_name)
                for key, opt in template_section.items():
                    user_section.set(key, opt.value)
                changes_made = True
                logging.info(f"CONFIG: Added new section to config: [{section_name}]")
            else:
                user_section = updater[section_name]
                for key, opt in template_section.items():
                    if not user_section.has_option(key):
                        user_section.set(key, opt.value)
                        changes_made = True
                        logging.info(f"CONFIG: Added new option in [{section_name}]: {key}")

        if changes_made:
            backup_dir = config_file.parent / 'backup'
            backup_dir.mkdir(exist_ok=True)
            backup_filename = f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
            backup_path = backup_dir / backup_filename
            shutil.copy2(config_file, backup_path)
            logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")
            with config_file.open('w', encoding='utf-8') as f:
                updater.write(f)
            logging.info("CONFIG: Configuration file has been updated with new options.")
        else:
            logging.debug("CONFIG: Configuration file is already up-to-date.")
    except (OSError, configparser.Error) as e:
        raise ConfigurationError(f"An error occurred during config update: {e}") from e


def load_config(config_path: str) -> configparser.ConfigParser:
    """Loads the configuration from the specified .ini file.

    Raises:
        ConfigurationError: If the file does not exist or cannot be parsed.
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        raise ConfigurationError(f"Configuration file not found at '{config_path}'.")
    # Interpolation off so passwords may contain '%'; only '=' delimits so schedule keys can hold times.
    config = configparser.ConfigParser(interpolation=None, delimiters=CONFIG_DELIMITERS)
    try:
        config.read(config_file, encoding='utf-8')
    except configparser.Error as e:
        raise ConfigurationError(f"Could not parse '{config_path}': {e}") from e
    logging.debug(f"Configuration loaded from: {config_path}")
    return config


def split_list(value: Optional[str], sep: str = ",") -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(sep) if part.strip()]


def split_paths(value: Optional[str]) -> List[str]:
    """Splits a SOURCE/TARGET argument that may be a colon-delimited list."""
    return split_list(value, ":")


def parse_schedule_window(window: str) -> Tuple[dt_time, dt_time]:
    """Parses 'HH:MM-HH:MM' into a (begin, end) pair."""
    try:
        begin_str, end_str = window.split("-", 1)
        begin = datetime.strptime(begin_str.strip(), "%H:%M").time()
        end = datetime.strptime(end_str.strip(), "%H:%M").time()
    except ValueError as e:
        raise ConfigurationError(f"Invalid speed schedule window '{window}', expected HH:MM-HH:MM") from e
    return begin, end


def _in_window(now: dt_time, begin: dt_time, end: dt_time) -> bool:
    if begin <= end:
        return begin <= now <= end
    # window wraps past midnight
    return now >= begin or now <= end


def scheduled_speed_limit(schedule: Dict[str, str], now: datetime) -> Optional[int]:
    """Returns the speed limit of the last schedule window containing `now`.

    Args:
        schedule: Mapping of 'HH:MM-HH:MM' windows to limits in bytes/s.
        now: The current time.

    Returns:
        The limit, or None when no window applies.
    """
    limit = None
    for window, value in schedule.items():
        begin, end = parse_schedule_window(window)
        if _in_window(now.time(), begin, end):
            try:
                limit = int(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid speed limit '{value}' for window '{window}'") from e
    return limit


def resolve_cutoff(newer_than: Optional[str], last_run: datetime) -> Optional[datetime]:
    """Turns the `newer_than` option into a datetime cutoff.

    Accepts an ISO date/datetime or the keyword 'last_run'. A value with a UTC
    offset is converted to naive local time, matching remote mtimes.
    """
    if not newer_than:
        return None
    if newer_than.strip().lower() == LAST_RUN_CUTOFF:
        return last_run
    try:
        cutoff = datetime.fromisoformat(newer_than.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid newer_than value '{newer_than}'; use an ISO date or '{LAST_RUN_CUTOFF}'"
        ) from e
    if cutoff.tzinfo is not None:
        cutoff = cutoff.astimezone().replace(tzinfo=None)
    return cutoff


def _cli_or_config(cli_value, config: configparser.ConfigParser, section: str, option: str, fallback=None):
    if cli_value is not None:
        return cli_value
    value = config.get(section, option, fallback=None)
    if value is None or not value.strip():
        return fallback
    return value.strip()


def _as_int(value, option: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Option '{option}' must be an integer, got '{value}'") from e


def _notification_settings(config: configparser.ConfigParser) -> Dict[str, Dict[str, str]]:
    channels: Dict[str, Dict[str, str]] = {}
    for section in config.sections():
        if not section.startswith(NOTIFICATION_SECTION_PREFIX):
            continue
        channel = section[len(NOTIFICATION_SECTION_PREFIX):].lower()
        if not config.getboolean(section, "enable", fallback=False):
            continue
        channels[channel] = dict(config.items(section))
    return channels


def build_settings(config: configparser.ConfigParser, args: argparse.Namespace,
                   now: Optional[datetime] = None) -> Settings:
    """Merges the configuration file with command line options.

    Command line values win. A speed limit from the [SPEED_SCHEDULE] section
    replaces the configured one unless the limit was given on the command line.

    Raises:
        ConfigurationError: If a required value is missing or malformed.
    """
    now = now or datetime.now()
    sources = split_paths(_cli_or_config(getattr(args, "source", None), config, "PATHS", "source"))
    targets = split_paths(_cli_or_config(getattr(args, "target", None), config, "PATHS", "target"))
    if not sources:
        raise ConfigurationError("No SOURCE path was given on the command line or in [PATHS].")
    if not targets:
        raise ConfigurationError("No TARGET path was given on the command line or in [PATHS].")

    username = _cli_or_config(args.username, config, "SERVER", "username")
    if not username:
        raise ConfigurationError("A username is required ([SERVER] username or --username).")

    speed_limit = _as_int(_cli_or_config(args.speed_limit, config, "TRANSFER", "speed_limit", 0), "speed_limit")
    if args.speed_limit is None and config.has_section("SPEED_SCHEDULE"):
        scheduled = scheduled_speed_limit(dict(config.items("SPEED_SCHEDULE")), now)
        if scheduled is not None:
            speed_limit = scheduled
            logging.info(f"The speed limit is being set from a schedule: {speed_limit} Bps.")

    settings = Settings(
        host=args.host,
        sources=sources,
        targets=targets,
        username=username,
        password=_cli_or_config(args.password, config, "SERVER", "password", ""),
        port=_as_int(_cli_or_config(args.port, config, "SERVER", "port", 22), "port"),
        private_keyfile=_cli_or_config(args.private_keyfile, config, "SERVER", "private_keyfile"),
        public_keyfile=_cli_or_config(args.public_keyfile, config, "SERVER", "public_keyfile"),
        lftp_path=_cli_or_config(None, config, "TRANSFER", "lftp_path", "lftp"),
        working_dir=str(Path(_cli_or_config(
            args.working_dir, config, "TRANSFER", "working_dir", str(APP_HOME / "working"))).expanduser()),
        database_path=str(Path(_cli_or_config(
            None, config, "TRANSFER", "database_path", str(APP_HOME / "locomotive.sqlite"))).expanduser()),
        speed_limit=speed_limit,
        connection_limit=_as_int(
            _cli_or_config(args.connection_limit, config, "TRANSFER", "connection_limit", 25), "connection_limit"),
        transfer_limit=_as_int(
            _cli_or_config(args.transfer_limit, config, "TRANSFER", "transfer_limit", 3), "transfer_limit"),
        max_retries=_as_int(
            _cli_or_config(args.max_retries, config, "TRANSFER", "max_retries", 5), "max_retries"),
        newer_than=_cli_or_config(args.newer_than, config, "TRANSFER", "newer_than"),
        remove_sources=config.getboolean("REMOVE_SOURCES", "remove", fallback=False),
        remove_exclude=split_list(config.get("REMOVE_SOURCES", "exclude", fallback="")),
        post_processors=config.get("HOOKS", "post_processors", fallback=""),
        notifications=_notification_settings(config),
    )
    logging.debug("Configs validated, merged, and loaded successfully.")
    return settings


class ConfigValidator:
    """Validates the structure and values of the application's configuration.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): Critical problems; the configuration is invalid
            while this list is not empty.
        warnings (List[str]): Non-critical problems.
    """

    REQUIRED_SECTIONS = {
        'SERVER': ['username'],
        'TRANSFER': [],
        'REMOVE_SOURCES': ['remove'],
    }

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and logs resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_required_sections()
        self._check_required_options()
        self._check_authentication()
        self._check_numeric_values()
        self._check_booleans()
        self._check_newer_than()
        self._check_speed_schedule()
        self._check_notifications()

        for warning in self.warnings:
            logging.warning(f"CONFIG: {warning}")
        for error in self.errors:
            logging.error(f"CONFIG: {error}")
        return not self.errors

    def _check_required_sections(self) -> None:
        for section in self.REQUIRED_SECTIONS:
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")

    def _check_required_options(self) -> None:
        for section, options in self.REQUIRED_SECTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.warnings.append(f"Option '{option}' in [{section}] is empty; "
                                         "it must be given on the command line")

    def _check_authentication(self) -> None:
        if not self.config.has_section('SERVER'):
            return
        password = self.config.get('SERVER', 'password', fallback='').strip()
        keyfile = self.config.get('SERVER', 'private_keyfile', fallback='').strip()
        if not password and not keyfile:
            self.warnings.append("Neither a password nor a private_keyfile is set in [SERVER]; "
                                 "one must be given on the command line")
        if keyfile and not Path(keyfile).expanduser().is_file():
            self.warnings.append(f"private_keyfile '{keyfile}' does not exist")

    def _check_numeric_values(self) -> None:
        numeric_options = {
            ('SERVER', 'port'): (1, 65535),
            ('TRANSFER', 'speed_limit'): (0, None),
            ('TRANSFER', 'connection_limit'): (1, 100),
            ('TRANSFER', 'transfer_limit'): (1, 50),
            ('TRANSFER', 'max_retries'): (0, 100),
        }
        for (section, option), (min_val, max_val) in numeric_options.items():
            raw = self.config.get(section, option, fallback='').strip()
            if not raw:
                continue
            try:
                value = int(raw)
            except ValueError:
                self.errors.append(f"Option '{option}' in [{section}] must be an integer")
                continue
            if value < min_val or (max_val is not None and value > max_val):
                upper = max_val if max_val is not None else "∞"
                self.warnings.append(f"{option}={value} is outside recommended range [{min_val}-{upper}]")

    def _check_booleans(self) -> None:
        if not self.config.has_option('REMOVE_SOURCES', 'remove'):
            return
        try:
            self.config.getboolean('REMOVE_SOURCES', 'remove')
        except ValueError:
            self.errors.append("Option 'remove' in [REMOVE_SOURCES] must be true or false")

    def _check_newer_than(self) -> None:
        value = self.config.get('TRANSFER', 'newer_than', fallback='').strip()
        if not value:
            return
        try:
            resolve_cutoff(value, datetime.now())
        except ConfigurationError as e:
            self.errors.append(str(e))

    def _check_speed_schedule(self) -> None:
        if not self.config.has_section('SPEED_SCHEDULE'):
            return
        for window, limit in self.config.items('SPEED_SCHEDULE'):
            try:
                parse_schedule_window(window)
            except ConfigurationError as e:
                self.errors.append(str(e))
            if not limit.strip().isdigit():
                self.errors.append(f"Speed limit '{limit}' for window '{window}' must be a whole number")

    def _check_notifications(self) -> None:
        for section in self.config.sections():
            if not section.startswith(NOTIFICATION_SECTION_PREFIX):
                continue
            channel = section[len(NOTIFICATION_SECTION_PREFIX):].lower()
            if channel not in NOTIFIERS:
                self.errors.append(f"Unknown notification channel in [{section}]")
                continue
            for event in split_list(self.config.get(section, 'events', fallback='')):
                if event not in EVENT_TITLES:
                    self.warnings.append(f"Unknown event '{event}' in [{section}]")
