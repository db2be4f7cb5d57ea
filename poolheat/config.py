# SPDX-License-Identifier: MPL-2.0
"""
Configuration loading and logging setup.

Settings are read from an INI file; secrets are read from files in the
systemd credentials directory ($CREDENTIALS_DIRECTORY).
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from datetime import time as dt_time, timedelta, tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from poolheat.database import DEFAULT_DATABASE_URL
from poolheat.exceptions import ConfigurationError
from poolheat.models import AutomationSettings, PriceBasis

logger = logging.getLogger(__name__)

CONFIG_SEARCH_PATHS = [
    "/etc/poolheat/poolheat.conf",
    "/run/poolheat/poolheat.conf",
    "/usr/lib/poolheat/poolheat.conf",
]


@dataclass
class Config:
    """Application configuration."""
    # Heat pump gateway
    heatpump_base_url: str
    heatpump_device_id: str
    heatpump_token: str
    heatpump_timeout: int = 10  # Seconds per device call
    power_code: str = "Power"
    temperature_code: str = "SetTemp"

    # Initial automation settings, stored on first start
    automation: AutomationSettings = field(default_factory=AutomationSettings)

    # Scheduling
    timezone: str = "Europe/Stockholm"  # Defines date and hour of schedule slots
    cycle_time: dt_time = field(default_factory=lambda: dt_time(0, 5))  # Daily build time
    execute_interval_minutes: int = 2
    execution_window_minutes: int = 5  # Unexecuted entries older than this are abandoned
    claim_lease_seconds: int = 120
    run_deadline_seconds: Optional[float] = 60.0
    fallback_average_price: float = 0.50
    price_basis: PriceBasis = PriceBasis.TOTAL
    price_provider: Optional[str] = None

    # Storage
    database_url: str = DEFAULT_DATABASE_URL

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # Optional ntfy alerts
    ntfy_topic: Optional[str] = None
    ntfy_server: str = "https://ntfy.sh"
    ntfy_token: Optional[str] = None

    # Logging
    logging_level: str = 'WARNING'

    @property
    def tz(self) -> tzinfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone '{self.timezone}': {e}")

    @property
    def execution_window(self) -> timedelta:
        return timedelta(minutes=self.execution_window_minutes)

    @property
    def claim_lease(self) -> timedelta:
        return timedelta(seconds=self.claim_lease_seconds)

    def validate(self) -> None:
        """
        Check cross-field constraints.

        Raises:
            ConfigurationError: If the configuration is inconsistent
        """
        self.automation.validate()
        # Resolves the timezone or raises
        self.tz

        if self.execute_interval_minutes < 1:
            raise ConfigurationError("execute_interval must be at least 1 minute")
        if self.execute_interval_minutes > self.execution_window_minutes:
            raise ConfigurationError(
                f"execute_interval ({self.execute_interval_minutes} min) must not exceed "
                f"execution_window ({self.execution_window_minutes} min), "
                f"or due entries could be skipped"
            )
        if self.claim_lease_seconds < 2 * self.heatpump_timeout:
            raise ConfigurationError(
                f"claim_lease ({self.claim_lease_seconds}s) must cover two device calls "
                f"({2 * self.heatpump_timeout}s)"
            )


def parse_cycle_time(value: str) -> dt_time:
    """
    Parse cycle time from format hh:mm.

    Args:
        value: String in format "hh:mm" (e.g., "00:05")

    Returns:
        datetime.time object

    Raises:
        ValueError: If format is invalid
    """
    value = value.strip()
    parts = value.split(':')

    if len(parts) != 2:
        raise ValueError(
            f"Invalid cycle time format: '{value}'. "
            f"Expected 'hh:mm' format. Example: '00:05'"
        )

    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError as e:
        raise ValueError(f"Invalid cycle time format: '{value}'. Error: {e}")

    if not (0 <= hour <= 23):
        raise ValueError(f"Hour must be 0-23, got {hour}")
    if not (0 <= minute <= 59):
        raise ValueError(f"Minute must be 0-59, got {minute}")

    return dt_time(hour, minute)


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in CONFIG_SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def _load_automation(parser: configparser.ConfigParser) -> AutomationSettings:
    defaults = AutomationSettings()
    section = 'automation'

    if not parser.has_section(section):
        return defaults

    return AutomationSettings(
        baseline_temp=parser.getfloat(section, 'baseline_temp', fallback=defaults.baseline_temp),
        automation_enabled=parser.getboolean(section, 'enabled', fallback=defaults.automation_enabled),
        min_pump_temp=parser.getfloat(section, 'min_pump_temp', fallback=defaults.min_pump_temp),
        max_pump_temp=parser.getfloat(section, 'max_pump_temp', fallback=defaults.max_pump_temp),
        rolling_window_days=parser.getint(section, 'rolling_window_days', fallback=defaults.rolling_window_days),
        low_price_ratio=parser.getfloat(section, 'low_price_ratio', fallback=defaults.low_price_ratio),
        high_price_ratio=parser.getfloat(section, 'high_price_ratio', fallback=defaults.high_price_ratio),
        low_temp_offset=parser.getfloat(section, 'low_temp_offset', fallback=defaults.low_temp_offset),
        high_temp_offset=parser.getfloat(section, 'high_temp_offset', fallback=defaults.high_temp_offset),
        absolute_shutdown_price=parser.getfloat(
            section, 'absolute_shutdown_price', fallback=defaults.absolute_shutdown_price
        ),
        bidding_zone=parser.get(section, 'bidding_zone', fallback=defaults.bidding_zone),
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from INI file and credentials directory.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If configuration is invalid or credentials missing
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(CONFIG_SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    creds_dir = os.getenv('CREDENTIALS_DIRECTORY')
    if not creds_dir:
        raise ConfigurationError("CREDENTIALS_DIRECTORY environment variable not set")

    creds_path = Path(creds_dir)
    if not creds_path.exists():
        raise ConfigurationError(f"Credentials directory does not exist: {creds_dir}")

    token_file = creds_path / "heatpump_token"
    if not token_file.exists():
        raise ConfigurationError(f"heatpump_token file not found in {creds_dir}")

    try:
        config = Config(
            heatpump_base_url=parser.get('heatpump', 'base_url'),
            heatpump_device_id=parser.get('heatpump', 'device_id'),
            heatpump_token=token_file.read_text().strip(),
            heatpump_timeout=parser.getint('heatpump', 'timeout', fallback=10),
            power_code=parser.get('heatpump', 'power_code', fallback='Power'),
            temperature_code=parser.get('heatpump', 'temperature_code', fallback='SetTemp'),
            automation=_load_automation(parser),
        )

        if parser.has_section('schedule'):
            if parser.has_option('schedule', 'timezone'):
                config.timezone = parser.get('schedule', 'timezone')
            if parser.has_option('schedule', 'cycle_time'):
                config.cycle_time = parse_cycle_time(parser.get('schedule', 'cycle_time'))
            config.execute_interval_minutes = parser.getint(
                'schedule', 'execute_interval', fallback=config.execute_interval_minutes
            )
            config.execution_window_minutes = parser.getint(
                'schedule', 'execution_window', fallback=config.execution_window_minutes
            )
            config.claim_lease_seconds = parser.getint(
                'schedule', 'claim_lease', fallback=config.claim_lease_seconds
            )
            if parser.has_option('schedule', 'run_deadline'):
                deadline = parser.getfloat('schedule', 'run_deadline')
                config.run_deadline_seconds = deadline if deadline > 0 else None
            config.fallback_average_price = parser.getfloat(
                'schedule', 'fallback_average_price', fallback=config.fallback_average_price
            )
            if parser.has_option('schedule', 'price_basis'):
                config.price_basis = PriceBasis(parser.get('schedule', 'price_basis').strip().lower())
            if parser.has_option('schedule', 'price_provider'):
                config.price_provider = parser.get('schedule', 'price_provider')

        if parser.has_option('database', 'url'):
            config.database_url = parser.get('database', 'url')

        if parser.has_section('api'):
            config.api_host = parser.get('api', 'host', fallback=config.api_host)
            config.api_port = parser.getint('api', 'port', fallback=config.api_port)

        if parser.has_section('ntfy'):
            if parser.has_option('ntfy', 'topic'):
                config.ntfy_topic = parser.get('ntfy', 'topic')
            if parser.has_option('ntfy', 'server'):
                config.ntfy_server = parser.get('ntfy', 'server')

        ntfy_token_file = creds_path / "ntfy_token"
        if ntfy_token_file.exists():
            config.ntfy_token = ntfy_token_file.read_text().strip()

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()

    except (configparser.NoSectionError, configparser.NoOptionError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")

    config.validate()
    return config


def configure_logging(level: str) -> None:
    """
    Configure logging level for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(name)s - %(levelname)s - %(message)s',
        force=True,
    )

    logging.getLogger('poolheat').setLevel(log_level)
    # SQL statement logging only when explicitly debugging
    logging.getLogger('sqlalchemy.engine').setLevel(
        logging.INFO if log_level == logging.DEBUG else logging.WARNING
    )
