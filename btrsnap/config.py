"""Configuration management for btrsnap.

This module provides dataclasses for configuration and functions for
parsing/formatting TOML configuration files. The configuration file is
optional: every value has a default, and the retention values can be
overridden from the environment and from the command line.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import tomllib


class ConfigurationError(Exception):
    """Raised when configuration file is unreadable or malformed."""
    pass


class ValidationError(Exception):
    """Raised when configuration values have invalid types or ranges."""
    pass


# Legacy environment variables read by the original cron scripts
ENV_EXPIRATION_DAYS = "SNAP_EXPIRATION"
ENV_MIN_COUNT = "SNAP_MIN_COUNT"

DEFAULT_EXPIRATION_DAYS = 30
DEFAULT_MIN_COUNT = 10


@dataclass
class RetentionConfig:
    """Configuration for snapshot retention policy."""
    expiration_days: int = DEFAULT_EXPIRATION_DAYS  # 0 = every snapshot is a candidate
    min_count: int = DEFAULT_MIN_COUNT


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path("/var/log/btrsnap/btrsnap.log")
    )
    error_log_file: Path = field(
        default_factory=lambda: Path("/var/log/btrsnap/btrsnap.err")
    )
    log_max_size_mb: int = 10  # Maximum log file size in MB before rotation
    log_backup_count: int = 5  # Number of rotated log files to keep

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass
class StoreConfig:
    """Configuration for the btrfs snapshot store."""
    btrfs_path: str = "btrfs"


@dataclass
class Configuration:
    """Main configuration for btrsnap."""
    subvolumes: List[Path] = field(default_factory=list)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


# Default config file path
DEFAULT_CONFIG_PATH = Path("/etc/btrsnap/config.toml")


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int; "min_count = true" is not a count
    if expected_type is int and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _validate_non_negative(value: int, key: str) -> None:
    if value < 0:
        raise ValidationError(f"Key '{key}' must be non-negative, got {value}")


def parse_count(value: str, key: str) -> int:
    """
    Parse a non-negative integer given as text (CLI flag or environment).
    
    Args:
        value: Raw string value
        key: Name used in the error message
    
    Returns:
        The parsed integer
    
    Raises:
        ValidationError: If the value is not a non-negative decimal integer
    """
    text = value.strip()
    if not text.isdigit() or not text.isascii():
        raise ValidationError(
            f"Invalid value for {key}: {value!r} (expected a non-negative integer)"
        )
    return int(text)


def _parse_retention_config(data: Dict[str, Any]) -> RetentionConfig:
    """Parse retention configuration from dict."""
    retention_data = data.get("retention", {})
    
    expiration_days = retention_data.get("expiration_days", DEFAULT_EXPIRATION_DAYS)
    _validate_type(expiration_days, int, "retention.expiration_days")
    _validate_non_negative(expiration_days, "retention.expiration_days")
    
    min_count = retention_data.get("min_count", DEFAULT_MIN_COUNT)
    _validate_type(min_count, int, "retention.min_count")
    _validate_non_negative(min_count, "retention.min_count")
    
    return RetentionConfig(expiration_days=expiration_days, min_count=min_count)


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})
    defaults = LoggingConfig()
    
    level = logging_data.get("level", defaults.level)
    _validate_type(level, str, "logging.level")
    
    log_file = logging_data.get("log_file", str(defaults.log_file))
    _validate_type(log_file, str, "logging.log_file")
    
    error_log_file = logging_data.get("error_log_file", str(defaults.error_log_file))
    _validate_type(error_log_file, str, "logging.error_log_file")
    
    log_max_size_mb = logging_data.get("log_max_size_mb", defaults.log_max_size_mb)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")
    
    log_backup_count = logging_data.get("log_backup_count", defaults.log_backup_count)
    _validate_type(log_backup_count, int, "logging.log_backup_count")
    
    return LoggingConfig(
        level=level,
        log_file=Path(log_file),
        error_log_file=Path(error_log_file),
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def _parse_store_config(data: Dict[str, Any]) -> StoreConfig:
    """Parse store configuration from dict."""
    store_data = data.get("store", {})
    
    btrfs_path = store_data.get("btrfs_path", "btrfs")
    _validate_type(btrfs_path, str, "store.btrfs_path")
    
    return StoreConfig(btrfs_path=btrfs_path)


def parse_config_string(toml_content: str) -> Configuration:
    """
    Parse TOML string into Configuration object.
    
    Args:
        toml_content: TOML formatted string
    
    Returns:
        Configuration object
    
    Raises:
        ConfigurationError: If the TOML is malformed
        ValidationError: If value has wrong type or is out of range
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")
    
    # Main section may be nested under [main] or at root
    main_data = data.get("main", data)
    
    subvolumes = main_data.get("subvolumes", [])
    _validate_type(subvolumes, list, "subvolumes")
    for i, subvol in enumerate(subvolumes):
        _validate_type(subvol, str, f"subvolumes[{i}]")
    
    return Configuration(
        subvolumes=[Path(s) for s in subvolumes],
        retention=_parse_retention_config(data),
        logging=_parse_logging_config(data),
        store=_parse_store_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Parse TOML configuration file into Configuration object.
    
    A missing file at the default location is not an error: defaults are
    used. A missing file that was explicitly requested is.
    
    Args:
        config_path: Path to config file. Defaults to /etc/btrsnap/config.toml
    
    Returns:
        Configuration object
    
    Raises:
        ConfigurationError: If an explicit file doesn't exist or can't be read
        ValidationError: If value has wrong type
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return Configuration()
        config_path = DEFAULT_CONFIG_PATH
    
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        )
    
    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(
            f"Error reading configuration file {config_path}: {e}"
        )
    
    return parse_config_string(content)


def apply_environment(
    config: Configuration,
    environ: Mapping[str, str],
) -> Configuration:
    """
    Apply SNAP_EXPIRATION / SNAP_MIN_COUNT overrides from the environment.
    
    Args:
        config: Configuration to start from (not modified)
        environ: Environment mapping, usually os.environ
    
    Returns:
        A new Configuration with the overrides applied
    
    Raises:
        ValidationError: If a variable is set to a non-numeric or negative value
    """
    retention = config.retention
    if environ.get(ENV_EXPIRATION_DAYS):
        retention = replace(
            retention,
            expiration_days=parse_count(environ[ENV_EXPIRATION_DAYS], ENV_EXPIRATION_DAYS),
        )
    if environ.get(ENV_MIN_COUNT):
        retention = replace(
            retention,
            min_count=parse_count(environ[ENV_MIN_COUNT], ENV_MIN_COUNT),
        )
    return replace(config, retention=retention)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `btrsnap --init-config`.
    
    Returns:
        TOML formatted string with default configuration
    """
    return f'''# btrsnap configuration file

[main]
# Subvolumes processed when none are given on the command line
subvolumes = [
    "/srv/share",
]

[retention]
# Snapshots older than this many days may be deleted.
# 0 makes every snapshot a candidate, so only min_count decides.
expiration_days = {DEFAULT_EXPIRATION_DAYS}

# The newest min_count snapshots are never deleted, regardless of age
min_count = {DEFAULT_MIN_COUNT}

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "/var/log/btrsnap/btrsnap.log"
error_log_file = "/var/log/btrsnap/btrsnap.err"
# Log rotation settings
log_max_size_mb = 10
log_backup_count = 5

[store]
# btrfs-progs binary
btrfs_path = "btrfs"
'''
