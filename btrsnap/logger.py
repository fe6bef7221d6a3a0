"""Logging configuration for btrsnap.

This module provides logging setup and utility functions for snapshot runs.
Supports DEBUG, INFO, WARNING and ERROR log levels with separate log and
error files, automatic log rotation with gzip compression, and structured
error entries carrying an error code plus troubleshooting guidance.
"""

import gzip
import json
import logging
import os
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from btrsnap.config import LoggingConfig


# Logger name for the btrsnap package
LOGGER_NAME = "btrsnap"

# Default rotation settings
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """Error codes for structured logging and troubleshooting."""
    # Target errors (2xxx)
    TARGET_NOT_SUBVOLUME = "E2001"
    
    # Store errors (3xxx)
    STORE_CREATE_FAILED = "E3001"
    STORE_DELETE_FAILED = "E3002"
    STORE_TOUCH_FAILED = "E3003"
    STORE_QUERY_FAILED = "E3004"
    
    # General errors (0xxx)
    UNKNOWN_ERROR = "E0001"


ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.TARGET_NOT_SUBVOLUME: "The path, or the .@snapshots_ directory beside it, is not a btrfs subvolume. Fix the path or turn the directory into a subvolume with 'btrfs subvolume create'.",
    
    ErrorCode.STORE_CREATE_FAILED: "Snapshot creation failed. Check free space and that the filesystem is mounted read-write.",
    ErrorCode.STORE_DELETE_FAILED: "Snapshot deletion failed. The snapshot may be busy or already removed; the next run will retry.",
    ErrorCode.STORE_TOUCH_FAILED: "Could not update the subvolume timestamp. Check that the filesystem is writable.",
    ErrorCode.STORE_QUERY_FAILED: "Could not query the subvolume. Check that btrfs-progs is installed and the path is on btrfs.",
    
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}

# Store operation name -> error code
STORE_OPERATION_CODES: Dict[str, ErrorCode] = {
    "create_snapshot": ErrorCode.STORE_CREATE_FAILED,
    "create_subvolume": ErrorCode.STORE_CREATE_FAILED,
    "delete_snapshots": ErrorCode.STORE_DELETE_FAILED,
    "touch": ErrorCode.STORE_TOUCH_FAILED,
    "get_generation": ErrorCode.STORE_QUERY_FAILED,
    "list_directory": ErrorCode.STORE_QUERY_FAILED,
    "is_subvolume": ErrorCode.STORE_QUERY_FAILED,
}


@dataclass
class StructuredLogEntry:
    """
    A structured log entry with an error code and guidance.
    
    Serialized as a single JSON object so log readers can parse it back.
    """
    timestamp: str
    level: str
    message: str
    error_code: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    guidance: Optional[str] = None
    
    def to_json(self) -> str:
        """Serialize to JSON string for logging."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=str)
    
    @classmethod
    def create(
        cls,
        level: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "StructuredLogEntry":
        """Create an entry with automatic timestamp and guidance."""
        return cls(
            timestamp=datetime.now().isoformat(),
            level=level,
            message=message,
            error_code=error_code.value if error_code else None,
            context=context,
            guidance=get_error_guidance(error_code) if error_code else None,
        )


def get_error_guidance(error_code: ErrorCode) -> str:
    """Get troubleshooting guidance for an error code."""
    return ERROR_GUIDANCE.get(error_code, ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR])


class LoggingError(Exception):
    """Raised when logging setup fails."""
    pass


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that compresses rotated files with gzip.
    
    Rotated files are named with a .gz extension.
    """
    
    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"
    
    def rotate(self, source: str, dest: str) -> None:
        """
        Compress source into dest and remove source.
        
        Falls back to a plain rename if compression fails.
        """
        if not os.path.exists(source):
            return
        
        try:
            with open(source, 'rb') as f_in:
                with gzip.open(dest, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith('.gz') else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # Best effort - don't fail logging


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: "
            f"{', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


_FORMATTER = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[Path] = None,
    error_log_file: Optional[Path] = None,
    level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
) -> logging.Logger:
    """
    Configure logging for btrsnap.
    
    Sets up logging with:
    - A rotating file handler for general logs (log_file)
    - A rotating file handler for error logs only (error_log_file)
    - Console output for immediate feedback
    - Automatic gzip compression of rotated files
    
    Args:
        config: LoggingConfig object with settings. If provided, the
            path and level arguments are ignored.
        log_file: Path to main log file (used if config is None)
        error_log_file: Path to error log file (used if config is None)
        level: Log level string (used if config is None)
        max_bytes: Maximum log file size before rotation (default 10MB)
        backup_count: Number of rotated files to keep (default 5)
    
    Returns:
        Configured logger instance
    
    Raises:
        LoggingError: If log directory cannot be created or level is invalid
    """
    if config is not None:
        log_file = config.log_file
        error_log_file = config.error_log_file
        level = config.level
        if max_bytes is None:
            max_bytes = config.log_max_bytes
        if backup_count is None:
            backup_count = config.log_backup_count
    else:
        defaults = LoggingConfig()
        if log_file is None:
            log_file = defaults.log_file
        if error_log_file is None:
            error_log_file = defaults.error_log_file
        if level is None:
            level = defaults.level
        if max_bytes is None:
            max_bytes = DEFAULT_MAX_BYTES
        if backup_count is None:
            backup_count = DEFAULT_BACKUP_COUNT
    
    log_file = Path(os.path.expanduser(str(log_file)))
    error_log_file = Path(os.path.expanduser(str(error_log_file)))
    
    # Validate the level before touching the filesystem
    log_level = _get_log_level(level)
    
    _ensure_log_directory(log_file)
    _ensure_log_directory(error_log_file)
    
    logger = logging.getLogger(LOGGER_NAME)
    
    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    
    logger.setLevel(logging.DEBUG)  # Allow all levels, handlers will filter
    
    try:
        file_handler = GzipRotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler = GzipRotatingFileHandler(
            error_log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        raise LoggingError(f"Failed to open log file: {e}")
    
    file_handler.setLevel(log_level)
    file_handler.setFormatter(_FORMATTER)
    logger.addHandler(file_handler)
    
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(_FORMATTER)
    logger.addHandler(error_handler)
    
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    
    return logger


def setup_console_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure console-only logging.
    
    Used when the log files can't be opened, and for read-only commands.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG)
    
    try:
        log_level = _get_log_level(level)
    except LoggingError:
        log_level = logging.INFO
    
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return logger


def get_logger() -> logging.Logger:
    """Get the btrsnap logger instance."""
    return logging.getLogger(LOGGER_NAME)


def log_run_start(
    logger: logging.Logger,
    subvolumes: Iterable[Path],
    expiration_days: int,
    min_count: int,
    dry_run: bool = False,
) -> None:
    """Log the start of a snapshot run."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    mode = " (dry run)" if dry_run else ""
    logger.info(f"Snapshot run started at {timestamp}{mode}")
    logger.info(f"Subvolumes: {', '.join(str(s) for s in subvolumes)}")
    logger.info(
        f"Retention: expiration_days={expiration_days}, min_count={min_count}"
    )


def log_subvolume_result(
    logger: logging.Logger,
    subvolume: Path,
    created: Optional[Path],
    deleted: Iterable[Path],
    kept_count: int,
) -> None:
    """Log what happened to one subvolume."""
    deleted = list(deleted)
    if created is not None:
        logger.info(f"{subvolume}: created snapshot {created.name}")
    else:
        logger.info(f"{subvolume}: unchanged since last snapshot")
    for path in deleted:
        logger.info(f"{subvolume}: deleted snapshot {path.name}")
    logger.info(
        f"{subvolume}: {kept_count} snapshot(s) kept, {len(deleted)} deleted"
    )


def log_structured_error(
    logger: logging.Logger,
    message: str,
    error_code: ErrorCode,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """Log an error as a JSON entry with error code and guidance, and return it."""
    entry = StructuredLogEntry.create(
        level="ERROR",
        message=message,
        error_code=error_code,
        context=context,
    )
    logger.error(entry.to_json())
    return entry


def map_exception_to_error_code(exception: Exception) -> ErrorCode:
    """Map an exception to an appropriate error code."""
    operation = getattr(exception, "operation", None)
    if operation in STORE_OPERATION_CODES:
        return STORE_OPERATION_CODES[operation]
    
    if type(exception).__name__ == "InvalidTargetError":
        return ErrorCode.TARGET_NOT_SUBVOLUME
    return ErrorCode.UNKNOWN_ERROR
