"""btrsnap - Change-gated btrfs snapshots with age and count based retention."""

__version__ = "0.1.0"

from btrsnap.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
    parse_config_string,
    create_default_config,
)
from btrsnap.store import (
    SnapshotStore,
    BtrfsStore,
    DirectoryEntry,
    StoreError,
)
from btrsnap.index import (
    Snapshot,
    SnapshotIndex,
    snapshot_dir_for,
    snapshot_name,
)
from btrsnap.retention import (
    InvalidTargetError,
    RetentionEngine,
    RetentionPolicy,
    RetentionDecision,
    RetentionResult,
    Subvolume,
    select_deletions,
)
from btrsnap.logger import (
    LoggingError,
    setup_logging,
    get_logger,
)
from btrsnap.runner import (
    RunResult,
    SubvolumeResult,
    run_snapshots,
    EXIT_SUCCESS,
    EXIT_USAGE_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_INVALID_TARGET,
    EXIT_STORE_ERROR,
)

__all__ = [
    "Configuration",
    "ConfigurationError",
    "ValidationError",
    "parse_config",
    "parse_config_string",
    "create_default_config",
    "SnapshotStore",
    "BtrfsStore",
    "DirectoryEntry",
    "StoreError",
    "Snapshot",
    "SnapshotIndex",
    "snapshot_dir_for",
    "snapshot_name",
    "InvalidTargetError",
    "RetentionEngine",
    "RetentionPolicy",
    "RetentionDecision",
    "RetentionResult",
    "Subvolume",
    "select_deletions",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "RunResult",
    "SubvolumeResult",
    "run_snapshots",
    "EXIT_SUCCESS",
    "EXIT_USAGE_ERROR",
    "EXIT_CONFIG_ERROR",
    "EXIT_INVALID_TARGET",
    "EXIT_STORE_ERROR",
]
