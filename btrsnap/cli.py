"""Command-line interface for btrsnap.

    btrsnap [-t DAYS] [-n COUNT] SUBVOL [SUBVOL ...]

Snapshots each changed subvolume and prunes its old snapshots. Other modes:
- --dry-run: report what would be created and deleted
- --list: list snapshots and whether the policy would delete them
- --init-config: write a default configuration file
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Mapping, NoReturn, Optional

from btrsnap import __version__
from btrsnap.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    DEFAULT_CONFIG_PATH,
    apply_environment,
    create_default_config,
    parse_config,
    parse_count,
)
from btrsnap.logger import LoggingError, setup_console_logging, setup_logging
from btrsnap.retention import (
    InvalidTargetError,
    RetentionEngine,
    RetentionPolicy,
    Subvolume,
)
from btrsnap.runner import (
    EXIT_SUCCESS,
    EXIT_USAGE_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_INVALID_TARGET,
    EXIT_STORE_ERROR,
    run_snapshots,
)
from btrsnap.store import BtrfsStore, StoreError


class PrivilegeError(Exception):
    """Raised when btrsnap is not running as root."""
    pass


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with EXIT_USAGE_ERROR instead of 2."""
    
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE_ERROR, f"{self.prog}: error: {message}\n")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = _ArgumentParser(
        prog='btrsnap',
        description='Snapshot changed btrfs subvolumes and prune old snapshots'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help=f'Path to config file (default: {DEFAULT_CONFIG_PATH})',
        metavar='PATH'
    )
    # Parsed as strings so bad values exit with EXIT_CONFIG_ERROR
    parser.add_argument(
        '-t', '--expiration-days',
        dest='expiration_days',
        metavar='DAYS',
        help='Delete snapshots older than DAYS days (0: age is ignored)'
    )
    parser.add_argument(
        '-n', '--min-count',
        dest='min_count',
        metavar='COUNT',
        help='Always keep the newest COUNT snapshots'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be created and deleted without changing anything'
    )
    parser.add_argument(
        '--list',
        action='store_true',
        help='List snapshots instead of creating or deleting any'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Output --list as JSON'
    )
    parser.add_argument(
        '--init-config',
        action='store_true',
        help='Write a default config file to --config (or the default path)'
    )
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite an existing config file with --init-config'
    )
    parser.add_argument(
        'subvolumes',
        nargs='*',
        type=Path,
        metavar='SUBVOL',
        help='Subvolume to snapshot (default: subvolumes from the config file)'
    )
    return parser


def check_privileges() -> None:
    """
    Raises:
        PrivilegeError: If the effective user is not root
    """
    if os.geteuid() != 0:
        raise PrivilegeError("btrsnap must be run as root")


def resolve_configuration(
    args: argparse.Namespace,
    environ: Mapping[str, str],
) -> Configuration:
    """
    Build the effective configuration.
    
    Precedence, lowest first: defaults, config file, SNAP_EXPIRATION /
    SNAP_MIN_COUNT environment variables, command line flags.
    
    Raises:
        ConfigurationError: If the config file can't be read or parsed
        ValidationError: If any retention value is invalid
    """
    config = parse_config(args.config)
    config = apply_environment(config, environ)
    
    if args.expiration_days is not None:
        config.retention.expiration_days = parse_count(
            args.expiration_days, "-t/--expiration-days"
        )
    if args.min_count is not None:
        config.retention.min_count = parse_count(args.min_count, "-n/--min-count")
    
    if args.verbose:
        config.logging.level = "DEBUG"
    return config


def cmd_init_config(args: argparse.Namespace) -> int:
    """Write the default configuration file."""
    config_path = args.config or DEFAULT_CONFIG_PATH
    
    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(create_default_config())
    except OSError as e:
        print(f"Error writing config file: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    
    print(f"Created config file: {config_path}")
    return EXIT_SUCCESS


def cmd_list(
    args: argparse.Namespace,
    config: Configuration,
    subvolumes: List[Path],
) -> int:
    """List the snapshots of each subvolume, newest first."""
    policy = RetentionPolicy(
        expiration_days=config.retention.expiration_days,
        min_count=config.retention.min_count,
    )
    store = BtrfsStore(config.store.btrfs_path)
    engine = RetentionEngine(store)
    exit_code = EXIT_SUCCESS
    listing = []
    
    for path in subvolumes:
        subvolume = Subvolume(path)
        try:
            engine.check_target(subvolume)
            to_delete, _ = engine.plan_deletion(subvolume, policy)
            snapshots = engine.index.list(subvolume.snapshot_dir, subvolume.name)
            expired = engine.index.expired_candidates(
                subvolume.snapshot_dir, subvolume.name, policy.expiration_days
            )
        except InvalidTargetError as e:
            print(f"Error: {e}", file=sys.stderr)
            exit_code = EXIT_INVALID_TARGET
            continue
        except StoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_STORE_ERROR
        
        expired_paths = {s.path for s in expired}
        doomed_paths = {s.path for s in to_delete}
        entries = [
            {
                "name": s.name,
                "path": str(s.path),
                "timestamp": s.timestamp_str,
                "expired": s.path in expired_paths,
                "would_delete": s.path in doomed_paths,
            }
            for s in snapshots
        ]
        listing.append({"subvolume": str(subvolume.path), "snapshots": entries})
        
        if not args.json:
            print(f"{subvolume.path} ({len(entries)} snapshot(s))")
            if not entries:
                print("  No snapshots")
            for entry in entries:
                marker = ""
                if entry["would_delete"]:
                    marker = "  [delete]"
                elif entry["expired"]:
                    marker = "  [expired, kept]"
                print(f"  {entry['name']}{marker}")
    
    if args.json:
        print(json.dumps(listing, indent=2))
    return exit_code


def cmd_run(
    args: argparse.Namespace,
    config: Configuration,
    subvolumes: List[Path],
) -> int:
    """Snapshot and prune (or, with --dry-run, report on) each subvolume."""
    try:
        logger = setup_logging(config.logging)
    except LoggingError as e:
        logger = setup_console_logging(config.logging.level)
        logger.warning(f"Failed to set up file logging: {e}")
    
    policy = RetentionPolicy(
        expiration_days=config.retention.expiration_days,
        min_count=config.retention.min_count,
    )
    result = run_snapshots(
        subvolumes,
        policy,
        BtrfsStore(config.store.btrfs_path),
        dry_run=args.dry_run,
        logger=logger,
    )
    
    if not result.success:
        print(f"btrsnap: {result.error_message}", file=sys.stderr)
    return result.exit_code


def main(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Main CLI entry point.
    
    Args:
        argv: Command line arguments (defaults to sys.argv[1:])
        environ: Environment (defaults to os.environ)
    
    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if environ is None:
        environ = os.environ
    
    if args.init_config:
        return cmd_init_config(args)
    
    try:
        config = resolve_configuration(args, environ)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    
    subvolumes = list(args.subvolumes) or list(config.subvolumes)
    if not subvolumes:
        parser.print_usage(sys.stderr)
        print("btrsnap: error: no subvolume given", file=sys.stderr)
        return EXIT_USAGE_ERROR
    
    try:
        if args.list:
            return cmd_list(args, config, subvolumes)
        
        if not args.dry_run:
            try:
                check_privileges()
            except PrivilegeError as e:
                print(f"Error: {e}", file=sys.stderr)
                return EXIT_USAGE_ERROR
        
        return cmd_run(args, config, subvolumes)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT


if __name__ == "__main__":
    sys.exit(main())
