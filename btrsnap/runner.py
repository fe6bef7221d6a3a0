"""Snapshot run orchestration for btrsnap.

This module processes a batch of subvolumes strictly one after another:
- Validate that the argument is a subvolume (skip it if not)
- Create the snapshot directory on first use
- Take a snapshot if the subvolume changed
- Prune snapshots according to the retention policy

An invalid argument is reported and skipped; the rest of the batch still
runs. A store failure stops the run: nothing is retried or rolled back,
and re-running recomputes the work from the store's current state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional
import logging

from btrsnap.logger import (
    get_logger,
    log_run_start,
    log_structured_error,
    log_subvolume_result,
    map_exception_to_error_code,
)
from btrsnap.retention import (
    InvalidTargetError,
    RetentionEngine,
    RetentionPolicy,
    Subvolume,
)
from btrsnap.store import SnapshotStore, StoreError


EXIT_SUCCESS = 0
EXIT_USAGE_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INVALID_TARGET = 3
EXIT_STORE_ERROR = 4


@dataclass
class SubvolumeResult:
    """Outcome for one subvolume argument."""
    path: Path
    success: bool
    created_snapshot: Optional[Path] = None
    deleted_snapshots: List[Path] = field(default_factory=list)
    kept_snapshots: List[Path] = field(default_factory=list)
    skipped: bool = False  # True if the path was not a subvolume
    error_message: Optional[str] = None


@dataclass
class RunResult:
    """Outcome of a whole run."""
    success: bool
    exit_code: int
    results: List[SubvolumeResult] = field(default_factory=list)
    error_message: Optional[str] = None
    dry_run: bool = False
    
    @property
    def skipped(self) -> List[SubvolumeResult]:
        return [r for r in self.results if r.skipped]


def _plan_subvolume(
    engine: RetentionEngine,
    subvolume: Subvolume,
    policy: RetentionPolicy,
    logger: logging.Logger,
) -> SubvolumeResult:
    decision = engine.decide(subvolume, policy)
    created = decision.creation.target if decision.should_create else None
    if created is not None:
        logger.info(f"[dry run] {subvolume.path}: would create {created.name}")
    for snapshot in decision.to_delete:
        logger.info(f"[dry run] {subvolume.path}: would delete {snapshot.name}")
    return SubvolumeResult(
        path=subvolume.path,
        success=True,
        created_snapshot=created,
        deleted_snapshots=[s.path for s in decision.to_delete],
        kept_snapshots=[s.path for s in decision.kept],
    )


def _apply_subvolume(
    engine: RetentionEngine,
    subvolume: Subvolume,
    policy: RetentionPolicy,
    logger: logging.Logger,
) -> SubvolumeResult:
    result = engine.apply(subvolume, policy)
    log_subvolume_result(
        logger,
        subvolume.path,
        result.created_snapshot,
        result.deleted_snapshots,
        len(result.kept_snapshots),
    )
    return SubvolumeResult(
        path=subvolume.path,
        success=True,
        created_snapshot=result.created_snapshot,
        deleted_snapshots=result.deleted_snapshots,
        kept_snapshots=result.kept_snapshots,
    )


def run_snapshots(
    subvolumes: Iterable[Path],
    policy: RetentionPolicy,
    store: SnapshotStore,
    dry_run: bool = False,
    clock: Optional[Callable[[], datetime]] = None,
    logger: Optional[logging.Logger] = None,
) -> RunResult:
    """
    Snapshot and prune each subvolume in order.
    
    Args:
        subvolumes: Subvolume paths, processed in the given order
        policy: Retention policy for every subvolume in the run
        store: Snapshot store to operate on
        dry_run: If True, only report what would be created and deleted
        clock: Source of "now" (defaults to datetime.now)
        logger: Logger to report to (defaults to the btrsnap logger)
    
    Returns:
        RunResult. exit_code is EXIT_STORE_ERROR if a store operation
        failed, EXIT_INVALID_TARGET if any argument was skipped, and
        EXIT_SUCCESS otherwise.
    """
    if logger is None:
        logger = get_logger()
    subvolumes = [Path(s) for s in subvolumes]
    engine = RetentionEngine(store, clock=clock)
    results: List[SubvolumeResult] = []
    
    log_run_start(
        logger, subvolumes, policy.expiration_days, policy.min_count, dry_run=dry_run
    )
    
    for path in subvolumes:
        subvolume = Subvolume(path)
        try:
            if dry_run:
                results.append(_plan_subvolume(engine, subvolume, policy, logger))
            else:
                results.append(_apply_subvolume(engine, subvolume, policy, logger))
        except InvalidTargetError as e:
            log_structured_error(
                logger,
                str(e),
                map_exception_to_error_code(e),
                context={"path": str(e.path), "subvolume": str(subvolume.path)},
            )
            results.append(
                SubvolumeResult(
                    path=subvolume.path,
                    success=False,
                    skipped=True,
                    error_message=str(e),
                )
            )
        except StoreError as e:
            log_structured_error(
                logger,
                str(e),
                map_exception_to_error_code(e),
                context={
                    "operation": e.operation,
                    "path": str(e.path),
                    "subvolume": str(subvolume.path),
                },
            )
            results.append(
                SubvolumeResult(path=subvolume.path, success=False, error_message=str(e))
            )
            return RunResult(
                success=False,
                exit_code=EXIT_STORE_ERROR,
                results=results,
                error_message=str(e),
                dry_run=dry_run,
            )
    
    skipped = [r for r in results if r.skipped]
    if skipped:
        return RunResult(
            success=False,
            exit_code=EXIT_INVALID_TARGET,
            results=results,
            error_message=f"{len(skipped)} invalid subvolume argument(s) skipped",
            dry_run=dry_run,
        )
    
    return RunResult(
        success=True,
        exit_code=EXIT_SUCCESS,
        results=results,
        dry_run=dry_run,
    )
