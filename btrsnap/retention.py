"""Retention engine for btrsnap.

This module decides, per subvolume, whether a new snapshot is needed and
which existing snapshots to delete.

Retention policy:
- A snapshot is taken only when the subvolume's generation differs from
  the generation of its newest snapshot
- Snapshots older than expiration_days are deletion candidates
  (expiration_days == 0 makes every snapshot a candidate)
- The newest min_count snapshots are never deleted, whatever their age
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence
import logging
import os

from btrsnap.config import ValidationError
from btrsnap.index import Snapshot, SnapshotIndex, snapshot_dir_for, snapshot_name
from btrsnap.store import MISSING_GENERATION, SnapshotStore


logger = logging.getLogger(__name__)


class InvalidTargetError(Exception):
    """Raised when a path is not a subvolume."""
    
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Not a btrfs subvolume: {self.path}")


@dataclass(frozen=True)
class RetentionPolicy:
    """Age-based expiration with a minimum-count floor."""
    expiration_days: int = 0
    min_count: int = 0
    
    def __post_init__(self):
        for key in ("expiration_days", "min_count"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(
                    f"{key} must be an integer, got {type(value).__name__}"
                )
            if value < 0:
                raise ValidationError(f"{key} must be non-negative, got {value}")


@dataclass(frozen=True)
class Subvolume:
    """A source subvolume and where its snapshots live."""
    path: Path
    
    def __post_init__(self):
        # "." and "share/.." have no usable name until made absolute
        object.__setattr__(self, "path", Path(os.path.abspath(self.path)))
    
    @property
    def name(self) -> str:
        return self.path.name
    
    @property
    def snapshot_dir(self) -> Path:
        return snapshot_dir_for(self.path)


@dataclass
class CreationDecision:
    """Outcome of the snapshot creation check."""
    should_create: bool
    target: Path
    generation: int
    latest_generation: int
    reason: str


@dataclass
class RetentionDecision:
    """What a run would do to one subvolume."""
    subvolume: Subvolume
    creation: CreationDecision
    to_delete: List[Snapshot] = field(default_factory=list)
    kept: List[Snapshot] = field(default_factory=list)
    
    @property
    def should_create(self) -> bool:
        return self.creation.should_create


@dataclass
class RetentionResult:
    """Result of applying the retention policy to one subvolume."""
    created_snapshot: Optional[Path]
    kept_snapshots: List[Path]
    deleted_snapshots: List[Path]


def select_deletions(
    snapshots: Sequence[Snapshot],
    expired: Sequence[Snapshot],
    min_count: int,
) -> List[Snapshot]:
    """
    Choose which expired snapshots to delete without breaching min_count.
    
    If deleting every expired snapshot would leave fewer than min_count,
    only the oldest total - min_count of them are deleted; the less
    expired ones are spared. The newest min_count snapshots overall are
    never returned, even if their modification time makes them expired.
    
    Args:
        snapshots: Every snapshot of the subvolume, newest first
        expired: Expired snapshots, newest first
        min_count: Number of newest snapshots that must survive
    
    Returns:
        Snapshots to delete, newest first
    """
    total = len(snapshots)
    protected = {s.path for s in snapshots[:min_count]}
    candidates = [s for s in expired if s.path not in protected]
    
    if min_count + len(expired) > total:
        allowed = max(total - min_count, 0)
        if allowed == 0:
            return []
        # Keep the tail: the oldest entries of a newest-first list
        candidates = candidates[-allowed:]
    
    return candidates


class RetentionEngine:
    """
    Applies a RetentionPolicy to subvolumes through a SnapshotStore.
    
    All state is read fresh from the store for every subvolume.
    """
    
    def __init__(
        self,
        store: SnapshotStore,
        index: Optional[SnapshotIndex] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.clock = clock or datetime.now
        self.index = index or SnapshotIndex(store, clock=self.clock)
    
    def check_target(self, subvolume: Subvolume) -> None:
        """
        Raises:
            InvalidTargetError: If the path is not a named subvolume, or its
                snapshot directory exists but is not a subvolume
        """
        if not subvolume.name or not self.store.is_subvolume(subvolume.path):
            raise InvalidTargetError(subvolume.path)
        
        snap_dir = subvolume.snapshot_dir
        if not self.store.is_subvolume(snap_dir):
            siblings = {e.name for e in self.store.list_directory(snap_dir.parent)}
            if snap_dir.name in siblings:
                raise InvalidTargetError(snap_dir)
    
    def plan_creation(self, subvolume: Subvolume) -> CreationDecision:
        """
        Decide whether the subvolume changed since its newest snapshot.
        
        A missing subvolume or a missing snapshot both report generation 0,
        so a subvolume with no snapshots yet always gets one.
        """
        now = self.clock().replace(microsecond=0)
        target = subvolume.snapshot_dir / snapshot_name(subvolume.name, now)
        
        generation = self.store.get_generation(subvolume.path)
        latest = self.index.latest(subvolume.snapshot_dir, subvolume.name)
        if latest is None:
            latest_generation = MISSING_GENERATION
        else:
            latest_generation = self.store.get_generation(latest.path)
        
        if generation == latest_generation:
            return CreationDecision(
                should_create=False,
                target=target,
                generation=generation,
                latest_generation=latest_generation,
                reason="unchanged",
            )
        
        existing = {e.name for e in self.store.list_directory(subvolume.snapshot_dir)}
        if target.name in existing:
            # Same-second re-run
            return CreationDecision(
                should_create=False,
                target=target,
                generation=generation,
                latest_generation=latest_generation,
                reason="exists",
            )
        
        return CreationDecision(
            should_create=True,
            target=target,
            generation=generation,
            latest_generation=latest_generation,
            reason="changed",
        )
    
    def plan_deletion(
        self,
        subvolume: Subvolume,
        policy: RetentionPolicy,
    ) -> tuple[List[Snapshot], List[Snapshot]]:
        """
        Compute the deletion set for the snapshots that exist right now.
        
        Returns:
            (to_delete, kept), both newest first
        """
        snapshots = self.index.list(subvolume.snapshot_dir, subvolume.name)
        expired = self.index.expired_candidates(
            subvolume.snapshot_dir, subvolume.name, policy.expiration_days
        )
        to_delete = select_deletions(snapshots, expired, policy.min_count)
        doomed = {s.path for s in to_delete}
        kept = [s for s in snapshots if s.path not in doomed]
        return to_delete, kept
    
    def decide(self, subvolume: Subvolume, policy: RetentionPolicy) -> RetentionDecision:
        """
        Plan creation and deletion without touching the store.
        
        The deletion set is computed against the current snapshots, i.e.
        without the snapshot that creation would add.
        """
        self.check_target(subvolume)
        creation = self.plan_creation(subvolume)
        to_delete, kept = self.plan_deletion(subvolume, policy)
        return RetentionDecision(
            subvolume=subvolume,
            creation=creation,
            to_delete=to_delete,
            kept=kept,
        )
    
    def ensure_snapshot_dir(self, subvolume: Subvolume) -> None:
        """Create the snapshot directory subvolume on first use."""
        if not self.store.is_subvolume(subvolume.snapshot_dir):
            logger.info(f"Creating snapshot directory {subvolume.snapshot_dir}")
            self.store.create_subvolume(subvolume.snapshot_dir)
    
    def apply(self, subvolume: Subvolume, policy: RetentionPolicy) -> RetentionResult:
        """
        Snapshot the subvolume if it changed, then prune.
        
        Deletion is planned after creation, so a new snapshot counts
        toward min_count.
        
        Raises:
            InvalidTargetError: If the path is not a subvolume
            StoreError: If any store operation fails
        """
        self.check_target(subvolume)
        self.ensure_snapshot_dir(subvolume)
        
        created = None
        creation = self.plan_creation(subvolume)
        if creation.should_create:
            # Touching first makes the snapshot carry the post-touch
            # generation, so the next run sees "unchanged"
            self.store.touch(subvolume.path)
            self.store.create_snapshot(subvolume.path, creation.target, read_only=True)
            created = creation.target
            logger.debug(
                f"Snapshot {creation.target.name}: generation "
                f"{creation.latest_generation} -> {creation.generation}"
            )
        elif creation.reason == "exists":
            logger.warning(f"Snapshot {creation.target} already exists, skipping creation")
        
        to_delete, kept = self.plan_deletion(subvolume, policy)
        if to_delete:
            self.store.delete_snapshots([s.path for s in to_delete])
        
        return RetentionResult(
            created_snapshot=created,
            kept_snapshots=[s.path for s in kept],
            deleted_snapshots=[s.path for s in to_delete],
        )
