"""Snapshot directory index for btrsnap.

Lists the snapshots of one subvolume, parses their names into timestamps
and returns them newest first.

Layout:
    <parent>/<name>                                  source subvolume
    <parent>/.@snapshots_<name>/                     snapshot directory
    <parent>/.@snapshots_<name>/@<name>_YYYY.MM.DD-HH:MM:SS
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional
import logging
import re

from btrsnap.store import SUBVOLUME_OBJECT_ID, SnapshotStore


logger = logging.getLogger(__name__)


SNAPSHOT_DIR_PREFIX = ".@snapshots_"

# Fixed-width and zero-padded, so string order is chronological. External
# tools (e.g. Samba's shadow_copy2 "previous versions") rely on it exactly.
TIMESTAMP_FORMAT = "%Y.%m.%d-%H:%M:%S"
_TIMESTAMP_RE = re.compile(r"[0-9]{4}\.[0-9]{2}\.[0-9]{2}-[0-9]{2}:[0-9]{2}:[0-9]{2}")


@dataclass(frozen=True)
class Snapshot:
    """A read-only snapshot of a subvolume."""
    subvolume_name: str
    name: str
    path: Path
    timestamp: datetime
    modified: datetime
    
    @property
    def timestamp_str(self) -> str:
        return format_timestamp(self.timestamp)


def snapshot_dir_for(subvolume: Path) -> Path:
    """Return the snapshot directory of a subvolume."""
    subvolume = Path(subvolume)
    return subvolume.parent / f"{SNAPSHOT_DIR_PREFIX}{subvolume.name}"


def format_timestamp(when: datetime) -> str:
    return when.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: str) -> Optional[datetime]:
    """
    Parse a YYYY.MM.DD-HH:MM:SS string.
    
    Returns None unless the whole string matches; partial matches and
    out-of-range fields (month 13, second 61) are rejected.
    """
    if not _TIMESTAMP_RE.fullmatch(text):
        return None
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError:
        return None


def snapshot_name(subvolume_name: str, when: datetime) -> str:
    """Return the snapshot name for a subvolume at a given instant."""
    return f"@{subvolume_name}_{format_timestamp(when)}"


def parse_snapshot_name(name: str, subvolume_name: str) -> Optional[datetime]:
    """
    Parse a snapshot name of the given subvolume into its timestamp.
    
    Args:
        name: Directory entry name
        subvolume_name: Name of the source subvolume
    
    Returns:
        The timestamp, or None if the name doesn't belong to that subvolume
    """
    prefix = f"@{subvolume_name}_"
    if not name.startswith(prefix):
        return None
    return parse_timestamp(name[len(prefix):])


class SnapshotIndex:
    """
    Read-only view of the snapshots in a snapshot directory.
    
    Every call re-reads the directory through the store, so results always
    reflect the current state and nothing is cached between subvolumes.
    """
    
    def __init__(
        self,
        store: SnapshotStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.clock = clock or datetime.now
    
    def list(self, snap_dir: Path, subvolume_name: str) -> List[Snapshot]:
        """
        List the snapshots of a subvolume, newest first.
        
        Only entries whose name matches @<name>_<timestamp> and which are
        themselves subvolumes are returned, so a plain directory with a
        matching name is never treated as a snapshot.
        
        Args:
            snap_dir: Snapshot directory
            subvolume_name: Name of the source subvolume
        
        Returns:
            Snapshots sorted by timestamp descending ([] if snap_dir is missing)
        """
        snapshots = []
        for entry in self.store.list_directory(snap_dir):
            timestamp = parse_snapshot_name(entry.name, subvolume_name)
            if timestamp is None:
                continue
            if entry.object_id != SUBVOLUME_OBJECT_ID:
                logger.debug(f"Ignoring {entry.path}: not a subvolume")
                continue
            snapshots.append(
                Snapshot(
                    subvolume_name=subvolume_name,
                    name=entry.name,
                    path=entry.path,
                    timestamp=timestamp,
                    modified=datetime.fromtimestamp(entry.modified),
                )
            )
        
        # Two sorts: name for a deterministic tie order, then timestamp
        snapshots.sort(key=lambda s: s.name, reverse=True)
        snapshots.sort(key=lambda s: s.timestamp, reverse=True)
        return snapshots
    
    def latest(self, snap_dir: Path, subvolume_name: str) -> Optional[Snapshot]:
        """Return the newest snapshot, or None if there are none."""
        snapshots = self.list(snap_dir, subvolume_name)
        return snapshots[0] if snapshots else None
    
    def expired_candidates(
        self,
        snap_dir: Path,
        subvolume_name: str,
        expiration_days: int,
    ) -> List[Snapshot]:
        """
        List snapshots last modified more than expiration_days days ago.
        
        With expiration_days == 0 every snapshot is returned: age-based
        expiration is off, and only the minimum count limits deletion.
        
        Returns:
            Expired snapshots, newest first
        """
        snapshots = self.list(snap_dir, subvolume_name)
        if expiration_days == 0:
            return snapshots
        
        try:
            cutoff = self.clock() - timedelta(days=expiration_days)
        except OverflowError:
            # Cutoff before datetime.min: nothing is that old
            return []
        return [s for s in snapshots if s.modified < cutoff]
