"""In-memory snapshot store and snapshot builders for tests."""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from btrsnap.index import Snapshot, snapshot_dir_for, snapshot_name
from btrsnap.store import (
    SUBVOLUME_OBJECT_ID,
    DirectoryEntry,
    SnapshotStore,
    StoreError,
)


class FakeStore(SnapshotStore):
    """
    SnapshotStore that keeps subvolumes in dictionaries.
    
    Touching a subvolume bumps its generation and a snapshot inherits the
    generation of its source, mirroring btrfs closely enough for the
    change-detection logic.
    """
    
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.now
        self.generations: Dict[Path, int] = {}
        self.modified: Dict[Path, float] = {}
        self.plain_dirs: Dict[Path, float] = {}
        self.calls: List[tuple] = []
        self.fail_on: Optional[str] = None
    
    def _check_failure(self, operation: str, path: Path) -> None:
        if self.fail_on == operation:
            raise StoreError(operation, path, "injected failure")
    
    # Test setup helpers
    
    def add_subvolume(
        self,
        path: Path,
        generation: int = 1,
        modified: Optional[datetime] = None,
    ) -> Path:
        path = Path(path)
        self.generations[path] = generation
        self.modified[path] = (modified or self.clock()).timestamp()
        return path
    
    def add_plain_dir(self, path: Path, modified: Optional[datetime] = None) -> Path:
        path = Path(path)
        self.plain_dirs[path] = (modified or self.clock()).timestamp()
        return path
    
    def add_snapshot(
        self,
        subvolume: Path,
        timestamp: datetime,
        modified: Optional[datetime] = None,
        generation: int = 1,
    ) -> Path:
        subvolume = Path(subvolume)
        snap_dir = snapshot_dir_for(subvolume)
        if snap_dir not in self.generations:
            self.add_subvolume(snap_dir)
        path = snap_dir / snapshot_name(subvolume.name, timestamp)
        return self.add_subvolume(path, generation, modified or timestamp)
    
    def change(self, path: Path) -> None:
        self.generations[Path(path)] += 1
    
    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]
    
    # SnapshotStore
    
    def is_subvolume(self, path: Path) -> bool:
        return Path(path) in self.generations
    
    def get_generation(self, path: Path) -> int:
        return self.generations.get(Path(path), 0)
    
    def create_subvolume(self, path: Path) -> None:
        self.calls.append(("create_subvolume", Path(path)))
        self._check_failure("create_subvolume", path)
        self.add_subvolume(path)
    
    def create_snapshot(self, source: Path, dest: Path, read_only: bool = True) -> None:
        source, dest = Path(source), Path(dest)
        self.calls.append(("create_snapshot", source, dest, read_only))
        self._check_failure("create_snapshot", dest)
        if dest in self.generations or dest in self.plain_dirs:
            raise StoreError("create_snapshot", dest, "File exists")
        self.add_subvolume(dest, self.generations[source])
    
    def delete_snapshots(self, paths: Sequence[Path]) -> None:
        self.calls.append(("delete_snapshots", tuple(Path(p) for p in paths)))
        if paths:
            self._check_failure("delete_snapshots", paths[0])
        for path in paths:
            del self.generations[Path(path)]
            del self.modified[Path(path)]
    
    def touch(self, path: Path) -> None:
        path = Path(path)
        self.calls.append(("touch", path))
        self._check_failure("touch", path)
        self.generations[path] += 1
        self.modified[path] = self.clock().timestamp()
    
    def list_directory(self, path: Path) -> List[DirectoryEntry]:
        path = Path(path)
        entries = [
            DirectoryEntry(p.name, p, SUBVOLUME_OBJECT_ID, self.modified[p])
            for p in self.generations
            if p.parent == path
        ]
        entries += [
            DirectoryEntry(p.name, p, 1000 + i, mtime)
            for i, (p, mtime) in enumerate(self.plain_dirs.items())
            if p.parent == path
        ]
        entries.sort(key=lambda e: e.name)
        return entries


def make_snapshots(
    ages_days: Sequence[float],
    now: datetime,
    subvolume_name: str = "data",
) -> List[Snapshot]:
    """
    Build Snapshot records aged the given number of days, newest first.
    
    Creation time and modification time are the same instant.
    """
    snap_dir = Path("/pool") / f".@snapshots_{subvolume_name}"
    snapshots = []
    for age in sorted(ages_days):
        when = (now - timedelta(days=age)).replace(microsecond=0)
        name = snapshot_name(subvolume_name, when)
        snapshots.append(
            Snapshot(
                subvolume_name=subvolume_name,
                name=name,
                path=snap_dir / name,
                timestamp=when,
                modified=when,
            )
        )
    return snapshots
