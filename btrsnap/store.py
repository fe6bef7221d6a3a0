"""Snapshot store interface and btrfs backend.

The retention logic never talks to the filesystem driver directly. It
goes through a SnapshotStore, which BtrfsStore implements on top of the
btrfs-progs command line tool.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence
import logging
import os
import re
import stat
import subprocess


logger = logging.getLogger(__name__)


# Inode number of the root directory of every btrfs subvolume/snapshot
# (BTRFS_FIRST_FREE_OBJECTID)
SUBVOLUME_OBJECT_ID = 256

# Generation reported for a path that does not exist
MISSING_GENERATION = 0

# find-new with a transid far in the future prints only the current marker
_FIND_NEW_SENTINEL = "9999999"
_TRANSID_RE = re.compile(r"transid marker was (\d+)")


class StoreError(Exception):
    """Raised when a snapshot store operation fails."""
    
    def __init__(self, operation: str, path: Path, detail: str = ""):
        self.operation = operation
        self.path = Path(path)
        self.detail = detail.strip()
        message = f"{operation} failed for {self.path}"
        if self.detail:
            message += f": {self.detail}"
        super().__init__(message)


@dataclass(frozen=True)
class DirectoryEntry:
    """A direct child of a directory, as reported by the store."""
    name: str
    path: Path
    object_id: int
    modified: float  # seconds since the epoch


class SnapshotStore(ABC):
    """Operations the retention engine needs from a copy-on-write store."""
    
    @abstractmethod
    def is_subvolume(self, path: Path) -> bool:
        """Return True iff path resolves to a store-recognized subvolume."""
    
    @abstractmethod
    def get_generation(self, path: Path) -> int:
        """Return the change-generation counter of path, 0 if it doesn't exist."""
    
    @abstractmethod
    def create_subvolume(self, path: Path) -> None:
        """Create an empty writable subvolume."""
    
    @abstractmethod
    def create_snapshot(self, source: Path, dest: Path, read_only: bool = True) -> None:
        """Capture source into a snapshot at dest."""
    
    @abstractmethod
    def delete_snapshots(self, paths: Sequence[Path]) -> None:
        """Delete the given snapshots. An empty sequence is a no-op."""
    
    @abstractmethod
    def touch(self, path: Path) -> None:
        """Update the modification time of path."""
    
    @abstractmethod
    def list_directory(self, path: Path) -> List[DirectoryEntry]:
        """List the direct children of path, [] if it doesn't exist."""


class BtrfsStore(SnapshotStore):
    """SnapshotStore backed by the btrfs command line tool."""
    
    def __init__(self, btrfs_path: str = "btrfs"):
        self.btrfs_path = btrfs_path
    
    def _run(self, operation: str, path: Path, args: List[str]) -> str:
        """
        Run a btrfs subcommand and return its stdout.
        
        Raises:
            StoreError: If the binary is missing or exits nonzero
        """
        command = [self.btrfs_path] + args
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise StoreError(operation, path, str(e))
        
        if result.returncode != 0:
            raise StoreError(operation, path, result.stderr or result.stdout)
        return result.stdout
    
    def is_subvolume(self, path: Path) -> bool:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError("is_subvolume", path, str(e))
        return stat.S_ISDIR(st.st_mode) and st.st_ino == SUBVOLUME_OBJECT_ID
    
    def get_generation(self, path: Path) -> int:
        if not Path(path).exists():
            return MISSING_GENERATION
        
        output = self._run(
            "get_generation",
            path,
            ["subvolume", "find-new", str(path), _FIND_NEW_SENTINEL],
        )
        match = _TRANSID_RE.search(output)
        if match is None:
            raise StoreError(
                "get_generation", path, f"unexpected find-new output: {output!r}"
            )
        return int(match.group(1))
    
    def create_subvolume(self, path: Path) -> None:
        self._run("create_subvolume", path, ["subvolume", "create", str(path)])
    
    def create_snapshot(self, source: Path, dest: Path, read_only: bool = True) -> None:
        args = ["subvolume", "snapshot"]
        if read_only:
            args.append("-r")
        args += [str(source), str(dest)]
        self._run("create_snapshot", dest, args)
    
    def delete_snapshots(self, paths: Sequence[Path]) -> None:
        if not paths:
            return
        self._run(
            "delete_snapshots",
            Path(paths[0]),
            ["subvolume", "delete"] + [str(p) for p in paths],
        )
    
    def touch(self, path: Path) -> None:
        try:
            os.utime(path, None)
        except OSError as e:
            raise StoreError("touch", path, str(e))
    
    def list_directory(self, path: Path) -> List[DirectoryEntry]:
        path = Path(path)
        if not path.is_dir():
            return []
        
        entries = []
        try:
            with os.scandir(path) as it:
                for entry in it:
                    try:
                        st = entry.stat(follow_symlinks=False)
                    except FileNotFoundError:
                        # Removed between readdir and stat
                        continue
                    entries.append(
                        DirectoryEntry(
                            name=entry.name,
                            path=Path(entry.path),
                            object_id=st.st_ino,
                            modified=st.st_mtime,
                        )
                    )
        except OSError as e:
            raise StoreError("list_directory", path, str(e))
        
        entries.sort(key=lambda e: e.name)
        return entries
