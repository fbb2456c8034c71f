"""Data snapshot, retention and restore for deployments.

The deployed service keeps its state in a single data file under
``<deploy_path>/data``. Before every promotion that file is copied next to
itself as ``<file>.backup.<timestamp>``; the newest ``retention_count``
snapshots are kept and older ones are pruned right after a new snapshot is
written, so a restore target always exists while a backup is in progress.

Example usage:
    >>> from harbormaster.pipeline.backup import BackupManager
    >>>
    >>> manager = BackupManager(Path("/opt/todos/data"), data_file="db.sqlite")
    >>> handle = manager.snapshot(Path("/opt/todos/data/db.sqlite"))
    >>> if handle.taken:
    ...     print(f"Backed up to {handle.path}")
    >>> manager.restore(manager.latest(), Path("/opt/todos/data/db.sqlite"))
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from harbormaster.errors import BackupError, NoBackupAvailable
from harbormaster.logging import get_logger

BACKUP_MARKER = ".backup."
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S.%f"
# Second-resolution names written by earlier tooling
LEGACY_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
DEFAULT_RETENTION = 10


class BackupHandle(BaseModel):
    """Reference to one snapshot of the data file.

    Attributes:
        path: Snapshot file path, None for the "no backup taken" sentinel
        created_at: Snapshot creation time, None for the sentinel
    """

    model_config = ConfigDict(frozen=True)

    path: Path | None = Field(default=None, description="Snapshot path")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")

    @property
    def taken(self) -> bool:
        """Whether this handle refers to an actual snapshot."""
        return self.path is not None

    @classmethod
    def none(cls) -> BackupHandle:
        """Sentinel returned when there was nothing to back up."""
        return cls()


def parse_backup_timestamp(name: str, data_file: str) -> datetime | None:
    """Extract the creation timestamp encoded in a snapshot file name.

    Returns None when ``name`` is not a snapshot of ``data_file``.
    """
    prefix = f"{data_file}{BACKUP_MARKER}"
    if not name.startswith(prefix):
        return None
    stamp = name[len(prefix):]
    for fmt in (TIMESTAMP_FORMAT, LEGACY_TIMESTAMP_FORMAT):
        try:
            return datetime.strptime(stamp, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


class BackupManager:
    """Snapshots, prunes and restores the persistent data file.

    This component does not coordinate with the container runtime: callers
    must stop the serving instance before calling restore().

    Attributes:
        backup_dir: Directory holding the data file and its snapshots
        data_file: Name of the data file being protected
        retention_count: Number of snapshots kept by prune()
    """

    def __init__(
        self,
        backup_dir: Path,
        data_file: str,
        retention_count: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize BackupManager.

        Args:
            backup_dir: Directory holding the data file and its snapshots
            data_file: Name of the data file being protected
            retention_count: Number of snapshots kept after each backup
            clock: Source of snapshot timestamps (defaults to UTC now)
        """
        self.backup_dir = backup_dir
        self.data_file = data_file
        self.retention_count = retention_count
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    def snapshot(self, data_path: Path) -> BackupHandle:
        """Copy the live data file to a new timestamped snapshot.

        A missing data file (first deployment) is not an error: the
        "no backup taken" handle is returned and nothing is written.

        Args:
            data_path: Live data file to copy

        Returns:
            Handle of the new snapshot, or BackupHandle.none()

        Raises:
            BackupError: If the snapshot cannot be written
        """
        if not data_path.exists():
            self.logger.info("backup_skipped_no_data", data_path=str(data_path))
            return BackupHandle.none()

        created_at = self._clock()
        target = self.backup_dir / (
            f"{self.data_file}{BACKUP_MARKER}{created_at.strftime(TIMESTAMP_FORMAT)}"
        )

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if target.exists():
                raise BackupError(data_path, f"snapshot {target.name} already exists")
            shutil.copy2(data_path, target)
        except OSError as e:
            self.logger.error(
                "backup_failed",
                data_path=str(data_path),
                target=str(target),
                error=str(e),
            )
            raise BackupError(data_path, str(e)) from e

        self.logger.info(
            "backup_created",
            data_path=str(data_path),
            backup=str(target),
        )

        self.prune(self.retention_count)
        return BackupHandle(path=target, created_at=created_at)

    def list_backups(self) -> list[BackupHandle]:
        """List snapshots of the data file, newest first."""
        if not self.backup_dir.is_dir():
            return []

        handles: list[BackupHandle] = []
        for entry in self.backup_dir.iterdir():
            created_at = parse_backup_timestamp(entry.name, self.data_file)
            if created_at is None or not entry.is_file():
                continue
            handles.append(BackupHandle(path=entry, created_at=created_at))

        handles.sort(key=lambda h: (h.created_at, h.path.name), reverse=True)
        return handles

    def prune(self, retention_count: int = DEFAULT_RETENTION) -> list[Path]:
        """Delete every snapshot beyond the newest ``retention_count``.

        Deletion failures are logged and skipped.

        Args:
            retention_count: Number of snapshots to keep

        Returns:
            Paths that were deleted
        """
        if retention_count < 0:
            raise ValueError(f"retention_count must be >= 0, got {retention_count}")

        deleted: list[Path] = []
        for handle in self.list_backups()[retention_count:]:
            try:
                handle.path.unlink()
                deleted.append(handle.path)
            except OSError as e:
                self.logger.warning(
                    "backup_prune_failed",
                    backup=str(handle.path),
                    error=str(e),
                )

        if deleted:
            self.logger.info(
                "backups_pruned",
                deleted=len(deleted),
                retention_count=retention_count,
            )
        return deleted

    def latest(self) -> BackupHandle:
        """Return the newest snapshot.

        Raises:
            NoBackupAvailable: If no snapshot exists
        """
        backups = self.list_backups()
        if not backups:
            raise NoBackupAvailable(self.backup_dir)
        return backups[0]

    def restore(self, handle: BackupHandle, data_path: Path) -> None:
        """Copy a snapshot over the live data file.

        Must only be called while the serving instance is stopped.

        Raises:
            NoBackupAvailable: If handle is the "no backup taken" sentinel
            OSError: If the copy fails
        """
        if not handle.taken:
            raise NoBackupAvailable(self.backup_dir)

        data_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(handle.path, data_path)

        self.logger.info(
            "backup_restored",
            backup=str(handle.path),
            data_path=str(data_path),
        )
