"""Unit tests for data backup, retention and restore."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from harbormaster.errors import BackupError, NoBackupAvailable
from harbormaster.pipeline.backup import (
    BackupHandle,
    BackupManager,
    parse_backup_timestamp,
)


class SteppingClock:
    """Clock advancing one second per call."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a data directory holding a live data file."""
    directory = tmp_path / "data"
    directory.mkdir()
    (directory / "db.sqlite").write_text("live")
    return directory


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


class TestParseBackupTimestamp:
    """Test snapshot name parsing."""

    def test_microsecond_format(self) -> None:
        """Test current snapshot names are parsed."""
        parsed = parse_backup_timestamp("db.sqlite.backup.20260301-120000.123456", "db.sqlite")
        assert parsed == datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def test_legacy_second_format(self) -> None:
        """Test second-resolution names written by earlier tooling are parsed."""
        parsed = parse_backup_timestamp("db.sqlite.backup.20260301-120000", "db.sqlite")
        assert parsed == datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "name",
        ["db.sqlite", "db.sqlite.backup.", "db.sqlite.backup.yesterday", "other.backup.20260301-120000"],
    )
    def test_unrelated_names(self, name: str) -> None:
        """Test non-snapshot files are ignored."""
        assert parse_backup_timestamp(name, "db.sqlite") is None


class TestSnapshot:
    """Test snapshot creation."""

    def test_snapshot_copies_data(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test a snapshot is a timestamped copy next to the data file."""
        manager = BackupManager(data_dir, "db.sqlite", clock=clock)

        handle = manager.snapshot(data_dir / "db.sqlite")

        assert handle.taken is True
        assert handle.path == data_dir / "db.sqlite.backup.20260301-120000.000000"
        assert handle.path.read_text() == "live"
        assert handle.created_at == datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_missing_data_file_is_first_deployment(self, tmp_path: Path) -> None:
        """Test a missing source returns the sentinel and writes nothing."""
        manager = BackupManager(tmp_path / "data", "db.sqlite")

        handle = manager.snapshot(tmp_path / "data" / "db.sqlite")

        assert handle == BackupHandle.none()
        assert handle.taken is False
        assert not (tmp_path / "data").exists()

    def test_copy_failure_raises_backup_error(self, data_dir: Path) -> None:
        """Test an I/O failure is fatal."""
        manager = BackupManager(data_dir, "db.sqlite")

        with patch("harbormaster.pipeline.backup.shutil.copy2", side_effect=OSError("disk full")):
            with pytest.raises(BackupError, match="disk full") as exc_info:
                manager.snapshot(data_dir / "db.sqlite")

        assert exc_info.value.source == data_dir / "db.sqlite"

    def test_existing_target_is_not_overwritten(self, data_dir: Path) -> None:
        """Test two snapshots with the same timestamp do not clobber each other."""
        fixed = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        manager = BackupManager(data_dir, "db.sqlite", clock=lambda: fixed)
        manager.snapshot(data_dir / "db.sqlite")

        with pytest.raises(BackupError, match="already exists"):
            manager.snapshot(data_dir / "db.sqlite")


class TestRetention:
    """Test that retention never exceeds the cap."""

    def test_eleventh_backup_removes_oldest(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test 11 consecutive snapshots leave exactly the 10 newest."""
        manager = BackupManager(data_dir, "db.sqlite", retention_count=10, clock=clock)

        handles = [manager.snapshot(data_dir / "db.sqlite") for _ in range(11)]

        remaining = manager.list_backups()
        assert len(remaining) == 10
        assert handles[0].path.exists() is False
        assert [h.path for h in remaining] == [h.path for h in reversed(handles[1:])]

    def test_count_never_exceeds_cap(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test the invariant holds after every snapshot."""
        manager = BackupManager(data_dir, "db.sqlite", retention_count=3, clock=clock)

        for _ in range(7):
            manager.snapshot(data_dir / "db.sqlite")
            assert len(manager.list_backups()) <= 3

    def test_prune_ignores_unrelated_files(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test only snapshots of the data file are pruned."""
        (data_dir / "notes.txt").write_text("keep")
        manager = BackupManager(data_dir, "db.sqlite", clock=clock)
        for _ in range(3):
            manager.snapshot(data_dir / "db.sqlite")

        deleted = manager.prune(retention_count=1)

        assert len(deleted) == 2
        assert (data_dir / "notes.txt").exists()
        assert (data_dir / "db.sqlite").exists()

    def test_prune_failure_is_not_fatal(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test a deletion failure is logged and skipped."""
        manager = BackupManager(data_dir, "db.sqlite", clock=clock)
        for _ in range(3):
            manager.snapshot(data_dir / "db.sqlite")

        with patch.object(Path, "unlink", side_effect=PermissionError("read-only")):
            deleted = manager.prune(retention_count=1)

        assert deleted == []
        assert len(manager.list_backups()) == 3

    def test_negative_retention_rejected(self, data_dir: Path) -> None:
        """Test a negative retention count is a programming error."""
        with pytest.raises(ValueError):
            BackupManager(data_dir, "db.sqlite").prune(retention_count=-1)

    def test_legacy_and_current_names_sort_together(self, data_dir: Path) -> None:
        """Test ordering is by timestamp across both name formats."""
        (data_dir / "db.sqlite.backup.20260301-100000").write_text("old")
        (data_dir / "db.sqlite.backup.20260301-110000.500000").write_text("new")

        backups = BackupManager(data_dir, "db.sqlite").list_backups()

        assert [b.path.name for b in backups] == [
            "db.sqlite.backup.20260301-110000.500000",
            "db.sqlite.backup.20260301-100000",
        ]


class TestRestore:
    """Test restoring snapshots."""

    def test_latest_without_backups(self, data_dir: Path) -> None:
        """Test latest() raises when nothing was backed up."""
        with pytest.raises(NoBackupAvailable):
            BackupManager(data_dir, "db.sqlite").latest()

    def test_restore_latest(self, data_dir: Path, clock: SteppingClock) -> None:
        """Test the newest snapshot replaces the live data."""
        manager = BackupManager(data_dir, "db.sqlite", clock=clock)
        manager.snapshot(data_dir / "db.sqlite")
        (data_dir / "db.sqlite").write_text("second")
        manager.snapshot(data_dir / "db.sqlite")
        (data_dir / "db.sqlite").write_text("corrupted by migration")

        manager.restore(manager.latest(), data_dir / "db.sqlite")

        assert (data_dir / "db.sqlite").read_text() == "second"

    def test_restore_sentinel_raises(self, data_dir: Path) -> None:
        """Test the no-backup sentinel cannot be restored."""
        with pytest.raises(NoBackupAvailable):
            BackupManager(data_dir, "db.sqlite").restore(BackupHandle.none(), data_dir / "db.sqlite")

    def test_restore_recreates_missing_data_dir(self, tmp_path: Path, data_dir: Path) -> None:
        """Test restoring into a deleted data directory."""
        manager = BackupManager(data_dir, "db.sqlite")
        handle = manager.snapshot(data_dir / "db.sqlite")
        target = tmp_path / "fresh" / "data" / "db.sqlite"

        manager.restore(handle, target)

        assert target.read_text() == "live"
