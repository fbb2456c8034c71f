"""Exception hierarchy for Harbormaster.

Errors fall into the categories the orchestrator reacts to differently:
failures before any mutation (backup, pull), failures that require a rollback
(start, verification, monitoring), and rollback exhaustion, the one condition
that leaves an environment without an automatic recovery path.
"""

from __future__ import annotations

from pathlib import Path


class HarbormasterError(Exception):
    """Base class for all Harbormaster errors."""


class BackupError(HarbormasterError):
    """Raised when a data snapshot cannot be written."""

    def __init__(self, source: Path, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to back up {source}: {reason}")


class NoBackupAvailable(HarbormasterError):
    """Raised when a restore is requested but no snapshot exists."""

    def __init__(self, backup_dir: Path):
        self.backup_dir = backup_dir
        super().__init__(f"No backup available in {backup_dir}")


class ComposeFileNotFound(HarbormasterError):
    """Raised when no compose file exists in the compose folder."""

    def __init__(self, folder: Path):
        self.folder = folder
        super().__init__(f"No compose file found in {folder}")


class RollbackExhaustedError(HarbormasterError):
    """Raised when there is no previous instance to roll back to.

    The environment may be down with no automatic recovery path; operator
    intervention is required.
    """

    def __init__(self, container_name: str, reason: str | None = None):
        self.container_name = container_name
        self.reason = reason
        msg = f"No previous instance of {container_name} to roll back to"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
