"""Deployment metadata files.

Two small facts are kept under the deploy path for operators and tooling:
``current-version.txt`` (the deployed version) and ``last-deployment.txt``
(ISO 8601 timestamp of the last promotion, suffixed with ``- ROLLBACK`` when
it was written by a rollback). Both files are replaced atomically.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from harbormaster.logging import get_logger

VERSION_FILE = "current-version.txt"
LAST_DEPLOYMENT_FILE = "last-deployment.txt"
ROLLBACK_MARKER = "ROLLBACK"

logger = get_logger(__name__)


class DeploymentMetadata(BaseModel):
    """Persisted facts about the last deployment.

    Attributes:
        version: Deployed version identifier
        deployed_at: ISO 8601 timestamp of the deployment
        rollback: Whether the metadata was written by a rollback
    """

    version: str = Field(description="Deployed version")
    deployed_at: str = Field(description="Deployment timestamp")
    rollback: bool = Field(default=False, description="Written by a rollback")


def version_from_image(image: str) -> str:
    """Derive a version identifier from an image reference.

    ``ghcr.io/acme/todos:1.4.0`` gives ``1.4.0``, a digest reference gives the
    digest, and an untagged reference gives ``latest``.
    """
    if "@" in image:
        return image.rsplit("@", 1)[1]
    last_segment = image.rsplit("/", 1)[-1]
    if ":" in last_segment:
        return last_segment.rsplit(":", 1)[1]
    return "latest"


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_metadata(
    deploy_path: Path,
    version: str,
    deployed_at: datetime | None = None,
    rollback: bool = False,
) -> DeploymentMetadata:
    """Atomically overwrite the deployment metadata files.

    Args:
        deploy_path: Deployment root directory
        version: Version identifier to record
        deployed_at: Deployment time (defaults to now, UTC)
        rollback: Mark the entry as written by a rollback

    Returns:
        The metadata that was written
    """
    timestamp = (deployed_at or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    last_line = f"{timestamp} - {ROLLBACK_MARKER}" if rollback else timestamp

    _atomic_write(deploy_path / VERSION_FILE, f"{version}\n")
    _atomic_write(deploy_path / LAST_DEPLOYMENT_FILE, f"{last_line}\n")

    logger.info(
        "deployment_metadata_written",
        deploy_path=str(deploy_path),
        version=version,
        deployed_at=timestamp,
        rollback=rollback,
    )
    return DeploymentMetadata(version=version, deployed_at=timestamp, rollback=rollback)


def read_metadata(deploy_path: Path) -> DeploymentMetadata | None:
    """Read the deployment metadata, or None if no deployment was recorded."""
    version_path = deploy_path / VERSION_FILE
    if not version_path.exists():
        return None

    version = version_path.read_text(encoding="utf-8").strip()
    last_path = deploy_path / LAST_DEPLOYMENT_FILE
    last_line = last_path.read_text(encoding="utf-8").strip() if last_path.exists() else ""

    rollback = last_line.endswith(f" - {ROLLBACK_MARKER}")
    if rollback:
        last_line = last_line[: -len(f" - {ROLLBACK_MARKER}")]

    return DeploymentMetadata(version=version, deployed_at=last_line, rollback=rollback)
