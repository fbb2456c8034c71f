"""Deterministic deployment primitives for Harbormaster.

This module implements data backup and restore, container runtime control
(Docker and Docker Compose), health verification, extended monitoring, and
deployment metadata.
"""

from __future__ import annotations

from harbormaster.pipeline.backup import BackupHandle, BackupManager
from harbormaster.pipeline.container import (
    ComposeAction,
    ComposeManager,
    ContainerAction,
    ContainerStatus,
    DockerRuntime,
    RuntimeController,
    find_compose_file,
    parse_port_mapping,
)
from harbormaster.pipeline.health import (
    ExtendedMonitor,
    HealthStatus,
    HealthVerdict,
    HealthVerifier,
    MonitorResult,
    MonitorStatus,
    VerificationResult,
    build_url,
)
from harbormaster.pipeline.metadata import (
    DeploymentMetadata,
    read_metadata,
    version_from_image,
    write_metadata,
)

__all__ = [
    # Backup
    "BackupHandle",
    "BackupManager",
    # Container runtime
    "ComposeAction",
    "ComposeManager",
    "ContainerAction",
    "ContainerStatus",
    "DockerRuntime",
    "RuntimeController",
    "find_compose_file",
    "parse_port_mapping",
    # Health checks
    "ExtendedMonitor",
    "HealthStatus",
    "HealthVerdict",
    "HealthVerifier",
    "MonitorResult",
    "MonitorStatus",
    "VerificationResult",
    "build_url",
    # Metadata
    "DeploymentMetadata",
    "read_metadata",
    "version_from_image",
    "write_metadata",
]
