"""Deployment request model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from harbormaster.pipeline.metadata import version_from_image

CANDIDATE_SUFFIX = "-candidate"
PREVIOUS_SUFFIX = "-previous"
DATA_DIR = "data"


class DeploymentRequest(BaseModel):
    """Immutable description of one deployment invocation.

    Attributes:
        environment: Target environment identity (e.g. staging, production)
        image: Image reference to deploy
        container_name: Canonical instance name
        port_mapping: ``docker run -p`` style port mapping
        deploy_path: Filesystem root for data, backups and metadata
        version: Explicit version identifier (derived from the image when unset)
        compose_folder: Compose project folder, enables compose-style mode
        base_url: Base URL the health checks are issued against
    """

    model_config = ConfigDict(frozen=True)

    environment: str = Field(default="production", description="Environment identity")
    image: str = Field(description="Image reference")
    container_name: str = Field(description="Canonical instance name")
    port_mapping: str | None = Field(default=None, description="Port mapping")
    deploy_path: Path = Field(description="Deployment root")
    version: str | None = Field(default=None, description="Version identifier")
    compose_folder: str | None = Field(default=None, description="Compose folder")
    base_url: str = Field(default="http://localhost:8080", description="Health base URL")

    @field_validator("image", "container_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Validate required identifiers are not blank."""
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @property
    def candidate_name(self) -> str:
        return f"{self.container_name}{CANDIDATE_SUFFIX}"

    @property
    def previous_name(self) -> str:
        return f"{self.container_name}{PREVIOUS_SUFFIX}"

    @property
    def data_dir(self) -> Path:
        return self.deploy_path / DATA_DIR

    @property
    def resolved_version(self) -> str:
        """Explicit version, else the image tag or digest, else ``latest``."""
        return self.version or version_from_image(self.image)

    @property
    def compose_mode(self) -> bool:
        return bool(self.compose_folder)
