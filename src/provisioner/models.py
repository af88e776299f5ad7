"""Pydantic models for the deployment file.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Defaults matching a minimal, low-cost n8n deployment
"""

from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+\d+$"
VALID_NAME_PREFIX_PATTERN = r"^[a-z][a-z0-9-]{0,19}$"
VALID_MEMORY_PATTERN = r"^\d+(Mi|Gi)$"
VALID_CPU_PATTERN = r"^(\d+|\d+m)$"

OFFICIAL_IMAGE = "docker.n8n.io/n8nio/n8n:latest"


class DatabaseConfig(BaseModel):
    """Cloud SQL PostgreSQL instance, database and user."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tier: str = "db-f1-micro"
    version: str = Field("POSTGRES_13", alias="databaseVersion")
    database_name: Annotated[str, Field(min_length=1, max_length=63, alias="databaseName")] = "n8n"
    user_name: Annotated[str, Field(min_length=1, max_length=63, alias="userName")] = "n8n-user"
    disk_size_gb: Annotated[int, Field(ge=10, le=65536, alias="diskSizeGb")] = 10
    deletion_protection: bool = Field(False, alias="deletionProtection")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not v.startswith("POSTGRES_"):
            raise ValueError("databaseVersion must be a POSTGRES_* version")
        return v


class ProbeConfig(BaseModel):
    """TCP startup probe on the container port."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    initial_delay_seconds: Annotated[int, Field(ge=0, le=240, alias="initialDelaySeconds")] = 0
    timeout_seconds: Annotated[int, Field(ge=1, le=240, alias="timeoutSeconds")] = 240
    period_seconds: Annotated[int, Field(ge=1, le=240, alias="periodSeconds")] = 240
    failure_threshold: Annotated[int, Field(ge=1, alias="failureThreshold")] = 1


class ServiceConfig(BaseModel):
    """Cloud Run service sizing and exposure."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=49)] = "n8n"
    cpu: str = "1"
    memory: str = "2Gi"
    min_instances: Annotated[int, Field(ge=0, le=100, alias="minInstances")] = 0
    max_instances: Annotated[int, Field(ge=1, le=100, alias="maxInstances")] = 1
    timezone: str = "UTC"
    allow_unauthenticated: bool = Field(True, alias="allowUnauthenticated")
    probe: ProbeConfig = Field(default_factory=ProbeConfig)

    @field_validator("cpu")
    @classmethod
    def validate_cpu(cls, v: str) -> str:
        if not re.match(VALID_CPU_PATTERN, v):
            raise ValueError(f"cpu must be a count or millicores (e.g. '1', '1000m'): {v}")
        return v

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        if not re.match(VALID_MEMORY_PATTERN, v):
            raise ValueError(f"memory must be like '512Mi' or '2Gi': {v}")
        return v

    @model_validator(mode="after")
    def validate_scaling(self) -> ServiceConfig:
        if self.min_instances > self.max_instances:
            raise ValueError("minInstances cannot exceed maxInstances")
        return self


class ImageConfig(BaseModel):
    """Container image: the official n8n image, or a custom one in Artifact Registry."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    use_custom_image: bool = Field(False, alias="useCustomImage")
    reference: str = OFFICIAL_IMAGE
    repository_name: Annotated[str, Field(min_length=1, max_length=63, alias="repositoryName")] = (
        "n8n-repo"
    )
    custom_image_name: str = Field("n8n", alias="customImageName")
    tag: str = "latest"


class StorageConfig(BaseModel):
    """Cloud Storage bucket mounted into the container for custom nodes."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = True
    bucket_name: str | None = Field(None, alias="bucketName")
    location: str | None = None
    mount_path: str = Field("/home/node/.n8n/custom", alias="mountPath")
    role: str = "roles/storage.objectUser"
    protect: bool = False

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        if not v.startswith("roles/"):
            raise ValueError(f"role must start with 'roles/': {v}")
        return v

    @field_validator("mount_path")
    @classmethod
    def validate_mount_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"mountPath must be absolute: {v}")
        return v


class SecretsConfig(BaseModel):
    """Optional externally supplied secret values (by environment variable name)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    encryption_key_from_env: str | None = Field(None, alias="encryptionKeyFromEnv")
    db_password_from_env: str | None = Field(None, alias="dbPasswordFromEnv")


class DeploymentSpec(BaseModel):
    """Everything needed to build a deployment plan."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_id: str = Field(alias="projectId")
    region: str = "us-central1"
    name_prefix: str = Field("n8n", alias="namePrefix")

    # The public URL is either given or derived from the project number
    project_number: str | None = Field(None, alias="projectNumber")
    base_url: str | None = Field(None, alias="baseUrl")

    labels: dict[str, str] = Field(default_factory=dict)

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        if not re.match(VALID_PROJECT_ID_PATTERN, v):
            raise ValueError(f"projectId is not a valid Google Cloud project id: {v}")
        return v

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        if not re.match(VALID_REGION_PATTERN, v):
            raise ValueError(f"region is not a valid Google Cloud region: {v}")
        return v

    @field_validator("name_prefix")
    @classmethod
    def validate_name_prefix(cls, v: str) -> str:
        if not re.match(VALID_NAME_PREFIX_PATTERN, v):
            raise ValueError(f"namePrefix must match {VALID_NAME_PREFIX_PATTERN}: {v}")
        return v

    @field_validator("project_number", mode="before")
    @classmethod
    def validate_project_number(cls, v: str | int | None) -> str | None:
        # Unquoted in YAML it parses as an integer
        if isinstance(v, int):
            v = str(v)
        if v is not None and not v.isdigit():
            raise ValueError(f"projectNumber must be numeric: {v}")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        if v is not None:
            if not v.startswith("https://"):
                raise ValueError(f"baseUrl must be an https URL: {v}")
            return v.rstrip("/")
        return v

    @model_validator(mode="after")
    def validate_public_url(self) -> DeploymentSpec:
        if self.project_number is None and self.base_url is None:
            raise ValueError("either projectNumber or baseUrl is required")
        return self

    @property
    def public_url(self) -> str:
        """Public https URL n8n is reached at."""
        if self.base_url:
            return self.base_url
        return f"https://{self.service.name}-{self.project_number}.{self.region}.run.app"

    @property
    def public_host(self) -> str:
        return self.public_url.removeprefix("https://").split("/", 1)[0]

    @property
    def image_reference(self) -> str:
        if not self.image.use_custom_image:
            return self.image.reference
        return (
            f"{self.region}-docker.pkg.dev/{self.project_id}/"
            f"{self.image.repository_name}/{self.image.custom_image_name}:{self.image.tag}"
        )

    @property
    def bucket_name(self) -> str:
        return self.storage.bucket_name or f"{self.project_id}-{self.name_prefix}-custom-nodes"
