"""Resource descriptors: typed declarations of managed cloud resources.

A descriptor names one remote object (a Cloud SQL instance, a secret, an
IAM binding, ...), the descriptors it depends on, and the configuration the
remote object should converge to. Values that are only known once a
dependency exists are written as AttributeRef placeholders; generated
secret values are written as SecretRef placeholders and are only ever
substituted by the binding engine.

EXAMPLE:
    ResourceDescriptor(
        id="database",
        kind=ResourceKind.DATABASE,
        depends_on=("db-instance",),
        desired_config={
            "name": "n8n",
            "instance": AttributeRef("db-instance", "name"),
        },
    )
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import ConfigError

if TYPE_CHECKING:
    from .binding import SecretSpec


class ResourceKind(str, Enum):
    """Kinds of managed resources the provisioner knows how to reconcile."""

    COMPUTE_SERVICE = "ComputeService"
    DATABASE_INSTANCE = "DatabaseInstance"
    DATABASE = "Database"
    DATABASE_USER = "DatabaseUser"
    SECRET = "Secret"
    SECRET_VERSION = "SecretVersion"
    SERVICE_ACCOUNT = "ServiceAccount"
    IAM_BINDING = "IAMBinding"
    STORAGE_BUCKET = "StorageBucket"
    STORAGE_BUCKET_BINDING = "StorageBucketBinding"
    ARTIFACT_REPOSITORY = "ArtifactRepository"


class ResourceState(str, Enum):
    """Lifecycle of a descriptor within one run."""

    PLANNED = "Planned"
    APPLYING = "Applying"
    READY = "Ready"
    FAILED = "Failed"
    DESTROYING = "Destroying"
    DESTROYED = "Destroyed"


ALLOWED_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.PLANNED: frozenset({ResourceState.APPLYING, ResourceState.DESTROYING}),
    # Back to Planned only when cancelled before any mutating call
    ResourceState.APPLYING: frozenset(
        {ResourceState.READY, ResourceState.FAILED, ResourceState.PLANNED}
    ),
    ResourceState.READY: frozenset({ResourceState.DESTROYING}),
    ResourceState.FAILED: frozenset({ResourceState.DESTROYING}),
    # Back to Ready when a delete is cancelled; the resource still exists
    ResourceState.DESTROYING: frozenset(
        {ResourceState.DESTROYED, ResourceState.FAILED, ResourceState.READY}
    ),
    # A repeated destroy re-checks that the resource is still absent
    ResourceState.DESTROYED: frozenset({ResourceState.DESTROYING}),
}

# Fields every descriptor of a kind must declare in desired_config
REQUIRED_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.COMPUTE_SERVICE: ("name", "region", "image", "port"),
    ResourceKind.DATABASE_INSTANCE: ("name", "tier", "database_version", "region"),
    ResourceKind.DATABASE: ("name", "instance"),
    ResourceKind.DATABASE_USER: ("name", "instance", "password"),
    ResourceKind.SECRET: ("secret_id",),
    ResourceKind.SECRET_VERSION: ("secret", "payload"),
    ResourceKind.SERVICE_ACCOUNT: ("account_id",),
    ResourceKind.IAM_BINDING: ("member", "role", "target"),
    ResourceKind.STORAGE_BUCKET: ("name", "location"),
    ResourceKind.STORAGE_BUCKET_BINDING: ("bucket", "member", "role"),
    ResourceKind.ARTIFACT_REPOSITORY: ("repository_id", "location", "format"),
}

# Fields that must hold a SecretRef, never a literal value
SECRET_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.DATABASE_USER: ("password",),
    ResourceKind.SECRET_VERSION: ("payload",),
}

IAM_TARGET_TYPES = ("project", "secret", "service")

VALID_DESCRIPTOR_ID_PATTERN = r"^[a-z][a-z0-9-]{0,62}$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+\d+$"


@dataclass(frozen=True)
class AttributeRef:
    """Reference to an attribute a dependency records once it is Ready."""

    descriptor_id: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.descriptor_id}.{self.attribute}}}"


@dataclass(frozen=True)
class SecretRef:
    """Reference to generated secret material, revealed only at write time."""

    material: str

    def __str__(self) -> str:
        return f"${{secret:{self.material}}}"


def iter_refs(value: Any) -> Iterator[AttributeRef | SecretRef]:
    """Yield every placeholder nested inside a config value."""
    if isinstance(value, (AttributeRef, SecretRef)):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def contains_secret_ref(value: Any) -> bool:
    return any(isinstance(ref, SecretRef) for ref in iter_refs(value))


@dataclass
class ResourceDescriptor:
    """Logical declaration of one managed resource and its dependencies."""

    id: str
    kind: ResourceKind
    depends_on: tuple[str, ...] = ()
    desired_config: dict[str, Any] = field(default_factory=dict)
    state: ResourceState = ResourceState.PLANNED
    protect: bool = False

    def __post_init__(self) -> None:
        # Preserve declaration order, drop duplicates
        self.depends_on = tuple(dict.fromkeys(self.depends_on))
        if not isinstance(self.kind, ResourceKind):
            try:
                self.kind = ResourceKind(self.kind)
            except ValueError as e:
                raise ConfigError(f"Unknown resource kind for '{self.id}': {self.kind}") from e

    def transition(self, new_state: ResourceState) -> None:
        """Move to a new lifecycle state.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal state transition for '{self.id}': "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def attribute_refs(self) -> list[AttributeRef]:
        return [r for r in iter_refs(self.desired_config) if isinstance(r, AttributeRef)]

    def secret_refs(self) -> list[SecretRef]:
        return [r for r in iter_refs(self.desired_config) if isinstance(r, SecretRef)]


def validate(descriptor: ResourceDescriptor) -> None:
    """Validate a single descriptor's shape for its kind.

    Pure check, no side effects.

    Raises:
        ConfigError: Listing every problem found.
    """
    errors: list[str] = []
    config = descriptor.desired_config

    if not descriptor.id:
        errors.append("descriptor id is required")
    elif not re.match(VALID_DESCRIPTOR_ID_PATTERN, descriptor.id):
        errors.append(f"id must match {VALID_DESCRIPTOR_ID_PATTERN}: {descriptor.id}")

    if descriptor.id in descriptor.depends_on:
        errors.append("a descriptor cannot depend on itself")

    for name in REQUIRED_FIELDS[descriptor.kind]:
        value = config.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"{descriptor.kind.value} requires '{name}'")

    for name in SECRET_FIELDS.get(descriptor.kind, ()):
        value = config.get(name)
        if value is not None and not isinstance(value, SecretRef):
            errors.append(f"'{name}' must reference generated secret material, not a literal")

    # Refs may only point at declared dependencies, so they are Ready when read
    for ref in descriptor.attribute_refs():
        if ref.descriptor_id not in descriptor.depends_on:
            errors.append(
                f"references '{ref}' but does not depend on '{ref.descriptor_id}'"
            )

    errors.extend(_validate_kind_specific(descriptor.kind, config))

    if errors:
        raise ConfigError(
            f"Invalid descriptor '{descriptor.id or '?'}' ({descriptor.kind.value}):\n  - "
            + "\n  - ".join(errors)
        )


def _validate_kind_specific(kind: ResourceKind, config: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []

    match kind:
        case ResourceKind.COMPUTE_SERVICE:
            port = config.get("port")
            if port is not None and (not isinstance(port, int) or not 1 <= port <= 65535):
                errors.append(f"port must be an integer between 1 and 65535: {port!r}")
            env = config.get("env", {})
            if not isinstance(env, Mapping):
                errors.append("env must be a mapping of name to value")
            elif contains_secret_ref(env):
                errors.append("secrets must be passed via secret_env, not env")

        case ResourceKind.IAM_BINDING:
            target = config.get("target")
            if target is not None:
                if not isinstance(target, Mapping) or "type" not in target:
                    errors.append("target must be a mapping with 'type' and 'name'")
                elif target["type"] not in IAM_TARGET_TYPES:
                    errors.append(f"target type must be one of {IAM_TARGET_TYPES}")
                elif target["type"] != "project" and not target.get("name"):
                    errors.append(f"{target['type']} target requires 'name'")

        case ResourceKind.DATABASE_INSTANCE:
            region = config.get("region")
            if isinstance(region, str) and region and not re.match(VALID_REGION_PATTERN, region):
                errors.append(f"region is not a valid Google Cloud region: {region}")

        case _:
            pass

    role = config.get("role")
    if isinstance(role, str) and not role.startswith("roles/"):
        errors.append(f"role must start with 'roles/': {role}")

    return errors


@dataclass(frozen=True)
class DeploymentPlan:
    """The full set of descriptors plus global parameters for one run.

    Built before any mutation and never modified afterwards: descriptor
    states change during reconciliation, but membership does not.
    """

    project: str
    region: str
    prefix: str
    descriptors: tuple[ResourceDescriptor, ...]
    secrets: tuple[SecretSpec, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "descriptors", tuple(self.descriptors))
        object.__setattr__(self, "secrets", tuple(self.secrets))

        errors: list[str] = []
        seen: set[str] = set()
        for descriptor in self.descriptors:
            if descriptor.id in seen:
                errors.append(f"duplicate descriptor id '{descriptor.id}'")
            seen.add(descriptor.id)

        material_names = {spec.name for spec in self.secrets}
        # Dependencies may be declared in any order; cycles are caught by the graph
        for descriptor in self.descriptors:
            try:
                validate(descriptor)
            except ConfigError as e:
                errors.append(str(e))
            for dep in descriptor.depends_on:
                if dep not in seen:
                    errors.append(f"'{descriptor.id}' depends on unknown descriptor '{dep}'")
            for ref in descriptor.secret_refs():
                if ref.material not in material_names:
                    errors.append(
                        f"'{descriptor.id}' references undeclared secret material '{ref.material}'"
                    )

        if errors:
            raise ConfigError("Deployment plan is invalid:\n" + "\n".join(errors))

    @property
    def ids(self) -> list[str]:
        return [d.id for d in self.descriptors]

    def get(self, descriptor_id: str) -> ResourceDescriptor:
        for descriptor in self.descriptors:
            if descriptor.id == descriptor_id:
                return descriptor
        raise KeyError(descriptor_id)

    def secret_spec(self, material: str) -> SecretSpec:
        for spec in self.secrets:
            if spec.name == material:
                return spec
        raise KeyError(material)
