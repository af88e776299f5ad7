"""Translate a DeploymentSpec into the descriptors of an n8n deployment.

Resulting graph (arrows point at dependencies):

    service-account
    artifact-repository                      (custom image only)
    db-instance [protected]
    database             -> db-instance
    db-password / encryption-key            (Secret)
    *-version            -> secret            (SecretVersion, pinned)
    db-user              -> db-instance, db-password-version
    *-access             -> service-account, secret
    sql-client-binding   -> service-account
    custom-nodes-bucket
    custom-nodes-bucket-access -> bucket, service-account
    n8n-service          -> everything above
    public-invoker       -> n8n-service       (allowUnauthenticated only)

Every ordering requirement of the service is expressed through depends_on;
the reconciler has no knowledge of n8n.
"""

from __future__ import annotations

from typing import Any

from .binding import SecretPurpose, SecretSpec
from .descriptors import AttributeRef, DeploymentPlan, ResourceDescriptor, ResourceKind, SecretRef
from .models import DeploymentSpec

OFFICIAL_IMAGE_PORT = 5678
CUSTOM_IMAGE_PORT = 443
CUSTOM_IMAGE_PATH = "/"
POSTGRES_PORT = 5432
N8N_USER_FOLDER = "/home/node"

DB_PASSWORD_MATERIAL = "db-password"
ENCRYPTION_KEY_MATERIAL = "encryption-key"

SECRET_ACCESSOR_ROLE = "roles/secretmanager.secretAccessor"
CLOUDSQL_CLIENT_ROLE = "roles/cloudsql.client"
RUN_INVOKER_ROLE = "roles/run.invoker"

MANAGED_BY_LABEL = {"managed-by": "n8n-provisioner"}


def container_port(spec: DeploymentSpec) -> int:
    return CUSTOM_IMAGE_PORT if spec.image.use_custom_image else OFFICIAL_IMAGE_PORT


def container_environment(spec: DeploymentSpec, db_host: Any) -> dict[str, Any]:
    """Plain (non-secret) environment of the n8n container.

    Args:
        spec: Deployment spec.
        db_host: Cloud SQL socket directory, usually an AttributeRef.
    """
    env: dict[str, Any] = {
        "DB_TYPE": "postgresdb",
        "DB_POSTGRESDB_HOST": db_host,
        "DB_POSTGRESDB_PORT": str(POSTGRES_PORT),
        "DB_POSTGRESDB_DATABASE": spec.database.database_name,
        "DB_POSTGRESDB_USER": spec.database.user_name,
        "DB_POSTGRESDB_SCHEMA": "public",
        "N8N_PORT": str(container_port(spec)),
    }
    if spec.image.use_custom_image:
        env["N8N_PATH"] = CUSTOM_IMAGE_PATH
    env.update(
        {
            "N8N_PROTOCOL": "https",
            "N8N_HOST": spec.public_host,
            "WEBHOOK_URL": spec.public_url,
            "N8N_EDITOR_BASE_URL": spec.public_url,
            "QUEUE_HEALTH_CHECK_ACTIVE": "true",
            "N8N_PROXY_HOPS": "1",
            "GENERIC_TIMEZONE": spec.service.timezone,
            "N8N_USER_FOLDER": N8N_USER_FOLDER,
        }
    )
    if spec.storage.enabled:
        env["N8N_CUSTOM_EXTENSIONS"] = spec.storage.mount_path
    return env


def _secret_pair(
    prefix: str,
    material: str,
    labels: dict[str, str],
) -> list[ResourceDescriptor]:
    return [
        ResourceDescriptor(
            id=material,
            kind=ResourceKind.SECRET,
            desired_config={"secret_id": f"{prefix}-{material}", "labels": labels},
        ),
        ResourceDescriptor(
            id=f"{material}-version",
            kind=ResourceKind.SECRET_VERSION,
            depends_on=(material,),
            desired_config={
                "secret": AttributeRef(material, "name"),
                "payload": SecretRef(material),
            },
        ),
    ]


def _access_binding(
    descriptor_id: str,
    role: str,
    target: dict[str, Any],
    *deps: str,
) -> ResourceDescriptor:
    return ResourceDescriptor(
        id=descriptor_id,
        kind=ResourceKind.IAM_BINDING,
        depends_on=("service-account", *deps),
        desired_config={
            "member": AttributeRef("service-account", "member"),
            "role": role,
            "target": target,
        },
    )


def build_plan(spec: DeploymentSpec) -> DeploymentPlan:
    """Build the deployment plan for one n8n environment.

    Raises:
        ConfigError: If the resulting descriptors are invalid.
    """
    prefix = spec.name_prefix
    labels = {**MANAGED_BY_LABEL, **spec.labels}
    descriptors: list[ResourceDescriptor] = []

    descriptors.append(
        ResourceDescriptor(
            id="service-account",
            kind=ResourceKind.SERVICE_ACCOUNT,
            desired_config={"account_id": f"{prefix}-runtime", "display_name": "n8n runtime"},
        )
    )

    if spec.image.use_custom_image:
        descriptors.append(
            ResourceDescriptor(
                id="artifact-repository",
                kind=ResourceKind.ARTIFACT_REPOSITORY,
                desired_config={
                    "repository_id": spec.image.repository_name,
                    "location": spec.region,
                    "format": "DOCKER",
                    "description": "Custom n8n images",
                    "labels": labels,
                },
            )
        )

    descriptors.append(
        ResourceDescriptor(
            id="db-instance",
            kind=ResourceKind.DATABASE_INSTANCE,
            protect=True,
            desired_config={
                "name": f"{prefix}-db",
                "tier": spec.database.tier,
                "database_version": spec.database.version,
                "region": spec.region,
                "disk_size_gb": spec.database.disk_size_gb,
                "deletion_protection": spec.database.deletion_protection,
                "labels": labels,
            },
        )
    )
    descriptors.append(
        ResourceDescriptor(
            id="database",
            kind=ResourceKind.DATABASE,
            depends_on=("db-instance",),
            desired_config={
                "name": spec.database.database_name,
                "instance": AttributeRef("db-instance", "name"),
            },
        )
    )

    descriptors.extend(_secret_pair(prefix, DB_PASSWORD_MATERIAL, labels))
    descriptors.extend(_secret_pair(prefix, ENCRYPTION_KEY_MATERIAL, labels))

    descriptors.append(
        ResourceDescriptor(
            id="db-user",
            kind=ResourceKind.DATABASE_USER,
            depends_on=("db-instance", f"{DB_PASSWORD_MATERIAL}-version"),
            desired_config={
                "name": spec.database.user_name,
                "instance": AttributeRef("db-instance", "name"),
                "password": SecretRef(DB_PASSWORD_MATERIAL),
            },
        )
    )

    for material in (DB_PASSWORD_MATERIAL, ENCRYPTION_KEY_MATERIAL):
        descriptors.append(
            _access_binding(
                f"{material}-access",
                SECRET_ACCESSOR_ROLE,
                {"type": "secret", "name": AttributeRef(material, "name")},
                material,
            )
        )
    descriptors.append(
        _access_binding(
            "sql-client-binding",
            CLOUDSQL_CLIENT_ROLE,
            {"type": "project", "name": spec.project_id},
        )
    )

    service_deps = [d.id for d in descriptors]

    bucket_config: dict[str, Any] | None = None
    if spec.storage.enabled:
        descriptors.append(
            ResourceDescriptor(
                id="custom-nodes-bucket",
                kind=ResourceKind.STORAGE_BUCKET,
                protect=spec.storage.protect,
                desired_config={
                    "name": spec.bucket_name,
                    "location": spec.storage.location or spec.region,
                    "versioning": True,
                    "uniform_access": True,
                    "labels": labels,
                },
            )
        )
        descriptors.append(
            ResourceDescriptor(
                id="custom-nodes-bucket-access",
                kind=ResourceKind.STORAGE_BUCKET_BINDING,
                depends_on=("custom-nodes-bucket", "service-account"),
                desired_config={
                    "bucket": AttributeRef("custom-nodes-bucket", "name"),
                    "member": AttributeRef("service-account", "member"),
                    "role": spec.storage.role,
                },
            )
        )
        service_deps += ["custom-nodes-bucket", "custom-nodes-bucket-access"]
        bucket_config = {
            "name": AttributeRef("custom-nodes-bucket", "name"),
            "mount_path": spec.storage.mount_path,
        }

    probe = spec.service.probe
    service_config: dict[str, Any] = {
        "name": spec.service.name,
        "region": spec.region,
        "image": spec.image_reference,
        "port": container_port(spec),
        "service_account": AttributeRef("service-account", "email"),
        "env": container_environment(spec, AttributeRef("db-instance", "socket_path")),
        "secret_env": {
            "DB_POSTGRESDB_PASSWORD": {
                "secret": AttributeRef(DB_PASSWORD_MATERIAL, "secret_id"),
                "version": AttributeRef(f"{DB_PASSWORD_MATERIAL}-version", "version_id"),
            },
            "N8N_ENCRYPTION_KEY": {
                "secret": AttributeRef(ENCRYPTION_KEY_MATERIAL, "secret_id"),
                "version": AttributeRef(f"{ENCRYPTION_KEY_MATERIAL}-version", "version_id"),
            },
        },
        "cpu": spec.service.cpu,
        "memory": spec.service.memory,
        "min_instances": spec.service.min_instances,
        "max_instances": spec.service.max_instances,
        "cloudsql_instances": [AttributeRef("db-instance", "connection_name")],
        "startup_probe": {
            "initial_delay_seconds": probe.initial_delay_seconds,
            "timeout_seconds": probe.timeout_seconds,
            "period_seconds": probe.period_seconds,
            "failure_threshold": probe.failure_threshold,
        },
        "labels": labels,
    }
    if bucket_config is not None:
        service_config["bucket"] = bucket_config

    descriptors.append(
        ResourceDescriptor(
            id="n8n-service",
            kind=ResourceKind.COMPUTE_SERVICE,
            depends_on=tuple(service_deps),
            desired_config=service_config,
        )
    )

    if spec.service.allow_unauthenticated:
        descriptors.append(
            ResourceDescriptor(
                id="public-invoker",
                kind=ResourceKind.IAM_BINDING,
                depends_on=("n8n-service",),
                desired_config={
                    "member": "allUsers",
                    "role": RUN_INVOKER_ROLE,
                    "target": {"type": "service", "name": AttributeRef("n8n-service", "name")},
                },
            )
        )

    secrets = (
        SecretSpec(
            name=DB_PASSWORD_MATERIAL,
            purpose=SecretPurpose.DATABASE_PASSWORD,
            value_from_env=spec.secrets.db_password_from_env,
        ),
        SecretSpec(
            name=ENCRYPTION_KEY_MATERIAL,
            purpose=SecretPurpose.ENCRYPTION_KEY,
            value_from_env=spec.secrets.encryption_key_from_env,
        ),
    )

    return DeploymentPlan(
        project=spec.project_id,
        region=spec.region,
        prefix=prefix,
        descriptors=tuple(descriptors),
        secrets=secrets,
    )
