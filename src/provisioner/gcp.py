"""Google Cloud providers built on the REST discovery client.

One provider per resource kind, each translating a descriptor's config into
the body of the corresponding Google API and back. All HTTP errors are
classified here, in one place:

- 404                                    -> absent (fetch) / already absent (delete)
- 408, 429, 5xx                          -> TransientProviderError
- 400 "does not exist" on IAM policies   -> TransientProviderError
  (a service account is not visible to IAM for a few seconds after creation)
- 409 / 412 on IAM policy writes         -> TransientProviderError (etag race)
- everything else                        -> PermanentProviderError

Long-running operations (Cloud SQL, Cloud Run, Artifact Registry) are
polled to completion inside the provider call, so a provider call returning
means the remote change is done.
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Mapping
from typing import Any

from google.auth.credentials import Credentials
from googleapiclient import discovery
from googleapiclient.discovery_cache.base import Cache
from googleapiclient.errors import HttpError

from .config import Config
from .descriptors import ResourceKind
from .provider import (
    Observed,
    PermanentProviderError,
    ProviderError,
    ProviderRegistry,
    ResourceProvider,
    ResourceRequest,
    SecretVersionProvider,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

# Store the discovery function as separate variable.
# This is used in tests to change the builder function.
_discovery_function = discovery.build

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Cloud Run reports a healthy revision with this terminal condition state
CONDITION_SUCCEEDED = "CONDITION_SUCCEEDED"

CLOUDSQL_VOLUME = "cloudsql"
CLOUDSQL_MOUNT_PATH = "/cloudsql"
CUSTOM_NODES_VOLUME = "custom-nodes"


class MemoryCache(Cache):
    """Process-wide cache of discovery documents."""

    _cache: dict[str, Any] = {}

    def get(self, url: str) -> Any:
        return MemoryCache._cache.get(url)

    def set(self, url: str, content: Any) -> None:
        MemoryCache._cache[url] = content


def _status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


def classify_http_error(
    error: HttpError,
    operation: str,
    *,
    iam_policy: bool = False,
) -> ProviderError:
    """Map a Google API error to a transient or permanent provider error."""
    status = _status(error)
    reason = error.reason if hasattr(error, "reason") else str(error)
    message = f"{operation}: HTTP {status} {reason}"

    if status in TRANSIENT_STATUS_CODES:
        return TransientProviderError(message)
    if iam_policy and status in (409, 412):
        return TransientProviderError(message)
    if iam_policy and status == 400 and "does not exist" in str(reason).lower():
        return TransientProviderError(message)
    return PermanentProviderError(message)


class GcpClient:
    """Thin wrapper around the discovery client for one project and region."""

    def __init__(
        self,
        credentials: Credentials | None,
        project: str,
        region: str,
        config: Config | None = None,
    ) -> None:
        self.credentials = credentials
        self.project = project
        self.region = region
        self.config = config or Config()

    def api(self, service: str, version: str) -> Any:
        # Built per call: discovery resources are not safe to share across threads
        return _discovery_function(
            service, version, credentials=self.credentials, cache=MemoryCache()
        )

    def execute(self, request: Any, operation: str, *, iam_policy: bool = False) -> dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as e:
            raise classify_http_error(e, operation, iam_policy=iam_policy) from e

    def get_or_none(self, request: Any, operation: str) -> dict[str, Any] | None:
        """Execute a read, returning None on 404."""
        try:
            return request.execute() or {}
        except HttpError as e:
            if _status(e) == 404:
                return None
            raise classify_http_error(e, operation) from e

    def delete_or_absent(self, request: Any, operation: str) -> dict[str, Any] | None:
        """Execute a delete, returning None when the resource was already gone."""
        return self.get_or_none(request, operation)

    def _poll(self, fetch: Any, is_done: Any, operation: str) -> dict[str, Any]:
        deadline = time.monotonic() + self.config.operation_timeout_seconds
        while True:
            current = fetch()
            if is_done(current):
                return current
            if time.monotonic() >= deadline:
                raise PermanentProviderError(
                    f"{operation}: operation did not complete within "
                    f"{self.config.operation_timeout_seconds}s"
                )
            time.sleep(self.config.operation_poll_seconds)

    def wait_sql_operation(self, op: Mapping[str, Any], operation: str) -> dict[str, Any]:
        """Poll a Cloud SQL operation until DONE."""
        sqladmin = self.api("sqladmin", "v1")
        result = self._poll(
            lambda: self.execute(
                sqladmin.operations().get(project=self.project, operation=op["name"]),
                operation,
            ),
            lambda current: current.get("status") == "DONE",
            operation,
        )
        errors = result.get("error", {}).get("errors", [])
        if errors:
            detail = "; ".join(e.get("message", e.get("code", "")) for e in errors)
            raise PermanentProviderError(f"{operation}: {detail}")
        return result

    def wait_operation(
        self,
        service: str,
        version: str,
        op: Mapping[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        """Poll a google.longrunning operation until done."""
        if op.get("done"):
            result = dict(op)
        else:
            api = self.api(service, version)
            result = self._poll(
                lambda: self.execute(
                    api.projects().locations().operations().get(name=op["name"]),
                    operation,
                ),
                lambda current: bool(current.get("done")),
                operation,
            )
        if "error" in result:
            error = result["error"]
            raise PermanentProviderError(
                f"{operation}: {error.get('message', error.get('code', 'operation failed'))}"
            )
        return result.get("response", {})


class GcpProvider(ResourceProvider):
    """Base for providers talking to one project through a GcpClient."""

    def __init__(self, client: GcpClient) -> None:
        self.client = client

    @property
    def project(self) -> str:
        return self.client.project

    def _observed(self, raw: dict[str, Any]) -> Observed:
        return Observed(raw=raw, attributes=self.attributes(raw))

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {"name": raw.get("name", "")}


def _compact(body: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in body.items() if v is not None}


class ServiceAccountProvider(GcpProvider):
    kind = ResourceKind.SERVICE_ACCOUNT

    def _email(self, config: Mapping[str, Any]) -> str:
        return f"{config['account_id']}@{self.project}.iam.gserviceaccount.com"

    def _name(self, config: Mapping[str, Any]) -> str:
        return f"projects/{self.project}/serviceAccounts/{self._email(config)}"

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "name": raw.get("name", ""),
            "email": raw.get("email", ""),
            "member": f"serviceAccount:{raw.get('email', '')}",
        }

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return _compact({"displayName": config.get("display_name")})

    def fetch(self, request: ResourceRequest) -> Observed | None:
        iam = self.client.api("iam", "v1")
        raw = self.client.get_or_none(
            iam.projects().serviceAccounts().get(name=self._name(request.config)),
            f"get service account {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def create(self, request: ResourceRequest) -> Observed:
        iam = self.client.api("iam", "v1")
        raw = self.client.execute(
            iam.projects().serviceAccounts().create(
                name=f"projects/{self.project}",
                body={
                    "accountId": request.config["account_id"],
                    "serviceAccount": self.render(request.config),
                },
            ),
            f"create service account {request.id}",
        )
        return self._observed(raw)

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        iam = self.client.api("iam", "v1")
        raw = self.client.execute(
            iam.projects().serviceAccounts().patch(
                name=self._name(request.config),
                body={"serviceAccount": self.render(request.config), "updateMask": "displayName"},
            ),
            f"update service account {request.id}",
        )
        return self._observed(raw)

    def delete(self, request: ResourceRequest) -> bool:
        iam = self.client.api("iam", "v1")
        result = self.client.delete_or_absent(
            iam.projects().serviceAccounts().delete(name=self._name(request.config)),
            f"delete service account {request.id}",
        )
        return result is not None


class DatabaseInstanceProvider(GcpProvider):
    kind = ResourceKind.DATABASE_INSTANCE

    # Changing either recreates the instance and loses its data
    destructive_fields = frozenset({"databaseVersion", "region"})

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "name": raw.get("name", ""),
            "connection_name": raw.get("connectionName", ""),
            "socket_path": f"{CLOUDSQL_MOUNT_PATH}/{raw.get('connectionName', '')}",
        }

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        settings = _compact(
            {
                "tier": config["tier"],
                "dataDiskSizeGb": config.get("disk_size_gb"),
                "deletionProtectionEnabled": config.get("deletion_protection"),
                "availabilityType": config.get("availability_type"),
                "userLabels": config.get("labels") or None,
            }
        )
        return {
            "databaseVersion": config["database_version"],
            "region": config["region"],
            "settings": settings,
        }

    def fetch(self, request: ResourceRequest) -> Observed | None:
        sqladmin = self.client.api("sqladmin", "v1")
        raw = self.client.get_or_none(
            sqladmin.instances().get(project=self.project, instance=request.config["name"]),
            f"get database instance {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def _get(self, request: ResourceRequest) -> Observed:
        observed = self.fetch(request)
        if observed is None:
            raise TransientProviderError(
                f"database instance {request.config['name']} not visible after write"
            )
        return observed

    def create(self, request: ResourceRequest) -> Observed:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"create database instance {request.id}"
        op = self.client.execute(
            sqladmin.instances().insert(
                project=self.project,
                body={"name": request.config["name"], **self.render(request.config)},
            ),
            operation,
        )
        self.client.wait_sql_operation(op, operation)
        return self._get(request)

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"update database instance {request.id}"
        body = self.render(request.config)
        op = self.client.execute(
            sqladmin.instances().patch(
                project=self.project,
                instance=request.config["name"],
                body={"settings": body["settings"]},
            ),
            operation,
        )
        self.client.wait_sql_operation(op, operation)
        return self._get(request)

    def delete(self, request: ResourceRequest) -> bool:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"delete database instance {request.id}"
        op = self.client.delete_or_absent(
            sqladmin.instances().delete(project=self.project, instance=request.config["name"]),
            operation,
        )
        if op is None:
            return False
        self.client.wait_sql_operation(op, operation)
        return True


class DatabaseProvider(GcpProvider):
    kind = ResourceKind.DATABASE

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return _compact({"charset": config.get("charset"), "collation": config.get("collation")})

    def fetch(self, request: ResourceRequest) -> Observed | None:
        sqladmin = self.client.api("sqladmin", "v1")
        raw = self.client.get_or_none(
            sqladmin.databases().get(
                project=self.project,
                instance=request.config["instance"],
                database=request.config["name"],
            ),
            f"get database {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def _write(self, request: ResourceRequest, method: str) -> Observed:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"{method} database {request.id}"
        body = {"name": request.config["name"], **self.render(request.config)}
        databases = sqladmin.databases()
        if method == "insert":
            call = databases.insert(
                project=self.project, instance=request.config["instance"], body=body
            )
        else:
            call = databases.patch(
                project=self.project,
                instance=request.config["instance"],
                database=request.config["name"],
                body=body,
            )
        op = self.client.execute(call, operation)
        self.client.wait_sql_operation(op, operation)
        return Observed(raw=body, attributes={"name": request.config["name"]})

    def create(self, request: ResourceRequest) -> Observed:
        return self._write(request, "insert")

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        return self._write(request, "patch")

    def delete(self, request: ResourceRequest) -> bool:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"delete database {request.id}"
        op = self.client.delete_or_absent(
            sqladmin.databases().delete(
                project=self.project,
                instance=request.config["instance"],
                database=request.config["name"],
            ),
            operation,
        )
        if op is None:
            return False
        self.client.wait_sql_operation(op, operation)
        return True


class DatabaseUserProvider(GcpProvider):
    kind = ResourceKind.DATABASE_USER

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        # The password is write-only and never compared
        return {"name": config["name"]}

    def fetch(self, request: ResourceRequest) -> Observed | None:
        sqladmin = self.client.api("sqladmin", "v1")
        raw = self.client.get_or_none(
            sqladmin.users().get(
                project=self.project,
                instance=request.config["instance"],
                name=request.config["name"],
            ),
            f"get database user {request.id}",
        )
        if raw is None:
            return None
        raw.pop("password", None)
        return self._observed(raw)

    def create(self, request: ResourceRequest) -> Observed:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"create database user {request.id}"
        op = self.client.execute(
            sqladmin.users().insert(
                project=self.project,
                instance=request.config["instance"],
                body={"name": request.config["name"], "password": request.config["password"]},
            ),
            operation,
        )
        self.client.wait_sql_operation(op, operation)
        return Observed(raw={"name": request.config["name"]}, attributes={"name": request.config["name"]})

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"update database user {request.id}"
        op = self.client.execute(
            sqladmin.users().update(
                project=self.project,
                instance=request.config["instance"],
                name=request.config["name"],
                body={"name": request.config["name"], "password": request.config["password"]},
            ),
            operation,
        )
        self.client.wait_sql_operation(op, operation)
        return Observed(raw={"name": request.config["name"]}, attributes={"name": request.config["name"]})

    def delete(self, request: ResourceRequest) -> bool:
        sqladmin = self.client.api("sqladmin", "v1")
        operation = f"delete database user {request.id}"
        op = self.client.delete_or_absent(
            sqladmin.users().delete(
                project=self.project,
                instance=request.config["instance"],
                name=request.config["name"],
            ),
            operation,
        )
        if op is None:
            return False
        self.client.wait_sql_operation(op, operation)
        return True


class SecretProvider(GcpProvider):
    kind = ResourceKind.SECRET

    def _name(self, config: Mapping[str, Any]) -> str:
        return f"projects/{self.project}/secrets/{config['secret_id']}"

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        name = raw.get("name", "")
        return {"name": name, "secret_id": name.rsplit("/", 1)[-1]}

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return _compact({"labels": config.get("labels") or None})

    def fetch(self, request: ResourceRequest) -> Observed | None:
        secretmanager = self.client.api("secretmanager", "v1")
        raw = self.client.get_or_none(
            secretmanager.projects().secrets().get(name=self._name(request.config)),
            f"get secret {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def create(self, request: ResourceRequest) -> Observed:
        secretmanager = self.client.api("secretmanager", "v1")
        raw = self.client.execute(
            secretmanager.projects().secrets().create(
                parent=f"projects/{self.project}",
                secretId=request.config["secret_id"],
                body={"replication": {"automatic": {}}, **self.render(request.config)},
            ),
            f"create secret {request.id}",
        )
        return self._observed(raw)

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        secretmanager = self.client.api("secretmanager", "v1")
        raw = self.client.execute(
            secretmanager.projects().secrets().patch(
                name=self._name(request.config),
                updateMask="labels",
                body=self.render(request.config),
            ),
            f"update secret {request.id}",
        )
        return self._observed(raw)

    def delete(self, request: ResourceRequest) -> bool:
        secretmanager = self.client.api("secretmanager", "v1")
        result = self.client.delete_or_absent(
            secretmanager.projects().secrets().delete(name=self._name(request.config)),
            f"delete secret {request.id}",
        )
        return result is not None


def _version_number(name: str) -> int:
    tail = name.rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else -1


class SecretManagerVersionProvider(SecretVersionProvider, GcpProvider):
    """Secret Manager versions: added, read back by explicit id, destroyed."""

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        name = raw.get("name", "")
        return {"version_name": name, "version_id": name.rsplit("/", 1)[-1]}

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        # Payloads are never compared; an existing enabled version satisfies the descriptor
        return {}

    def _enabled_versions(self, secret: str, operation: str) -> list[dict[str, Any]]:
        secretmanager = self.client.api("secretmanager", "v1")
        versions: list[dict[str, Any]] = []
        request = secretmanager.projects().secrets().versions().list(
            parent=secret, filter="state:ENABLED"
        )
        while request is not None:
            try:
                response = request.execute()
            except HttpError as e:
                if _status(e) == 404:
                    return []
                raise classify_http_error(e, operation) from e
            versions.extend(response.get("versions", []))
            request = secretmanager.projects().secrets().versions().list_next(
                previous_request=request, previous_response=response
            )
        return sorted(versions, key=lambda v: _version_number(v.get("name", "")))

    def fetch(self, request: ResourceRequest) -> Observed | None:
        versions = self._enabled_versions(
            request.config["secret"], f"list secret versions {request.id}"
        )
        if not versions:
            return None
        return self._observed(versions[-1])

    def create(self, request: ResourceRequest) -> Observed:
        secretmanager = self.client.api("secretmanager", "v1")
        payload = request.config["payload"]
        raw = self.client.execute(
            secretmanager.projects().secrets().addVersion(
                parent=request.config["secret"],
                body={"payload": {"data": base64.b64encode(payload.encode()).decode()}},
            ),
            f"add secret version {request.id}",
        )
        return self._observed(raw)

    def access(self, version_name: str) -> str:
        secretmanager = self.client.api("secretmanager", "v1")
        raw = self.client.execute(
            secretmanager.projects().secrets().versions().access(name=version_name),
            f"access secret version {version_name}",
        )
        return base64.b64decode(raw["payload"]["data"]).decode()

    def delete(self, request: ResourceRequest) -> bool:
        secretmanager = self.client.api("secretmanager", "v1")
        operation = f"destroy secret versions {request.id}"
        versions = self._enabled_versions(request.config["secret"], operation)
        for version in versions:
            self.client.execute(
                secretmanager.projects().secrets().versions().destroy(
                    name=version["name"], body={}
                ),
                operation,
            )
        return bool(versions)


class _PolicyBindingProvider(GcpProvider):
    """Read-modify-write of one (role, member) pair in an IAM policy.

    The policy read carries an etag and the write sends it back, so a
    concurrent writer makes the write fail with 409/412 and the whole
    read-modify-write is retried.
    """

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return {}

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {"role": raw.get("role", ""), "member": raw.get("member", "")}

    def policy_request(
        self,
        config: Mapping[str, Any],
        policy: dict[str, Any] | None = None,
    ) -> Any:
        """Return the getIamPolicy request, or setIamPolicy when policy is given."""
        raise NotImplementedError

    def get_policy(self, config: Mapping[str, Any], operation: str) -> dict[str, Any] | None:
        """Read the target's policy, None if the target does not exist."""
        try:
            return self.policy_request(config).execute() or {}
        except HttpError as e:
            if _status(e) == 404:
                return None
            raise classify_http_error(e, operation, iam_policy=True) from e

    def set_policy(self, config: Mapping[str, Any], policy: dict[str, Any], operation: str) -> None:
        self.client.execute(self.policy_request(config, policy), operation, iam_policy=True)

    def fetch(self, request: ResourceRequest) -> Observed | None:
        policy = self.get_policy(request.config, f"get IAM policy {request.id}")
        if policy is None:
            return None
        role, member = request.config["role"], request.config["member"]
        for binding in policy.get("bindings", []):
            if binding.get("role") == role and member in binding.get("members", []):
                return self._observed({"role": role, "member": member})
        return None

    def create(self, request: ResourceRequest) -> Observed:
        operation = f"grant {request.config['role']} ({request.id})"
        policy = self.get_policy(request.config, operation)
        if policy is None:
            # The target was just created and is not visible yet
            raise TransientProviderError(f"{operation}: policy target not found")
        role, member = request.config["role"], request.config["member"]
        bindings = policy.setdefault("bindings", [])
        for binding in bindings:
            if binding.get("role") == role and "condition" not in binding:
                if member not in binding.setdefault("members", []):
                    binding["members"].append(member)
                break
        else:
            bindings.append({"role": role, "members": [member]})
        self.set_policy(request.config, policy, operation)
        return self._observed({"role": role, "member": member})

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        return self.create(request)

    def delete(self, request: ResourceRequest) -> bool:
        operation = f"revoke {request.config['role']} ({request.id})"
        policy = self.get_policy(request.config, operation)
        if policy is None:
            return False
        role, member = request.config["role"], request.config["member"]
        removed = False
        for binding in policy.get("bindings", []):
            if binding.get("role") == role and member in binding.get("members", []):
                binding["members"].remove(member)
                removed = True
        if not removed:
            return False
        policy["bindings"] = [b for b in policy["bindings"] if b.get("members")]
        self.set_policy(request.config, policy, operation)
        return True


class IamBindingProvider(_PolicyBindingProvider):
    """Project, secret or Cloud Run service level role grants."""

    kind = ResourceKind.IAM_BINDING

    def policy_request(
        self,
        config: Mapping[str, Any],
        policy: dict[str, Any] | None = None,
    ) -> Any:
        target = config["target"]
        target_type, name = target["type"], target.get("name") or self.project
        match target_type:
            case "project":
                resources = self.client.api("cloudresourcemanager", "v1").projects()
            case "secret":
                resources = self.client.api("secretmanager", "v1").projects().secrets()
            case "service":
                resources = self.client.api("run", "v2").projects().locations().services()
            case _:
                raise PermanentProviderError(f"Unsupported IAM target type: {target_type}")
        if policy is None:
            if target_type == "project":
                return resources.getIamPolicy(resource=name, body={})
            return resources.getIamPolicy(resource=name)
        return resources.setIamPolicy(resource=name, body={"policy": policy})


class StorageBucketBindingProvider(_PolicyBindingProvider):
    kind = ResourceKind.STORAGE_BUCKET_BINDING

    def policy_request(
        self,
        config: Mapping[str, Any],
        policy: dict[str, Any] | None = None,
    ) -> Any:
        buckets = self.client.api("storage", "v1").buckets()
        if policy is None:
            return buckets.getIamPolicy(bucket=config["bucket"])
        return buckets.setIamPolicy(bucket=config["bucket"], body=policy)


class StorageBucketProvider(GcpProvider):
    kind = ResourceKind.STORAGE_BUCKET

    destructive_fields = frozenset({"location"})

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        name = raw.get("name", "")
        return {"name": name, "url": f"gs://{name}"}

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return _compact(
            {
                "location": config["location"],
                "storageClass": config.get("storage_class"),
                "versioning": (
                    {"enabled": config["versioning"]} if "versioning" in config else None
                ),
                "iamConfiguration": {
                    "uniformBucketLevelAccess": {
                        "enabled": config.get("uniform_access", True)
                    }
                },
                "labels": config.get("labels") or None,
            }
        )

    def fetch(self, request: ResourceRequest) -> Observed | None:
        storage = self.client.api("storage", "v1")
        raw = self.client.get_or_none(
            storage.buckets().get(bucket=request.config["name"]),
            f"get bucket {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def create(self, request: ResourceRequest) -> Observed:
        storage = self.client.api("storage", "v1")
        raw = self.client.execute(
            storage.buckets().insert(
                project=self.project,
                body={"name": request.config["name"], **self.render(request.config)},
            ),
            f"create bucket {request.id}",
        )
        return self._observed(raw)

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        storage = self.client.api("storage", "v1")
        body = self.render(request.config)
        body.pop("location")
        raw = self.client.execute(
            storage.buckets().patch(bucket=request.config["name"], body=body),
            f"update bucket {request.id}",
        )
        return self._observed(raw)

    def delete(self, request: ResourceRequest) -> bool:
        storage = self.client.api("storage", "v1")
        result = self.client.delete_or_absent(
            storage.buckets().delete(bucket=request.config["name"]),
            f"delete bucket {request.id}",
        )
        return result is not None


class ArtifactRepositoryProvider(GcpProvider):
    kind = ResourceKind.ARTIFACT_REPOSITORY

    destructive_fields = frozenset({"format"})

    def _parent(self, config: Mapping[str, Any]) -> str:
        return f"projects/{self.project}/locations/{config['location']}"

    def _name(self, config: Mapping[str, Any]) -> str:
        return f"{self._parent(config)}/repositories/{config['repository_id']}"

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        name = raw.get("name", "")
        parts = name.split("/")
        registry = ""
        if len(parts) == 6:
            registry = f"{parts[3]}-docker.pkg.dev/{parts[1]}/{parts[5]}"
        return {"name": name, "registry": registry}

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        return _compact(
            {
                "format": config["format"],
                "description": config.get("description"),
                "labels": config.get("labels") or None,
            }
        )

    def fetch(self, request: ResourceRequest) -> Observed | None:
        api = self.client.api("artifactregistry", "v1")
        raw = self.client.get_or_none(
            api.projects().locations().repositories().get(name=self._name(request.config)),
            f"get repository {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def create(self, request: ResourceRequest) -> Observed:
        api = self.client.api("artifactregistry", "v1")
        operation = f"create repository {request.id}"
        op = self.client.execute(
            api.projects().locations().repositories().create(
                parent=self._parent(request.config),
                repositoryId=request.config["repository_id"],
                body=self.render(request.config),
            ),
            operation,
        )
        raw = self.client.wait_operation("artifactregistry", "v1", op, operation)
        return self._observed(raw or {"name": self._name(request.config)})

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        api = self.client.api("artifactregistry", "v1")
        body = self.render(request.config)
        body.pop("format")
        raw = self.client.execute(
            api.projects().locations().repositories().patch(
                name=self._name(request.config),
                updateMask=",".join(sorted(body)) or "description",
                body=body,
            ),
            f"update repository {request.id}",
        )
        return self._observed(raw)

    def delete(self, request: ResourceRequest) -> bool:
        api = self.client.api("artifactregistry", "v1")
        operation = f"delete repository {request.id}"
        op = self.client.delete_or_absent(
            api.projects().locations().repositories().delete(name=self._name(request.config)),
            operation,
        )
        if op is None:
            return False
        self.client.wait_operation("artifactregistry", "v1", op, operation)
        return True


class ComputeServiceProvider(GcpProvider):
    """Cloud Run (v2) service running the n8n container."""

    kind = ResourceKind.COMPUTE_SERVICE

    def _parent(self, config: Mapping[str, Any]) -> str:
        return f"projects/{self.project}/locations/{config['region']}"

    def _name(self, config: Mapping[str, Any]) -> str:
        return f"{self._parent(config)}/services/{config['name']}"

    def attributes(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        return {"name": raw.get("name", ""), "uri": raw.get("uri", "")}

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        port = config["port"]
        env: list[dict[str, Any]] = [
            {"name": name, "value": str(value)}
            for name, value in config.get("env", {}).items()
        ]
        for name, ref in config.get("secret_env", {}).items():
            env.append(
                {
                    "name": name,
                    "valueSource": {
                        "secretKeyRef": {"secret": ref["secret"], "version": str(ref["version"])}
                    },
                }
            )

        volumes: list[dict[str, Any]] = []
        mounts: list[dict[str, Any]] = []
        if config.get("cloudsql_instances"):
            volumes.append(
                {
                    "name": CLOUDSQL_VOLUME,
                    "cloudSqlInstance": {"instances": list(config["cloudsql_instances"])},
                }
            )
            mounts.append({"name": CLOUDSQL_VOLUME, "mountPath": CLOUDSQL_MOUNT_PATH})
        bucket = config.get("bucket")
        if bucket:
            volumes.append({"name": CUSTOM_NODES_VOLUME, "gcs": {"bucket": bucket["name"]}})
            mounts.append({"name": CUSTOM_NODES_VOLUME, "mountPath": bucket["mount_path"]})

        probe = config.get("startup_probe", {})
        container = _compact(
            {
                "image": config["image"],
                "ports": [{"containerPort": port}],
                "env": env,
                "resources": {
                    "limits": {
                        "cpu": str(config.get("cpu", "1")),
                        "memory": str(config.get("memory", "2Gi")),
                    }
                },
                "startupProbe": {
                    "initialDelaySeconds": probe.get("initial_delay_seconds", 0),
                    "timeoutSeconds": probe.get("timeout_seconds", 240),
                    "periodSeconds": probe.get("period_seconds", 240),
                    "failureThreshold": probe.get("failure_threshold", 1),
                    "tcpSocket": {"port": port},
                },
                "volumeMounts": mounts or None,
            }
        )

        template = _compact(
            {
                "serviceAccount": config.get("service_account"),
                "scaling": {
                    "minInstanceCount": config.get("min_instances", 0),
                    "maxInstanceCount": config.get("max_instances", 1),
                },
                "containers": [container],
                "volumes": volumes or None,
                # Cloud Storage volumes require the second generation environment
                "executionEnvironment": "EXECUTION_ENVIRONMENT_GEN2" if bucket else None,
            }
        )
        return _compact(
            {
                "ingress": config.get("ingress", "INGRESS_TRAFFIC_ALL"),
                "labels": config.get("labels") or None,
                "template": template,
            }
        )

    def fetch(self, request: ResourceRequest) -> Observed | None:
        run = self.client.api("run", "v2")
        raw = self.client.get_or_none(
            run.projects().locations().services().get(name=self._name(request.config)),
            f"get service {request.id}",
        )
        return self._observed(raw) if raw is not None else None

    def _wait_ready(self, request: ResourceRequest, op: dict[str, Any], operation: str) -> Observed:
        self.client.wait_operation("run", "v2", op, operation)
        observed = self.fetch(request)
        if observed is None:
            raise TransientProviderError(f"{operation}: service not visible after write")
        condition = observed.raw.get("terminalCondition", {})
        if condition.get("state") != CONDITION_SUCCEEDED:
            raise PermanentProviderError(
                f"{operation}: service did not become ready: "
                f"{condition.get('message') or condition.get('state', 'unknown')}"
            )
        return observed

    def create(self, request: ResourceRequest) -> Observed:
        run = self.client.api("run", "v2")
        operation = f"create service {request.id}"
        op = self.client.execute(
            run.projects().locations().services().create(
                parent=self._parent(request.config),
                serviceId=request.config["name"],
                body=self.render(request.config),
            ),
            operation,
        )
        return self._wait_ready(request, op, operation)

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        run = self.client.api("run", "v2")
        operation = f"update service {request.id}"
        op = self.client.execute(
            run.projects().locations().services().patch(
                name=self._name(request.config),
                body=self.render(request.config),
            ),
            operation,
        )
        return self._wait_ready(request, op, operation)

    def delete(self, request: ResourceRequest) -> bool:
        run = self.client.api("run", "v2")
        operation = f"delete service {request.id}"
        op = self.client.delete_or_absent(
            run.projects().locations().services().delete(name=self._name(request.config)),
            operation,
        )
        if op is None:
            return False
        self.client.wait_operation("run", "v2", op, operation)
        return True


def build_registry(client: GcpClient) -> ProviderRegistry:
    """Registry with a Google Cloud provider for every resource kind."""
    return ProviderRegistry(
        [
            ServiceAccountProvider(client),
            DatabaseInstanceProvider(client),
            DatabaseProvider(client),
            DatabaseUserProvider(client),
            SecretProvider(client),
            SecretManagerVersionProvider(client),
            IamBindingProvider(client),
            StorageBucketProvider(client),
            StorageBucketBindingProvider(client),
            ArtifactRepositoryProvider(client),
            ComputeServiceProvider(client),
        ]
    )
