"""Tests for the reconciler.

These run the real n8n plan against the in-memory cloud and assert on the
exact remote calls issued.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace

import pytest
from cloud_mock import MockCloudState, build_mock_registry
from conftest import MINIMAL_DEPLOYMENT

from provisioner.binding import SecretPurpose, SecretSpec
from provisioner.blueprint import build_plan
from provisioner.config import Config, ConfigError
from provisioner.dependency import CyclicDependencyError
from provisioner.descriptors import (
    AttributeRef,
    DeploymentPlan,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    SecretRef,
)
from provisioner.models import DeploymentSpec
from provisioner.provider import (
    PermanentProviderError,
    ProviderRegistry,
    TransientProviderError,
)
from provisioner.reconciler import (
    EXIT_CANCELLED,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    OperationCancelled,
    Outcome,
    PartialApplyFailure,
    PlanAction,
    Reconciler,
    call_with_retry,
)

DB_BRANCH = ["database", "db-user", "n8n-service", "public-invoker"]


async def _converge(spec: DeploymentSpec, registry: ProviderRegistry, config: Config) -> Reconciler:
    reconciler = Reconciler(build_plan(spec), registry, config)
    result = await reconciler.apply()
    assert result.exit_code == EXIT_SUCCESS
    return reconciler


class TestApply:
    """Tests for a first apply against an empty project."""

    async def test_creates_every_descriptor(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that every descriptor is created exactly once."""
        result = await Reconciler(plan, registry, fast_config).apply()

        assert result.success is True
        assert result.exit_code == EXIT_SUCCESS
        assert result.count(Outcome.CREATED) == len(plan.descriptors)
        assert sorted(result.created) == sorted(plan.ids)
        assert result.mutating_calls == len(plan.descriptors)
        for descriptor_id in plan.ids:
            assert state.count("create", descriptor_id) == 1
        assert all(d.state == ResourceState.READY for d in plan.descriptors)

    async def test_dependencies_created_first(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that no descriptor is created before all of its dependencies."""
        await Reconciler(plan, registry, fast_config).apply()

        created = state.order_of("create")
        for descriptor in plan.descriptors:
            for dep in descriptor.depends_on:
                assert created.index(dep) < created.index(descriptor.id), (
                    f"{descriptor.id} created before {dep}"
                )

    async def test_five_descriptor_chain(
        self, registry: ProviderRegistry, state: MockCloudState, fast_config: Config
    ) -> None:
        """Test a linear chain declared out of order: one create each, in chain order."""
        chain = ["db-instance", "db-user", "db-password", "secret-access", "n8n-service"]
        descriptors = {
            "db-instance": ResourceDescriptor(
                id="db-instance",
                kind=ResourceKind.DATABASE_INSTANCE,
                desired_config={
                    "name": "n8n-db",
                    "tier": "db-f1-micro",
                    "database_version": "POSTGRES_15",
                    "region": "us-central1",
                },
            ),
            "db-user": ResourceDescriptor(
                id="db-user",
                kind=ResourceKind.DATABASE_USER,
                depends_on=("db-instance",),
                desired_config={
                    "name": "n8n",
                    "instance": AttributeRef("db-instance", "name"),
                    "password": SecretRef("db-password"),
                },
            ),
            "db-password": ResourceDescriptor(
                id="db-password",
                kind=ResourceKind.SECRET,
                depends_on=("db-user",),
                desired_config={"secret_id": "n8n-db-password"},
            ),
            "secret-access": ResourceDescriptor(
                id="secret-access",
                kind=ResourceKind.IAM_BINDING,
                depends_on=("db-password",),
                desired_config={
                    "member": "serviceAccount:n8n-runtime@test-project.iam.gserviceaccount.com",
                    "role": "roles/secretmanager.secretAccessor",
                    "target": {"type": "secret", "name": AttributeRef("db-password", "name")},
                },
            ),
            "n8n-service": ResourceDescriptor(
                id="n8n-service",
                kind=ResourceKind.COMPUTE_SERVICE,
                depends_on=("secret-access",),
                desired_config={
                    "name": "n8n",
                    "region": "us-central1",
                    "image": "docker.io/n8nio/n8n:latest",
                    "port": 5678,
                },
            ),
        }
        plan = DeploymentPlan(
            project="test-project",
            region="us-central1",
            prefix="n8n",
            descriptors=tuple(
                descriptors[d]
                for d in ("n8n-service", "db-password", "db-instance", "secret-access", "db-user")
            ),
            secrets=(SecretSpec("db-password", SecretPurpose.DATABASE_PASSWORD),),
        )

        result = await Reconciler(plan, registry, fast_config).apply()

        assert result.exit_code == EXIT_SUCCESS
        assert state.count("create") == 5
        assert state.order_of("create") == chain
        assert result.created == chain
        assert result.count(Outcome.CREATED) == 5
        assert plan.get("n8n-service").state == ResourceState.READY
        assert state.written_config("secret-access")["target"]["name"] == (
            "projects/test-project/secrets/n8n-db-password"
        )

    async def test_attributes_flow_to_dependents(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that remote-assigned values are substituted into dependents."""
        await Reconciler(plan, registry, fast_config).apply()

        assert state.written_config("database")["instance"] == "n8n-db"
        service = state.written_config("n8n-service")
        assert service["env"]["DB_POSTGRESDB_HOST"] == "/cloudsql/test-project:us-central1:n8n-db"
        assert service["cloudsql_instances"] == ["test-project:us-central1:n8n-db"]
        assert service["service_account"] == "n8n-runtime@test-project.iam.gserviceaccount.com"
        assert state.written_config("sql-client-binding")["member"] == (
            "serviceAccount:n8n-runtime@test-project.iam.gserviceaccount.com"
        )

    async def test_secrets_pinned_and_never_leaked(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that plaintext only reaches the version and user writes."""
        reconciler = Reconciler(plan, registry, fast_config)
        await reconciler.apply()

        version_name = reconciler.attributes.get("db-password-version", "version_name")
        password = state.payload(version_name)
        assert state.written_config("db-user")["password"] == password

        service = state.written_config("n8n-service")
        secret_env = service["secret_env"]["DB_POSTGRESDB_PASSWORD"]
        assert secret_env == {
            "secret": "n8n-db-password",
            "version": reconciler.attributes.get("db-password-version", "version_id"),
        }
        assert secret_env["version"] != "latest"

        assert password not in str(service)
        assert password not in str(reconciler.attributes.snapshot())

    async def test_rerun_issues_zero_mutating_calls(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test idempotency: a converged environment is left untouched."""
        await _converge(spec, registry, fast_config)
        state.reset_calls()

        result = await Reconciler(build_plan(spec), registry, fast_config).apply()

        assert result.exit_code == EXIT_SUCCESS
        assert result.count(Outcome.UNCHANGED) == len(result.order)
        assert result.mutating_calls == 0
        assert state.mutating_calls == []
        assert state.count("access") == 0

    async def test_drift_is_corrected_in_place(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a diverged field is updated and nothing else changes."""
        await _converge(spec, registry, fast_config)
        state.get("n8n-service").raw["memory"] = "512Mi"
        state.reset_calls()

        result = await Reconciler(build_plan(spec), registry, fast_config).apply()

        outcome = result.outcomes["n8n-service"]
        assert outcome.outcome == Outcome.UPDATED
        assert outcome.changed_paths == ["memory"]
        assert [c.descriptor_id for c in state.mutating_calls] == ["n8n-service"]
        assert state.get("n8n-service").raw["memory"] == "2Gi"

    async def test_rotated_secret_updates_consumers(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a newly stored version is pushed to the user and service."""
        first = await _converge(spec, registry, fast_config)
        old_version = first.attributes.get("db-password-version", "version_id")
        state.remove("db-password-version")
        state.reset_calls()

        reconciler = Reconciler(build_plan(spec), registry, fast_config)
        result = await reconciler.apply()

        assert result.outcomes["db-password-version"].outcome == Outcome.CREATED
        assert result.outcomes["db-user"].outcome == Outcome.UPDATED
        assert result.outcomes["db-user"].changed_paths == ["password"]
        new_version = reconciler.attributes.get("db-password-version", "version_id")
        assert new_version != old_version
        assert state.written_config("db-user", "update")["password"] == state.payload(
            reconciler.attributes.get("db-password-version", "version_name")
        )
        assert result.outcomes["n8n-service"].outcome == Outcome.UPDATED
        assert result.outcomes["encryption-key-version"].outcome == Outcome.UNCHANGED

    async def test_db_user_recreated_with_stored_password(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a missing user is recreated from the pinned version, not a new value."""
        first = await _converge(spec, registry, fast_config)
        stored = state.payload(first.attributes.get("db-password-version", "version_name"))
        state.remove("db-user")
        state.reset_calls()

        reconciler = Reconciler(build_plan(spec), registry, fast_config)
        result = await reconciler.apply()

        assert result.outcomes["db-user"].outcome == Outcome.CREATED
        assert state.written_config("db-user")["password"] == stored
        assert state.count("access") == 1
        assert reconciler.bindings.stats.generated == []

    async def test_changed_supplied_password_stored(
        self,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a new supplied value gets a new version pushed to its consumers."""
        spec = DeploymentSpec.model_validate(
            {**MINIMAL_DEPLOYMENT, "secrets": {"dbPasswordFromEnv": "DB_PASSWORD"}}
        )
        monkeypatch.setenv("DB_PASSWORD", "Aa1!Aa1!Aa1!Aa1!")
        first = await _converge(spec, registry, fast_config)
        old_version = first.attributes.get("db-password-version", "version_name")
        assert state.payload(old_version) == "Aa1!Aa1!Aa1!Aa1!"
        monkeypatch.setenv("DB_PASSWORD", "Bb2!Bb2!Bb2!Bb2!")
        state.reset_calls()

        reconciler = Reconciler(build_plan(spec), registry, fast_config)
        result = await reconciler.apply()

        assert result.exit_code == EXIT_SUCCESS
        version = result.outcomes["db-password-version"]
        assert version.outcome == Outcome.UPDATED
        assert version.changed_paths == ["payload"]
        new_version = reconciler.attributes.get("db-password-version", "version_name")
        assert new_version != old_version
        assert state.payload(new_version) == "Bb2!Bb2!Bb2!Bb2!"
        assert state.written_config("db-user", "update")["password"] == "Bb2!Bb2!Bb2!Bb2!"
        assert result.outcomes["db-user"].outcome == Outcome.UPDATED
        assert result.outcomes["n8n-service"].outcome == Outcome.UPDATED
        assert result.outcomes["encryption-key-version"].outcome == Outcome.UNCHANGED
        assert "db-password-version" not in result.created

    async def test_unchanged_supplied_password_not_stored(
        self,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that re-supplying the pinned value writes nothing."""
        spec = DeploymentSpec.model_validate(
            {**MINIMAL_DEPLOYMENT, "secrets": {"dbPasswordFromEnv": "DB_PASSWORD"}}
        )
        monkeypatch.setenv("DB_PASSWORD", "Aa1!Aa1!Aa1!Aa1!")
        await _converge(spec, registry, fast_config)
        state.reset_calls()

        result = await Reconciler(build_plan(spec), registry, fast_config).apply()

        assert result.outcomes["db-password-version"].outcome == Outcome.UNCHANGED
        assert state.count("access") == 1
        assert state.mutating_calls == []


class TestFailureIsolation:
    """Tests for failure handling and branch isolation."""

    async def test_permanent_error_blocks_dependents_only(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that independent branches complete when one branch fails."""
        state.inject("db-instance", "create", PermanentProviderError("quota exceeded"))

        result = await Reconciler(plan, registry, fast_config).apply()

        failed = result.outcomes["db-instance"]
        assert failed.outcome == Outcome.FAILED
        assert failed.error == "quota exceeded"
        assert failed.error_type == "PermanentProviderError"
        assert failed.skipped_dependents == DB_BRANCH
        for descriptor_id in DB_BRANCH:
            assert result.outcomes[descriptor_id].outcome == Outcome.SKIPPED
            assert result.outcomes[descriptor_id].skipped_because == "db-instance"
            assert state.calls_for(descriptor_id) == []
        for descriptor_id in ("service-account", "db-password-version", "custom-nodes-bucket"):
            assert result.outcomes[descriptor_id].outcome == Outcome.CREATED
        assert plan.get("db-instance").state == ResourceState.FAILED
        assert result.exit_code == EXIT_PARTIAL_FAILURE

    async def test_permanent_error_not_retried(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that permanent errors fail on the first attempt."""
        state.inject("service-account", "create", PermanentProviderError("denied"), times=None)

        await Reconciler(plan, registry, fast_config).apply()

        assert state.count("create", "service-account") == 1

    async def test_transient_error_retried(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that transient errors are retried until success."""
        state.fail_transiently("db-instance", "create", times=2)

        result = await Reconciler(plan, registry, fast_config).apply()

        assert result.outcomes["db-instance"].outcome == Outcome.CREATED
        assert state.count("create", "db-instance") == 3
        assert result.exit_code == EXIT_SUCCESS

    async def test_transient_error_exhausted(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a persistent transient error fails after max attempts."""
        state.fail_transiently("custom-nodes-bucket", "create", times=100)

        result = await Reconciler(plan, registry, fast_config).apply()

        outcome = result.outcomes["custom-nodes-bucket"]
        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_type == "TransientProviderError"
        assert "after 3 attempts" in (outcome.error or "")
        assert state.count("create", "custom-nodes-bucket") == fast_config.retry_max_attempts
        assert outcome.skipped_dependents == [
            "custom-nodes-bucket-access",
            "n8n-service",
            "public-invoker",
        ]
        assert result.outcomes["db-user"].outcome == Outcome.CREATED

    async def test_unexpected_exception_fails_branch(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a provider bug is contained to its branch."""
        state.inject("encryption-key", "fetch", RuntimeError("boom"))

        result = await Reconciler(plan, registry, fast_config).apply()

        assert result.outcomes["encryption-key"].outcome == Outcome.FAILED
        assert result.outcomes["encryption-key"].error_type == "RuntimeError"
        assert result.outcomes["encryption-key-version"].outcome == Outcome.SKIPPED
        assert result.outcomes["db-password-version"].outcome == Outcome.CREATED

    async def test_protected_destructive_change_refused(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that replacing a protected resource needs an explicit override."""
        await _converge(spec, registry, fast_config)
        state.get("db-instance").raw["database_version"] = "POSTGRES_15"
        state.reset_calls()

        result = await Reconciler(build_plan(spec), registry, fast_config).apply()

        outcome = result.outcomes["db-instance"]
        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_type == "ProtectedResourceError"
        assert "--allow-destructive-override" in (outcome.error or "")
        assert state.count("update", "db-instance") == 0
        assert result.outcomes["database"].outcome == Outcome.SKIPPED

    async def test_protected_destructive_change_with_override(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that the override lets the change through."""
        await _converge(spec, registry, fast_config)
        state.get("db-instance").raw["database_version"] = "POSTGRES_15"

        result = await Reconciler(build_plan(spec), registry, fast_config).apply(
            allow_destructive=True
        )

        assert result.outcomes["db-instance"].outcome == Outcome.UPDATED
        assert result.outcomes["db-instance"].changed_paths == ["database_version"]

    async def test_non_destructive_change_to_protected_resource(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that protection only guards destructive fields."""
        await _converge(spec, registry, fast_config)
        state.get("db-instance").raw["tier"] = "db-g1-small"

        result = await Reconciler(build_plan(spec), registry, fast_config).apply()

        assert result.outcomes["db-instance"].outcome == Outcome.UPDATED

    async def test_raise_for_failure(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test the exception form of a partial failure."""
        state.inject("db-instance", "create", PermanentProviderError("quota exceeded"))
        result = await Reconciler(plan, registry, fast_config).apply()

        with pytest.raises(PartialApplyFailure, match="db-instance"):
            result.raise_for_failure()

    async def test_summary_lists_every_descriptor(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that the summary reports each descriptor's end state."""
        state.inject("db-instance", "create", PermanentProviderError("quota exceeded"))
        result = await Reconciler(plan, registry, fast_config).apply()

        summary = result.summary()

        assert [d["id"] for d in summary["descriptors"]] == result.order
        assert summary["counts"]["failed"] == 1
        assert summary["counts"]["skipped"] == len(DB_BRANCH)
        assert summary["success"] is False


class TestPreflight:
    """Tests for validation before any remote call."""

    async def test_cycle_rejected_before_any_call(
        self, registry: ProviderRegistry, state: MockCloudState, fast_config: Config
    ) -> None:
        """Test that a dependency cycle aborts with no remote call."""
        plan = DeploymentPlan(
            project="test-project",
            region="us-central1",
            prefix="n8n",
            descriptors=(
                ResourceDescriptor(
                    id="a", kind=ResourceKind.SECRET, depends_on=("b",), desired_config={"secret_id": "a"}
                ),
                ResourceDescriptor(
                    id="b", kind=ResourceKind.SECRET, depends_on=("a",), desired_config={"secret_id": "b"}
                ),
            ),
        )

        with pytest.raises(CyclicDependencyError):
            await Reconciler(plan, registry, fast_config).apply()

        assert state.calls == []

    async def test_missing_provider_rejected(
        self, plan: DeploymentPlan, state: MockCloudState, fast_config: Config
    ) -> None:
        """Test that every kind must have a provider."""
        registry = ProviderRegistry()

        with pytest.raises(ConfigError, match="No provider registered"):
            await Reconciler(plan, registry, fast_config).apply()

        assert state.calls == []


class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_cancel_before_start(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a cancelled run starts nothing."""
        reconciler = Reconciler(plan, registry, fast_config)
        reconciler.shutdown("test")

        result = await reconciler.apply()

        assert result.cancelled is True
        assert result.cancel_reason == "test"
        assert result.exit_code == EXIT_CANCELLED
        assert result.count(Outcome.CANCELLED) == len(plan.descriptors)
        assert state.calls == []

    async def test_cancel_mid_run_finishes_in_flight_call(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that the in-flight create completes and nothing new starts."""
        config = replace(fast_config, max_workers=1)
        reconciler = Reconciler(plan, registry, config)
        loop = asyncio.get_running_loop()
        state.on_call(
            "service-account",
            "create",
            lambda: loop.call_soon_threadsafe(reconciler.shutdown, "received SIGTERM"),
        )

        result = await reconciler.apply()

        assert result.outcomes["service-account"].outcome == Outcome.CREATED
        assert state.order_of("create") == ["service-account"]
        assert result.cancelled is True
        assert result.exit_code == EXIT_CANCELLED
        assert result.outcomes["n8n-service"].outcome == Outcome.CANCELLED
        assert plan.get("n8n-service").state == ResourceState.PLANNED
        assert result.failed == []

    async def test_apply_timeout_cancels(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that the global apply deadline requests cancellation."""
        config = replace(fast_config, max_workers=1, apply_timeout_seconds=1)
        state.on_call("service-account", "create", lambda: time.sleep(1.2))

        result = await Reconciler(plan, registry, config).apply()

        assert result.cancelled is True
        assert result.cancel_reason == "apply timeout after 1s"
        assert result.outcomes["service-account"].outcome == Outcome.CREATED

    async def test_cancel_during_backoff_reported_cancelled(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that an interrupted retry is cancelled, not failed."""
        config = replace(
            fast_config,
            max_workers=1,
            retry_backoff_base_seconds=30.0,
            retry_backoff_max_seconds=60.0,
        )
        reconciler = Reconciler(plan, registry, config)
        loop = asyncio.get_running_loop()
        state.fail_transiently("service-account", "create", times=5)
        state.on_call(
            "service-account",
            "create",
            lambda: loop.call_soon_threadsafe(reconciler.shutdown, "received SIGINT"),
        )

        result = await asyncio.wait_for(reconciler.apply(), timeout=10)

        account = result.outcomes["service-account"]
        assert account.outcome == Outcome.CANCELLED
        assert account.error is None
        assert account.skipped_dependents == []
        assert plan.get("service-account").state == ResourceState.PLANNED
        assert state.count("create", "service-account") == 1
        assert result.failed == []
        assert result.skipped == []
        assert result.exit_code == EXIT_CANCELLED


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    async def test_returns_result(self, fast_config: Config) -> None:
        """Test a successful call."""
        value = await call_with_retry(
            lambda: 42,
            config=fast_config,
            executor=None,
            shutdown_event=asyncio.Event(),
            descriptor_id="x",
            operation="fetch",
        )

        assert value == 42

    async def test_cancelled_during_backoff(self) -> None:
        """Test that a backoff wait ends as soon as shutdown is requested."""
        config = Config(retry_backoff_base_seconds=30.0, retry_backoff_max_seconds=60.0)
        event = asyncio.Event()
        event.set()
        calls = []

        def flaky() -> None:
            calls.append(1)
            raise TransientProviderError("HTTP 503")

        with pytest.raises(OperationCancelled, match="Cancelled while retrying"):
            await asyncio.wait_for(
                call_with_retry(
                    flaky,
                    config=config,
                    executor=None,
                    shutdown_event=event,
                    descriptor_id="x",
                    operation="create",
                ),
                timeout=5,
            )

        assert len(calls) == 1


class TestPlanChanges:
    """Tests for the read-only plan preview."""

    async def test_empty_project_plans_creates(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that everything is planned for creation with no mutation."""
        changes = await Reconciler(plan, registry, fast_config).plan_changes()

        assert [c.descriptor_id for c in changes] == Reconciler(plan, registry).graph.topological_sort()
        assert all(c.action == PlanAction.CREATE for c in changes)
        database = next(c for c in changes if c.descriptor_id == "database")
        assert "db-instance" in (database.note or "")
        assert state.mutating_calls == []

    async def test_converged_project_plans_nothing(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a converged environment has no pending changes."""
        await _converge(spec, registry, fast_config)
        state.reset_calls()

        changes = await Reconciler(build_plan(spec), registry, fast_config).plan_changes()

        assert all(c.action == PlanAction.NO_OP for c in changes)
        assert state.mutating_calls == []

    async def test_drift_planned_as_update(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that drift is reported with its changed paths."""
        await _converge(spec, registry, fast_config)
        state.get("db-instance").raw["region"] = "europe-west1"

        changes = await Reconciler(build_plan(spec), registry, fast_config).plan_changes()

        instance = next(c for c in changes if c.descriptor_id == "db-instance")
        assert instance.action == PlanAction.UPDATE
        assert instance.changed_paths == ["region"]
        assert instance.protected is True
        assert "destructive change to protected resource" in (instance.note or "")

    async def test_changed_supplied_secret_planned_as_update(
        self,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a new supplied value shows up in the plan without being stored."""
        spec = DeploymentSpec.model_validate(
            {**MINIMAL_DEPLOYMENT, "secrets": {"encryptionKeyFromEnv": "N8N_ENCRYPTION_KEY"}}
        )
        monkeypatch.setenv("N8N_ENCRYPTION_KEY", "a" * 16 + "B" * 15 + "1")
        await _converge(spec, registry, fast_config)
        monkeypatch.setenv("N8N_ENCRYPTION_KEY", "c" * 16 + "D" * 15 + "2")
        state.reset_calls()

        changes = {
            c.descriptor_id: c
            for c in await Reconciler(build_plan(spec), registry, fast_config).plan_changes()
        }

        key = changes["encryption-key-version"]
        assert key.action == PlanAction.UPDATE
        assert key.changed_paths == ["payload"]
        assert changes["db-password-version"].action == PlanAction.NO_OP
        assert state.mutating_calls == []

    async def test_unreadable_state_planned_as_unknown(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a fetch error marks the descriptor and its dependents unknown."""
        state.inject("db-instance", "fetch", PermanentProviderError("denied"), times=None)

        changes = {c.descriptor_id: c for c in await Reconciler(plan, registry, fast_config).plan_changes()}

        assert changes["db-instance"].action == PlanAction.UNKNOWN
        assert changes["database"].action == PlanAction.UNKNOWN
        assert changes["service-account"].action == PlanAction.CREATE
