"""Tests for protected reverse-order teardown and rollback."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from cloud_mock import MockCloudState
from cloud_mock.resources import mock_attributes

from provisioner.blueprint import build_plan
from provisioner.cleanup import CleanupEngine, DestroyOutcome
from provisioner.config import Config
from provisioner.descriptors import (
    AttributeRef,
    DeploymentPlan,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
)
from provisioner.models import DeploymentSpec
from provisioner.provider import PermanentProviderError, ProviderRegistry
from provisioner.reconciler import (
    EXIT_CANCELLED,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    Outcome,
    Reconciler,
)


@pytest.fixture
async def applied(
    spec: DeploymentSpec, registry: ProviderRegistry, state: MockCloudState, fast_config: Config
) -> MockCloudState:
    """Cloud state after a successful apply, with the call log cleared."""
    result = await Reconciler(build_plan(spec), registry, fast_config).apply()
    assert result.exit_code == EXIT_SUCCESS
    state.reset_calls()
    return state


class TestDestroy:
    """Tests for CleanupEngine.destroy()."""

    async def test_protected_instance_kept(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that everything but the protected database instance is deleted."""
        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.records["db-instance"].outcome == DestroyOutcome.PROTECTED
        assert result.protected == ["db-instance"]
        assert applied.resource_ids == ["db-instance"]
        assert applied.count("delete", "db-instance") == 0
        assert result.count(DestroyOutcome.DESTROYED) == len(plan.descriptors) - 1
        assert result.exit_code == EXIT_SUCCESS

    async def test_dependents_deleted_first(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that nothing is deleted before the resources that depend on it."""
        await CleanupEngine(plan, registry, fast_config).destroy(allow_destructive=True)

        deleted = applied.order_of("delete")
        for descriptor in plan.descriptors:
            for dep in descriptor.depends_on:
                assert deleted.index(descriptor.id) < deleted.index(dep), (
                    f"{dep} deleted before its dependent {descriptor.id}"
                )

    async def test_override_deletes_everything(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that the override also removes protected resources."""
        result = await CleanupEngine(plan, registry, fast_config).destroy(allow_destructive=True)

        assert applied.resource_ids == []
        assert result.protected == []
        assert result.delete_calls == len(plan.descriptors)
        assert result.count(DestroyOutcome.DESTROYED) == len(plan.descriptors)

    async def test_repeated_destroy_is_a_no_op(
        self,
        spec: DeploymentSpec,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test idempotency: a second destroy finds everything already gone."""
        await CleanupEngine(build_plan(spec), registry, fast_config).destroy(allow_destructive=True)
        applied.reset_calls()

        result = await CleanupEngine(build_plan(spec), registry, fast_config).destroy(
            allow_destructive=True
        )

        assert result.count(DestroyOutcome.ALREADY_ABSENT) == len(result.order)
        assert result.delete_calls == 0
        assert applied.mutating_calls == []
        assert result.exit_code == EXIT_SUCCESS

    async def test_never_applied(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that destroying an empty project issues no delete."""
        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.delete_calls == 0
        assert state.mutating_calls == []
        assert result.records["database"].outcome == DestroyOutcome.ALREADY_ABSENT
        assert result.success is True

    async def test_dependencies_of_protected_retained(
        self, registry: ProviderRegistry, state: MockCloudState, fast_config: Config
    ) -> None:
        """Test that a protected descriptor keeps what it depends on."""
        plan = DeploymentPlan(
            project="test-project",
            region="us-central1",
            prefix="n8n",
            descriptors=(
                ResourceDescriptor(
                    id="db-instance",
                    kind=ResourceKind.DATABASE_INSTANCE,
                    desired_config={
                        "name": "n8n-db",
                        "tier": "db-f1-micro",
                        "database_version": "POSTGRES_13",
                        "region": "us-central1",
                    },
                ),
                ResourceDescriptor(
                    id="database",
                    kind=ResourceKind.DATABASE,
                    depends_on=("db-instance",),
                    protect=True,
                    desired_config={"name": "n8n", "instance": AttributeRef("db-instance", "name")},
                ),
            ),
        )
        state.put("db-instance", ResourceKind.DATABASE_INSTANCE, attributes={"name": "n8n-db"})
        state.put("database", ResourceKind.DATABASE, attributes={"name": "n8n"})

        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.records["database"].outcome == DestroyOutcome.PROTECTED
        retained = result.records["db-instance"]
        assert retained.outcome == DestroyOutcome.RETAINED
        assert retained.retained_for == "database"
        assert retained.to_dict()["retained_for"] == "database"
        assert state.mutating_calls == []

    async def test_fetch_error_fails_descriptor_and_dependents(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that an unreadable resource is reported failed, never assumed absent."""
        applied.inject("custom-nodes-bucket", "fetch", PermanentProviderError("denied"), times=None)

        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.records["custom-nodes-bucket"].outcome == DestroyOutcome.FAILED
        assert result.records["custom-nodes-bucket"].error == "denied"
        access = result.records["custom-nodes-bucket-access"]
        assert access.outcome == DestroyOutcome.FAILED
        assert "custom-nodes-bucket" in (access.error or "")
        assert applied.get("custom-nodes-bucket") is not None
        assert applied.get("custom-nodes-bucket-access") is not None
        database = result.records["database"]
        assert database.outcome == DestroyOutcome.RETAINED
        assert database.retained_for == "public-invoker"
        assert applied.get("database") is not None
        assert result.delete_calls == 0
        assert set(result.failed) == {
            "public-invoker",
            "n8n-service",
            "custom-nodes-bucket-access",
            "custom-nodes-bucket",
        }
        assert result.exit_code == EXIT_PARTIAL_FAILURE

    async def test_delete_retried_on_transient_error(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that deletes use the same retry policy as apply."""
        applied.fail_transiently("database", "delete", times=2)

        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.records["database"].outcome == DestroyOutcome.DESTROYED
        assert applied.count("delete", "database") == 3

    async def test_delete_failure_reported(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a service that could not be deleted keeps everything it uses."""
        applied.inject("n8n-service", "delete", PermanentProviderError("HTTP 403"))

        result = await CleanupEngine(plan, registry, fast_config).destroy()

        assert result.records["n8n-service"].outcome == DestroyOutcome.FAILED
        assert result.records["n8n-service"].error == "HTTP 403"
        assert plan.get("n8n-service").state == ResourceState.FAILED
        assert result.records["public-invoker"].outcome == DestroyOutcome.DESTROYED
        for descriptor_id in ("db-user", "db-password", "service-account", "database"):
            record = result.records[descriptor_id]
            assert record.outcome == DestroyOutcome.RETAINED, descriptor_id
            assert record.retained_for == "n8n-service"
            assert applied.get(descriptor_id) is not None
        assert result.records["db-instance"].outcome == DestroyOutcome.PROTECTED
        assert applied.order_of("delete") == ["public-invoker", "n8n-service"]
        assert result.failed == ["n8n-service"]
        assert result.exit_code == EXIT_PARTIAL_FAILURE

    async def test_cancel_before_delete(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a cancelled destroy deletes nothing."""
        engine = CleanupEngine(plan, registry, fast_config)
        engine.shutdown("test")

        result = await engine.destroy()

        assert result.delete_calls == 0
        assert result.count(DestroyOutcome.CANCELLED) == len(plan.descriptors)
        assert result.exit_code == EXIT_CANCELLED

    async def test_cancel_during_delete_backoff(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that a delete interrupted while retrying is cancelled, not failed."""
        config = replace(
            fast_config, retry_backoff_base_seconds=30.0, retry_backoff_max_seconds=60.0
        )
        engine = CleanupEngine(plan, registry, config)
        loop = asyncio.get_running_loop()
        applied.fail_transiently("public-invoker", "delete", times=5)
        applied.on_call(
            "public-invoker",
            "delete",
            lambda: loop.call_soon_threadsafe(engine.shutdown, "received SIGTERM"),
        )

        result = await asyncio.wait_for(engine.destroy(), timeout=10)

        invoker = result.records["public-invoker"]
        assert invoker.outcome == DestroyOutcome.CANCELLED
        assert invoker.error is None
        assert plan.get("public-invoker").state == ResourceState.READY
        assert applied.get("public-invoker") is not None
        assert applied.count("delete", "public-invoker") == 1
        assert result.delete_calls == 1
        assert result.count(DestroyOutcome.CANCELLED) == len(plan.descriptors)
        assert result.failed == []
        assert result.exit_code == EXIT_CANCELLED

    async def test_summary(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        applied: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test the structured destroy summary."""
        result = await CleanupEngine(plan, registry, fast_config).destroy()

        summary = result.summary()

        assert summary["success"] is True
        assert summary["counts"]["protected"] == 1
        assert summary["delete_calls"] == len(plan.descriptors) - 1
        assert [d["id"] for d in summary["descriptors"]] == result.order

    def test_destroy_order_and_protected_ids(
        self, plan: DeploymentPlan, registry: ProviderRegistry
    ) -> None:
        """Test the order and protection queries used for confirmation prompts."""
        engine = CleanupEngine(plan, registry)

        order = engine.destroy_order()

        assert order[0] == "public-invoker"
        assert order.index("n8n-service") < order.index("db-instance")
        assert engine.protected_ids() == ["db-instance"]


class TestRollback:
    """Tests for CleanupEngine.rollback()."""

    async def test_removes_only_what_the_run_created(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        state: MockCloudState,
        fast_config: Config,
    ) -> None:
        """Test that pre-existing and protected resources survive a rollback."""
        account = {"account_id": "n8n-runtime", "display_name": "n8n runtime"}
        state.put(
            "service-account",
            ResourceKind.SERVICE_ACCOUNT,
            raw=account,
            attributes=mock_attributes(state, ResourceKind.SERVICE_ACCOUNT, "service-account", account),
        )
        state.inject("n8n-service", "create", PermanentProviderError("image not found"))
        apply_result = await Reconciler(plan, registry, fast_config).apply()
        assert apply_result.outcomes["service-account"].outcome == Outcome.UNCHANGED
        assert "service-account" not in apply_result.created
        state.reset_calls()

        result = await CleanupEngine(plan, registry, fast_config).rollback(apply_result)

        assert sorted(state.resource_ids) == ["db-instance", "service-account"]
        assert set(result.order) == set(apply_result.created)
        assert result.records["db-instance"].outcome == DestroyOutcome.PROTECTED
        assert "service-account" not in state.order_of("delete")
        assert "n8n-service" not in result.records
