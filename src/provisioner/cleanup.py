"""Protected reverse-order teardown.

Destroy runs in two passes:
1. Discovery, in dependency order: fetch every descriptor read-only and
   record its attributes, so dependents can resolve the identifiers they
   need for the delete call (a database needs its instance name)
2. Deletion, in reverse dependency order: dependents go before the
   resources they depend on

SAFETY:
- Protected descriptors are never deleted without an explicit override;
  they are reported as `protected`, and everything they depend on is
  `retained` so the protected resource keeps working.
- The same holds for a resource whose delete failed or was cancelled: its
  dependencies are `retained` while it still exists.
- A resource that is already gone counts as success, so destroy is
  idempotent and a no-op on a plan that was never applied.
- Rollback after a failed apply only removes what that run created.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .attributes import AttributeTable, UnresolvedReference
from .config import Config
from .dependency import DependencyGraph
from .descriptors import DeploymentPlan, ResourceKind, ResourceState
from .provider import ProviderError, ProviderRegistry, ResourceRequest
from .reconciler import (
    EXIT_CANCELLED,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    ApplyResult,
    OperationCancelled,
    call_with_retry,
)

logger = logging.getLogger(__name__)


class DestroyOutcome(str, Enum):
    """Final outcome of one descriptor in a destroy run."""

    DESTROYED = "destroyed"
    ALREADY_ABSENT = "already_absent"
    PROTECTED = "protected"
    RETAINED = "retained"
    FAILED = "failed"
    CANCELLED = "cancelled"


SUCCESSFUL_DESTROY_OUTCOMES = frozenset(
    {
        DestroyOutcome.DESTROYED,
        DestroyOutcome.ALREADY_ABSENT,
        DestroyOutcome.PROTECTED,
        DestroyOutcome.RETAINED,
    }
)

# Outcomes that leave the resource in place; its dependencies must stay too
HOLDING_OUTCOMES = frozenset({DestroyOutcome.FAILED, DestroyOutcome.CANCELLED})


@dataclass
class DestroyRecord:
    """What happened to one descriptor during destroy."""

    descriptor_id: str
    kind: ResourceKind
    outcome: DestroyOutcome
    error: str | None = None
    retained_for: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.descriptor_id,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.retained_for is not None:
            data["retained_for"] = self.retained_for
        return data


@dataclass
class DestroyResult:
    """Result of one destroy run, in the order deletions were attempted."""

    order: list[str]
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    records: dict[str, DestroyRecord] = field(default_factory=dict)
    delete_calls: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            r.outcome in SUCCESSFUL_DESTROY_OUTCOMES for r in self.records.values()
        )

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        return EXIT_SUCCESS if self.success else EXIT_PARTIAL_FAILURE

    @property
    def protected(self) -> list[str]:
        return [r.descriptor_id for r in self.ordered() if r.outcome == DestroyOutcome.PROTECTED]

    @property
    def failed(self) -> list[str]:
        return [r.descriptor_id for r in self.ordered() if r.outcome == DestroyOutcome.FAILED]

    def ordered(self) -> list[DestroyRecord]:
        return [self.records[d] for d in self.order if d in self.records]

    def count(self, outcome: DestroyOutcome) -> int:
        return sum(1 for r in self.records.values() if r.outcome == outcome)

    def summary(self) -> dict[str, Any]:
        duration = (self.end_time - self.start_time).total_seconds() if self.end_time else 0.0
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": round(duration, 3),
            "counts": {o.value: self.count(o) for o in DestroyOutcome},
            "delete_calls": self.delete_calls,
            "descriptors": [r.to_dict() for r in self.ordered()],
        }


class CleanupEngine:
    """Tears down a plan's resources, respecting protection and dependencies."""

    def __init__(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        config: Config | None = None,
    ) -> None:
        self._plan = plan
        self._registry = registry
        self._config = config or Config()
        self._graph = DependencyGraph.from_descriptors(plan.descriptors)
        self._shutdown_event = asyncio.Event()
        self._executor: ThreadPoolExecutor | None = None

    def shutdown(self, reason: str = "shutdown requested") -> None:
        """Stop issuing deletes; the one in flight finishes."""
        if not self._shutdown_event.is_set():
            logger.warning("Destroy cancellation requested", extra={"reason": reason})
            self._shutdown_event.set()

    def destroy_order(self) -> list[str]:
        return self._graph.reverse_order()

    def protected_ids(self) -> list[str]:
        return [d.id for d in self._plan.descriptors if d.protect]

    async def destroy(
        self,
        allow_destructive: bool = False,
        only: Iterable[str] | None = None,
    ) -> DestroyResult:
        """Delete every descriptor (or only the given ids) in reverse order.

        Args:
            allow_destructive: Also delete protected descriptors.
            only: Restrict deletion to these ids (used by rollback).

        Returns:
            DestroyResult with one record per descriptor considered.
        """
        order = self._graph.reverse_order()
        self._registry.require(d.kind for d in self._plan.descriptors)
        selected = set(only) if only is not None else set(order)
        order = [d for d in order if d in selected]
        result = DestroyResult(order=order)

        retained = {} if allow_destructive else self._retained_dependencies(selected)

        logger.info(
            "Starting destroy",
            extra={
                "project": self._plan.project,
                "descriptors": len(order),
                "allow_destructive": allow_destructive,
                "protected": [] if allow_destructive else self.protected_ids(),
            },
        )

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="provisioner-destroy") as executor:
            self._executor = executor
            try:
                table, fetch_errors = await self._discover()
                for descriptor_id in order:
                    descriptor = self._plan.get(descriptor_id)
                    if self._shutdown_event.is_set():
                        result.records[descriptor_id] = DestroyRecord(
                            descriptor_id, descriptor.kind, DestroyOutcome.CANCELLED
                        )
                        continue
                    if descriptor_id in fetch_errors:
                        result.records[descriptor_id] = DestroyRecord(
                            descriptor_id,
                            descriptor.kind,
                            DestroyOutcome.FAILED,
                            error=fetch_errors[descriptor_id],
                        )
                        self._hold_dependencies(descriptor_id, retained)
                        continue
                    record = await self._destroy_one(
                        descriptor_id, table, allow_destructive, retained, result
                    )
                    result.records[descriptor_id] = record
                    if record.outcome in HOLDING_OUTCOMES:
                        self._hold_dependencies(descriptor_id, retained)
            finally:
                self._executor = None

        result.cancelled = self._shutdown_event.is_set()
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def rollback(self, apply_result: ApplyResult) -> DestroyResult:
        """Destroy only what the given apply run created.

        Protection still applies: a protected descriptor created by the run
        is kept.
        """
        logger.warning(
            "Rolling back apply",
            extra={"created_ids": apply_result.created},
        )
        return await self.destroy(only=apply_result.created)

    def _retained_dependencies(self, selected: set[str]) -> dict[str, str]:
        """Map each dependency of a protected descriptor to that descriptor."""
        retained: dict[str, str] = {}
        for descriptor in self._plan.descriptors:
            if not descriptor.protect:
                continue
            for dep in self._graph.dependencies_of(descriptor.id):
                if dep in selected:
                    retained.setdefault(dep, descriptor.id)
        return retained

    def _hold_dependencies(self, descriptor_id: str, retained: dict[str, str]) -> None:
        """Keep everything a still-existing descriptor depends on."""
        for dep in self._graph.dependencies_of(descriptor_id):
            retained.setdefault(dep, descriptor_id)

    async def _discover(self) -> tuple[AttributeTable, dict[str, str]]:
        """Read-only pass recording attributes of every resource that exists.

        Returns:
            Tuple of (attributes table, fetch errors by descriptor id).
        """
        table = AttributeTable()
        errors: dict[str, str] = {}
        for descriptor_id in self._graph.topological_sort():
            descriptor = self._plan.get(descriptor_id)
            provider = self._registry.get(descriptor.kind)
            unreadable = [dep for dep in descriptor.depends_on if dep in errors]
            if unreadable:
                errors[descriptor.id] = f"could not read dependency '{unreadable[0]}'"
                continue
            try:
                request = ResourceRequest(
                    id=descriptor.id,
                    kind=descriptor.kind,
                    config=table.resolve(descriptor.desired_config),
                )
            except UnresolvedReference:
                # A dependency is gone, so this resource cannot exist either
                continue

            try:
                observed = await call_with_retry(
                    lambda: provider.fetch(request),
                    config=self._config,
                    executor=self._executor,
                    shutdown_event=self._shutdown_event,
                    descriptor_id=descriptor.id,
                    operation="fetch",
                )
            except OperationCancelled:
                break
            except ProviderError as e:
                errors[descriptor.id] = str(e)
                logger.error(
                    "Could not read resource before destroy",
                    extra={"descriptor": descriptor.id, "error": str(e)},
                )
                continue
            if observed is not None:
                table.record(descriptor.id, observed.attributes)
        return table, errors

    async def _destroy_one(
        self,
        descriptor_id: str,
        table: AttributeTable,
        allow_destructive: bool,
        retained: dict[str, str],
        result: DestroyResult,
    ) -> DestroyRecord:
        descriptor = self._plan.get(descriptor_id)
        record = DestroyRecord(descriptor_id, descriptor.kind, DestroyOutcome.FAILED)

        if descriptor.protect and not allow_destructive:
            record.outcome = DestroyOutcome.PROTECTED
            logger.warning(
                "Skipping protected resource",
                extra={"descriptor": descriptor_id, "kind": descriptor.kind.value},
            )
            return record

        if descriptor_id in retained:
            record.outcome = DestroyOutcome.RETAINED
            record.retained_for = retained[descriptor_id]
            return record

        if descriptor_id not in table:
            if descriptor.state != ResourceState.DESTROYED:
                descriptor.transition(ResourceState.DESTROYING)
                descriptor.transition(ResourceState.DESTROYED)
            record.outcome = DestroyOutcome.ALREADY_ABSENT
            logger.debug("Already absent", extra={"descriptor": descriptor_id})
            return record

        descriptor.transition(ResourceState.DESTROYING)
        provider = self._registry.get(descriptor.kind)
        request = ResourceRequest(
            id=descriptor.id,
            kind=descriptor.kind,
            config=table.resolve(descriptor.desired_config),
        )
        try:
            result.delete_calls += 1
            deleted = await call_with_retry(
                lambda: provider.delete(request),
                config=self._config,
                executor=self._executor,
                shutdown_event=self._shutdown_event,
                descriptor_id=descriptor_id,
                operation="delete",
            )
        except OperationCancelled as e:
            descriptor.transition(ResourceState.READY)
            record.outcome = DestroyOutcome.CANCELLED
            logger.warning("Delete cancelled", extra={"descriptor": descriptor_id, "error": str(e)})
            return record
        except ProviderError as e:
            descriptor.transition(ResourceState.FAILED)
            record.error = str(e)
            logger.error(
                "Delete failed",
                extra={
                    "descriptor": descriptor_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return record

        descriptor.transition(ResourceState.DESTROYED)
        record.outcome = DestroyOutcome.DESTROYED if deleted else DestroyOutcome.ALREADY_ABSENT
        logger.info(
            "Destroyed resource",
            extra={"descriptor": descriptor_id, "kind": descriptor.kind.value},
        )
        return record

    def _log_result(self, result: DestroyResult) -> None:
        extra: dict[str, Any] = {
            "project": self._plan.project,
            "delete_calls": result.delete_calls,
            "cancelled": result.cancelled,
            **{f"{o.value}_count": result.count(o) for o in DestroyOutcome},
        }
        if result.failed:
            extra["failed"] = result.failed
            logger.error("Destroy finished with failures", extra=extra)
        elif result.cancelled:
            logger.warning("Destroy cancelled", extra=extra)
        else:
            logger.info("Destroy complete", extra=extra)
