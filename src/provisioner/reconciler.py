"""Reconciliation of a deployment plan against remote state.

For each descriptor, in dependency order:
1. Resolve attribute references from already-Ready dependencies
2. Fetch current remote state
3. Create if absent, update in place if divergent, otherwise do nothing
4. Record the attributes dependents need, then mark the descriptor Ready

Re-running against a converged environment issues zero mutating calls,
which is what makes an interrupted or partially failed run safe to resume.

FAILURE ISOLATION:
A Failed descriptor blocks every descriptor that transitively depends on
it; independent branches of the graph keep going. The result always
reports every descriptor's final state, never one opaque failure.

CONCURRENCY:
Independent branches run concurrently on a small worker pool. Provider
calls are blocking network operations and run in a thread pool; the event
loop only schedules. Dependents never start before every dependency is
Ready.

SECURITY: Secret material is only revealed for the write call that needs
it and is never part of a diff, a log line or the attributes table.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .attributes import AttributeTable, UnresolvedReference, strip_secrets
from .binding import SecretBindingEngine
from .config import Config
from .dependency import DependencyGraph
from .descriptors import (
    DeploymentPlan,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    SecretRef,
)
from .provider import (
    Observed,
    PermanentProviderError,
    ProtectedResourceError,
    ProviderError,
    ProviderRegistry,
    ResourceRequest,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BINDING_KINDS = frozenset({ResourceKind.IAM_BINDING, ResourceKind.STORAGE_BUCKET_BINDING})

# Exit codes surfaced by the CLI
EXIT_SUCCESS = 0
EXIT_VALIDATION_ERROR = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_CANCELLED = 3


class Outcome(str, Enum):
    """Final outcome of one descriptor in a run."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


SUCCESSFUL_OUTCOMES = frozenset({Outcome.CREATED, Outcome.UPDATED, Outcome.UNCHANGED})


class PlanAction(str, Enum):
    """What apply would do to a descriptor."""

    CREATE = "create"
    UPDATE = "update"
    NO_OP = "no-op"
    UNKNOWN = "unknown"


class PartialApplyFailure(Exception):
    """Raised when some descriptors reached Ready and at least one Failed."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        failed = ", ".join(o.descriptor_id for o in result.failed)
        super().__init__(f"Apply failed for: {failed}")


class OperationCancelled(Exception):
    """Cancellation observed before a mutating call or during a retry backoff."""

    pass


@dataclass
class DescriptorOutcome:
    """What happened to one descriptor."""

    descriptor_id: str
    kind: ResourceKind
    outcome: Outcome
    state: ResourceState
    changed_paths: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    skipped_because: str | None = None
    skipped_dependents: list[str] = field(default_factory=list)
    attempts: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.descriptor_id,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "state": self.state.value,
        }
        if self.changed_paths:
            data["changed"] = self.changed_paths
        if self.error is not None:
            data["error"] = self.error
            data["error_type"] = self.error_type
        if self.skipped_because is not None:
            data["skipped_because"] = self.skipped_because
        if self.skipped_dependents:
            data["skipped_dependents"] = self.skipped_dependents
        return data


@dataclass
class ApplyResult:
    """Result of one apply run."""

    order: list[str]
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: dict[str, DescriptorOutcome] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    mutating_calls: int = 0
    cancelled: bool = False
    cancel_reason: str | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failed(self) -> list[DescriptorOutcome]:
        return [o for o in self.ordered() if o.outcome == Outcome.FAILED]

    @property
    def skipped(self) -> list[DescriptorOutcome]:
        return [o for o in self.ordered() if o.outcome == Outcome.SKIPPED]

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            o.outcome in SUCCESSFUL_OUTCOMES for o in self.outcomes.values()
        )

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if not self.success:
            return EXIT_PARTIAL_FAILURE
        return EXIT_SUCCESS

    def ordered(self) -> list[DescriptorOutcome]:
        return [self.outcomes[d] for d in self.order if d in self.outcomes]

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes.values() if o.outcome == outcome)

    def summary(self) -> dict[str, Any]:
        """Structured summary listing every descriptor's end state."""
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "duration_seconds": round(self.duration_seconds, 3),
            "counts": {o.value: self.count(o) for o in Outcome},
            "mutating_calls": self.mutating_calls,
            "descriptors": [o.to_dict() for o in self.ordered()],
        }

    def raise_for_failure(self) -> None:
        """Raise PartialApplyFailure if any descriptor failed."""
        if self.failed:
            raise PartialApplyFailure(self)


@dataclass
class PlannedChange:
    """One line of a plan: what apply would do to a descriptor."""

    descriptor_id: str
    kind: ResourceKind
    action: PlanAction
    changed_paths: list[str] = field(default_factory=list)
    note: str | None = None
    protected: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.descriptor_id,
            "kind": self.kind.value,
            "action": self.action.value,
        }
        if self.changed_paths:
            data["changed"] = self.changed_paths
        if self.note:
            data["note"] = self.note
        if self.protected:
            data["protected"] = True
        return data


class Reconciler:
    """Walks a plan's dependency graph and converges each descriptor.

    The plan is fixed for the lifetime of the reconciler; build a new plan
    (and reconciler) for each run.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        registry: ProviderRegistry,
        config: Config | None = None,
        bindings: SecretBindingEngine | None = None,
    ) -> None:
        self._plan = plan
        self._registry = registry
        self._config = config or Config()
        self._bindings = bindings or SecretBindingEngine(plan, registry)
        self._graph = DependencyGraph.from_descriptors(plan.descriptors)
        self._attributes = AttributeTable()
        self._shutdown_event = asyncio.Event()
        self._cancel_reason: str | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._result: ApplyResult | None = None

    @property
    def plan(self) -> DeploymentPlan:
        return self._plan

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def attributes(self) -> AttributeTable:
        """Attributes recorded by descriptors that reached Ready."""
        return self._attributes

    @property
    def bindings(self) -> SecretBindingEngine:
        return self._bindings

    def shutdown(self, reason: str = "shutdown requested") -> None:
        """Stop issuing new creates/updates; in-flight calls finish cleanly."""
        if not self._shutdown_event.is_set():
            logger.warning("Cancellation requested", extra={"reason": reason})
            self._cancel_reason = reason
            self._shutdown_event.set()

    def preflight(self) -> list[str]:
        """Validate everything that can be checked without remote calls.

        Returns:
            Descriptor ids in execution order.

        Raises:
            CyclicDependencyError: If the graph has a cycle.
            ConfigError: If a kind has no provider.
            PolicyViolation: If a supplied secret value does not comply.
        """
        order = self._graph.topological_sort()
        self._registry.require(d.kind for d in self._plan.descriptors)
        self._bindings.validate_supplied()
        logger.info(
            "Pre-flight checks passed",
            extra={"project": self._plan.project, "descriptors": len(order)},
        )
        return order

    async def apply(self, allow_destructive: bool = False) -> ApplyResult:
        """Converge every descriptor in the plan.

        Args:
            allow_destructive: Permit destructive updates to protected descriptors.

        Returns:
            ApplyResult with one outcome per descriptor.
        """
        order = self.preflight()
        result = ApplyResult(order=order)
        self._result = result

        loop = asyncio.get_running_loop()
        timeout_handle = None
        if self._config.apply_timeout_seconds > 0:
            timeout_handle = loop.call_later(
                self._config.apply_timeout_seconds,
                self.shutdown,
                f"apply timeout after {self._config.apply_timeout_seconds}s",
            )

        logger.info(
            "Starting apply",
            extra={
                "project": self._plan.project,
                "region": self._plan.region,
                "descriptors": len(order),
                "max_workers": self._config.max_workers,
                "allow_destructive": allow_destructive,
            },
        )

        satisfied: set[str] = set()
        finished: set[str] = set()
        blocked: dict[str, str] = {}
        running: dict[asyncio.Task[DescriptorOutcome], str] = {}

        try:
            with ThreadPoolExecutor(
                max_workers=self._config.max_workers,
                thread_name_prefix="provisioner",
            ) as executor:
                self._executor = executor

                while True:
                    if not self._shutdown_event.is_set():
                        started = finished | set(running.values()) | blocked.keys()
                        for descriptor_id in self._graph.get_ready(satisfied, exclude=started):
                            if len(running) >= self._config.max_workers:
                                break
                            descriptor = self._plan.get(descriptor_id)
                            task = asyncio.create_task(
                                self._apply_one(descriptor, allow_destructive)
                            )
                            running[task] = descriptor_id

                    if not running:
                        break

                    done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        descriptor_id = running.pop(task)
                        finished.add(descriptor_id)
                        outcome = task.result()
                        result.outcomes[descriptor_id] = outcome

                        if outcome.outcome in SUCCESSFUL_OUTCOMES:
                            satisfied.add(descriptor_id)
                        elif outcome.outcome == Outcome.FAILED:
                            dependents = self._graph.dependents_of(descriptor_id)
                            for dependent in dependents:
                                blocked.setdefault(dependent, descriptor_id)
                            outcome.skipped_dependents = dependents
        finally:
            self._executor = None
            if timeout_handle is not None:
                timeout_handle.cancel()

        for descriptor_id in order:
            if descriptor_id in result.outcomes:
                continue
            descriptor = self._plan.get(descriptor_id)
            if descriptor_id in blocked:
                result.outcomes[descriptor_id] = DescriptorOutcome(
                    descriptor_id=descriptor_id,
                    kind=descriptor.kind,
                    outcome=Outcome.SKIPPED,
                    state=descriptor.state,
                    skipped_because=blocked[descriptor_id],
                )
            else:
                result.outcomes[descriptor_id] = DescriptorOutcome(
                    descriptor_id=descriptor_id,
                    kind=descriptor.kind,
                    outcome=Outcome.CANCELLED,
                    state=descriptor.state,
                )

        result.cancelled = self._shutdown_event.is_set()
        result.cancel_reason = self._cancel_reason
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _apply_one(
        self,
        descriptor: ResourceDescriptor,
        allow_destructive: bool,
    ) -> DescriptorOutcome:
        """Converge one descriptor; never raises."""
        start = time.monotonic()
        outcome = DescriptorOutcome(
            descriptor_id=descriptor.id,
            kind=descriptor.kind,
            outcome=Outcome.FAILED,
            state=descriptor.state,
        )
        descriptor.transition(ResourceState.APPLYING)
        logger.debug("Applying descriptor", extra={"descriptor": descriptor.id})

        try:
            request = ResourceRequest(
                id=descriptor.id,
                kind=descriptor.kind,
                config=self._attributes.resolve(descriptor.desired_config),
            )
            observed = await self._converge(descriptor, request, allow_destructive, outcome)
            self._attributes.record(descriptor.id, observed.attributes)
            descriptor.transition(ResourceState.READY)

        except OperationCancelled:
            descriptor.transition(ResourceState.PLANNED)
            outcome.outcome = Outcome.CANCELLED

        except ProviderError as e:
            descriptor.transition(ResourceState.FAILED)
            outcome.outcome = Outcome.FAILED
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            logger.error(
                "Descriptor failed",
                extra={
                    "descriptor": descriptor.id,
                    "kind": descriptor.kind.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

        except UnresolvedReference as e:
            descriptor.transition(ResourceState.FAILED)
            outcome.outcome = Outcome.FAILED
            outcome.error = f"Dependency did not record attribute {e.ref}"
            outcome.error_type = type(e).__name__
            logger.error(
                "Descriptor failed: unresolved reference",
                extra={"descriptor": descriptor.id, "reference": str(e.ref)},
            )

        except Exception as e:
            # Unexpected provider bug: fail this branch only
            descriptor.transition(ResourceState.FAILED)
            outcome.outcome = Outcome.FAILED
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            logger.exception(
                "Descriptor failed unexpectedly",
                extra={"descriptor": descriptor.id, "error": str(e)},
            )

        outcome.state = descriptor.state
        outcome.duration_seconds = time.monotonic() - start
        if outcome.outcome in SUCCESSFUL_OUTCOMES:
            logger.info(
                "Descriptor ready",
                extra={
                    "descriptor": descriptor.id,
                    "kind": descriptor.kind.value,
                    "outcome": outcome.outcome.value,
                    "duration_seconds": round(outcome.duration_seconds, 3),
                },
            )
        return outcome

    async def _converge(
        self,
        descriptor: ResourceDescriptor,
        request: ResourceRequest,
        allow_destructive: bool,
        outcome: DescriptorOutcome,
    ) -> Observed:
        provider = self._registry.get(descriptor.kind)

        if descriptor.kind in BINDING_KINDS:
            self._check_cancelled()
            observed, created = await self._call(
                lambda: self._bindings.bind_access(request), descriptor.id, "bind", outcome
            )
            if created:
                self._count_mutation()
                if self._result is not None:
                    self._result.created.append(descriptor.id)
            outcome.outcome = Outcome.CREATED if created else Outcome.UNCHANGED
            return observed

        observed = await self._call(lambda: provider.fetch(request), descriptor.id, "fetch", outcome)

        if observed is None:
            self._check_cancelled()
            if descriptor.kind == ResourceKind.SECRET_VERSION:
                _, observed = await self._call(
                    lambda: self._bindings.store_secret(request, self._attributes),
                    descriptor.id,
                    "store",
                    outcome,
                )
            else:
                observed = await self._call(
                    lambda: provider.create(self._reveal(request)),
                    descriptor.id,
                    "create",
                    outcome,
                )
            self._count_mutation()
            if self._result is not None:
                self._result.created.append(descriptor.id)
            outcome.outcome = Outcome.CREATED
            return observed

        if descriptor.kind == ResourceKind.SECRET_VERSION:
            pinned = observed
            stale = await self._call(
                lambda: self._bindings.supplied_changed(request, pinned),
                descriptor.id,
                "access",
                outcome,
            )
            if not stale:
                outcome.outcome = Outcome.UNCHANGED
                return observed
            self._check_cancelled()
            _, observed = await self._call(
                lambda: self._bindings.store_secret(request, self._attributes),
                descriptor.id,
                "store",
                outcome,
            )
            self._count_mutation()
            outcome.changed_paths = ["payload"]
            outcome.outcome = Outcome.UPDATED
            return observed

        # Consumers of material stored in this run must pick up the new value
        rotated = [
            key
            for key, value in request.config.items()
            if isinstance(value, SecretRef) and self._bindings.was_stored(value.material)
        ]
        changed = provider.diff(strip_secrets(request.config), observed) + rotated
        if not changed:
            outcome.outcome = Outcome.UNCHANGED
            return observed

        outcome.changed_paths = changed
        destructive = provider.destructive_changes(changed)
        if destructive and descriptor.protect and not allow_destructive:
            raise ProtectedResourceError(
                f"'{descriptor.id}' is protected; changing {destructive} requires "
                "--allow-destructive-override"
            )

        self._check_cancelled()
        current = observed
        observed = await self._call(
            lambda: provider.update(self._reveal(request), current),
            descriptor.id,
            "update",
            outcome,
        )
        self._count_mutation()
        outcome.outcome = Outcome.UPDATED
        logger.info(
            "Drift corrected",
            extra={"descriptor": descriptor.id, "changed_paths": changed},
        )
        return observed

    def _reveal(self, request: ResourceRequest) -> ResourceRequest:
        return ResourceRequest(
            id=request.id,
            kind=request.kind,
            config=self._bindings.reveal(request.config, self._attributes),
        )

    def _check_cancelled(self) -> None:
        if self._shutdown_event.is_set():
            raise OperationCancelled()

    def _count_mutation(self) -> None:
        if self._result is not None:
            self._result.mutating_calls += 1

    async def _call(
        self,
        fn: Callable[[], T],
        descriptor_id: str,
        operation: str,
        outcome: DescriptorOutcome | None = None,
    ) -> T:
        """Run a blocking provider call with exponential backoff retry.

        Transient errors are retried up to retry_max_attempts; permanent
        errors propagate immediately. Backoff waits end early on cancellation.
        """
        return await call_with_retry(
            fn,
            config=self._config,
            executor=self._executor,
            shutdown_event=self._shutdown_event,
            descriptor_id=descriptor_id,
            operation=operation,
            outcome=outcome,
        )

    async def plan_changes(self) -> list[PlannedChange]:
        """Compute what apply would do without any mutating call."""
        order = self.preflight()
        preview = AttributeTable()
        pending: dict[str, str] = {}
        changes: list[PlannedChange] = []

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="provisioner-plan") as executor:
            self._executor = executor
            try:
                for descriptor_id in order:
                    descriptor = self._plan.get(descriptor_id)
                    change = await self._plan_one(descriptor, preview, pending)
                    if change.action in (PlanAction.CREATE, PlanAction.UNKNOWN):
                        pending[descriptor_id] = change.action.value
                    changes.append(change)
            finally:
                self._executor = None

        return changes

    async def _plan_one(
        self,
        descriptor: ResourceDescriptor,
        preview: AttributeTable,
        pending: dict[str, str],
    ) -> PlannedChange:
        change = PlannedChange(
            descriptor_id=descriptor.id,
            kind=descriptor.kind,
            action=PlanAction.CREATE,
            protected=descriptor.protect,
        )

        waiting_on = [dep for dep in descriptor.depends_on if dep in pending]
        if waiting_on:
            if any(pending[dep] == PlanAction.UNKNOWN.value for dep in waiting_on):
                change.action = PlanAction.UNKNOWN
                change.note = f"depends on {waiting_on} whose state could not be read"
            else:
                change.note = f"depends on {waiting_on} which will be created"
            return change

        provider = self._registry.get(descriptor.kind)
        try:
            request = ResourceRequest(
                id=descriptor.id,
                kind=descriptor.kind,
                config=preview.resolve(descriptor.desired_config),
            )
            observed = await self._call(lambda: provider.fetch(request), descriptor.id, "fetch")
        except (ProviderError, UnresolvedReference) as e:
            change.action = PlanAction.UNKNOWN
            change.note = f"could not read current state: {e}"
            return change

        if observed is None:
            return change

        preview.record(descriptor.id, observed.attributes)
        if descriptor.kind == ResourceKind.SECRET_VERSION:
            pinned = observed
            try:
                stale = await self._call(
                    lambda: self._bindings.supplied_changed(request, pinned), descriptor.id, "access"
                )
            except ProviderError as e:
                change.action = PlanAction.UNKNOWN
                change.note = f"could not read pinned version: {e}"
                return change
            change.action = PlanAction.UPDATE if stale else PlanAction.NO_OP
            if stale:
                change.changed_paths = ["payload"]
                change.note = "supplied value differs from the pinned version"
            return change
        if descriptor.kind in BINDING_KINDS:
            change.action = PlanAction.NO_OP
            return change

        changed = provider.diff(strip_secrets(request.config), observed)
        change.action = PlanAction.UPDATE if changed else PlanAction.NO_OP
        change.changed_paths = changed
        destructive = provider.destructive_changes(changed)
        if destructive and descriptor.protect:
            change.note = f"destructive change to protected resource: {destructive}"
        return change

    def _log_result(self, result: ApplyResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "project": self._plan.project,
            "duration_seconds": result.duration_seconds,
            "mutating_calls": result.mutating_calls,
            "cancelled": result.cancelled,
            **{f"{o.value}_count": result.count(o) for o in Outcome},
        }

        if result.cancelled:
            extra["cancel_reason"] = result.cancel_reason
            logger.warning("Apply cancelled", extra=extra)
        elif result.failed:
            extra["failed"] = [o.descriptor_id for o in result.failed]
            extra["skipped"] = [o.descriptor_id for o in result.skipped]
            logger.error("Apply finished with failures", extra=extra)
        else:
            logger.info("Apply complete", extra=extra)


async def call_with_retry(
    fn: Callable[[], T],
    *,
    config: Config,
    executor: ThreadPoolExecutor | None,
    shutdown_event: asyncio.Event,
    descriptor_id: str,
    operation: str,
    outcome: Any = None,
) -> T:
    """Run a blocking call in executor with exponential backoff and jitter.

    Shared by the reconciler and the cleanup engine.

    Raises:
        TransientProviderError: When attempts are exhausted.
        OperationCancelled: When shutdown is requested during a backoff wait.
        PermanentProviderError: Immediately, without retry.
    """
    loop = asyncio.get_running_loop()
    last_error: TransientProviderError | None = None

    for attempt in range(1, config.retry_max_attempts + 1):
        if outcome is not None:
            outcome.attempts += 1
        try:
            return await loop.run_in_executor(executor, fn)
        except PermanentProviderError:
            raise
        except TransientProviderError as e:
            last_error = e
            if attempt >= config.retry_max_attempts:
                break

            # Exponential backoff with jitter
            backoff = min(
                config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                config.retry_backoff_max_seconds,
            )
            wait_time = backoff + random.uniform(0, backoff * 0.2)
            logger.warning(
                "Transient provider error, retrying",
                extra={
                    "descriptor": descriptor_id,
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": config.retry_max_attempts,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(e),
                },
            )
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait_time)
            except TimeoutError:
                continue
            raise OperationCancelled(
                f"Cancelled while retrying {operation} of '{descriptor_id}': {e}"
            ) from e

    # SAFETY: loop runs at least once (retry_max_attempts >= 1) and only breaks
    # after recording a transient error
    assert last_error is not None
    raise TransientProviderError(
        f"{operation} of '{descriptor_id}' failed after "
        f"{config.retry_max_attempts} attempts: {last_error}"
    ) from last_error
