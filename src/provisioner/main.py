"""Runtime wiring for the n8n provisioner.

KEYLESS ARCHITECTURE:
All Google API calls authenticate with Application Default Credentials;
long-lived service account keys are rejected at startup (see security.py).

This module owns:
- Logging setup (JSON for CI and containers, text for terminals)
- Building the provider registry for a deployment
- Running apply / destroy / plan with SIGINT/SIGTERM wired to cancellation
- A non-interactive entry point (`python -m provisioner.main`) that applies
  the deployment named by DEPLOYMENT_FILE
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from google.auth.exceptions import DefaultCredentialsError

from .binding import PolicyViolation, SecretBindingEngine
from .blueprint import build_plan
from .cleanup import CleanupEngine, DestroyResult
from .config import Config, ConfigError, LogFormat
from .dependency import CyclicDependencyError
from .descriptors import DeploymentPlan
from .gcp import GcpClient, build_registry
from .models import DeploymentSpec
from .provider import ProviderRegistry
from .reconciler import EXIT_VALIDATION_ERROR, ApplyResult, PlannedChange, Reconciler
from .security import KeylessViolationError, get_credentials
from .spec_loader import SpecLoadError, load_spec

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors raised before any mutation: the run aborts with exit code 1
PREFLIGHT_ERRORS = (
    ConfigError,
    CyclicDependencyError,
    PolicyViolation,
    SpecLoadError,
    KeylessViolationError,
    DefaultCredentialsError,
)

_RESERVED_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: LogFormat = LogFormat.JSON, level: str = "INFO") -> None:
    """Configure logging on stderr, keeping stdout for command output."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
    handler.set_name("provisioner")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "provisioner":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from the Google client libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_provider_registry(spec: DeploymentSpec, config: Config) -> ProviderRegistry:
    """Google Cloud providers for the deployment's project, using keyless credentials."""
    credentials, _ = get_credentials()
    client = GcpClient(credentials, spec.project_id, spec.region, config)
    return build_registry(client)


async def _with_signal_handlers(shutdown: Callable[[str], None], work: Awaitable[T]) -> T:
    """Await work with SIGINT/SIGTERM requesting a graceful shutdown."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown(f"received {sig.name}")

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            pass

    try:
        return await work
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def apply_plan(
    plan: DeploymentPlan,
    registry: ProviderRegistry,
    config: Config,
    *,
    allow_destructive: bool = False,
    rollback_on_failure: bool = False,
) -> tuple[ApplyResult, DestroyResult | None]:
    """Apply a plan; optionally roll back what it created if it failed.

    Raises:
        ConfigError, CyclicDependencyError, PolicyViolation: Pre-flight failures.
    """
    reconciler = Reconciler(plan, registry, config, SecretBindingEngine(plan, registry))
    result = await _with_signal_handlers(
        reconciler.shutdown, reconciler.apply(allow_destructive=allow_destructive)
    )

    rollback: DestroyResult | None = None
    if rollback_on_failure and result.failed and result.created:
        cleanup = CleanupEngine(plan, registry, config)
        rollback = await _with_signal_handlers(cleanup.shutdown, cleanup.rollback(result))
    return result, rollback


async def destroy_plan(
    plan: DeploymentPlan,
    registry: ProviderRegistry,
    config: Config,
    *,
    allow_destructive: bool = False,
) -> DestroyResult:
    cleanup = CleanupEngine(plan, registry, config)
    return await _with_signal_handlers(
        cleanup.shutdown, cleanup.destroy(allow_destructive=allow_destructive)
    )


async def preview_plan(
    plan: DeploymentPlan,
    registry: ProviderRegistry,
    config: Config,
) -> list[PlannedChange]:
    reconciler = Reconciler(plan, registry, config)
    return await reconciler.plan_changes()


async def main() -> int:
    """Apply the deployment named by DEPLOYMENT_FILE, non-interactively.

    Returns:
        Exit code (0 success, 1 validation error, 2 partial failure, 3 cancelled).
    """
    try:
        config = Config.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_VALIDATION_ERROR

    setup_logging(config.log_format, config.log_level)

    try:
        spec = load_spec(config.deployment_file)
        plan = build_plan(spec)
        registry = build_provider_registry(spec, config)
        logger.info(
            "Starting n8n provisioner",
            extra={"project": spec.project_id, "region": spec.region, "descriptors": len(plan.ids)},
        )
        result, _ = await apply_plan(plan, registry, config)
    except KeylessViolationError as e:
        logger.critical("Security violation: service account key configured", extra={"error": str(e)})
        return EXIT_VALIDATION_ERROR
    except PREFLIGHT_ERRORS as e:
        logger.error(
            "Pre-flight validation failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_VALIDATION_ERROR

    return result.exit_code


def run() -> None:
    """Entry point for container use."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
