"""n8n provisioner CLI.

Usage:
    n8n-provisioner validate                        # Pre-flight checks only
    n8n-provisioner plan                            # Show what apply would change
    n8n-provisioner apply                           # Create or update everything
    n8n-provisioner apply --rollback-on-failure     # Undo this run's creates on failure
    n8n-provisioner destroy                         # Tear down (protected resources kept)
    n8n-provisioner destroy --allow-destructive-override --yes

Exit codes:
    0  success
    1  validation error (nothing was changed)
    2  partial failure (some descriptors Failed)
    3  cancelled
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any

import click

from .blueprint import build_plan
from .cleanup import DestroyResult
from .config import Config, ConfigError, LogFormat
from .dependency import DependencyGraph
from .descriptors import DeploymentPlan
from .main import (
    PREFLIGHT_ERRORS,
    apply_plan,
    build_provider_registry,
    destroy_plan,
    preview_plan,
    setup_logging,
)
from .models import DeploymentSpec
from .reconciler import EXIT_VALIDATION_ERROR, ApplyResult, Outcome, PlanAction
from .spec_loader import load_spec

OUTPUT_FORMATS = ("text", "json")

OUTCOME_COLORS: dict[str, str] = {
    Outcome.CREATED.value: "green",
    Outcome.UPDATED.value: "yellow",
    Outcome.UNCHANGED.value: "white",
    Outcome.FAILED.value: "red",
    Outcome.SKIPPED.value: "magenta",
    Outcome.CANCELLED.value: "magenta",
    "destroyed": "green",
    "already_absent": "white",
    "protected": "cyan",
    "retained": "cyan",
}

ACTION_SYMBOLS: dict[PlanAction, str] = {
    PlanAction.CREATE: "+",
    PlanAction.UPDATE: "~",
    PlanAction.NO_OP: " ",
    PlanAction.UNKNOWN: "?",
}


def _load(config: Config) -> tuple[DeploymentSpec, DeploymentPlan]:
    """Load the deployment file and build its plan.

    Raises:
        click.ClickException: On any validation error (exit code 1).
    """
    try:
        spec = load_spec(config.deployment_file)
        plan = build_plan(spec)
        DependencyGraph.from_descriptors(plan.descriptors).validate()
    except PREFLIGHT_ERRORS as e:
        raise click.ClickException(str(e)) from e
    return spec, plan


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_apply(result: ApplyResult) -> None:
    for outcome in result.ordered():
        line = f"  {outcome.outcome.value:<10} {outcome.descriptor_id} ({outcome.kind.value})"
        click.secho(line, fg=OUTCOME_COLORS.get(outcome.outcome.value))
        if outcome.changed_paths:
            click.echo(f"             changed: {', '.join(outcome.changed_paths)}")
        if outcome.error:
            click.echo(f"             error: {outcome.error}")
        if outcome.skipped_because:
            click.echo(f"             blocked by: {outcome.skipped_because}")
        if outcome.skipped_dependents:
            click.echo(f"             skipped dependents: {', '.join(outcome.skipped_dependents)}")

    counts = ", ".join(
        f"{result.count(o)} {o.value}" for o in Outcome if result.count(o)
    )
    click.echo(f"\nApply finished in {result.duration_seconds:.1f}s: {counts or 'nothing to do'}")
    if result.cancelled:
        click.secho(f"Cancelled: {result.cancel_reason}", fg="magenta")


def _echo_destroy(result: DestroyResult, title: str = "Destroy") -> None:
    for record in result.ordered():
        line = f"  {record.outcome.value:<15} {record.descriptor_id} ({record.kind.value})"
        click.secho(line, fg=OUTCOME_COLORS.get(record.outcome.value))
        if record.error:
            click.echo(f"                  error: {record.error}")
        if record.retained_for:
            click.echo(f"                  kept for: {record.retained_for}")
    if result.protected:
        click.echo(
            f"\nProtected resources kept: {', '.join(result.protected)} "
            "(use --allow-destructive-override to delete them)"
        )
    click.echo(f"\n{title} finished: {result.delete_calls} delete call(s)")


def _confirm_protected(plan: DeploymentPlan, action: str, yes: bool) -> None:
    protected = [d.id for d in plan.descriptors if d.protect]
    if not protected or yes:
        return
    click.confirm(
        f"--allow-destructive-override will allow {action} of protected resources: "
        f"{', '.join(protected)}. Continue?",
        abort=True,
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="n8n-provisioner")
@click.option(
    "--file",
    "-f",
    "deployment_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Deployment YAML (default: $DEPLOYMENT_FILE or deployment.yaml)",
)
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    default=None,
    help="Log format (default: $LOG_FORMAT or json)",
)
@click.option("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")
@click.option("--max-workers", type=int, default=None, help="Concurrent provider calls")
@click.pass_context
def cli(
    ctx: click.Context,
    deployment_file: Path | None,
    log_format: str | None,
    log_level: str | None,
    max_workers: int | None,
) -> None:
    """Provision a self-hosted n8n on Google Cloud Run.

    \b
    Creates, in dependency order: a runtime service account, a Cloud SQL
    PostgreSQL instance, database and user, Secret Manager secrets with pinned
    versions, least-privilege IAM bindings, a custom-nodes bucket and the
    Cloud Run service itself.
    """
    overrides: dict[str, Any] = {}
    if deployment_file is not None:
        overrides["deployment_file"] = deployment_file
    if log_format is not None:
        overrides["log_format"] = LogFormat(log_format)
    if log_level is not None:
        overrides["log_level"] = log_level.upper()
    if max_workers is not None:
        overrides["max_workers"] = max_workers

    try:
        config = dataclasses.replace(Config.from_env(), **overrides)
    except ConfigError as e:
        click.secho(str(e), fg="red", err=True)
        ctx.exit(EXIT_VALIDATION_ERROR)

    setup_logging(config.log_format, config.log_level)
    ctx.obj = config


@cli.command()
@click.pass_obj
def validate(config: Config) -> None:
    """Validate the deployment file and dependency graph; no remote calls."""
    _, plan = _load(config)
    order = DependencyGraph.from_descriptors(plan.descriptors).topological_sort()
    click.secho(f"✓ Deployment is valid: {len(order)} resources", fg="green")
    for index, descriptor_id in enumerate(order, start=1):
        descriptor = plan.get(descriptor_id)
        marker = " [protected]" if descriptor.protect else ""
        click.echo(f"  {index:>2}. {descriptor_id} ({descriptor.kind.value}){marker}")


@cli.command()
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text")
@click.pass_obj
def plan(config: Config, output: str) -> None:
    """Show what apply would change; read-only."""
    spec, deployment = _load(config)
    try:
        registry = build_provider_registry(spec, config)
        changes = asyncio.run(preview_plan(deployment, registry, config))
    except PREFLIGHT_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if output == "json":
        _echo_json([c.to_dict() for c in changes])
        return

    for change in changes:
        symbol = ACTION_SYMBOLS[change.action]
        click.echo(f"  {symbol} {change.descriptor_id} ({change.kind.value})")
        for path in change.changed_paths:
            click.echo(f"        ~ {path}")
        if change.note:
            click.echo(f"        {change.note}")

    pending = [c for c in changes if c.action != PlanAction.NO_OP]
    click.echo(f"\nPlan: {len(pending)} to change, {len(changes) - len(pending)} unchanged")


@cli.command()
@click.option(
    "--allow-destructive-override",
    is_flag=True,
    help="Allow destructive changes to protected resources",
)
@click.option(
    "--rollback-on-failure",
    is_flag=True,
    help="Destroy what this run created if any resource fails",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text")
@click.pass_context
def apply(
    ctx: click.Context,
    allow_destructive_override: bool,
    rollback_on_failure: bool,
    yes: bool,
    output: str,
) -> None:
    """Create or update every resource of the deployment."""
    config: Config = ctx.obj
    spec, deployment = _load(config)
    if allow_destructive_override:
        _confirm_protected(deployment, "replacement", yes)

    try:
        registry = build_provider_registry(spec, config)
        result, rollback = asyncio.run(
            apply_plan(
                deployment,
                registry,
                config,
                allow_destructive=allow_destructive_override,
                rollback_on_failure=rollback_on_failure,
            )
        )
    except PREFLIGHT_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if output == "json":
        summary = result.summary()
        if rollback is not None:
            summary["rollback"] = rollback.summary()
        _echo_json(summary)
    else:
        _echo_apply(result)
        if rollback is not None:
            click.echo("\nRollback:")
            _echo_destroy(rollback, "Rollback")

    ctx.exit(result.exit_code)


@cli.command()
@click.option(
    "--allow-destructive-override",
    is_flag=True,
    help="Also delete protected resources (the database instance)",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text")
@click.pass_context
def destroy(
    ctx: click.Context,
    allow_destructive_override: bool,
    yes: bool,
    output: str,
) -> None:
    """Delete the deployment's resources in reverse dependency order."""
    config: Config = ctx.obj
    spec, deployment = _load(config)
    if not yes:
        click.confirm(
            f"Destroy the n8n deployment in project {deployment.project}?", abort=True
        )
    if allow_destructive_override:
        _confirm_protected(deployment, "deletion", yes)

    try:
        registry = build_provider_registry(spec, config)
        result = asyncio.run(
            destroy_plan(
                deployment, registry, config, allow_destructive=allow_destructive_override
            )
        )
    except PREFLIGHT_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if output == "json":
        _echo_json(result.summary())
    else:
        _echo_destroy(result)

    ctx.exit(result.exit_code)


if __name__ == "__main__":
    cli()
