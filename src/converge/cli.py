"""converge CLI.

Usage:
    converge plan                     # Validate, resolve, diff and print actions
    converge apply                    # Plan, then reconcile against the provider
    converge state list               # List resources recorded in state
    converge state show ADDRESS       # Show one recorded resource

Exit codes: 0 on success; 1 on validation, cycle, fetch, policy, state or
configuration errors, and when any resource failed or was cancelled.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .dependency import CycleError
from .diff import AttributeChange
from .external import FetchError
from .graph import SchemaError
from .guardrails import GuardrailViolation
from .ignore_rules import IgnoreRulesError
from .main import run_apply, run_plan, setup_logging
from .plan import ExecutionPlan, PlanConsumedError, PlanStep
from .reconciler import ApplyResult
from .references import ResourceAddress
from .state import StateError, StateStore

CLI_VERSION = "0.1.0"

# Errors that abort a cycle before or around the provider calls
CYCLE_ERRORS = (
    SchemaError,
    CycleError,
    FetchError,
    StateError,
    ConfigurationError,
    GuardrailViolation,
    IgnoreRulesError,
    PlanConsumedError,
)

_SYMBOLS = {
    "create": ("+", "green"),
    "update": ("~", "yellow"),
    "replace": ("-/+", "magenta"),
    "destroy": ("-", "red"),
    "noop": (" ", None),
}


def _load_config(
    declarations: Path | None,
    state: Path | None,
    provider: str | None,
    max_workers: int | None,
) -> Config:
    """Environment configuration with CLI overrides applied."""
    overrides: dict[str, Any] = {}
    if declarations is not None:
        overrides["declarations_path"] = declarations
    if state is not None:
        overrides["state_path"] = state
    if provider is not None:
        overrides["provider"] = provider
    if max_workers is not None:
        overrides["max_workers"] = max_workers

    try:
        return dataclasses.replace(Config.from_env(), **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, default=str)


def _echo_change(change: AttributeChange) -> None:
    rendered = change.to_dict()
    suffix = " (forces replacement)" if change.forces_replacement else ""
    if change.kind == "add":
        line = f"      + {change.path}: {_format_value(rendered['after'])}"
    elif change.kind == "remove":
        line = f"      - {change.path}: {_format_value(rendered['before'])}"
    else:
        line = (
            f"      ~ {change.path}: {_format_value(rendered['before'])}"
            f" -> {_format_value(rendered['after'])}"
        )
    click.echo(line + suffix)


def _echo_step(step: PlanStep, verbose: bool) -> None:
    symbol, color = _SYMBOLS[step.label]
    header = f"  {symbol} {step.address}"
    if step.is_orphan:
        header += " (no longer declared)"
    click.secho(header, fg=color)
    if step.violation:
        click.secho(f"      ! {step.violation}", fg="red", bold=True)
    if verbose or step.label in ("update", "replace"):
        for change in step.changes:
            _echo_change(change)


def _echo_plan(plan: ExecutionPlan, verbose: bool) -> None:
    counts = plan.counts()
    for step in plan.steps:
        if step.mutates or verbose:
            _echo_step(step, verbose)
    click.echo(
        f"\nPlan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['destroy']} to destroy, "
        f"{counts['noop']} unchanged."
    )


def _echo_result(result: ApplyResult) -> None:
    counts = result.counts()
    for failure in result.failures:
        click.secho(
            f"  ✗ {failure.address} [{failure.phase}] {failure.message}", fg="red", err=True
        )
    for address, reason in sorted(result.cancelled.items()):
        click.secho(f"  ⊘ {address} cancelled: {reason}", fg="yellow", err=True)

    message = (
        f"Apply: {counts['create']} created, {counts['update']} updated, "
        f"{counts['replace']} replaced, {counts['destroy']} destroyed, "
        f"{counts['noop']} unchanged, {counts['failed']} failed, "
        f"{counts['cancelled']} cancelled."
    )
    if result.success:
        click.secho(f"✓ {message}", fg="green")
    else:
        click.secho(f"✗ {message}", fg="red")


def _config_options(func: Any) -> Any:
    func = click.option(
        "--max-workers", type=int, default=None, help="Concurrent provider calls"
    )(func)
    func = click.option(
        "--provider", "provider", default=None, help='Provider "module:attribute" or "null"'
    )(func)
    func = click.option(
        "--state",
        "state_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="JSON state file",
    )(func)
    func = click.option(
        "--declarations",
        "-d",
        type=click.Path(exists=True, path_type=Path),
        default=None,
        help="Declaration file or directory",
    )(func)
    return func


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="converge")
@click.option("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Log format (default: LOG_FORMAT or json)",
)
def cli(log_level: str | None, log_format: str | None) -> None:
    """converge - declarative resource reconciler.

    Builds a resource graph from YAML declarations, orders it by its
    references and converges remote state through a provider.
    """
    setup_logging(log_level, log_format)


@cli.command()
@_config_options
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Show unchanged resources and all attributes")
def plan(
    declarations: Path | None,
    state_path: Path | None,
    provider: str | None,
    max_workers: int | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Show what apply would change."""
    config = _load_config(declarations, state_path, provider, max_workers)

    try:
        execution_plan = asyncio.run(run_plan(config))
    except CYCLE_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(execution_plan.to_dict(), indent=2, default=str))
    else:
        _echo_plan(execution_plan, verbose)

    if execution_plan.violations:
        raise click.ClickException(
            f"{len(execution_plan.violations)} step(s) violate destroy protection"
        )


@cli.command()
@_config_options
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def apply(
    declarations: Path | None,
    state_path: Path | None,
    provider: str | None,
    max_workers: int | None,
    as_json: bool,
) -> None:
    """Plan and reconcile remote state with the declarations."""
    config = _load_config(declarations, state_path, provider, max_workers)

    def show_plan(execution_plan: ExecutionPlan) -> None:
        if not as_json:
            _echo_plan(execution_plan, verbose=False)

    try:
        _, result = asyncio.run(run_apply(config, on_plan=show_plan))
    except CYCLE_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _echo_result(result)

    if not result.success:
        click.get_current_context().exit(1)


@cli.group()
def state() -> None:
    """Inspect recorded state."""
    pass


def _open_store(state_path: Path | None) -> StateStore:
    config = _load_config(None, state_path, None, None)
    try:
        return StateStore.load(config.state_path)
    except StateError as e:
        raise click.ClickException(str(e)) from e


@state.command("list")
@click.option(
    "--state", "state_path", type=click.Path(dir_okay=False, path_type=Path), default=None
)
def state_list(state_path: Path | None) -> None:
    """List recorded resources."""
    store = _open_store(state_path)
    for entry in store:
        flag = " [protected]" if entry.prevent_destroy else ""
        click.echo(f"{entry.address}{flag}")


@state.command("show")
@click.argument("address")
@click.option(
    "--state", "state_path", type=click.Path(dir_okay=False, path_type=Path), default=None
)
def state_show(address: str, state_path: Path | None) -> None:
    """Show one recorded resource as JSON."""
    try:
        resource_address = ResourceAddress.parse(address)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="ADDRESS") from e

    store = _open_store(state_path)
    entry = store.get(resource_address)
    if entry is None:
        raise click.ClickException(f"{address} is not recorded in state")
    click.echo(json.dumps(entry.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    cli()
