# cli.py
import json
import logging
import threading

import click

from infra_reconciler.control_plane import create_control_plane
from infra_reconciler.exceptions import (
    CycleError,
    RemoteRejection,
    TransientRemoteError,
    ValidationError,
)
from infra_reconciler.executor import Executor, OperationStatus
from infra_reconciler.loader import load_document
from infra_reconciler.reconciler import StateReconciler
from infra_reconciler.settings import DEPLOYMENT_MODES, FAILURE_POLICIES, Settings, get_settings
from infra_reconciler.state import ObservedState

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

STATUS_SYMBOLS = {
    OperationStatus.SUCCEEDED: "✅",
    OperationStatus.UNCHANGED: "=",
    OperationStatus.FAILED: "❌",
    OperationStatus.SKIPPED: "⏭",
    OperationStatus.CANCELLED: "⏹",
}

file_option = click.option(
    "--file", "-f", "spec_file",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Desired-state document (YAML or JSON)",
)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _reconciler(settings: Settings, executor_options=None) -> StateReconciler:
    control_plane = create_control_plane(settings)
    observed = ObservedState(settings.state_file)
    observed.load()
    executor = Executor(control_plane, observed, settings=settings, **(executor_options or {}))
    return StateReconciler(control_plane, observed, settings=settings, executor=executor)


@click.group()
@click.option("--mode",
              type=click.Choice(DEPLOYMENT_MODES),
              default=None,
              help="Override the deployment mode (control plane)")
@click.option("--log-level", default=None, help="Logging level")
@click.pass_context
def cli(ctx, mode, log_level):
    """Plan and apply declarative container deployments"""
    settings = Settings(deployment_mode=mode) if mode else get_settings()
    _configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.pass_obj
def show_config(settings):
    """Show current configuration"""
    click.echo("Current Configuration:")
    for key, value in settings.as_dict().items():
        click.echo(f"  {key}: {value}")


@cli.command()
@file_option
@click.option("--output", type=click.Choice(["text", "json"]), default="text",
              help="Plan output format")
@click.pass_context
def plan(ctx, spec_file, output):
    """Build and print the plan; exit 2 on validation or cycle errors"""
    settings = ctx.obj
    try:
        desired = load_document(spec_file)
        operation_plan = _reconciler(settings).plan(desired)
    except (ValidationError, CycleError) as e:
        click.echo(f"❌ Invalid desired state: {e}", err=True)
        ctx.exit(EXIT_INVALID)
    except (RemoteRejection, TransientRemoteError) as e:
        click.echo(f"❌ Could not read remote state: {e}", err=True)
        ctx.exit(EXIT_FAILED)

    if output == "json":
        click.echo(json.dumps(operation_plan.to_dict(), indent=2, default=str))
    else:
        for op in operation_plan:
            click.echo(op.describe())
        summary = operation_plan.summary()
        click.echo(f"Plan: {summary['Create']} to create, {summary['Update']} to update, "
                   f"{summary['NoOp']} unchanged")
    ctx.exit(EXIT_OK)


@cli.command()
@file_option
@click.pass_context
def diff(ctx, spec_file):
    """Print pending operations only"""
    settings = ctx.obj
    try:
        desired = load_document(spec_file)
        pending = _reconciler(settings).detect_drift(desired)
    except (ValidationError, CycleError, RemoteRejection, TransientRemoteError) as e:
        click.echo(f"⚠️ Could not compute diff: {e}", err=True)
        ctx.exit(EXIT_OK)

    if not pending:
        click.echo("No changes. Remote state matches the desired state.")
    for op in pending:
        click.echo(op.describe())
    ctx.exit(EXIT_OK)


@cli.command()
@file_option
@click.option("--max-workers", type=int, default=None,
              help="Worker pool size for independent operations")
@click.option("--failure-policy", type=click.Choice(FAILURE_POLICIES), default=None,
              help="halt: stop after the first failure; continue: keep running independent branches")
@click.pass_context
def apply(ctx, spec_file, max_workers, failure_policy):
    """Apply the desired state; exit 1 if any operation fails"""
    settings = ctx.obj
    options = {"max_workers": max_workers, "failure_policy": failure_policy}
    try:
        desired = load_document(spec_file)
        result = _reconciler(settings, executor_options=options).reconcile(desired)
    except (ValidationError, CycleError) as e:
        click.echo(f"❌ Invalid desired state: {e}", err=True)
        ctx.exit(EXIT_INVALID)
    except (RemoteRejection, TransientRemoteError) as e:
        click.echo(f"❌ Could not read remote state: {e}", err=True)
        ctx.exit(EXIT_FAILED)

    if result.report is None:
        click.echo("No changes. Remote state matches the desired state.")
        ctx.exit(EXIT_OK)

    for item in result.report.results:
        line = f"{STATUS_SYMBOLS[item.status]} {item.status.value:<9} {item.operation.describe()}"
        if item.error is not None:
            line = f"{line}: {item.error.message}"
        elif item.reason:
            line = f"{line} [{item.reason}]"
        click.echo(line)

    if not result.ok:
        click.echo(f"❌ Apply failed: {len(result.report.failures)} operation(s) failed", err=True)
        ctx.exit(EXIT_FAILED)
    click.echo("✅ Apply completed successfully")
    ctx.exit(EXIT_OK)


@cli.command()
@file_option
@click.option("--interval", type=float, default=None,
              help="Seconds between passes (defaults to RECONCILE_INTERVAL)")
@click.option("--iterations", type=int, default=None,
              help="Stop after this many passes")
@click.pass_context
def reconcile(ctx, spec_file, interval, iterations):
    """Periodically re-apply the desired state to correct drift"""
    settings = ctx.obj
    reconciler = _reconciler(settings)
    stop_event = threading.Event()
    try:
        results = reconciler.run(
            lambda: load_document(spec_file),
            interval=interval,
            stop_event=stop_event,
            max_iterations=iterations,
        )
    except KeyboardInterrupt:
        stop_event.set()
        click.echo("Reconciler interrupted")
        ctx.exit(EXIT_OK)

    errors = [r.error for r in results if r.error is not None]
    for number, result in enumerate(results, start=1):
        if result.error is not None:
            click.echo(f"❌ Pass {number} failed: {result.error}", err=True)

    drifted = sum(len(r.drifted) for r in results)
    click.echo(f"Completed {len(results)} pass(es), corrected {drifted} drifted resource(s)")
    if errors and all(isinstance(e, (ValidationError, CycleError)) for e in errors):
        ctx.exit(EXIT_INVALID)
    ctx.exit(EXIT_OK if all(r.ok for r in results) else EXIT_FAILED)


if __name__ == "__main__":
    cli()
