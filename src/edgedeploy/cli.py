"""Main CLI entry point for edgedeploy."""

import json
import sys
from typing import Any

import click
import yaml
from rich.console import Console

from edgedeploy import __version__
from edgedeploy.config import load_config
from edgedeploy.core.context import EdgeDeployContext, pass_context
from edgedeploy.core.exceptions import ConfigError, EdgeDeployError
from edgedeploy.core.output import OutputFormat, format_status
from edgedeploy.state.models import DeploymentScope

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}

EXIT_NOT_SUCCESSFUL = 2


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"edgedeploy version {__version__}")
    ctx.exit()


def _load_vars(path: str | None, pairs: tuple[str, ...]) -> dict[str, Any]:
    """Deployment config from a YAML/JSON file plus KEY=VALUE overrides."""
    data: dict[str, Any] = {}
    if path:
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Deployment config {path} must contain a mapping")
        data.update(loaded)

    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--var")
        data[key] = value
    return data


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="EDGEDEPLOY_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """EdgeDeploy - crash-safe deployments for serverless edge services.

    \b
    Examples:
        edgedeploy run rel-42 --scope portfolio -t api.example.com -t www.example.com
        edgedeploy status rel-42
        edgedeploy recover rel-42

    \b
    Configuration:
        ~/.edgedeploy/config.yaml    User configuration
        EDGEDEPLOY_*                 Environment variables
    """
    if isinstance(ctx.obj, EdgeDeployContext):
        return

    try:
        config = load_config(config_file)
        ctx.obj = EdgeDeployContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            color=not no_color,
        )
    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.argument("deployment_id")
@click.option(
    "-s",
    "--scope",
    type=click.Choice([s.value for s in DeploymentScope]),
    default=DeploymentScope.SINGLE.value,
    show_default=True,
    help="Deployment scope",
)
@click.option("-t", "--target", "targets", multiple=True, help="Target to deploy (repeatable)")
@click.option("--vars-file", type=click.Path(exists=True), help="YAML/JSON deployment config")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Deployment config value")
@pass_context
def run(
    ctx: EdgeDeployContext,
    deployment_id: str,
    scope: str,
    targets: tuple[str, ...],
    vars_file: str | None,
    var_pairs: tuple[str, ...],
) -> None:
    """Start or resume a deployment and wait for it to finish."""
    config = _load_vars(vars_file, var_pairs)
    ctx.output.print_info(f"Deploying {deployment_id} ({scope})")

    result = ctx.service.execute(deployment_id, scope=scope, targets=list(targets) or None, config=config)

    if ctx.output_format == OutputFormat.TABLE:
        ctx.output.print_data(
            [t.to_dict() for t in result.targets],
            headers=["target", "status", "failed_phase", "error"],
            title=f"{deployment_id}: {format_status(result.status)}",
        )
    else:
        ctx.output.print_data(result.to_dict())

    if result.succeeded:
        ctx.output.print_success(f"Deployment {deployment_id} succeeded")
    else:
        ctx.output.print_error(f"Deployment {deployment_id} ended {result.status.value}")
        if result.failed_rollback_actions:
            ctx.output.print_warning(
                "Compensations that failed: " + ", ".join(result.failed_rollback_actions)
            )
        sys.exit(EXIT_NOT_SUCCESSFUL)


@cli.command()
@click.argument("deployment_id")
@pass_context
def status(ctx: EdgeDeployContext, deployment_id: str) -> None:
    """Show a deployment's phase and per-target status."""
    data = ctx.service.status(deployment_id)

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(data)
        return

    summary = {k: v for k, v in data.items() if k != "targets"}
    summary["completed_phases"] = ", ".join(summary["completed_phases"]) or "-"
    ctx.output.print_data(summary, title=f"Deployment {deployment_id}")
    ctx.output.print_data(
        [{**t, "completed_phases": ", ".join(t["completed_phases"])} for t in data["targets"]],
        headers=["target", "status", "completed_phases", "failed_phase", "error"],
        title="Targets",
    )


@cli.command()
@click.argument("deployment_id")
@pass_context
def history(ctx: EdgeDeployContext, deployment_id: str) -> None:
    """Show a deployment's recovery history."""
    records = [r.to_dict() for r in ctx.service.history(deployment_id)]
    if not records:
        ctx.output.print_info(f"No recoveries recorded for {deployment_id}")
        return
    ctx.output.print_data(
        records,
        headers=["recovery_id", "timestamp", "from_phase", "detected_issue", "action_taken"],
        title=f"Recovery history: {deployment_id}",
    )


@cli.command()
@click.argument("deployment_id")
@pass_context
def cancel(ctx: EdgeDeployContext, deployment_id: str) -> None:
    """Request cancellation of a deployment."""
    if ctx.service.cancel(deployment_id):
        ctx.output.print_success(f"Cancellation requested for {deployment_id}")
    else:
        ctx.output.print_warning(f"Deployment {deployment_id} already finished")


@cli.command()
@click.argument("deployment_id")
@click.option("--no-resume", is_flag=True, help="Only repair and record, do not resume")
@pass_context
def recover(ctx: EdgeDeployContext, deployment_id: str, no_resume: bool) -> None:
    """Recover an interrupted or corrupt deployment."""
    diagnosis = ctx.service.diagnose(deployment_id)
    ctx.output.print_info(f"{deployment_id}: {diagnosis.kind.value} ({diagnosis.reason})")

    record, result = ctx.service.recover(deployment_id, resume=not no_resume)
    ctx.output.print_success(f"{record.recovery_id}: {record.action_taken}")

    if result is not None:
        ctx.output.print_data(result.to_dict() if ctx.output_format != OutputFormat.TABLE else {
            "deployment_id": result.deployment_id,
            "status": result.status.value,
            "completed_phases": ", ".join(result.completed_phases),
            "recoveries": result.recoveries,
        })
        if not result.succeeded:
            sys.exit(EXIT_NOT_SUCCESSFUL)


@cli.command(name="list")
@click.option("--archive", "archive_days", type=int, help="Archive successful deployments older than DAYS first")
@pass_context
def list_deployments(ctx: EdgeDeployContext, archive_days: int | None) -> None:
    """List stored deployments."""
    if archive_days is not None:
        archived = ctx.service.archive(archive_days)
        ctx.output.print_info(f"Archived {len(archived)} deployment(s)")

    deployments = ctx.service.list_deployments()
    if not deployments:
        ctx.output.print_info("No deployments found")
        return
    ctx.output.print_data(
        deployments,
        headers=["deployment_id", "scope", "status", "phase", "targets", "updated_at"],
        title="Deployments",
    )


@cli.command(name="config")
@pass_context
def show_config(ctx: EdgeDeployContext) -> None:
    """Show current configuration."""
    data = json.loads(ctx.config.model_dump_json(by_alias=True))
    ctx.output.print_data(data if ctx.output_format != OutputFormat.TABLE else {
        "state_backend": ctx.config.state.backend,
        "state_dir": str(ctx.config.state.get_state_dir()),
        "retry_max_attempts": ctx.config.retry.max_attempts,
        "lock_wait_timeout": ctx.config.lock.wait_timeout,
        "max_parallel": ctx.config.execution.max_parallel,
        "capabilities": ", ".join(sorted(ctx.config.capabilities)) or "-",
    }, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except EdgeDeployError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
