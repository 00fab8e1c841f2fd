"""
stackplan CLI entry point.
"""
import functools
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from stackplan import __version__
from stackplan.backends import BACKENDS, get_backend
from stackplan.checks import Finding, Severity
from stackplan.config import PlannerConfig, load_config
from stackplan.errors import (
    ApplyInterrupted,
    BackendRequestError,
    InvalidPlanError,
    PlaintextSecretError,
    StackplanError,
)
from stackplan.models.state import ApplyState
from stackplan.parsers import yaml_plan
from stackplan.planner import Planner
from stackplan.reporters import json_reporter, markdown
from stackplan.stacks import STACKS

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

_SEVERITY_COLORS = {
    "ERROR": "bold red",
    "WARNING": "yellow",
}


def _source_options(fn: Callable) -> Callable:
    """Options shared by every command that loads a plan."""
    options = [
        click.argument("plan_file", required=False, type=click.Path(dir_okay=False)),
        click.option(
            "--stack",
            type=click.Choice(sorted(STACKS), case_sensitive=False),
            default=None,
            help="Use a built-in stack instead of a plan file.",
        ),
        click.option(
            "--config", "config_path",
            type=click.Path(dir_okay=False),
            default=None,
            help="Configuration file (default: ./stackplan.yaml when present).",
        ),
        click.option(
            "--backend",
            type=click.Choice(BACKENDS, case_sensitive=False),
            default="aws",
            show_default=True,
            help="Where resources are provisioned.",
        ),
        click.option(
            "--state", "state_path",
            type=click.Path(dir_okay=False),
            default=None,
            help="State file for the memory backend.",
        ),
        click.option("--region", default=None, help="Cloud region (overrides config and environment)."),
        click.option(
            "--max-workers",
            type=click.IntRange(min=1),
            default=None,
            help="Maximum concurrent backend calls.",
        ),
        click.option(
            "--no-color",
            is_flag=True,
            default=False,
            help="Disable rich terminal color output.",
        ),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _report_options(fn: Callable) -> Callable:
    fn = click.option(
        "--output", "-o",
        type=click.Path(),
        default=None,
        help="Write report to this file (default: stdout).",
    )(fn)
    fn = click.option(
        "--format", "output_format",
        type=click.Choice(["markdown", "json"], case_sensitive=False),
        default="markdown",
        show_default=True,
        help="Report format.",
    )(fn)
    return fn


def _exits_on_errors(fn: Callable) -> Callable:
    """Map stackplan errors raised by a command to exit codes."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        stderr = Console(stderr=True, no_color=kwargs.get("no_color", False))
        try:
            fn(*args, **kwargs)
        except PlaintextSecretError as exc:
            stderr.print(f"[red]Invalid plan:[/red] {exc}")
            _print_findings(exc.findings, stderr)
            sys.exit(EXIT_INVALID)
        except InvalidPlanError as exc:
            stderr.print(f"[red]Invalid plan:[/red] {exc}")
            sys.exit(EXIT_INVALID)
        except ApplyInterrupted as exc:
            stderr.print(f"[yellow]Interrupted:[/yellow] {exc}")
            _print_state(exc.state, stderr)
            sys.exit(EXIT_FAILED)
        except BackendRequestError as exc:
            stderr.print(f"[red]Backend error:[/red] {exc}")
            if exc.state is not None:
                _print_state(exc.state, stderr)
            sys.exit(EXIT_FAILED)
        except StackplanError as exc:
            stderr.print(f"[red]Error:[/red] {exc}")
            sys.exit(EXIT_FAILED)

    return wrapper


def _load_planner(
    plan_file: Optional[str],
    stack: Optional[str],
    config: PlannerConfig,
    backend_name: str,
    state_path: Optional[str],
    stderr: Console,
) -> Tuple[Planner, str]:
    if bool(plan_file) == bool(stack):
        stderr.print("[red]Give either a PLAN_FILE or --stack, not both.[/red]")
        sys.exit(EXIT_INVALID)

    try:
        backend = get_backend(backend_name.lower(), config, state_path=state_path)
    except Exception as exc:
        stderr.print(f"[red]Backend setup failed:[/red] {exc}")
        sys.exit(EXIT_INVALID)

    def factory(name: str) -> Planner:
        return Planner(name, backend, config=config, console=stderr)

    if stack:
        stack = stack.lower()
        return STACKS[stack](factory(stack), config), f"stack:{stack}"

    with stderr.status(f"[bold]Parsing {plan_file}…"):
        planner = yaml_plan.load(plan_file, factory)
    return planner, plan_file


def _config(config_path: Optional[str], region: Optional[str], max_workers: Optional[int]) -> PlannerConfig:
    return load_config(config_path, region=region, max_workers=max_workers)


def _print_findings(findings: List[Finding], stderr: Console) -> None:
    tbl = Table(title="Plan Checks", show_header=True, header_style="bold")
    tbl.add_column("Severity", width=9)
    tbl.add_column("Rule", width=26)
    tbl.add_column("Resource", width=20)
    tbl.add_column("Message")
    for f in findings:
        color = _SEVERITY_COLORS.get(f.severity.value, "")
        tbl.add_row(
            f"[{color}]{f.severity.value}[/{color}]" if color else f.severity.value,
            f.rule,
            f.resource_name,
            f.message,
        )
    stderr.print(tbl)


def _print_state(state: ApplyState, stderr: Console) -> None:
    if state.completed:
        stderr.print("Completed: " + ", ".join(state.completed))
    if state.failed:
        stderr.print(f"Failed: [red]{state.failed}[/red]")
    if state.pending:
        label = "Remaining" if state.operation == "destroy" else "Not started"
        stderr.print(f"{label}: " + ", ".join(state.pending))


def _print_outputs(outputs: Dict[str, Any], stderr: Console) -> None:
    tbl = Table(title="Outputs", show_header=True, header_style="bold")
    tbl.add_column("Output")
    tbl.add_column("Value")
    for name, value in outputs.items():
        tbl.add_row(name, str(value))
    stderr.print(tbl)


def _emit_report(
    planner: Planner,
    source: str,
    order: List[str],
    outputs: Optional[Dict[str, Any]],
    output_format: str,
    output: Optional[str],
    stderr: Console,
) -> None:
    if output_format.lower() == "json":
        content = json_reporter.build_report(planner, source, order, outputs)
    else:
        content = markdown.build_report(planner, source, order, outputs)

    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """stackplan: declare, order and provision cloud resource graphs."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_source_options
@_report_options
@_exits_on_errors
def plan(
    plan_file: Optional[str],
    stack: Optional[str],
    config_path: Optional[str],
    backend: str,
    state_path: Optional[str],
    region: Optional[str],
    max_workers: Optional[int],
    no_color: bool,
    output_format: str,
    output: Optional[str],
) -> None:
    """
    Validate a plan and print its apply order. No backend calls are made.
    """
    stderr = Console(stderr=True, no_color=no_color)
    config = _config(config_path, region, max_workers)
    planner, source = _load_planner(plan_file, stack, config, backend, state_path, stderr)

    with stderr.status("[bold]Validating…"):
        order = planner.plan()

    stderr.print(
        f"Plan [bold]{planner.name}[/bold]: {len(order)} resources, "
        f"{len(planner.lookups)} lookups."
    )
    _emit_report(planner, source, order, None, output_format, output, stderr)
    sys.exit(EXIT_OK)


@cli.command()
@_source_options
@_report_options
@_exits_on_errors
def apply(
    plan_file: Optional[str],
    stack: Optional[str],
    config_path: Optional[str],
    backend: str,
    state_path: Optional[str],
    region: Optional[str],
    max_workers: Optional[int],
    no_color: bool,
    output_format: str,
    output: Optional[str],
) -> None:
    """
    Create or update every resource of a plan and print its outputs.

    Resources already created are kept when a later step fails; re-running
    apply resumes from where it stopped.
    """
    stderr = Console(stderr=True, no_color=no_color)
    config = _config(config_path, region, max_workers)
    planner, source = _load_planner(plan_file, stack, config, backend, state_path, stderr)

    with stderr.status(f"[bold]Applying {len(planner.resources)} resources…"):
        outputs = planner.apply()
    order = planner.graph.order(r.name for r in planner.resources)

    counts = planner.state.counts()
    stderr.print(
        "Apply complete: "
        + "  ".join(f"{action}: {n}" for action, n in counts.items() if n)
    )
    if outputs:
        _print_outputs(outputs, stderr)
    _emit_report(planner, source, order, outputs, output_format, output, stderr)
    sys.exit(EXIT_OK)


@cli.command()
@_source_options
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
@_exits_on_errors
def destroy(
    plan_file: Optional[str],
    stack: Optional[str],
    config_path: Optional[str],
    backend: str,
    state_path: Optional[str],
    region: Optional[str],
    max_workers: Optional[int],
    no_color: bool,
    yes: bool,
) -> None:
    """
    Delete every resource of a plan in reverse dependency order.
    """
    stderr = Console(stderr=True, no_color=no_color)
    config = _config(config_path, region, max_workers)
    planner, _ = _load_planner(plan_file, stack, config, backend, state_path, stderr)

    if not yes and not click.confirm(
        f"Destroy all resources of plan '{planner.name}'?", default=False, err=True
    ):
        stderr.print("[yellow]Destroy cancelled.[/yellow]")
        sys.exit(EXIT_FAILED)

    with stderr.status("[bold]Destroying…"):
        deleted = planner.destroy()

    stderr.print(f"Destroyed [bold]{len(deleted)}[/bold] resources.")
    sys.exit(EXIT_OK)


@cli.command()
@_source_options
@_exits_on_errors
def checks(
    plan_file: Optional[str],
    stack: Optional[str],
    config_path: Optional[str],
    backend: str,
    state_path: Optional[str],
    region: Optional[str],
    max_workers: Optional[int],
    no_color: bool,
) -> None:
    """
    Run the plan checks (plaintext secrets, ordering hazards) without applying.

    Exits 2 if any ERROR finding is reported.
    """
    stderr = Console(stderr=True, no_color=no_color)
    config = _config(config_path, region, max_workers)
    planner, _ = _load_planner(plan_file, stack, config, backend, state_path, stderr)
    # findings are tabulated below instead of printed one by one
    planner.console = Console(stderr=True, quiet=True)

    try:
        findings = planner.validate()
    except PlaintextSecretError:
        findings = planner.findings

    if not findings:
        stderr.print("[green]No findings.[/green]")
        sys.exit(EXIT_OK)

    _print_findings(findings, stderr)
    if any(f.severity == Severity.ERROR for f in findings):
        sys.exit(EXIT_INVALID)
    sys.exit(EXIT_OK)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
