# cli.py
from __future__ import annotations

import os
import signal
import subprocess
import sys
from contextlib import closing
from pathlib import Path
from typing import Optional

import click

from pipewright.checkout import GitCheckout, LocalCheckout
from pipewright.config import load_workflow
from pipewright.environment import ToolchainProvisioner, WorkspaceEnvFactory
from pipewright.errors import CheckoutError, CIError, ConfigError
from pipewright.git_facts.git import current_branch, repo_root
from pipewright.model import Event, EventKind, PipelineConfig
from pipewright.report import FileReportSink, HttpReportSink, ReportSink, publish, render_report
from pipewright.runner import CancelToken, run_pipeline
from pipewright.triggers import should_run
from pipewright.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_FATAL = 2        # ConfigError / CheckoutError: nothing was run
EXIT_CANCELLED = 130

DEFAULT_WORKFLOWS = ("pipewright.yml", "pipewright.yaml", "pipewright_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()}

    # Look for other *.workflow.yml / *_workflow.py files
    for pattern in ("*.workflow.yml", "*.workflow.yaml", "*_workflow.py"):
        found.update(current_dir.glob(pattern))

    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewright run --workflow ci.yml",
            )
            sys.exit(EXIT_FATAL)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_WORKFLOWS), "  *.workflow.yml", "  *_workflow.py"],
            suggestion="Create a workflow file:\n  pipewright.yml\n\nOr specify a workflow explicitly:\n  pipewright run --workflow ci.yml",
        )
        sys.exit(EXIT_FATAL)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  pipewright run --workflow pipewright.yml",
        )
        sys.exit(EXIT_FATAL)

    return workflow_files[0]


def _error_details(e: CIError) -> list[str]:
    lines = []
    for key, value in e.details.items():
        if isinstance(value, list):
            lines.extend(str(v) for v in value)
        else:
            lines.append(f"{key}: {value}")
    return lines


def _load(workflow_path: Path) -> PipelineConfig:
    try:
        return load_workflow(workflow_path)
    except ConfigError as e:
        get_console().print_error("Invalid workflow", e.message, details=_error_details(e))
        sys.exit(EXIT_FATAL)


def _checkout_provider(ref: str | None):
    if not ref:
        return LocalCheckout(".")
    try:
        return GitCheckout(repo_root())
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise CheckoutError("--ref requires running inside a git repository", ref=ref) from e


def _report_sink(config: PipelineConfig, report_path: str | None, report_url: str | None) -> Optional[ReportSink]:
    url = report_url or config.report.url
    if url:
        token = os.environ.get(config.report.token_env) if config.report.token_env else None
        return HttpReportSink(url, token=token)
    path = report_path or config.report.path
    if path:
        return FileReportSink(path)
    return None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print job results and the final report")
def cli(debug, quiet):
    """pipewright: run declarative CI pipelines locally."""
    set_console(Console(debug=debug, quiet=quiet))


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to pipewright.yml if present)",
)
@click.option(
    "--event",
    "event_kind",
    type=click.Choice([k.value for k in EventKind]),
    default=EventKind.PUSH.value,
    show_default=True,
    help="Kind of event that triggered this run",
)
@click.option("--branch", default=None, help="Target branch of the event (defaults to the current git branch)")
@click.option("--ref", default=None, help="Git ref to check out into a scratch clone (defaults to the working tree)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max jobs running at once")
@click.option("--step-timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Per-step timeout in seconds")
@click.option("--deadline", default=None, type=click.FloatRange(min=0, min_open=True), help="Whole-pipeline deadline in seconds")
@click.option("--strict/--no-strict", default=None, help="Fail the pipeline if the report upload fails (overrides fail_ci_if_error)")
@click.option("--report", "report_path", default=None, help="Write the JSON report to this file")
@click.option("--report-url", default=None, help="POST the JSON report to this URL")
def run(workflow, event_kind, branch, ref, workers, step_timeout, deadline, strict, report_path, report_url):
    """Run a workflow for an incoming event."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    config = _load(workflow_path)

    if branch is None:
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine branch",
                "No --branch specified and the current git branch is unknown.",
                suggestion="Specify the event's target branch:\n  pipewright run --event push --branch develop",
            )
            sys.exit(EXIT_FATAL)

    event = Event(EventKind(event_kind), branch)
    event_label = f"{event.kind.value} to {event.target_branch}"
    if not should_run(event, config.triggers):
        console.print_not_triggered(event_label)
        return

    cancel = CancelToken()

    def _on_signal(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling running jobs...")
        cancel.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with closing(_checkout_provider(ref)) as provider:
            workdir = provider.checkout(ref)

            env_factory = WorkspaceEnvFactory(
                workdir,
                base_env=config.env,
                provisioner=ToolchainProvisioner(config.toolchains),
            )
            console.print_run_started(
                pipeline=config.name,
                workflow=workflow_path.name,
                event=event_label,
                job_count=len(config.jobs),
            )

            result = run_pipeline(
                config.jobs,
                env_factory,
                max_parallel=workers or config.settings.max_parallel,
                step_timeout=step_timeout or config.settings.step_timeout,
                deadline=deadline or config.settings.deadline,
                cancel=cancel,
            )

        sink = _report_sink(config, report_path, report_url)
        if sink is not None:
            strict_mode = config.report.fail_ci_if_error if strict is None else strict
            result = publish(result, sink, strict=strict_mode)
    except CheckoutError as e:
        console.print_error("Checkout failed", e.message, details=_error_details(e))
        sys.exit(EXIT_FATAL)
    except CIError as e:
        console.print_exception(e)
        sys.exit(EXIT_FATAL)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    console.print_report(render_report(result))

    if cancel.cancelled:
        sys.exit(EXIT_CANCELLED)
    if not result.passed:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to pipewright.yml if present)")
def validate(workflow):
    """Load and validate a workflow without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    config = _load(workflow_path)

    console.print_info(f"{workflow_path.name}: OK ({config.name})")
    for rule in config.triggers:
        branches = ", ".join(rule.branches) if rule.branches else "any branch"
        console.print_info(f"  on {rule.kind.value}: {branches}")
    for j in config.jobs:
        needs = f" (needs {', '.join(j.needs)})" if j.needs else ""
        console.print_info(f"  job {j.name}: {len(j.steps)} step(s){needs}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
