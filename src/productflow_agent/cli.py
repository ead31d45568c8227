from __future__ import annotations

import json
import mimetypes
import sys
from pathlib import Path
from typing import Optional

import click

from .config import Settings, load_settings
from .errors import ProductFlowError
from .logging_config import configure_logging
from .phases import get_phase
from .schemas import LAST_PHASE_INDEX, StepResult
from .service import WorkflowService

PHASE = click.IntRange(0, LAST_PHASE_INDEX)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="productflow-agent", message="ProductFlow Agent %(version)s")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--database-url", type=str, default=None, help="Override the SQLAlchemy database URL.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], database_url: Optional[str], verbose: bool) -> None:
    """Nine-phase product requirements assistant."""

    configure_logging(verbose=verbose, logger_name="productflow_agent.cli")
    overrides = {}
    if database_url:
        overrides["database"] = {"url": database_url}
    ctx.obj = load_settings(config_path, **overrides)


def _service(ctx: click.Context) -> WorkflowService:
    settings: Settings = ctx.obj
    return WorkflowService.from_settings(settings)


@main.command()
@click.argument("title")
@click.option("--requirement", type=str, default=None, help="Raw requirement text.")
@click.option("--requirement-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.pass_context
def init(ctx: click.Context, title: str, requirement: Optional[str], requirement_file: Optional[Path]) -> None:
    """Create a project with nine pending phases."""

    if requirement_file is not None:
        requirement = requirement_file.read_text(encoding="utf-8")
    if not requirement:
        raise click.UsageError("Provide --requirement or --requirement-file.")
    project = _call(lambda: _service(ctx).create_project(title, requirement))
    click.echo(f"Created project {project.id}: {project.title}")


@main.command("run-step")
@click.argument("project_id", type=int)
@click.argument("phase", type=PHASE)
@click.pass_context
def run_step(ctx: click.Context, project_id: int, phase: int) -> None:
    """Run the plan/draft/review loop for one phase."""

    result = _call(lambda: _service(ctx).execute_step(project_id, phase))
    _print_result(result, get_phase(phase).label)


@main.command()
@click.argument("project_id", type=int)
@click.argument("phase", type=PHASE)
@click.argument("message")
@click.pass_context
def chat(ctx: click.Context, project_id: int, phase: int, message: str) -> None:
    """Refine a phase output with one more instruction."""

    result = _call(lambda: _service(ctx).continue_conversation(project_id, phase, message))
    _print_result(result, get_phase(phase).label)


@main.command("analyze-change")
@click.argument("project_id", type=int)
@click.argument("change_request")
@click.pass_context
def analyze_change(ctx: click.Context, project_id: int, change_request: str) -> None:
    """Classify a change request and recommend where to restart."""

    analysis = _call(lambda: _service(ctx).analyze_change_request(project_id, change_request))
    start = analysis.recommended_start_step
    click.echo(click.style(f"Intent: {analysis.intent.value}", fg="cyan"))
    click.echo(f"Restart at: {get_phase(start).label}")
    click.echo("Impacted: " + ", ".join(str(step) for step in analysis.impacted_steps))
    if analysis.reason:
        click.echo(f"Reason: {analysis.reason}")
    for item in analysis.action_plan:
        click.echo(f" - {item}")


@main.command("apply-change")
@click.argument("project_id", type=int)
@click.argument("start_phase", type=PHASE)
@click.option("--request", "change_request", type=str, default=None, help="Change request to carry as context.")
@click.pass_context
def apply_change(ctx: click.Context, project_id: int, start_phase: int, change_request: Optional[str]) -> None:
    """Snapshot and clear phases from START_PHASE on."""

    reset = _call(lambda: _service(ctx).apply_change_plan(project_id, start_phase, change_request))
    click.echo(f"Reset phases: {', '.join(str(index) for index in reset) or 'none'}")


@main.command()
@click.argument("project_id", type=int)
@click.argument("phase", type=PHASE)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw trace as JSON.")
@click.pass_context
def trace(ctx: click.Context, project_id: int, phase: int, as_json: bool) -> None:
    """Show the latest run of a phase and its actions."""

    agent_trace = _call(lambda: _service(ctx).get_agent_trace(project_id, phase))
    if agent_trace.run is None:
        click.echo("No runs recorded for this phase.")
        return
    if as_json:
        payload = {
            "run": agent_trace.run.model_dump(mode="json"),
            "actions": [action.model_dump(mode="json") for action in agent_trace.actions],
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    run = agent_trace.run
    click.echo(f"Run {run.id} [{run.strategy}] status={run.status.value} stage={run.current_stage.value} iteration={run.current_iteration}")
    if run.error_message:
        click.echo(click.style(f"Error: {run.error_message}", fg="red"))
    for action in agent_trace.actions:
        click.echo(f" - {action.action_type.value}: {action.title}")


@main.command("add-asset")
@click.argument("project_id", type=int)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--phase", type=PHASE, default=None, help="Attach to one phase instead of the whole project.")
@click.option("--mime-type", type=str, default=None)
@click.option("--note", type=str, default=None)
@click.pass_context
def add_asset(
    ctx: click.Context,
    project_id: int,
    path: Path,
    phase: Optional[int],
    mime_type: Optional[str],
    note: Optional[str],
) -> None:
    """Upload a file as context for later phases."""

    mime = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    asset = _call(
        lambda: _service(ctx).upload_asset(
            project_id,
            path.name,
            mime,
            path.read_bytes(),
            phase_index=phase,
            source_label="cli",
            note=note,
        )
    )
    click.echo(f"Stored asset {asset.id}: {asset.file_name} ({asset.asset_type.value}, {asset.scope.value})")


def _call(operation):
    try:
        return operation()
    except ProductFlowError as exc:
        raise click.ClickException(str(exc)) from exc


def _print_result(result: StepResult, label: str) -> None:
    if not result.success or result.output is None:
        click.echo(click.style(f"{label} failed: {result.error}", fg="red"), err=True)
        sys.exit(1)
    agent = result.output.get("agent", {})
    passed = agent.get("passed")
    color = "green" if passed or passed is None else "yellow"
    click.echo(
        click.style(
            f"{label}: rounds={agent.get('iterations')} best={agent.get('bestScore')} passed={passed}",
            fg=color,
        )
    )
    click.echo("")
    click.echo(result.output.get("text", ""))
