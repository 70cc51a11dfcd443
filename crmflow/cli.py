"""Command line interface for operating crmflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
import uvicorn
import yaml

from .api import create_app
from .config import load_config
from .contacts import get_contact_store
from .definition import load_workflow, validate, validate_for_activation
from .engine import WorkflowEngine
from .errors import CrmflowError, InvalidDefinition
from .messaging import get_message_sender
from .persistence import get_repository
from .runner import BatchRunner
from .workflows import WorkflowManager

app = typer.Typer(help="CLI for crmflow workflow automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level, e.g. INFO or DEBUG"),
) -> None:
    """crmflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(
        repository=get_repository(),
        contacts=get_contact_store(),
        sender=get_message_sender(config),
        config=config.engine,
    )


def _read_definition(path: Path) -> Dict[str, Any]:
    if not path.exists():
        _fail(f"File not found: {path}")
    text = path.read_text()
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text) or {}


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        typer.secho(f"Warning: {warning}", fg=typer.colors.YELLOW)


def _print_definition_errors(exc: InvalidDefinition) -> NoReturn:
    typer.secho(exc.summary, fg=typer.colors.RED)
    for error in exc.errors:
        typer.secho(f"- {error}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list(
    workspace: Optional[str] = typer.Option(None, help="Only this workspace"),
    status: Optional[str] = typer.Option(None, help="Only workflows in this status"),
) -> None:
    """
    List workflows with their status and counters.

    Example:
        crmflow workflow list --status active
        # Output: 5f0c...  active  New lead nurture  enrolled=12 completed=4
    """
    workflows = asyncio.run(WorkflowManager(get_repository()).list(workspace, status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.id}\t{wf.status}\t{wf.name}\tenrolled={wf.enrolled_count} completed={wf.completed_count}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's trigger and step graph."""
    wf = asyncio.run(get_repository().get_workflow(workflow_id))
    if wf is None:
        _fail("Workflow not found")
    typer.echo(f"Workflow {wf.id}: {wf.name} [{wf.status}]")
    typer.echo(f"Workspace: {wf.workspace_id}")
    if wf.trigger:
        typer.echo(f"Trigger: {wf.trigger.type}")
    typer.echo(f"Enrolled: {wf.enrolled_count}  Completed: {wf.completed_count}")
    for step in wf.steps:
        targets = ", ".join(step.targets()) or "-"
        typer.echo(f"- {step.id} ({step.kind}) {step.name} -> {targets}")


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """
    Load a workflow definition from a YAML or JSON file and store it.

    The definition is validated first; a definition whose status is
    ``active`` must also pass the activation checks.

    Example:
        crmflow workflow import ./guides/lead_nurture.yaml
    """
    data = _read_definition(path)
    try:
        workflow = asyncio.run(WorkflowManager(get_repository()).save(data))
    except InvalidDefinition as exc:
        _print_definition_errors(exc)
    except CrmflowError as exc:
        _fail(str(exc))
    typer.echo(f"Imported workflow {workflow.id} ({workflow.name})")


@workflow_app.command("validate")
def workflow_validate(
    path: Path,
    activation: bool = typer.Option(
        False, help="Also run the checks required before activation"
    ),
) -> None:
    """Validate a workflow definition file without storing it."""
    data = _read_definition(path)
    try:
        workflow = load_workflow(data)
        warnings = (
            validate_for_activation(workflow) if activation else validate(workflow)
        )
    except InvalidDefinition as exc:
        _print_definition_errors(exc)
    _print_warnings(warnings)
    typer.secho("Workflow is valid", fg=typer.colors.GREEN)


@workflow_app.command("status")
def workflow_status(workflow_id: str, status: str) -> None:
    """
    Change a workflow's status (draft, active, paused, archived).

    Example:
        crmflow workflow status 5f0c... active
    """
    if status not in ("draft", "active", "paused", "archived"):
        _fail(f"Unknown status: {status}")
    try:
        wf = asyncio.run(WorkflowManager(get_repository()).change_status(workflow_id, status))
    except InvalidDefinition as exc:
        _print_definition_errors(exc)
    except CrmflowError as exc:
        _fail(str(exc))
    typer.echo(f"Workflow {wf.id} is {wf.status}")


# ----------------------------------------------------------------------
# Enrollments


@app.command("enroll")
def enroll(
    workflow_id: str,
    contact_id: str,
    data: Optional[str] = typer.Option(None, help="Trigger data as a JSON object"),
) -> None:
    """Enroll a contact into an active workflow."""
    trigger_data = json.loads(data) if data else {}
    try:
        enrollment = asyncio.run(
            _engine().enroll(workflow_id, contact_id, trigger_data=trigger_data)
        )
    except CrmflowError as exc:
        _fail(str(exc))
    typer.echo(f"Enrollment {enrollment.id} created at step {enrollment.current_step_id}")


@enrollment_app.command("list")
def enrollment_list(
    workflow: Optional[str] = typer.Option(None, help="Only this workflow"),
    status: Optional[str] = typer.Option(None, help="Only enrollments in this status"),
) -> None:
    """List enrollments with their current step and due time."""
    enrollments = asyncio.run(get_repository().list_enrollments(workflow, status))
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.status}\t{e.contact_id}\t{e.current_step_id or '-'}\t{e.next_step_at or '-'}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment and its step history."""
    e = asyncio.run(get_repository().get_enrollment(enrollment_id))
    if e is None:
        _fail("Enrollment not found")
    typer.echo(f"Enrollment {e.id}: {e.status}")
    typer.echo(f"Workflow: {e.workflow_id}  Contact: {e.contact_id}")
    typer.echo(f"Current step: {e.current_step_id or '-'}  Next run: {e.next_step_at or '-'}")
    if e.last_error:
        typer.echo(f"Last error: {e.last_error} (retries: {e.retry_count})")
    if e.exit_reason:
        typer.echo(f"Exit reason: {e.exit_reason}")
    for record in e.step_history:
        line = f"- {record.step_id} ({record.kind}): {record.status}"
        if record.branch_taken:
            line += f" branch={record.branch_taken}"
        if record.error:
            line += f" [{record.error}]"
        typer.echo(line)


@enrollment_app.command("exit")
def enrollment_exit(
    enrollment_id: str,
    reason: str = typer.Option("Manually exited", help="Reason recorded on the enrollment"),
) -> None:
    """Stop an active enrollment."""
    try:
        exited = asyncio.run(_engine().exit_enrollment(enrollment_id, reason))
    except CrmflowError as exc:
        _fail(str(exc))
    if exited:
        typer.echo(f"Enrollment {enrollment_id} exited")
    else:
        typer.echo(f"Enrollment {enrollment_id} was not active")


# ----------------------------------------------------------------------
# Runner


@app.command("run-batch")
def run_batch(
    max_count: Optional[int] = typer.Option(None, help="Maximum enrollments to process"),
    max_duration: Optional[float] = typer.Option(None, help="Time budget in seconds"),
    workspace: Optional[str] = typer.Option(None, help="Only this workspace"),
) -> None:
    """
    Process due enrollments once, as the cron endpoint does.

    Example:
        crmflow run-batch --max-count 50 --max-duration 30
    """
    engine = _engine()
    report = asyncio.run(
        BatchRunner(engine).run_batch(
            max_count=max_count, max_duration=max_duration, workspace_id=workspace
        )
    )
    typer.echo(
        f"Processed {report.processed} of {report.selected}: "
        f"{report.succeeded} succeeded, {report.failed} failed, "
        f"{report.skipped} skipped, {report.remaining} remaining ({report.duration_ms}ms)"
    )
    for error in report.errors:
        typer.secho(f"- {error.enrollment_id}: {error.error}", fg=typer.colors.RED)


@app.command("health")
def health() -> None:
    """Show due and active enrollment counts."""
    stats = asyncio.run(BatchRunner(_engine()).health())
    typer.echo(f"Pending enrollments: {stats.pending_enrollments}")
    typer.echo(f"Active enrollments: {stats.active_enrollments}")
    typer.echo(f"Active workflows: {stats.active_workflows}")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Run the HTTP API with uvicorn."""
    config = load_config()
    uvicorn.run(
        create_app(config=config),
        host=host or config.api.host,
        port=port or config.api.port,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
