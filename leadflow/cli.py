"""Command line interface for operating leadflow."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from leadflow import build_engine, get_repository
from leadflow.config import load_config
from leadflow.contracts import EnrollmentStatus
from leadflow.engine import Engine
from leadflow.errors import LeadflowError
from leadflow.templates import TEMPLATES

app = typer.Typer(help="CLI for leadflow workflow automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")
template_app = typer.Typer(help="Commands for built-in workflow templates")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(template_app, name="template")


@app.callback()
def main() -> None:
    """Leadflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> Engine:
    return build_engine(config=load_config(), repository=get_repository())


def _run(coro):
    try:
        return asyncio.run(coro)
    except LeadflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(owner: Optional[str] = None) -> None:
    """
    List workflows with their active flag.

    Example:
        leadflow workflow list --owner user-1
        # Output: 7f0c...    active    New Lead Nurture
    """
    workflows = _run(_engine().authoring.list_workflows(owner=owner))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "paused"
        typer.echo(f"{wf.id}\t{state}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's trigger and steps."""
    engine = _engine()

    async def _show():
        workflow = await engine.repository.get_workflow(workflow_id)
        if workflow is None:
            return None, []
        return workflow, await engine.repository.get_steps(workflow_id)

    workflow, steps = _run(_show())
    if workflow is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    state = "active" if workflow.is_active else "paused"
    typer.echo(f"Workflow {workflow.id}: {workflow.name} ({state})")
    typer.echo(f"Trigger: {workflow.trigger.model_dump_json()}")
    for step in steps:
        typer.echo(f"- {step.order}. +{step.delay_days}d {step.action.model_dump_json()}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Activate a workflow and enroll the leads its trigger selects."""
    created = _run(_engine().enroller.activate_workflow(workflow_id))
    typer.echo(f"Workflow {workflow_id} activated, {len(created)} leads enrolled")


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    """Pause a workflow; no new leads are enrolled."""
    _run(_engine().enroller.pause_workflow(workflow_id))
    typer.echo(f"Workflow {workflow_id} paused")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete a workflow and cancel its active enrollments."""
    cancelled = _run(_engine().authoring.delete_workflow(workflow_id))
    typer.echo(f"Workflow {workflow_id} deleted, {len(cancelled)} enrollments cancelled")


@workflow_app.command("preview")
def workflow_preview(workflow_id: str, lead: Optional[str] = None) -> None:
    """
    Print the day-by-day timeline of a workflow.

    Example:
        leadflow workflow preview 7f0c...
        # Output: Day 0: introduction email with friendly tone
        #         Day 2: value email with professional tone
    """
    preview = _run(_engine().authoring.preview(workflow_id, sample_lead_id=lead))
    if preview.sample_lead is not None:
        name = preview.sample_lead.business_name or preview.sample_lead.id
        typer.echo(f"Sample lead: {name}")
    for entry in preview.timeline:
        typer.echo(f"Day {entry.day}: {entry.description}")
    typer.echo(f"Total: {preview.total_days} days")


@workflow_app.command("stats")
def workflow_stats(workflow_id: str) -> None:
    """Show enrollment counts by status."""
    stats = _run(_engine().authoring.stats(workflow_id))
    typer.echo(
        f"active={stats.active} completed={stats.completed} "
        f"cancelled={stats.cancelled} total={stats.total}"
    )


@enrollment_app.command("list")
def enrollment_list(
    workflow: Optional[str] = None,
    lead: Optional[str] = None,
    status: Optional[EnrollmentStatus] = None,
) -> None:
    """List enrollments, optionally filtered by workflow, lead and status."""
    repo = get_repository()
    enrollments = _run(
        repo.list_enrollments(workflow_id=workflow, lead_id=lead, status=status)
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.workflow_id}\t{e.lead_id}\t{e.status.value}\t"
            f"step {e.current_step_order}\t{e.next_action_at.isoformat()}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show one enrollment and its event log."""
    repo = get_repository()

    async def _show():
        enrollment = await repo.get_enrollment(enrollment_id)
        if enrollment is None:
            return None, []
        return enrollment, await repo.list_events(enrollment_id)

    enrollment, events = _run(_show())
    if enrollment is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Enrollment {enrollment.id}: {enrollment.status.value} "
        f"at step {enrollment.current_step_order}"
    )
    if enrollment.last_error:
        typer.echo(f"Last error: {enrollment.last_error} (attempts={enrollment.attempts})")
    for event in events:
        line = f"- {event.occurred_at.isoformat()} {event.kind}"
        if event.step_order is not None:
            line += f" step {event.step_order}"
        if event.message:
            line += f": {event.message}"
        typer.echo(line)


@enrollment_app.command("add")
def enrollment_add(workflow_id: str, lead_id: str) -> None:
    """Manually enroll a lead in an active workflow."""
    enrollment = _run(_engine().enroller.enroll_lead(workflow_id, lead_id))
    typer.echo(f"Enrolled lead {lead_id}: {enrollment.id}")


@template_app.command("list")
def template_list() -> None:
    """List built-in templates."""
    for key, template in TEMPLATES.items():
        typer.echo(
            f"{key}\t{template.name}\t{template.email_count} emails over "
            f"{template.total_days} days"
        )


@template_app.command("deploy")
def template_deploy(key: str, owner: str = typer.Option(..., help="Owner of the new workflow")) -> None:
    """Create a paused workflow from a template."""
    workflow = _run(_engine().authoring.deploy_template(key, owner))
    typer.echo(f"Deployed {workflow.name} as {workflow.id} (paused)")


@app.command("run")
def run() -> None:
    """
    Run one scheduler tick: a trigger sweep then one executor pass.

    Intended to be invoked periodically, e.g. from cron. Overlapping runs are
    safe.
    """
    enrolled, summary = _run(_engine().tick())
    typer.echo(f"Enrolled {sum(enrolled.values())} leads")
    for outcome in sorted({o.value for o in summary.outcomes.values()}):
        count = sum(1 for o in summary.outcomes.values() if o.value == outcome)
        typer.echo(f"{outcome}: {count}")


@app.command("listen")
def listen(lifespan: Optional[float] = None) -> None:
    """Consume lead events and enroll leads on status changes."""
    engine = _engine()
    typer.echo("Listening for lead events")
    _run(engine.listener.start(lifespan=lifespan))
    typer.echo(f"Handled {engine.listener.handled} events")


if __name__ == "__main__":
    app()
