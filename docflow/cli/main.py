import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from docflow.core.audit import AuditLogger
from docflow.core.config import DocflowConfig, load_config
from docflow.core.errors import DocflowError
from docflow.workflow.controller import WorkflowController
from docflow.workflow.factory import create_controller


def _load(config_path: Optional[Path], db: Optional[Path]) -> DocflowConfig:
    overrides: Dict[str, Any] = {}
    if db is not None:
        overrides["storage"] = {"backend": "sqlite", "path": str(db)}
    return load_config(config_path, cli_overrides=overrides or None)


def _controller(ctx: click.Context) -> WorkflowController:
    return create_controller(ctx.obj["config"])


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: DocflowError) -> None:
    message = f"{error.code}: {error.message}"
    if error.hint:
        message += f" ({error.hint})"
    raise click.ClickException(message)


# -------------------------
# CLI
# -------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to docflow.yaml (defaults to ./docflow.yaml if present)",
)
@click.option("--db", type=click.Path(path_type=Path), default=None, help="Workflow database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], db: Optional[Path]) -> None:
    """docflow CLI.

    Run the MCP server and inspect or maintain documentation workflows.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["config"] = _load(config_path, db)


@cli.command("serve")
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server over stdio."""
    import asyncio

    from docflow.mcp.server import run_server

    asyncio.run(run_server(ctx.obj["config_path"]))


@cli.command("list")
@click.option("--project", type=click.Path(path_type=Path), default=None, help="Only workflows for this project")
@click.option("--active-only", is_flag=True, default=False, help="Skip finished and superseded workflows")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON")
@click.pass_context
def list_workflows(ctx: click.Context, project: Optional[Path], active_only: bool, as_json: bool) -> None:
    """List workflows."""
    workflows = _controller(ctx).list_workflows(
        project_path=str(project) if project else None,
        active_only=active_only,
    )
    if as_json:
        _echo_json(workflows)
        return

    if not workflows:
        click.echo("No workflows.")
        return
    for wf in workflows:
        state = "done" if wf["done"] else f"phase {wf['phase']}/6"
        if wf["superseded_by"]:
            state += f", superseded by {wf['superseded_by']}"
        click.echo(f"{wf['workflow_id']}  {state}  {wf['project_path']}")


@cli.command("status")
@click.argument("workflow_id")
@click.pass_context
def status(ctx: click.Context, workflow_id: str) -> None:
    """Show phase, batch progress and next step for WORKFLOW_ID."""
    try:
        data = _controller(ctx).status(workflow_id)
    except DocflowError as e:
        _fail(e)
    # Phase results can be large; status shows which phases committed
    data.pop("phase_results", None)
    _echo_json(data)


@cli.command("next")
@click.argument("workflow_id")
@click.pass_context
def next_step(ctx: click.Context, workflow_id: str) -> None:
    """Show the next required tool call for WORKFLOW_ID."""
    try:
        step = _controller(ctx).status(workflow_id)["next_step"]
    except DocflowError as e:
        _fail(e)

    if step.get("completed"):
        click.echo("Workflow complete.")
    else:
        click.echo(f"Phase {step['phase_index']} ({step['name']}): call {step['tool']}")


@cli.command("cleanup")
@click.option(
    "--max-age-hours",
    type=float,
    default=None,
    help="Delete workflows idle longer than this (default: workflow.expiry_hours)",
)
@click.pass_context
def cleanup(ctx: click.Context, max_age_hours: Optional[float]) -> None:
    """Delete expired workflows."""
    max_age = timedelta(hours=max_age_hours) if max_age_hours is not None else None
    removed = _controller(ctx).cleanup(max_age)
    click.echo(f"Removed {len(removed)} workflow(s)")
    for workflow_id in removed:
        click.echo(f"  {workflow_id}")


@cli.command("audit")
@click.option("--category", default=None, help="Filter by category (workflow, phase, task, server, error)")
@click.option("--action", default=None, help="Filter by action")
@click.option("--workflow", "workflow_id", default=None, help="Filter by workflow ID")
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def audit(
    ctx: click.Context,
    category: Optional[str],
    action: Optional[str],
    workflow_id: Optional[str],
    limit: int,
) -> None:
    """Print audit trail entries, newest first, as JSON lines."""
    log_dir = Path(ctx.obj["config"].audit.log_dir)
    if not log_dir.exists():
        click.echo("No audit log found.")
        return

    entries: List[Dict[str, Any]] = []
    for log_file in sorted(log_dir.glob("audit_*.jsonl"), reverse=True):
        reader = AuditLogger(log_file, retention_days=0)
        entries.extend(reader.get_entries(category, action, workflow_id, limit=limit))
        if len(entries) >= limit:
            break

    for entry in entries[:limit]:
        click.echo(json.dumps(entry, default=str))


if __name__ == "__main__":
    cli()
