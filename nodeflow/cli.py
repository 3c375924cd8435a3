"""Command line interface for managing nodeflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import load_config
from .engine import WorkflowEngine
from .persistence import get_store
from .versions import validate_definition

app = typer.Typer(help="CLI for nodeflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
workflow_app = typer.Typer(help="Commands for managing workflow instances")
approval_app = typer.Typer(help="Commands for responding to approvals")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")
app.add_typer(approval_app, name="approval")

T = TypeVar("T")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """nodeflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(func: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    """Run ``func`` against an engine bound to the configured store."""
    config = load_config()
    store = get_store()

    async def runner() -> T:
        try:
            return await func(WorkflowEngine(store=store, config=config))
        finally:
            close = getattr(store, "close", None)
            if close is not None:
                await close()

    return asyncio.run(runner())


def _parse_json(value: Optional[str], option: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for {option}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _load_definition(path: Path) -> dict[str, Any]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    text = path.read_text()
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{path} does not contain a workflow definition", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _fail(reason: Optional[str]) -> None:
    typer.secho(reason or "Operation failed", fg=typer.colors.RED)
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# definition
@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Validate a workflow definition file.

    Checks the structural rules a definition must pass before it can be
    published and lists advisory warnings.

    Args:
        path: JSON or YAML file holding the node graph

    Example:
        nodeflow definition validate ./workflows/warrant.yaml
        # Output: Definition is valid.
        #         warning: Node 'notify' has no outputs.
    """
    definition = _load_definition(path)
    report = validate_definition(definition)
    for error in report["errors"]:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    for warning in report["warnings"]:
        typer.echo(f"warning: {warning}")
    if not report["valid"]:
        raise typer.Exit(code=1)
    typer.echo("Definition is valid.")


@definition_app.command("import")
def definition_import(
    path: Path,
    slug: str = typer.Option(..., help="Workflow slug"),
    name: Optional[str] = typer.Option(None, help="Human readable name"),
    entity_type: Optional[str] = typer.Option(None, help="Entity type instances bind to"),
    notes: Optional[str] = typer.Option(None, help="Change notes for the new version"),
    publish: bool = typer.Option(False, help="Publish the imported version"),
) -> None:
    """
    Import a definition file as a new draft version.

    Creates the workflow definition on first import. With ``--publish`` the
    draft is validated and published, archiving the previous version.

    Example:
        nodeflow definition import ./warrant.yaml --slug warrant-roster --publish
        # Output: Imported warrant-roster v1 (version #1)
        #         Published warrant-roster v1
    """
    graph = _load_definition(path)

    async def work(engine: WorkflowEngine) -> None:
        definition = await engine.store.get_definition_by_slug(slug)
        if definition is None:
            created = await engine.versions.create_definition(
                slug, name or slug, entity_type=entity_type
            )
            if not created.success:
                _fail(created.reason)
            definition_id = created.data["definitionId"]
        else:
            definition_id = definition.id
        draft = await engine.versions.create_draft(definition_id, graph, change_notes=notes)
        if not draft.success:
            _fail(draft.reason)
        typer.echo(
            f"Imported {slug} v{draft.data['versionNumber']} (version #{draft.data['versionId']})"
        )
        if publish:
            published = await engine.versions.publish(draft.data["versionId"])
            if not published.success:
                _fail(published.reason)
            typer.echo(f"Published {slug} v{draft.data['versionNumber']}")

    _run(work)


@definition_app.command("list")
def definition_list() -> None:
    """
    List workflow definitions.

    Example:
        nodeflow definition list
        # Output: warrant-roster    active    version #3
    """

    async def work(engine: WorkflowEngine) -> list:
        return await engine.store.list_definitions()

    definitions = _run(work)
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        state = "active" if definition.is_active else "inactive"
        current = (
            f"version #{definition.current_version_id}"
            if definition.current_version_id
            else "unpublished"
        )
        typer.echo(f"{definition.slug}\t{state}\t{current}")


@definition_app.command("versions")
def definition_versions(slug: str) -> None:
    """Show the version history of a definition, newest first."""

    async def work(engine: WorkflowEngine) -> Optional[list]:
        definition = await engine.store.get_definition_by_slug(slug)
        if definition is None:
            return None
        return await engine.versions.get_version_history(definition.id)

    versions = _run(work)
    if versions is None:
        typer.echo("Definition not found")
        raise typer.Exit(code=1)
    for version in versions:
        notes = f" - {version.change_notes}" if version.change_notes else ""
        typer.echo(f"v{version.version_number}\t#{version.id}\t{version.status}{notes}")


# ----------------------------------------------------------------------
# workflow
@workflow_app.command("start")
def workflow_start(
    slug: str,
    data: Optional[str] = typer.Option(None, help="Trigger data as a JSON object"),
    entity_type: Optional[str] = typer.Option(None, help="Bound entity type"),
    entity_id: Optional[str] = typer.Option(None, help="Bound entity id"),
    started_by: Optional[str] = typer.Option(None, help="Member starting the workflow"),
) -> None:
    """
    Start a workflow instance.

    Args:
        slug: Slug of an active workflow definition
        data: Trigger payload written to ``context.trigger``

    Example:
        nodeflow workflow start warrant-roster --data '{"roster_id": 7}' --entity-id 7
        # Output: Instance #12: waiting
    """
    trigger = _parse_json(data, "--data")

    async def work(engine: WorkflowEngine):
        return await engine.start_workflow(slug, trigger, started_by, entity_type, entity_id)

    result = _run(work)
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Instance #{result.data['instanceId']}: {result.data['status']}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[str] = typer.Option(None, help="Only show instances with this status"),
) -> None:
    """
    List workflow instances with their status.

    Example:
        nodeflow workflow list --status waiting
        # Output: 12    warrant-roster    waiting    approval
    """

    async def work(engine: WorkflowEngine) -> list:
        instances = await engine.store.list_instances(statuses=[status] if status else None)
        slugs = {d.id: d.slug for d in await engine.store.list_definitions()}
        return [(instance, slugs.get(instance.definition_id, "?")) for instance in instances]

    rows = _run(work)
    if not rows:
        typer.echo("No workflow instances found")
        return
    for instance, slug in rows:
        active = ",".join(instance.active_nodes)
        typer.echo(f"{instance.id}\t{slug}\t{instance.status}\t{active}")


@workflow_app.command("show")
def workflow_show(instance_id: int) -> None:
    """
    Show an instance with its execution log and approval gates.

    Example:
        nodeflow workflow show 12
        # Output: Instance #12: waiting
        #         - trigger (trigger): completed
        #         - approval (approval): waiting
        #         Gate #3 on approval: pending (0/2)
    """

    async def work(engine: WorkflowEngine):
        return await engine.get_instance_state(instance_id)

    state = _run(work)
    if state is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance #{state['id']}: {state['status']}")
    if state["active_nodes"]:
        typer.echo(f"Active nodes: {', '.join(state['active_nodes'])}")
    if state["error_info"]:
        typer.echo(f"Error: {json.dumps(state['error_info'])}")
    for log in state["execution_logs"]:
        attempt = f" attempt {log['attempt_number']}" if log["attempt_number"] > 1 else ""
        typer.echo(f"- {log['node_id']} ({log['node_type']}): {log['status']}{attempt}")
    for gate in state["gates"]:
        typer.echo(
            f"Gate #{gate['gate_id']} on {gate['node_id']}: {gate['status']} "
            f"({gate['approved_count']}/{gate['required_count']})"
        )


@workflow_app.command("resume")
def workflow_resume(
    instance_id: int,
    node_id: str,
    port: str = typer.Option("default", help="Output port to follow"),
    data: Optional[str] = typer.Option(None, help="Resume data as a JSON object"),
) -> None:
    """Resume a waiting instance at NODE_ID."""
    resume_data = _parse_json(data, "--data")

    async def work(engine: WorkflowEngine):
        return await engine.resume_workflow(instance_id, node_id, port, resume_data)

    result = _run(work)
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Instance #{result.data['instanceId']}: {result.data['status']}")


@workflow_app.command("cancel")
def workflow_cancel(
    instance_id: int,
    reason: Optional[str] = typer.Option(None, help="Cancellation reason"),
) -> None:
    """Cancel a running or waiting instance."""

    async def work(engine: WorkflowEngine):
        return await engine.cancel_workflow(instance_id, reason)

    result = _run(work)
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Instance #{instance_id} cancelled")


@workflow_app.command("process")
def workflow_process(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without changing anything"),
) -> None:
    """
    Fire due delays and expire overdue approval gates.

    Intended to be run periodically, e.g. from cron.

    Example:
        nodeflow workflow process --dry-run
        # Output: Due delays: 1
        #         Overdue gates: 0
    """

    async def work(engine: WorkflowEngine):
        return await engine.process_scheduled_transitions(dry_run=dry_run)

    result = _run(work)
    typer.echo(f"Due delays: {len(result.data['resumed'])}")
    typer.echo(f"Overdue gates: {len(result.data['expired'])}")
    for instance_id, node_id in result.data["resumed"] + result.data["expired"]:
        typer.echo(f"- #{instance_id} {node_id}")


# ----------------------------------------------------------------------
# approval
@approval_app.command("pending")
def approval_pending(member_id: str) -> None:
    """List pending approval gates MEMBER_ID may still decide on."""

    async def work(engine: WorkflowEngine) -> list:
        return await engine.approvals.get_pending_approvals_for_member(member_id)

    gates = _run(work)
    if not gates:
        typer.echo("No pending approvals")
        return
    for gate in gates:
        typer.echo(
            f"Gate #{gate.id}\tinstance #{gate.instance_id}\t{gate.node_id}\t"
            f"{gate.approved_count}/{gate.required_count}"
        )


@approval_app.command("respond")
def approval_respond(
    token: str,
    decision: str,
    comment: Optional[str] = typer.Option(None, help="Comment recorded with the decision"),
    next_approver: Optional[str] = typer.Option(None, help="Next approver for serial gates"),
) -> None:
    """
    Respond to an approval with its token.

    Example:
        nodeflow approval respond 9f2c... approve --comment "Looks good"
        # Output: Gate #3: approved (2/2)
    """

    async def work(engine: WorkflowEngine):
        return await engine.approvals.resolve_approval_by_token(
            token, decision, comment, next_approver
        )

    result = _run(work)
    if not result.success:
        _fail(result.reason)
    gate = result.data["gate_status"]
    typer.echo(
        f"Gate #{gate['gate_id']}: {gate['status']} "
        f"({gate['approved_count']}/{gate['required_count']})"
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
