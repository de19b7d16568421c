"""
Version commands for Timeweave CLI.
"""

from typing import Optional

import typer

from timeweave.cli.context import get_engine, get_formatter, load_json_object, run
from timeweave.storage.models import parse_datetime

app = typer.Typer()


@app.command("create")
def create_version(
    ctx: typer.Context,
    entity_type: str = typer.Argument(..., help="Entity type"),
    entity_id: str = typer.Argument(..., help="Entity id"),
    branch_id: str = typer.Argument(..., help="Branch id"),
    payload: str = typer.Option(..., "--payload", "-p", help="JSON object, or @file"),
    valid_from: str = typer.Option(..., "--from", help="Valid-from world time (ISO-8601)"),
    valid_to: Optional[str] = typer.Option(None, "--to", help="Valid-to world time (ISO-8601)"),
    comment: Optional[str] = typer.Option(None, "--comment", "-m", help="Comment"),
):
    """
    Record a new version of an entity.

    Examples:
        timeweave version create settlement s1 <branch> --from 2024-01-01 -p '{"name": "Sandpoint"}'
    """
    engine = get_engine(ctx)
    created = run(ctx, lambda: engine.versions.create_version(
        entity_type,
        entity_id,
        branch_id,
        parse_datetime(valid_from, "validFrom"),
        load_json_object(payload),
        ctx.obj["user"],
        valid_to=parse_datetime(valid_to, "validTo") if valid_to else None,
        comment=comment,
    ))
    get_formatter(ctx).success(
        f"Created {entity_type}:{entity_id} v{created.version}",
        data={"id": created.id},
    )


@app.command("history")
def version_history(
    ctx: typer.Context,
    entity_type: str = typer.Argument(..., help="Entity type"),
    entity_id: str = typer.Argument(..., help="Entity id"),
    branch_id: str = typer.Argument(..., help="Branch id"),
):
    """List every version of an entity in one branch."""
    engine = get_engine(ctx)
    versions = run(ctx, lambda: engine.versions.find_version_history(
        entity_type, entity_id, branch_id, ctx.obj["user"],
    ))
    get_formatter(ctx).print_versions(versions, title=f"{entity_type}:{entity_id}")


@app.command("show")
def show_version(
    ctx: typer.Context,
    version_id: str = typer.Argument(..., help="Version id"),
):
    """Show a version and its payload."""
    engine = get_engine(ctx)
    found = run(ctx, lambda: engine.versions.get_version(version_id))
    get_formatter(ctx).print_payload(found, engine.versions.decompress_version(found))


@app.command("resolve")
def resolve_version(
    ctx: typer.Context,
    entity_type: str = typer.Argument(..., help="Entity type"),
    entity_id: str = typer.Argument(..., help="Entity id"),
    branch_id: str = typer.Argument(..., help="Branch id"),
    at: str = typer.Option(..., "--at", help="World time (ISO-8601)"),
):
    """Show the version visible from a branch at a world time."""
    formatter = get_formatter(ctx)
    engine = get_engine(ctx)
    resolved = run(ctx, lambda: engine.versions.resolve_version(
        entity_type, entity_id, branch_id, parse_datetime(at, "asOf"),
    ))
    if resolved is None:
        formatter.warning(f"No version of {entity_type}:{entity_id} visible at {at}")
        raise typer.Exit(1)
    formatter.print_payload(resolved, engine.versions.decompress_version(resolved))


@app.command("restore")
def restore_version(
    ctx: typer.Context,
    version_id: str = typer.Argument(..., help="Version to restore"),
    branch_id: str = typer.Argument(..., help="Branch receiving the restored version"),
    at: Optional[str] = typer.Option(None, "--at", help="World time (defaults to now)"),
    comment: Optional[str] = typer.Option(None, "--comment", "-m", help="Comment"),
):
    """Restore a historical version as a new version."""
    engine = get_engine(ctx)
    restored = run(ctx, lambda: engine.versions.restore_version(
        version_id,
        branch_id,
        ctx.obj["user"],
        valid_from=parse_datetime(at, "validFrom") if at else None,
        comment=comment,
    ))
    get_formatter(ctx).success(
        f"Restored as v{restored.version}",
        data={"id": restored.id},
    )


@app.command("diff")
def diff_versions(
    ctx: typer.Context,
    first: str = typer.Argument(..., help="Earlier version id"),
    second: str = typer.Argument(..., help="Later version id"),
):
    """Show field changes between two versions of the same branch."""
    formatter = get_formatter(ctx)
    engine = get_engine(ctx)
    diff = run(ctx, lambda: engine.versions.get_version_diff(first, second, ctx.obj["user"]))

    if formatter.is_json:
        formatter.print_json(diff.to_dict())
        return
    if diff.is_empty:
        formatter.console.print("[dim]No differences[/dim]")
        return
    for key, value in diff.added.items():
        formatter.console.print(f"[green]+ {key}[/green]: {value}")
    for key, change in diff.modified.items():
        formatter.console.print(f"[yellow]~ {key}[/yellow]: {change['old']} -> {change['new']}")
    for key, value in diff.removed.items():
        formatter.console.print(f"[red]- {key}[/red]: {value}")
