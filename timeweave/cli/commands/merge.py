"""
Merge commands for Timeweave CLI.
"""

from typing import List, Optional

import typer

from timeweave.cli.context import get_engine, get_formatter, run
from timeweave.exceptions import InvalidInputError
from timeweave.merge.models import ConflictResolution
from timeweave.storage.models import parse_datetime

app = typer.Typer()


def _parse_resolutions(values: Optional[List[str]]) -> list[ConflictResolution]:
    """
    Parse PATH=JSON or TYPE:ID:PATH=JSON resolution arguments.

    TYPE runs to the first colon and PATH starts after the last one, so
    entity ids may contain colons.
    """
    resolutions = []
    for value in values or []:
        target, sep, encoded = value.partition("=")
        if not sep or not target:
            raise InvalidInputError(f"Resolution must look like PATH=JSON: {value}")
        if target.count(":") >= 2:
            entity_type, rest = target.split(":", 1)
            entity_id, path = rest.rsplit(":", 1)
            resolutions.append(ConflictResolution(
                path=path, resolved_value=encoded, entity_type=entity_type, entity_id=entity_id,
            ))
        else:
            resolutions.append(ConflictResolution(path=target, resolved_value=encoded))
    return resolutions


@app.command("preview")
def preview_merge(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source branch id"),
    target: str = typer.Argument(..., help="Target branch id"),
    at: str = typer.Option(..., "--at", help="World time (ISO-8601)"),
):
    """Show what merging source into target would do."""
    engine = get_engine(ctx)
    preview = run(ctx, lambda: engine.merges.preview_merge(
        source, target, parse_datetime(at, "worldTime"), ctx.obj["user"],
    ))
    get_formatter(ctx).print_preview(preview)


@app.command("execute")
def execute_merge(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source branch id"),
    target: str = typer.Argument(..., help="Target branch id"),
    at: str = typer.Option(..., "--at", help="World time (ISO-8601)"),
    resolve: Optional[List[str]] = typer.Option(
        None, "--resolve", "-r",
        help="Conflict resolution TYPE:ID:PATH=JSON (repeatable)",
    ),
):
    """
    Merge source into target.

    Examples:
        timeweave merge execute <src> <dst> --at 2024-06-01 -r 'settlement:s1:name="Magnimar"'
    """
    engine = get_engine(ctx)
    result = run(ctx, lambda: engine.merges.execute_merge(
        source,
        target,
        parse_datetime(at, "worldTime"),
        ctx.obj["user"],
        resolutions=_parse_resolutions(resolve),
    ))
    get_formatter(ctx).success(
        f"Merged with {result.versions_created} new versions",
        data=result.to_dict(),
    )


@app.command("cherry-pick")
def cherry_pick(
    ctx: typer.Context,
    version_id: str = typer.Argument(..., help="Version to apply"),
    target: str = typer.Argument(..., help="Target branch id"),
    resolve: Optional[List[str]] = typer.Option(
        None, "--resolve", "-r",
        help="Conflict resolution PATH=JSON (repeatable)",
    ),
):
    """Apply a single version onto another branch."""
    formatter = get_formatter(ctx)
    engine = get_engine(ctx)
    result = run(ctx, lambda: engine.merges.cherry_pick(
        version_id, target, ctx.obj["user"], resolutions=_parse_resolutions(resolve),
    ))

    if result.has_conflict:
        if formatter.is_json:
            formatter.print_json(result.to_dict())
        else:
            picked = engine.store.get_version(version_id)
            formatter.print_conflicts(
                result.conflicts,
                entity_type=picked.entity_type if picked else "",
                title="Cherry-pick conflicts",
            )
            formatter.warning("Re-run with --resolve PATH=JSON for every conflict")
        raise typer.Exit(1)

    formatter.success("Cherry-pick applied", data=result.to_dict())


@app.command("history")
def merge_history(
    ctx: typer.Context,
    branch_id: str = typer.Argument(..., help="Branch id"),
):
    """List merges into or out of a branch."""
    formatter = get_formatter(ctx)
    engine = get_engine(ctx)
    records = run(ctx, lambda: engine.merges.get_merge_history(branch_id, ctx.obj["user"]))

    if formatter.is_json:
        formatter.print_json({"merges": [r.to_dict() for r in records]})
        return
    if not records:
        formatter.console.print("[dim]No merges found[/dim]")
        return
    for record in records:
        formatter.console.print(
            f"[cyan]{record.id}[/cyan] {record.source_branch_id} -> {record.target_branch_id} "
            f"at {record.world_time.isoformat()} "
            f"[dim]({record.entities_merged} entities, {record.conflicts_count} conflicts)[/dim]"
        )
