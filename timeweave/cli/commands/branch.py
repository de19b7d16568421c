"""
Branch commands for Timeweave CLI.
"""

from typing import List, Optional

import typer

from timeweave.cli.context import get_engine, get_formatter, run
from timeweave.storage.models import parse_datetime

app = typer.Typer()


@app.command("create")
def create_branch(
    ctx: typer.Context,
    scope: str = typer.Argument(..., help="Scope (e.g. campaign id)"),
    name: str = typer.Argument(..., help="Branch name"),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help="Parent branch id"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Description"),
    diverged_at: Optional[str] = typer.Option(None, "--diverged-at", help="Divergence world time (ISO-8601)"),
    tag: Optional[List[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
):
    """
    Create a branch.

    Examples:
        timeweave branch create campaign-1 Main
        timeweave branch create campaign-1 "What if" --parent <id>
    """
    formatter = get_formatter(ctx)
    engine = get_engine(ctx)

    branch = run(ctx, lambda: engine.branches.create(
        scope,
        name,
        ctx.obj["user"],
        parent_id=parent,
        description=description,
        diverged_at=parse_datetime(diverged_at, "divergedAt") if diverged_at else None,
        tags=tag,
    ))
    formatter.success(f"Branch '{branch.name}' created", data={"id": branch.id})


@app.command("list")
def list_branches(
    ctx: typer.Context,
    scope: str = typer.Argument(..., help="Scope (e.g. campaign id)"),
):
    """List the branches of a scope."""
    engine = get_engine(ctx)
    branches = run(ctx, lambda: engine.branches.find_by_scope(scope))
    get_formatter(ctx).print_branches(branches)


@app.command("tree")
def branch_tree(
    ctx: typer.Context,
    scope: str = typer.Argument(..., help="Scope (e.g. campaign id)"),
):
    """Show the branch hierarchy of a scope."""
    engine = get_engine(ctx)
    roots = run(ctx, lambda: engine.branches.get_hierarchy(scope))
    get_formatter(ctx).print_hierarchy(roots)


@app.command("ancestry")
def branch_ancestry(
    ctx: typer.Context,
    branch_id: str = typer.Argument(..., help="Branch id"),
):
    """Show a branch's ancestry, root first."""
    engine = get_engine(ctx)
    chain = run(ctx, lambda: engine.branches.get_ancestry(branch_id))
    get_formatter(ctx).print_branches(chain)


@app.command("rename")
def rename_branch(
    ctx: typer.Context,
    branch_id: str = typer.Argument(..., help="Branch id"),
    name: str = typer.Argument(..., help="New name"),
):
    """Rename a branch."""
    engine = get_engine(ctx)
    branch = run(ctx, lambda: engine.branches.update(branch_id, ctx.obj["user"], name=name))
    get_formatter(ctx).success(f"Branch renamed to '{branch.name}'")


@app.command("delete")
def delete_branch(
    ctx: typer.Context,
    branch_id: str = typer.Argument(..., help="Branch id"),
):
    """Delete a branch (children must be deleted first)."""
    engine = get_engine(ctx)
    branch = run(ctx, lambda: engine.branches.delete(branch_id, ctx.obj["user"]))
    get_formatter(ctx).success(f"Branch '{branch.name}' deleted")


@app.command("fork")
def fork_branch(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source branch id"),
    name: str = typer.Argument(..., help="New branch name"),
    at: str = typer.Option(..., "--at", help="Divergence world time (ISO-8601)"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Description"),
):
    """
    Fork a branch at a world time, copying every visible entity.

    Examples:
        timeweave branch fork <id> "Alt timeline" --at 2024-03-01T00:00:00Z
    """
    engine = get_engine(ctx)
    result = run(ctx, lambda: engine.forks.fork(
        source,
        name,
        parse_datetime(at, "divergedAt"),
        ctx.obj["user"],
        description=description,
    ))
    get_formatter(ctx).success(
        f"Forked '{result.branch.name}' with {result.versions_copied} versions",
        data={"id": result.branch.id, **result.copied_by_type},
    )
