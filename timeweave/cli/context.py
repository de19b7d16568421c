"""
Shared helpers for CLI commands.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer

from timeweave.cli.output import Formatter
from timeweave.engine import TimelineEngine
from timeweave.exceptions import InvalidInputError, TimeweaveError

T = TypeVar("T")


def get_formatter(ctx: typer.Context) -> Formatter:
    return ctx.obj["formatter"]


def get_engine(ctx: typer.Context) -> TimelineEngine:
    """Engine for the command, created on first use."""
    if "engine" not in ctx.obj:
        ctx.obj["engine"] = TimelineEngine(settings=ctx.obj["settings"])
    return ctx.obj["engine"]


def run(ctx: typer.Context, operation: Callable[[], Awaitable[T]]) -> T:
    """
    Run an async engine operation, reporting engine errors and exiting 1.
    """
    formatter = get_formatter(ctx)
    try:
        return asyncio.run(operation())
    except TimeweaveError as e:
        formatter.error(str(e), code=type(e).__name__)
        raise typer.Exit(1)


def load_json_object(value: str) -> dict[str, Any]:
    """
    Parse a JSON object from an inline string or an @file reference.
    """
    if value.startswith("@"):
        path = Path(value[1:])
        if not path.exists():
            raise InvalidInputError(f"File not found: {path}")
        value = path.read_text()
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidInputError("payload must be a non-null object")
    return data
