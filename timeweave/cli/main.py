"""
Timeweave CLI main entry point.

The main Typer application that provides all CLI commands.
"""

from typing import Optional

import typer

from timeweave import __version__
from timeweave.cli.output import Formatter, OutputFormat
from timeweave.config.settings import configure_logging, get_settings, load_settings_file
from timeweave.telemetry import configure_telemetry, shutdown_telemetry

# Create main app
app = typer.Typer(
    name="timeweave",
    help="Branch-aware temporal versioning and merge engine",
    no_args_is_help=True,
)

# Import and include command groups
from timeweave.cli.commands import branch, merge, version  # noqa: E402

app.add_typer(branch.app, name="branch", help="Create, inspect and fork branches")
app.add_typer(version.app, name="version", help="Create, query and restore versions")
app.add_typer(merge.app, name="merge", help="Merge branches and cherry-pick versions")


# Global options
@app.callback()
def main(
    ctx: typer.Context,
    output: str = typer.Option(
        "human",
        "--output", "-o",
        help="Output format (human, json)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
    store: Optional[str] = typer.Option(
        None,
        "--store",
        envvar="TIMEWEAVE_STORE_PATH",
        help="Directory of the timeline store",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        help="YAML settings file",
    ),
    user: str = typer.Option(
        "local",
        "--user", "-u",
        envvar="TIMEWEAVE_USER",
        help="User recorded as author",
    ),
):
    """
    Timeweave - branch-aware temporal versioning.

    Fork timelines, query them at any world time, and merge them back.
    """
    ctx.ensure_object(dict)

    try:
        output_format = OutputFormat(output.lower())
    except ValueError:
        output_format = OutputFormat.HUMAN

    settings = load_settings_file(config) if config else get_settings()
    if store:
        settings = settings.model_copy(update={"store_path": store})
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    configure_logging(settings)
    if configure_telemetry(settings):
        ctx.call_on_close(shutdown_telemetry)

    ctx.obj["formatter"] = Formatter(format=output_format, verbose=verbose)
    ctx.obj["settings"] = settings
    ctx.obj["user"] = user


@app.command("about")
def about():
    """Show Timeweave version."""
    typer.echo(f"Timeweave v{__version__}")


if __name__ == "__main__":
    app()
