"""rapengine CLI - Main entry point."""

import logging
import sys
from typing import Annotated

import typer

import rapengine
from rapengine.cli.context import CLIContext
from rapengine.core.config import EngineSettings

# Create main Typer app
app = typer.Typer(
    name="rapengine",
    help="rapengine CLI - schema-driven validation and derived attributes",
    no_args_is_help=True,
)

# Store CLI context globally (will be set in callback)
state: dict[str, CLIContext] = {}


@app.callback()
def main_callback(
    ctx: typer.Context,
    database: Annotated[
        str | None,
        typer.Option(
            "--database",
            "-d",
            envvar="RAPENGINE_URL",
            help="Database URL (PostgreSQL or SQLite)",
        ),
    ] = None,
    schema_dir: Annotated[
        str | None,
        typer.Option(
            "--schema-dir",
            "-s",
            envvar="RAPENGINE_SCHEMA_DIR",
            help="Directory of entity markdown files",
        ),
    ] = None,
    locale: Annotated[
        str | None,
        typer.Option(
            "--locale",
            "-l",
            envvar="RAPENGINE_LOCALE",
            help="Locale of violation messages (en, de)",
        ),
    ] = None,
    echo: Annotated[
        bool,
        typer.Option(
            "--echo",
            "-e",
            help="Echo SQL statements to console",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            "-j",
            help="Output as JSON (machine-readable)",
        ),
    ] = False,
) -> None:
    """Initialize CLI context with global options."""
    settings = EngineSettings.from_env(
        database_url=database,
        schema_dir=schema_dir,
        default_locale=locale,
        echo=echo or None,
    )
    logging.basicConfig(
        stream=sys.stderr,
        level=settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )

    cli_ctx = CLIContext(settings=settings, json_output=json_output)

    # Store in Typer context for command access
    ctx.obj = cli_ctx
    state["cli_ctx"] = cli_ctx


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"rapengine v{rapengine.__version__}")


# Register command groups
from rapengine.cli.commands import data, schema  # noqa: E402

app.add_typer(schema.app, name="schema")
app.add_typer(data.app, name="data")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
