"""Schema inspection commands."""

from typing import Annotated

import typer

from rapengine.cli.context import CLIContext
from rapengine.cli.output import OutputFormatter
from rapengine.schema.markdown import load_directory
from rapengine.schema.registry import SchemaRegistry

# Create schema subcommand group
app = typer.Typer(help="Inspect entity schemas")


@app.command("list")
def schema_list(ctx: typer.Context) -> None:
    """List all entities of the loaded schema."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        entities = engine.list_entities()

        if cli_ctx.json_output:
            formatter.print_data(entities)
        else:
            table_data = []
            for entity_name in entities:
                entity_info = engine.describe_entity(entity_name)
                table_data.append(
                    {
                        "Name": entity_info.name,
                        "Attributes": len(entity_info.attributes),
                        "Derived": len(entity_info.derived_fields),
                        "Rules": len(entity_info.constraints),
                        "Records": entity_info.record_count or 0,
                    }
                )

            formatter.print_table(
                f"Entities ({len(entities)} total)",
                table_data,
                ["Name", "Attributes", "Derived", "Rules", "Records"],
            )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("describe")
def schema_describe(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
) -> None:
    """Show attributes, derived fields and rules of an entity."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        entity_info = engine.describe_entity(entity_name)
        formatter.print_entity_info(entity_info)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("check")
def schema_check(
    ctx: typer.Context,
    directory: Annotated[
        str | None,
        typer.Argument(help="Markdown directory (default: --schema-dir)"),
    ] = None,
) -> None:
    """Parse and validate a schema directory without touching the database.

    Examples:

        rapengine schema check models/
        rapengine -s models/ schema check
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        path = directory or cli_ctx.settings.schema_dir
        if path is None:
            raise ValueError("No schema directory given. Pass DIRECTORY or use --schema-dir.")
        registry = SchemaRegistry.from_specs(load_directory(path))
        entities = registry.list_entities()
        formatter.print_success(
            f"Schema is valid ({len(entities)} entities)",
            {"entities": entities},
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
