"""Record commands: writes go through validation and derivation."""

from typing import Annotated

import typer

from rapengine.cli.context import CLIContext
from rapengine.cli.output import OutputFormatter
from rapengine.cli.parsing import parse_record_json, read_json_file, read_jsonl_file

# Create data subcommand group
app = typer.Typer(help="Manage entity records")


@app.command("insert")
def data_insert(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    data_json: Annotated[
        str | None,
        typer.Argument(help="Record data as JSON string"),
    ] = None,
    from_file: Annotated[
        str | None,
        typer.Option("--from-file", "-f", help="Load data from JSON/JSONL file"),
    ] = None,
    batch: Annotated[
        bool,
        typer.Option("--batch", help="Batch insert from JSONL file (multiple records)"),
    ] = False,
) -> None:
    """Insert record(s) into an entity.

    Rejected records print their violations and exit with code 1.

    Examples:

        # Inline JSON (single record)
        rapengine data insert Reading '{"meter": "M1", "reading_at": "2024-01-01", "value": 100}'

        # Batch insert from JSONL file (stops at the first rejected record)
        rapengine data insert Reading --from-file readings.jsonl --batch
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        if from_file is None and data_json is None:
            raise typer.BadParameter("Either provide data as JSON string or use --from-file")

        engine = cli_ctx.get_engine()
        entity = engine.entity(entity_name)

        if from_file and batch:
            records = entity.insert_many(read_jsonl_file(from_file), locale=cli_ctx.locale)
            formatter.print_success(
                f"Inserted {len(records)} records",
                {"count": len(records), "ids": [r["id"] for r in records[:5]]},
            )
        else:
            data = read_json_file(from_file) if from_file else parse_record_json(data_json or "")
            record = entity.insert(data, locale=cli_ctx.locale)
            formatter.print_success("Inserted record", {"id": record["id"]})
            if not cli_ctx.json_output:
                formatter.print_data(record)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("get")
def data_get(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
) -> None:
    """Get a record by ID, including its derived values."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        formatter.print_data(engine.entity(entity_name).get(record_id))
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("update")
def data_update(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
    data_json: Annotated[str, typer.Argument(help="Changed attributes as JSON string")],
) -> None:
    """Update a record; affected derived values are recomputed.

    Examples:

        rapengine data update Reading 550e8400-e29b-41d4-a716-446655440000 '{"value": 130}'
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        entity = engine.entity(entity_name)
        updated = entity.update(record_id, parse_record_json(data_json), locale=cli_ctx.locale)
        formatter.print_success("Record updated", {"id": record_id})
        if not cli_ctx.json_output:
            formatter.print_data(updated)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("delete")
def data_delete(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
) -> None:
    """Delete a record and recompute the partitions it leaves."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        engine.entity(entity_name).delete(record_id)
        formatter.print_success(f"Record deleted: {record_id}")
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("list")
def data_list(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of records"),
    ] = 20,
    offset: Annotated[
        int,
        typer.Option("--offset", help="Number of records to skip"),
    ] = 0,
) -> None:
    """List records, oldest first."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        entity = engine.entity(entity_name)
        records = entity.find_all(limit=limit, offset=offset)
        columns = ["id", *engine.registry.lookup(entity_name).attribute_names]
        formatter.print_table(
            f"{entity_name} ({len(records)} of {entity.count()})",
            records,
            columns,
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("validate")
def data_validate(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    data_json: Annotated[str, typer.Argument(help="Record data as JSON string")],
    record_id: Annotated[
        str | None,
        typer.Option("--id", help="Validate as changes to this stored record"),
    ] = None,
) -> None:
    """Validate record data without storing it.

    Exits with code 1 when the record has violations.

    Examples:

        rapengine data validate Book '{"title": "Dune", "price": -1}'
        rapengine -l de data validate Book '{"price": 30}' --id 550e8400-e29b-41d4-a716-446655440000
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        report = engine.entity(entity_name).validate(
            parse_record_json(data_json), record_id=record_id, locale=cli_ctx.locale
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()

    formatter.print_violations(report)
    if not report.is_valid:
        raise typer.Exit(code=1)


@app.command("rebuild")
def data_rebuild(
    ctx: typer.Context,
    entity_name: Annotated[str, typer.Argument(help="Entity name")],
    field: Annotated[
        str | None,
        typer.Option("--field", help="Only this derived field (default: all)"),
    ] = None,
) -> None:
    """Recompute derived fields over all stored records.

    Also runs ON_DEMAND fields, which regular writes never touch.
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output, cli_ctx.locale)

    try:
        engine = cli_ctx.get_engine()
        changed = engine.entity(entity_name).rebuild(field)
        formatter.print_success(
            f"Rebuilt {entity_name}",
            {"field": field or "(all)", "changed_values": changed},
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
