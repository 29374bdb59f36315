"""Output formatting for CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rapengine.core.types import EntityInfo, ViolationReport
from rapengine.exceptions import RapEngineError, RecordValidationError

console = Console()


def _constraint_summary(constraints: list[Any]) -> str:
    parts = []
    for c in constraints:
        if c.kind == "Range":
            low = "" if c.min is None else f"{c.min:g}"
            high = "" if c.max is None else f"{c.max:g}"
            parts.append(f"Range[{low}..{high}]")
        elif c.kind == "Length":
            low = "" if c.min is None else str(c.min)
            high = "" if c.max is None else str(c.max)
            parts.append(f"Length[{low}..{high}]")
        elif c.kind == "Unique":
            parts.append(f"Unique({c.key_id})" if c.key_id else "Unique")
        elif c.kind == "Pattern":
            parts.append(f"Pattern({c.regex})")
        elif c.kind == "Enum":
            parts.append(f"Enum({', '.join(str(v) for v in c.allowed_values)})")
        else:
            parts.append(c.kind)
    return ", ".join(parts)


class OutputFormatter:
    """Formats output for terminal or JSON mode."""

    def __init__(self, json_mode: bool = False, locale: str = "en") -> None:
        """Initialize formatter.

        Args:
            json_mode: If True, output JSON instead of Rich formatting
            locale: Locale of violation messages shown in the terminal
        """
        self.json_mode = json_mode
        self.locale = locale

    def print_table(
        self,
        title: str,
        data: list[dict[str, Any]],
        columns: list[str],
    ) -> None:
        """Print data as Rich table or JSON array.

        Args:
            title: Table title
            data: List of row dictionaries
            columns: Column names to display
        """
        if self.json_mode:
            print(json.dumps(data, default=str, indent=2))
        else:
            table = Table(title=title, show_header=True, header_style="bold magenta")
            for col in columns:
                table.add_column(col)
            for row in data:
                table.add_row(*[str(row.get(col, "")) for col in columns])
            console.print(table)

    def print_entity_info(self, entity: EntityInfo) -> None:
        """Print entity information with attributes, derived fields and rules.

        Args:
            entity: Entity information to display
        """
        if self.json_mode:
            print(json.dumps(entity.model_dump(mode="json"), default=str, indent=2))
            return

        console.print(f"\n[bold]Entity:[/bold] {entity.name}")
        if entity.description:
            console.print(f"Description: {entity.description}")
        if entity.record_count is not None:
            console.print(f"Records: {entity.record_count:,}")

        console.print(f"\n[bold]Attributes ({len(entity.attributes)}):[/bold]")
        attr_table = Table(show_header=True, header_style="bold cyan")
        attr_table.add_column("Name")
        attr_table.add_column("Type")
        attr_table.add_column("Required")
        attr_table.add_column("Constraints")
        attr_table.add_column("Default")
        for attr in entity.attributes:
            type_text = f"{attr.type} -> {attr.references}" if attr.references else str(attr.type)
            if attr.calculated:
                type_text += " (calculated)"
            attr_table.add_row(
                attr.name + (" [label]" if attr.is_label else ""),
                type_text,
                "✓" if not attr.nullable else "",
                _constraint_summary(attr.constraints),
                "" if attr.default is None else str(attr.default),
            )
        console.print(attr_table)

        if entity.derived_fields:
            console.print(f"\n[bold]Derived fields ({len(entity.derived_fields)}):[/bold]")
            derived_table = Table(show_header=True, header_style="bold cyan")
            derived_table.add_column("Target")
            derived_table.add_column("Transform")
            derived_table.add_column("Partition")
            derived_table.add_column("Sort")
            derived_table.add_column("Depends on")
            derived_table.add_column("Trigger")
            for spec in entity.derived_fields:
                derived_table.add_row(
                    spec.target,
                    f"{spec.transform}({spec.source or ''})",
                    spec.partition_key or "(all)",
                    ", ".join(str(k) for k in spec.sort_key),
                    ", ".join(spec.depends_on),
                    str(spec.trigger),
                )
            console.print(derived_table)

        if entity.constraints:
            console.print(f"\n[bold]Rules ({len(entity.constraints)}):[/bold]")
            for rule in entity.constraints:
                name = getattr(rule, "name", None) or f"{rule.start_attr} <= {rule.end_attr}"
                console.print(f"  {rule.kind}: {name}")

    def print_violations(self, report: ViolationReport) -> None:
        """Print a violation report.

        Args:
            report: Report to display (empty means valid)
        """
        if self.json_mode:
            print(json.dumps(report.model_dump(mode="json"), default=str, indent=2))
            return
        if report.is_valid:
            console.print(f"✓ Valid {report.entity_type} record", style="green")
            return
        table = Table(
            title=f"{len(report)} violation(s)", show_header=True, header_style="bold red"
        )
        table.add_column("Attribute")
        table.add_column("Kind")
        table.add_column("Message")
        for violation in report.violations:
            message = violation.messages.get(self.locale, violation.message)
            table.add_row(violation.attribute, str(violation.kind), message)
        console.print(table)

    def print_success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Print success message.

        Args:
            message: Success message
            details: Optional details to display
        """
        if self.json_mode:
            output = {"success": True, "message": message}
            if details:
                output.update(details)
            print(json.dumps(output, default=str, indent=2))
        else:
            console.print(f"✓ {message}", style="green")
            if details:
                for key, value in details.items():
                    console.print(f"  {key}: {value}", style="dim")

    def print_error(self, error: Exception) -> None:
        """Print error message.

        Args:
            error: Exception to display
        """
        if self.json_mode:
            if isinstance(error, RapEngineError):
                print(json.dumps(error.to_dict(), default=str, indent=2))
            else:
                print(json.dumps({"error": str(error)}, indent=2))
            return

        if isinstance(error, RecordValidationError):
            console.print(Panel(str(error), title="[red]Rejected[/red]", border_style="red"))
            self.print_violations(error.report)
            return

        error_text = str(error)
        if isinstance(error, RapEngineError) and error.context:
            context_str = "\n".join(f"{k}: {v}" for k, v in error.context.items())
            error_text = f"{error_text}\n\n{context_str}"
        console.print(Panel(error_text, title="[red]Error[/red]", border_style="red"))

    def print_data(self, data: Any) -> None:
        """Print generic data (dict, list, etc.).

        Args:
            data: Data to print
        """
        if self.json_mode:
            print(json.dumps(data, default=str, indent=2))
        else:
            # Pretty print with Rich
            import pprint

            pprint.pprint(data)
