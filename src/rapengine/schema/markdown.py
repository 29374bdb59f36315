"""Markdown schema loader.

Reads one ``# EntityName`` markdown file per entity (plus an optional global
``Types.md``) and turns it into EntitySpec models for the registry.

Example entity file::

    # Reading

    A meter reading.

    ## Attributes

    | Attribute  | Type            | Description         | Example    |
    |------------|-----------------|---------------------|------------|
    | meter      | Meter           | Meter read [UK1]    | 3          |
    | reading_at | date            | Time of reading [UK1] | 2024-01-31 |
    | value      | number [MIN=0]  | Counter value       | 120        |
    | usage      | number          | [CALCULATED]        | null       |

    ## Calculations

    ### usage
    **Depends on:** meter, reading_at, value
    **Partition:** meter
    **Sort:** reading_at
    **Transform:** delta(value)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from rapengine.core.types import (
    AttributeSpec,
    CustomScriptConstraint,
    DerivedFieldSpec,
    EntitySpec,
    EnumConstraint,
    LengthConstraint,
    NumericRangeConstraint,
    PatternConstraint,
    RangeConstraint,
    SemanticType,
    TimeRangeConstraint,
    UniqueConstraint,
)
from rapengine.exceptions import SchemaError

logger = logging.getLogger(__name__)

GLOBAL_TYPES_FILE = "Types.md"

TYPE_ALIASES = {
    "text": SemanticType.STRING,
    "integer": SemanticType.INT,
    "float": SemanticType.NUMBER,
    "decimal": SemanticType.NUMBER,
    "real": SemanticType.NUMBER,
    "boolean": SemanticType.BOOL,
    "datetime": SemanticType.DATE,
    "email": SemanticType.MAIL,
}

_HEADING = re.compile(r"^(#{1,3})\s+(.+?)\s*$")
_FIELD = re.compile(r"^\*\*(.+?):\*\*\s*(.*)$")
_ANNOTATION = re.compile(r"\[([A-Z]+\d*)(?:=([^\]]*))?\]", re.IGNORECASE)
_TRANSFORM = re.compile(r"^(\w+)\s*(?:\(\s*(\w*)\s*\))?$")
_MESSAGE_FIELD = re.compile(r"^message\s*\((\w[\w-]*)\)$", re.IGNORECASE)
_CELL_SPLIT = re.compile(r"(?<!\\)\|")


# === Markdown structure helpers ===


def _split_sections(lines: list[str], level: int) -> tuple[list[str], list[tuple[str, list[str]]]]:
    """Split lines at headings of exactly ``level`` (2 for ##, 3 for ###).

    Fenced code blocks are never split. Returns the lines before the first
    heading and (title, body) pairs.
    """
    preamble: list[str] = []
    sections: list[tuple[str, list[str]]] = []
    in_code = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code = not in_code
        match = None if in_code else _HEADING.match(stripped)
        if match and len(match.group(1)) == level:
            sections.append((match.group(2), []))
        elif sections:
            sections[-1][1].append(line)
        else:
            preamble.append(line)
    return preamble, sections


def _table(lines: Iterable[str]) -> list[dict[str, str]]:
    """Rows of the first markdown table in ``lines``, keyed by lower-case header."""
    headers: list[str] | None = None
    rows: list[dict[str, str]] = []
    for line in lines:
        stripped = line.strip()
        if not stripped.startswith("|"):
            if headers is not None and rows:
                break
            continue
        cells = [c.strip().replace("\\|", "|") for c in _CELL_SPLIT.split(stripped)[1:-1]]
        if headers is None:
            headers = [c.lower() for c in cells]
        elif all(set(c) <= set("-: ") for c in cells):
            continue
        else:
            rows.append(dict(zip(headers, cells, strict=False)))
    return rows


def _fields(lines: Iterable[str]) -> dict[str, str]:
    """``**Name:** value`` lines, keyed by lower-case name."""
    found: dict[str, str] = {}
    for line in lines:
        match = _FIELD.match(line.strip())
        if match:
            found[match.group(1).strip().lower()] = match.group(2).strip()
    return found


def _code_block(lines: Iterable[str]) -> str | None:
    body: list[str] = []
    inside = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("```"):
            if inside:
                return "\n".join(body).strip()
            inside = True
            continue
        if inside:
            body.append(line)
    return None


def _prose(lines: Iterable[str]) -> str | None:
    """First paragraph of plain text (not a table, field, heading or code)."""
    paragraph: list[str] = []
    in_code = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code = not in_code
            continue
        if in_code or stripped.startswith(("|", "#", "**")):
            if paragraph:
                break
            continue
        if not stripped:
            if paragraph:
                break
            continue
        paragraph.append(stripped)
    return " ".join(paragraph) or None


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _strip_backticks(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith("`") and value.endswith("`"):
        return value[1:-1]
    return value


def _coerce_literal(value: str) -> Any:
    """Enum internal values: integers stay integers, everything else is a string."""
    value = _strip_backticks(value)
    if re.fullmatch(r"-?\d+", value):
        return int(value)
    return value


# === Types ===


def parse_types(text: str, scope: str = "Types") -> dict[str, PatternConstraint | EnumConstraint]:
    """Parse named pattern and enum types.

    Each type is a ``### Name`` block containing either a ``**Pattern:**``
    line (optional ``**Description:**`` and ``**Example:**``), a table with a
    ``Pattern`` column, or a value table with an ``Internal`` (or ``Value``)
    column for an enum.
    """
    types: dict[str, PatternConstraint | EnumConstraint] = {}
    _, blocks = _split_sections(text.splitlines(), 3)
    for name, body in blocks:
        fields = _fields(body)
        rows = _table(body)
        description = fields.get("description") or _prose(body)
        if "pattern" in fields:
            types[name] = PatternConstraint(
                regex=_strip_backticks(fields["pattern"]),
                description=description,
                example=fields.get("example"),
            )
        elif rows and "pattern" in rows[0]:
            types[name] = PatternConstraint(
                regex=_strip_backticks(rows[0]["pattern"]),
                description=description,
                example=rows[0].get("example") or None,
            )
        elif rows and ("internal" in rows[0] or "value" in rows[0]):
            column = "internal" if "internal" in rows[0] else "value"
            values = [_coerce_literal(row[column]) for row in rows if row.get(column)]
            types[name] = EnumConstraint(allowed_values=values)
        else:
            raise SchemaError(scope, f"type '{name}' has neither a pattern nor a value table")
    return types


# === Entities ===


def _resolve_type(
    entity: str,
    attribute: str,
    type_name: str,
    types: dict[str, PatternConstraint | EnumConstraint],
) -> tuple[SemanticType, list[Any], str | None]:
    """Semantic type, implied constraints and foreign-key target of a Type cell."""
    # Semantic types are lower-case; capitalized names are types or entities
    if type_name in SemanticType.values() and type_name not in ("pattern", "enum", "foreign-key"):
        return SemanticType(type_name), [], None
    if type_name in TYPE_ALIASES:
        return TYPE_ALIASES[type_name], [], None
    named = types.get(type_name)
    if isinstance(named, PatternConstraint):
        return SemanticType.PATTERN, [named], None
    if isinstance(named, EnumConstraint):
        return SemanticType.ENUM, [named], None
    if re.fullmatch(r"[A-Z]\w*", type_name):
        return SemanticType.FOREIGN_KEY, [], type_name
    raise SchemaError(
        entity,
        f"unknown type '{type_name}'. Use a semantic type "
        f"({', '.join(SemanticType.values())}), a declared type or an entity name",
        attribute,
    )


def _parse_default(raw: str, semantic_type: SemanticType) -> Any:
    raw = raw.strip()
    if semantic_type == SemanticType.INT:
        return int(raw)
    if semantic_type == SemanticType.NUMBER:
        return float(raw)
    if semantic_type == SemanticType.BOOL:
        return raw.lower() in ("true", "1", "yes")
    if semantic_type == SemanticType.ENUM:
        return _coerce_literal(raw)
    return raw


def _parse_attribute(
    entity: str,
    row: dict[str, str],
    types: dict[str, PatternConstraint | EnumConstraint],
) -> AttributeSpec:
    name = row.get("attribute", "").strip()
    if not name:
        raise SchemaError(entity, "attribute row without a name")
    type_cell = row.get("type", "string")
    description = row.get("description", "")
    example = row.get("example", "")

    annotations = {
        m.group(1).upper(): m.group(2) for m in _ANNOTATION.finditer(f"{type_cell} {description}")
    }
    type_name = _ANNOTATION.sub("", type_cell).strip() or "string"
    text = _ANNOTATION.sub("", description).strip()

    semantic_type, constraints, references = _resolve_type(entity, name, type_name, types)

    low, high = annotations.get("MIN"), annotations.get("MAX")
    if low is not None or high is not None:
        try:
            constraints.append(
                RangeConstraint(
                    min=float(low) if low is not None else None,
                    max=float(high) if high is not None else None,
                )
            )
        except ValueError as e:
            raise SchemaError(entity, f"invalid [MIN]/[MAX] bound: {e}", name) from e
    shortest, longest = annotations.get("MINLEN"), annotations.get("MAXLEN")
    if shortest is not None or longest is not None:
        try:
            constraints.append(
                LengthConstraint(
                    min=int(shortest) if shortest is not None else None,
                    max=int(longest) if longest is not None else None,
                )
            )
        except ValueError as e:
            raise SchemaError(entity, f"invalid [MINLEN]/[MAXLEN] bound: {e}", name) from e
    if "UNIQUE" in annotations:
        constraints.append(UniqueConstraint())
    for key in annotations:
        if re.fullmatch(r"UK\d+", key):
            constraints.append(UniqueConstraint(key_id=key))

    default = None
    if annotations.get("DEFAULT") is not None:
        try:
            default = _parse_default(annotations["DEFAULT"], semantic_type)
        except ValueError as e:
            raise SchemaError(entity, f"invalid default {annotations['DEFAULT']!r}: {e}", name) from e

    calculated = "CALCULATED" in annotations
    optional = (
        "OPTIONAL" in annotations
        or default is not None
        or calculated
        or example.strip().lower() == "null"
    )
    return AttributeSpec(
        name=name,
        type=semantic_type,
        constraints=constraints,
        default=default,
        nullable=optional,
        is_label="LABEL" in annotations,
        is_secondary_label="LABEL2" in annotations,
        references=references,
        calculated=calculated,
        description=text or None,
    )


def _parse_constraint(entity: str, name: str, body: list[str]) -> Any:
    fields = _fields(body)
    messages = {}
    for key, value in fields.items():
        match = _MESSAGE_FIELD.match(key)
        if match:
            messages[match.group(1).lower()] = value

    if "timerange" in fields:
        bounds = _split_list(fields["timerange"])
        if len(bounds) != 2:
            raise SchemaError(entity, f"constraint '{name}': TimeRange needs 'start, end'")
        return TimeRangeConstraint(start_attr=bounds[0], end_attr=bounds[1], messages=messages)
    if "numericrange" in fields:
        bounds = _split_list(fields["numericrange"])
        if len(bounds) != 2:
            raise SchemaError(entity, f"constraint '{name}': NumericRange needs 'lower, upper'")
        return NumericRangeConstraint(lower_attr=bounds[0], upper_attr=bounds[1], messages=messages)

    return CustomScriptConstraint(
        name=name,
        body=_code_block(body),
        predicate=fields.get("predicate"),
        attributes=_split_list(fields.get("attributes", "")),
        messages=messages,
    )


def _parse_calculation(entity: str, target: str, body: list[str]) -> DerivedFieldSpec:
    fields = _fields(body)
    spec: dict[str, Any] = {
        "target": target,
        "depends_on": _split_list(fields.get("depends on", "")),
        "partition_key": fields.get("partition") or None,
        "sort_key": _split_list(fields.get("sort", "")),
        "description": _prose(body),
    }
    if "transform" in fields:
        match = _TRANSFORM.match(fields["transform"])
        if not match:
            raise SchemaError(
                entity, f"invalid transform {fields['transform']!r}; use name(source)", target
            )
        spec["transform"] = match.group(1)
        spec["source"] = match.group(2) or None
    if "trigger" in fields:
        spec["trigger"] = fields["trigger"].upper()
    try:
        return DerivedFieldSpec(**spec)
    except ValueError as e:
        raise SchemaError(entity, f"invalid calculation: {e}", target) from e


def parse_entity_markdown(
    text: str,
    global_types: dict[str, PatternConstraint | EnumConstraint] | None = None,
) -> EntitySpec:
    """Parse one entity markdown document.

    Args:
        text: Markdown content starting with ``# EntityName``
        global_types: Types shared by every entity (from Types.md)

    Returns:
        EntitySpec ready for SchemaRegistry.register_spec

    Raises:
        SchemaError: If the document is malformed
    """
    preamble, sections = _split_sections(text.splitlines(), 2)
    title = next((_HEADING.match(line.strip()) for line in preamble if line.strip()), None)
    if title is None or len(title.group(1)) != 1:
        raise SchemaError("?", "entity markdown must start with '# EntityName'")
    entity = title.group(2).strip()
    description = _prose(preamble[1:]) if preamble else None

    by_title = {name.strip().lower(): body for name, body in sections}
    types = dict(global_types or {})
    if "types" in by_title:
        types.update(parse_types("\n".join(by_title["types"]), entity))

    attribute_lines = by_title.get("attributes", preamble)
    rows = _table(attribute_lines)
    if not rows:
        raise SchemaError(entity, "no attribute table found under '## Attributes'")
    attributes = [_parse_attribute(entity, row, types) for row in rows]

    constraints = []
    if "constraints" in by_title:
        _, blocks = _split_sections(by_title["constraints"], 3)
        constraints = [_parse_constraint(entity, name, body) for name, body in blocks]

    derived = []
    if "calculations" in by_title:
        _, blocks = _split_sections(by_title["calculations"], 3)
        derived = [_parse_calculation(entity, name.strip(), body) for name, body in blocks]

    # An attribute can be flagged [CALCULATED] before its calculation is written
    targets = {d.target for d in derived}
    for attr in attributes:
        if attr.calculated and attr.name not in targets:
            logger.warning(f"'{entity}.{attr.name}' is marked [CALCULATED] but has no calculation")

    try:
        return EntitySpec(
            name=entity,
            attributes=attributes,
            derived_fields=derived,
            constraints=constraints,
            description=description,
        )
    except ValueError as e:
        raise SchemaError(entity, f"malformed definition: {e}") from e


def load_directory(path: str | Path) -> list[EntitySpec]:
    """Load every entity markdown file in a directory.

    ``Types.md`` (if present) provides global types; every other ``*.md``
    file is one entity.

    Raises:
        SchemaError: If the directory is missing or a file is malformed
    """
    directory = Path(path)
    if not directory.is_dir():
        raise SchemaError(str(directory), "schema directory does not exist")

    global_types: dict[str, PatternConstraint | EnumConstraint] = {}
    types_file = directory / GLOBAL_TYPES_FILE
    if types_file.exists():
        global_types = parse_types(types_file.read_text(encoding="utf-8"), GLOBAL_TYPES_FILE)

    specs = []
    for file in sorted(directory.glob("*.md")):
        if file.name == GLOBAL_TYPES_FILE:
            continue
        specs.append(parse_entity_markdown(file.read_text(encoding="utf-8"), global_types))
        logger.debug(f"Parsed entity '{specs[-1].name}' from {file.name}")

    logger.info(f"Loaded {len(specs)} entity definitions from {directory}")
    return specs
