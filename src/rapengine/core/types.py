"""Core types and specifications for rapengine.

All types are pydantic models (or NamedTuples) so schema input can be passed
as plain dicts and every result is JSON-serializable.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, NamedTuple

from pydantic import BaseModel, Field, field_validator

from rapengine.exceptions import DerivationFailure, RecordValidationError

# A record is a plain mapping owned by the storage layer.
Record = dict[str, Any]

# Keys every record carries besides its attributes.
SYSTEM_KEYS = frozenset({"id", "entity_type", "created_at", "updated_at"})


class SemanticType(StrEnum):
    """Semantic attribute types."""

    STRING = "string"
    INT = "int"
    NUMBER = "number"
    DATE = "date"
    BOOL = "bool"
    URL = "url"
    MAIL = "mail"
    JSON = "json"
    GEO = "geo"
    ADDRESS = "address"
    CONTACT = "contact"
    PATTERN = "pattern"
    ENUM = "enum"
    FOREIGN_KEY = "foreign-key"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid semantic type values."""
        return [t.value for t in cls]


class ConstraintKind(StrEnum):
    """Kinds of violations a validation can report."""

    REQUIRED = "Required"
    TYPE = "Type"
    RANGE = "Range"
    LENGTH = "Length"
    UNIQUE = "Unique"
    PATTERN = "Pattern"
    ENUM = "Enum"
    TIME_RANGE = "TimeRange"
    NUMERIC_RANGE = "NumericRange"
    CUSTOM_SCRIPT = "CustomScript"
    SCRIPT_ERROR = "ScriptError"


class Trigger(StrEnum):
    """When a derived field is recomputed."""

    ONCHANGE = "ONCHANGE"  # After every write touching its dependencies
    ON_DEMAND = "ON_DEMAND"  # Only on an explicit rebuild


class WriteState(StrEnum):
    """States of a single write passing through the engine facade."""

    IDLE = "Idle"
    VALIDATING = "Validating"
    REJECTED = "Rejected"
    DERIVING = "Deriving"
    COMMITTED = "Committed"


# === Constraint specifications ===


class RangeConstraint(BaseModel):
    """Numeric value must lie within [min, max]."""

    kind: Literal["Range"] = "Range"
    min: float | None = None
    max: float | None = None

    model_config = {"frozen": True}


class LengthConstraint(BaseModel):
    """String length (in characters) must lie within [min, max]."""

    kind: Literal["Length"] = "Length"
    min: int | None = Field(default=None, ge=0)
    max: int | None = Field(default=None, ge=0)

    model_config = {"frozen": True}


class UniqueConstraint(BaseModel):
    """Value (or composite key tuple) must not be shared by another record."""

    kind: Literal["Unique"] = "Unique"
    key_id: str | None = Field(
        default=None, description="Composite key id (e.g. 'UK1'); None = single column"
    )

    model_config = {"frozen": True}


class PatternConstraint(BaseModel):
    """String value must fully match a regular expression."""

    kind: Literal["Pattern"] = "Pattern"
    regex: str
    description: str | None = None
    example: str | None = None

    model_config = {"frozen": True}


class EnumConstraint(BaseModel):
    """Value must be one of the allowed values (case-sensitive)."""

    kind: Literal["Enum"] = "Enum"
    allowed_values: list[Any]

    model_config = {"frozen": True}


class TimeRangeConstraint(BaseModel):
    """Start attribute must not be after end attribute."""

    kind: Literal["TimeRange"] = "TimeRange"
    start_attr: str
    end_attr: str
    messages: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class NumericRangeConstraint(BaseModel):
    """Lower attribute must not be greater than upper attribute."""

    kind: Literal["NumericRange"] = "NumericRange"
    lower_attr: str
    upper_attr: str
    messages: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class CustomScriptConstraint(BaseModel):
    """Cross-field/cross-entity rule given as a script body or a named predicate."""

    kind: Literal["CustomScript"] = "CustomScript"
    name: str
    body: str | None = Field(default=None, description="Sandboxed Python expression")
    predicate: str | None = Field(default=None, description="Name of a registered predicate")
    attributes: list[str] = Field(
        default_factory=list, description="Attributes blamed when the rule fails"
    )
    messages: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


ConstraintSpec = Annotated[
    RangeConstraint
    | LengthConstraint
    | UniqueConstraint
    | PatternConstraint
    | EnumConstraint
    | TimeRangeConstraint
    | NumericRangeConstraint
    | CustomScriptConstraint,
    Field(discriminator="kind"),
]

CROSS_FIELD_KINDS = frozenset({"TimeRange", "NumericRange", "CustomScript"})


# === Schema specifications ===


class AttributeSpec(BaseModel):
    """Definition of one entity attribute."""

    name: str = Field(..., description="Attribute name (unique within the entity)")
    type: SemanticType = Field(default=SemanticType.STRING, description="Semantic type")
    constraints: list[ConstraintSpec] = Field(default_factory=list)
    default: Any = Field(default=None, description="Value applied when the attribute is absent")
    nullable: bool = Field(default=True, description="Whether the value may be absent")
    is_label: bool = False
    is_secondary_label: bool = False
    references: str | None = Field(default=None, description="Target entity of a foreign-key")
    calculated: bool = Field(default=False, description="Value is produced by a derived field")
    description: str | None = None

    model_config = {"frozen": True}


class SortKey(BaseModel):
    """One component of a derived field's sort order."""

    attribute: str
    descending: bool = False

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.attribute} DESC" if self.descending else self.attribute


class DerivedFieldSpec(BaseModel):
    """Specification of a calculated attribute computed over ordered partitions."""

    target: str = Field(..., description="Attribute receiving the computed value")
    depends_on: list[str] = Field(default_factory=list)
    partition_key: str | None = Field(
        default=None, description="Attribute or dotted path grouping rows; None = one partition"
    )
    sort_key: list[SortKey] = Field(default_factory=list)
    transform: str = Field(default="delta", description="Name of a registered transform")
    source: str | None = Field(default=None, description="Input attribute for the transform")
    trigger: Trigger = Trigger.ONCHANGE
    description: str | None = None

    model_config = {"frozen": True}

    @field_validator("sort_key", mode="before")
    @classmethod
    def _parse_sort_key(cls, value: Any) -> Any:
        """Accept 'reading_at' or 'reading_at desc' shorthand."""
        if not isinstance(value, list):
            return value
        parsed = []
        for item in value:
            if isinstance(item, str):
                parts = item.split()
                descending = len(parts) > 1 and parts[1].lower() == "desc"
                parsed.append({"attribute": parts[0], "descending": descending})
            else:
                parsed.append(item)
        return parsed

    @property
    def partition_root(self) -> str | None:
        """Attribute the partition path starts at."""
        if self.partition_key is None:
            return None
        return self.partition_key.split(".", 1)[0]

    @property
    def row_attributes(self) -> set[str]:
        """Attributes a partition row must carry for this field."""
        attrs = set(self.depends_on) | {k.attribute for k in self.sort_key} | {self.target}
        if self.partition_root:
            attrs.add(self.partition_root)
        if self.source:
            attrs.add(self.source)
        return attrs


class EntitySpec(BaseModel):
    """Specification for one entity type."""

    name: str = Field(..., description="Entity name (PascalCase recommended)")
    attributes: list[AttributeSpec] = Field(default_factory=list)
    derived_fields: list[DerivedFieldSpec] = Field(default_factory=list)
    constraints: list[ConstraintSpec] = Field(
        default_factory=list, description="Entity-level cross-field rules"
    )
    description: str | None = None

    model_config = {"frozen": True}


# === Results ===


class Violation(BaseModel):
    """A single constraint violation."""

    attribute: str
    kind: ConstraintKind
    message: str
    locale: str
    messages: dict[str, str] = Field(default_factory=dict, description="Message per locale")
    value: Any = None
    related_attributes: list[str] = Field(default_factory=list)


class ViolationReport(BaseModel):
    """Ordered violations for one record. Empty means valid."""

    entity_type: str
    violations: list[Violation] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.violations)

    @property
    def is_valid(self) -> bool:
        """Whether the record passed every check."""
        return not self.violations

    def attributes(self) -> list[str]:
        """Attributes with at least one violation, in report order."""
        return list(dict.fromkeys(v.attribute for v in self.violations))

    def kinds(self) -> list[ConstraintKind]:
        """Violation kinds in report order."""
        return [v.kind for v in self.violations]

    def for_attribute(self, attribute: str) -> list[Violation]:
        """All violations reported against an attribute."""
        return [v for v in self.violations if v.attribute == attribute]


class PartitionKey(NamedTuple):
    """Identifies one partition of a derived field."""

    entity_type: str
    attribute: str | None
    value: Any


class DerivedValue(NamedTuple):
    """A recomputed derived value to persist."""

    record_id: Any
    attribute: str
    value: Any


class WriteResult(BaseModel):
    """Outcome of one write passing through the engine facade."""

    entity_type: str
    state: WriteState
    record: dict[str, Any] | None = None
    violations: ViolationReport | None = None
    derived: list[DerivedValue] = Field(default_factory=list)
    partitions: list[PartitionKey] = Field(default_factory=list)
    error_kind: str | None = None
    error: str | None = None
    failed_field: str | None = None

    @property
    def committed(self) -> bool:
        return self.state == WriteState.COMMITTED

    def raise_for_state(self) -> None:
        """Raise the matching exception unless the write committed."""
        if self.state == WriteState.COMMITTED:
            return
        if self.error_kind == "DerivationFailure":
            raise DerivationFailure(
                self.entity_type, self.failed_field or "?", self.error or "unknown error"
            )
        raise RecordValidationError(
            self.entity_type, self.violations or ViolationReport(entity_type=self.entity_type)
        )


class EntityInfo(BaseModel):
    """Information about a registered entity (output format)."""

    name: str
    description: str | None = None
    attributes: list[AttributeSpec]
    derived_fields: list[DerivedFieldSpec] = Field(default_factory=list)
    constraints: list[ConstraintSpec] = Field(default_factory=list)
    unique_keys: dict[str, list[str]] = Field(
        default_factory=dict, description="Unique key id (or attribute) -> member attributes"
    )
    label_attribute: str | None = None
    record_count: int | None = None


class SchemaInfo(BaseModel):
    """Full schema information (output format)."""

    entities: dict[str, EntityInfo]
    total_entities: int
    total_attributes: int
