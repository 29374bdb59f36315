"""rapengine - Schema-driven validation and derived attributes for records.

Entity schemas are written as markdown files. Every write is validated
against the schema's constraints; derived attributes computed over ordered
partitions of records (usage deltas, running totals) are kept up to date
for the written record and its neighbours in the same transaction.

Example:
    from rapengine import RapEngine

    engine = RapEngine("sqlite:///:memory:", schema_dir="models/")
    readings = engine.entity("Reading")

    readings.insert({"meter": "M1", "reading_at": "2024-01-01", "value": 100})
    second = readings.insert({"meter": "M1", "reading_at": "2024-02-01", "value": 120})
    print(second["usage"])  # 20

    # Live preview without storing
    report = readings.validate({"meter": "M1", "value": -5}, locale="de")
    for violation in report.violations:
        print(violation.attribute, violation.message)
"""

from rapengine.core.config import EngineSettings
from rapengine.core.engine import Entity, RapEngine
from rapengine.core.facade import RuleEngine
from rapengine.core.types import (
    AttributeSpec,
    ConstraintKind,
    CustomScriptConstraint,
    DerivedFieldSpec,
    DerivedValue,
    EntityInfo,
    EntitySpec,
    EnumConstraint,
    LengthConstraint,
    NumericRangeConstraint,
    PartitionKey,
    PatternConstraint,
    RangeConstraint,
    SchemaInfo,
    SemanticType,
    SortKey,
    TimeRangeConstraint,
    Trigger,
    UniqueConstraint,
    Violation,
    ViolationReport,
    WriteResult,
    WriteState,
)
from rapengine.derive.executor import DerivationExecutor
from rapengine.derive.planner import DerivationPlanner
from rapengine.derive.transforms import PartitionHistory, TransformRegistry
from rapengine.exceptions import (
    AttributeNotFoundError,
    ConnectionError,
    DerivationFailure,
    EntityNotFoundError,
    LookupUnavailableError,
    OrderingViolation,
    RapEngineError,
    ReadOnlyAttributeError,
    RecordNotFoundError,
    RecordValidationError,
    SchemaError,
    StoreError,
)
from rapengine.rules.evaluator import ConstraintEvaluator
from rapengine.rules.messages import MessageCatalog
from rapengine.schema.markdown import load_directory, parse_entity_markdown
from rapengine.schema.registry import SchemaDescriptor, SchemaRegistry

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "RapEngine",
    "Entity",
    "EngineSettings",
    # Components
    "SchemaRegistry",
    "SchemaDescriptor",
    "ConstraintEvaluator",
    "DerivationPlanner",
    "DerivationExecutor",
    "RuleEngine",
    "TransformRegistry",
    "PartitionHistory",
    "MessageCatalog",
    # Markdown schemas
    "load_directory",
    "parse_entity_markdown",
    # Types
    "SemanticType",
    "ConstraintKind",
    "Trigger",
    "WriteState",
    "AttributeSpec",
    "DerivedFieldSpec",
    "SortKey",
    "EntitySpec",
    "RangeConstraint",
    "LengthConstraint",
    "UniqueConstraint",
    "PatternConstraint",
    "EnumConstraint",
    "TimeRangeConstraint",
    "NumericRangeConstraint",
    "CustomScriptConstraint",
    "Violation",
    "ViolationReport",
    "PartitionKey",
    "DerivedValue",
    "WriteResult",
    "EntityInfo",
    "SchemaInfo",
    # Exceptions
    "RapEngineError",
    "ConnectionError",
    "SchemaError",
    "EntityNotFoundError",
    "AttributeNotFoundError",
    "ReadOnlyAttributeError",
    "RecordNotFoundError",
    "RecordValidationError",
    "LookupUnavailableError",
    "OrderingViolation",
    "DerivationFailure",
    "StoreError",
]
