"""Core components for rapengine."""

from rapengine.core.config import EngineSettings
from rapengine.core.connection import DatabaseConnection
from rapengine.core.types import (
    AttributeSpec,
    ConstraintKind,
    DerivedFieldSpec,
    EntityInfo,
    EntitySpec,
    SchemaInfo,
    SemanticType,
    Trigger,
    Violation,
    ViolationReport,
    WriteResult,
    WriteState,
)

__all__ = [
    "EngineSettings",
    "DatabaseConnection",
    "SemanticType",
    "ConstraintKind",
    "Trigger",
    "WriteState",
    "AttributeSpec",
    "DerivedFieldSpec",
    "EntitySpec",
    "EntityInfo",
    "SchemaInfo",
    "Violation",
    "ViolationReport",
    "WriteResult",
]
