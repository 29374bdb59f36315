"""Custom exceptions for rapengine.

Errors follow two rules:
- Messages say what went wrong AND how to fix it
- Context is JSON-serializable so callers (CLI, HTTP layers) can forward it

Constraint violations are *not* exceptions: they are collected into a
ViolationReport. Only a rejected write surfaced through ``raise_for_state``
turns a report into ``RecordValidationError``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from rapengine.core.types import ViolationReport


class RapEngineError(Exception):
    """Base exception for all rapengine errors."""

    #: System errors are 500-class failures (schema/script bugs), not bad input.
    is_system_error: bool = False

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConnectionError(RapEngineError):
    """Failed to connect to the record store database."""

    pass


class SchemaError(RapEngineError):
    """Schema definition is invalid. Fatal at load time.

    The entity type (and attribute, when known) is always named so the
    author can find the offending markdown line.
    """

    def __init__(
        self,
        entity_type: str,
        reason: str,
        attribute: str | None = None,
    ) -> None:
        location = f"'{entity_type}.{attribute}'" if attribute else f"'{entity_type}'"
        message = f"Invalid schema for {location}: {reason}"
        super().__init__(
            message,
            {"entity_type": entity_type, "attribute": attribute, "reason": reason},
        )
        self.entity_type = entity_type
        self.attribute = attribute
        self.reason = reason


class EntityNotFoundError(RapEngineError):
    """Entity type is not registered."""

    def __init__(self, entity_type: str, available_entities: list[str] | None = None) -> None:
        available = available_entities or []
        if available:
            message = (
                f"Entity '{entity_type}' not found. Available entities: {', '.join(available)}"
            )
        else:
            message = f"Entity '{entity_type}' not found. No entities are registered yet."

        super().__init__(message, {"entity_type": entity_type, "available_entities": available})
        self.entity_type = entity_type
        self.available_entities = available


class RecordNotFoundError(RapEngineError):
    """Record with given ID does not exist."""

    def __init__(self, record_id: str, entity_type: str) -> None:
        message = f"Record '{record_id}' not found in '{entity_type}'."
        super().__init__(message, {"record_id": record_id, "entity_type": entity_type})
        self.record_id = record_id
        self.entity_type = entity_type


class LookupUnavailableError(RapEngineError):
    """A constraint needs the storage lookup capability but none was supplied."""

    def __init__(self, entity_type: str, constraint: str) -> None:
        message = (
            f"Constraint '{constraint}' on '{entity_type}' needs a storage lookup. "
            "Pass lookup=... to validate(), or validate through an Entity."
        )
        super().__init__(message, {"entity_type": entity_type, "constraint": constraint})
        self.entity_type = entity_type
        self.constraint = constraint


class RecordValidationError(RapEngineError):
    """A write was rejected because the record violates its constraints."""

    def __init__(self, entity_type: str, report: ViolationReport) -> None:
        count = len(report.violations)
        if count == 1:
            message = f"'{entity_type}' record rejected: {report.violations[0].message}"
        else:
            message = f"'{entity_type}' record rejected with {count} violations"
        super().__init__(
            message,
            {
                "entity_type": entity_type,
                "violations": [v.model_dump(mode="json") for v in report.violations],
            },
        )
        self.entity_type = entity_type
        self.report = report


class OrderingViolation(RapEngineError):
    """Partition rows handed to the executor are not sorted by the sort key."""

    is_system_error = True

    def __init__(self, entity_type: str, target: str, position: int, record_id: Any) -> None:
        message = (
            f"Rows for '{entity_type}.{target}' are out of sort-key order at position "
            f"{position} (record '{record_id}'). Sort the partition before recomputing."
        )
        super().__init__(
            message,
            {
                "entity_type": entity_type,
                "target": target,
                "position": position,
                "record_id": record_id,
            },
        )
        self.entity_type = entity_type
        self.target = target
        self.position = position
        self.record_id = record_id


class DerivationFailure(RapEngineError):
    """Recomputing a derived field failed after validation passed.

    Indicates a schema or transform bug rather than bad input; the whole
    write is aborted.
    """

    is_system_error = True

    def __init__(self, entity_type: str, target: str, reason: str) -> None:
        message = f"Derivation of '{entity_type}.{target}' failed: {reason}"
        super().__init__(message, {"entity_type": entity_type, "target": target, "reason": reason})
        self.entity_type = entity_type
        self.target = target
        self.reason = reason


class AttributeNotFoundError(RapEngineError):
    """Record data names an attribute the entity does not declare."""

    def __init__(self, attribute: str, entity_type: str, available: list[str] | None = None) -> None:
        available = available or []
        message = f"Attribute '{attribute}' not found on '{entity_type}'."
        if available:
            message += f" Available attributes: {', '.join(available)}"
        super().__init__(
            message,
            {"attribute": attribute, "entity_type": entity_type, "available_attributes": available},
        )
        self.attribute = attribute
        self.entity_type = entity_type
        self.available = available


class ReadOnlyAttributeError(RapEngineError):
    """Record data sets a calculated attribute."""

    def __init__(self, attribute: str, entity_type: str) -> None:
        message = (
            f"Attribute '{entity_type}.{attribute}' is calculated and cannot be written. "
            "Remove it from the record data; the engine computes it."
        )
        super().__init__(message, {"attribute": attribute, "entity_type": entity_type})
        self.attribute = attribute
        self.entity_type = entity_type


class StoreError(RapEngineError):
    """The record store failed to read or persist records."""

    pass
