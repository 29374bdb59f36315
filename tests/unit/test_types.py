"""Tests for core types."""

import pytest
from pydantic import ValidationError

from rapengine.core.types import (
    AttributeSpec,
    ConstraintKind,
    DerivedFieldSpec,
    DerivedValue,
    EntitySpec,
    PartitionKey,
    RangeConstraint,
    SemanticType,
    SortKey,
    Trigger,
    Violation,
    ViolationReport,
    WriteResult,
    WriteState,
)
from rapengine.exceptions import DerivationFailure, RecordValidationError


class TestSemanticType:
    """Tests for SemanticType enum."""

    def test_all_types_exist(self):
        """All documented semantic types should exist."""
        expected = [
            "string",
            "int",
            "number",
            "date",
            "bool",
            "url",
            "mail",
            "json",
            "geo",
            "address",
            "contact",
            "pattern",
            "enum",
            "foreign-key",
        ]
        assert SemanticType.values() == expected

    def test_from_string(self):
        """Can create SemanticType from string."""
        assert SemanticType("foreign-key") == SemanticType.FOREIGN_KEY
        assert SemanticType("mail") == SemanticType.MAIL


class TestAttributeSpec:
    """Tests for AttributeSpec model."""

    def test_minimal_spec(self):
        """Can create spec with just name."""
        spec = AttributeSpec(name="serial")
        assert spec.type == SemanticType.STRING
        assert spec.nullable is True
        assert spec.constraints == []
        assert spec.calculated is False

    def test_constraints_from_dicts(self):
        """Constraint dicts are parsed by their kind."""
        spec = AttributeSpec(
            name="price",
            type="number",
            constraints=[{"kind": "Range", "min": 0}, {"kind": "Unique"}],
        )
        assert isinstance(spec.constraints[0], RangeConstraint)
        assert spec.constraints[0].min == 0
        assert spec.constraints[1].kind == "Unique"
        assert spec.constraints[1].key_id is None

    def test_unknown_constraint_kind(self):
        """Unknown constraint kinds are rejected."""
        with pytest.raises(ValidationError):
            AttributeSpec(name="x", constraints=[{"kind": "Regex", "regex": "a"}])

    def test_spec_is_frozen(self):
        """Specs are immutable once built."""
        spec = AttributeSpec(name="serial")
        with pytest.raises(ValidationError):
            spec.name = "other"


class TestDerivedFieldSpec:
    """Tests for DerivedFieldSpec model."""

    def test_sort_key_shorthand(self):
        """Sort keys accept 'attr' and 'attr desc' strings."""
        spec = DerivedFieldSpec(target="usage", sort_key=["reading_at", "value desc"])
        assert spec.sort_key == [
            SortKey(attribute="reading_at"),
            SortKey(attribute="value", descending=True),
        ]
        assert str(spec.sort_key[1]) == "value DESC"

    def test_defaults(self):
        """A derived field defaults to a whole-entity ONCHANGE delta."""
        spec = DerivedFieldSpec(target="usage")
        assert spec.partition_key is None
        assert spec.partition_root is None
        assert spec.transform == "delta"
        assert spec.trigger == Trigger.ONCHANGE

    def test_partition_root_of_dotted_path(self):
        """The partition root is the first step of a dotted path."""
        spec = DerivedFieldSpec(target="rank", partition_key="address.city")
        assert spec.partition_root == "address"

    def test_row_attributes(self):
        """Row attributes cover everything the transform may read."""
        spec = DerivedFieldSpec(
            target="usage",
            depends_on=["value"],
            partition_key="meter",
            sort_key=["reading_at"],
            source="value",
        )
        assert spec.row_attributes == {"usage", "value", "meter", "reading_at"}


class TestViolationReport:
    """Tests for ViolationReport."""

    def _violation(self, attribute: str, kind: ConstraintKind) -> Violation:
        return Violation(attribute=attribute, kind=kind, message="m", locale="en")

    def test_empty_report_is_valid(self):
        """An empty report means valid."""
        report = ViolationReport(entity_type="Reading")
        assert report.is_valid
        assert len(report) == 0

    def test_accessors(self):
        """Attributes and kinds keep report order."""
        report = ViolationReport(
            entity_type="Person",
            violations=[
                self._violation("email", ConstraintKind.TYPE),
                self._violation("first_name", ConstraintKind.REQUIRED),
                self._violation("email", ConstraintKind.PATTERN),
            ],
        )
        assert not report.is_valid
        assert report.attributes() == ["email", "first_name"]
        assert report.kinds() == [ConstraintKind.TYPE, ConstraintKind.REQUIRED, ConstraintKind.PATTERN]
        assert len(report.for_attribute("email")) == 2


class TestWriteResult:
    """Tests for WriteResult."""

    def test_committed_result_does_not_raise(self):
        """A committed write passes raise_for_state."""
        result = WriteResult(
            entity_type="Reading",
            state=WriteState.COMMITTED,
            derived=[DerivedValue("r1", "usage", 20)],
            partitions=[PartitionKey("Reading", "meter", "M1")],
        )
        assert result.committed
        result.raise_for_state()

    def test_rejected_result_raises_validation_error(self):
        """A rejected write raises RecordValidationError with the report."""
        report = ViolationReport(
            entity_type="Reading",
            violations=[
                Violation(
                    attribute="value",
                    kind=ConstraintKind.RANGE,
                    message="too low",
                    locale="en",
                )
            ],
        )
        result = WriteResult(entity_type="Reading", state=WriteState.REJECTED, violations=report)
        with pytest.raises(RecordValidationError) as exc_info:
            result.raise_for_state()
        assert exc_info.value.report is report
        assert "too low" in str(exc_info.value)

    def test_derivation_failure_raises(self):
        """A failed derivation raises DerivationFailure naming the field."""
        result = WriteResult(
            entity_type="Reading",
            state=WriteState.REJECTED,
            error_kind="DerivationFailure",
            error="ZeroDivisionError: division by zero",
            failed_field="usage",
        )
        with pytest.raises(DerivationFailure) as exc_info:
            result.raise_for_state()
        assert exc_info.value.target == "usage"
        assert exc_info.value.is_system_error


class TestEntitySpec:
    """Tests for EntitySpec."""

    def test_from_dict(self):
        """Entity specs can be written as plain dicts."""
        spec = EntitySpec(
            name="Person",
            attributes=[{"name": "birth_date", "type": "date"}, {"name": "death_date", "type": "date"}],
            constraints=[{"kind": "TimeRange", "start_attr": "birth_date", "end_attr": "death_date"}],
        )
        assert spec.constraints[0].kind == "TimeRange"
        assert [a.name for a in spec.attributes] == ["birth_date", "death_date"]
