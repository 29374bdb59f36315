"""Tests for the engine façade (validate-then-derive)."""

import pytest

from rapengine.core.facade import RuleEngine
from rapengine.core.types import DerivedValue, PartitionKey, WriteState
from rapengine.derive.transforms import TransformRegistry
from rapengine.exceptions import (
    DerivationFailure,
    EntityNotFoundError,
    LookupUnavailableError,
    RecordValidationError,
)

M1 = PartitionKey("Reading", "meter", "M1")
M2 = PartitionKey("Reading", "meter", "M2")


@pytest.fixture
def rules(registry) -> RuleEngine:
    return RuleEngine(registry)


def add_reading(reader, record_id, reading_at, value, usage=None, total=0, meter="M1"):
    return reader.add(
        "Reading",
        id=record_id,
        meter=meter,
        reading_at=reading_at,
        value=value,
        usage=usage,
        total=total,
    )


class TestProcessWrite:
    """Tests for RuleEngine.process_write."""

    def test_first_reading(self, rules, reader):
        """The first reading of a meter has no usage."""
        candidate = {"meter": "M1", "reading_at": "2024-01-01", "value": 100}
        result = rules.process_write("Reading", candidate, reader=reader)

        assert result.state == WriteState.COMMITTED
        assert result.record["usage"] is None
        assert result.record["total"] == 0
        assert result.derived == []
        assert result.partitions == [M1]
        assert "usage" not in candidate

    def test_second_reading(self, rules, reader):
        """120 after 100 gives a usage of 20; derived lists the record's own values."""
        add_reading(reader, "r1", "2024-01-01", 100)
        candidate = {"id": "r2", "meter": "M1", "reading_at": "2024-02-01", "value": 120}
        result = rules.process_write("Reading", candidate, reader=reader)

        assert result.committed
        assert result.record["usage"] == 20
        assert result.derived == [
            DerivedValue("r2", "usage", 20),
            DerivedValue("r2", "total", 20),
        ]

    def test_insert_between_readings(self, rules, reader):
        """A reading inserted in the middle changes the following neighbour."""
        add_reading(reader, "r1", "2024-01-01", 100)
        add_reading(reader, "r3", "2024-03-01", 160, usage=60, total=60)
        candidate = {"id": "r2", "meter": "M1", "reading_at": "2024-02-01", "value": 120}
        result = rules.process_write("Reading", candidate, reader=reader)

        assert result.derived == [
            DerivedValue("r2", "usage", 20),
            DerivedValue("r2", "total", 20),
            DerivedValue("r3", "usage", 40),
        ]

    def test_timestamps_with_offsets(self, rules, reader):
        """Readings are ordered by instant, not by their text."""
        add_reading(reader, "a", "2024-01-01T10:00:00+05:00", 100)
        candidate = {"id": "b", "meter": "M1", "reading_at": "2024-01-01T06:00:00+00:00", "value": 120}
        result = rules.process_write("Reading", candidate, reader=reader)

        assert result.record["usage"] == 20
        assert result.derived == [
            DerivedValue("b", "usage", 20),
            DerivedValue("b", "total", 20),
        ]

    def test_other_partitions_untouched(self, rules, reader):
        """Readings of other meters are never recomputed."""
        add_reading(reader, "x1", "2024-01-01", 5, meter="M2")
        add_reading(reader, "x2", "2024-02-01", 999, usage=1, total=1, meter="M2")
        candidate = {"id": "r1", "meter": "M1", "reading_at": "2024-01-01", "value": 100}
        result = rules.process_write("Reading", candidate, reader=reader)
        assert result.partitions == [M1]
        assert all(v.record_id == "r1" for v in result.derived)

    def test_reassigned_meter(self, rules, reader):
        """Moving a reading recomputes the old and the new partition."""
        add_reading(reader, "r1", "2024-01-01", 100)
        prior = add_reading(reader, "r2", "2024-02-01", 120, usage=20, total=20)
        add_reading(reader, "r3", "2024-01-15", 50, meter="M2")

        result = rules.process_write("Reading", {**prior, "meter": "M2"}, prior=prior, reader=reader)

        assert result.committed
        assert result.partitions == [M1, M2]
        assert result.record["usage"] == 70
        assert result.derived == [
            DerivedValue("r2", "usage", 70),
            DerivedValue("r2", "total", 70),
        ]

    def test_reassigned_meter_updates_old_neighbours(self, rules, reader):
        """The reading after a moved one in the old partition is recomputed."""
        add_reading(reader, "r1", "2024-01-01", 100)
        prior = add_reading(reader, "r2", "2024-02-01", 120, usage=20, total=20)
        add_reading(reader, "r3", "2024-03-01", 150, usage=30, total=50)

        result = rules.process_write("Reading", {**prior, "meter": "M2"}, prior=prior, reader=reader)

        assert DerivedValue("r3", "usage", 50) in result.derived
        assert DerivedValue("r2", "usage", None) in result.derived

    def test_update_without_relevant_change(self, rules, reader):
        """Changes outside every depends_on leave derived values alone."""
        stored = {"id": "b1", "title": "Dune", "format": "paperback", "price": 10}
        result = rules.process_write(
            "Book", {**stored, "price": 12}, prior=stored, reader=reader
        )
        assert result.committed
        assert result.derived == []
        assert result.partitions == []

    def test_rejected_write(self, rules, reader):
        """Violations stop the write before derivation."""
        candidate = {"meter": "M1", "reading_at": "2024-01-01", "value": -1}
        result = rules.process_write("Reading", candidate, reader=reader)

        assert result.state == WriteState.REJECTED
        assert result.error_kind == "ValidationViolation"
        assert result.violations.attributes() == ["value"]
        assert result.derived == []
        assert "usage" not in result.record
        with pytest.raises(RecordValidationError):
            result.raise_for_state()

    def test_locale(self, rules, reader):
        result = rules.process_write("Book", {"format": "ebook"}, reader=reader, locale="de")
        assert result.violations.violations[0].message.startswith('Feld "title"')

    def test_missing_reader(self, rules):
        """Uniqueness cannot be checked without a reader."""
        with pytest.raises(LookupUnavailableError):
            rules.process_write("Reading", {"meter": "M1", "reading_at": "2024-01-01", "value": 1})

    def test_unknown_entity(self, rules):
        with pytest.raises(EntityNotFoundError):
            rules.process_write("Invoice", {})

    def test_derivation_failure(self, make_registry):
        """A failing transform rejects the whole write."""
        transforms = TransformRegistry()
        transforms.register("inverse", lambda row, history, *, source: 1 / row[source])
        registry = make_registry(
            {
                "name": "Sample",
                "attributes": [
                    {"name": "value", "type": "number"},
                    {"name": "ratio", "type": "number", "calculated": True},
                ],
                "derived_fields": [
                    {"target": "ratio", "transform": "inverse", "source": "value", "depends_on": ["value"]}
                ],
            },
            transforms=transforms,
        )
        result = RuleEngine(registry).process_write("Sample", {"id": 1, "value": 0})

        assert result.state == WriteState.REJECTED
        assert result.error_kind == "DerivationFailure"
        assert result.failed_field == "ratio"
        assert "ZeroDivisionError" in result.error
        assert result.violations.is_valid
        with pytest.raises(DerivationFailure):
            result.raise_for_state()


class TestProcessDelete:
    """Tests for RuleEngine.process_delete."""

    def test_neighbour_is_recomputed(self, rules, reader):
        """Deleting a middle reading recomputes the next one."""
        add_reading(reader, "r1", "2024-01-01", 100)
        deleted = add_reading(reader, "r2", "2024-02-01", 120, usage=20, total=20)
        add_reading(reader, "r3", "2024-03-01", 160, usage=40, total=60)

        result = rules.process_delete("Reading", deleted, reader)

        assert result.committed
        assert result.record["id"] == "r2"
        assert result.derived == [DerivedValue("r3", "usage", 60)]
        assert result.partitions == [M1]

    def test_entity_without_derived_fields(self, rules, reader):
        result = rules.process_delete("Book", {"id": "b1", "title": "Dune"}, reader)
        assert result.committed
        assert result.derived == []


class TestRebuild:
    """Tests for RuleEngine.rebuild."""

    def test_only_changed_values(self, rules):
        """Rebuild returns values that differ, on-demand fields included."""
        rows = [
            {"id": "r1", "meter": "M1", "reading_at": "2024-01-01", "value": 100, "usage": 5, "total": 0},
            {"id": "r2", "meter": "M1", "reading_at": "2024-02-01", "value": 120, "usage": 20, "total": 20},
        ]
        changes = rules.rebuild("Reading", rows)
        assert changes == [
            DerivedValue("r1", "usage", None),
            DerivedValue("r1", "position", 1),
            DerivedValue("r2", "position", 2),
        ]
        assert rows[0]["usage"] == 5

    def test_consistent_rows(self, rules):
        rows = [{"id": "r1", "meter": "M1", "reading_at": "2024-01-01", "value": 1, "total": 0, "position": 1}]
        assert rules.rebuild("Reading", rows) == []

    def test_selected_fields(self, rules, registry):
        position = registry.lookup("Reading").derived_field("position")
        rows = [{"id": "r1", "meter": "M1", "reading_at": "2024-01-01", "value": 1, "usage": 99}]
        assert rules.rebuild("Reading", rows, [position]) == [DerivedValue("r1", "position", 1)]
