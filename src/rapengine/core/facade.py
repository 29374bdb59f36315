"""Engine Façade: the validate-then-derive sequence of a single write.

    IDLE -> VALIDATING -> REJECTED
                       -> DERIVING -> COMMITTED
                                   -> REJECTED (derivation failure)

The façade reads through a RecordReader and returns a WriteResult. It never
persists anything; committing the result is the caller's job, which keeps
the whole write all-or-nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from rapengine.core.types import (
    DerivedFieldSpec,
    DerivedValue,
    PartitionKey,
    Record,
    Trigger,
    ViolationReport,
    WriteResult,
    WriteState,
)
from rapengine.derive.executor import DerivationExecutor
from rapengine.derive.planner import DerivationPlanner, partition_value, sort_rows
from rapengine.rules.evaluator import ConstraintEvaluator
from rapengine.rules.messages import MessageCatalog
from rapengine.schema.registry import SchemaRegistry
from rapengine.storage.base import RecordReader, lookup_from_reader

logger = logging.getLogger(__name__)

# Identity of a candidate that has not been assigned an id yet
_UNSAVED = object()


class _FieldFailure(Exception):
    """Wraps a derivation error with the field it happened in."""

    def __init__(self, target: str, cause: Exception) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.target = target
        self.cause = cause


class RuleEngine:
    """Runs constraint evaluation and derivation for writes.

    Example:
        engine = RuleEngine(registry)
        result = engine.process_write("Reading", candidate, reader=store)
        result.raise_for_state()
        store.commit(result)
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        evaluator: ConstraintEvaluator | None = None,
        planner: DerivationPlanner | None = None,
        executor: DerivationExecutor | None = None,
        catalog: MessageCatalog | None = None,
    ) -> None:
        self.registry = registry
        self.evaluator = evaluator or ConstraintEvaluator(registry, catalog)
        self.planner = planner or DerivationPlanner(registry)
        self.executor = executor or DerivationExecutor(registry)

    def process_write(
        self,
        entity_type: str,
        candidate: Mapping[str, Any],
        prior: Mapping[str, Any] | None = None,
        reader: RecordReader | None = None,
        locale: str | None = None,
    ) -> WriteResult:
        """Validate a write and compute every derived value it causes.

        Args:
            entity_type: Registered entity type
            candidate: Full record to store (for updates, prior merged with changes)
            prior: Stored version of the record, None for inserts
            reader: Storage reads for lookups and partition rows
            locale: Locale of the violation messages

        Returns:
            WriteResult in state COMMITTED (ready to persist) or REJECTED
        """
        self.registry.lookup(entity_type)
        logger.debug(f"Write to '{entity_type}': {WriteState.IDLE} -> {WriteState.VALIDATING}")

        lookup = lookup_from_reader(reader) if reader is not None else None
        report = self.evaluator.validate(entity_type, candidate, prior, lookup, locale)
        if not report.is_valid:
            logger.debug(f"Write to '{entity_type}' rejected with {len(report)} violation(s)")
            return WriteResult(
                entity_type=entity_type,
                state=WriteState.REJECTED,
                record=dict(candidate),
                violations=report,
                error_kind="ValidationViolation",
            )

        logger.debug(f"Write to '{entity_type}': {WriteState.VALIDATING} -> {WriteState.DERIVING}")
        changed = self.planner.changed_attributes(prior, candidate)
        fields = self.planner.fields_for_change(entity_type, changed)
        return self._derive(entity_type, fields, dict(candidate), prior, reader, report)

    def process_delete(
        self,
        entity_type: str,
        record: Mapping[str, Any],
        reader: RecordReader | None = None,
    ) -> WriteResult:
        """Recompute the partitions a deleted record leaves behind.

        The returned ``record`` is the deleted one; ``derived`` holds the new
        values of its former neighbours.
        """
        descriptor = self.registry.lookup(entity_type)
        fields = [f for f in descriptor.derived_fields if f.trigger == Trigger.ONCHANGE]
        return self._derive(entity_type, fields, dict(record), None, reader, None, deleting=True)

    def rebuild(
        self,
        entity_type: str,
        rows: Iterable[Record],
        fields: Iterable[DerivedFieldSpec] | None = None,
    ) -> list[DerivedValue]:
        """Recompute derived fields over every partition of ``rows``.

        Runs ON_DEMAND fields as well. Returns only values that differ from
        what the rows currently hold.
        """
        descriptor = self.registry.lookup(entity_type)
        selected = list(fields) if fields is not None else list(descriptor.derived_fields)
        current = {row.get("id"): dict(row) for row in rows}
        changes: dict[tuple[Any, str], DerivedValue] = {}

        for spec in selected:
            groups = self.planner.group_partitions(entity_type, spec, current.values())
            for partition_rows in groups.values():
                for value in self.executor.recompute(entity_type, spec, partition_rows):
                    row = current[value.record_id]
                    if row.get(spec.target) != value.value:
                        row[spec.target] = value.value
                        changes[(value.record_id, spec.target)] = value

        logger.info(
            f"Rebuilt {len(selected)} derived field(s) of '{entity_type}' over "
            f"{len(current)} record(s): {len(changes)} value(s) changed"
        )
        return list(changes.values())

    # === Derivation ===

    def _derive(
        self,
        entity_type: str,
        fields: list[DerivedFieldSpec],
        record: Record,
        prior: Mapping[str, Any] | None,
        reader: RecordReader | None,
        report: ViolationReport | None,
        deleting: bool = False,
    ) -> WriteResult:
        try:
            derived, partitions = self._run_fields(
                entity_type, fields, record, prior, reader, deleting
            )
        except _FieldFailure as failure:
            logger.error(
                f"Derivation of '{entity_type}.{failure.target}' failed; write rejected",
                exc_info=failure.cause,
            )
            return WriteResult(
                entity_type=entity_type,
                state=WriteState.REJECTED,
                record=record,
                violations=report,
                error_kind="DerivationFailure",
                error=str(failure),
                failed_field=failure.target,
            )

        logger.debug(
            f"Write to '{entity_type}': {WriteState.DERIVING} -> {WriteState.COMMITTED} "
            f"({len(derived)} derived value(s) over {len(partitions)} partition(s))"
        )
        return WriteResult(
            entity_type=entity_type,
            state=WriteState.COMMITTED,
            record=record,
            violations=report,
            derived=derived,
            partitions=partitions,
        )

    def _run_fields(
        self,
        entity_type: str,
        fields: list[DerivedFieldSpec],
        record: Record,
        prior: Mapping[str, Any] | None,
        reader: RecordReader | None,
        deleting: bool,
    ) -> tuple[list[DerivedValue], list[PartitionKey]]:
        """Recompute ``fields`` in order; mutates ``record`` with its own values."""
        own_id = record.get("id")
        if own_id is None:
            own_id = _UNSAVED
        # Values computed so far, so chained fields read fresh outputs
        overlay: dict[Any, dict[str, Any]] = {}
        changes: dict[tuple[Any, str], DerivedValue] = {}
        touched: list[PartitionKey] = []

        for spec in fields:
            try:
                partitions = self.planner.affected_partitions(entity_type, spec, record, prior)
                for partition in sorted(partitions, key=lambda p: str(p.value)):
                    if partition not in touched:
                        touched.append(partition)
                    rows = self._partition_rows(
                        entity_type, spec, partition, record, own_id, overlay, reader, deleting
                    )
                    for value in self.executor.recompute(entity_type, spec, rows):
                        row_id = own_id if value.record_id is None else value.record_id
                        if row_id == own_id:
                            record[spec.target] = value.value
                            overlay.setdefault(own_id, {})[spec.target] = value.value
                            continue
                        if self._stored_value(rows, row_id, spec.target) != value.value:
                            overlay.setdefault(row_id, {})[spec.target] = value.value
                            changes[(row_id, spec.target)] = DerivedValue(
                                row_id, spec.target, value.value
                            )
            except Exception as e:
                raise _FieldFailure(spec.target, e) from e

        own: list[DerivedValue] = []
        if not deleting and own_id is not _UNSAVED:
            own = [DerivedValue(own_id, f.target, record.get(f.target)) for f in fields]
        return own + list(changes.values()), touched

    def _partition_rows(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        partition: PartitionKey,
        record: Record,
        own_id: Any,
        overlay: Mapping[Any, Mapping[str, Any]],
        reader: RecordReader | None,
        deleting: bool,
    ) -> list[Record]:
        """Stored partition rows with the written record placed (or removed)."""
        stored = reader.partition_rows(entity_type, spec, partition) if reader else []
        rows = []
        for row in stored:
            if row.get("id") == own_id:
                continue
            updates = overlay.get(row.get("id"))
            rows.append({**row, **updates} if updates else row)
        if not deleting and partition_value(record, spec) == partition.value:
            rows.append(record)
        return sort_rows(rows, spec)

    @staticmethod
    def _stored_value(rows: list[Record], row_id: Any, attribute: str) -> Any:
        for row in rows:
            if row.get("id") == row_id:
                return row.get(attribute)
        return None
