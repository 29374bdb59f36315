"""Derivation Planner.

Decides which derived fields and which partitions a write touches. Planning
is local to one entity type: foreign-key references are never followed, so a
change on a referenced entity does not reach the records pointing at it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import date
from functools import total_ordering
from typing import Any

from rapengine.core.types import SYSTEM_KEYS, DerivedFieldSpec, PartitionKey, Record, Trigger
from rapengine.rules.predicates import to_datetime
from rapengine.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


def resolve_path(record: Mapping[str, Any], path: str | None) -> Any:
    """Read an attribute or a dotted path into a JSON attribute.

    ``resolve_path(row, "meter")`` returns ``row["meter"]``;
    ``resolve_path(row, "address.city")`` descends into the ``address`` value,
    which may be a mapping or a JSON string. Missing steps resolve to None.
    """
    if path is None:
        return None
    root, _, rest = path.partition(".")
    value = record.get(root)
    for step in rest.split(".") if rest else []:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return None
        if not isinstance(value, Mapping):
            return None
        value = value.get(step)
    return value


def freeze_value(value: Any) -> Any:
    """Make a partition value hashable (JSON objects and arrays become tuples)."""
    if isinstance(value, Mapping):
        return tuple(sorted((k, freeze_value(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(v) for v in value)
    return value


def partition_value(record: Mapping[str, Any], spec: DerivedFieldSpec) -> Any:
    """Hashable partition value of a record for one derived field."""
    return freeze_value(resolve_path(record, spec.partition_key))


def _sortable(value: Any) -> Any:
    """Dates, datetimes and ISO strings compare as UTC instants."""
    if isinstance(value, (date, str)):
        parsed = to_datetime(value)
        if parsed is not None:
            return parsed
    return value


@total_ordering
class _SortComponent:
    """One sort-key component: None sorts first, descending inverts."""

    __slots__ = ("value", "descending")

    def __init__(self, value: Any, descending: bool) -> None:
        self.value = _sortable(value)
        self.descending = descending

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _SortComponent) and self.value == other.value

    def __lt__(self, other: _SortComponent) -> bool:
        a, b = (other.value, self.value) if self.descending else (self.value, other.value)
        if a is None or b is None:
            return a is None and b is not None
        try:
            return bool(a < b)
        except TypeError:
            # Mixed kinds (a timestamp next to free text): group by kind
            return (type(a).__name__, str(a)) < (type(b).__name__, str(b))


def sort_key_of(row: Mapping[str, Any], spec: DerivedFieldSpec) -> tuple[_SortComponent, ...]:
    """Comparable sort key of a row."""
    return tuple(_SortComponent(row.get(k.attribute), k.descending) for k in spec.sort_key)


def sort_rows(rows: Iterable[Mapping[str, Any]], spec: DerivedFieldSpec) -> list[Any]:
    """Sort rows by the field's sort key; ties are broken by record id."""
    return sorted(
        rows,
        key=lambda row: (sort_key_of(row, spec), row.get("id") is None, str(row.get("id"))),
    )


class DerivationPlanner:
    """Finds the derived fields and partitions affected by a write."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self._registry = registry

    @staticmethod
    def changed_attributes(
        prior: Mapping[str, Any] | None, candidate: Mapping[str, Any]
    ) -> set[str]:
        """Attributes whose value differs between prior and candidate.

        Without a prior (an insert) every attribute of the candidate counts as
        changed. System keys never do.
        """
        if prior is None:
            return {k for k in candidate if k not in SYSTEM_KEYS}
        keys = (set(prior) | set(candidate)) - SYSTEM_KEYS
        return {k for k in keys if prior.get(k) != candidate.get(k)}

    def fields_for_change(
        self,
        entity_type: str,
        changed_attributes: Iterable[str],
        include_on_demand: bool = False,
    ) -> list[DerivedFieldSpec]:
        """Derived fields to recompute, in dependency order.

        A field is selected when its ``depends_on`` intersects the changed
        attributes, or when it reads the target of another selected field.
        """
        descriptor = self._registry.lookup(entity_type)
        touched = set(changed_attributes)
        selected: list[DerivedFieldSpec] = []
        for spec in descriptor.derived_fields:
            if spec.trigger == Trigger.ON_DEMAND and not include_on_demand:
                continue
            if touched.intersection(spec.depends_on):
                selected.append(spec)
                touched.add(spec.target)
        return selected

    def affected_partitions(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        changed_record: Mapping[str, Any],
        prior_record: Mapping[str, Any] | None = None,
    ) -> set[PartitionKey]:
        """Partitions whose rows change when ``changed_record`` is written.

        Args:
            entity_type: Entity type of the record
            spec: Derived field being planned
            changed_record: New version of the record
            prior_record: Stored version, when the write is an update

        Returns:
            The record's partition, plus its old partition when the
            partition-key value changed
        """
        partitions = {
            PartitionKey(entity_type, spec.partition_key, partition_value(changed_record, spec))
        }
        if prior_record is not None:
            partitions.add(
                PartitionKey(entity_type, spec.partition_key, partition_value(prior_record, spec))
            )
        if len(partitions) > 1:
            logger.debug(
                f"'{entity_type}.{spec.target}': record moved between partitions "
                f"{sorted(str(p.value) for p in partitions)}"
            )
        return partitions

    def group_partitions(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        rows: Iterable[Record],
    ) -> dict[PartitionKey, list[Record]]:
        """Group rows into sorted partitions (used by a full rebuild)."""
        groups: dict[PartitionKey, list[Record]] = {}
        for row in rows:
            key = PartitionKey(entity_type, spec.partition_key, partition_value(row, spec))
            groups.setdefault(key, []).append(row)
        return {key: sort_rows(group, spec) for key, group in groups.items()}
