"""Derivation Executor.

Replays a transform over one ordered partition and returns the values to
persist. The executor reads nothing but the rows it is given and writes
nothing at all, so running it twice on the same rows yields the same values.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any

from rapengine.core.types import DerivedFieldSpec, DerivedValue
from rapengine.derive.planner import sort_key_of
from rapengine.derive.transforms import PartitionHistory, Transform
from rapengine.exceptions import DerivationFailure, OrderingViolation
from rapengine.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


class DerivationExecutor:
    """Recomputes a derived field across a sorted partition."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self._registry = registry

    def _transform_for(self, entity_type: str, spec: DerivedFieldSpec) -> Transform:
        descriptor = self._registry.lookup(entity_type)
        if descriptor.derived_field(spec.target) == spec:
            return descriptor.transforms[spec.target]
        transform = self._registry.transforms.get(spec.transform)
        if transform is None:
            raise DerivationFailure(entity_type, spec.target, f"unknown transform '{spec.transform}'")
        return transform

    def recompute(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        partition_rows: Sequence[Mapping[str, Any]],
    ) -> list[DerivedValue]:
        """Recompute ``spec.target`` for every row of one partition.

        Args:
            entity_type: Entity type the rows belong to
            spec: Derived field to compute
            partition_rows: Rows of a single partition, sorted by ``spec.sort_key``

        Returns:
            One DerivedValue per row, in row order

        Raises:
            OrderingViolation: If the rows are not sorted by the sort key
        """
        transform = self._transform_for(entity_type, spec)
        rows = [MappingProxyType(dict(row)) for row in partition_rows]

        keys = [sort_key_of(row, spec) for row in rows]
        for position in range(1, len(keys)):
            if keys[position] < keys[position - 1]:
                raise OrderingViolation(
                    entity_type, spec.target, position, rows[position].get("id")
                )

        values = [
            DerivedValue(
                row.get("id"),
                spec.target,
                transform(row, PartitionHistory(rows, position), source=spec.source),
            )
            for position, row in enumerate(rows)
        ]
        logger.debug(f"Recomputed '{entity_type}.{spec.target}' over {len(rows)} row(s)")
        return values
