"""Read/write contract between the engine and a record store.

The engine never scans or persists records itself. It asks the storage layer
three questions (find one record, does a value tuple already exist, give me a
sorted partition) and hands back the values to persist.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from rapengine.core.types import DerivedFieldSpec, PartitionKey, Record

# lookup(entity_type, record_id) -> record or None
RecordLookup = Callable[[str, Any], "Mapping[str, Any] | None"]

# exists(entity_type, scope_attributes, candidate_values, excluding_id) -> bool
UniquenessCheck = Callable[[str, tuple[str, ...], tuple[Any, ...], Any], bool]


@dataclass(frozen=True)
class Lookup:
    """Capabilities the constraint evaluator may use.

    Both callables are opaque and may block or fail; the evaluator does not
    impose a timeout. Callers that need bounded validation latency should
    wrap them.
    """

    find: RecordLookup
    exists: UniquenessCheck


class RecordReader(Protocol):
    """Storage-side read operations the engine facade depends on."""

    def find_by_id(self, entity_type: str, record_id: Any) -> Record | None:
        """Return one record or None."""
        ...

    def exists_with_values(
        self,
        entity_type: str,
        attributes: tuple[str, ...],
        values: tuple[Any, ...],
        excluding_id: Any = None,
    ) -> bool:
        """Whether another record shares the given attribute values."""
        ...

    def partition_rows(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        partition: PartitionKey,
    ) -> list[Record]:
        """Rows of one partition, sorted by the field's sort key (ties by id)."""
        ...


def lookup_from_reader(reader: RecordReader) -> Lookup:
    """Bundle a reader's lookups into the evaluator capability."""
    return Lookup(find=reader.find_by_id, exists=reader.exists_with_values)


def jsonable(value: Any) -> Any:
    """Convert a value to the JSON-native form records are stored in.

    Dates and datetimes become ISO strings and Decimals become floats, so a
    candidate compares and sorts exactly like the stored rows around it.
    """
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value
