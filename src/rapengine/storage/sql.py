"""SQLAlchemy record store.

Reference implementation of the engine's read contract plus the writes that
persist a WriteResult. Unique lookups and partition reads filter on JSON
elements in SQL (``data->>'attr'`` on PostgreSQL, ``json_extract`` on
SQLite); the matches are then re-checked and sorted in Python, so both
dialects return the same rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import Session

from rapengine.core.types import (
    SYSTEM_KEYS,
    DerivedFieldSpec,
    DerivedValue,
    PartitionKey,
    Record,
    WriteResult,
)
from rapengine.derive.planner import partition_value, sort_rows
from rapengine.exceptions import RecordNotFoundError, StoreError
from rapengine.storage.base import jsonable
from rapengine.storage.locks import PartitionLocks
from rapengine.storage.models import Base, RecordRow, generate_uuid, utc_now

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def _attribute_data(record: Record) -> dict[str, Any]:
    return {k: jsonable(v) for k, v in record.items() if k not in SYSTEM_KEYS}


def _json_equals(attribute: str, value: Any) -> ColumnElement[bool] | None:
    """SQL filter for ``data[attribute] == value``.

    Returns None when the comparison can only be decided in Python: dotted
    paths, missing values and JSON objects or arrays.
    """
    if "." in attribute or value is None:
        return None
    element = RecordRow.data[attribute]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, (int, float)):
        return element.as_float() == float(value)
    if isinstance(value, str):
        return element.as_string() == value
    return None


class SQLRecordStore:
    """Stores records of every entity type in the ``rap_records`` table.

    Example:
        store = SQLRecordStore(connection.engine)
        store.ensure_tables()
        result = rule_engine.process_write("Reading", candidate, reader=store)
        store.commit(result)
    """

    def __init__(self, engine: Engine) -> None:
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine
        """
        self._engine = engine
        self._initialized = False
        self.locks = PartitionLocks()

    def ensure_tables(self) -> None:
        """Create the records table if it does not exist (idempotent)."""
        if self._initialized:
            return
        Base.metadata.create_all(self._engine, tables=[RecordRow.__table__])  # type: ignore[list-item]
        self._initialized = True

    def _active(self, entity_type: str) -> Any:
        return (
            select(RecordRow)
            .where(RecordRow.entity_type == entity_type)
            .where(RecordRow.is_deleted == False)  # noqa: E712
        )

    # === Read contract ===

    def find_by_id(self, entity_type: str, record_id: Any) -> Record | None:
        """Find one live record by id."""
        try:
            with Session(self._engine) as session:
                row = session.scalars(
                    self._active(entity_type).where(RecordRow.id == str(record_id))
                ).first()
                return row.to_dict() if row else None
        except Exception as e:
            raise StoreError(f"Failed to find record: {e}") from e

    def find_all(
        self,
        entity_type: str,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Record]:
        """All live records of an entity type, oldest first."""
        query = self._active(entity_type).order_by(RecordRow.created_at, RecordRow.id)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        try:
            with Session(self._engine) as session:
                return [row.to_dict() for row in session.scalars(query)]
        except Exception as e:
            raise StoreError(f"Failed to list '{entity_type}' records: {e}") from e

    def count(self, entity_type: str) -> int:
        """Number of live records of an entity type."""
        query = (
            select(func.count())
            .select_from(RecordRow)
            .where(RecordRow.entity_type == entity_type)
            .where(RecordRow.is_deleted == False)  # noqa: E712
        )
        try:
            with Session(self._engine) as session:
                return int(session.scalar(query) or 0)
        except Exception as e:
            raise StoreError(f"Failed to count '{entity_type}' records: {e}") from e

    def exists_with_values(
        self,
        entity_type: str,
        attributes: tuple[str, ...],
        values: tuple[Any, ...],
        excluding_id: Any = None,
    ) -> bool:
        """Whether another live record has exactly these attribute values."""
        wanted = [jsonable(v) for v in values]
        query = self._active(entity_type)
        for attribute, value in zip(attributes, wanted):
            condition = _json_equals(attribute, value)
            if condition is not None:
                query = query.where(condition)
        if excluding_id is not None:
            query = query.where(RecordRow.id != str(excluding_id))
        for record in self._records(query, entity_type):
            if [record.get(a) for a in attributes] == wanted:
                return True
        return False

    def partition_rows(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        partition: PartitionKey,
    ) -> list[Record]:
        """Rows of one partition sorted by the field's sort key, ties by id."""
        query = self._active(entity_type)
        if spec.partition_key is not None:
            condition = _json_equals(spec.partition_key, partition.value)
            if condition is not None:
                query = query.where(condition)
        rows = [
            r for r in self._records(query, entity_type) if partition_value(r, spec) == partition.value
        ]
        return sort_rows(rows, spec)

    def _records(self, query: Any, entity_type: str) -> list[Record]:
        try:
            with Session(self._engine) as session:
                return [row.to_dict() for row in session.scalars(query)]
        except Exception as e:
            raise StoreError(f"Failed to read '{entity_type}' records: {e}") from e

    # === Writes ===

    def commit(self, result: WriteResult, delete: bool = False) -> Record:
        """Persist a committed WriteResult in one transaction.

        The written record is inserted (new id) or replaced; with ``delete``
        it is soft-deleted instead. Derived values for other records are
        applied in the same transaction.

        Returns:
            The stored record

        Raises:
            StoreError: If the result was not committed or persisting fails
        """
        if not result.committed or result.record is None:
            raise StoreError(
                f"Cannot persist a '{result.state}' write to '{result.entity_type}'. "
                "Only committed results can be stored."
            )
        record = result.record
        record_id = str(record.get("id") or generate_uuid())
        now = utc_now()

        try:
            with Session(self._engine) as session:
                row = session.get(RecordRow, record_id)
                if delete:
                    if row is None or row.is_deleted:
                        raise RecordNotFoundError(record_id, result.entity_type)
                    row.is_deleted = True
                    row.updated_at = now
                elif row is None:
                    row = RecordRow(
                        id=record_id,
                        entity_type=result.entity_type,
                        data=_attribute_data(record),
                        created_at=now,
                        updated_at=now,
                        is_deleted=False,
                    )
                    session.add(row)
                else:
                    row.data = _attribute_data(record)
                    row.updated_at = now

                others = [v for v in result.derived if str(v.record_id) != record_id]
                self._apply(session, others, now)
                session.commit()
                stored = row.to_dict()
        except RecordNotFoundError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to persist '{result.entity_type}' write: {e}") from e

        action = "Deleted" if delete else "Stored"
        logger.info(
            f"{action} '{result.entity_type}' record {record_id} "
            f"({len(result.derived)} derived value(s))"
        )
        return stored

    def apply_derived(self, values: Sequence[DerivedValue]) -> int:
        """Persist derived values (used by rebuild). Returns rows updated."""
        if not values:
            return 0
        try:
            with Session(self._engine) as session:
                updated = self._apply(session, values, utc_now())
                session.commit()
                return updated
        except Exception as e:
            raise StoreError(f"Failed to apply derived values: {e}") from e

    @staticmethod
    def _apply(session: Session, values: Iterable[DerivedValue], now: Any) -> int:
        updates: dict[str, dict[str, Any]] = {}
        for value in values:
            updates.setdefault(str(value.record_id), {})[value.attribute] = jsonable(value.value)
        for record_id, changes in updates.items():
            row = session.get(RecordRow, record_id)
            if row is None:
                raise StoreError(f"Derived value targets unknown record '{record_id}'")
            # Reassign so the JSON column is flagged dirty
            row.data = {**(row.data or {}), **changes}
            row.updated_at = now
        return len(updates)
