"""Main RapEngine class and Entity class."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from rapengine.core.config import EngineSettings
from rapengine.core.connection import DatabaseConnection
from rapengine.core.facade import RuleEngine
from rapengine.core.types import (
    DerivedFieldSpec,
    EntityInfo,
    EntitySpec,
    PartitionKey,
    Record,
    SchemaInfo,
    Trigger,
    ViolationReport,
    WriteResult,
)
from rapengine.derive.transforms import Transform, TransformRegistry
from rapengine.exceptions import (
    AttributeNotFoundError,
    EntityNotFoundError,
    ReadOnlyAttributeError,
    RecordNotFoundError,
)
from rapengine.rules.messages import MessageCatalog
from rapengine.rules.predicates import PredicateFunction, is_absent
from rapengine.schema.markdown import load_directory
from rapengine.schema.registry import SchemaRegistry
from rapengine.storage.base import jsonable, lookup_from_reader
from rapengine.storage.models import generate_uuid
from rapengine.storage.sql import SQLRecordStore

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class Entity:
    """Write and read operations on one entity type.

    Every write runs through the rule engine: the record is validated, the
    derived fields it affects are recomputed, and the record plus all
    recomputed neighbours are stored in one transaction. Writes hold the
    locks of every partition they touch.
    """

    def __init__(self, name: str, engine: RapEngine) -> None:
        """Initialize entity.

        Args:
            name: Entity name
            engine: Parent RapEngine instance
        """
        self._name = name
        self._engine = engine

    @property
    def name(self) -> str:
        """Get entity name."""
        return self._name

    @property
    def _store(self) -> SQLRecordStore:
        return self._engine.store

    def _prepare(self, rules: RuleEngine, data: Mapping[str, Any]) -> dict[str, Any]:
        """Check attribute names and convert values to their stored form."""
        descriptor = rules.registry.lookup(self._name)
        prepared = {}
        for key, value in data.items():
            if key in ("id", "entity_type"):
                continue
            attr = descriptor.attributes.get(key)
            if attr is None:
                raise AttributeNotFoundError(key, self._name, descriptor.attribute_names)
            if attr.calculated:
                raise ReadOnlyAttributeError(key, self._name)
            prepared[key] = jsonable(value)
        return prepared

    def _with_defaults(self, rules: RuleEngine, values: dict[str, Any]) -> dict[str, Any]:
        descriptor = rules.registry.lookup(self._name)
        for name, default in descriptor.defaults().items():
            if is_absent(values.get(name)):
                values[name] = default
        return values

    def _lock_keys(
        self,
        rules: RuleEngine,
        record: Mapping[str, Any],
        prior: Mapping[str, Any] | None,
        fields: Iterable[DerivedFieldSpec] | None = None,
    ) -> set[PartitionKey]:
        """Partition keys a write of ``record`` has to lock."""
        if fields is None:
            changed = rules.planner.changed_attributes(prior, record)
            fields = rules.planner.fields_for_change(self._name, changed)
        keys: set[PartitionKey] = set()
        for spec in fields:
            keys |= rules.planner.affected_partitions(self._name, spec, record, prior)
        if any(rules.registry.lookup(self._name).unique_keys.values()):
            # Uniqueness is entity-wide: serialize writes that could collide
            keys.add(PartitionKey(self._name, None, None))
        return keys

    def _under_locks(
        self,
        keys: set[PartitionKey],
        write: Callable[[], tuple[set[PartitionKey], Callable[[], _T]]],
    ) -> _T:
        """Run ``write`` holding ``keys``, growing the lock set until it suffices.

        ``write`` re-reads the stored state and returns the keys that state
        needs plus the action to run. When a concurrent write moved records
        into partitions outside the held set, the locks are released and
        taken again with the missing keys added.
        """
        while True:
            with self._store.locks.hold(keys):
                needed, action = write()
                if needed <= keys:
                    return action()
            logger.debug(f"Lock set of '{self._name}' write grew by {len(needed - keys)} key(s); retrying")
            keys = keys | needed

    def _commit(self, result: WriteResult, delete: bool = False) -> Record:
        result.raise_for_state()
        return self._store.commit(result, delete=delete)

    # === Writes ===

    def insert(self, data: Mapping[str, Any], locale: str | None = None) -> Record:
        """Validate, derive and store a new record.

        Args:
            data: Attribute values; defaults fill absent attributes
            locale: Locale of violation messages

        Returns:
            The stored record, including its derived values

        Raises:
            RecordValidationError: If the record violates a constraint
            DerivationFailure: If recomputing a derived field failed
        """
        rules = self._engine.rules
        values = self._with_defaults(rules, self._prepare(rules, data))
        candidate = {"id": generate_uuid(), "entity_type": self._name, **values}
        with self._store.locks.hold(self._lock_keys(rules, candidate, None)):
            result = rules.process_write(self._name, candidate, reader=self._store, locale=locale)
            return self._commit(result)

    def insert_many(self, records: Iterable[Mapping[str, Any]], locale: str | None = None) -> list[Record]:
        """Insert records one after another; stops at the first rejected record."""
        return [self.insert(data, locale=locale) for data in records]

    def update(
        self,
        record_id: str,
        data: Mapping[str, Any],
        locale: str | None = None,
    ) -> Record:
        """Change attributes of a stored record.

        Unique keys are only checked when the update changes one of their
        values. Duplicates that were stored before a Unique constraint was
        added to the schema are not reported by updates that leave the key
        alone.

        Raises:
            RecordNotFoundError: If the record does not exist
            RecordValidationError: If the changed record violates a constraint
        """
        rules = self._engine.rules
        changes = self._prepare(rules, data)

        def write() -> tuple[set[PartitionKey], Callable[[], Record]]:
            # Re-read under the lock so the update merges with the latest version
            prior = self._require(record_id)
            candidate = {**prior, **changes}

            def action() -> Record:
                result = rules.process_write(
                    self._name, candidate, prior=prior, reader=self._store, locale=locale
                )
                return self._commit(result)

            return self._lock_keys(rules, candidate, prior), action

        prior = self._require(record_id)
        return self._under_locks(self._lock_keys(rules, {**prior, **changes}, prior), write)

    def delete(self, record_id: str) -> bool:
        """Delete a record and recompute the partitions it leaves.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        rules = self._engine.rules
        descriptor = rules.registry.lookup(self._name)
        fields = [f for f in descriptor.derived_fields if f.trigger == Trigger.ONCHANGE]

        def write() -> tuple[set[PartitionKey], Callable[[], Record]]:
            record = self._require(record_id)

            def action() -> Record:
                result = rules.process_delete(self._name, record, reader=self._store)
                return self._commit(result, delete=True)

            return self._lock_keys(rules, record, None, fields), action

        record = self._require(record_id)
        self._under_locks(self._lock_keys(rules, record, None, fields), write)
        return True

    def rebuild(self, field: str | None = None) -> int:
        """Recompute derived fields over all stored records.

        Includes ON_DEMAND fields. Returns the number of values that changed.

        Raises:
            AttributeNotFoundError: If ``field`` is not a derived field
        """
        rules = self._engine.rules
        descriptor = rules.registry.lookup(self._name)
        if field is None:
            fields = list(descriptor.derived_fields)
        else:
            spec = descriptor.derived_field(field)
            if spec is None:
                raise AttributeNotFoundError(
                    field, self._name, sorted(descriptor.calculated_attributes)
                )
            fields = [spec]

        def partition_keys(rows: list[Record]) -> set[PartitionKey]:
            keys: set[PartitionKey] = set()
            for derived in fields:
                keys |= set(rules.planner.group_partitions(self._name, derived, rows))
            return keys

        def write() -> tuple[set[PartitionKey], Callable[[], int]]:
            rows = self._store.find_all(self._name)

            def action() -> int:
                values = rules.rebuild(self._name, rows, fields)
                self._store.apply_derived(values)
                return len(values)

            return partition_keys(rows), action

        return self._under_locks(partition_keys(self._store.find_all(self._name)), write)

    # === Speculative checks ===

    def validate(
        self,
        data: Mapping[str, Any],
        record_id: str | None = None,
        locale: str | None = None,
    ) -> ViolationReport:
        """Validate record data without storing it (live preview).

        With ``record_id`` the data is treated as changes to that record.
        """
        rules = self._engine.rules
        candidate, prior = self._candidate(rules, data, record_id)
        return rules.evaluator.validate(
            self._name, candidate, prior, lookup_from_reader(self._store), locale
        )

    def preview(
        self,
        data: Mapping[str, Any],
        record_id: str | None = None,
        locale: str | None = None,
    ) -> WriteResult:
        """Run a write through validation and derivation without storing it."""
        rules = self._engine.rules
        candidate, prior = self._candidate(rules, data, record_id)
        return rules.process_write(self._name, candidate, prior, self._store, locale)

    def _candidate(
        self, rules: RuleEngine, data: Mapping[str, Any], record_id: str | None
    ) -> tuple[dict[str, Any], Record | None]:
        values = self._prepare(rules, data)
        if record_id is None:
            return {"entity_type": self._name, **self._with_defaults(rules, values)}, None
        prior = self._require(record_id)
        return {**prior, **values}, prior

    # === Reads ===

    def _require(self, record_id: str) -> Record:
        record = self._store.find_by_id(self._name, record_id)
        if record is None:
            raise RecordNotFoundError(record_id, self._name)
        return record

    def find_by_id(self, record_id: str) -> Record | None:
        """Find a record by ID, or None."""
        return self._store.find_by_id(self._name, record_id)

    def get(self, record_id: str) -> Record:
        """Get a record by ID.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        return self._require(record_id)

    def find_all(self, limit: int | None = None, offset: int | None = None) -> list[Record]:
        """All records, oldest first."""
        return self._store.find_all(self._name, limit=limit, offset=offset)

    def count(self) -> int:
        return self._store.count(self._name)

    def describe(self) -> EntityInfo:
        """Get entity information."""
        return self._engine.describe_entity(self._name)


class RapEngine:
    """Schema-driven record engine: validation and derived attributes.

    Example:
        engine = RapEngine("sqlite:///:memory:", schema_dir="models/")
        readings = engine.entity("Reading")
        first = readings.insert({"meter": "M1", "reading_at": "2024-01-01", "value": 100})
        second = readings.insert({"meter": "M1", "reading_at": "2024-02-01", "value": 120})
        print(second["usage"])  # 20
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        settings: EngineSettings | None = None,
        registry: SchemaRegistry | None = None,
        schema_dir: str | Path | None = None,
        transforms: TransformRegistry | None = None,
        predicates: Mapping[str, PredicateFunction] | None = None,
        echo: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            url: Database URL (default: RAPENGINE_URL or a local SQLite file)
            settings: Full settings; ``url``/``schema_dir``/``echo`` override them
            registry: A frozen schema registry to use as-is
            schema_dir: Directory of entity markdown files to load
            transforms: Custom transforms available to derived fields
            predicates: Named Python predicates available to CustomScript rules
            echo: Whether to echo SQL statements (for debugging)
        """
        base = settings or EngineSettings.from_env()
        overrides = {"database_url": url, "schema_dir": schema_dir, "echo": echo or None}
        self.settings = base.model_copy(update={k: v for k, v in overrides.items() if v is not None})

        self._transforms = transforms or TransformRegistry()
        self._predicates = dict(predicates or {})
        self._catalog = MessageCatalog(self.settings.locales, self.settings.default_locale)

        self._connection = DatabaseConnection(self.settings.database_url, echo=self.settings.echo)
        self._store = SQLRecordStore(self._connection.engine)
        self._store.ensure_tables()
        self._entities: dict[str, Entity] = {}

        if registry is None:
            if self.settings.schema_dir is not None:
                registry = self._registry_from(load_directory(self.settings.schema_dir))
            else:
                registry = self._registry_from([])
        self._rules = RuleEngine(registry, catalog=self._catalog)

    def _registry_from(self, specs: Iterable[EntitySpec | dict[str, Any]]) -> SchemaRegistry:
        return SchemaRegistry.from_specs(specs, self._transforms, self._predicates)

    @property
    def rules(self) -> RuleEngine:
        """The rule engine of the current schema (replaced on reload)."""
        return self._rules

    @property
    def registry(self) -> SchemaRegistry:
        return self._rules.registry

    @property
    def store(self) -> SQLRecordStore:
        return self._store

    def close(self) -> None:
        """Close the database connection."""
        self._connection.close()

    def __enter__(self) -> RapEngine:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    # === Schema ===

    def register_transform(self, name: str, func: Transform) -> None:
        """Add a transform for schemas loaded after this call."""
        self._transforms.register(name, func)

    def register_predicate(self, name: str, func: PredicateFunction) -> None:
        """Add a named predicate for schemas loaded after this call."""
        self._predicates[name] = func

    def reload_schema(
        self,
        source: str | Path | Iterable[EntitySpec | dict[str, Any]] | SchemaRegistry | None = None,
    ) -> list[str]:
        """Replace the whole schema atomically.

        The new registry is built and validated completely before it is
        swapped in; on SchemaError the current schema stays active. Writes
        already running finish against the schema they started with.

        Args:
            source: Markdown directory, entity specs, or a frozen registry
                (default: the configured schema directory)

        Returns:
            Entity names of the new schema
        """
        if isinstance(source, SchemaRegistry):
            registry = source
        elif source is None or isinstance(source, (str, Path)):
            directory = source or self.settings.schema_dir
            if directory is None:
                raise ValueError("No schema directory configured. Pass a directory to reload_schema().")
            registry = self._registry_from(load_directory(directory))
        else:
            registry = self._registry_from(source)

        self._rules = RuleEngine(registry, catalog=self._catalog)
        self._entities = {}
        logger.info(f"Schema reloaded: {', '.join(registry.list_entities()) or 'no entities'}")
        return registry.list_entities()

    load_schema = reload_schema

    def list_entities(self) -> list[str]:
        return self.registry.list_entities()

    def entity(self, name: str) -> Entity:
        """Get an entity by name.

        Raises:
            EntityNotFoundError: If entity isn't registered
        """
        if name not in self.registry:
            raise EntityNotFoundError(name, self.registry.list_entities())
        if name not in self._entities:
            self._entities[name] = Entity(name, self)
        return self._entities[name]

    def describe_entity(self, name: str) -> EntityInfo:
        """Get information about a registered entity.

        Raises:
            EntityNotFoundError: If entity isn't registered
        """
        descriptor = self.registry.lookup(name)
        unique_keys = {
            key_id or members[0]: list(members)
            for key_id, keys in descriptor.unique_keys.items()
            for members in keys
        }
        return EntityInfo(
            name=descriptor.name,
            description=descriptor.spec.description,
            attributes=list(descriptor.attributes.values()),
            derived_fields=list(descriptor.derived_fields),
            constraints=list(descriptor.spec.constraints),
            unique_keys=unique_keys,
            label_attribute=descriptor.label_attribute,
            record_count=self._store.count(name),
        )

    def describe(self) -> dict[str, Any]:
        """Get the full schema as a JSON-serializable dict."""
        entities = {name: self.describe_entity(name) for name in self.list_entities()}
        info = SchemaInfo(
            entities=entities,
            total_entities=len(entities),
            total_attributes=sum(len(e.attributes) for e in entities.values()),
        )
        return info.model_dump(mode="json")
