"""Schema Registry: validated, immutable entity schemas.

Registration is validate-then-freeze. While the registry is *registering*,
each ``register`` call checks one entity completely and either stores it or
raises ``SchemaError`` without storing anything. ``freeze()`` checks the
cross-entity references and flips the registry to *frozen*; from then on it is
read-only and safe to share between threads. Hot reload builds a new registry
and swaps it in whole.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from rapengine.core.types import (
    CROSS_FIELD_KINDS,
    SYSTEM_KEYS,
    AttributeSpec,
    ConstraintSpec,
    CustomScriptConstraint,
    DerivedFieldSpec,
    EntitySpec,
    EnumConstraint,
    LengthConstraint,
    NumericRangeConstraint,
    PatternConstraint,
    RangeConstraint,
    SemanticType,
    TimeRangeConstraint,
    UniqueConstraint,
)
from rapengine.derive.transforms import Transform, TransformRegistry
from rapengine.exceptions import EntityNotFoundError, SchemaError
from rapengine.rules.predicates import PredicateFunction
from rapengine.rules.script import CompiledScript, ScriptSyntaxError, compile_script

logger = logging.getLogger(__name__)

NUMERIC_TYPES = frozenset({SemanticType.INT, SemanticType.NUMBER})
TEXT_TYPES = frozenset({SemanticType.STRING, SemanticType.PATTERN, SemanticType.URL, SemanticType.MAIL})


class RegistryState(StrEnum):
    REGISTERING = "registering"
    FROZEN = "frozen"


@dataclass(frozen=True, eq=False)
class SchemaDescriptor:
    """Read-only, pre-validated view of one entity type."""

    spec: EntitySpec
    attributes: Mapping[str, AttributeSpec]
    derived_fields: tuple[DerivedFieldSpec, ...]
    unique_keys: Mapping[str | None, tuple[tuple[str, ...], ...]]
    patterns: Mapping[str, re.Pattern[str]]
    scripts: Mapping[str, CompiledScript | PredicateFunction]
    transforms: Mapping[str, Transform]
    constraint_owners: Mapping[str, str | None] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def attribute_names(self) -> list[str]:
        return list(self.attributes)

    @property
    def label_attribute(self) -> str | None:
        return next((a.name for a in self.attributes.values() if a.is_label), None)

    @property
    def calculated_attributes(self) -> set[str]:
        return {f.target for f in self.derived_fields}

    def derived_field(self, target: str) -> DerivedFieldSpec | None:
        return next((f for f in self.derived_fields if f.target == target), None)

    def defaults(self) -> dict[str, Any]:
        """Attribute defaults declared with [DEFAULT=x]."""
        return {a.name: a.default for a in self.attributes.values() if a.default is not None}


class SchemaRegistry:
    """Holds every registered entity type.

    Example:
        registry = SchemaRegistry()
        registry.register(
            "Meter",
            attributes=[{"name": "serial", "type": "string", "nullable": False}],
        )
        registry.freeze()
        descriptor = registry.lookup("Meter")
    """

    def __init__(self, transforms: TransformRegistry | None = None) -> None:
        self._transforms = transforms or TransformRegistry()
        self._predicates: dict[str, PredicateFunction] = {}
        self._entities: dict[str, SchemaDescriptor] = {}
        self._state = RegistryState.REGISTERING
        self._lock = threading.Lock()

    @classmethod
    def from_specs(
        cls,
        specs: Iterable[EntitySpec | dict[str, Any]],
        transforms: TransformRegistry | None = None,
        predicates: Mapping[str, PredicateFunction] | None = None,
    ) -> SchemaRegistry:
        """Build and freeze a registry in one step."""
        registry = cls(transforms)
        for name, func in (predicates or {}).items():
            registry.register_predicate(name, func)
        for spec in specs:
            registry.register_spec(spec)
        registry.freeze()
        return registry

    @property
    def state(self) -> RegistryState:
        return self._state

    @property
    def is_frozen(self) -> bool:
        return self._state == RegistryState.FROZEN

    @property
    def transforms(self) -> TransformRegistry:
        return self._transforms

    def register_transform(self, name: str, func: Transform) -> None:
        """Make a Python transform available to derived fields."""
        self._ensure_registering(name)
        self._transforms.register(name, func)

    def register_predicate(self, name: str, func: PredicateFunction) -> None:
        """Make a Python predicate available to CustomScript constraints."""
        self._ensure_registering(name)
        self._predicates[name] = func

    def _ensure_registering(self, entity_type: str) -> None:
        if self._state == RegistryState.FROZEN:
            raise SchemaError(
                entity_type,
                "registry is frozen. Build a new registry and reload it to change schemas.",
            )

    # === Registration ===

    def register(
        self,
        entity_type: str,
        attributes: Iterable[AttributeSpec | dict[str, Any]],
        derived_fields: Iterable[DerivedFieldSpec | dict[str, Any]] = (),
        constraints: Iterable[ConstraintSpec | dict[str, Any]] = (),
        description: str | None = None,
    ) -> SchemaDescriptor:
        """Register one entity type (all-or-nothing).

        Args:
            entity_type: Entity name
            attributes: Attribute specs (models or dicts)
            derived_fields: Derived field specs (models or dicts)
            constraints: Entity-level cross-field constraints
            description: Human-readable description

        Returns:
            The stored SchemaDescriptor

        Raises:
            SchemaError: If the definition is invalid or the registry is frozen
        """
        try:
            spec = EntitySpec(
                name=entity_type,
                attributes=list(attributes),
                derived_fields=list(derived_fields),
                constraints=list(constraints),
                description=description,
            )
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            raise SchemaError(entity_type, f"malformed definition: {e}") from e
        return self.register_spec(spec)

    def register_spec(self, spec: EntitySpec | dict[str, Any]) -> SchemaDescriptor:
        """Register an EntitySpec (or its dict form)."""
        if isinstance(spec, dict):
            try:
                spec = EntitySpec(**spec)
            except ValueError as e:
                raise SchemaError(str(spec.get("name", "?")), f"malformed definition: {e}") from e

        with self._lock:
            self._ensure_registering(spec.name)
            if spec.name in self._entities:
                raise SchemaError(spec.name, "entity type is already registered")
            descriptor = self._build_descriptor(spec)
            self._entities[spec.name] = descriptor

        logger.debug(
            f"Registered '{spec.name}' with {len(spec.attributes)} attributes "
            f"and {len(spec.derived_fields)} derived fields"
        )
        return descriptor

    def freeze(self) -> None:
        """Check cross-entity references and make the registry read-only."""
        with self._lock:
            if self._state == RegistryState.FROZEN:
                return
            for descriptor in self._entities.values():
                for attr in descriptor.attributes.values():
                    if attr.references and attr.references not in self._entities:
                        raise SchemaError(
                            descriptor.name,
                            f"references unknown entity '{attr.references}'. "
                            f"Registered: {', '.join(sorted(self._entities)) or 'none'}",
                            attr.name,
                        )
            self._entities = MappingProxyType(dict(self._entities))  # type: ignore[assignment]
            self._state = RegistryState.FROZEN
        logger.info(f"Schema registry frozen with {len(self._entities)} entity types")

    # === Read access ===

    def lookup(self, entity_type: str) -> SchemaDescriptor:
        """Get the descriptor of an entity type.

        Raises:
            EntityNotFoundError: If the entity type is not registered
        """
        descriptor = self._entities.get(entity_type)
        if descriptor is None:
            raise EntityNotFoundError(entity_type, self.list_entities())
        return descriptor

    def list_entities(self) -> list[str]:
        return sorted(self._entities)

    def descriptors(self) -> list[SchemaDescriptor]:
        return [self._entities[name] for name in self.list_entities()]

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    # === Validation ===

    def _build_descriptor(self, spec: EntitySpec) -> SchemaDescriptor:
        name = spec.name
        if not name or not name.strip():
            raise SchemaError(name or "?", "entity name must not be empty")

        attributes: dict[str, AttributeSpec] = {}
        for attr in spec.attributes:
            if attr.name in attributes:
                raise SchemaError(name, "attribute is declared twice", attr.name)
            if attr.name in SYSTEM_KEYS:
                raise SchemaError(
                    name,
                    f"'{attr.name}' is reserved. Reserved names: {', '.join(sorted(SYSTEM_KEYS))}",
                    attr.name,
                )
            attributes[attr.name] = attr

        patterns: dict[str, re.Pattern[str]] = {}
        scripts: dict[str, CompiledScript | PredicateFunction] = {}
        owners: dict[str, str | None] = {}
        single_keys: list[tuple[str, ...]] = []
        composite: dict[str, list[str]] = {}

        for attr in attributes.values():
            self._check_attribute_type(name, attr)
            for constraint in attr.constraints:
                if isinstance(constraint, RangeConstraint):
                    self._check_range(name, attr, constraint)
                elif isinstance(constraint, LengthConstraint):
                    self._check_length(name, attr, constraint)
                elif isinstance(constraint, PatternConstraint):
                    patterns[attr.name] = self._compile_pattern(name, attr.name, constraint)
                elif isinstance(constraint, EnumConstraint):
                    if not constraint.allowed_values:
                        raise SchemaError(name, "enum has no allowed values", attr.name)
                elif isinstance(constraint, UniqueConstraint):
                    if constraint.key_id is None:
                        single_keys.append((attr.name,))
                    else:
                        composite.setdefault(constraint.key_id, []).append(attr.name)
                else:
                    self._check_cross_field(name, attributes, constraint, scripts, owners, attr.name)

        for constraint in spec.constraints:
            if constraint.kind not in CROSS_FIELD_KINDS:
                raise SchemaError(
                    name,
                    f"'{constraint.kind}' constraints belong on an attribute; "
                    "entity-level constraints must be TimeRange, NumericRange or CustomScript",
                )
            self._check_cross_field(name, attributes, constraint, scripts, owners, None)

        for key_id, members in composite.items():
            if len(members) < 2:
                raise SchemaError(
                    name,
                    f"composite unique key '{key_id}' needs at least two attributes. "
                    "Use a single-column Unique constraint instead.",
                    members[0],
                )

        derived, transforms = self._check_derived_fields(name, attributes, spec.derived_fields)

        # Derived targets are produced by the engine, never supplied
        for target in transforms:
            if not attributes[target].calculated:
                attributes[target] = attributes[target].model_copy(update={"calculated": True})

        unique_keys: dict[str | None, tuple[tuple[str, ...], ...]] = {None: tuple(single_keys)}
        for key_id, members in composite.items():
            unique_keys[key_id] = (tuple(members),)

        return SchemaDescriptor(
            spec=spec,
            attributes=MappingProxyType(attributes),
            derived_fields=derived,
            unique_keys=MappingProxyType(unique_keys),
            patterns=MappingProxyType(patterns),
            scripts=MappingProxyType(scripts),
            transforms=MappingProxyType(transforms),
            constraint_owners=MappingProxyType(owners),
        )

    def _check_attribute_type(self, entity_type: str, attr: AttributeSpec) -> None:
        kinds = {c.kind for c in attr.constraints}
        if attr.type == SemanticType.FOREIGN_KEY and not attr.references:
            raise SchemaError(entity_type, "foreign-key attribute needs 'references'", attr.name)
        if attr.type == SemanticType.PATTERN and "Pattern" not in kinds:
            raise SchemaError(entity_type, "pattern type needs a Pattern constraint", attr.name)
        if attr.type == SemanticType.ENUM and "Enum" not in kinds:
            raise SchemaError(entity_type, "enum type needs an Enum constraint", attr.name)

    def _check_range(self, entity_type: str, attr: AttributeSpec, constraint: RangeConstraint) -> None:
        if attr.type not in NUMERIC_TYPES:
            raise SchemaError(
                entity_type,
                f"Range applies to int/number attributes, not '{attr.type}'",
                attr.name,
            )
        if constraint.min is None and constraint.max is None:
            raise SchemaError(entity_type, "Range needs min, max or both", attr.name)
        if constraint.min is not None and constraint.max is not None and constraint.min > constraint.max:
            raise SchemaError(
                entity_type,
                f"Range min {constraint.min:g} is greater than max {constraint.max:g}; "
                "no value could ever be valid",
                attr.name,
            )

    def _check_length(self, entity_type: str, attr: AttributeSpec, constraint: LengthConstraint) -> None:
        if attr.type not in TEXT_TYPES:
            raise SchemaError(
                entity_type,
                f"Length applies to text attributes, not '{attr.type}'",
                attr.name,
            )
        if constraint.min is None and constraint.max is None:
            raise SchemaError(entity_type, "Length needs min, max or both", attr.name)
        if constraint.min is not None and constraint.max is not None and constraint.min > constraint.max:
            raise SchemaError(
                entity_type,
                f"Length min {constraint.min} is greater than max {constraint.max}",
                attr.name,
            )

    def _compile_pattern(
        self, entity_type: str, attribute: str, constraint: PatternConstraint
    ) -> re.Pattern[str]:
        try:
            return re.compile(constraint.regex)
        except re.error as e:
            raise SchemaError(
                entity_type, f"invalid regular expression {constraint.regex!r}: {e}", attribute
            ) from e

    def _check_cross_field(
        self,
        entity_type: str,
        attributes: Mapping[str, AttributeSpec],
        constraint: ConstraintSpec,
        scripts: dict[str, CompiledScript | PredicateFunction],
        owners: dict[str, str | None],
        owner: str | None,
    ) -> None:
        if isinstance(constraint, TimeRangeConstraint):
            self._check_pair(
                entity_type,
                attributes,
                "TimeRange",
                (constraint.start_attr, constraint.end_attr),
                frozenset({SemanticType.DATE}),
            )
            return
        if isinstance(constraint, NumericRangeConstraint):
            self._check_pair(
                entity_type,
                attributes,
                "NumericRange",
                (constraint.lower_attr, constraint.upper_attr),
                NUMERIC_TYPES,
            )
            return
        if not isinstance(constraint, CustomScriptConstraint):
            raise SchemaError(
                entity_type,
                f"'{constraint.kind}' is not a cross-field constraint",
                owner,
            )

        rule = constraint.name
        if rule in scripts:
            raise SchemaError(entity_type, f"rule '{rule}' is declared twice")
        for attr_name in constraint.attributes:
            if attr_name not in attributes:
                raise SchemaError(
                    entity_type, f"rule '{rule}' blames an unknown attribute", attr_name
                )

        if (constraint.body is None) == (constraint.predicate is None):
            raise SchemaError(
                entity_type, f"rule '{rule}' needs exactly one of 'body' or 'predicate'", owner
            )
        if constraint.predicate is not None:
            func = self._predicates.get(constraint.predicate)
            if func is None:
                raise SchemaError(
                    entity_type,
                    f"rule '{rule}' uses unknown predicate '{constraint.predicate}'. "
                    f"Registered: {', '.join(sorted(self._predicates)) or 'none'}",
                    owner,
                )
            scripts[rule] = func
        else:
            try:
                scripts[rule] = compile_script(rule, constraint.body or "")
            except ScriptSyntaxError as e:
                raise SchemaError(entity_type, f"rule '{rule}': {e}", owner) from e
        owners[rule] = owner

    def _check_derived_fields(
        self,
        entity_type: str,
        attributes: Mapping[str, AttributeSpec],
        fields: list[DerivedFieldSpec],
    ) -> tuple[tuple[DerivedFieldSpec, ...], dict[str, Transform]]:
        transforms: dict[str, Transform] = {}
        for spec in fields:
            target = spec.target
            if target not in attributes:
                raise SchemaError(entity_type, "derived field targets an unknown attribute", target)
            if target in transforms:
                raise SchemaError(entity_type, "attribute has two derived field definitions", target)
            if target in spec.depends_on:
                raise SchemaError(entity_type, "derived field depends on itself", target)
            for dep in spec.depends_on:
                if dep not in attributes:
                    raise SchemaError(
                        entity_type,
                        f"derived field '{target}' depends on unknown attribute '{dep}'",
                        dep,
                    )
            if spec.partition_root is not None and spec.partition_root not in attributes:
                raise SchemaError(
                    entity_type,
                    f"derived field '{target}' partitions by unknown attribute",
                    spec.partition_root,
                )
            for key in spec.sort_key:
                if key.attribute not in attributes:
                    raise SchemaError(
                        entity_type,
                        f"derived field '{target}' sorts by unknown attribute",
                        key.attribute,
                    )
            if spec.source is not None and spec.source not in attributes:
                raise SchemaError(
                    entity_type, f"derived field '{target}' reads unknown attribute", spec.source
                )
            transform = self._transforms.get(spec.transform)
            if transform is None:
                raise SchemaError(
                    entity_type,
                    f"unknown transform '{spec.transform}'. "
                    f"Available: {', '.join(self._transforms.names())}",
                    target,
                )
            if spec.transform in TransformRegistry.NEEDS_SOURCE and spec.source is None:
                raise SchemaError(
                    entity_type, f"transform '{spec.transform}' needs a source attribute", target
                )
            transforms[target] = transform

        return self._order_derived_fields(entity_type, fields), transforms

    def _order_derived_fields(
        self, entity_type: str, fields: list[DerivedFieldSpec]
    ) -> tuple[DerivedFieldSpec, ...]:
        """Order derived fields so each runs after the fields it reads.

        Declaration order is kept wherever the dependencies allow it.
        """
        targets = {f.target for f in fields}
        pending = list(fields)
        ordered: list[DerivedFieldSpec] = []
        done: set[str] = set()
        while pending:
            ready = next(
                (f for f in pending if all(d in done for d in f.depends_on if d in targets)),
                None,
            )
            if ready is None:
                cycle = ", ".join(f.target for f in pending)
                raise SchemaError(entity_type, f"derived fields depend on each other in a cycle: {cycle}")
            ordered.append(ready)
            done.add(ready.target)
            pending.remove(ready)
        return tuple(ordered)

    @staticmethod
    def _check_pair(
        entity_type: str,
        attributes: Mapping[str, AttributeSpec],
        kind: str,
        pair: tuple[str, str],
        types: frozenset[SemanticType],
    ) -> None:
        for attr_name in pair:
            attr = attributes.get(attr_name)
            if attr is None:
                raise SchemaError(entity_type, f"{kind} references an unknown attribute", attr_name)
            if attr.type not in types:
                raise SchemaError(
                    entity_type,
                    f"{kind} compares {' or '.join(sorted(types))} attributes, not '{attr.type}'",
                    attr_name,
                )
