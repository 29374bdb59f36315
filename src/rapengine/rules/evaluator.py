"""Constraint Evaluator.

Turns a SchemaDescriptor into predicates (once per descriptor) and runs all
of them against a candidate record, collecting every violation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from rapengine.core.types import (
    CustomScriptConstraint,
    EnumConstraint,
    LengthConstraint,
    NumericRangeConstraint,
    PatternConstraint,
    RangeConstraint,
    TimeRangeConstraint,
    ViolationReport,
)
from rapengine.rules.messages import MessageCatalog
from rapengine.rules.predicates import (
    CheckContext,
    EnumPredicate,
    LengthPredicate,
    NumericRangePredicate,
    PatternPredicate,
    Predicate,
    RangePredicate,
    RequiredPredicate,
    ScriptPredicate,
    TimeRangePredicate,
    TypePredicate,
    UniquePredicate,
)
from rapengine.schema.registry import SchemaDescriptor, SchemaRegistry
from rapengine.storage.base import Lookup

logger = logging.getLogger(__name__)


class _CompiledChecks:
    """Predicates for one entity type, grouped for the type-guard rule."""

    def __init__(self, descriptor: SchemaDescriptor) -> None:
        self.required: list[RequiredPredicate] = []
        self.types: dict[str, TypePredicate] = {}
        self.values: dict[str, list[Predicate]] = {}
        self.record: list[Predicate] = []

        calculated = descriptor.calculated_attributes
        for attr in descriptor.attributes.values():
            if attr.calculated or attr.name in calculated:
                continue
            if not attr.nullable:
                self.required.append(RequiredPredicate(attr.name))
            self.types[attr.name] = TypePredicate(attr.name, attr.type)
            checks = self.values.setdefault(attr.name, [])
            for constraint in attr.constraints:
                if isinstance(constraint, RangeConstraint):
                    checks.append(RangePredicate(attr.name, constraint))
                elif isinstance(constraint, LengthConstraint):
                    checks.append(LengthPredicate(attr.name, constraint))
                elif isinstance(constraint, PatternConstraint):
                    checks.append(
                        PatternPredicate(attr.name, constraint, descriptor.patterns[attr.name])
                    )
                elif isinstance(constraint, EnumConstraint):
                    checks.append(EnumPredicate(attr.name, constraint))

        for key_id, keys in descriptor.unique_keys.items():
            for attributes in keys:
                self.record.append(UniquePredicate(attributes, key_id))

        cross_field = [
            (c, attr.name) for attr in descriptor.attributes.values() for c in attr.constraints
        ] + [(c, None) for c in descriptor.spec.constraints]
        for constraint, owner in cross_field:
            if isinstance(constraint, CustomScriptConstraint):
                self.record.append(
                    ScriptPredicate(
                        descriptor.name,
                        constraint,
                        descriptor.scripts[constraint.name],
                        attribute=owner,
                    )
                )
            elif isinstance(constraint, TimeRangeConstraint):
                self.record.append(TimeRangePredicate(constraint))
            elif isinstance(constraint, NumericRangeConstraint):
                self.record.append(NumericRangePredicate(constraint))


class ConstraintEvaluator:
    """Validates records against their entity's declared constraints.

    Every check runs independently; a record violating k constraints yields
    exactly k violations. ``validate`` never mutates its inputs and only reads
    through ``lookup``, so it is safe to call speculatively (live preview).
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        catalog: MessageCatalog | None = None,
    ) -> None:
        """Initialize the evaluator.

        Args:
            registry: Schema registry to resolve entity types
            catalog: Message catalog (default: en + de)
        """
        self._registry = registry
        self._catalog = catalog or MessageCatalog()
        self._compiled: dict[SchemaDescriptor, _CompiledChecks] = {}
        self._lock = threading.Lock()

    @property
    def catalog(self) -> MessageCatalog:
        return self._catalog

    def _checks_for(self, descriptor: SchemaDescriptor) -> _CompiledChecks:
        checks = self._compiled.get(descriptor)
        if checks is None:
            with self._lock:
                checks = self._compiled.get(descriptor)
                if checks is None:
                    checks = _CompiledChecks(descriptor)
                    self._compiled[descriptor] = checks
        return checks

    def validate(
        self,
        entity_type: str,
        candidate: Mapping[str, Any],
        prior: Mapping[str, Any] | None = None,
        lookup: Lookup | None = None,
        locale: str | None = None,
    ) -> ViolationReport:
        """Validate a candidate record.

        Args:
            entity_type: Registered entity type
            candidate: Full record as it would be stored (prior values merged in)
            prior: Currently stored version, for updates
            lookup: Storage capabilities for Unique and rule scripts
            locale: Locale of ``Violation.message`` (all locales are in ``messages``)

        Returns:
            ViolationReport; empty means valid

        Raises:
            EntityNotFoundError: If the entity type is not registered
            LookupUnavailableError: If a Unique check is needed and lookup is None
        """
        descriptor = self._registry.lookup(entity_type)
        checks = self._checks_for(descriptor)
        context = CheckContext(
            entity_type=entity_type,
            candidate=candidate,
            prior=prior,
            lookup=lookup,
            catalog=self._catalog,
            locale=self._catalog.resolve_locale(locale),
        )

        report = ViolationReport(entity_type=entity_type)
        for predicate in checks.required:
            report.violations.extend(predicate.check(context))

        for attribute, type_check in checks.types.items():
            type_violations = type_check.check(context)
            if type_violations:
                # Range/Pattern/Enum are meaningless on a value of the wrong type
                report.violations.extend(type_violations)
                continue
            for predicate in checks.values.get(attribute, []):
                report.violations.extend(predicate.check(context))

        for predicate in checks.record:
            report.violations.extend(predicate.check(context))

        if report.violations:
            logger.debug(
                f"'{entity_type}' record {candidate.get('id')!r} has "
                f"{len(report.violations)} violation(s): {', '.join(report.kinds())}"
            )
        return report
