"""Built-in predicates used by the constraint evaluator.

Every constraint kind is a Predicate: ``check(context) -> list[Violation]``.
Attribute-level kinds (Required, Type, Range, Length, Pattern, Enum) look at a
single value; Unique asks the storage layer; TimeRange, NumericRange and
CustomScript look at the whole record. Predicates are independent of each
other, so the evaluator can run them in any order and collect everything.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Any

from rapengine.core.types import (
    ConstraintKind,
    CustomScriptConstraint,
    EnumConstraint,
    LengthConstraint,
    NumericRangeConstraint,
    PatternConstraint,
    RangeConstraint,
    SemanticType,
    TimeRangeConstraint,
    Violation,
)
from rapengine.exceptions import LookupUnavailableError
from rapengine.rules.messages import Localized, MessageCatalog
from rapengine.rules.script import CompiledScript
from rapengine.storage.base import Lookup

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
MAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Python predicate signature: (read-only record, lookup) -> truthy when valid
PredicateFunction = Callable[[Mapping[str, Any], Callable[[str, Any], Any]], Any]


@dataclass(frozen=True)
class CheckContext:
    """Everything a predicate may look at for one validation pass."""

    entity_type: str
    candidate: Mapping[str, Any]
    prior: Mapping[str, Any] | None
    lookup: Lookup | None
    catalog: MessageCatalog
    locale: str

    def violation(
        self,
        attribute: str,
        kind: ConstraintKind,
        value: Any = None,
        related: list[str] | None = None,
        custom: dict[str, str] | None = None,
        **params: Any,
    ) -> Violation:
        """Build a violation with messages rendered in every locale."""
        messages = self.catalog.render_all(
            kind, custom=custom, attribute=attribute, value=value, **params
        )
        return Violation(
            attribute=attribute,
            kind=kind,
            message=messages[self.locale],
            locale=self.locale,
            messages=messages,
            value=value,
            related_attributes=related or [],
        )

    def read_only_lookup(self, entity_type: str, record_id: Any) -> Mapping[str, Any] | None:
        """Single-record lookup capability handed to rule scripts."""
        if self.lookup is None:
            raise LookupUnavailableError(self.entity_type, "lookup")
        found = self.lookup.find(entity_type, record_id)
        return MappingProxyType(dict(found)) if found is not None else None


def is_absent(value: Any) -> bool:
    """None and blank strings count as "no value"."""
    return value is None or (isinstance(value, str) and not value.strip())


def to_datetime(value: Any) -> datetime | None:
    """Normalize dates, datetimes and ISO strings for comparison."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_json(value: Any) -> bool:
    if isinstance(value, (dict, list)):
        return True
    if isinstance(value, str):
        try:
            json.loads(value)
        except json.JSONDecodeError:
            return False
        return True
    return False


def _is_geo(value: Any) -> bool:
    if isinstance(value, Mapping):
        lat, lng = value.get("lat"), value.get("lng", value.get("lon"))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lng = value
    elif isinstance(value, str) and value.count(",") == 1:
        try:
            lat, lng = (float(part) for part in value.split(","))
        except ValueError:
            return False
    else:
        return False
    if not (_is_number(lat) and _is_number(lng)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


TYPE_CHECKS: dict[SemanticType, Callable[[Any], bool]] = {
    SemanticType.STRING: lambda v: isinstance(v, str),
    SemanticType.PATTERN: lambda v: isinstance(v, str),
    SemanticType.INT: _is_int,
    SemanticType.NUMBER: _is_number,
    SemanticType.BOOL: lambda v: isinstance(v, bool),
    SemanticType.DATE: lambda v: to_datetime(v) is not None,
    SemanticType.URL: lambda v: isinstance(v, str) and bool(URL_PATTERN.match(v)),
    SemanticType.MAIL: lambda v: isinstance(v, str) and bool(MAIL_PATTERN.match(v)),
    SemanticType.JSON: _is_json,
    SemanticType.GEO: _is_geo,
    SemanticType.ADDRESS: lambda v: isinstance(v, (str, Mapping)),
    SemanticType.CONTACT: lambda v: isinstance(v, (str, Mapping)),
    SemanticType.ENUM: lambda v: isinstance(v, (str, int)) and not isinstance(v, bool),
    SemanticType.FOREIGN_KEY: lambda v: isinstance(v, (str, int)) and not isinstance(v, bool),
}


class Predicate(ABC):
    """A single check over a candidate record."""

    @abstractmethod
    def check(self, context: CheckContext) -> list[Violation]:
        """Return the violations found (empty when valid)."""


class AttributePredicate(Predicate):
    """Predicate over one attribute value; absent values always pass."""

    def __init__(self, attribute: str) -> None:
        self.attribute = attribute

    def check(self, context: CheckContext) -> list[Violation]:
        value = context.candidate.get(self.attribute)
        if is_absent(value):
            return []
        return self.check_value(context, value)

    @abstractmethod
    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        """Check a present value."""


class RequiredPredicate(Predicate):
    def __init__(self, attribute: str) -> None:
        self.attribute = attribute

    def check(self, context: CheckContext) -> list[Violation]:
        value = context.candidate.get(self.attribute)
        if is_absent(value):
            return [context.violation(self.attribute, ConstraintKind.REQUIRED, value)]
        return []


class TypePredicate(AttributePredicate):
    def __init__(self, attribute: str, semantic_type: SemanticType) -> None:
        super().__init__(attribute)
        self.semantic_type = semantic_type
        self._accepts = TYPE_CHECKS[semantic_type]

    def accepts(self, value: Any) -> bool:
        return is_absent(value) or self._accepts(value)

    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        if self._accepts(value):
            return []
        return [
            context.violation(
                self.attribute, ConstraintKind.TYPE, value, type=str(self.semantic_type)
            )
        ]


class RangePredicate(AttributePredicate):
    def __init__(self, attribute: str, constraint: RangeConstraint) -> None:
        super().__init__(attribute)
        self.min = constraint.min
        self.max = constraint.max

    def _bound(self) -> Localized:
        if self.min is not None and self.max is not None:
            return Localized(
                en=f"between {self.min:g} and {self.max:g}",
                de=f"zwischen {self.min:g} und {self.max:g}",
            )
        if self.min is not None:
            return Localized(en=f"at least {self.min:g}", de=f"mindestens {self.min:g}")
        return Localized(en=f"at most {self.max:g}", de=f"höchstens {self.max:g}")

    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        if not _is_number(value):
            return []  # Reported by the type check
        too_low = self.min is not None and value < self.min
        too_high = self.max is not None and value > self.max
        if too_low or too_high:
            return [
                context.violation(self.attribute, ConstraintKind.RANGE, value, bound=self._bound())
            ]
        return []


class LengthPredicate(AttributePredicate):
    def __init__(self, attribute: str, constraint: LengthConstraint) -> None:
        super().__init__(attribute)
        self.min = constraint.min
        self.max = constraint.max

    def _bound(self) -> Localized:
        if self.min is not None and self.max is not None:
            return Localized(
                en=f"between {self.min} and {self.max}", de=f"zwischen {self.min} und {self.max}"
            )
        if self.min is not None:
            return Localized(en=f"at least {self.min}", de=f"mindestens {self.min}")
        return Localized(en=f"at most {self.max}", de=f"höchstens {self.max}")

    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        if not isinstance(value, str):
            return []
        length = len(value)
        if (self.min is not None and length < self.min) or (self.max is not None and length > self.max):
            return [
                context.violation(
                    self.attribute, ConstraintKind.LENGTH, value, bound=self._bound(), length=length
                )
            ]
        return []


class PatternPredicate(AttributePredicate):
    def __init__(
        self, attribute: str, constraint: PatternConstraint, compiled: re.Pattern[str]
    ) -> None:
        super().__init__(attribute)
        self.constraint = constraint
        self.compiled = compiled

    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        if not isinstance(value, str):
            return []
        if self.compiled.fullmatch(value):
            return []
        hint = ""
        if self.constraint.description:
            hint = f" ({self.constraint.description})"
        elif self.constraint.example:
            hint = f" (e.g. {self.constraint.example})"
        return [context.violation(self.attribute, ConstraintKind.PATTERN, value, hint=hint)]


class EnumPredicate(AttributePredicate):
    def __init__(self, attribute: str, constraint: EnumConstraint) -> None:
        super().__init__(attribute)
        self.allowed = list(constraint.allowed_values)

    def check_value(self, context: CheckContext, value: Any) -> list[Violation]:
        # Exact membership: "Hardcover" != "hardcover", True != 1
        if any(type(value) is type(a) and value == a for a in self.allowed):
            return []
        allowed = ", ".join(repr(a) for a in self.allowed)
        return [context.violation(self.attribute, ConstraintKind.ENUM, value, allowed=allowed)]


class UniquePredicate(Predicate):
    """Single-column or composite uniqueness, checked through the storage lookup."""

    def __init__(self, attributes: tuple[str, ...], key_id: str | None = None) -> None:
        self.attributes = attributes
        self.key_id = key_id

    @property
    def label(self) -> str:
        return self.key_id or self.attributes[0]

    def check(self, context: CheckContext) -> list[Violation]:
        values = tuple(context.candidate.get(a) for a in self.attributes)
        if any(is_absent(v) for v in values):
            return []

        prior = context.prior
        if prior is not None and all(prior.get(a) == context.candidate.get(a) for a in self.attributes):
            return []

        if context.lookup is None:
            raise LookupUnavailableError(context.entity_type, f"Unique({self.label})")

        excluding_id = context.candidate.get("id")
        if excluding_id is None and prior is not None:
            excluding_id = prior.get("id")

        if not context.lookup.exists(context.entity_type, self.attributes, values, excluding_id):
            return []

        shown = values[0] if len(values) == 1 else " / ".join(str(v) for v in values)
        return [
            context.violation(
                self.attributes[0],
                ConstraintKind.UNIQUE,
                shown,
                related=list(self.attributes[1:]),
            )
        ]


class TimeRangePredicate(Predicate):
    def __init__(self, constraint: TimeRangeConstraint) -> None:
        self.constraint = constraint

    def check(self, context: CheckContext) -> list[Violation]:
        start_attr, end_attr = self.constraint.start_attr, self.constraint.end_attr
        start = to_datetime(context.candidate.get(start_attr))
        end = to_datetime(context.candidate.get(end_attr))
        if start is None or end is None or start <= end:
            return []
        return [
            context.violation(
                start_attr,
                ConstraintKind.TIME_RANGE,
                context.candidate.get(start_attr),
                related=[end_attr],
                custom=self.constraint.messages or None,
                start=start_attr,
                end=end_attr,
            )
        ]


class NumericRangePredicate(Predicate):
    """Lower attribute <= upper attribute; skipped while either is missing or not a number."""

    def __init__(self, constraint: NumericRangeConstraint) -> None:
        self.constraint = constraint

    def check(self, context: CheckContext) -> list[Violation]:
        lower_attr, upper_attr = self.constraint.lower_attr, self.constraint.upper_attr
        lower = context.candidate.get(lower_attr)
        upper = context.candidate.get(upper_attr)
        if not (_is_number(lower) and _is_number(upper)) or lower <= upper:
            return []
        return [
            context.violation(
                lower_attr,
                ConstraintKind.NUMERIC_RANGE,
                lower,
                related=[upper_attr],
                custom=self.constraint.messages or None,
                lower=lower_attr,
                upper=upper_attr,
            )
        ]


class ScriptPredicate(Predicate):
    """Cross-field rule backed by a sandboxed script or a registered Python predicate.

    Truthy result: valid. Falsy: one CustomScript violation. Raised exception:
    one ScriptError violation, logged separately since it usually means the
    rule itself is broken.
    """

    def __init__(
        self,
        entity_type: str,
        constraint: CustomScriptConstraint,
        evaluate: CompiledScript | PredicateFunction,
        attribute: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.constraint = constraint
        self._evaluate = evaluate
        blamed = list(constraint.attributes)
        self.attribute = attribute or (blamed[0] if blamed else "_record")
        self.related = [a for a in blamed if a != self.attribute]

    def _run(self, context: CheckContext) -> Any:
        if isinstance(self._evaluate, CompiledScript):
            return self._evaluate.evaluate(context.candidate, context.read_only_lookup)
        return self._evaluate(MappingProxyType(dict(context.candidate)), context.read_only_lookup)

    def check(self, context: CheckContext) -> list[Violation]:
        name = self.constraint.name
        try:
            result = self._run(context)
        except LookupUnavailableError:
            raise
        except Exception as e:
            logger.warning(
                f"Rule '{name}' on '{self.entity_type}' raised {type(e).__name__}: {e}"
            )
            return [
                context.violation(
                    self.attribute,
                    ConstraintKind.SCRIPT_ERROR,
                    related=self.related,
                    rule=name,
                    error=f"{type(e).__name__}: {e}",
                )
            ]
        if result:
            return []
        return [
            context.violation(
                self.attribute,
                ConstraintKind.CUSTOM_SCRIPT,
                context.candidate.get(self.attribute),
                related=self.related,
                custom=self.constraint.messages or None,
                rule=name,
            )
        ]
