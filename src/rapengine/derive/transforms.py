"""Derived-field transforms.

A transform is a *step function* called once per row of an ordered partition:

    step(row, history, source=...) -> value

``row`` is a read-only view of the current row and ``history`` holds strictly
earlier rows of the same partition, oldest first. A transform never sees later
rows or other partitions, which keeps it pure and lets the executor replay a
partition deterministically.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any, Protocol

Row = Mapping[str, Any]


class PartitionHistory(Sequence[Row]):
    """Read-only view over the rows preceding the current position."""

    def __init__(self, rows: Sequence[Row], position: int) -> None:
        self._rows = rows
        self._position = position

    def __getitem__(self, index):  # type: ignore[no-untyped-def]
        if isinstance(index, slice):
            return [self._rows[i] for i in range(*index.indices(self._position))]
        if index < 0:
            index += self._position
        if not 0 <= index < self._position:
            raise IndexError("history index out of range")
        return self._rows[index]

    def __len__(self) -> int:
        return self._position

    @property
    def previous(self) -> Row | None:
        """The row immediately before the current one, or None for the first row."""
        return self._rows[self._position - 1] if self._position else None


class Transform(Protocol):
    def __call__(self, row: Row, history: PartitionHistory, *, source: str | None) -> Any: ...


def _numeric(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def delta(row: Row, history: PartitionHistory, *, source: str | None) -> Any:
    """Current value minus the previous row's value; None when either is missing."""
    prior_row = history.previous
    if prior_row is None or source is None:
        return None
    current, prior = row.get(source), prior_row.get(source)
    if not (_numeric(current) and _numeric(prior)):
        return None
    return current - prior


def previous(row: Row, history: PartitionHistory, *, source: str | None) -> Any:
    """The previous row's value of ``source``."""
    prior = history.previous
    if prior is None or source is None:
        return None
    return prior.get(source)


def cumulative_sum(row: Row, history: PartitionHistory, *, source: str | None) -> Any:
    """Running total of ``source``; missing values contribute nothing."""
    if source is None:
        return None
    values = [r.get(source) for r in history] + [row.get(source)]
    return sum(v for v in values if _numeric(v))


def row_number(row: Row, history: PartitionHistory, *, source: str | None) -> Any:
    """1-based position of the row within its partition."""
    return len(history) + 1


class TransformRegistry:
    """Named transforms available to derived fields."""

    BUILTINS: dict[str, Transform] = {
        "delta": delta,
        "previous": previous,
        "cumulative_sum": cumulative_sum,
        "row_number": row_number,
    }

    # Built-ins that cannot work without an input attribute
    NEEDS_SOURCE = frozenset({"delta", "previous", "cumulative_sum"})

    def __init__(self) -> None:
        self._transforms: dict[str, Transform] = dict(self.BUILTINS)

    def register(self, name: str, func: Transform | None = None) -> Any:
        """Register a transform, directly or as a decorator.

        Example:
            @registry.register("ratio")
            def ratio(row, history, *, source):
                ...
        """

        def decorator(fn: Transform) -> Transform:
            self._transforms[name] = fn
            return fn

        if func is not None:
            return decorator(func)
        return decorator

    def get(self, name: str) -> Transform | None:
        return self._transforms.get(name)

    def names(self) -> list[str]:
        return sorted(self._transforms)

    def __contains__(self, name: object) -> bool:
        return name in self._transforms

