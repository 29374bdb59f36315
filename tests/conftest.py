"""Shared test fixtures for rapengine."""

import os
from collections.abc import Callable, Generator, Iterable
from pathlib import Path
from typing import Any

import pytest

from rapengine import RapEngine
from rapengine.core.types import DerivedFieldSpec, PartitionKey, Record
from rapengine.derive.planner import partition_value, sort_rows
from rapengine.schema.markdown import load_directory
from rapengine.schema.registry import SchemaRegistry

MODELS_DIR = Path(__file__).parent / "fixtures" / "models"


def _psycopg_available() -> bool:
    """Check if psycopg is installed."""
    try:
        import psycopg  # noqa: F401

        return True
    except ImportError:
        return False


class InMemoryReader:
    """RecordReader over a list of dicts, for tests that need no database."""

    def __init__(self, records: Iterable[Record] = ()) -> None:
        self.records: list[Record] = [dict(r) for r in records]
        self.exists_calls: list[tuple[str, tuple[str, ...], tuple[Any, ...], Any]] = []

    def add(self, entity_type: str, **values: Any) -> Record:
        record = {"id": values.pop("id", f"{entity_type.lower()}-{len(self.records) + 1}")}
        record.update(entity_type=entity_type, **values)
        self.records.append(record)
        return record

    def find_by_id(self, entity_type: str, record_id: Any) -> Record | None:
        for record in self.records:
            if record["entity_type"] == entity_type and record["id"] == record_id:
                return dict(record)
        return None

    def exists_with_values(
        self,
        entity_type: str,
        attributes: tuple[str, ...],
        values: tuple[Any, ...],
        excluding_id: Any = None,
    ) -> bool:
        self.exists_calls.append((entity_type, attributes, values, excluding_id))
        return any(
            r["entity_type"] == entity_type
            and r["id"] != excluding_id
            and tuple(r.get(a) for a in attributes) == tuple(values)
            for r in self.records
        )

    def partition_rows(
        self,
        entity_type: str,
        spec: DerivedFieldSpec,
        partition: PartitionKey,
    ) -> list[Record]:
        rows = [
            dict(r)
            for r in self.records
            if r["entity_type"] == entity_type and partition_value(r, spec) == partition.value
        ]
        return sort_rows(rows, spec)


@pytest.fixture
def postgresql_url() -> str:
    """PostgreSQL URL from TEST_DATABASE_URL; skips the test when unavailable."""
    url = os.environ.get("TEST_DATABASE_URL")
    if not url or not _psycopg_available():
        pytest.skip("PostgreSQL tests need psycopg and TEST_DATABASE_URL")
    return url


@pytest.fixture
def models_dir() -> Path:
    """Directory with the markdown entity fixtures (Reading, Book, Person ...)."""
    return MODELS_DIR


@pytest.fixture
def registry() -> SchemaRegistry:
    """Frozen registry built from the markdown fixtures."""
    return SchemaRegistry.from_specs(load_directory(MODELS_DIR))


@pytest.fixture
def make_registry() -> Callable[..., SchemaRegistry]:
    """Factory building a frozen registry from entity spec dicts."""

    def factory(*specs: dict[str, Any], **kwargs: Any) -> SchemaRegistry:
        return SchemaRegistry.from_specs(list(specs), **kwargs)

    return factory


@pytest.fixture
def reader() -> InMemoryReader:
    """Empty in-memory RecordReader."""
    return InMemoryReader()


@pytest.fixture
def memory_engine() -> Generator[RapEngine, None, None]:
    """RapEngine on SQLite in-memory with the markdown fixtures loaded."""
    engine = RapEngine("sqlite:///:memory:", schema_dir=MODELS_DIR)
    yield engine
    engine.close()


@pytest.fixture
def temp_db_url(tmp_path: Path) -> str:
    """URL of a SQLite database file that lives for one test."""
    return f"sqlite:///{tmp_path / 'rapengine.db'}"


# Re-export for use in test files
__all__ = ["InMemoryReader"]
