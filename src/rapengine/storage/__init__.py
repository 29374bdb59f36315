"""Record storage for rapengine.

- ``base``: the read contract the engine depends on
- ``sql``: SQLAlchemy reference store (one JSON-column table for all entities)
- ``locks``: per-partition write locks
"""

from rapengine.storage.base import Lookup, RecordReader, jsonable, lookup_from_reader
from rapengine.storage.locks import PartitionLocks

__all__ = ["Lookup", "RecordReader", "PartitionLocks", "jsonable", "lookup_from_reader"]
