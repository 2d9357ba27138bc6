"""
Storage backends.

`base` defines the capability interfaces the engine depends on. `postgres`
implements them with asyncpg; `memory` keeps everything in process for tests.
"""

from .base import (
    AssignmentStore, HistoryReader, SegmentCatalog, SegmentStorage, UserDirectory,
)
from .memory import InMemorySegmentStorage
from .postgres import PostgreSQLSegmentStorage

__all__ = [
    'AssignmentStore', 'HistoryReader', 'SegmentCatalog', 'SegmentStorage', 'UserDirectory',
    'InMemorySegmentStorage', 'PostgreSQLSegmentStorage',
]
