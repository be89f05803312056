"""Local record store: interface, SQLite implementation and schema."""

from vshield.storage.interfaces import RecordStoreInterface, RowDict
from vshield.storage.sqlite import SQLiteRecordStore

__all__ = [
    "RecordStoreInterface",
    "RowDict",
    "SQLiteRecordStore",
]
