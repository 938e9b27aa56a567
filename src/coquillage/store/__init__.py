"""Record store contract and the PostgreSQL implementation."""

from coquillage.store.base import (
    RecordNotFoundError,
    RecordRejectedError,
    RecordStore,
    RecordStoreError,
    RecordStoreUnavailableError,
)
from coquillage.store.postgres import PostgresRecordStore

__all__ = [
    "PostgresRecordStore",
    "RecordNotFoundError",
    "RecordRejectedError",
    "RecordStore",
    "RecordStoreError",
    "RecordStoreUnavailableError",
]
