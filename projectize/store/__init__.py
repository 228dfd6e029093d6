"""Queue persistence backends."""

from pathlib import Path

from projectize.config import StoreConfig
from projectize.store.base import EntryNotFoundError, QueueStore, StoreError
from projectize.store.json_store import JsonFileQueueStore
from projectize.store.sqlite_store import DB_FILENAME, SqliteQueueStore

__all__ = [
    "EntryNotFoundError",
    "JsonFileQueueStore",
    "QueueStore",
    "SqliteQueueStore",
    "StoreError",
    "create_store",
]


def create_store(config: StoreConfig) -> QueueStore:
    """Build the backend named by ``config.backend``.

    Raises:
        ValueError: If the backend name is unknown.
    """
    path = Path(config.path)
    if config.backend == "json":
        return JsonFileQueueStore(path)
    if config.backend == "sqlite":
        db_path = path if path.suffix == ".db" else path / DB_FILENAME
        return SqliteQueueStore(db_path)
    raise ValueError(f"Unknown store backend: {config.backend!r}")
