"""Store backends for pairlink.

- MemoryStore: in-process, for tests and single-process use
- JsonFileStore: MemoryStore persisted to a JSON file
- RemoteStore: client for a pairlink relay server
"""

from pairlink.config import StoreConfig

from .base import (
    BaseSubscription,
    Change,
    ChangeEvent,
    MappedSubscription,
    Store,
    Subscription,
    SubscriptionClosedError,
)
from .json_store import JsonFileStore
from .memory import MemoryStore
from .remote import RemoteStore


async def open_store(config: StoreConfig) -> Store:
    """Create the store selected by configuration.

    Raises:
        StoreUnavailableError: If a JSON store file cannot be read.
    """
    if config.backend == "remote":
        return RemoteStore(config.url)
    if config.backend == "json":
        store = JsonFileStore(config.path)
        await store.load()
        return store
    return MemoryStore()


__all__ = [
    "BaseSubscription",
    "Change",
    "ChangeEvent",
    "JsonFileStore",
    "MappedSubscription",
    "MemoryStore",
    "RemoteStore",
    "Store",
    "Subscription",
    "SubscriptionClosedError",
    "open_store",
]
