__all__ = [
    "BaseMemoryStore",
    "DefaultMemoryStore",
    "DefaultMemoryStoreConfig",
    "PickleMemoryStore",
    "PickleMemoryStoreConfig",
]

from ._base import BaseMemoryStore
from ._memory_pickle import PickleMemoryStore, PickleMemoryStoreConfig


class DefaultMemoryStore(PickleMemoryStore):
    pass


class DefaultMemoryStoreConfig(PickleMemoryStoreConfig):
    pass
