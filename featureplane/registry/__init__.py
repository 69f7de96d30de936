"""Registry stores holding definitions and materialization history."""

from .base import MaterializationInterval, RegistrySnapshot, RegistryStore, RegistryTransaction
from .cache import CachedRegistryReader
from .file import FileRegistryStore
from .memory import InMemoryRegistryStore
from .sql import SqlRegistryStore

__all__ = [
    "CachedRegistryReader",
    "FileRegistryStore",
    "InMemoryRegistryStore",
    "MaterializationInterval",
    "RegistrySnapshot",
    "RegistryStore",
    "RegistryTransaction",
    "SqlRegistryStore",
]
