"""Primary and secondary store clients."""

from .interfaces import PrimaryStore, SecondaryStore, Row
from .in_memory import InMemoryPrimaryStore, InMemorySecondaryStore
from .postgrest_store import PostgrestSecondaryStore
from .sqlalchemy_store import SqlAlchemyPrimaryStore

__all__ = [
    "PrimaryStore",
    "SecondaryStore",
    "Row",
    "InMemoryPrimaryStore",
    "InMemorySecondaryStore",
    "PostgrestSecondaryStore",
    "SqlAlchemyPrimaryStore",
]
