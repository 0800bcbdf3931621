"""Storage backends for trees, runs and execution history."""

from .base import DecisionTreeStore
from .memory import InMemoryStore
from .file_store import FileStore

__all__ = [
    "DecisionTreeStore",
    "InMemoryStore",
    "FileStore",
]
