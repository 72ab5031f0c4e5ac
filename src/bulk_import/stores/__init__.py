"""Document store implementations (in-memory simulator and HTTP client)."""

from .http import HttpDocumentStore, HttpStoreConfig
from .memory import MemoryDocumentStore

__all__ = ["HttpDocumentStore", "HttpStoreConfig", "MemoryDocumentStore"]
