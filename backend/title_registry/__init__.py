"""
Title registry core: ownership record lifecycle, sale negotiation,
transaction settlement and notification outbox.
"""

from title_registry.config import RegistryConfig
from title_registry.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    StoreUnavailableError,
    TitleRegistryError,
    ValidationError,
)
from title_registry.memory_store import MemoryDocumentStore
from title_registry.registry import TitleRegistryService
from title_registry.store import DocumentStore

__all__ = [
    "AuthorizationError",
    "DocumentStore",
    "MemoryDocumentStore",
    "NotFoundError",
    "RegistryConfig",
    "StateConflictError",
    "StoreUnavailableError",
    "TitleRegistryError",
    "TitleRegistryService",
    "ValidationError",
]
