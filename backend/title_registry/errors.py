"""
TITLE REGISTRY ERROR TAXONOMY

Every failure the core reports to a caller is one of five kinds:

- ValidationError        missing/malformed input, nothing was written
- NotFoundError          unknown record, transaction or user id
- StateConflictError     operation illegal for the current status
- AuthorizationError     caller is not the required owner/seller/buyer/admin
- StoreUnavailableError  transient storage failure, the whole operation may be retried

The HTTP layer maps `status_code` straight onto the response.
"""

from typing import Optional


class TitleRegistryError(Exception):
    """Base exception for all title registry errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(TitleRegistryError):
    """Raised when input is missing or malformed."""

    status_code = 400


class AuthorizationError(TitleRegistryError):
    """Raised when the caller may not act on the entity."""

    status_code = 403


class NotFoundError(TitleRegistryError):
    """Raised when a referenced entity does not exist."""

    status_code = 404


class StateConflictError(TitleRegistryError):
    """Raised when the entity's current status forbids the operation."""

    status_code = 409


class StoreUnavailableError(TitleRegistryError):
    """Raised when the document store cannot be reached."""

    status_code = 503


class DuplicateKeyError(Exception):
    """Raised by store adapters when a unique index rejects a write."""

    def __init__(self, collection: str, key: dict):
        self.collection = collection
        self.key = key
        super().__init__(f"Duplicate key in {collection}: {key}")
