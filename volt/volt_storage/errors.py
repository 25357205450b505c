"""
Error types for the Volt storage layer.

This module defines every exception raised by adapters, the router,
the collection services and the migration engine:
- VoltStorageError: Base exception
- ConfigurationError: Unknown adapter kind, bad option, path outside data root
- AdapterUnavailableError: Driver missing, engine unreachable, bootstrap refused
- SerializationError: Invalid JSON on read, unencodable body on write
- ConstraintViolationError: Uniqueness or shape invariant broken
- ExpiredError / NotFoundError / AlreadyExistsError: Domain errors
- MigrationAbortedError: Migration failed and was rolled back

Invariants:
    - All errors inherit from VoltStorageError
    - Every error carries a stable code for programmatic handling
    - Passwords and connection strings never appear in messages

How to change safely:
    - Add new error kinds as subclasses, never rename codes
    - Keep the HTTP status mapping in api/http_server.py in sync
"""

from __future__ import annotations

from typing import Any


class VoltStorageError(Exception):
    """Base exception for all storage errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code_default = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code_default
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ConfigurationError(VoltStorageError):
    """Configuration is invalid or incomplete."""

    code_default = "CONFIGURATION_ERROR"


class AdapterUnavailableError(VoltStorageError):
    """A storage back-end cannot be used.

    Raised when:
    - The driver module is not installed
    - The engine is unreachable or rejects authentication
    - Bootstrap schema creation is refused
    """

    code_default = "ADAPTER_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        driver_missing: bool = False,
    ) -> None:
        super().__init__(
            message,
            details={"kind": kind, "driver_missing": driver_missing},
        )
        self.kind = kind
        self.driver_missing = driver_missing


class AdapterTimeoutError(AdapterUnavailableError):
    """An adapter call exceeded its deadline."""

    code_default = "ADAPTER_TIMEOUT"


class SerializationError(VoltStorageError):
    """A body could not be encoded or decoded."""

    code_default = "SERIALIZATION_ERROR"


class ConstraintViolationError(VoltStorageError):
    """A uniqueness or shape invariant would be broken."""

    code_default = "CONSTRAINT_VIOLATION"


class InvalidError(ConstraintViolationError):
    """Arguments violate a domain rule (e.g. too few group participants)."""

    code_default = "INVALID"


class NotOwnerError(ConstraintViolationError):
    """The acting user does not own the record being changed."""

    code_default = "NOT_OWNER"

    def __init__(self, message: str, user_id: str, record_id: str) -> None:
        super().__init__(message)
        self.details = {"user_id": user_id, "record_id": record_id}
        self.user_id = user_id
        self.record_id = record_id


class ExpiredError(VoltStorageError):
    """The record exists but can no longer be used."""

    code_default = "EXPIRED"


class NotFoundError(VoltStorageError):
    """Record not found.

    Attributes:
        collection: Collection that was searched
        record_id: Identity that was not found
    """

    code_default = "NOT_FOUND"

    def __init__(self, message: str, collection: str, record_id: str) -> None:
        super().__init__(
            message,
            details={"collection": collection, "record_id": record_id},
        )
        self.collection = collection
        self.record_id = record_id


class AlreadyExistsError(VoltStorageError):
    """A record with the same identity already exists."""

    code_default = "ALREADY_EXISTS"


class MigrationAbortedError(VoltStorageError):
    """A migration step failed; the previous adapter is active again.

    Attributes:
        steps: The recorded step log, including the rollback outcome
    """

    code_default = "MIGRATION_ABORTED"

    def __init__(self, message: str, steps: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, details={"steps": steps or []})
        self.steps = steps or []
