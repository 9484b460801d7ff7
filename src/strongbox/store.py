"""Abstract document store interface for the deposit cache.

Defines the DocumentStore Protocol that SyncService depends on, and the
error hierarchy every backend raises. Concrete implementations live in
``strongbox.stores``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Base exception for store operations."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreAuthError(StoreError):
    """401/403 — credentials rejected."""


class StoreNotFoundError(StoreError):
    """404 — document or collection not found."""


class StoreConflictError(StoreError):
    """409 — document already exists."""


class StorePreconditionError(StoreError):
    """Conditional write rejected because the document changed."""


class StoreServerError(StoreError):
    """5xx — server-side error (retryable)."""

    retryable = True


class StoreUnavailableError(StoreError):
    """503/429 or store not ready (retryable)."""

    retryable = True


class StoreConnectionError(StoreError):
    """Network/DNS failure (retryable)."""

    retryable = True


class StoreTimeoutError(StoreError):
    """Operation exceeded its time bound (retryable)."""

    retryable = True


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class DocumentStore(Protocol):
    """Async document store with a conditional-write primitive.

    Documents are flat-ish JSON objects keyed by ``(collection, doc_id)``.
    ``create`` and ``compare_and_set`` are the only write paths that
    SyncService uses; neither ever overwrites blindly.
    """

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def create(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool: ...

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        field: str,
        expected: Any,
        updates: dict[str, Any],
    ) -> bool: ...

    async def find_one(
        self, collection: str, field: str, value: Any,
    ) -> tuple[str, dict[str, Any]] | None: ...

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str | None = None,
        limit: int = 100,
    ) -> list[tuple[str, dict[str, Any]]]: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def close(self) -> None: ...
