"""InMemoryDocumentStore — DocumentStore kept in process memory.

Used for local development and tests. Each write path takes a lock for
the whole check-then-write, which gives ``create`` and
``compare_and_set`` the same atomicity the remote store's preconditions
provide. Documents are deep-copied in and out so callers never share
mutable state with the store.
"""

from __future__ import annotations

import copy
import threading
from typing import Any


class InMemoryDocumentStore:
    """Dict-of-dicts document store implementing the ``DocumentStore`` protocol."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def create(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool:
        """Insert if absent. Returns False when the document already exists."""
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                return False
            docs[doc_id] = copy.deepcopy(fields)
            return True

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        field: str,
        expected: Any,
        updates: dict[str, Any],
    ) -> bool:
        """Apply ``updates`` only if ``doc[field] == expected``."""
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None or doc.get(field) != expected:
                return False
            doc.update(copy.deepcopy(updates))
            return True

    async def find_one(
        self, collection: str, field: str, value: Any,
    ) -> tuple[str, dict[str, Any]] | None:
        with self._lock:
            for doc_id, doc in self._collection(collection).items():
                if doc.get(field) == value:
                    return doc_id, copy.deepcopy(doc)
        return None

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str | None = None,
        limit: int = 100,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Documents where ``field == value``, newest ``order_by`` first."""
        with self._lock:
            matches = [
                (doc_id, copy.deepcopy(doc))
                for doc_id, doc in self._collection(collection).items()
                if doc.get(field) == value
            ]
        if order_by is not None:
            matches.sort(key=lambda item: str(item[1].get(order_by) or ""), reverse=True)
        return matches[:limit]

    async def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._collection(collection).pop(doc_id, None)

    async def close(self) -> None:
        return None

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        """Synchronous copy of a whole collection, for inspection."""
        with self._lock:
            return copy.deepcopy(self._collection(collection))
