"""DocumentStore implementations."""

from strongbox.stores.firestore import FirestoreStore
from strongbox.stores.memory import InMemoryDocumentStore

__all__ = ["FirestoreStore", "InMemoryDocumentStore"]
