"""Tests for InMemoryDocumentStore."""

import pytest

from strongbox.store import DocumentStore
from strongbox.stores import InMemoryDocumentStore


class TestInMemoryDocumentStore:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryDocumentStore(), DocumentStore)

    @pytest.mark.asyncio
    async def test_create_if_absent(self) -> None:
        store = InMemoryDocumentStore()
        assert await store.create("c", "d1", {"status": "active"}) is True
        assert await store.create("c", "d1", {"status": "claimed"}) is False
        assert await store.get("c", "d1") == {"status": "active"}

    @pytest.mark.asyncio
    async def test_get_missing(self) -> None:
        assert await InMemoryDocumentStore().get("c", "nope") is None

    @pytest.mark.asyncio
    async def test_compare_and_set(self) -> None:
        store = InMemoryDocumentStore()
        await store.create("c", "d1", {"status": "active", "n": 1})
        assert await store.compare_and_set("c", "d1", "status", "active", {"status": "claimed"}) is True
        assert await store.compare_and_set("c", "d1", "status", "active", {"status": "expired"}) is False
        assert await store.get("c", "d1") == {"status": "claimed", "n": 1}

    @pytest.mark.asyncio
    async def test_compare_and_set_missing_document(self) -> None:
        store = InMemoryDocumentStore()
        assert await store.compare_and_set("c", "x", "status", "active", {"status": "claimed"}) is False

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self) -> None:
        store = InMemoryDocumentStore()
        await store.create("c", "d1", {"meta": {"slot": 1}})
        doc = await store.get("c", "d1")
        doc["meta"]["slot"] = 99
        assert (await store.get("c", "d1"))["meta"]["slot"] == 1

    @pytest.mark.asyncio
    async def test_find_one(self) -> None:
        store = InMemoryDocumentStore()
        await store.create("c", "d1", {"recordAddress": "R1"})
        await store.create("c", "d2", {"recordAddress": "R2"})
        assert await store.find_one("c", "recordAddress", "R2") == ("d2", {"recordAddress": "R2"})
        assert await store.find_one("c", "recordAddress", "R3") is None

    @pytest.mark.asyncio
    async def test_query_orders_descending_and_limits(self) -> None:
        store = InMemoryDocumentStore()
        await store.create("c", "old", {"status": "active", "hiddenAt": "2024-01-01T00:00:00+00:00"})
        await store.create("c", "new", {"status": "active", "hiddenAt": "2024-03-01T00:00:00+00:00"})
        await store.create("c", "mid", {"status": "active", "hiddenAt": "2024-02-01T00:00:00+00:00"})
        await store.create("c", "gone", {"status": "claimed", "hiddenAt": "2025-01-01T00:00:00+00:00"})

        rows = await store.query("c", "status", "active", order_by="hiddenAt")
        assert [doc_id for doc_id, _ in rows] == ["new", "mid", "old"]

        rows = await store.query("c", "status", "active", order_by="hiddenAt", limit=1)
        assert [doc_id for doc_id, _ in rows] == ["new"]

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = InMemoryDocumentStore()
        await store.create("c", "d1", {})
        await store.delete("c", "d1")
        await store.delete("c", "d1")
        assert store.documents("c") == {}
