"""
Tests for the document store contract and the repositories built on it.
"""

import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.dialects import postgresql

from database.repositories import AnalyticsRepository, RepositoryError, PortalRepository
from database.schemas import Collections, Portal, PortalStatus
from database.store import (
    ConcurrencyConflict,
    DocumentExists,
    DocumentStore,
    InMemoryDocumentStore,
    SQLAlchemyDocumentStore,
    upsert_statement,
)


class InterleavingStore(InMemoryDocumentStore):
    """Yields between read and write and uses the optimistic increment path"""

    increment = DocumentStore.increment

    async def _read_versioned(self, collection, doc_id):
        result = await super()._read_versioned(collection, doc_id)
        await asyncio.sleep(0)
        return result


class RecordingSession:
    def __init__(self):
        self.statements = []

    async def execute(self, stmt):
        self.statements.append(stmt)

    async def get(self, *args):
        raise AssertionError("set() should write without reading first")


class RecordingDatabase:
    def __init__(self):
        self.session = RecordingSession()

    @asynccontextmanager
    async def get_async_session(self):
        yield self.session


class TestInMemoryDocumentStore:

    @pytest.mark.asyncio
    async def test_set_get_returns_copies(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"value": 1, "tags": ["x"]})

        document = await store.get("things", "a")
        document["tags"].append("y")

        assert (await store.get("things", "a"))["tags"] == ["x"]
        assert await store.get("things", "missing") is None

    @pytest.mark.asyncio
    async def test_create_rejects_existing_id(self):
        store = InMemoryDocumentStore()
        await store.create("things", "a", {"value": 1})

        with pytest.raises(DocumentExists):
            await store.create("things", "a", {"value": 2})

    @pytest.mark.asyncio
    async def test_query_filters_on_top_level_fields(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"kind": "x", "n": 1})
        await store.set("things", "b", {"kind": "y", "n": 2})
        await store.set("things", "c", {"kind": "x", "n": 3})

        found = await store.query("things", {"kind": "x"})

        assert sorted(d["n"] for d in found) == [1, 3]
        assert len(await store.query("things")) == 3

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {})

        assert await store.delete("things", "a") is True
        assert await store.delete("things", "a") is False

    @pytest.mark.asyncio
    async def test_update_applies_mutator(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"n": 1})

        def bump(document):
            document["n"] += 1
            return document

        written = await store.update("things", "a", bump)

        assert written == {"n": 2}
        assert await store.get("things", "a") == {"n": 2}

    @pytest.mark.asyncio
    async def test_update_noop_returns_current(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"n": 1})

        assert await store.update("things", "a", lambda document: None) == {"n": 1}

    @pytest.mark.asyncio
    async def test_mutator_exception_aborts_update(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"n": 1})

        def refuse(document):
            document["n"] = 99
            raise ValueError("not allowed")

        with pytest.raises(ValueError):
            await store.update("things", "a", refuse)
        assert await store.get("things", "a") == {"n": 1}

    @pytest.mark.asyncio
    async def test_increment_creates_from_defaults(self):
        store = InMemoryDocumentStore()

        document = await store.increment("counters", "p1", {"hits": 2}, defaults={"hits": 0, "name": "p1"})

        assert document["hits"] == 2
        assert document["name"] == "p1"

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self):
        store = InMemoryDocumentStore()

        await asyncio.gather(*[store.increment("counters", "p1", {"hits": 1}) for _ in range(50)])

        assert (await store.get("counters", "p1"))["hits"] == 50


class TestOptimisticUpdates:

    @pytest.mark.asyncio
    async def test_conflicting_updates_retry_until_applied(self):
        store = InterleavingStore(max_update_retries=10)
        await store.set("counters", "p1", {"hits": 0})

        await asyncio.gather(*[store.increment("counters", "p1", {"hits": 1}) for _ in range(5)])

        assert (await store.get("counters", "p1"))["hits"] == 5

    @pytest.mark.asyncio
    async def test_conflict_after_retries_exhausted(self):
        store = InterleavingStore(max_update_retries=0)
        await store.set("counters", "p1", {"hits": 0})

        results = await asyncio.gather(
            store.increment("counters", "p1", {"hits": 1}),
            store.increment("counters", "p1", {"hits": 1}),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConcurrencyConflict) for r in results) == 1
        assert (await store.get("counters", "p1"))["hits"] == 1


class TestRepositories:

    @pytest.mark.asyncio
    async def test_portal_roundtrip_and_update(self):
        repository = PortalRepository(InMemoryDocumentStore())
        await repository.create(Portal(portal_id="p1", user_id="u1", processed_cv_id="cv1"))

        def start(portal):
            portal.status = PortalStatus.PROCESSING
            return portal

        updated = await repository.update("p1", start)

        assert updated.status == PortalStatus.PROCESSING
        assert (await repository.get("p1")).status == PortalStatus.PROCESSING
        assert await repository.get("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self):
        store = InMemoryDocumentStore()
        await store.set(Collections.PORTALS, "p1", {"portal_id": "p1"})

        with pytest.raises(RepositoryError):
            await PortalRepository(store).get("p1")

    @pytest.mark.asyncio
    async def test_counters_start_at_zero(self):
        repository = AnalyticsRepository(InMemoryDocumentStore())

        counters = await repository.increment_counters("p1", chat_sessions_started=1)

        assert counters.chat_sessions_started == 1
        assert counters.total_messages == 0
        assert counters.created_at is not None
        assert counters.last_activity is not None

    @pytest.mark.asyncio
    async def test_parallel_counter_updates(self):
        repository = AnalyticsRepository(InterleavingStore(max_update_retries=10))

        await asyncio.gather(*[repository.increment_counters("p1", total_messages=2) for _ in range(5)])

        assert (await repository.get_counters("p1")).total_messages == 10


class TestSQLAlchemyDocumentStore:

    def test_upsert_replaces_existing_document(self):
        sql = str(upsert_statement("cvEmbeddings", "cv_1", {"chunks": []}).compile(dialect=postgresql.dialect()))

        assert sql.startswith("INSERT INTO portal_documents")
        assert "ON CONFLICT (collection, doc_id) DO UPDATE" in sql
        assert "data = excluded.data" in sql
        assert "portal_documents.version +" in sql

    @pytest.mark.asyncio
    async def test_set_is_a_single_upsert(self):
        database = RecordingDatabase()
        store = SQLAlchemyDocumentStore(database)

        await store.set("cvEmbeddings", "cv_1", {"chunks": []})
        await store.set("cvEmbeddings", "cv_1", {"chunks": [{"id": "c1"}]})

        statements = database.session.statements
        assert len(statements) == 2
        assert all(s.table.name == "portal_documents" for s in statements)
