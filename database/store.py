"""
Document store adapter.

The service persists every entity as a JSON document in a named collection.
`DocumentStore` defines the read/write/query contract plus two atomic
primitives the core relies on:

- `update()`: read-modify-write with optimistic retry. The mutator receives a
  private copy of the current document (or None when absent) and returns the
  new document, or None to leave it unchanged. The write only lands if the
  document version is still the one that was read; otherwise it re-reads and
  retries.
- `increment()`: atomic numeric counter increments on one document, creating
  it from defaults when missing.

`InMemoryDocumentStore` backs tests and local runs; `SQLAlchemyDocumentStore`
stores documents in PostgreSQL with a version column for compare-and-swap.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update as sql_update, delete as sql_delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql import func

from database.connection import DatabaseManager
from database.models import StoredDocument

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Mutator = Callable[[Optional[Document]], Optional[Document]]


class StoreError(Exception):
    """Raised when the underlying storage fails"""


class ConcurrencyConflict(StoreError):
    """Raised when an optimistic update keeps losing races after all retries"""

    def __init__(self, collection: str, doc_id: str, attempts: int):
        self.collection = collection
        self.doc_id = doc_id
        self.attempts = attempts
        super().__init__(f"Version conflict on {collection}/{doc_id} after {attempts} attempts")


class DocumentExists(StoreError):
    """Raised by create() when the document id is already taken"""


def _matches(document: Document, filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(document.get(key) == value for key, value in filters.items())


class DocumentStore(ABC):
    """Abstract collection/document store with optimistic updates."""

    def __init__(self, max_update_retries: int = 10, retry_backoff_seconds: float = 0.01):
        self.max_update_retries = max_update_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or None"""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        """Create or overwrite a document unconditionally"""

    @abstractmethod
    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Document]:
        """Return copies of all documents whose top-level fields equal `filters`"""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; returns whether it existed"""

    @abstractmethod
    async def _read_versioned(self, collection: str, doc_id: str) -> Tuple[Optional[Document], int]:
        """Return (document, version); version is 0 for a missing document"""

    @abstractmethod
    async def _compare_and_set(self, collection: str, doc_id: str, expected_version: int, data: Document) -> bool:
        """Write `data` only if the stored version equals `expected_version` (0 = absent)"""

    async def create(self, collection: str, doc_id: str, data: Document) -> None:
        if not await self._compare_and_set(collection, doc_id, 0, data):
            raise DocumentExists(f"{collection}/{doc_id} already exists")

    async def update(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Document]:
        """Apply `mutator` atomically; returns the document as written (or as read when unchanged).

        Exceptions raised by the mutator abort the update and propagate unchanged.
        """
        attempts = self.max_update_retries + 1
        for attempt in range(attempts):
            current, version = await self._read_versioned(collection, doc_id)
            updated = mutator(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                return current
            if await self._compare_and_set(collection, doc_id, version, updated):
                return updated

            logger.debug(f"Version conflict on {collection}/{doc_id} (attempt {attempt + 1}/{attempts})")
            if self.retry_backoff_seconds > 0:
                await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))

        raise ConcurrencyConflict(collection, doc_id, attempts)

    async def increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, float],
        defaults: Optional[Document] = None,
        touch_field: Optional[str] = None,
    ) -> Document:
        """Atomically add `deltas` to numeric fields, creating the document from `defaults` if absent.

        `touch_field`, when given, is set to the current UTC time in the same write.
        """
        def apply(current: Optional[Document]) -> Document:
            document = current if current is not None else copy.deepcopy(defaults or {})
            for field, delta in deltas.items():
                document[field] = (document.get(field) or 0) + delta
            if touch_field:
                document[touch_field] = datetime.now(timezone.utc).isoformat()
            return document

        return await self.update(collection, doc_id, apply)

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    """Process-local store. The lock only guards synchronous dictionary access."""

    def __init__(self, max_update_retries: int = 10, retry_backoff_seconds: float = 0.0):
        super().__init__(max_update_retries, retry_backoff_seconds)
        self._collections: Dict[str, Dict[str, Tuple[int, Document]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, collection: str) -> Dict[str, Tuple[int, Document]]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document, _ = await self._read_versioned(collection, doc_id)
        return document

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        async with self._lock:
            docs = self._collection(collection)
            version = docs[doc_id][0] if doc_id in docs else 0
            docs[doc_id] = (version + 1, copy.deepcopy(data))

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Document]:
        async with self._lock:
            return [
                copy.deepcopy(document)
                for _, document in self._collection(collection).values()
                if _matches(document, filters)
            ]

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    async def increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, float],
        defaults: Optional[Document] = None,
        touch_field: Optional[str] = None,
    ) -> Document:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                version, document = docs[doc_id]
            else:
                version, document = 0, copy.deepcopy(defaults or {})
            for field, delta in deltas.items():
                document[field] = (document.get(field) or 0) + delta
            if touch_field:
                document[touch_field] = datetime.now(timezone.utc).isoformat()
            docs[doc_id] = (version + 1, document)
            return copy.deepcopy(document)

    async def _read_versioned(self, collection: str, doc_id: str) -> Tuple[Optional[Document], int]:
        async with self._lock:
            entry = self._collection(collection).get(doc_id)
            if entry is None:
                return None, 0
            version, document = entry
            return copy.deepcopy(document), version

    async def _compare_and_set(self, collection: str, doc_id: str, expected_version: int, data: Document) -> bool:
        async with self._lock:
            docs = self._collection(collection)
            current_version = docs[doc_id][0] if doc_id in docs else 0
            if current_version != expected_version:
                return False
            docs[doc_id] = (current_version + 1, copy.deepcopy(data))
            return True


def upsert_statement(collection: str, doc_id: str, data: Document):
    """Insert the document, or replace it and bump its version when the key exists"""
    stmt = pg_insert(StoredDocument).values(collection=collection, doc_id=doc_id, data=data, version=1)
    return stmt.on_conflict_do_update(
        index_elements=[StoredDocument.collection, StoredDocument.doc_id],
        set_={
            'data': stmt.excluded.data,
            'version': StoredDocument.version + 1,
            'updated_at': func.current_timestamp(),
        },
    )


class SQLAlchemyDocumentStore(DocumentStore):
    """PostgreSQL-backed store; each document is one row with a version column."""

    def __init__(self, db_manager: DatabaseManager, max_update_retries: int = 10, retry_backoff_seconds: float = 0.01):
        super().__init__(max_update_retries, retry_backoff_seconds)
        self.db_manager = db_manager

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document, _ = await self._read_versioned(collection, doc_id)
        return document

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        try:
            async with self.db_manager.get_async_session() as session:
                await session.execute(upsert_statement(collection, doc_id, data))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write {collection}/{doc_id}: {e}") from e

    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Document]:
        stmt = select(StoredDocument.data).where(StoredDocument.collection == collection)
        for key, value in (filters or {}).items():
            if isinstance(value, str):
                stmt = stmt.where(StoredDocument.data[key].as_string() == value)
        stmt = stmt.order_by(StoredDocument.created_at, StoredDocument.doc_id)
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(stmt)
                rows = [dict(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query {collection}: {e}") from e
        return [row for row in rows if _matches(row, filters)]

    async def delete(self, collection: str, doc_id: str) -> bool:
        try:
            async with self.db_manager.get_async_session() as session:
                result = await session.execute(
                    sql_delete(StoredDocument).where(
                        StoredDocument.collection == collection,
                        StoredDocument.doc_id == doc_id,
                    )
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete {collection}/{doc_id}: {e}") from e

    async def _read_versioned(self, collection: str, doc_id: str) -> Tuple[Optional[Document], int]:
        try:
            async with self.db_manager.get_async_session() as session:
                row = await session.get(StoredDocument, (collection, doc_id))
                if row is None:
                    return None, 0
                return copy.deepcopy(row.data), row.version
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {collection}/{doc_id}: {e}") from e

    async def _compare_and_set(self, collection: str, doc_id: str, expected_version: int, data: Document) -> bool:
        try:
            async with self.db_manager.get_async_session() as session:
                if expected_version == 0:
                    session.add(StoredDocument(collection=collection, doc_id=doc_id, data=data, version=1))
                    await session.flush()
                    return True
                result = await session.execute(
                    sql_update(StoredDocument)
                    .where(
                        StoredDocument.collection == collection,
                        StoredDocument.doc_id == doc_id,
                        StoredDocument.version == expected_version,
                    )
                    .values(data=data, version=expected_version + 1)
                )
                return result.rowcount == 1
        except IntegrityError:
            # Another writer inserted the document first
            return False
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write {collection}/{doc_id}: {e}") from e

    async def close(self) -> None:
        await self.db_manager.close()
