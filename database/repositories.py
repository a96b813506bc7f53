"""
Repository layer for the CV portal service
Typed access to portals, processed CVs, chat sessions, analytics events and CV indexes
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import ValidationError

from database.store import DocumentStore, Document, StoreError
from database.schemas import (
    Collections,
    Portal,
    PortalUrls,
    ChatSession,
    PortalView,
    PortalFeedback,
    PortalCounters,
    CVIndex,
    StoredModel,
    utcnow,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar('ModelT', bound=StoredModel)


class RepositoryError(Exception):
    """Raised when a stored document cannot be read as its model"""


def _load(model: Type[ModelT], document: Optional[Document]) -> Optional[ModelT]:
    if document is None:
        return None
    try:
        return model.model_validate(document)
    except ValidationError as e:
        raise RepositoryError(f"Corrupt {model.__name__} document: {e}") from e


class _ModelRepository:
    """Shared load/save/update plumbing for one collection and model"""

    collection: str = ""
    model: Type[StoredModel] = StoredModel

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _get(self, doc_id: str):
        return _load(self.model, await self.store.get(self.collection, doc_id))

    async def _update(self, doc_id: str, fn: Callable[[Any], Optional[Any]]):
        """Optimistic read-modify-write; `fn` receives the current model (or None)"""
        def mutator(document: Optional[Document]) -> Optional[Document]:
            current = _load(self.model, document)
            result = fn(current)
            return result.to_document() if result is not None else None

        document = await self.store.update(self.collection, doc_id, mutator)
        return _load(self.model, document)


class PortalRepository(_ModelRepository):
    collection = Collections.PORTALS
    model = Portal

    async def get(self, portal_id: str) -> Optional[Portal]:
        return await self._get(portal_id)

    async def create(self, portal: Portal) -> Portal:
        await self.store.create(self.collection, portal.portal_id, portal.to_document())
        return portal

    async def update(self, portal_id: str, fn: Callable[[Optional[Portal]], Optional[Portal]]) -> Optional[Portal]:
        return await self._update(portal_id, fn)


class ProcessedCVRepository:
    """Processed CVs are free-form documents produced upstream"""

    collection = Collections.PROCESSED_CVS

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, processed_cv_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(self.collection, processed_cv_id)

    async def save(self, processed_cv_id: str, cv: Dict[str, Any]) -> None:
        await self.store.set(self.collection, processed_cv_id, cv)

    async def backfill_portal(self, processed_cv_id: str, portal_id: str, urls: PortalUrls) -> None:
        def mutator(document: Optional[Document]) -> Optional[Document]:
            if document is None:
                return None
            document['portalUrls'] = urls.model_dump()
            document['portalId'] = portal_id
            document['portalGenerated'] = True
            document['portalGeneratedAt'] = utcnow().isoformat()
            return document

        await self.store.update(self.collection, processed_cv_id, mutator)


class ChatSessionRepository(_ModelRepository):
    collection = Collections.CHAT_SESSIONS
    model = ChatSession

    async def get(self, session_id: str) -> Optional[ChatSession]:
        return await self._get(session_id)

    async def create(self, session: ChatSession) -> ChatSession:
        await self.store.create(self.collection, session.session_id, session.to_document())
        return session

    async def update(
        self, session_id: str, fn: Callable[[Optional[ChatSession]], Optional[ChatSession]]
    ) -> Optional[ChatSession]:
        return await self._update(session_id, fn)

    async def list_for_portal(self, portal_id: str) -> List[ChatSession]:
        documents = await self.store.query(self.collection, {'portal_id': portal_id})
        return [_load(ChatSession, d) for d in documents]


class AnalyticsRepository:
    """Per-portal running counters plus append-only view and feedback events"""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def increment_counters(self, portal_id: str, **deltas: int) -> PortalCounters:
        now = utcnow().isoformat()
        defaults = PortalCounters(portal_id=portal_id).to_document()
        defaults['created_at'] = now
        document = await self.store.increment(
            Collections.PORTAL_ANALYTICS,
            portal_id,
            deltas,
            defaults=defaults,
            touch_field='last_activity',
        )
        return PortalCounters.model_validate(document)

    async def get_counters(self, portal_id: str) -> Optional[PortalCounters]:
        return _load(PortalCounters, await self.store.get(Collections.PORTAL_ANALYTICS, portal_id))

    async def record_view(self, view: PortalView) -> PortalView:
        await self.store.create(Collections.PORTAL_VIEWS, view.view_id, view.to_document())
        return view

    async def record_feedback(self, feedback: PortalFeedback) -> PortalFeedback:
        await self.store.create(Collections.PORTAL_FEEDBACK, feedback.feedback_id, feedback.to_document())
        return feedback

    async def list_views(self, portal_id: str) -> List[PortalView]:
        documents = await self.store.query(Collections.PORTAL_VIEWS, {'portal_id': portal_id})
        return [_load(PortalView, d) for d in documents]

    async def list_feedback(self, portal_id: str) -> List[PortalFeedback]:
        documents = await self.store.query(Collections.PORTAL_FEEDBACK, {'portal_id': portal_id})
        return [_load(PortalFeedback, d) for d in documents]

    async def has_visitor_viewed(self, portal_id: str, visitor_id: str) -> bool:
        documents = await self.store.query(
            Collections.PORTAL_VIEWS, {'portal_id': portal_id, 'visitor_id': visitor_id}
        )
        return bool(documents)


class CVIndexRepository(_ModelRepository):
    collection = Collections.CV_EMBEDDINGS
    model = CVIndex

    async def get(self, processed_cv_id: str) -> Optional[CVIndex]:
        return await self._get(processed_cv_id)

    async def exists(self, processed_cv_id: str) -> bool:
        try:
            index = await self.get(processed_cv_id)
        except RepositoryError as e:
            logger.warning(f"Ignoring unreadable index for {processed_cv_id}: {e}")
            return False
        return index is not None and len(index.chunks) > 0

    async def save(self, index: CVIndex) -> None:
        await self.store.set(self.collection, index.processed_cv_id, index.to_document())

    async def delete(self, processed_cv_id: str) -> bool:
        return await self.store.delete(self.collection, processed_cv_id)


__all__ = [
    'RepositoryError',
    'StoreError',
    'PortalRepository',
    'ProcessedCVRepository',
    'ChatSessionRepository',
    'AnalyticsRepository',
    'CVIndexRepository',
]
