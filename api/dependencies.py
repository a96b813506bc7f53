"""
Service wiring for the API layer

The container is built once in the application lifespan and stored on
`app.state`; endpoints receive components through `Depends`. Tests swap the
container with `app.dependency_overrides[get_container]`.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from analytics.aggregator import AnalyticsAggregator
from chat.session_manager import ChatSessionManager
from database.connection import DatabaseConfig, DatabaseManager, init_database
from database.repositories import (
    AnalyticsRepository,
    ChatSessionRepository,
    CVIndexRepository,
    PortalRepository,
    ProcessedCVRepository,
)
from database.store import DocumentStore, InMemoryDocumentStore, SQLAlchemyDocumentStore
from etl.config import STORE_CONFIG
from etl.portal_builder import DefaultPortalBuilder, PortalBuilder
from etl.portal_orchestrator import PortalOrchestrator
from etl.tasks import BackgroundTaskManager
from etl.vector_embedder import VectorEmbedder
from rag.response_generator import ResponseGenerator
from rag.retrieval_engine import Embedder, RetrievalEngine

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    store: DocumentStore
    portals: PortalRepository
    sessions: ChatSessionRepository
    cvs: ProcessedCVRepository
    analytics: AnalyticsRepository
    session_manager: ChatSessionManager
    aggregator: AnalyticsAggregator
    orchestrator: PortalOrchestrator
    task_manager: BackgroundTaskManager
    retrieval_engine: Optional[RetrievalEngine] = None
    response_generator: Optional[ResponseGenerator] = None
    embedder: Optional[Embedder] = None

    @classmethod
    def build(
        cls,
        store: DocumentStore,
        embedder: Optional[Embedder] = None,
        response_generator: Optional[ResponseGenerator] = None,
        builder: Optional[PortalBuilder] = None,
        task_manager: Optional[BackgroundTaskManager] = None,
        **session_options,
    ) -> "ServiceContainer":
        """Wire repositories and services over `store`; retrieval needs both an embedder and a generator"""
        portals = PortalRepository(store)
        sessions = ChatSessionRepository(store)
        cvs = ProcessedCVRepository(store)
        analytics = AnalyticsRepository(store)

        retrieval_engine = RetrievalEngine(CVIndexRepository(store), embedder) if embedder is not None else None
        task_manager = task_manager or BackgroundTaskManager()

        return cls(
            store=store,
            portals=portals,
            sessions=sessions,
            cvs=cvs,
            analytics=analytics,
            session_manager=ChatSessionManager(
                portals,
                sessions,
                cvs,
                analytics,
                retrieval_engine=retrieval_engine,
                response_generator=response_generator,
                **session_options,
            ),
            aggregator=AnalyticsAggregator(portals, sessions, analytics),
            orchestrator=PortalOrchestrator(
                portals,
                cvs,
                builder or DefaultPortalBuilder(retrieval_engine),
                task_manager,
            ),
            task_manager=task_manager,
            retrieval_engine=retrieval_engine,
            response_generator=response_generator,
            embedder=embedder,
        )

    async def close(self) -> None:
        await self.task_manager.shutdown()
        close_embedder = getattr(self.embedder, 'close', None)
        if close_embedder is not None:
            await close_embedder()
        await self.store.close()


async def create_store() -> DocumentStore:
    """Document store selected by STORE_BACKEND"""
    backend = STORE_CONFIG['backend']
    if backend == 'sql':
        manager = DatabaseManager(DatabaseConfig())
        if not await init_database(manager):
            raise RuntimeError("Database initialization failed")
        return SQLAlchemyDocumentStore(
            manager,
            max_update_retries=STORE_CONFIG['max_update_retries'],
            retry_backoff_seconds=STORE_CONFIG['retry_backoff_seconds'],
        )
    if backend != 'memory':
        raise ValueError(f"Unknown STORE_BACKEND: {backend}")
    logger.warning("Using the in-memory document store; data is lost on restart")
    return InMemoryDocumentStore(max_update_retries=STORE_CONFIG['max_update_retries'])


async def build_container_from_env() -> ServiceContainer:
    store = await create_store()

    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    embedder = None
    generator = None
    if api_key:
        embedder = VectorEmbedder(api_key=api_key)
        generator = ResponseGenerator(api_key=api_key)
    else:
        logger.warning("No Gemini API key configured; chat sessions will use fallback answers")

    return ServiceContainer.build(store, embedder=embedder, response_generator=generator)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
