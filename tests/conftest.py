"""
Shared fixtures: in-memory store, controllable clock and offline embedding/LLM doubles.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from chat.session_manager import ChatSessionManager
from database.repositories import (
    AnalyticsRepository,
    ChatSessionRepository,
    CVIndexRepository,
    PortalRepository,
    ProcessedCVRepository,
)
from database.schemas import Portal, PortalStatus
from database.store import InMemoryDocumentStore
from etl.vector_embedder import EmbeddingError, EmbeddingResult
from monitoring.metrics import MetricsRegistry
from rag.response_generator import WELCOME_TEMPLATES, GeneratedAnswer, suggest_follow_ups
from rag.retrieval_engine import RetrievalEngine

OWNER_ID = "owner-1"
CV_ID = "cv_1"
PORTAL_ID = "portal_1"

# Dimension -> words that light it up
KEYWORD_DIMENSIONS = [
    ("experience", "engineer"),
    ("skills", "python"),
    ("education", "university"),
    ("projects", "project"),
]


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class KeywordEmbedder:
    """Deterministic embeddings: one dimension per CV topic plus a constant bias."""

    model = "fake-embedding-001"

    def __init__(self):
        self.fail = False
        self.query_calls = 0
        self.batch_calls = 0

    @staticmethod
    def vector(text: str) -> List[float]:
        lowered = text.lower()
        return [1.0 if any(word in lowered for word in words) else 0.0 for words in KEYWORD_DIMENSIONS] + [0.05]

    def _result(self, text: str) -> EmbeddingResult:
        embedding = self.vector(text)
        return EmbeddingResult(
            text=text, embedding=embedding, model=self.model, dimensions=len(embedding), processing_time=0.0
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        self.query_calls += 1
        if self.fail:
            raise EmbeddingError(text, "embedding service unavailable")
        return self._result(text)

    async def generate_embeddings_batch(self, texts: List[str]) -> List[Optional[EmbeddingResult]]:
        self.batch_calls += 1
        if self.fail:
            return [None for _ in texts]
        return [self._result(t) for t in texts]


class FakeResponseGenerator:
    """Stands in for the Gemini-backed generator; records calls instead of making network requests."""

    def __init__(self):
        self.calls = 0
        self.welcome_calls = 0
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.contexts = []

    async def generate(self, query, retrieval, chat_context) -> GeneratedAnswer:
        self.calls += 1
        self.contexts.append(chat_context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratedAnswer(
            message=f"Answer about: {query}",
            sources=list(retrieval.sources),
            confidence=retrieval.confidence,
            follow_ups=suggest_follow_ups(retrieval.sources),
        )

    def generate_welcome_message(self, chat_context) -> str:
        self.welcome_calls += 1
        return WELCOME_TEMPLATES['en'].format(
            name=chat_context.cv_owner_name or 'this professional',
            title=chat_context.cv_title or 'professional',
        )


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Each test gets its own metrics registry"""
    MetricsRegistry._default = None
    yield
    MetricsRegistry._default = None


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def generator():
    return FakeResponseGenerator()


@pytest.fixture
def sample_cv():
    return {
        'userId': OWNER_ID,
        'personalInfo': {'name': 'Jane Doe', 'title': 'Platform Developer'},
        'experience': [
            {'company': 'Acme', 'position': 'Senior Engineer', 'description': 'Built payment APIs'},
        ],
        'education': [
            {'institution': 'State University', 'degree': 'BSc Computer Science'},
        ],
        'skills': ['Python', 'FastAPI', 'PostgreSQL'],
        'projects': [
            {'name': 'Portfolio', 'description': 'Open source project for CV portals'},
        ],
    }


@pytest.fixture
def portals(store):
    return PortalRepository(store)


@pytest.fixture
def sessions(store):
    return ChatSessionRepository(store)


@pytest.fixture
def cvs(store):
    return ProcessedCVRepository(store)


@pytest.fixture
def analytics_repo(store):
    return AnalyticsRepository(store)


@pytest.fixture
def index_repo(store):
    return CVIndexRepository(store)


@pytest.fixture
def retrieval_engine(index_repo, embedder):
    return RetrievalEngine(index_repo, embedder)


@pytest.fixture
def session_manager(portals, sessions, cvs, analytics_repo, retrieval_engine, generator, clock):
    return ChatSessionManager(
        portals,
        sessions,
        cvs,
        analytics_repo,
        retrieval_engine=retrieval_engine,
        response_generator=generator,
        clock=clock,
    )


@pytest.fixture
def seed_portal(portals, cvs, sample_cv):
    """Returns a coroutine function that stores a CV and a portal over it"""
    async def _seed(
        status: PortalStatus = PortalStatus.COMPLETED,
        portal_id: str = PORTAL_ID,
        cv_id: str = CV_ID,
        user_id: str = OWNER_ID,
        cv: Optional[dict] = sample_cv,
    ) -> Portal:
        if cv is not None:
            await cvs.save(cv_id, cv)
        portal = Portal(portal_id=portal_id, user_id=user_id, processed_cv_id=cv_id, status=status)
        await portals.create(portal)
        return portal

    return _seed
