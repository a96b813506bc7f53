"""
Database package for the CV portal service
Provides the document store, schemas, repositories and SQL connection management
"""

from .connection import (
    DatabaseConfig,
    DatabaseManager,
    init_database,
    Base
)

from .store import (
    DocumentStore,
    InMemoryDocumentStore,
    SQLAlchemyDocumentStore,
    StoreError,
    ConcurrencyConflict,
    DocumentExists
)

from .repositories import (
    RepositoryError,
    PortalRepository,
    ProcessedCVRepository,
    ChatSessionRepository,
    AnalyticsRepository,
    CVIndexRepository
)

__all__ = [
    # Connection utilities
    'DatabaseConfig',
    'DatabaseManager',
    'init_database',
    'Base',

    # Document store
    'DocumentStore',
    'InMemoryDocumentStore',
    'SQLAlchemyDocumentStore',
    'StoreError',
    'ConcurrencyConflict',
    'DocumentExists',

    # Repositories
    'RepositoryError',
    'PortalRepository',
    'ProcessedCVRepository',
    'ChatSessionRepository',
    'AnalyticsRepository',
    'CVIndexRepository'
]
