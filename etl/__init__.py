"""
Portal build pipeline for the CV portal service
Provides CV chunking and embedding; portal building and orchestration live in
etl.portal_builder, etl.portal_orchestrator and etl.tasks
"""

from .cv_chunker import (
    CVChunk,
    CVChunker
)

from .vector_embedder import (
    VectorEmbedder,
    EmbeddingError,
    EmbeddingResult
)

__all__ = [
    # Chunking
    'CVChunk',
    'CVChunker',

    # Vector embedding
    'VectorEmbedder',
    'EmbeddingError',
    'EmbeddingResult'
]
