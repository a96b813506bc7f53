"""
Retrieval engine for CV portals.

Builds a per-CV embedding index once (chunk, embed, store) and answers
similarity searches against it. Ranking is by cosine similarity, descending,
with ties kept in original chunk order so results are reproducible for a fixed
index and query.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from chat.errors import RetrievalError, RetrievalUnavailable
from database.cache import EmbeddingCache
from database.repositories import CVIndexRepository
from database.schemas import CVIndex, IndexedChunk
from etl.config import RAG_CONFIG
from etl.cv_chunker import CVChunker
from etl.vector_embedder import EmbeddingError, EmbeddingResult
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    model: str

    async def generate_embedding(self, text: str) -> EmbeddingResult: ...

    async def generate_embeddings_batch(self, texts: List[str]) -> List[Optional[EmbeddingResult]]: ...


@dataclass
class ContentChunk:
    """A retrieved chunk with its similarity score"""
    chunk_id: str
    content: str
    section: str
    type: str
    chunk_index: int
    score: float


@dataclass
class RetrievalResult:
    """Ranked chunks for one query plus derived context, sources and confidence"""
    query: str
    chunks: List[ContentChunk] = field(default_factory=list)
    context: str = ""
    sources: List[str] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def has_content(self) -> bool:
        return bool(self.chunks)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_chunks(scored: List[ContentChunk], top_k: int, min_similarity: float) -> List[ContentChunk]:
    """Keep chunks at or above min_similarity, best first, ties by original chunk order"""
    kept = [c for c in scored if c.score >= min_similarity]
    kept.sort(key=lambda c: (-c.score, c.chunk_index))
    return kept[:top_k]


def build_result(query: str, ranked: List[ContentChunk]) -> RetrievalResult:
    sources: List[str] = []
    for chunk in ranked:
        if chunk.section not in sources:
            sources.append(chunk.section)

    confidence = sum(c.score for c in ranked) / len(ranked) if ranked else 0.0
    return RetrievalResult(
        query=query,
        chunks=ranked,
        context="\n\n".join(f"[{c.section}] {c.content}" for c in ranked),
        sources=sources,
        confidence=min(1.0, max(0.0, confidence)),
    )


class RetrievalEngine:
    """Similarity search over per-CV embedding indexes"""

    def __init__(
        self,
        index_repository: CVIndexRepository,
        embedder: Embedder,
        chunker: Optional[CVChunker] = None,
        query_cache: Optional[EmbeddingCache] = None,
        top_k: int = RAG_CONFIG['top_k'],
        min_similarity: float = RAG_CONFIG['min_similarity'],
    ):
        self.index_repository = index_repository
        self.embedder = embedder
        self.chunker = chunker or CVChunker()
        self.query_cache = query_cache or EmbeddingCache(
            capacity=RAG_CONFIG['query_cache_size'],
            ttl_seconds=RAG_CONFIG['query_cache_ttl_seconds'],
        )
        self.top_k = top_k
        self.min_similarity = min_similarity

    async def has_index(self, document_id: str) -> bool:
        return await self.index_repository.exists(document_id)

    async def build_index(self, document_id: str, cv: Dict[str, Any]) -> CVIndex:
        """Chunk and embed the CV, then persist the index. Raises on failure."""
        start = time.time()
        chunks = self.chunker.chunk_cv(cv)
        if not chunks:
            raise RetrievalError(f"No indexable content in CV {document_id}")

        results = await self.embedder.generate_embeddings_batch([c.content for c in chunks])
        indexed: List[IndexedChunk] = []
        for chunk, result in zip(chunks, results):
            if result is None:
                continue
            indexed.append(IndexedChunk(
                chunk_id=chunk.chunk_id,
                content=chunk.content,
                section=chunk.section,
                type=chunk.type,
                chunk_index=chunk.chunk_index,
                token_count=chunk.token_count,
                embedding=result.embedding,
            ))

        if not indexed:
            raise RetrievalError(f"No embeddings generated for CV {document_id}")

        index = CVIndex(
            processed_cv_id=document_id,
            model=self.embedder.model,
            dimensions=len(indexed[0].embedding),
            chunks=indexed,
        )
        await self.index_repository.save(index)

        elapsed = time.time() - start
        await metrics_observe("rag_index_build_seconds", elapsed)
        logger.info(
            f"Built index for CV {document_id}: chunks={len(indexed)}/{len(chunks)}, time={elapsed:.2f}s"
        )
        return index

    async def ensure_index(self, document_id: str, cv: Optional[Dict[str, Any]]) -> bool:
        """Best-effort one-time index construction. Never raises; False means retrieval is unavailable."""
        try:
            if await self.has_index(document_id):
                return True
            if not cv:
                logger.warning(f"Cannot index CV {document_id}: document missing")
                return False
            await self.build_index(document_id, cv)
            return True
        except Exception as e:
            logger.error(f"Index construction failed for CV {document_id}: {e}")
            await metrics_inc("rag_index_build_errors_total")
            return False

    async def delete_index(self, document_id: str) -> bool:
        return await self.index_repository.delete(document_id)

    async def _embed_query(self, query: str) -> List[float]:
        async def compute() -> List[float]:
            try:
                result = await self.embedder.generate_embedding(query)
            except EmbeddingError as e:
                raise RetrievalError(f"Query embedding failed: {e.error_message}") from e
            return result.embedding

        return await self.query_cache.get_or_compute(self.embedder.model, query, compute)

    async def search(self, document_id: str, query: str) -> RetrievalResult:
        """Rank indexed chunks of one CV against a query

        Raises:
            RetrievalUnavailable: no index exists for the document
            RetrievalError: the query could not be embedded
        """
        start = time.time()
        index = await self.index_repository.get(document_id)
        if index is None or not index.chunks:
            raise RetrievalUnavailable(f"No index for CV {document_id}")

        query_embedding = await self._embed_query(query)
        scored = [
            ContentChunk(
                chunk_id=c.chunk_id,
                content=c.content,
                section=c.section,
                type=c.type,
                chunk_index=c.chunk_index,
                score=cosine_similarity(query_embedding, c.embedding),
            )
            for c in index.chunks
        ]
        result = build_result(query, rank_chunks(scored, self.top_k, self.min_similarity))

        await metrics_observe("rag_retrieval_seconds", time.time() - start)
        logger.debug(
            f"Retrieved {len(result.chunks)} chunks for CV {document_id} "
            f"(confidence={result.confidence:.2f}, sources={result.sources})"
        )
        return result
