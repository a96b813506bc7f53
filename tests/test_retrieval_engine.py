"""
Tests for the retrieval engine: ranking, result shaping and index lifecycle.
"""

import pytest

from chat.errors import RetrievalError, RetrievalUnavailable
from rag.retrieval_engine import ContentChunk, build_result, cosine_similarity, rank_chunks

CV_ID = "cv_1"


def chunk(index, score, section="experience"):
    return ContentChunk(
        chunk_id=f"{section}_{index}",
        content=f"content {index}",
        section=section,
        type=section,
        chunk_index=index,
        score=score,
    )


class TestRanking:

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 2.0], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([], []) == 0.0

    def test_orders_by_score_descending(self):
        ranked = rank_chunks([chunk(0, 0.75), chunk(1, 0.95), chunk(2, 0.85)], top_k=5, min_similarity=0.7)

        assert [c.chunk_index for c in ranked] == [1, 2, 0]

    def test_ties_keep_chunk_order(self):
        ranked = rank_chunks([chunk(3, 0.9), chunk(1, 0.9), chunk(2, 0.9)], top_k=5, min_similarity=0.7)

        assert [c.chunk_index for c in ranked] == [1, 2, 3]

    def test_min_similarity_and_top_k(self):
        scored = [chunk(i, 0.6 + i * 0.05) for i in range(8)]

        ranked = rank_chunks(scored, top_k=3, min_similarity=0.7)

        assert len(ranked) == 3
        assert all(c.score >= 0.7 for c in ranked)
        assert ranked[0].chunk_index == 7

    def test_build_result(self):
        ranked = [chunk(0, 0.9, "skills"), chunk(1, 0.8, "experience"), chunk(2, 0.7, "skills")]

        result = build_result("query", ranked)

        assert result.sources == ["skills", "experience"]
        assert result.confidence == pytest.approx(0.8)
        assert result.context.startswith("[skills] content 0")
        assert result.has_content

    def test_empty_result(self):
        result = build_result("query", [])

        assert result.confidence == 0.0
        assert result.sources == []
        assert result.context == ""
        assert not result.has_content


class TestRetrievalEngine:

    @pytest.mark.asyncio
    async def test_search_without_index(self, retrieval_engine):
        with pytest.raises(RetrievalUnavailable):
            await retrieval_engine.search(CV_ID, "What skills do they have?")

    @pytest.mark.asyncio
    async def test_build_index_and_search(self, retrieval_engine, index_repo, embedder, sample_cv):
        index = await retrieval_engine.build_index(CV_ID, sample_cv)

        assert index.model == embedder.model
        assert index.dimensions == 5
        assert [c.chunk_index for c in index.chunks] == list(range(len(index.chunks)))

        result = await retrieval_engine.search(CV_ID, "What skills do they have?")

        assert [c.content for c in result.chunks] == ["Python"]
        assert result.sources == ["skills"]
        assert result.confidence == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_search_is_deterministic(self, retrieval_engine, sample_cv):
        await retrieval_engine.build_index(CV_ID, sample_cv)

        first = await retrieval_engine.search(CV_ID, "Tell me about their background")
        second = await retrieval_engine.search(CV_ID, "Tell me about their background")

        assert [c.chunk_id for c in first.chunks] == [c.chunk_id for c in second.chunks]

    @pytest.mark.asyncio
    async def test_query_embeddings_are_cached(self, retrieval_engine, embedder, sample_cv):
        await retrieval_engine.build_index(CV_ID, sample_cv)

        await retrieval_engine.search(CV_ID, "Where did they study at university?")
        await retrieval_engine.search(CV_ID, "where did they   study at university?")

        assert embedder.query_calls == 1

    @pytest.mark.asyncio
    async def test_query_embedding_failure(self, retrieval_engine, embedder, sample_cv):
        await retrieval_engine.build_index(CV_ID, sample_cv)
        embedder.fail = True

        with pytest.raises(RetrievalError):
            await retrieval_engine.search(CV_ID, "What skills do they have?")

    @pytest.mark.asyncio
    async def test_build_index_without_embeddings(self, retrieval_engine, embedder, sample_cv):
        embedder.fail = True

        with pytest.raises(RetrievalError):
            await retrieval_engine.build_index(CV_ID, sample_cv)
        assert await retrieval_engine.has_index(CV_ID) is False

    @pytest.mark.asyncio
    async def test_ensure_index(self, retrieval_engine, embedder, sample_cv):
        assert await retrieval_engine.ensure_index(CV_ID, None) is False
        assert await retrieval_engine.ensure_index(CV_ID, sample_cv) is True
        assert await retrieval_engine.ensure_index(CV_ID, sample_cv) is True
        assert embedder.batch_calls == 1

    @pytest.mark.asyncio
    async def test_ensure_index_swallows_failures(self, retrieval_engine, embedder, sample_cv):
        embedder.fail = True

        assert await retrieval_engine.ensure_index(CV_ID, sample_cv) is False

    @pytest.mark.asyncio
    async def test_delete_index(self, retrieval_engine, sample_cv):
        await retrieval_engine.build_index(CV_ID, sample_cv)

        assert await retrieval_engine.delete_index(CV_ID) is True
        assert await retrieval_engine.has_index(CV_ID) is False
