"""
Vector Embedding Service
Google Gemini embeddings for CV chunks (document side) and visitor questions (query side)
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from etl.config import EMBEDDING_CONFIG

logger = logging.getLogger(__name__)

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_EMBEDDING_CHARS = 30000
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class EmbeddingError(Exception):
    """Raised when embedding generation fails"""
    def __init__(self, text: str, error_message: str):
        self.text = text
        self.error_message = error_message
        super().__init__(f"Embedding generation failed for text: {error_message}")


class TaskType(str, Enum):
    """Gemini embedding task hints; chunks and questions are embedded asymmetrically"""
    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"


@dataclass
class EmbeddingResult:
    """Result container for embedding generation"""
    text: str
    embedding: List[float]
    model: str
    dimensions: int
    processing_time: float


def normalize_text(text: Optional[str]) -> str:
    """Collapse whitespace and clip to the API's input limit"""
    if not text or not isinstance(text, str):
        return ""
    text = ' '.join(text.split())
    if len(text) > MAX_EMBEDDING_CHARS:
        logger.warning(f"Text truncated to {MAX_EMBEDDING_CHARS} characters for embedding")
        text = text[:MAX_EMBEDDING_CHARS]
    return text


class VectorEmbedder:
    """
    Gemini embedding client

    Single texts go through `embedContent`; batches go through
    `batchEmbedContents` and fall back to one request per text when a batch
    call fails, so one bad chunk does not sink its neighbours. Requests share
    a sliding one-minute budget and retry transient failures with exponential
    backoff.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = EMBEDDING_CONFIG['model'],
        max_retries: int = EMBEDDING_CONFIG['max_retries'],
        retry_delay: float = EMBEDDING_CONFIG['retry_delay'],
        batch_size: int = EMBEDDING_CONFIG['batch_size'],
        rate_limit_per_minute: int = EMBEDDING_CONFIG['rate_limit_per_minute'],
        base_url: str = GEMINI_API_BASE_URL,
    ):
        self.api_key = api_key or os.getenv('GEMINI_API_KEY') or os.getenv('GOOGLE_API_KEY')
        if not self.api_key:
            raise ValueError("Gemini API key is required. Set GEMINI_API_KEY or GOOGLE_API_KEY.")

        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.rate_limit_per_minute = rate_limit_per_minute
        self.base_url = base_url.rstrip('/')

        self._request_times: List[float] = []
        self._rate_limit_lock = asyncio.Lock()
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30, connect=10),
                headers={
                    'Content-Type': 'application/json',
                    'x-goog-api-key': self.api_key
                }
            )
        return self.session

    async def _wait_for_rate_limit(self):
        async with self._rate_limit_lock:
            now = time.time()
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                sleep_time = 60 - (now - self._request_times[0])
                if sleep_time > 0:
                    logger.info(f"Embedding rate limit reached, waiting {sleep_time:.2f} seconds")
                    await asyncio.sleep(sleep_time)
                self._request_times.pop(0)

            self._request_times.append(time.time())

    def _content(self, text: str, task_type: TaskType) -> Dict[str, Any]:
        return {
            "model": self.model,
            "content": {"parts": [{"text": text}]},
            "taskType": task_type.value,
        }

    async def _post(self, method: str, payload: Dict[str, Any], label: str) -> Dict[str, Any]:
        """POST to `{model}:{method}` with retries; returns the decoded JSON body"""
        url = f"{self.base_url}/{self.model}:{method}"

        for attempt in range(self.max_retries + 1):
            retry_reason = None
            try:
                session = await self._ensure_session()
                await self._wait_for_rate_limit()
                async with session.post(url, json=payload) as response:
                    if response.status == 200:
                        return await response.json()
                    body = await response.text()
                    if response.status not in RETRYABLE_STATUSES:
                        raise EmbeddingError(label, f"API error {response.status}: {body[:200]}")
                    retry_reason = f"API error {response.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                retry_reason = f"network error: {e}"

            if attempt < self.max_retries:
                wait_time = self.retry_delay * (2 ** attempt)
                logger.warning(f"Embedding {method} {retry_reason}, retrying in {wait_time}s")
                await asyncio.sleep(wait_time)
                continue
            raise EmbeddingError(label, f"{retry_reason} after {self.max_retries + 1} attempts")

        raise EmbeddingError(label, "Failed to generate embedding after all attempts")

    async def generate_embedding(
        self,
        text: str,
        task_type: TaskType = TaskType.RETRIEVAL_QUERY,
    ) -> EmbeddingResult:
        """
        Embed one text

        Raises:
            EmbeddingError: when the text is empty or the API keeps failing
        """
        start_time = time.time()
        processed = normalize_text(text)
        if not processed:
            raise EmbeddingError(text or "", "Empty or invalid text after preprocessing")

        data = await self._post("embedContent", self._content(processed, task_type), processed[:50])
        values = (data.get('embedding') or {}).get('values')
        if not isinstance(values, list) or not values:
            raise EmbeddingError(processed, "No embedding data in API response")

        return EmbeddingResult(
            text=processed,
            embedding=values,
            model=self.model,
            dimensions=len(values),
            processing_time=time.time() - start_time,
        )

    async def _embed_batch(self, texts: List[str], task_type: TaskType) -> List[Optional[EmbeddingResult]]:
        start_time = time.time()
        processed = [normalize_text(t) for t in texts]
        positions = [i for i, t in enumerate(processed) if t]
        results: List[Optional[EmbeddingResult]] = [None] * len(texts)
        if not positions:
            return results

        try:
            data = await self._post(
                "batchEmbedContents",
                {"requests": [self._content(processed[i], task_type) for i in positions]},
                f"batch of {len(positions)}",
            )
            embeddings = data.get('embeddings') or []
            if len(embeddings) != len(positions):
                raise EmbeddingError("batch", f"expected {len(positions)} embeddings, got {len(embeddings)}")
        except EmbeddingError as e:
            logger.warning(f"Batch embedding failed ({e.error_message}); embedding texts one by one")
            singles = await asyncio.gather(
                *(self.generate_embedding(processed[i], task_type) for i in positions),
                return_exceptions=True
            )
            for i, single in zip(positions, singles):
                if isinstance(single, Exception):
                    logger.error(f"Failed to generate embedding for text {i}: {single}")
                else:
                    results[i] = single
            return results

        elapsed = time.time() - start_time
        for i, item in zip(positions, embeddings):
            values = item.get('values') if isinstance(item, dict) else None
            if values:
                results[i] = EmbeddingResult(
                    text=processed[i],
                    embedding=values,
                    model=self.model,
                    dimensions=len(values),
                    processing_time=elapsed,
                )
            else:
                logger.error(f"No embedding returned for text {i}")
        return results

    async def generate_embeddings_batch(
        self,
        texts: List[str],
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> List[Optional[EmbeddingResult]]:
        """
        Embed many texts, `batch_size` per request

        Returns:
            One entry per input text, None where generation failed
        """
        if not texts:
            return []

        logger.info(f"Generating embeddings for {len(texts)} texts in batches of {self.batch_size}")
        results: List[Optional[EmbeddingResult]] = []
        for i in range(0, len(texts), self.batch_size):
            results.extend(await self._embed_batch(texts[i:i + self.batch_size], task_type))

        failed = sum(1 for r in results if r is None)
        if failed:
            logger.warning(f"{failed}/{len(texts)} embeddings failed")
        return results

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
