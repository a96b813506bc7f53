"""
CV Chunker
Splits a processed CV document into section-labelled text chunks for embedding
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List

from etl.config import RAG_CONFIG

logger = logging.getLogger(__name__)

# (CV key, chunk type) in indexing order
CV_SECTIONS = [
    ('summary', 'summary'),
    ('personalInfo', 'summary'),
    ('experience', 'experience'),
    ('education', 'education'),
    ('skills', 'skills'),
    ('projects', 'projects'),
    ('certifications', 'certifications'),
]

# Scalar fields worth indexing on CV objects
TEXT_FIELDS = [
    'title', 'name', 'summary', 'description', 'content',
    'company', 'position', 'role', 'institution', 'degree',
    'field', 'skill', 'technology', 'achievement', 'responsibility',
    'location', 'duration', 'startDate', 'endDate', 'email',
    'phone', 'website', 'linkedin', 'github'
]

WORDS_PER_TOKEN = 0.75


@dataclass
class CVChunk:
    """A piece of CV text ready for embedding"""
    chunk_id: str
    content: str
    section: str
    type: str
    chunk_index: int
    token_count: int


def estimate_tokens(word_count: int) -> int:
    return math.ceil(word_count / WORDS_PER_TOKEN)


def extract_text(value: Any) -> str:
    """Flatten a CV value into plain text from known fields and nested lists"""
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return ''

    parts: List[str] = []
    for field in TEXT_FIELDS:
        field_value = value.get(field)
        if isinstance(field_value, str):
            parts.append(field_value)

    for nested in value.values():
        if isinstance(nested, list):
            for item in nested:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict):
                    parts.append(extract_text(item))

    return ' '.join(part for part in parts if part and part.strip())


class CVChunker:
    """Section-aware chunker with word-window overlap"""

    def __init__(
        self,
        max_chunk_tokens: int = RAG_CONFIG['max_chunk_tokens'],
        overlap_tokens: int = RAG_CONFIG['overlap_tokens'],
        max_chunks_per_item: int = RAG_CONFIG['max_chunks_per_item'],
    ):
        if overlap_tokens >= max_chunk_tokens:
            raise ValueError("overlap_tokens must be smaller than max_chunk_tokens")
        self.max_chunk_tokens = max_chunk_tokens
        self.overlap_tokens = overlap_tokens
        self.max_chunks_per_item = max_chunks_per_item

    def chunk_cv(self, cv: Dict[str, Any]) -> List[CVChunk]:
        chunks: List[CVChunk] = []

        for key, chunk_type in CV_SECTIONS:
            section_data = cv.get(key)
            if not section_data:
                continue

            if isinstance(section_data, list):
                for i, item in enumerate(section_data):
                    content = extract_text(item)
                    if content.strip():
                        chunks.extend(self.split_text(content, f"{key}_{i}", key, chunk_type, len(chunks)))
            elif isinstance(section_data, (dict, str)):
                content = extract_text(section_data)
                if content.strip():
                    chunks.extend(self.split_text(content, key, key, chunk_type, len(chunks)))

        logger.debug(f"Chunked CV into {len(chunks)} chunks")
        return chunks

    def split_text(self, text: str, base_id: str, section: str, chunk_type: str, start_index: int = 0) -> List[CVChunk]:
        """Split text into windows of at most max_chunk_tokens with overlap between windows"""
        words = text.split()
        if not words:
            return []

        if estimate_tokens(len(words)) <= self.max_chunk_tokens:
            return [CVChunk(
                chunk_id=f"{base_id}_chunk_0",
                content=' '.join(words),
                section=section,
                type=chunk_type,
                chunk_index=start_index,
                token_count=estimate_tokens(len(words)),
            )]

        words_per_chunk = int(self.max_chunk_tokens * WORDS_PER_TOKEN)
        overlap_words = int(self.overlap_tokens * WORDS_PER_TOKEN)

        chunks: List[CVChunk] = []
        start = 0
        while start < len(words):
            end = min(start + words_per_chunk, len(words))
            window = words[start:end]
            chunks.append(CVChunk(
                chunk_id=f"{base_id}_chunk_{len(chunks)}",
                content=' '.join(window),
                section=section,
                type=chunk_type,
                chunk_index=start_index + len(chunks),
                token_count=estimate_tokens(len(window)),
            ))
            if end == len(words):
                break
            if len(chunks) >= self.max_chunks_per_item:
                logger.warning(f"Too many chunks for {base_id}, stopping at {self.max_chunks_per_item}")
                break
            start = end - overlap_words

        return chunks
