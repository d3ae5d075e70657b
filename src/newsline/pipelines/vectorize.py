from __future__ import annotations

import re

from ..config import LlmConfig
from ..llm import embed_texts

MAX_CHUNK_CHARS = 500
CHUNK_OVERLAP = 50
MIN_SENTENCE_CHARS = 20
MIN_CHUNK_CHARS = 50


def chunk_text(
    content: str,
    max_chars: int = MAX_CHUNK_CHARS,
    overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """Pack sentences into chunks of at most ``max_chars``.

    Each new chunk starts with the trailing ``overlap`` characters of the
    previous one. Short sentences and short chunks are dropped.
    """
    sentences = [
        sentence
        for sentence in re.split(r"[.!?]+", content)
        if len(sentence.strip()) > MIN_SENTENCE_CHARS
    ]
    chunks: list[str] = []
    current = ""
    for sentence in sentences:
        candidate = current + sentence + ". "
        if len(candidate) > max_chars and current:
            chunks.append(current.strip())
            current = current[-overlap:] + sentence + ". "
        else:
            current = candidate
    if current.strip():
        chunks.append(current.strip())
    return [chunk for chunk in chunks if len(chunk) > MIN_CHUNK_CHARS]


def vectorize_content(
    config: LlmConfig, article_id: int, content: str
) -> list[dict[str, object]]:
    chunks = chunk_text(content)
    vectors = embed_texts(config, chunks)
    return [
        {
            "embedding_id": f"{article_id}_chunk_{index}",
            "chunk_index": index,
            "content_chunk": chunk,
            "values": vector,
        }
        for index, (chunk, vector) in enumerate(zip(chunks, vectors))
    ]
