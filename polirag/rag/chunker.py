"""Text chunking with overlap for RAG pipeline.

Implements word-based chunking so chunk size does not depend on a tokenizer.
Chunks are exact substrings of the source text; merging them with the
overlaps removed gives back the original text.
"""
import re
from typing import List

import structlog

from polirag.exceptions import ConfigurationError
from polirag.rag.models import Chunk

logger = structlog.get_logger()

WORD_PATTERN = re.compile(r"\S+")


class TextChunker:
    """Word-based text chunker with overlap support."""

    def __init__(self, chunk_size: int, chunk_overlap: int):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum number of words per chunk
            chunk_overlap: Number of words shared by consecutive chunks

        Raises:
            ConfigurationError: If the parameters cannot produce progress
        """
        if chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {chunk_size}")
        if chunk_overlap < 0:
            raise ConfigurationError(
                f"Overlap must not be negative, got {chunk_overlap}"
            )
        if chunk_overlap >= chunk_size:
            raise ConfigurationError(
                f"Overlap ({chunk_overlap}) must be less than "
                f"chunk size ({chunk_size})"
            )

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[Chunk]:
        """Split text into overlapping chunks.

        The first chunk starts at offset 0 and the last one ends at the end of
        the text, so surrounding whitespace is kept. Every other boundary sits
        at the start of a word.

        Args:
            text: Text to chunk

        Returns:
            List of Chunk objects in index order (empty if text has no words)
        """
        spans = [m.span() for m in WORD_PATTERN.finditer(text)]
        if not spans:
            return []

        word_count = len(spans)
        step = self.chunk_size - self.chunk_overlap
        chunks = []
        first = 0

        while True:
            last = min(first + self.chunk_size, word_count)
            char_start = 0 if first == 0 else spans[first][0]
            char_end = len(text) if last == word_count else spans[last][0]

            chunks.append(
                Chunk(
                    text=text[char_start:char_end],
                    index=len(chunks),
                    char_start=char_start,
                    char_end=char_end,
                    word_count=last - first,
                )
            )

            if last == word_count:
                break
            first += step

        logger.debug(
            "text_chunked",
            word_count=word_count,
            chunk_count=len(chunks),
        )

        return chunks

    # Alias matching the component contract
    chunk = chunk_text

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_words": 0,
                "avg_chunk_words": 0,
                "min_chunk_words": 0,
                "max_chunk_words": 0,
            }

        sizes = [c.word_count for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_words": sum(sizes),
            "avg_chunk_words": sum(sizes) // len(chunks),
            "min_chunk_words": min(sizes),
            "max_chunk_words": max(sizes),
            "overlap": self.chunk_overlap,
        }


def merge_chunks(chunks: List[Chunk]) -> str:
    """Rebuild the source text from its chunks, dropping the overlaps."""
    if not chunks:
        return ""

    parts = [chunks[0].text]
    covered = chunks[0].char_end
    for chunk in chunks[1:]:
        parts.append(chunk.text[covered - chunk.char_start :])
        covered = chunk.char_end
    return "".join(parts)


def chunk(text: str, max_len: int, overlap: int) -> List[Chunk]:
    """Split text into chunks of at most max_len words sharing overlap words."""
    return TextChunker(chunk_size=max_len, chunk_overlap=overlap).chunk_text(text)
