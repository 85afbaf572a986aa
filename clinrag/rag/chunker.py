"""Text chunking with overlap for RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Windows advance by a fixed stride of ``chunk_size - overlap`` so that
consecutive chunks share exactly ``overlap`` characters.
"""
from typing import List, Optional
from dataclasses import dataclass
import structlog

from clinrag import config
from clinrag.errors import InvalidConfiguration

logger = structlog.get_logger()


@dataclass(frozen=True)
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


def validate_chunking(chunk_size: int, overlap: int) -> None:
    """Check chunking parameters.

    Raises:
        InvalidConfiguration: If size is not a positive integer or overlap is
            not in ``[0, chunk_size)``
    """
    for name, value in (("chunk_size", chunk_size), ("overlap", overlap)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")

    if chunk_size <= 0:
        raise InvalidConfiguration(f"chunk_size must be positive, got {chunk_size}")

    if overlap < 0:
        raise InvalidConfiguration(f"overlap must not be negative, got {overlap}")

    if overlap >= chunk_size:
        raise InvalidConfiguration(
            f"Overlap ({overlap}) must be less than chunk size ({chunk_size})"
        )


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[TextChunk]:
    """Split text into overlapping fixed-size chunks.

    Args:
        text: Text to chunk
        chunk_size: Size of each chunk in characters
        overlap: Characters shared by consecutive chunks

    Returns:
        List of TextChunk objects; empty for blank text

    Raises:
        InvalidConfiguration: If the parameters are invalid
    """
    validate_chunking(chunk_size, overlap)

    if not text or not text.strip():
        return []

    text_length = len(text)
    stride = chunk_size - overlap

    chunks = []
    start = 0

    while True:
        end = min(start + chunk_size, text_length)
        chunks.append(
            TextChunk(
                content=text[start:end],
                char_start=start,
                char_end=end,
                chunk_index=len(chunks),
            )
        )

        # The window that reaches the end of the text is the last one
        if end >= text_length:
            break

        start += stride

    return chunks


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        validate_chunking(self.chunk_size, self.chunk_overlap)

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks using the configured sizes."""
        chunks = chunk_text(text, self.chunk_size, self.chunk_overlap)

        if chunks:
            logger.info(
                "text_chunked",
                text_length=len(text),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "overlap": self.chunk_overlap,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": round(sum(chunk_sizes) / len(chunks)),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }
