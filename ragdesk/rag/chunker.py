"""Sentence-aware text chunking with overlap for the RAG pipeline.

Chunks are character-bounded (soft limit) and content-addressed: the chunk id
is the SHA-256 of the chunk text, so re-ingesting the same text yields the
same ids.
"""
import hashlib
import re
from typing import Iterator, List, Optional, Sequence

import structlog

from ragdesk import config
from ragdesk.rag.models import Chunk, InvalidInputError

logger = structlog.get_logger()

# A break occurs after ".", "!" or "?" followed by whitespace
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def content_hash(text: str) -> str:
    """Hex-encoded SHA-256 digest of the text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def split_sentences(text: str) -> List[str]:
    """Split normalized text into trimmed, non-empty sentence units."""
    sentences = []
    for raw in SENTENCE_BOUNDARY.split(text):
        sentence = raw.strip()
        if sentence:
            sentences.append(sentence)
    return sentences


class Chunker:
    """Greedy sentence accumulator with a whole-sentence overlap window."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ):
        """Initialize the chunker.

        Args:
            chunk_size: Default chunk size in characters (default from config)
            chunk_overlap: Default overlap target in characters (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = (
            config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        )

        if self.chunk_size <= 0:
            raise InvalidInputError(f"Chunk size must be positive, got {self.chunk_size}")

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk(
        self,
        knowledge_base: str,
        source: str,
        text: str,
        tags: Optional[Sequence[str]] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> Iterator[Chunk]:
        """Lazily split text into chunks covering it in source order.

        A sentence longer than the chunk size is emitted as its own chunk;
        sentences are never split.

        Args:
            knowledge_base: Knowledge base the chunks belong to
            source: Source label (relative file path)
            text: Full document text
            tags: Already-normalized tags copied onto every chunk
            chunk_size: Override for the default chunk size
            chunk_overlap: Override for the default overlap target

        Yields:
            Chunk objects with positions 0, 1, 2, ...

        Raises:
            InvalidInputError: If the effective chunk size is not positive
        """
        max_length = self.chunk_size if chunk_size is None else chunk_size
        overlap_target = self.chunk_overlap if chunk_overlap is None else chunk_overlap
        if max_length <= 0:
            raise InvalidInputError(f"Chunk size must be positive, got {max_length}")

        normalized = (text or "").replace("\r", "").strip()
        if not normalized:
            return

        chunk_tags = tuple(tags or ())
        buffer: List[str] = []
        buffer_length = 0
        position = 0

        for sentence in split_sentences(normalized):
            if buffer and buffer_length + len(sentence) + 1 > max_length:
                yield self._build_chunk(knowledge_base, source, chunk_tags, position, buffer)
                position += 1

                if overlap_target > 0:
                    buffer, buffer_length = self._overlap_window(buffer, overlap_target)
                else:
                    buffer, buffer_length = [], 0

            buffer.append(sentence)
            buffer_length += len(sentence) + 1

        if buffer:
            yield self._build_chunk(knowledge_base, source, chunk_tags, position, buffer)

    @staticmethod
    def _overlap_window(sentences: List[str], overlap_target: int):
        """Trailing whole sentences whose cumulative length fits the overlap target."""
        window: List[str] = []
        overlap_chars = 0
        for sentence in reversed(sentences):
            if overlap_chars + len(sentence) > overlap_target:
                break
            window.insert(0, sentence)
            overlap_chars += len(sentence) + 1
        return window, overlap_chars

    @staticmethod
    def _build_chunk(
        knowledge_base: str,
        source: str,
        tags: tuple,
        position: int,
        sentences: List[str],
    ) -> Chunk:
        text = " ".join(sentences).strip()
        digest = content_hash(text)
        return Chunk(
            id=digest,
            knowledge_base=knowledge_base,
            source=source,
            position=position,
            text=text,
            content_hash=digest,
            tags=tags,
        )

    def stats(self, chunks: Sequence[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: Chunk objects

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
            }

        sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(sizes),
            "avg_chunk_size": sum(sizes) // len(chunks),
            "min_chunk_size": min(sizes),
            "max_chunk_size": max(sizes),
        }
