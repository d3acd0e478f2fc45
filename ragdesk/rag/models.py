"""Core data model and collaborator contracts for the RAG pipelines."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

# (role, content) pair; role is one of system/user/assistant
Message = Tuple[str, str]


class InvalidInputError(ValueError):
    """A caller-supplied value is blank, malformed or out of range."""


@dataclass
class Chunk:
    """A contiguous span of source text belonging to one knowledge base."""

    id: str
    knowledge_base: str
    source: str
    position: int
    text: str
    content_hash: str
    tags: Tuple[str, ...] = ()
    vector: Optional[List[float]] = None


@dataclass(frozen=True)
class IngestionRequest:
    """Request to ingest a directory or zip archive into a knowledge base."""

    knowledge_base: str
    source_path: str
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IngestionResult:
    files_processed: int
    chunks_created: int


@dataclass
class SearchResult:
    """A chunk paired with its relevance score (higher is more relevant)."""

    chunk: Chunk
    score: float


@dataclass(frozen=True)
class Citation:
    knowledge_base: str
    source: str
    position: int
    score: float
    snippet: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "rag_id": self.knowledge_base,
            "source": self.source,
            "position": self.position,
            "score": self.score,
            "snippet": self.snippet,
        }


@dataclass
class ChatAnswer:
    """Complete answer with the search results and citations it was built from."""

    response: str
    results: List[SearchResult]
    citations: List[Citation] = field(default_factory=list)


def normalize_labels(values: Optional[Iterable[str]]) -> List[str]:
    """Trim, drop blanks and de-duplicate case-insensitively (first spelling wins).

    Used for both tag lists and knowledge-base id lists.
    """
    seen = set()
    normalized = []
    for value in values or ():
        if value is None:
            continue
        trimmed = value.strip()
        if not trimmed:
            continue
        key = trimmed.casefold()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(trimmed)
    return normalized


class EmbeddingBackend(Protocol):
    @property
    def dimension(self) -> int: ...

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...


class CompletionBackend(Protocol):
    async def complete(self, messages: Sequence[Message], temperature: float) -> str: ...

    def stream_complete(
        self, messages: Sequence[Message], temperature: float
    ) -> AsyncIterator[str]: ...


class VectorIndex(Protocol):
    async def ensure_collection(self, dimension: int) -> None: ...

    async def upsert(self, chunks: Sequence[Chunk]) -> None: ...

    async def search(
        self, knowledge_bases: Sequence[str], vector: Sequence[float], top_k: int
    ) -> List[SearchResult]: ...

    async def list_knowledge_bases(self) -> Dict[str, int]: ...

    async def delete_knowledge_base(self, knowledge_base: str) -> None: ...


class TextLoader(Protocol):
    def supports(self, extension: str) -> bool: ...

    async def load(self, path: Path) -> str: ...
