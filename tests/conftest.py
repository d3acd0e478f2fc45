"""Shared fixtures: in-memory collaborators for the RAG pipelines."""
import hashlib
import math
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

from ragdesk.rag.chat import ChatPipeline
from ragdesk.rag.chunker import Chunker
from ragdesk.rag.ingest import IngestPipeline
from ragdesk.rag.models import Chunk, InvalidInputError, SearchResult
from ragdesk.services import Services


def fake_vector(text: str, dimension: int = 8) -> List[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256 for b in digest[:dimension]]


class FakeEmbedder:
    """Deterministic embeddings derived from the text hash."""

    def __init__(self, dimension: int = 8, report_dimension: bool = True):
        self._size = dimension
        self._report = report_dimension
        self._dimension = 0
        self.batch_calls: List[List[str]] = []
        self.single_calls: List[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        self.single_calls.append(text)
        if self._report:
            self._dimension = self._size
        return fake_vector(text, self._size)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        texts = list(texts)
        if not texts:
            return []
        self.batch_calls.append(texts)
        if self._report:
            self._dimension = self._size
        return [fake_vector(t, self._size) for t in texts]


class FakeLLM:
    """Completion backend that records prompts and replays fixed tokens."""

    def __init__(self, tokens: Sequence[str] = ("Grounded", " answer", ".")):
        self.tokens = list(tokens)
        self.calls: List[tuple] = []
        self.stream_closed = False
        self.tokens_emitted = 0

    async def complete(self, messages, temperature: float) -> str:
        self.calls.append((list(messages), temperature))
        return "".join(self.tokens)

    async def stream_complete(self, messages, temperature: float):
        self.calls.append((list(messages), temperature))
        try:
            for token in self.tokens:
                self.tokens_emitted += 1
                yield token
        finally:
            self.stream_closed = True


class InMemoryIndex:
    """Vector index keeping chunks in a dict keyed by (knowledge base, id)."""

    def __init__(self):
        self.dimension = None
        self.ensure_calls: List[int] = []
        self.upserts: List[List[Chunk]] = []
        self.chunks: Dict[tuple, Chunk] = {}
        self.searches: List[tuple] = []

    async def ensure_collection(self, dimension: int) -> None:
        self.ensure_calls.append(dimension)
        if self.dimension is None:
            self.dimension = dimension

    async def upsert(self, chunks: Sequence[Chunk]) -> None:
        self.upserts.append(list(chunks))
        for chunk in chunks:
            self.chunks[(chunk.knowledge_base, chunk.id)] = chunk

    async def search(self, knowledge_bases, vector, top_k) -> List[SearchResult]:
        self.searches.append((list(knowledge_bases), list(vector), top_k))
        wanted = set(knowledge_bases)
        scored = []
        for chunk in self.chunks.values():
            if chunk.knowledge_base not in wanted:
                continue
            dot = sum(a * b for a, b in zip(vector, chunk.vector))
            norm = math.sqrt(sum(a * a for a in vector)) * math.sqrt(sum(b * b for b in chunk.vector))
            scored.append(SearchResult(chunk=chunk, score=dot / norm if norm else 0.0))
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    async def list_knowledge_bases(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for kb, _ in self.chunks:
            counts[kb] = counts.get(kb, 0) + 1
        return counts

    async def delete_knowledge_base(self, knowledge_base: str) -> None:
        if not knowledge_base or not knowledge_base.strip():
            raise InvalidInputError("Knowledge base id is required.")
        for key in [k for k in self.chunks if k[0] == knowledge_base]:
            del self.chunks[key]


def make_chunk(
    text: str,
    knowledge_base: str = "kb",
    source: str = "doc.txt",
    position: int = 0,
) -> Chunk:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return Chunk(
        id=digest,
        knowledge_base=knowledge_base,
        source=source,
        position=position,
        text=text,
        content_hash=digest,
        vector=fake_vector(text),
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def index() -> InMemoryIndex:
    return InMemoryIndex()


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture
def ingest_pipeline(embedder, index) -> IngestPipeline:
    return IngestPipeline(
        embedder=embedder,
        vector_store=index,
        chunker=Chunker(chunk_size=80, chunk_overlap=0),
    )


@pytest.fixture
def chat_pipeline(embedder, index, llm) -> ChatPipeline:
    return ChatPipeline(embedder=embedder, vector_store=index, llm=llm, top_k=4, temperature=0.3)


@pytest.fixture
def services(index, ingest_pipeline, chat_pipeline) -> Services:
    return Services(
        client=None,
        vector_store=index,
        ingestion=ingest_pipeline,
        chat=chat_pipeline,
    )


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    """A small corpus with a nested file and an unsupported extension."""
    root = tmp_path / "docs"
    (root / "guides").mkdir(parents=True)
    (root / "a.txt").write_text(
        "Alpha is the first letter. It starts the alphabet. Everyone knows it.",
        encoding="utf-8",
    )
    (root / "guides" / "b.md").write_text(
        "---\ntitle: Beta\n---\nBeta comes second. It follows alpha!",
        encoding="utf-8",
    )
    (root / "image.png").write_bytes(b"\x89PNG")
    return root


@pytest.fixture
def embedder_factory():
    return FakeEmbedder
