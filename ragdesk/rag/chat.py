"""Retrieval and answer generation over one or more knowledge bases.

Handles:
- Knowledge-base id normalization
- Query embedding and filtered vector search
- Prompt composition and completion (whole answer or token stream)
- Citations shared by both answer modes
"""
from typing import AsyncIterator, Iterable, List, Optional

import structlog

from ragdesk import config
from ragdesk.rag.models import (
    ChatAnswer,
    Citation,
    CompletionBackend,
    EmbeddingBackend,
    InvalidInputError,
    SearchResult,
    VectorIndex,
    normalize_labels,
)
from ragdesk.rag.prompt import build_citations, compose_messages

logger = structlog.get_logger()


class ChatStream:
    """Single-pass async stream of answer tokens.

    Citations become readable once the stream is exhausted or closed.
    """

    def __init__(self, tokens: AsyncIterator[str], results: List[SearchResult]):
        self._tokens = tokens
        self.results = results
        self._citations = build_citations(results)
        self._started = False
        self._finished = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("Chat stream can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for token in self._tokens:
                yield token
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Stop the underlying completion stream."""
        if self._finished:
            return
        self._finished = True
        aclose = getattr(self._tokens, "aclose", None)
        if aclose is not None:
            await aclose()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def citations(self) -> List[Citation]:
        if not self._finished:
            raise RuntimeError("Citations are available after the stream completes")
        return self._citations


class ChatPipeline:
    """Retrieval-augmented question answering."""

    def __init__(
        self,
        embedder: EmbeddingBackend,
        vector_store: VectorIndex,
        llm: CompletionBackend,
        top_k: int = None,
        temperature: float = None,
    ):
        """Initialize the chat pipeline.

        Args:
            embedder: Embedding backend used for the query
            vector_store: Vector index to search
            llm: Completion backend
            top_k: Default number of results (default from config)
            temperature: Default sampling temperature (default from config)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.llm = llm
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.temperature = config.TEMPERATURE if temperature is None else temperature

    async def retrieve(
        self,
        knowledge_bases: Iterable[str],
        query: str,
        top_k: Optional[int] = None,
    ) -> List[SearchResult]:
        """Search the requested knowledge bases for passages relevant to the query.

        Raises:
            InvalidInputError: If no knowledge base id remains after normalization or the query is blank
        """
        ids = normalize_labels(knowledge_bases)
        if not ids:
            raise InvalidInputError("At least one knowledge base must be given.")
        if not query or not query.strip():
            raise InvalidInputError("Query is required")

        top_k = top_k or self.top_k
        logger.info(
            "retrieval_started",
            knowledge_bases=ids,
            query_length=len(query),
            top_k=top_k,
        )

        vector = await self.embedder.embed(query)
        results = await self.vector_store.search(ids, vector, top_k)

        logger.info(
            "retrieval_completed",
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )
        return results

    def _temperature(self, temperature: Optional[float]) -> float:
        return self.temperature if temperature is None else temperature

    async def answer(
        self,
        knowledge_bases: Iterable[str],
        query: str,
        top_k: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ChatAnswer:
        """Retrieve, compose and return a complete answer with citations."""
        results = await self.retrieve(knowledge_bases, query, top_k)
        messages = compose_messages(query, results)

        response = await self.llm.complete(messages, self._temperature(temperature))

        logger.info("chat_answer_generated", response_length=len(response))
        return ChatAnswer(
            response=response,
            results=results,
            citations=build_citations(results),
        )

    async def stream(
        self,
        knowledge_bases: Iterable[str],
        query: str,
        top_k: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ChatStream:
        """Retrieve and compose now; return a lazy stream of answer tokens."""
        results = await self.retrieve(knowledge_bases, query, top_k)
        messages = compose_messages(query, results)

        tokens = self.llm.stream_complete(messages, self._temperature(temperature))
        return ChatStream(tokens, results)
