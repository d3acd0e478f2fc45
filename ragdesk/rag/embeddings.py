"""Embedding and completion backends over the Ollama client."""
from typing import AsyncIterator, Dict, List, Optional, Sequence

import structlog

from ragdesk import config
from ragdesk.llm_client import OllamaClient
from ragdesk.rag.models import Message

logger = structlog.get_logger()

ROLES = ("system", "user", "assistant")


class OllamaEmbeddingProvider:
    """Embedding backend; the dimension is learned from the first response."""

    def __init__(self, client: Optional[OllamaClient] = None, model: str = None):
        self.client = client or OllamaClient()
        self.model = model or config.EMBEDDING_MODEL
        self._dimension = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _update_dimension(self, vectors: List[List[float]]) -> None:
        if vectors and vectors[0] and self._dimension == 0:
            self._dimension = len(vectors[0])
            logger.info(
                "embedding_dimension_detected",
                model=self.model,
                dimension=self._dimension,
            )

    async def embed(self, text: str) -> List[float]:
        vectors = await self.client.embed([text], model=self.model)
        if not vectors or not vectors[0]:
            raise RuntimeError("Empty embedding returned for text")
        self._update_dimension(vectors)
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        payload = list(texts)
        if not payload:
            return []

        vectors = await self.client.embed(payload, model=self.model)
        self._update_dimension(vectors)
        return vectors


def to_ollama_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    """Convert (role, content) pairs, dropping blank content; unknown roles become user."""
    converted = []
    for role, content in messages:
        trimmed = (content or "").strip()
        if not trimmed:
            continue
        role = (role or "").lower()
        converted.append({"role": role if role in ROLES else "user", "content": trimmed})
    return converted


class OllamaCompletionBackend:
    """Completion backend returning whole answers or streamed fragments."""

    def __init__(self, client: Optional[OllamaClient] = None, model: str = None):
        self.client = client or OllamaClient()
        self.model = model or config.CHAT_MODEL

    async def complete(self, messages: Sequence[Message], temperature: float) -> str:
        data = await self.client.chat(
            to_ollama_messages(messages), model=self.model, temperature=temperature
        )
        return data.get("message", {}).get("content", "")

    async def stream_complete(
        self, messages: Sequence[Message], temperature: float
    ) -> AsyncIterator[str]:
        stream = self.client.chat_stream(
            to_ollama_messages(messages), model=self.model, temperature=temperature
        )
        try:
            async for fragment in stream:
                yield fragment
        finally:
            await stream.aclose()
