"""Wiring of the pipelines with their default collaborators."""
from dataclasses import dataclass
from typing import Optional

from ragdesk.llm_client import OllamaClient
from ragdesk.rag.chat import ChatPipeline
from ragdesk.rag.chunker import Chunker
from ragdesk.rag.embeddings import OllamaCompletionBackend, OllamaEmbeddingProvider
from ragdesk.rag.ingest import IngestPipeline
from ragdesk.rag.loaders import default_loaders
from ragdesk.rag.models import VectorIndex
from ragdesk.rag.store_faiss import FAISSVectorStore


@dataclass
class Services:
    client: Optional[OllamaClient]
    vector_store: VectorIndex
    ingestion: IngestPipeline
    chat: ChatPipeline


def build_services(client: Optional[OllamaClient] = None) -> Services:
    """Ollama-backed embedder and LLM over the on-disk FAISS store."""
    client = client or OllamaClient()
    embedder = OllamaEmbeddingProvider(client)
    vector_store = FAISSVectorStore()

    return Services(
        client=client,
        vector_store=vector_store,
        ingestion=IngestPipeline(
            embedder=embedder,
            vector_store=vector_store,
            loaders=default_loaders(),
            chunker=Chunker(),
        ),
        chat=ChatPipeline(
            embedder=embedder,
            vector_store=vector_store,
            llm=OllamaCompletionBackend(client),
        ),
    )
