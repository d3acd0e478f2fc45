"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Sentence-aware chunking with content-hash ids
- Text loaders for discovered files
- Ingestion with deduplication and batch embedding
- FAISS vector storage scoped by knowledge base
- Retrieval, prompt composition and answer generation
"""
