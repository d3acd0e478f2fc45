"""FAISS vector store for knowledge-base scoped semantic search.

Handles:
- Collection (index) creation with a fixed dimension
- Upsert of chunk vectors keyed by (knowledge base, chunk id)
- Cosine-similarity search filtered to a set of knowledge bases
- Knowledge-base listing and deletion
- Persistence of the index next to its SQLite metadata
"""
import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from ragdesk import config, db
from ragdesk.rag.models import Chunk, InvalidInputError, SearchResult

logger = structlog.get_logger()


def _normalized(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """L2-normalize rows so inner product equals cosine similarity."""
    try:
        array = np.array(vectors, dtype=np.float32)
    except ValueError as e:
        raise RuntimeError(f"Vectors have inconsistent dimensions: {e}") from e
    if array.ndim != 2 or array.shape[1] == 0:
        raise RuntimeError("Vectors must be a non-empty 2D array")
    faiss.normalize_L2(array)
    return array


class FAISSVectorStore:
    """FAISS IndexIDMap over inner product with SQLite chunk metadata."""

    def __init__(
        self,
        index_path: Path = None,
        db_path: Path = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            index_path: File holding the serialized FAISS index (default from config)
            db_path: SQLite metadata database (default from config)
        """
        self.index_path = Path(index_path or config.VECTOR_INDEX_PATH)
        self.db_path = Path(db_path or config.DB_PATH)

        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None
        self._loaded = False
        self._lock = asyncio.Lock()

        logger.info(
            "faiss_store_initialized",
            index_path=str(self.index_path),
            db_path=str(self.db_path),
        )

    def _load(self) -> None:
        """Load the persisted index once, if it exists."""
        if self._loaded:
            return

        db.init_database(self.db_path)

        if self.index_path.exists():
            try:
                self.index = faiss.read_index(str(self.index_path))
            except Exception as e:
                raise RuntimeError(f"Failed to load FAISS index: {e}") from e
            self.dimension = self.index.d
            logger.info(
                "faiss_index_loaded",
                dimension=self.dimension,
                vector_count=self.index.ntotal,
            )

        self._loaded = True

    def _save(self) -> None:
        if self.index is None:
            return

        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            faiss.write_index(self.index, str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to save FAISS index: {e}") from e

        logger.debug(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=self.index.ntotal,
        )

    def _create_index(self, dimension: int) -> None:
        self.index = faiss.IndexIDMap(faiss.IndexFlatIP(dimension))
        self.dimension = dimension
        logger.info("faiss_index_initialized", dimension=dimension, index_type="IndexFlatIP")

    def _ensure_collection(self, dimension: int) -> None:
        if dimension <= 0:
            raise RuntimeError(f"Vector dimension must be positive, got {dimension}")

        self._load()

        if self.index is None:
            self._create_index(dimension)
            self._save()
        elif self.dimension != dimension:
            raise RuntimeError(
                f"Dimension mismatch: index has dim={self.dimension}, "
                f"got dim={dimension}. Delete the index to rebuild it."
            )

    async def ensure_collection(self, dimension: int) -> None:
        """Create the index with the given dimension; no-op if it exists.

        Raises:
            RuntimeError: If the dimension is not positive or differs from the existing index
        """
        async with self._lock:
            self._ensure_collection(dimension)

    async def upsert(self, chunks: Sequence[Chunk]) -> None:
        """Insert chunks with vectors, replacing existing (knowledge base, id) entries.

        Raises:
            RuntimeError: If a chunk has no vector or vector dimensions don't match the index
        """
        # Last occurrence wins within a single call
        by_key: Dict[tuple, Chunk] = {}
        for chunk in chunks:
            if not chunk.vector:
                raise RuntimeError(f"Chunk {chunk.id} is missing embedding vector.")
            by_key[(chunk.knowledge_base, chunk.id)] = chunk

        if not by_key:
            return

        pending = list(by_key.values())
        vectors = _normalized([c.vector for c in pending])

        async with self._lock:
            self._ensure_collection(vectors.shape[1])

            replaced, vector_ids = db.replace_chunks(self.db_path, pending)
            if replaced:
                self.index.remove_ids(np.array(replaced, dtype=np.int64))

            self.index.add_with_ids(vectors, np.array(vector_ids, dtype=np.int64))
            self._save()

        logger.info(
            "vectors_upserted",
            count=len(pending),
            replaced=len(replaced),
            **self.get_stats(),
        )

    async def search(
        self,
        knowledge_bases: Sequence[str],
        vector: Sequence[float],
        top_k: int,
    ) -> List[SearchResult]:
        """Search the vectors of any of the given knowledge bases.

        Returns:
            Results ordered by cosine similarity, best first

        Raises:
            InvalidInputError: If no knowledge base is given
            RuntimeError: If the query dimension doesn't match the index
        """
        if not knowledge_bases:
            raise InvalidInputError("At least one knowledge base must be supplied.")

        async with self._lock:
            self._load()

            if self.index is None or self.index.ntotal == 0 or top_k <= 0:
                return []

            query = _normalized([vector])
            if query.shape[1] != self.dimension:
                raise RuntimeError(
                    f"Query dimension mismatch: expected {self.dimension}, "
                    f"got {query.shape[1]}"
                )

            allowed = np.array(
                db.get_vector_ids_for_knowledge_bases(self.db_path, list(knowledge_bases)),
                dtype=np.int64,
            )
            if allowed.size == 0:
                return []

            selector = faiss.IDSelectorBatch(allowed.size, faiss.swig_ptr(allowed))
            params = faiss.SearchParameters()
            params.sel = selector

            k = min(top_k, int(allowed.size))
            scores, ids = self.index.search(query, k, params=params)

            hits = [
                (int(vector_id), float(score))
                for vector_id, score in zip(ids[0], scores[0])
                if vector_id != -1
            ]
            chunks = db.get_chunks_by_vector_ids(self.db_path, [vid for vid, _ in hits])

        results = [
            SearchResult(chunk=chunks[vector_id], score=score)
            for vector_id, score in hits
            if vector_id in chunks
        ]

        logger.info(
            "vector_search_completed",
            knowledge_bases=list(knowledge_bases),
            top_k=top_k,
            results_found=len(results),
        )
        return results

    async def list_knowledge_bases(self) -> Dict[str, int]:
        async with self._lock:
            self._load()
            return db.count_chunks_by_knowledge_base(self.db_path)

    async def delete_knowledge_base(self, knowledge_base: str) -> None:
        """Remove every chunk of a knowledge base from the index and metadata.

        Raises:
            InvalidInputError: If the id is blank
        """
        if not knowledge_base or not knowledge_base.strip():
            raise InvalidInputError("Knowledge base id is required.")

        async with self._lock:
            self._load()
            vector_ids = db.delete_knowledge_base(self.db_path, knowledge_base)
            if vector_ids and self.index is not None:
                self.index.remove_ids(np.array(vector_ids, dtype=np.int64))
                self._save()

        logger.info(
            "knowledge_base_deleted",
            knowledge_base=knowledge_base,
            vectors_removed=len(vector_ids),
        )

    def get_stats(self) -> Dict[str, object]:
        """Get statistics about the vector store."""
        if self.index is None:
            return {"initialized": False, "vector_count": 0, "dimension": None}

        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "index_exists_on_disk": self.index_path.exists(),
        }
