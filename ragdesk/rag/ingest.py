"""Ingest pipeline for indexing documents into a knowledge base.

Orchestrates:
- Archive extraction into a scoped temporary directory
- File discovery through the registered text loaders
- Concurrent per-file chunking with content-hash deduplication
- Batch embedding generation
- Vector index upsert
"""
import asyncio
import os
import tempfile
import threading
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

import structlog

from ragdesk.rag.chunker import Chunker
from ragdesk.rag.loaders import default_loaders, find_loader
from ragdesk.rag.models import (
    Chunk,
    EmbeddingBackend,
    IngestionRequest,
    IngestionResult,
    InvalidInputError,
    TextLoader,
    VectorIndex,
    normalize_labels,
)

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Path], None]


class ChunkCollector:
    """Thread-safe first-writer-wins accumulator keyed by content hash."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hashes = set()
        self._chunks: List[Chunk] = []

    def add(self, chunk: Chunk) -> bool:
        """Keep the chunk unless its content hash was already seen."""
        with self._lock:
            if chunk.content_hash in self._hashes:
                return False
            self._hashes.add(chunk.content_hash)
            self._chunks.append(chunk)
            return True

    def ordered(self) -> List[Chunk]:
        """Chunks sorted by (source, case-insensitive) then position."""
        with self._lock:
            return sorted(self._chunks, key=lambda c: (c.source.lower(), c.position))

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)


def _safe_extract(archive_path: Path, destination: Path) -> None:
    """Extract a zip archive, rejecting corrupt archives and members that escape the destination."""
    root = destination.resolve()
    try:
        archive = zipfile.ZipFile(archive_path)
    except zipfile.BadZipFile as e:
        raise InvalidInputError(f"Not a valid zip archive: {archive_path.name}") from e

    with archive:
        for member in archive.namelist():
            target = (destination / member).resolve()
            if target != root and root not in target.parents:
                raise InvalidInputError(f"Archive member escapes extraction directory: {member}")
        archive.extractall(destination)


@contextmanager
def _scratch_dir() -> Iterator[Path]:
    with tempfile.TemporaryDirectory(prefix="rag-ingest-") as tmp:
        logger.debug("ingest_temp_dir_created", path=tmp)
        yield Path(tmp)
    logger.debug("ingest_temp_dir_removed", path=tmp)


def is_archive(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() == ".zip"


class IngestPipeline:
    """Pipeline for ingesting a directory or zip archive into a knowledge base."""

    def __init__(
        self,
        embedder: EmbeddingBackend,
        vector_store: VectorIndex,
        loaders: Optional[Sequence[TextLoader]] = None,
        chunker: Optional[Chunker] = None,
        max_workers: Optional[int] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedder: Embedding backend
            vector_store: Vector index receiving the chunks
            loaders: Registered text loaders, first match wins (default: txt + md)
            chunker: Chunker with the configured default size/overlap
            max_workers: Concurrent file tasks (default: host CPU count)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.loaders = list(loaders) if loaders is not None else default_loaders()
        self.chunker = chunker or Chunker()
        self.max_workers = max_workers or os.cpu_count() or 1

        logger.info(
            "ingest_pipeline_initialized",
            loaders=[type(loader).__name__ for loader in self.loaders],
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            max_workers=self.max_workers,
        )

    def discover_files(self, source: Path) -> List[Path]:
        """Files under source supported by a loader, in lexicographic order.

        Raises:
            FileNotFoundError: If the source directory doesn't exist
        """
        if not source.is_dir():
            raise FileNotFoundError(f"Source directory '{source}' was not found.")

        files = sorted(
            (
                path
                for path in source.rglob("*")
                if path.is_file() and find_loader(self.loaders, path.suffix) is not None
            ),
            key=str,
        )

        logger.info("files_discovered", count=len(files), source=str(source))
        return files

    def _collect(
        self,
        request: IngestionRequest,
        source_label: str,
        text: str,
        tags: List[str],
        collector: ChunkCollector,
    ) -> int:
        kept = 0
        for chunk in self.chunker.chunk(
            request.knowledge_base,
            source_label,
            text,
            tags=tags,
            chunk_size=request.chunk_size,
            chunk_overlap=request.chunk_overlap,
        ):
            if collector.add(chunk):
                kept += 1
        return kept

    async def _process_files(
        self,
        request: IngestionRequest,
        root: Path,
        files: List[Path],
        tags: List[str],
        progress_callback: Optional[ProgressCallback],
    ) -> ChunkCollector:
        collector = ChunkCollector()
        semaphore = asyncio.Semaphore(self.max_workers)
        completed = 0

        async def process(path: Path) -> None:
            nonlocal completed
            async with semaphore:
                loader = find_loader(self.loaders, path.suffix)
                text = await loader.load(path)
                source_label = path.relative_to(root).as_posix()
                kept = await asyncio.to_thread(
                    self._collect, request, source_label, text, tags, collector
                )

            completed += 1
            logger.debug("file_chunked", path=source_label, chunks_kept=kept)
            if progress_callback:
                progress_callback(completed, len(files), path)

        tasks = [asyncio.ensure_future(process(path)) for path in files]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return collector

    async def _ingest_directory(
        self,
        request: IngestionRequest,
        root: Path,
        progress_callback: Optional[ProgressCallback],
    ) -> IngestionResult:
        tags = normalize_labels(request.tags)
        files = self.discover_files(root)

        if not files:
            logger.warning("no_supported_files_found", source=str(root))
            return IngestionResult(files_processed=0, chunks_created=0)

        collector = await self._process_files(request, root, files, tags, progress_callback)
        chunks = collector.ordered()

        if not chunks:
            logger.warning("no_chunks_created", files=len(files))
            return IngestionResult(files_processed=len(files), chunks_created=0)

        vectors = await self.embedder.embed_batch([c.text for c in chunks])
        if len(vectors) != len(chunks):
            raise RuntimeError(
                f"Embedding count mismatch: {len(vectors)} vectors for {len(chunks)} chunks"
            )

        for chunk, vector in zip(chunks, vectors):
            chunk.vector = vector

        dimension = self.embedder.dimension or len(vectors[0])
        await self.vector_store.ensure_collection(dimension)
        await self.vector_store.upsert(chunks)

        logger.info(
            "ingest_completed",
            knowledge_base=request.knowledge_base,
            files=len(files),
            dimension=dimension,
            **self.chunker.stats(chunks),
        )
        return IngestionResult(files_processed=len(files), chunks_created=len(chunks))

    async def ingest(
        self,
        request: IngestionRequest,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """Ingest a directory or zip archive into a knowledge base.

        Args:
            request: What to ingest and where
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Files processed and chunks created (after deduplication)

        Raises:
            InvalidInputError: If the knowledge base id or source path is blank, or the archive is corrupt or unsafe
            FileNotFoundError: If the source directory doesn't exist
            RuntimeError: If the embedding backend returns the wrong number of vectors
        """
        if not request.knowledge_base or not request.knowledge_base.strip():
            raise InvalidInputError("Knowledge base id is required")
        if not request.source_path or not request.source_path.strip():
            raise InvalidInputError("Source path is required")

        source = Path(request.source_path)
        logger.info(
            "ingest_started",
            knowledge_base=request.knowledge_base,
            source=str(source),
        )

        try:
            if is_archive(source):
                with _scratch_dir() as scratch:
                    await asyncio.to_thread(_safe_extract, source, scratch)
                    return await self._ingest_directory(request, scratch, progress_callback)
            return await self._ingest_directory(request, source, progress_callback)

        except asyncio.CancelledError:
            logger.info("ingest_cancelled", knowledge_base=request.knowledge_base)
            raise
        except Exception as e:
            logger.error(
                "ingest_failed",
                knowledge_base=request.knowledge_base,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
