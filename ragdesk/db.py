"""SQLite storage for chunk metadata.

Each row maps a FAISS vector id to the chunk it embeds:
- knowledge base, source and position
- chunk text, tags and content hash

Rows are unique per (knowledge_base, chunk_id); the integer primary key is
used as the FAISS vector id.
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import structlog

from ragdesk.rag.models import Chunk

logger = structlog.get_logger()


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Path) -> None:
    """Create the chunks table and its indexes if they don't exist."""
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                vector_id INTEGER PRIMARY KEY AUTOINCREMENT,
                chunk_id TEXT NOT NULL,
                knowledge_base TEXT NOT NULL,
                source TEXT NOT NULL,
                position INTEGER NOT NULL,
                content TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                tags_json TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(knowledge_base, chunk_id)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_knowledge_base
            ON chunks(knowledge_base)
        """)

        conn.commit()
        logger.debug("database_initialized", db_path=str(db_path))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def replace_chunks(db_path: Path, chunks: Sequence[Chunk]) -> Tuple[List[int], List[int]]:
    """Replace rows sharing a (knowledge_base, chunk_id) key with the given chunks.

    The delete and the insert commit together; on failure neither is applied.

    Returns:
        Tuple of (vector ids removed, vector ids assigned in chunk order)
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()
    created_at = datetime.now(timezone.utc).isoformat()

    try:
        removed: List[int] = []
        for chunk in chunks:
            cursor.execute(
                "SELECT vector_id FROM chunks WHERE knowledge_base = ? AND chunk_id = ?",
                (chunk.knowledge_base, chunk.id),
            )
            removed.extend(row["vector_id"] for row in cursor.fetchall())

        if removed:
            placeholders = ",".join("?" * len(removed))
            cursor.execute(f"DELETE FROM chunks WHERE vector_id IN ({placeholders})", removed)

        vector_ids = []
        for chunk in chunks:
            cursor.execute("""
                INSERT INTO chunks (
                    chunk_id, knowledge_base, source, position,
                    content, content_hash, tags_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chunk.id,
                chunk.knowledge_base,
                chunk.source,
                chunk.position,
                chunk.text,
                chunk.content_hash,
                json.dumps(list(chunk.tags)),
                created_at,
            ))
            vector_ids.append(cursor.lastrowid)

        conn.commit()
        return removed, vector_ids

    except Exception as e:
        conn.rollback()
        logger.error("chunks_replace_failed", error=str(e), count=len(chunks))
        raise
    finally:
        conn.close()


def get_vector_ids_for_knowledge_bases(
    db_path: Path, knowledge_bases: Sequence[str]
) -> List[int]:
    if not knowledge_bases:
        return []

    conn = get_connection(db_path)

    try:
        placeholders = ",".join("?" * len(knowledge_bases))
        rows = conn.execute(
            f"SELECT vector_id FROM chunks WHERE knowledge_base IN ({placeholders})",
            list(knowledge_bases),
        ).fetchall()
        return [row["vector_id"] for row in rows]
    finally:
        conn.close()


def get_chunks_by_vector_ids(db_path: Path, vector_ids: List[int]) -> Dict[int, Chunk]:
    """Retrieve chunks by their FAISS vector ids.

    Returns:
        Mapping of vector id to Chunk (without vector)
    """
    if not vector_ids:
        return {}

    conn = get_connection(db_path)

    try:
        placeholders = ",".join("?" * len(vector_ids))
        rows = conn.execute(f"""
            SELECT
                vector_id, chunk_id, knowledge_base, source, position,
                content, content_hash, tags_json
            FROM chunks
            WHERE vector_id IN ({placeholders})
        """, vector_ids).fetchall()

        return {row["vector_id"]: _row_to_chunk(row) for row in rows}

    except Exception as e:
        logger.error("chunks_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    tags: Any = json.loads(row["tags_json"]) if row["tags_json"] else []
    return Chunk(
        id=row["chunk_id"],
        knowledge_base=row["knowledge_base"],
        source=row["source"],
        position=row["position"],
        text=row["content"],
        content_hash=row["content_hash"],
        tags=tuple(tags),
    )


def count_chunks_by_knowledge_base(db_path: Path) -> Dict[str, int]:
    conn = get_connection(db_path)

    try:
        rows = conn.execute("""
            SELECT knowledge_base, COUNT(*) AS chunk_count
            FROM chunks
            GROUP BY knowledge_base
        """).fetchall()
        return {row["knowledge_base"]: row["chunk_count"] for row in rows}
    finally:
        conn.close()


def delete_knowledge_base(db_path: Path, knowledge_base: str) -> List[int]:
    """Delete every chunk of a knowledge base.

    Returns:
        Vector ids of the deleted rows
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute(
            "SELECT vector_id FROM chunks WHERE knowledge_base = ?", (knowledge_base,)
        )
        vector_ids = [row["vector_id"] for row in cursor.fetchall()]

        cursor.execute("DELETE FROM chunks WHERE knowledge_base = ?", (knowledge_base,))
        conn.commit()

        logger.info(
            "knowledge_base_rows_deleted",
            knowledge_base=knowledge_base,
            count=len(vector_ids),
        )
        return vector_ids

    except Exception as e:
        conn.rollback()
        logger.error("knowledge_base_delete_failed", error=str(e), knowledge_base=knowledge_base)
        raise
    finally:
        conn.close()
