"""Prompt composition and citation building for grounded answers."""
from typing import Iterable, List, Optional

from ragdesk.rag.models import Citation, InvalidInputError, Message, SearchResult

SYSTEM_PROMPT = (
    "You are a rigorous assistant. Use only the information in the supplied "
    "passages. If you do not know the answer, say that you do not know."
)

SNIPPET_MAX_CHARS = 240
ELLIPSIS = "…"


def _present(results: Optional[Iterable[Optional[SearchResult]]]) -> List[SearchResult]:
    return [r for r in (results or ()) if r is not None and r.chunk is not None]


def build_context(results: Optional[Iterable[Optional[SearchResult]]]) -> str:
    """Render search results as a context block, most relevant first.

    Ties keep their original order.
    """
    ordered = sorted(_present(results), key=lambda r: r.score, reverse=True)
    if not ordered:
        return ""

    parts = []
    for result in ordered:
        chunk = result.chunk
        parts.append(
            f"[{chunk.knowledge_base}|{chunk.source}|{chunk.position}|score:{result.score:.2f}]\n"
            f"{chunk.text.strip()}\n"
        )

    return "\n".join(parts).rstrip()


def compose_messages(
    query: str, results: Optional[Iterable[Optional[SearchResult]]]
) -> List[Message]:
    """Build the message sequence sent to the completion backend.

    Args:
        query: User question
        results: Search results to ground the answer on

    Returns:
        System instruction, optional context message, and the user query

    Raises:
        InvalidInputError: If the query is blank
    """
    if not query or not query.strip():
        raise InvalidInputError("Query is required")

    messages: List[Message] = [("system", SYSTEM_PROMPT)]

    context = build_context(results)
    if context:
        messages.append(("system", f"Context:\n{context}"))

    messages.append(("user", query.strip()))
    return messages


def extract_snippet(text: Optional[str]) -> str:
    if not text or not text.strip():
        return ""

    normalized = text.replace("\r", "").replace("\n", " ").strip()
    if len(normalized) <= SNIPPET_MAX_CHARS:
        return normalized
    return normalized[:SNIPPET_MAX_CHARS] + ELLIPSIS


def build_citations(
    results: Optional[Iterable[Optional[SearchResult]]],
) -> List[Citation]:
    """Citations in search-result order, one per result."""
    return [
        Citation(
            knowledge_base=r.chunk.knowledge_base,
            source=r.chunk.source,
            position=r.chunk.position,
            score=r.score,
            snippet=extract_snippet(r.chunk.text),
        )
        for r in _present(results)
    ]
