"""Text loaders for files discovered during ingestion.

Handles:
- Plain text files
- Markdown files with optional YAML frontmatter (stripped before chunking)
"""
import asyncio
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
import yaml

from ragdesk.rag.models import TextLoader

logger = structlog.get_logger()


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        logger.error("text_encoding_error", path=str(path), error=str(e))
        raise


class PlainTextLoader:
    """Loader for .txt files."""

    extensions = frozenset({".txt"})

    def supports(self, extension: str) -> bool:
        return (extension or "").lower() in self.extensions

    async def load(self, path: Path) -> str:
        return await asyncio.to_thread(_read_text, Path(path))


class MarkdownLoader:
    """Loader for markdown documents with frontmatter support."""

    extensions = frozenset({".md", ".markdown"})

    # YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    def supports(self, extension: str) -> bool:
        return (extension or "").lower() in self.extensions

    async def load(self, path: Path) -> str:
        path = Path(path)
        content = await asyncio.to_thread(_read_text, path)
        frontmatter, body = self.parse_frontmatter(content)

        logger.debug(
            "markdown_loaded",
            path=str(path),
            has_frontmatter=bool(frontmatter),
            content_length=len(body),
        )
        return body

    def parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Args:
            content: Full markdown content

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        try:
            frontmatter = yaml.safe_load(match.group(1))
        except yaml.YAMLError as e:
            # Not valid YAML: treat the block as regular content
            logger.warning("markdown_frontmatter_invalid", error=str(e))
            return {}, content

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]


def default_loaders() -> List[TextLoader]:
    return [PlainTextLoader(), MarkdownLoader()]


def find_loader(loaders: Iterable[TextLoader], extension: str) -> Optional[TextLoader]:
    """First registered loader supporting the extension, if any."""
    for loader in loaders:
        if loader.supports(extension):
            return loader
    return None
