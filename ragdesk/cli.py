"""Command-line interface for managing knowledge bases.

Usage:
    ragdesk ingest --rag docs --path ./notes            # Ingest a directory
    ragdesk ingest --rag docs --path notes.zip --tags a,b
    ragdesk list                                         # Knowledge bases and chunk counts
    ragdesk delete --rag docs                            # Remove a knowledge base
    ragdesk chat --rag docs --query "What is X?" --stream
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from ragdesk import config
from ragdesk.logging_setup import configure_logging
from ragdesk.rag.models import IngestionRequest, InvalidInputError
from ragdesk.services import Services, build_services

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False, stream=None):
        self.verbose = verbose
        self.stream = stream or sys.stdout
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n  {message}\n", file=self.stream)

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "#" * filled + "-" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="\n" if self.verbose else "",
            flush=True,
            file=self.stream,
        )

    def finish(self, files_processed: int, chunks_created: int):
        elapsed = (datetime.now() - self.start_time).total_seconds()
        print("\n", file=self.stream)
        print(f"  Files processed: {files_processed}", file=self.stream)
        print(f"  Chunks created:  {chunks_created}", file=self.stream)
        print(f"  Time elapsed:    {elapsed:.1f}s\n", file=self.stream)


def _split_tags(raw: Optional[str]) -> tuple:
    if not raw:
        return ()
    return tuple(t.strip() for t in raw.split(",") if t.strip())


async def run_ingest(services: Services, args: argparse.Namespace) -> int:
    progress = ProgressReporter(verbose=args.verbose)

    print("\nConfiguration:")
    print(f"   Knowledge base:   {args.rag}")
    print(f"   Source:           {args.path}")
    print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
    print(f"   Chunk size:       {args.chunk or config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:    {config.CHUNK_OVERLAP if args.overlap is None else args.overlap} chars")

    progress.start(f"Ingesting into '{args.rag}'")
    result = await services.ingestion.ingest(
        IngestionRequest(
            knowledge_base=args.rag,
            source_path=args.path,
            chunk_size=args.chunk,
            chunk_overlap=args.overlap,
            tags=_split_tags(args.tags),
        ),
        progress_callback=progress.update,
    )
    progress.finish(result.files_processed, result.chunks_created)
    return EXIT_OK


async def run_list(services: Services, args: argparse.Namespace) -> int:
    counts = await services.vector_store.list_knowledge_bases()
    if not counts:
        print("No knowledge bases found.")
        return EXIT_OK

    print("Knowledge bases:")
    for rag_id, count in sorted(counts.items(), key=lambda item: item[0].lower()):
        print(f" - {rag_id} ({count} chunks)")
    return EXIT_OK


async def run_delete(services: Services, args: argparse.Namespace) -> int:
    await services.vector_store.delete_knowledge_base(args.rag)
    print(f"Knowledge base '{args.rag}' deleted.")
    return EXIT_OK


async def run_chat(services: Services, args: argparse.Namespace) -> int:
    if args.stream:
        stream = await services.chat.stream(args.rag, args.query, args.top_k, args.temperature)
        try:
            async for token in stream:
                print(token, end="", flush=True)
        finally:
            await stream.aclose()
        print()
        citations = stream.citations
    else:
        answer = await services.chat.answer(args.rag, args.query, args.top_k, args.temperature)
        print(answer.response)
        citations = answer.citations

    if citations:
        print("\nSources:")
        for c in citations:
            print(f" - [{c.knowledge_base}] {c.source}#{c.position} (score {c.score:.2f})")
    return EXIT_OK


COMMANDS = {
    "ingest": run_ingest,
    "list": run_list,
    "delete": run_delete,
    "chat": run_chat,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ragdesk",
        description="Build and query retrieval knowledge bases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--log-level", default=None, help=f"Log level (default: {config.LOG_LEVEL})")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Ingest a directory or zip archive")
    ingest.add_argument("--rag", required=True, help="Knowledge base id")
    ingest.add_argument("--path", required=True, help="Directory or .zip archive")
    ingest.add_argument("--chunk", type=int, default=None, help="Chunk size in characters")
    ingest.add_argument("--overlap", type=int, default=None, help="Chunk overlap in characters")
    ingest.add_argument("--tags", default=None, help="Comma-separated tags")
    ingest.add_argument("--verbose", "-v", action="store_true", help="Show one line per file")

    subparsers.add_parser("list", help="List knowledge bases")

    delete = subparsers.add_parser("delete", help="Delete a knowledge base")
    delete.add_argument("--rag", required=True, help="Knowledge base id")

    chat = subparsers.add_parser("chat", help="Ask a question")
    chat.add_argument("--rag", required=True, action="append", help="Knowledge base id (repeatable)")
    chat.add_argument("--query", required=True, help="Question to answer")
    chat.add_argument("--top-k", type=int, default=None, help="Number of passages to retrieve")
    chat.add_argument("--temperature", type=float, default=None, help="Sampling temperature")
    chat.add_argument("--stream", action="store_true", help="Stream tokens as they arrive")

    return parser


def main(argv: Optional[List[str]] = None, services: Optional[Services] = None) -> int:
    """Main entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_output=False)

    try:
        services = services or build_services()
        return asyncio.run(COMMANDS[args.command](services, args))

    except KeyboardInterrupt:
        print("\nOperation cancelled.")
        return EXIT_CANCELLED

    except (InvalidInputError, FileNotFoundError) as e:
        print(f"\nError: {e}\n", file=sys.stderr)
        return EXIT_ERROR

    except Exception as e:
        print(f"\nError: {e}\n", file=sys.stderr)
        logger.error("cli_command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
