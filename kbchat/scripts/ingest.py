"""
kbchat - Knowledge Ingestion Script
====================================
CLI entry point that:
    1. Fails fast when ``GOOGLE_API_KEY`` is missing.
    2. Optionally uploads local files as new knowledge items.
    3. Optionally deletes the chatbot's existing chunk rows first.
    4. Runs the ``IngestionPipeline`` for the chatbot.
    5. Prints an execution summary with a timing breakdown.

Usage:
    python -m kbchat.scripts.ingest BOT_ID                       # pending items only
    python -m kbchat.scripts.ingest BOT_ID --files a.pdf b.docx  # upload, then ingest those
    python -m kbchat.scripts.ingest BOT_ID --reset               # drop chunks, re-ingest pending
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path

from kbchat.config.settings import settings
from kbchat.src.core.errors import KBChatError
from kbchat.src.core.ingestor import IngestionReport
from kbchat.src.core.models import IngestItem
from kbchat.src.utils.logger import get_logger
from kbchat.src.utils.text_utils import SUPPORTED_EXTENSIONS, content_type_for, read_file

logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kbchat-ingest", description="kbchat — chunk, embed and store a chatbot's knowledge.")
    parser.add_argument("chatbot_id", help="Chatbot whose knowledge items are ingested.")
    parser.add_argument("--files", nargs="+", type=Path, default=[], help=f"Upload these files first ({', '.join(sorted(SUPPORTED_EXTENSIONS))}).")
    parser.add_argument("--user-id", default=None, help="Attribute training usage to this user (default: chatbot owner).")
    parser.add_argument("--reset", action="store_true", default=False, help="Delete the chatbot's existing chunk rows before ingesting.")
    return parser.parse_args(argv)


def load_uploads(paths: list[Path]) -> list[IngestItem]:
    """Read *paths* into ``IngestItem``s; unreadable files are logged and skipped."""
    uploads: list[IngestItem] = []
    for path in paths:
        try:
            text = read_file(path)
        except (OSError, ValueError) as exc:
            logger.error("Skipping %s: %s", path, exc)
            continue
        uploads.append(IngestItem(content=text, content_type=content_type_for(path), filename=path.name))
    return uploads


async def _run(args: argparse.Namespace) -> IngestionReport:
    from kbchat.src.services import build_services

    t_startup = time.perf_counter()
    services = build_services()
    startup_ms = (time.perf_counter() - t_startup) * 1000
    logger.info("Services initialised in %.1fms", startup_ms)

    if args.reset:
        removed = await services.chunk_store.delete_chatbot(args.chatbot_id)
        logger.warning("--reset: removed %d chunk row(s) of chatbot %s.", removed, args.chatbot_id)

    if args.files:
        uploads = load_uploads(args.files)
        return await services.ingestion.add_and_ingest(args.chatbot_id, uploads, user_id=args.user_id)
    return await services.ingestion.run_for_chatbot(args.chatbot_id, user_id=args.user_id)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if settings.GOOGLE_API_KEY is None:
        print("\n[FATAL] GOOGLE_API_KEY is not set — check your .env file.\n")
        return 1

    _print_header(args)
    t_start = time.perf_counter()
    try:
        report = asyncio.run(_run(args))
    except KBChatError as exc:
        logger.error("Ingestion aborted: %s", exc)
        return 1

    _print_footer(report, time.perf_counter() - t_start)
    return 0 if report.items_failed == 0 else 2


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(args: argparse.Namespace) -> None:
    print()
    print("=" * 60)
    print("  KBCHAT — Knowledge Ingestion")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")
    print(f"  Chatbot      : {args.chatbot_id}")
    print(f"  Embedding    : {settings.EMBEDDING_MODEL} ({settings.EMBEDDING_DIMENSIONS} dims)")
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")
    print(f"  Chunking     : {settings.CHUNK_MAX_LENGTH} chars, overlap {settings.CHUNK_OVERLAP}")
    print(f"  Uploads      : {len(args.files)} file(s)")
    print("=" * 60)
    print()


def _print_footer(report: IngestionReport, elapsed: float) -> None:
    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Items total          : {report.items_total}")
    print(f"  Items processed      : {report.items_processed}")
    print(f"  Items degraded       : {report.items_degraded}")
    print(f"  Items failed         : {report.items_failed}")
    print(f"  Chunks stored        : {report.chunks_created}")
    print(f"  Embeddings created   : {report.embeddings_created}")
    print(f"  Tokens used          : {report.tokens_used}")
    for item_id, error in report.errors.items():
        print(f"    ✗ {item_id}: {error}")
    print("-" * 60)
    print(f"  Pipeline time        : {report.elapsed_seconds:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
