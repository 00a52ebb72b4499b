"""Maintenance commands for the page pipeline.

Usage:
    python -m studyroom.cli blank-report
    python -m studyroom.cli reconvert <document_id>
    python -m studyroom.cli reconvert --all-blank
    python -m studyroom.cli cleanup-jobs --days 7
    python -m studyroom.cli fail-stale --minutes 10
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from .core.config import Settings, get_settings
from .core.database import Database
from .core.errors import PageServiceError
from .core.flags import FeatureFlags, get_flags
from .core.redis import create_publisher
from .core.storage import create_storage
from .factory import configure_logging
from .models.document import Document
from .services.converter import ConversionOrchestrator
from .services.jobs import JobManager
from .services.page_store import PageStats, PageStore
from .services.rasterizer import PageRasterizer

log = logging.getLogger(__name__)


@dataclass
class BlankDocument:
    document_id: str
    title: Optional[str]
    stats: PageStats


def is_blank_document(stats: PageStats, settings: Settings) -> bool:
    """Any page under the page threshold, or the average under the document threshold."""
    if stats.count == 0:
        return False
    return bool(stats.blank_pages) or stats.average_bytes < settings.blank_document_avg_threshold_bytes


async def find_blank_documents(database: Database, settings: Settings) -> list[BlankDocument]:
    found = []
    async with database.session() as session:
        result = await session.execute(
            select(Document).where(Document.processed.is_(True)).order_by(Document.created_at)
        )
        store = PageStore(session, settings.blank_page_threshold_bytes)
        for doc in result.scalars().all():
            stats = await store.page_stats(doc.id)
            if is_blank_document(stats, settings):
                found.append(BlankDocument(doc.id, doc.title, stats))
    return found


async def _average_bytes(database: Database, settings: Settings, document_id: str) -> float:
    async with database.session() as session:
        stats = await PageStore(session, settings.blank_page_threshold_bytes).page_stats(document_id)
    return stats.average_bytes


# ── Commands ─────────────────────────────────────────────────────────

async def cmd_blank_report(database: Database, settings: Settings, args) -> int:
    docs = await find_blank_documents(database, settings)
    if not docs:
        print("No blank documents found.")
        return 0
    print(f"{'document':<38} {'pages':>5} {'avg KB':>8}  blank pages  title")
    for d in docs:
        print(
            f"{d.document_id:<38} {d.stats.count:>5} {d.stats.average_bytes / 1024:>8.1f}  "
            f"{','.join(map(str, d.stats.blank_pages)) or '-':<11}  {d.title or ''}"
        )
    print(f"\n{len(docs)} document(s) look blank.")
    return 0


async def cmd_reconvert(
    database: Database, settings: Settings, orchestrator: ConversionOrchestrator, args
) -> int:
    if args.all_blank:
        targets = [d.document_id for d in await find_blank_documents(database, settings)]
    elif args.document_id:
        targets = [args.document_id]
    else:
        print("Give a document id or --all-blank", file=sys.stderr)
        return 2

    failures = 0
    for document_id in targets:
        before = await _average_bytes(database, settings, document_id)
        try:
            result = await orchestrator.convert(document_id, force=True)
        except PageServiceError as e:
            log.error("Reconversion of %s failed: %s", document_id, e.message)
            failures += 1
            continue
        after = await _average_bytes(database, settings, document_id)
        print(
            f"{document_id}: {result.page_count} pages, avg {before / 1024:.1f} KB → {after / 1024:.1f} KB"
            f" ({result.processing_time_ms} ms)"
        )
    return 1 if failures else 0


async def cmd_cleanup_jobs(database: Database, args) -> int:
    async with database.session() as session:
        removed = await JobManager(session).cleanup_old_jobs(args.days)
    print(f"Removed {removed} job(s) older than {args.days} day(s).")
    return 0


async def cmd_fail_stale(database: Database, args) -> int:
    async with database.session() as session:
        stale = await JobManager(session).fail_stale_jobs(args.minutes * 60)
    for job in stale:
        print(f"Failed stale job {job.id} (document {job.document_id})")
    print(f"{len(stale)} stale job(s) failed.")
    return 0


# ── Entry point ──────────────────────────────────────────────────────

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="jStudyRoom page pipeline maintenance")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("blank-report", help="List converted documents whose pages look blank")

    reconvert = sub.add_parser("reconvert", help="Force reconversion of a document")
    target = reconvert.add_mutually_exclusive_group(required=True)
    target.add_argument("document_id", nargs="?", help="Document to reconvert")
    target.add_argument("--all-blank", action="store_true", help="Reconvert every blank document")

    cleanup = sub.add_parser("cleanup-jobs", help="Delete finished jobs older than N days")
    cleanup.add_argument("--days", type=int, default=7, help="Age in days (default: 7)")

    stale = sub.add_parser("fail-stale", help="Fail jobs stuck in processing")
    stale.add_argument("--minutes", type=int, default=10, help="Age in minutes (default: 10)")

    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: Settings, flags: FeatureFlags) -> int:
    database = Database(settings)
    storage = create_storage(settings, flags)
    publisher = create_publisher(settings, flags)
    try:
        await database.create_all()
        if args.command == "blank-report":
            return await cmd_blank_report(database, settings, args)
        if args.command == "reconvert":
            orchestrator = ConversionOrchestrator(
                database, storage, PageRasterizer.from_settings(settings), publisher, settings
            )
            return await cmd_reconvert(database, settings, orchestrator, args)
        if args.command == "cleanup-jobs":
            return await cmd_cleanup_jobs(database, args)
        if args.command == "fail-stale":
            return await cmd_fail_stale(database, args)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await publisher.close()
        await storage.close()
        await database.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    if args.verbose:
        settings = settings.model_copy(update={"log_level": "debug"})
    configure_logging(settings)
    return asyncio.run(run(args, settings, get_flags()))


if __name__ == "__main__":
    sys.exit(main())
