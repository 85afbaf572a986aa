#!/usr/bin/env python
"""Reprocess a tenant's documents after a chunking or embedding model change.

Usage:
    python scripts/reindex.py --tenant acme              # Reprocess completed and failed documents
    python scripts/reindex.py --tenant acme --failed     # Only retry failed documents
    python scripts/reindex.py --all-tenants --reap-stale # Fail documents stuck in processing
"""
import argparse
import asyncio
import sys
from pathlib import Path
from datetime import datetime
from typing import List

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinrag import config
from clinrag.db import Document, DocumentStatus
from clinrag.errors import RAGError
from clinrag.service import KnowledgeBase
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document: Document):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        name = document.original_file_name
        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print(f"  Reprocessing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents processed:  {stats['documents_processed']}")
        print(f"  ❌ Documents failed:     {stats['documents_failed']}")
        print(f"  📝 Chunks created:       {stats['chunks_created']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["documents_failed"] > 0:
            print(f"⚠️  Warning: {stats['documents_failed']} document(s) failed to reprocess.")
            print(f"   Check logs for details.\n")


async def collect_documents(
    kb: KnowledgeBase, tenant_id: str, statuses: List[DocumentStatus]
) -> List[Document]:
    """Every document of the tenant in one of ``statuses``, across all pages."""
    documents = []
    for status in statuses:
        page = 1
        while True:
            result = await kb.store.list_documents(
                tenant_id, status=status, page=page, page_size=100, include_global=False
            )
            documents.extend(result.items)
            if page >= result.pages:
                break
            page += 1
    return documents


async def reprocess_tenant(
    kb: KnowledgeBase, tenant_id: str, failed_only: bool, progress: ProgressReporter
) -> dict:
    statuses = [DocumentStatus.ERROR]
    if not failed_only:
        statuses.insert(0, DocumentStatus.COMPLETED)

    documents = await collect_documents(kb, tenant_id, statuses)
    stats = {"documents_processed": 0, "documents_failed": 0, "chunks_created": 0}

    for i, document in enumerate(documents, 1):
        progress.update(i, len(documents), document)
        try:
            completed = await kb.reprocess_document(document.id, tenant_id)
        except RAGError as e:
            stats["documents_failed"] += 1
            logger.error(
                "document_reprocess_failed",
                document_id=document.id,
                tenant_id=tenant_id,
                kind=e.kind,
                error=e.message,
            )
            continue

        stats["documents_processed"] += 1
        stats["chunks_created"] += completed.processing.total_chunks or 0

    return stats


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Reprocess documents in the RAG knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py --tenant acme
  python scripts/reindex.py --tenant acme --failed
  python scripts/reindex.py --all-tenants --reap-stale
        """,
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", help="Tenant whose documents to reprocess")
    target.add_argument(
        "--all-tenants",
        action="store_true",
        help="Run for every tenant that owns documents",
    )

    parser.add_argument(
        "--failed",
        action="store_true",
        help="Only retry documents in error status",
    )

    parser.add_argument(
        "--reap-stale",
        action="store_true",
        help=(
            "Only fail documents stuck in processing for more than "
            f"{config.STALE_PROCESSING_SECONDS:g}s"
        ),
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()
    progress = ProgressReporter(verbose=args.verbose)

    try:
        print("\n📋 Configuration:")
        print(f"   Database:         {config.DB_PATH}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars (tenant settings override)")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")

        async with KnowledgeBase.from_config() as kb:
            tenants = await kb.store.tenant_ids() if args.all_tenants else [args.tenant]

            if args.reap_stale:
                for tenant_id in tenants:
                    reaped = await kb.pipeline.reap_stale_documents(tenant_id)
                    print(f"   {tenant_id}: {len(reaped)} stale document(s) marked as error")
                return

            progress.start("Reprocessing Documents")
            totals = {"documents_processed": 0, "documents_failed": 0, "chunks_created": 0}
            for tenant_id in tenants:
                stats = await reprocess_tenant(kb, tenant_id, args.failed, progress)
                for key, value in stats.items():
                    totals[key] += value

        progress.finish(totals)

        if totals["documents_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Reprocessing cancelled by user.\n")
        sys.exit(1)

    except RAGError as e:
        print(f"\n❌ Error: {e.message}\n")
        logger.error("reindex_script_failed", kind=e.kind, error=e.message)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
