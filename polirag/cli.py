"""Command line interface for indexing and searching course material.

Usage:
    polirag sync                    # Full rebuild from the scraped data directory
    polirag query "exam dates"      # Semantic search over the index
    polirag query "exam" --context  # Print the formatted prompt context instead
    polirag stats                   # Show index statistics
    polirag reembed                 # Re-embed the snapshot with the configured model
"""
import argparse
import asyncio
import dataclasses
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from polirag import config
from polirag.config import RagSettings
from polirag.credentials import EnvCredentialProvider
from polirag.exceptions import PoliragError
from polirag.log import configure_logging
from polirag.rag.chunker import TextChunker
from polirag.rag.embedder import create_embedder
from polirag.rag.reembed import reembed_snapshot
from polirag.rag.retriever import Retriever
from polirag.rag.sources import DirectorySource
from polirag.rag.store import create_store, read_snapshot
from polirag.rag.sync import SyncEvent, SyncOrchestrator, SyncSummary

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time: Optional[datetime] = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, label: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "#" * filled + "-" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {label[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def event(self, event: SyncEvent):
        if event.kind == "state":
            print(f"\n  > {event.state.value}")
        elif event.kind == "progress":
            self.update(event.current, event.total, event.message)
        elif event.kind == "warning":
            print(f"\n  ! {event.message}")

    def finish(self, summary: SyncSummary):
        print("\n")
        elapsed = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Sync Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Subjects:           {summary.subjects_total}")
        print(f"  Subjects failed:    {summary.subjects_failed}")
        print(f"  Documents indexed:  {summary.documents_indexed}")
        print(f"  Documents failed:   {summary.documents_failed}")
        print(f"  Records indexed:    {summary.records_indexed}")
        print(f"  Time elapsed:       {elapsed:.1f}s")

        if summary.records_indexed > 0 and elapsed > 0:
            rate = summary.records_indexed / elapsed
            print(f"  Indexing rate:      {rate:.1f} records/sec")

        print(f"\n{'=' * 60}\n")

        if summary.partial_failures:
            print(f"Warning: {summary.partial_failures} source(s) were skipped.")
            print("   Check logs for details.\n")


def _settings_from_args(args: argparse.Namespace) -> RagSettings:
    settings = RagSettings.from_env()
    overrides = {}
    if getattr(args, "data_dir", None) is not None:
        overrides["scraped_data_dir"] = args.data_dir
    if getattr(args, "snapshot", None) is not None:
        overrides["snapshot_path"] = args.snapshot
    if getattr(args, "store", None) is not None:
        overrides["store_backend"] = args.store
    return dataclasses.replace(settings, **overrides) if overrides else settings


async def cmd_sync(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    progress = ProgressReporter(verbose=args.verbose)

    print("\nConfiguration:")
    print(f"   Data directory:   {settings.scraped_data_dir}")
    print(f"   Snapshot:         {settings.snapshot_path}")
    print(f"   Embedding model:  {settings.embedding_model} ({settings.embedding_backend})")
    print(f"   Store backend:    {settings.store_backend}")
    print(f"   Chunk size:       {settings.chunk_size} words")
    print(f"   Chunk overlap:    {settings.chunk_overlap} words")

    chunker = TextChunker(settings.chunk_size, settings.chunk_overlap)
    embedder = create_embedder(settings)
    store = create_store(settings, embedder.model_id)
    orchestrator = SyncOrchestrator(
        source=DirectorySource(settings.scraped_data_dir),
        store=store,
        embedder=embedder,
        chunker=chunker,
        credentials=EnvCredentialProvider(),
    )

    progress.start("Syncing course material")
    task = orchestrator.start_sync()

    try:
        while True:
            event = await orchestrator.events.get()
            progress.event(event)
            if event.kind in ("completed", "failed"):
                break
    except asyncio.CancelledError:
        orchestrator.cancel_sync()
        raise
    finally:
        await task
        await embedder.close()

    summary = orchestrator.last_summary
    if summary is None or summary.error is not None:
        print(f"\nError: sync failed: {summary.error if summary else 'unknown'}\n")
        return 1

    progress.finish(summary)
    print(f"Index ready at: {settings.snapshot_path}\n")
    return 0


async def cmd_query(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    embedder = create_embedder(settings)

    async with embedder:
        store = create_store(settings, embedder.model_id)
        if not store.load_or_init(expected_dimension=embedder.dimension):
            print("\nNo index found. Run `polirag sync` first.\n")
            return 1

        retriever = Retriever(
            embedder, store, top_k=settings.top_k, min_score=settings.min_score
        )

        if args.context:
            context = await retriever.retrieve_context(
                args.text, k=args.k, max_chars=settings.max_context_chars
            )
            print(context or "No relevant context found.")
            return 0

        snippets = await retriever.retrieve(args.text, k=args.k)

    if not snippets:
        print("\nNo results.\n")
        return 0

    for i, snippet in enumerate(snippets, 1):
        print(f"\n[{i}] {snippet.source}  (score {snippet.score:.3f}, {snippet.kind})")
        preview = " ".join(snippet.text.split())
        print(f"    {preview[:300]}{'...' if len(preview) > 300 else ''}")
    print()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if not settings.snapshot_path.exists():
        print(f"\nNo index at {settings.snapshot_path}\n")
        return 1

    # Stats need no embedder, so take the model from the snapshot itself
    contents = read_snapshot(settings.snapshot_path)
    store = create_store(settings, contents.model_id)
    store.load()
    stats = store.get_stats()

    print(f"\n{'=' * 60}")
    print("  Index Statistics")
    print(f"{'=' * 60}\n")
    print(f"  Snapshot:           {stats.storage_path}")
    print(f"  Store type:         {stats.store_type}")
    print(f"  Embedding model:    {stats.model_id}")
    print(f"  Dimension:          {stats.embedding_dimension}")
    print(f"  Records:            {stats.record_count}")
    print(f"  Content size:       {stats.format_content_size()}")
    print(f"  File size:          {stats.format_file_size()}")
    for kind, count in sorted(stats.records_by_kind.items()):
        print(f"    {kind:<18}{count}")
    print()
    return 0


async def cmd_reembed(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    progress = ProgressReporter(verbose=args.verbose)
    embedder = create_embedder(settings)
    store = create_store(settings, embedder.model_id)

    progress.start(f"Re-embedding with {embedder.model_id}")
    async with embedder:
        total = await reembed_snapshot(store, embedder, progress_callback=progress.update)

    print(f"\n\nRe-embedded {total} records into {settings.snapshot_path}\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polirag",
        description="Index and search course material locally",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--snapshot",
        type=Path,
        default=None,
        help=f"Snapshot file (default: {config.SNAPSHOT_PATH})",
    )
    parser.add_argument(
        "--store",
        choices=["linear", "hnsw"],
        default=None,
        help=f"Vector store backend (default: {config.STORE_BACKEND})",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=config.LOG_FILE,
        help="Write logs to this file (only errors reach the terminal)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Rebuild the index from scratch")
    sync.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help=f"Scraped data directory (default: {config.SCRAPED_DATA_DIR})",
    )
    sync.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    query = sub.add_parser("query", help="Search the index")
    query.add_argument("text", help="Query text")
    query.add_argument("-k", type=int, default=None, help="Number of results")
    query.add_argument(
        "--context", action="store_true", help="Print formatted prompt context"
    )

    sub.add_parser("stats", help="Show index statistics")

    reembed = sub.add_parser("reembed", help="Re-embed the snapshot with the configured model")
    reembed.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(config.LOG_LEVEL, Path(args.log_file) if args.log_file else None)

    try:
        if args.command == "sync":
            return await cmd_sync(args)
        if args.command == "query":
            return await cmd_query(args)
        if args.command == "stats":
            return cmd_stats(args)
        if args.command == "reembed":
            return await cmd_reembed(args)
    except PoliragError as e:
        print(f"\nError: {e}\n")
        logger.error("cli_command_failed", command=args.command, error=str(e))
        return 1
    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        return 1
    return 1


def run():
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n\nCancelled by user.\n")
        sys.exit(1)


if __name__ == "__main__":
    run()
