"""Re-embed an existing snapshot with a different embedding model.

The record texts and metadata already on disk are reused, so switching
models needs no new ingestion run.
"""
import asyncio
from typing import Callable, Optional

import structlog

from polirag.rag.embedder import Embedder
from polirag.rag.models import Record
from polirag.rag.store import VectorStore, read_snapshot

logger = structlog.get_logger()


async def reembed_snapshot(
    store: VectorStore,
    embedder: Embedder,
    progress_callback: Optional[Callable[[int, int, str], None]] = None,
) -> int:
    """Rebuild the store's snapshot with vectors from the given embedder.

    The live store keeps serving the old records until the new snapshot is
    written, then switches to the active model in one step.

    Args:
        store: Store whose snapshot is re-embedded
        embedder: Embedder for the new model
        progress_callback: Optional callback(done, total, last_record_id)

    Returns:
        Number of records re-embedded

    Raises:
        FileNotFoundError: If the store has no snapshot yet
        IncompatibleSnapshot: If the snapshot cannot be read
        EmbeddingUnavailable: If the new model cannot be loaded
        PersistenceFailure: If the new snapshot could not be written
    """
    contents = await asyncio.to_thread(read_snapshot, store.path)
    await embedder.load()

    logger.info(
        "reembed_started",
        records=len(contents.records),
        from_model=contents.model_id,
        to_model=embedder.model_id,
    )

    staging = store.spawn_empty(model_id=embedder.model_id)
    records = contents.records
    total = len(records)

    for i in range(0, total, embedder.batch_size):
        batch = records[i : i + embedder.batch_size]
        vectors = await embedder.embed_batch([r.text for r in batch])
        staging.insert_many(
            [
                Record(id=r.id, text=r.text, vector=v, metadata=r.metadata)
                for r, v in zip(batch, vectors)
            ]
        )
        if progress_callback:
            progress_callback(min(i + len(batch), total), total, batch[-1].id)

    await asyncio.to_thread(staging.persist)
    store.adopt(staging)

    logger.info("reembed_completed", records=total, model=embedder.model_id)
    return total
