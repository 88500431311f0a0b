"""Sync orchestration: full rebuild of the index from the ingestion source.

A sync walks through

    Idle -> Authenticating -> Clearing -> Ingesting -> Indexing -> Idle

and ends in Failed if any stage hits an unrecoverable error. The new index is
built in a staging store and swapped into the live store only after it has
been persisted, so concurrent readers see either the old or the new index.
If the sync fails after the clearing stage the live store is emptied, which
is the price of rebuilding from scratch; the snapshot on disk is left as is.

Progress is reported as SyncEvent messages on an asyncio.Queue so a frontend
can keep running while the sync works in a background task.
"""
import asyncio
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from polirag.credentials import CredentialProvider, Credentials
from polirag.exceptions import (
    AuthenticationRequired,
    DimensionMismatch,
    EmbeddingUnavailable,
    PartialIngestionFailure,
    SyncAlreadyRunning,
    SyncCancelled,
)
from polirag.rag.chunker import TextChunker
from polirag.rag.embedder import Embedder
from polirag.rag.models import Document, Record
from polirag.rag.sources import IngestionSource
from polirag.rag.store import VectorStore

logger = structlog.get_logger()


class SyncState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CLEARING = "clearing"
    INGESTING = "ingesting"
    INDEXING = "indexing"
    FAILED = "failed"


class IngestionFailure(BaseModel):
    """A subject or document that was skipped."""

    source: str
    reason: str


class SyncSummary(BaseModel):
    """Outcome of one sync attempt."""

    state: SyncState = SyncState.IDLE
    subjects_total: int = 0
    subjects_failed: int = 0
    documents_indexed: int = 0
    documents_failed: int = 0
    records_indexed: int = 0
    failures: List[IngestionFailure] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def partial_failures(self) -> int:
        return len(self.failures)


class SyncEvent(BaseModel):
    """Message sent to the frontend while a sync runs."""

    kind: Literal["state", "progress", "warning", "completed", "failed"]
    state: SyncState
    message: str = ""
    current: int = 0
    total: int = 0
    summary: Optional[SyncSummary] = None


class SyncOrchestrator:
    """Coordinates a full resync of the vector store."""

    def __init__(
        self,
        source: IngestionSource,
        store: VectorStore,
        embedder: Embedder,
        chunker: TextChunker,
        credentials: Optional[CredentialProvider] = None,
        events: Optional["asyncio.Queue[SyncEvent]"] = None,
    ):
        """Initialize the orchestrator.

        Args:
            source: Where subjects and documents come from
            store: Live store shared with the retrieval path
            embedder: Embedder producing the record vectors
            chunker: Chunker splitting document text
            credentials: Fallback chain used when the source is not connected
            events: Queue receiving SyncEvent messages (created if omitted)
        """
        self.source = source
        self.store = store
        self.embedder = embedder
        self.chunker = chunker
        self.credentials = credentials
        self.events: "asyncio.Queue[SyncEvent]" = events if events is not None else asyncio.Queue()

        self.last_summary: Optional[SyncSummary] = None
        self._state = SyncState.IDLE
        self._running = False
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        pending = self._task is not None and not self._task.done()
        return self._running or pending

    # --- control surface ---------------------------------------------------

    def start_sync(self) -> "asyncio.Task[Optional[SyncSummary]]":
        """Run a sync in a background task.

        The task never raises for sync failures; they arrive as a "failed"
        event and in last_summary.

        Raises:
            SyncAlreadyRunning: If a sync is in progress
        """
        if self.is_running:
            raise SyncAlreadyRunning("A sync is already in progress")
        self._task = asyncio.create_task(self._run_in_background(), name="polirag-sync")
        return self._task

    def cancel_sync(self) -> bool:
        """Ask the running sync to stop at the next document boundary."""
        if not self.is_running:
            return False
        self._cancel_requested = True
        logger.info("sync_cancel_requested", state=self._state.value)
        return True

    async def _run_in_background(self) -> Optional[SyncSummary]:
        try:
            return await self.run_sync()
        except Exception:
            # Already logged and reported through the event channel
            return self.last_summary

    # --- pipeline ----------------------------------------------------------

    async def run_sync(self) -> SyncSummary:
        """Run a full sync in the current task.

        Returns:
            Summary of the completed sync

        Raises:
            AuthenticationRequired: If no session could be established
            EmbeddingUnavailable: If the embedding model cannot be loaded
            SyncCancelled: If cancel_sync() was called
            PersistenceFailure: If the new snapshot could not be written
        """
        if self._running:
            raise SyncAlreadyRunning("A sync is already in progress")

        self._running = True
        summary = SyncSummary()
        self.last_summary = summary
        cleared = False

        logger.info("sync_started", store_type=self.store.store_type, model=self.embedder.model_id)

        try:
            self._transition(SyncState.AUTHENTICATING)
            await self._authenticate()
            # Load before clearing so a missing model leaves the store untouched
            await self.embedder.load()
            self._check_cancelled()

            self._transition(SyncState.CLEARING)
            staging = self.store.spawn_empty(model_id=self.embedder.model_id)
            staging.clear()
            cleared = True

            self._transition(SyncState.INGESTING)
            documents = await self._ingest(summary)

            self._transition(SyncState.INDEXING)
            await self._index(staging, documents, summary)
            self._check_cancelled()

            interrupted = await self._persist(staging)
            self.store.adopt(staging)

        except asyncio.CancelledError:
            self._fail(summary, SyncCancelled("Sync task was cancelled"), cleared)
            raise
        except Exception as e:
            self._fail(summary, e, cleared)
            raise
        finally:
            self._running = False
            self._cancel_requested = False

        summary.state = SyncState.IDLE
        summary.finished_at = datetime.now()
        self._transition(SyncState.IDLE)
        self._emit("completed", message="Sync complete", summary=summary)

        logger.info(
            "sync_completed",
            subjects=summary.subjects_total,
            subjects_failed=summary.subjects_failed,
            documents_indexed=summary.documents_indexed,
            records_indexed=summary.records_indexed,
        )
        if interrupted:
            # The snapshot was written and adopted; still honour the cancel
            raise asyncio.CancelledError()
        return summary

    async def _authenticate(self) -> None:
        try:
            connected = await self.source.check_connection()
        except Exception as e:
            logger.warning("connection_check_failed", error=str(e))
            connected = False

        if connected:
            return

        logger.warning("not_authenticated_trying_credentials")
        if self.credentials is None:
            raise AuthenticationRequired("Not connected and no credentials are configured")

        cached = self.credentials.cached()
        if cached is not None:
            if await self._try_login(cached, "cached"):
                return
            self.credentials.forget()

        external = self.credentials.external()
        if external is not None and external != cached:
            if await self._try_login(external, "external"):
                self.credentials.remember(external)
                return

        raise AuthenticationRequired("No credentials were accepted. Please log in first.")

    async def _try_login(self, credentials: Credentials, origin: str) -> bool:
        logger.info("login_attempt", origin=origin, username=credentials.username)
        try:
            accepted = await self.source.authenticate(credentials)
        except Exception as e:
            logger.error("login_failed", origin=origin, error=str(e))
            return False

        if accepted:
            logger.info("login_successful", origin=origin)
        else:
            logger.warning("login_rejected", origin=origin)
        return accepted

    async def _ingest(self, summary: SyncSummary) -> List[Document]:
        subjects = await self.source.list_subjects()
        summary.subjects_total = len(subjects)
        logger.info("subjects_fetched", count=len(subjects))

        documents: List[Document] = []
        for i, subject in enumerate(subjects, 1):
            self._check_cancelled()
            self._emit(
                "progress",
                message=f"Fetching {subject.name}",
                current=i,
                total=len(subjects),
            )
            try:
                fetched = await self.source.fetch_documents(subject)
            except Exception as e:
                summary.subjects_failed += 1
                self._record_failure(summary, PartialIngestionFailure(subject.id, str(e)))
                continue
            documents.extend(fetched)

        return documents

    async def _index(
        self, staging: VectorStore, documents: List[Document], summary: SyncSummary
    ) -> None:
        seen: Dict[str, int] = {}
        for i, document in enumerate(documents, 1):
            self._check_cancelled()
            self._emit(
                "progress",
                message=f"Indexing {document.subject.name}: {document.title}",
                current=i,
                total=len(documents),
            )
            doc_id = document.doc_id
            seen[doc_id] = seen.get(doc_id, 0) + 1
            if seen[doc_id] > 1:
                doc_id = f"{doc_id}~{seen[doc_id]}"
                logger.warning("duplicate_doc_id", doc_id=document.doc_id, renamed=doc_id)

            try:
                records = await self._build_records(document, doc_id)
            except (EmbeddingUnavailable, DimensionMismatch):
                raise
            except Exception as e:
                summary.documents_failed += 1
                self._record_failure(summary, PartialIngestionFailure(doc_id, str(e)))
                continue

            staging.insert_many(records)
            summary.documents_indexed += 1
            summary.records_indexed += len(records)

    async def _build_records(self, document: Document, doc_id: str) -> List[Record]:
        chunks = self.chunker.chunk_text(document.text)
        if not chunks:
            logger.warning("no_chunks_created", doc_id=doc_id)
            return []

        vectors = await self.embedder.embed_batch([c.text for c in chunks])
        metadata = {**document.metadata(), "doc_id": doc_id}

        return [
            Record(
                id=f"{doc_id}#{chunk.index}",
                text=chunk.text,
                vector=vector,
                metadata={**metadata, "chunk_index": str(chunk.index)},
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    async def _persist(self, staging: VectorStore) -> bool:
        """Write the staging snapshot, finishing the write even if cancelled.

        A cancelled await would leave the worker thread replacing the snapshot
        behind our back, so the write is shielded and awaited to completion.

        Returns:
            True if cancellation arrived while the snapshot was being written
        """
        write = asyncio.ensure_future(asyncio.to_thread(staging.persist))
        interrupted = False
        while not write.done():
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                if not interrupted:
                    logger.warning("sync_cancel_deferred_until_persisted")
                interrupted = True
        write.result()
        return interrupted

    # --- helpers -----------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise SyncCancelled("Sync was cancelled")

    def _transition(self, state: SyncState) -> None:
        self._state = state
        logger.info("sync_state_changed", state=state.value)
        self._emit("state", message=state.value)

    def _emit(self, kind: str, **fields) -> None:
        self.events.put_nowait(SyncEvent(kind=kind, state=self._state, **fields))

    def _record_failure(self, summary: SyncSummary, failure: PartialIngestionFailure) -> None:
        logger.warning("partial_ingestion_failure", source=failure.source, reason=failure.reason)
        summary.failures.append(IngestionFailure(source=failure.source, reason=failure.reason))
        self._emit("warning", message=str(failure))

    def _fail(self, summary: SyncSummary, error: BaseException, cleared: bool) -> None:
        if cleared:
            self.store.clear(model_id=self.embedder.model_id)

        summary.state = SyncState.FAILED
        summary.finished_at = datetime.now()
        summary.cancelled = isinstance(error, SyncCancelled)
        summary.error = str(error)

        self._state = SyncState.FAILED
        logger.error(
            "sync_failed",
            error=str(error),
            error_type=type(error).__name__,
            store_cleared=cleared,
        )
        self._emit("failed", message=str(error), summary=summary)
