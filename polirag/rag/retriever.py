"""Retriever for semantic search over indexed course material.

Handles:
- Query embedding generation
- Vector store search
- Result formatting into snippets and prompt context
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from polirag.rag.embedder import Embedder
from polirag.rag.store import VectorStore

logger = structlog.get_logger()

SNIPPET_WINDOW_WORDS = 50


@dataclass
class Snippet:
    """A single retrieved chunk with its source and score."""

    record_id: str
    text: str
    subject: str
    title: str
    kind: str
    score: float
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        subject = self.metadata.get("subject_name") or self.subject
        if self.title:
            return f"{subject} > {self.title}"
        return subject


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        top_k: int = 5,
        min_score: float = 0.0,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedder used for queries (same model as the store)
            store: Vector store to search
            top_k: Default number of results
            min_score: Drop results scoring at or below this value (0.0 disables)
        """
        self.embedder = embedder
        self.store = store
        self.top_k = top_k
        self.min_score = min_score

    async def retrieve(self, query: str, k: Optional[int] = None) -> List[Snippet]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            k: Number of results to return (overrides default)

        Returns:
            Snippets sorted by descending similarity, as ranked by the store

        Raises:
            EmbeddingUnavailable: If the embedding model cannot be loaded
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        k = self.top_k if k is None else k
        if k <= 0 or self.store.count() == 0:
            logger.info("retrieval_skipped", top_k=k, store_size=self.store.count())
            return []

        logger.info("retrieval_started", query_length=len(query), top_k=k)

        try:
            query_embedding = await self.embedder.embed(query)
            hits = self.store.search(query_embedding, k)
        except Exception as e:
            logger.error(
                "retrieval_failed",
                error=str(e),
                error_type=type(e).__name__,
                query_preview=query[:100],
            )
            raise

        snippets = []
        for hit in hits:
            if self.min_score > 0.0 and hit.score <= self.min_score:
                continue
            meta = hit.record.metadata
            snippets.append(
                Snippet(
                    record_id=hit.record.id,
                    text=hit.record.text,
                    subject=meta.get("subject", ""),
                    title=meta.get("title", ""),
                    kind=meta.get("kind", ""),
                    score=hit.score,
                    metadata=dict(meta),
                )
            )

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(snippets),
            top_score=snippets[0].score if snippets else None,
        )

        return snippets

    async def retrieve_context(
        self,
        query: str,
        k: Optional[int] = None,
        max_chars: int = 4000,
    ) -> str:
        """Retrieve and format context for LLM prompt.

        Args:
            query: User query text
            k: Number of results to retrieve
            max_chars: Maximum total characters of context to return

        Returns:
            Formatted context string ready for LLM prompt
        """
        snippets = await self.retrieve(query, k=k)

        if not snippets:
            return ""

        query_words = query.lower().split()
        context_parts = []
        total_chars = 0

        for i, snippet in enumerate(snippets, 1):
            excerpt = extract_relevant_snippet(snippet.text, query_words, max_chars)
            chunk_text = f"[Source {i}: {snippet.source} ({snippet.score:.2f})]\n{excerpt}\n"

            if total_chars + len(chunk_text) > max_chars:
                remaining = max_chars - total_chars
                if remaining > 200:
                    context_parts.append(chunk_text[:remaining] + "...\n")
                break

            context_parts.append(chunk_text)
            total_chars += len(chunk_text)

        context = "\n".join(context_parts)

        logger.debug(
            "context_formatted",
            num_chunks=len(context_parts),
            total_chars=len(context),
        )

        return context


def extract_relevant_snippet(content: str, query_words: List[str], max_chars: int) -> str:
    """Cut the part of content densest in query words.

    Scans 50-word windows for the most query-word hits, starts a little
    before the first hit in the best one and trims to whole words, marking
    cuts with "...".
    """
    words = content.split()
    if len(" ".join(words)) <= max_chars:
        return " ".join(words)

    best_index = 0
    best_score = 0
    for i in range(max(len(words) - SNIPPET_WINDOW_WORDS, 0)):
        window = " ".join(words[i : i + SNIPPET_WINDOW_WORDS]).lower()
        score = sum(1 for qw in query_words if qw in window)
        if score > best_score:
            best_score = score
            best_index = i

    # Start from the first query word inside the best window
    for j in range(best_index, min(best_index + SNIPPET_WINDOW_WORDS, len(words))):
        if any(qw in words[j].lower() for qw in query_words):
            best_index = j
            break

    flat = " ".join(words)
    best_pos = sum(len(w) + 1 for w in words[:best_index])
    start = max(best_pos - 50, 0)
    end = min(start + max_chars, len(flat))
    snippet = flat[start:end]

    if start > 0:
        space = snippet.find(" ")
        if space != -1:
            snippet = snippet[space + 1 :]
        snippet = "..." + snippet

    if end < len(flat):
        space = snippet.rfind(" ")
        if space != -1:
            snippet = snippet[:space]
        snippet = snippet + "..."

    return snippet.strip()
