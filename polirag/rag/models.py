"""Data model shared by the indexing and retrieval components."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import numpy as np


class SourceKind(str, Enum):
    """Kind of course material a document was extracted from."""

    ANNOUNCEMENT = "announcement"
    LESSON = "lesson"
    TEACHING_GUIDE = "teaching_guide"
    PDF = "pdf"
    SUMMARY = "summary"


@dataclass(frozen=True)
class Subject:
    """A course subject as listed by the ingestion source."""

    id: str
    name: str
    url: str = ""


@dataclass
class Document:
    """A logical unit of source content, before chunking."""

    subject: Subject
    title: str
    kind: SourceKind
    text: str
    timestamp: Optional[datetime] = None
    source_path: Optional[Path] = None
    # Location inside the subject (e.g. "intro.md"); titles need not be unique
    origin: Optional[str] = None

    @property
    def doc_id(self) -> str:
        """Deterministic identifier, stable across syncs of unchanged content.

        Built from the origin when the source provides one, else the title.
        """
        return f"{self.subject.id}/{self.kind.value}/{self.origin or self.title}"

    def metadata(self) -> Dict[str, str]:
        """Identifying metadata copied onto every record of this document."""
        meta = {
            "doc_id": self.doc_id,
            "subject": self.subject.id,
            "subject_name": self.subject.name,
            "title": self.title,
            "kind": self.kind.value,
        }
        if self.timestamp is not None:
            meta["timestamp"] = self.timestamp.isoformat()
        if self.source_path is not None:
            meta["source_path"] = str(self.source_path)
        return meta


@dataclass
class Chunk:
    """A bounded substring of a document's text."""

    text: str
    index: int
    char_start: int
    char_end: int
    word_count: int


@dataclass
class Record:
    """The unit stored in the vector store."""

    id: str
    text: str
    vector: np.ndarray
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.vector = np.asarray(self.vector, dtype=np.float32).ravel()


@dataclass
class SearchHit:
    """A record returned by a store search with its cosine similarity."""

    record: Record
    score: float
