"""Ingestion sources feeding documents into a sync.

IngestionSource is the boundary to whatever fetches course content. The
DirectorySource implementation reads the scraped-data directory layout:

    <root>/<subject>/*.md                       announcements, lessons, guides
    <root>/<subject>/resources/extracted/**/*.txt  text extracted from PDFs
"""
import asyncio
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Protocol

import structlog

from polirag.credentials import Credentials
from polirag.rag.md_parser import MarkdownParser
from polirag.rag.models import Document, SourceKind, Subject

logger = structlog.get_logger()

# Ligatures and typographic symbols PDF extraction leaves behind
_REPLACEMENTS = {
    chr(0xFB00): "ff",
    chr(0xFB01): "fi",
    chr(0xFB02): "fl",
    chr(0xFB03): "ffi",
    chr(0xFB04): "ffl",
    chr(0xFB05): "st",
    chr(0xFB06): "st",
    chr(0x0132): "IJ",
    chr(0x0133): "ij",
    chr(0x0152): "OE",
    chr(0x0153): "oe",
    chr(0x00C6): "AE",
    chr(0x00E6): "ae",
    chr(0x2019): "'",
    chr(0x2018): "'",
    chr(0x201C): '"',
    chr(0x201D): '"',
    chr(0x2013): "-",
    chr(0x2014): "-",
    chr(0x2026): "...",
    chr(0x00A0): " ",
}


def normalize_text(text: str) -> str:
    """Fix ligatures and typographic symbols, collapse whitespace."""
    for src, dst in _REPLACEMENTS.items():
        text = text.replace(src, dst)
    return " ".join(text.split())


class IngestionSource(Protocol):
    async def check_connection(self) -> bool:
        """Whether the current session can fetch content."""
        ...

    async def authenticate(self, credentials: Credentials) -> bool:
        """Try to establish a session; returns whether it worked."""
        ...

    async def list_subjects(self) -> List[Subject]:
        ...

    async def fetch_documents(self, subject: Subject) -> List[Document]:
        """All documents of one subject. May raise for that subject alone."""
        ...


_KIND_HINTS = [
    ("announcement", SourceKind.ANNOUNCEMENT),
    ("anuncio", SourceKind.ANNOUNCEMENT),
    ("guide", SourceKind.TEACHING_GUIDE),
    ("guia", SourceKind.TEACHING_GUIDE),
    ("lesson", SourceKind.LESSON),
    ("leccion", SourceKind.LESSON),
    ("summary", SourceKind.SUMMARY),
]


def _kind_for(name: str, declared: Optional[str]) -> SourceKind:
    if declared:
        try:
            return SourceKind(str(declared).lower())
        except ValueError:
            logger.warning("unknown_document_kind", kind=declared, file=name)
    lowered = name.lower()
    for hint, kind in _KIND_HINTS:
        if hint in lowered:
            return kind
    return SourceKind.LESSON


def _timestamp_for(value, path: Path) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning("invalid_document_date", value=value, path=str(path))
    return datetime.fromtimestamp(path.stat().st_mtime)


class DirectorySource:
    """Reads subjects and documents from a local scraped-data directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.parser = MarkdownParser()

    async def check_connection(self) -> bool:
        """The directory is the session: it works if it exists."""
        return self.root.is_dir()

    async def authenticate(self, credentials: Credentials) -> bool:
        """A local mirror needs no session; credentials are ignored."""
        return await self.check_connection()

    async def list_subjects(self) -> List[Subject]:
        """One subject per subdirectory, named from its summary.md if present."""
        return await asyncio.to_thread(self._list_subjects)

    async def fetch_documents(self, subject: Subject) -> List[Document]:
        """Read markdown pages and extracted PDF text of one subject.

        Args:
            subject: Subject whose directory is read

        Returns:
            Documents in path order, pages first, empty ones skipped

        Raises:
            FileNotFoundError: If the subject directory is gone
        """
        return await asyncio.to_thread(self._read_subject, subject)

    def _list_subjects(self) -> List[Subject]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Data directory not found: {self.root}")

        subjects = []
        for path in sorted(p for p in self.root.iterdir() if p.is_dir()):
            name, url = path.name, ""
            summary = path / "summary.md"
            if summary.exists():
                front = self.parser.parse_file(summary).frontmatter
                name = str(front.get("subject") or name)
                url = str(front.get("url") or "")
            subjects.append(Subject(id=path.name, name=name, url=url))

        logger.info("subjects_discovered", count=len(subjects), root=str(self.root))
        return subjects

    def _read_subject(self, subject: Subject) -> List[Document]:
        subject_dir = self.root / subject.id
        if not subject_dir.is_dir():
            raise FileNotFoundError(f"Subject directory not found: {subject_dir}")

        documents = []

        for path in sorted(subject_dir.glob("*.md")):
            page = self.parser.parse_file(path)
            if not page.body.strip():
                continue
            documents.append(
                Document(
                    subject=subject,
                    title=page.title or path.stem,
                    kind=_kind_for(path.stem, page.frontmatter.get("kind")),
                    text=page.body,
                    timestamp=_timestamp_for(page.frontmatter.get("date"), path),
                    source_path=path,
                    origin=path.relative_to(subject_dir).as_posix(),
                )
            )

        extracted = subject_dir / "resources" / "extracted"
        if extracted.is_dir():
            for path in sorted(extracted.rglob("*.txt")):
                text = normalize_text(path.read_text(encoding="utf-8", errors="replace"))
                if not text:
                    logger.warning("empty_pdf_text", path=str(path))
                    continue
                documents.append(
                    Document(
                        subject=subject,
                        title=path.relative_to(extracted).with_suffix(".pdf").as_posix(),
                        kind=SourceKind.PDF,
                        text=text,
                        timestamp=_timestamp_for(None, path),
                        source_path=path,
                        origin=path.relative_to(subject_dir).as_posix(),
                    )
                )

        logger.info(
            "subject_documents_read",
            subject=subject.id,
            document_count=len(documents),
        )
        return documents
