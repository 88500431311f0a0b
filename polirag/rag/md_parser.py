"""Reads scraped markdown pages: YAML front matter, headings and body."""
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
import yaml

logger = structlog.get_logger()

FRONTMATTER = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*\n", re.DOTALL)
HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)


@dataclass
class Heading:
    level: int
    text: str
    offset: int


@dataclass
class MarkdownPage:
    path: Path
    frontmatter: Dict[str, Any]
    headings: List[Heading]
    body: str

    @property
    def title(self) -> Optional[str]:
        """Front matter title, else the first heading."""
        if self.frontmatter.get("title"):
            return str(self.frontmatter["title"])
        return self.headings[0].text if self.headings else None


def split_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Separate a leading YAML block from the body.

    Invalid or non-mapping YAML is logged and treated as absent.
    """
    match = FRONTMATTER.match(content)
    if match is None:
        return {}, content

    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.warning("frontmatter_invalid", error=str(e))
        meta = None

    return (meta if isinstance(meta, dict) else {}), content[match.end() :]


class MarkdownParser:
    def parse_file(self, path: Path) -> MarkdownPage:
        """Read and parse a UTF-8 markdown file.

        Raises:
            FileNotFoundError, UnicodeDecodeError: For unreadable files
        """
        return self.parse_text(path.read_text(encoding="utf-8"), path)

    def parse_text(self, content: str, path: Path) -> MarkdownPage:
        """Parse markdown already in memory.

        Args:
            content: Raw page text, optionally starting with front matter
            path: Where the text came from, kept on the page for reference

        Returns:
            MarkdownPage with front matter removed from the body
        """
        meta, body = split_frontmatter(content)
        headings = [
            Heading(level=len(m.group(1)), text=m.group(2).strip(), offset=m.start())
            for m in HEADING.finditer(body)
        ]

        logger.debug(
            "markdown_parsed",
            path=str(path),
            has_frontmatter=bool(meta),
            heading_count=len(headings),
        )
        return MarkdownPage(path=path, frontmatter=meta, headings=headings, body=body)
