"""Markdown parser for uploaded notes, protocols and transcripts.

Handles:
- YAML frontmatter parsing
- Heading hierarchy extraction
- Clean text extraction
"""
import re
from typing import Dict, List, Any, Tuple
from dataclasses import dataclass
import yaml
import structlog

logger = structlog.get_logger()

# Frontmatter fields carried into chunk metadata
FRONTMATTER_FIELDS = ("title", "tags", "author", "source", "created", "updated")


@dataclass
class Heading:
    """Represents a markdown heading with hierarchy."""

    level: int  # 1-6 for h1-h6
    text: str
    char_position: int


@dataclass
class MarkdownDocument:
    """Parsed markdown document with content and metadata."""

    frontmatter: Dict[str, Any]
    headings: List[Heading]
    text: str


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    # Regex for markdown headings
    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)$", re.MULTILINE)

    def parse(self, content: str) -> MarkdownDocument:
        """Parse markdown content into text, frontmatter and headings."""
        frontmatter, text = self._parse_frontmatter(content)
        headings = [
            Heading(
                level=len(match.group(1)),
                text=match.group(2).strip(),
                char_position=match.start(),
            )
            for match in self.HEADING_PATTERN.finditer(text)
        ]

        logger.debug(
            "markdown_parsed",
            has_frontmatter=bool(frontmatter),
            heading_count=len(headings),
            content_length=len(text),
        )

        return MarkdownDocument(frontmatter=frontmatter, headings=headings, text=text)

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end() :]

    def get_heading_context(self, headings: List[Heading], char_position: int) -> str:
        """Get hierarchical heading context for a character position.

        Returns:
            Breadcrumb like "# Main > ## Sub > ### Detail", or "" before
            the first heading
        """
        context_stack: List[Heading] = []

        for heading in headings:
            if heading.char_position >= char_position:
                break
            # Pop headings at same or deeper level
            while context_stack and context_stack[-1].level >= heading.level:
                context_stack.pop()
            context_stack.append(heading)

        return " > ".join(f"{'#' * h.level} {h.text}" for h in context_stack)

    def document_metadata(self, doc: MarkdownDocument) -> Dict[str, Any]:
        """Selected frontmatter fields, JSON-safe."""
        metadata = {}
        for name in FRONTMATTER_FIELDS:
            if name in doc.frontmatter:
                value = doc.frontmatter[name]
                # Convert date/datetime objects to ISO format strings
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[name] = value
        return metadata
