"""
Content block index: the addressable anchor points images are placed after.

Blocks are the paragraphs, headings, list items, quotes and code blocks of
the rendered article body, in document order, zero-based.
"""
from typing import Iterator, List, Sequence

import structlog
from bs4 import BeautifulSoup
from markdown_it import MarkdownIt

logger = structlog.get_logger()

BLOCK_TAGS = ["p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre"]

# Blocks nested in these are already covered by the enclosing block
CONTAINER_TAGS = {"li", "blockquote"}

# Per-block preview length sent with the layout request
DEFAULT_PREVIEW_CHARS = 300


class ContentBlockIndex:
    """Immutable, index-addressable sequence of article text blocks."""

    __slots__ = ("_blocks",)

    def __init__(self, blocks: Sequence[str]):
        self._blocks = tuple(blocks)

    @classmethod
    def from_html(cls, html: str) -> "ContentBlockIndex":
        """Extract blocks from rendered article HTML."""
        soup = BeautifulSoup(html or "", "lxml")
        blocks: List[str] = []
        for element in soup.find_all(BLOCK_TAGS):
            if any(parent.name in CONTAINER_TAGS for parent in element.parents):
                continue
            text = " ".join(element.get_text(" ", strip=True).split())
            if text:
                blocks.append(text)
        return cls(blocks)

    @classmethod
    def from_markdown(cls, markdown: str) -> "ContentBlockIndex":
        """Render approved article markdown and index its blocks."""
        html = MarkdownIt("commonmark").render(markdown or "")
        index = cls.from_html(html)
        logger.debug("content_blocks_indexed", block_count=len(index))
        return index

    @property
    def blocks(self) -> tuple:
        return self._blocks

    def indexed_preview(self, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
        """One `[i]: text` line per block, each truncated to `max_chars`."""
        lines = []
        for i, block in enumerate(self._blocks):
            preview = block if len(block) <= max_chars else block[:max_chars] + "..."
            lines.append(f"[{i}]: {preview}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._blocks)

    def __getitem__(self, index: int) -> str:
        return self._blocks[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._blocks)

    def __repr__(self) -> str:
        return f"ContentBlockIndex({len(self._blocks)} blocks)"
