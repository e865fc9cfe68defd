"""
Markdown parsing and chunking for the knowledge indexer.

Knowledge files are split at level-3 headings (``### Title``).  Sections
larger than the chunk budget are split at sentence boundaries, and each
chunk after the first is prefixed with a sentence-aligned tail of its
predecessor so that context spanning a boundary is still retrievable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 2000
DEFAULT_OVERLAP_PERCENT = 15
MAX_OVERLAP_PERCENT = 50

_FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)(?:\r?\n)?^---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)
_H3_RE = re.compile(r"^###[ \t]+(.+)$", re.MULTILINE)
# A sentence is a run of text up to and including its terminators plus any
# trailing whitespace; a trailing run without a terminator is its own sentence.
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+\s*|[^.!?]+\Z")
_SENTENCE_BOUNDARY_RE = re.compile(r"[.!?]+\s+")


@dataclass
class ParsedMarkdown:
    frontmatter: dict = field(default_factory=dict)
    content: str = ""


@dataclass
class ContentChunk:
    title: str
    content: str


# ---------------------------------------------------------------------------
# Front-matter
# ---------------------------------------------------------------------------

def parse_markdown(markdown: str) -> ParsedMarkdown:
    """
    Split *markdown* into its YAML front-matter and body.

    A malformed front-matter block is logged and treated as empty; the block
    is still removed from the body.
    """
    match = _FRONTMATTER_RE.match(markdown)
    if match is None:
        return ParsedMarkdown(frontmatter={}, content=markdown.strip())

    body = markdown[match.end():]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed front-matter: %s", exc)
        data = None
    if not isinstance(data, dict):
        data = {}
    return ParsedMarkdown(frontmatter=data, content=body.strip())


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def chunk_by_headers(
    content: str,
    max_chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap_percent: int = DEFAULT_OVERLAP_PERCENT,
) -> list[ContentChunk]:
    """
    Split *content* into chunks at ``###`` headings.

    Parameters
    ----------
    content:
        Markdown body (front-matter already removed).
    max_chunk_size:
        Maximum characters per chunk before overlap is applied.
    overlap_percent:
        Share (0-50) of the previous chunk prepended to each following chunk.

    Returns
    -------
    list[ContentChunk]
        Ordered chunks; empty when *content* has no text.
    """
    headings = list(_H3_RE.finditer(content))

    if not headings:
        body = content.strip()
        if not body:
            return []
        chunks = split_long_content(ContentChunk(title="", content=body), max_chunk_size)
        return apply_overlap(chunks, overlap_percent)

    chunks: list[ContentChunk] = []
    for i, heading in enumerate(headings):
        next_start = headings[i + 1].start() if i + 1 < len(headings) else len(content)
        line_end = content.find("\n", heading.start(), next_start)
        if line_end == -1:
            continue
        section = content[line_end + 1:next_start].strip()
        if section:
            chunks.extend(split_long_content(
                ContentChunk(title=heading.group(1).strip(), content=section),
                max_chunk_size,
            ))

    return apply_overlap(chunks, overlap_percent)


def split_long_content(chunk: ContentChunk, max_chunk_size: int) -> list[ContentChunk]:
    """Split *chunk* at sentence boundaries when it exceeds *max_chunk_size*."""
    if len(chunk.content) <= max_chunk_size:
        return [chunk]

    sentences = _SENTENCE_RE.findall(chunk.content) or [chunk.content]
    parts: list[ContentChunk] = []
    current = ""
    part_number = 1

    def _title(n: int) -> str:
        return f"{chunk.title} (Part {n})" if chunk.title else ""

    for sentence in sentences:
        if current and len(current) + len(sentence) > max_chunk_size:
            parts.append(ContentChunk(title=_title(part_number), content=current.strip()))
            current = sentence
            part_number += 1
        else:
            current += sentence

    if current.strip():
        parts.append(ContentChunk(title=_title(part_number), content=current.strip()))

    return parts


# ---------------------------------------------------------------------------
# Overlap
# ---------------------------------------------------------------------------

def extract_overlap_tail(text: str, target_length: int) -> str:
    """
    Return roughly the last *target_length* characters of *text*, starting
    at a sentence boundary.

    The raw cut point is moved forward to the start of the next sentence so
    the overlap never begins mid-sentence.  If no sentence starts after the
    cut, the raw cut is used.
    """
    if not text or target_length <= 0:
        return ""
    if target_length >= len(text):
        return text

    cut = len(text) - target_length
    for boundary in _SENTENCE_BOUNDARY_RE.finditer(text):
        if boundary.end() >= cut:
            if boundary.end() < len(text):
                return text[boundary.end():]
            break
    return text[cut:].lstrip()


def apply_overlap(chunks: list[ContentChunk], overlap_percent: int) -> list[ContentChunk]:
    """Prefix every chunk after the first with the tail of its predecessor."""
    overlap_percent = max(0, min(MAX_OVERLAP_PERCENT, overlap_percent))
    if overlap_percent == 0 or len(chunks) < 2:
        return list(chunks)

    result = [chunks[0]]
    for prev, chunk in zip(chunks, chunks[1:]):
        tail = extract_overlap_tail(prev.content, len(prev.content) * overlap_percent // 100)
        if tail:
            result.append(ContentChunk(title=chunk.title, content=f"{tail}\n\n{chunk.content}"))
        else:
            result.append(chunk)
    return result
