"""
Inline indexing directives embedded in markdown as HTML comments::

    <!-- vector-index: false -->
    <!-- keywords: auth, tokens, session -->
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_VECTOR_INDEX_RE = re.compile(r"<!--\s*vector-index:\s*(\w+)\s*-->", re.IGNORECASE)
_KEYWORDS_RE = re.compile(r"<!--\s*keywords:\s*(.*?)\s*-->", re.IGNORECASE)


@dataclass
class DirectiveResult:
    vector_index: bool = True
    keywords: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_directives(content: str) -> DirectiveResult:
    """Extract indexing directives from *content*. Never raises."""
    result = DirectiveResult()

    match = _VECTOR_INDEX_RE.search(content)
    if match:
        value = match.group(1).lower()
        if value == "true":
            result.vector_index = True
        elif value == "false":
            result.vector_index = False
        else:
            result.warnings.append(f"Invalid vector-index value: {match.group(1)}")

    match = _KEYWORDS_RE.search(content)
    if match:
        result.keywords = [
            k.strip().lower() for k in match.group(1).split(",") if k.strip()
        ]

    return result
