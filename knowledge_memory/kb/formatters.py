"""
Output formatters for ``knowledge-memory search``.
"""

from __future__ import annotations

import abc
import csv
import io
import json
from dataclasses import asdict, dataclass
from xml.sax.saxutils import escape

from knowledge_memory.errors import ValidationError
from knowledge_memory.kb.local.models import MemorySearchResult

FORMATS = ("text", "json", "csv", "md", "xml")

_CONTENT_PREVIEW = 200
_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


@dataclass
class SearchResultRow:
    id: str
    score: float
    content: str
    category: str
    source: str
    file_path: str


def to_rows(results: list[MemorySearchResult]) -> list[SearchResultRow]:
    """Flatten results; content is cut to a single-line preview."""
    return [
        SearchResultRow(
            id=r.entry.id,
            score=r.score,
            content=r.entry.content[:_CONTENT_PREVIEW].replace("\n", " "),
            category=r.entry.metadata.category,
            source=r.entry.metadata.source,
            file_path=r.entry.metadata.file_path or "",
        )
        for r in results
    ]


def _xml_escape(value: str) -> str:
    return escape(value, _XML_ENTITIES)


def _md_escape(value: str) -> str:
    return value.replace("|", "\\|")


class OutputFormatter(abc.ABC):
    @abc.abstractmethod
    def format(self, results: list[MemorySearchResult], query: str) -> str:
        """Render *results* for *query* as a single string."""


class TextFormatter(OutputFormatter):
    def format(self, results, query):
        if not results:
            return f'No results found for: "{query}"'
        return "\n".join(
            f"{i}. [{row.score:.2f}] {row.file_path}\n   {row.content}\n"
            for i, row in enumerate(to_rows(results), start=1)
        )


class JsonFormatter(OutputFormatter):
    def format(self, results, query):
        if not results:
            return "[]"
        return json.dumps([asdict(row) for row in to_rows(results)], indent=2)


class CsvFormatter(OutputFormatter):
    def format(self, results, query):
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(["id", "score", "category", "source", "file_path", "content"])
        for row in to_rows(results):
            writer.writerow([row.id, row.score, row.category, row.source,
                             row.file_path, row.content])
        return buf.getvalue().rstrip("\n")


class MarkdownFormatter(OutputFormatter):
    def format(self, results, query):
        lines = [
            "| Score | Category | Source | File | Content |",
            "| --- | --- | --- | --- | --- |",
        ]
        if not results:
            lines.append("| - | - | - | - | No results |")
        for row in to_rows(results):
            lines.append(
                f"| {row.score:.2f} | {_md_escape(row.category)} | {_md_escape(row.source)} "
                f"| {_md_escape(row.file_path)} | {_md_escape(row.content)} |"
            )
        return "\n".join(lines)


class XmlFormatter(OutputFormatter):
    def format(self, results, query):
        decl = '<?xml version="1.0" encoding="UTF-8"?>'
        if not results:
            return f'{decl}\n<searchResults query="{_xml_escape(query)}" />'
        children = []
        for row in to_rows(results):
            children.append("\n".join([
                "  <result>",
                f"    <id>{_xml_escape(row.id)}</id>",
                f"    <score>{row.score}</score>",
                f"    <category>{_xml_escape(row.category)}</category>",
                f"    <source>{_xml_escape(row.source)}</source>",
                f"    <filePath>{_xml_escape(row.file_path)}</filePath>",
                f"    <content>{_xml_escape(row.content)}</content>",
                "  </result>",
            ]))
        body = "\n".join(children)
        return f'{decl}\n<searchResults query="{_xml_escape(query)}">\n{body}\n</searchResults>'


_FORMATTERS = {
    "text": TextFormatter,
    "json": JsonFormatter,
    "csv": CsvFormatter,
    "md": MarkdownFormatter,
    "xml": XmlFormatter,
}


def create_formatter(name: str) -> OutputFormatter:
    try:
        return _FORMATTERS[name]()
    except KeyError:
        raise ValidationError(
            f'Unknown output format: "{name}". Valid formats: {", ".join(FORMATS)}',
            "format",
        ) from None
