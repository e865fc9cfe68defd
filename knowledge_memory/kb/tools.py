"""
Agent-facing tool handlers.

Each handler takes the raw argument dict of a tool call and returns a
JSON-serialisable dict.  Bad input is reported in the payload (``error`` and
``code`` keys) rather than raised, so a transport can forward it verbatim.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from knowledge_memory.errors import KnowledgeMemoryError
from knowledge_memory.kb.local.discovery import analyze_repository, save_discoveries
from knowledge_memory.kb.local.fts_store import FtsStore
from knowledge_memory.kb.local.manifest import Manifest
from knowledge_memory.kb.local.models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    MemoryEntryInput,
    MemoryMetadata,
)
from knowledge_memory.kb.local.searcher import HybridSearch
from knowledge_memory.kb.local.vector_store import MemoryRepository

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10000
MAX_QUERY_LENGTH = 500
MAX_KEYWORDS = 10
MAX_SEARCH_LIMIT = 20
MAX_LIST_LIMIT = 100


@dataclass
class ToolContext:
    """Services shared by all tool handlers."""
    repository: MemoryRepository
    searcher: HybridSearch
    fts_store: Optional[FtsStore] = None
    manifest: Optional[Manifest] = None
    project_root: Optional[str] = None


def _clamp(value: Any, default: int, upper: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return max(1, min(upper, value))


def _category_or_none(value: Any) -> Optional[str]:
    return value if value in CATEGORIES else None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def memory_search(args: dict, ctx: ToolContext) -> dict:
    query = args.get("query")
    if not isinstance(query, str) or not query.strip():
        return {
            "results": [], "query": "", "count": 0,
            "error": "Query cannot be empty", "code": "INVALID_INPUT",
        }
    query = query[:MAX_QUERY_LENGTH]

    results = await ctx.searcher.search(
        query,
        limit=_clamp(args.get("limit"), 5, MAX_SEARCH_LIMIT),
        mode=args.get("mode"),
        category=_category_or_none(args.get("category")),
    )

    for result in results:
        try:
            await ctx.repository.increment_reference_count(result.entry.id)
        except Exception as exc:
            logger.warning("Failed to bump reference count for %s: %s", result.entry.id, exc)

    return {
        "results": [
            {
                "id": r.entry.id,
                "content": r.entry.content,
                "score": r.score,
                "category": r.entry.metadata.category,
                "source": r.entry.metadata.source,
                "filePath": r.entry.metadata.file_path,
            }
            for r in results
        ],
        "query": query,
        "count": len(results),
    }


async def memory_add(args: dict, ctx: ToolContext) -> dict:
    content = args.get("content")
    if not isinstance(content, str) or not content.strip():
        return {"success": False, "error": "Content is required", "code": "INVALID_INPUT"}
    if len(content) > MAX_CONTENT_LENGTH:
        return {
            "success": False,
            "error": f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            "code": "CONTENT_TOO_LONG",
        }

    keywords = args.get("keywords") or []
    if not isinstance(keywords, list):
        keywords = []
    keywords = [str(k) for k in keywords][:MAX_KEYWORDS]

    try:
        entry = await ctx.repository.add(MemoryEntryInput(
            content=content,
            metadata=MemoryMetadata(
                category=_category_or_none(args.get("category")) or DEFAULT_CATEGORY,
                source="session",
                keywords=keywords,
            ),
        ))
    except KnowledgeMemoryError as exc:
        return {"success": False, "error": exc.message, "code": exc.code}

    if ctx.fts_store is not None:
        try:
            await ctx.fts_store.add(entry)
        except Exception as exc:
            logger.warning("FTS sync failed for added entry %s: %s", entry.id, exc)

    return {"success": True, "id": entry.id, "message": "Entry added to memory"}


async def memory_list(args: dict, ctx: ToolContext) -> dict:
    category = args.get("category")
    try:
        entries = await ctx.repository.list(
            category=category, limit=_clamp(args.get("limit"), 50, MAX_LIST_LIMIT),
        )
    except KnowledgeMemoryError as exc:
        return {"entries": [], "count": 0, "error": exc.message, "code": exc.code}

    return {
        "entries": [
            {
                "id": e.id,
                "content": e.content,
                "category": e.metadata.category,
                "createdAt": e.created_at,
            }
            for e in entries
        ],
        "count": len(entries),
        "category": category,
    }


async def memory_delete(args: dict, ctx: ToolContext) -> dict:
    entry_id = args.get("id")
    try:
        deleted = await ctx.repository.delete(entry_id)
    except KnowledgeMemoryError as exc:
        return {"deleted": False, "id": entry_id, "error": exc.message, "code": exc.code}

    if not deleted:
        return {"deleted": False, "id": entry_id, "reason": "Entry not found"}

    if ctx.fts_store is not None:
        try:
            await ctx.fts_store.delete(entry_id)
        except Exception as exc:
            logger.warning("FTS delete failed for entry %s: %s", entry_id, exc)
    return {"deleted": True, "id": entry_id}


async def memory_analyze(args: dict, ctx: ToolContext) -> dict:
    """Analyze the project tree and, unless ``save`` is false, store the findings."""
    payload = {
        "success": False, "docsIndexed": 0, "exportsFound": 0,
        "routesFound": 0, "patternsFound": 0, "entriesSaved": 0,
    }
    if not ctx.project_root:
        return {**payload, "error": "Project root is not configured", "code": "INVALID_INPUT"}

    analysis = await asyncio.to_thread(analyze_repository, ctx.project_root)
    payload.update(
        docsIndexed=analysis.docs_indexed,
        exportsFound=analysis.exports_found,
        routesFound=analysis.routes_found,
        patternsFound=len(analysis.patterns),
    )

    if args.get("save", True) is not False and analysis.entries:
        try:
            payload["entriesSaved"] = await save_discoveries(
                analysis.entries, ctx.repository, ctx.manifest, ctx.fts_store,
            )
        except KnowledgeMemoryError as exc:
            return {**payload, "error": exc.message, "code": exc.code}

    payload["success"] = True
    return payload


HANDLERS = {
    "memory_search": memory_search,
    "memory_add": memory_add,
    "memory_list": memory_list,
    "memory_delete": memory_delete,
    "memory_analyze": memory_analyze,
}


async def call_tool(name: str, args: Optional[dict], ctx: ToolContext) -> dict:
    """Dispatch a tool call by name."""
    handler = HANDLERS.get(name)
    if handler is None:
        return {"error": f"Unknown tool: {name}", "code": "UNKNOWN_TOOL"}
    return await handler(args or {}, ctx)


# ---------------------------------------------------------------------------
# Tool definitions (JSON Schema)
# ---------------------------------------------------------------------------

_CATEGORY_ENUM = list(CATEGORIES)

TOOL_DEFINITIONS = [
    {
        "name": "memory_search",
        "description": "Search project memory. Returns relevant knowledge entries.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Natural language search query",
                    "minLength": 1,
                    "maxLength": MAX_QUERY_LENGTH,
                },
                "limit": {
                    "type": "number",
                    "description": "Maximum results to return (default: 5, max: 20)",
                    "minimum": 1,
                    "maximum": MAX_SEARCH_LIMIT,
                    "default": 5,
                },
                "category": {
                    "type": "string",
                    "description": "Filter by category",
                    "enum": _CATEGORY_ENUM,
                },
                "mode": {
                    "type": "string",
                    "description": "Search mode (default: configured mode)",
                    "enum": ["vector", "keyword", "hybrid"],
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "memory_add",
        "description": "Add a new knowledge entry to project memory.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The knowledge content to store",
                    "minLength": 1,
                    "maxLength": MAX_CONTENT_LENGTH,
                },
                "category": {
                    "type": "string",
                    "description": "Entry category (default: general)",
                    "enum": _CATEGORY_ENUM,
                    "default": DEFAULT_CATEGORY,
                },
                "keywords": {
                    "type": "array",
                    "description": "Keywords for search boosting",
                    "items": {"type": "string"},
                    "maxItems": MAX_KEYWORDS,
                },
            },
            "required": ["content"],
        },
    },
    {
        "name": "memory_list",
        "description": "List memory entries, optionally filtered by category.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "description": "Filter by category (omit for all)",
                    "enum": _CATEGORY_ENUM,
                },
                "limit": {
                    "type": "number",
                    "description": "Maximum entries to return (default: 50)",
                    "minimum": 1,
                    "maximum": MAX_LIST_LIMIT,
                    "default": 50,
                },
            },
        },
    },
    {
        "name": "memory_delete",
        "description": "Delete a memory entry by ID.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Entry ID to delete"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "memory_analyze",
        "description": (
            "Analyze the codebase: index README and docs, extract exported members "
            "of key files, detect API routes and infer architecture patterns."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "save": {
                    "type": "boolean",
                    "description": "Store the findings in memory (default: true)",
                    "default": True,
                },
            },
        },
    },
]
