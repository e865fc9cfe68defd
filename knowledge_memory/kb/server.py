"""
MCP server exposing the memory tools to agents over stdio.

Thin layer over :mod:`knowledge_memory.kb.tools`: every registered tool
forwards its arguments to :func:`call_tool` and returns the handler's
payload unchanged.  The stores are opened when the server starts and closed
when it stops.

Usage::

    knowledge-memory serve
    knowledge-memory --root /path/to/project serve
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from knowledge_memory import __version__
from knowledge_memory.errors import KnowledgeMemoryError, StorageError
from knowledge_memory.kb.services import open_services
from knowledge_memory.kb.tools import TOOL_DEFINITIONS, ToolContext, call_tool

logger = logging.getLogger(__name__)

SERVER_NAME = "knowledge-memory"

# Shown to every MCP client on connect.
_MCP_INSTRUCTIONS = (
    "Project knowledge memory (5 tools).\n"
    "\n"
    "SEARCH:  Use memory_search before answering questions about this project.\n"
    "STORE:   Use memory_add for decisions, gotchas and patterns worth keeping.\n"
    "BROWSE:  Use memory_list and memory_delete to curate entries.\n"
    "DISCOVER: Use memory_analyze once per project to seed memory from the code.\n"
)

_DESCRIPTIONS = {d["name"]: d["description"] for d in TOOL_DEFINITIONS}


def _without_none(args: dict) -> dict:
    return {k: v for k, v in args.items() if v is not None}


def register_memory_tools(mcp, get_context: Callable[[], ToolContext]) -> None:
    """
    Register one MCP tool per handler in :data:`TOOL_DEFINITIONS`.

    Args:
        mcp: FastMCP instance (anything with a compatible ``tool`` decorator).
        get_context: Returns the live :class:`ToolContext` at call time.
    """

    async def dispatch(name: str, args: dict) -> dict:
        try:
            return await call_tool(name, args, get_context())
        except KnowledgeMemoryError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return {"error": exc.message, "code": exc.code}
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return {"error": str(exc), "code": "INTERNAL_ERROR"}

    @mcp.tool(name="memory_search", description=_DESCRIPTIONS["memory_search"])
    async def memory_search(
        query: str,
        limit: int = 5,
        category: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> dict[str, Any]:
        return await dispatch("memory_search", _without_none(
            {"query": query, "limit": limit, "category": category, "mode": mode},
        ))

    @mcp.tool(name="memory_add", description=_DESCRIPTIONS["memory_add"])
    async def memory_add(
        content: str,
        category: Optional[str] = None,
        keywords: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        return await dispatch("memory_add", _without_none(
            {"content": content, "category": category, "keywords": keywords},
        ))

    @mcp.tool(name="memory_list", description=_DESCRIPTIONS["memory_list"])
    async def memory_list(
        category: Optional[str] = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        return await dispatch("memory_list", _without_none(
            {"category": category, "limit": limit},
        ))

    @mcp.tool(name="memory_delete", description=_DESCRIPTIONS["memory_delete"])
    async def memory_delete(id: str) -> dict[str, Any]:
        return await dispatch("memory_delete", {"id": id})

    @mcp.tool(name="memory_analyze", description=_DESCRIPTIONS["memory_analyze"])
    async def memory_analyze(save: bool = True) -> dict[str, Any]:
        return await dispatch("memory_analyze", {"save": save})


def create_server(project_root: str):
    """
    Create the FastMCP server for *project_root*.

    The stores are connected in the server lifespan, so nothing touches
    disk until :meth:`run` is called.
    """
    from mcp.server.fastmcp import FastMCP

    live: dict[str, ToolContext] = {}

    @asynccontextmanager
    async def lifespan(server):
        async with open_services(project_root) as svc:
            live["ctx"] = svc.tool_context()
            logger.info(
                "%s %s serving %s", SERVER_NAME, __version__, svc.paths.root,
            )
            try:
                yield live["ctx"]
            finally:
                live.clear()

    def get_context() -> ToolContext:
        ctx = live.get("ctx")
        if ctx is None:
            raise StorageError("Memory stores are not open", "NOT_CONNECTED")
        return ctx

    mcp = FastMCP(name=SERVER_NAME, instructions=_MCP_INSTRUCTIONS, lifespan=lifespan)
    register_memory_tools(mcp, get_context)
    return mcp
