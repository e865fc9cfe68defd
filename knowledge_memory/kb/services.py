"""
Store wiring shared by the CLI and the MCP server.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from knowledge_memory.config import MemoryConfig, ProjectPaths
from knowledge_memory.kb.local.embedder import create_embedding_provider
from knowledge_memory.kb.local.fts_store import FtsStore
from knowledge_memory.kb.local.manifest import Manifest
from knowledge_memory.kb.local.searcher import HybridSearch
from knowledge_memory.kb.local.vector_store import MemoryRepository
from knowledge_memory.kb.tools import ToolContext

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Connected stores for one project."""
    paths: ProjectPaths
    config: MemoryConfig
    manifest: Manifest
    repository: MemoryRepository
    fts_store: FtsStore
    searcher: HybridSearch

    def tool_context(self) -> ToolContext:
        return ToolContext(
            repository=self.repository,
            searcher=self.searcher,
            fts_store=self.fts_store,
            manifest=self.manifest,
            project_root=self.paths.root,
        )


@asynccontextmanager
async def open_services(project_root: str) -> AsyncIterator[Services]:
    """Wire up the stores for *project_root* and close them afterwards."""
    paths = ProjectPaths.for_root(project_root)
    config = MemoryConfig.load(project_root)
    repository = MemoryRepository(paths.vectors_db, create_embedding_provider(config))
    fts_store = FtsStore(paths.fts_db(config.FTS_DB_NAME))

    await repository.connect()
    try:
        fts_store.open()
        try:
            logger.debug("Opened stores under %s", paths.store_dir)
            yield Services(
                paths=paths,
                config=config,
                manifest=Manifest(paths.meta_file),
                repository=repository,
                fts_store=fts_store,
                searcher=HybridSearch(repository, fts_store, config),
            )
        finally:
            fts_store.close()
    finally:
        await repository.disconnect()
