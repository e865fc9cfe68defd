"""
`knowledge-memory` command line interface.

Commands
--------
knowledge-memory init [--force]                 -- create .memory/ layout, templates, MCP registration
knowledge-memory index [--force] [--dry-run]    -- index .memory/knowledge/*.md
knowledge-memory search "<query>"               -- hybrid search
knowledge-memory search "<query>" --mode keyword --format json
knowledge-memory add "<content>" --category gotcha
knowledge-memory list [--category C] [--limit N]
knowledge-memory delete <id>
knowledge-memory status                         -- change-tracking summary
knowledge-memory scan [--no-save]               -- repository structure overview
knowledge-memory analyze [--no-save]            -- docs, exports, routes, patterns
knowledge-memory serve                          -- MCP server on stdio
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

from knowledge_memory import __version__
from knowledge_memory.config import SEARCH_MODES, MemoryConfig, ProjectPaths
from knowledge_memory.errors import KnowledgeMemoryError
from knowledge_memory.kb.formatters import FORMATS, create_formatter
from knowledge_memory.kb.local.discovery import (
    analyze_repository,
    build_overview_entry,
    save_discoveries,
    scan_repository,
)
from knowledge_memory.kb.local.indexer import Indexer, IndexProgress
from knowledge_memory.kb.local.manifest import Manifest
from knowledge_memory.kb.local.models import CATEGORIES, MemoryEntryInput, MemoryMetadata
from knowledge_memory.kb.server import SERVER_NAME, create_server
from knowledge_memory.kb.services import open_services

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INDEX_ERRORS = 2

_KNOWLEDGE_SUBDIRS = ("architecture", "components", "domain", "patterns")

_GOTCHAS_TEMPLATE = """# Gotchas and Known Issues

<!-- vector-index: true -->
<!-- keywords: gotcha, issue, known, bug -->

### Example Gotcha

Description of a non-obvious behavior or common mistake.
"""

_CONFIG_TEMPLATE = """# knowledge-memory settings (environment variables take precedence)
min_score: -0.5
chunk_size: 2000
chunk_overlap_percent: 15
default_search_mode: hybrid
embedding:
  provider: ollama
  model: nomic-embed-text
  base_url: http://localhost:11434
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _project_root(args: argparse.Namespace) -> str:
    return os.path.abspath(args.root or os.getcwd())


def _mcp_registration() -> str:
    config = {"mcpServers": {SERVER_NAME: {"command": "knowledge-memory", "args": ["serve"]}}}
    return json.dumps(config, indent=2) + "\n"


def _write_if_missing(path: str, content: str, force: bool) -> bool:
    if os.path.exists(path) and not force:
        return False
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return True


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_init(args: argparse.Namespace) -> int:
    """Create the .memory/ tree, templates and the MCP server registration."""
    paths = ProjectPaths.for_root(_project_root(args))

    for sub in _KNOWLEDGE_SUBDIRS:
        os.makedirs(os.path.join(paths.knowledge_dir, sub), exist_ok=True)
    os.makedirs(paths.store_dir, exist_ok=True)
    print(f"Knowledge directory: {paths.knowledge_dir}")

    templates = (
        (os.path.join(paths.knowledge_dir, "gotchas.md"), _GOTCHAS_TEMPLATE),
        (paths.config_file, _CONFIG_TEMPLATE),
        (paths.mcp_config_file, _mcp_registration()),
    )
    for path, content in templates:
        if _write_if_missing(path, content, args.force):
            print(f"  created  {os.path.relpath(path, paths.root)}")
        else:
            print(f"  skipped  {os.path.relpath(path, paths.root)} (exists; use --force)")
    return EXIT_OK


async def _run_indexer(indexer: Indexer, args: argparse.Namespace):
    pbar = tqdm(total=None, unit="file", desc="Indexing")

    def _progress(progress: IndexProgress) -> None:
        if pbar.total != progress.total:
            pbar.total = progress.total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(progress.file), refresh=False)
        pbar.update(1)

    try:
        return await indexer.index(
            force=args.force, dry_run=args.dry_run, on_progress=_progress,
        )
    finally:
        pbar.close()


async def _index_async(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    paths = ProjectPaths.for_root(project_root)
    if not os.path.isdir(paths.knowledge_dir):
        print(
            f"Knowledge directory not found: {paths.knowledge_dir}\n"
            "Run `knowledge-memory init` first.",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    if args.dry_run:
        # Parse and chunk only; the stores are never opened.
        config = MemoryConfig.load(project_root)
        indexer = Indexer(
            None,
            Manifest(paths.meta_file),
            paths.knowledge_dir,
            chunk_size=config.CHUNK_SIZE,
            chunk_overlap_percent=config.CHUNK_OVERLAP_PERCENT,
        )
        result = await _run_indexer(indexer, args)
    else:
        async with open_services(project_root) as svc:
            indexer = Indexer(
                svc.repository,
                svc.manifest,
                svc.paths.knowledge_dir,
                chunk_size=svc.config.CHUNK_SIZE,
                chunk_overlap_percent=svc.config.CHUNK_OVERLAP_PERCENT,
                fts_store=svc.fts_store,
            )
            result = await _run_indexer(indexer, args)
            await indexer.rebuild_keyword_index()

    print(
        f"\nIndex complete{' (dry run)' if args.dry_run else ''}:\n"
        f"  Processed: {result.files_processed}\n"
        f"  Skipped:   {result.files_skipped}\n"
        f"  Created:   {result.entries_created}\n"
        f"  Deleted:   {result.entries_deleted}\n"
        f"  Errors:    {len(result.errors)}\n"
        f"  Time:      {result.duration_ms / 1000:.1f}s"
    )
    for err in result.errors:
        print(f"  ! {err.file}: {err.error}", file=sys.stderr)
    return EXIT_INDEX_ERRORS if result.errors else EXIT_OK


def _cmd_index(args: argparse.Namespace) -> int:
    """Index the knowledge directory."""
    return asyncio.run(_index_async(args))


async def _search_async(args: argparse.Namespace) -> int:
    formatter = create_formatter(args.format)
    async with open_services(_project_root(args)) as svc:
        results = await svc.searcher.search(
            args.query, limit=args.limit, mode=args.mode, category=args.category,
        )
    print(formatter.format(results, args.query))
    return EXIT_OK


def _cmd_search(args: argparse.Namespace) -> int:
    """Search stored knowledge."""
    return asyncio.run(_search_async(args))


async def _add_async(args: argparse.Namespace) -> int:
    async with open_services(_project_root(args)) as svc:
        entry = await svc.repository.add(MemoryEntryInput(
            content=args.content,
            metadata=MemoryMetadata(category=args.category, source="manual"),
        ))
        try:
            await svc.fts_store.add(entry)
        except KnowledgeMemoryError as exc:
            logger.warning("FTS sync failed for entry %s: %s", entry.id, exc)
    print(f"Added entry {entry.id}")
    return EXIT_OK


def _cmd_add(args: argparse.Namespace) -> int:
    """Add a manual entry."""
    return asyncio.run(_add_async(args))


async def _list_async(args: argparse.Namespace) -> int:
    async with open_services(_project_root(args)) as svc:
        entries = await svc.repository.list(category=args.category, limit=args.limit)
    if not entries:
        print("  (no entries)")
        return EXIT_OK
    for e in entries:
        preview = e.content[:80].replace("\n", " ")
        location = e.metadata.file_path or e.metadata.source
        print(f"  {e.id}  {e.metadata.category:<12}  {location:<30}  {preview}")
    print(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return EXIT_OK


def _cmd_list(args: argparse.Namespace) -> int:
    """List stored entries."""
    return asyncio.run(_list_async(args))


async def _delete_async(args: argparse.Namespace) -> int:
    async with open_services(_project_root(args)) as svc:
        deleted = await svc.repository.delete(args.id)
        if deleted:
            try:
                await svc.fts_store.delete(args.id)
            except KnowledgeMemoryError as exc:
                logger.warning("FTS delete failed for entry %s: %s", args.id, exc)
    if not deleted:
        print(f"Entry not found: {args.id}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Deleted entry {args.id}")
    return EXIT_OK


def _cmd_delete(args: argparse.Namespace) -> int:
    """Delete one entry by id."""
    return asyncio.run(_delete_async(args))


async def _status_async(args: argparse.Namespace) -> int:
    async with open_services(_project_root(args)) as svc:
        meta = svc.manifest.load()
        entry_count = await svc.repository.count()
        keyword_count = await svc.fts_store.count()

    print("\nKnowledge Memory Status")
    print("=" * 40)
    rows = (
        ("knowledge_dir", svc.paths.knowledge_dir),
        ("files_tracked", len(meta.file_hashes)),
        ("last_indexed_at", meta.last_indexed_at or "never"),
        ("entries", entry_count),
        ("keyword_rows", keyword_count),
        ("discovery", "complete" if meta.discovery.complete else "pending"),
        ("search_mode", svc.config.DEFAULT_SEARCH_MODE),
        ("embedding", f"{svc.config.EMBEDDING_PROVIDER}/{svc.config.EMBEDDING_MODEL}"),
    )
    for k, v in rows:
        print(f"  {k:<20} {v}")
    print()
    return EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    """Print a change-tracking summary."""
    return asyncio.run(_status_async(args))


async def _save_discoveries(project_root: str, entries: list[MemoryEntryInput]) -> Optional[int]:
    """Store discovery entries; None when the project has not been initialised."""
    paths = ProjectPaths.for_root(project_root)
    if not os.path.isdir(paths.store_dir):
        print(
            f"Store directory not found: {paths.store_dir}\n"
            "Run `knowledge-memory init` first, or pass --no-save.",
            file=sys.stderr,
        )
        return None
    async with open_services(project_root) as svc:
        return await save_discoveries(entries, svc.repository, svc.manifest, svc.fts_store)


async def _scan_async(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    result = scan_repository(project_root)

    print(f"\nScanned {project_root}")
    for line in result.discoveries:
        print(f"  {line}")
    for lang, count in result.top_languages():
        print(f"  {lang:<20} {count} files")

    if args.no_save:
        return EXIT_OK
    saved = await _save_discoveries(project_root, [build_overview_entry(result)])
    if saved is None:
        return EXIT_FAILURE
    print(f"\nSaved {saved} entr{'y' if saved == 1 else 'ies'} to memory")
    return EXIT_OK


def _cmd_scan(args: argparse.Namespace) -> int:
    """Summarise the repository layout."""
    return asyncio.run(_scan_async(args))


async def _analyze_async(args: argparse.Namespace) -> int:
    project_root = _project_root(args)
    analysis = analyze_repository(project_root)

    print(f"\nAnalyzed {project_root}")
    rows = (
        ("docs_indexed", analysis.docs_indexed),
        ("exports_found", analysis.exports_found),
        ("routes_found", analysis.routes_found),
        ("patterns_found", len(analysis.patterns)),
    )
    for k, v in rows:
        print(f"  {k:<20} {v}")
    for pattern in analysis.patterns:
        print(f"  - {pattern}")

    if args.no_save or not analysis.entries:
        return EXIT_OK
    saved = await _save_discoveries(project_root, analysis.entries)
    if saved is None:
        return EXIT_FAILURE
    print(f"\nSaved {saved} entr{'y' if saved == 1 else 'ies'} to memory")
    return EXIT_OK


def _cmd_analyze(args: argparse.Namespace) -> int:
    """Extract docs, exports, routes and patterns from the code."""
    return asyncio.run(_analyze_async(args))


def _cmd_serve(args: argparse.Namespace) -> int:
    """Run the MCP server on stdio until the client disconnects."""
    server = create_server(_project_root(args))
    server.run()
    return EXIT_OK


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-memory",
        description="Project knowledge memory: index markdown notes and search them",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--root", default=None, help="Project root (default: current directory)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- init ---
    init_p = subparsers.add_parser("init", help="Create the .memory/ layout")
    init_p.add_argument("--force", action="store_true", help="Overwrite existing templates")
    init_p.set_defaults(func=_cmd_init)

    # --- index ---
    index_p = subparsers.add_parser("index", help="Index knowledge files")
    index_p.add_argument("--force", action="store_true", help="Re-index unchanged files")
    index_p.add_argument("--dry-run", action="store_true", help="Parse only; write nothing")
    index_p.set_defaults(func=_cmd_index)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Search stored knowledge")
    search_p.add_argument("query", help="Search query")
    search_p.add_argument("--limit", type=int, default=5, help="Maximum results (default: 5)")
    search_p.add_argument("--mode", choices=SEARCH_MODES, default=None,
                          help="Search mode (default: configured)")
    search_p.add_argument("--category", choices=CATEGORIES, default=None)
    search_p.add_argument("--format", choices=FORMATS, default="text")
    search_p.set_defaults(func=_cmd_search)

    # --- add ---
    add_p = subparsers.add_parser("add", help="Add a knowledge entry")
    add_p.add_argument("content", help="Entry text")
    add_p.add_argument("--category", choices=CATEGORIES, default="general")
    add_p.set_defaults(func=_cmd_add)

    # --- list ---
    list_p = subparsers.add_parser("list", help="List stored entries")
    list_p.add_argument("--category", choices=CATEGORIES, default=None)
    list_p.add_argument("--limit", type=int, default=50)
    list_p.set_defaults(func=_cmd_list)

    # --- delete ---
    delete_p = subparsers.add_parser("delete", help="Delete an entry by id")
    delete_p.add_argument("id", help="Entry id")
    delete_p.set_defaults(func=_cmd_delete)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show change-tracking summary")
    status_p.set_defaults(func=_cmd_status)

    # --- scan ---
    scan_p = subparsers.add_parser("scan", help="Summarise the repository layout")
    scan_p.add_argument("--no-save", action="store_true", help="Print only; store nothing")
    scan_p.set_defaults(func=_cmd_scan)

    # --- analyze ---
    analyze_p = subparsers.add_parser(
        "analyze", help="Extract docs, exports, API routes and patterns",
    )
    analyze_p.add_argument("--no-save", action="store_true", help="Print only; store nothing")
    analyze_p.set_defaults(func=_cmd_analyze)

    # --- serve ---
    serve_p = subparsers.add_parser("serve", help="Run the MCP server on stdio")
    serve_p.set_defaults(func=_cmd_serve)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Entry point for the ``knowledge-memory`` console script.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        return args.func(args)
    except KnowledgeMemoryError as exc:
        print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
