"""
Repository discovery: heuristic passes that describe a codebase from its
files alone, with no model in the loop.

``scan_repository`` counts languages, finds entry points and top-level
structure, and guesses the project type from its manifest files.
``analyze_repository`` goes deeper: README and docs pages, exported members
of the most central source files, HTTP route declarations and
directory-based architecture patterns.

Both produce :class:`MemoryEntryInput` objects with source ``discovery``;
:func:`save_discoveries` stores them and marks discovery complete in the
manifest.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from knowledge_memory.errors import KnowledgeMemoryError
from knowledge_memory.kb.local.models import MemoryEntryInput, MemoryMetadata

if TYPE_CHECKING:
    from knowledge_memory.kb.local.fts_store import FtsStore
    from knowledge_memory.kb.local.manifest import Manifest
    from knowledge_memory.kb.local.vector_store import MemoryRepository

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IGNORE_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "__pycache__", "venv",
    ".venv", "vendor", "target", ".idea", ".vscode", "coverage",
})

LANGUAGE_MAP = {
    ".ts": "TypeScript", ".tsx": "TypeScript (React)",
    ".js": "JavaScript", ".jsx": "JavaScript (React)",
    ".py": "Python", ".go": "Go", ".rs": "Rust", ".java": "Java",
    ".kt": "Kotlin", ".rb": "Ruby", ".php": "PHP", ".cs": "C#",
    ".cpp": "C++", ".c": "C", ".swift": "Swift", ".vue": "Vue", ".svelte": "Svelte",
}

ENTRY_POINT_NAMES = frozenset({
    "index.ts", "index.js", "main.ts", "main.js", "main.py", "app.py",
    "main.go", "main.rs", "App.tsx", "App.jsx", "server.ts", "server.js",
})

CONFIG_FILES = (
    "package.json", "tsconfig.json", "pyproject.toml", "Cargo.toml", "go.mod",
    "requirements.txt", "Gemfile", "composer.json",
)

CODE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".rs"})

README_NAMES = ("README.md", "readme.md", "Readme.md", "README.MD")
DOC_DIRS = ("docs", "doc", "documentation", "wiki")

MAX_SCAN_DEPTH = 10
MAX_CODE_DEPTH = 8
STRUCTURE_DEPTH = 3
MAX_DOC_FILES = 20
MAX_KEY_FILES = 30
MAX_ROUTE_FILES = 20
MAX_DOC_KEYWORDS = 10
MIN_README_LENGTH = 50
MIN_DOC_LENGTH = 100

# Ordered from most to least central; a file's score is its first match.
_KEY_FILE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"index\.(ts|js|py)$",
    r"main\.(ts|js|py|go|rs)$",
    r"app\.(ts|tsx|js|jsx|py)$",
    r"server\.(ts|js|py)$",
    r"api/",
    r"routes?/",
    r"controllers?/",
    r"services?/",
    r"models?/",
    r"types?\.(ts|d\.ts)$",
    r"schema",
)]

_ROUTE_FILE_RE = re.compile(r"routes?|api|controllers?|endpoints?", re.IGNORECASE)

_TS_EXPORT_PATTERNS = (
    (re.compile(r"export\s+(?:async\s+)?function\s+(\w+)"), "function"),
    (re.compile(r"export\s+const\s+(\w+)"), "const"),
    (re.compile(r"export\s+class\s+(\w+)"), "class"),
    (re.compile(r"export\s+interface\s+(\w+)"), "interface"),
    (re.compile(r"export\s+type\s+(\w+)"), "type"),
    (re.compile(r"export\s+enum\s+(\w+)"), "enum"),
    (re.compile(r"export\s+default\s+(?:class|function)?\s*(\w+)?"), "default"),
)

_PY_CLASS_RE = re.compile(r"^class\s+(\w+)")
_PY_DEF_RE = re.compile(r"^(?:async\s+)?def\s+(\w+)")

_GO_EXPORT_PATTERNS = (
    (re.compile(r"^func\s+([A-Z]\w*)", re.MULTILINE), "function"),
    (re.compile(r"^type\s+([A-Z]\w*)\s+struct", re.MULTILINE), "struct"),
    (re.compile(r"^type\s+([A-Z]\w*)\s+interface", re.MULTILINE), "interface"),
)

_EXPRESS_ROUTE_RE = re.compile(
    r"(?:app|router)\.(get|post|put|patch|delete|all)\s*\(\s*['\"`]([^'\"`]+)['\"`]",
    re.IGNORECASE,
)
_NEXT_HANDLER_RE = re.compile(
    r"export\s+(?:async\s+)?function\s+(GET|POST|PUT|PATCH|DELETE)", re.IGNORECASE,
)
_NEXT_ROUTE_PATH_RE = re.compile(r"app(.+?)/route\.(?:ts|js)$")
_FASTIFY_ROUTE_RE = re.compile(
    r"fastify\.(get|post|put|patch|delete)\s*\(\s*['\"]([^'\"]+)['\"]", re.IGNORECASE,
)
_FASTAPI_ROUTE_RE = re.compile(
    r"@(?:app|router)\.(get|post|put|patch|delete)\s*\(\s*['\"]([^'\"]+)['\"]",
    re.IGNORECASE,
)
_FLASK_ROUTE_RE = re.compile(
    r"@app\.route\s*\(\s*['\"]([^'\"]+)['\"](?:.*?methods\s*=\s*\[['\"](\w+)['\"]\])?",
    re.IGNORECASE,
)
_GO_ROUTE_RE = re.compile(
    r"(?:Handle|HandleFunc|Get|Post|Put|Delete)\s*\(\s*[\"']([^\"']+)[\"']",
    re.IGNORECASE,
)

_HEADER_RE = re.compile(r"^#+\s+(.+)$", re.MULTILINE)
_BACKTICK_RE = re.compile(r"`([^`]+)`")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ScanResult:
    """Structural overview of a repository."""
    languages: dict[str, int] = field(default_factory=dict)
    structure: list[str] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)
    project_type: Optional[str] = None
    discoveries: list[str] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return sum(self.languages.values())

    def top_languages(self, n: int = 5) -> list[tuple[str, int]]:
        return sorted(self.languages.items(), key=lambda kv: kv[1], reverse=True)[:n]


@dataclass
class RouteInfo:
    method: str
    path: str
    file: str


@dataclass
class AnalysisResult:
    """Entries and counters produced by :func:`analyze_repository`."""
    entries: list[MemoryEntryInput] = field(default_factory=list)
    docs_indexed: int = 0
    exports_found: int = 0
    routes_found: int = 0
    patterns: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return None


def _rel(path: str, root: str) -> str:
    return os.path.relpath(path, root).replace(os.sep, "/")


def _skip_dir(name: str) -> bool:
    return name in IGNORE_DIRS or name.startswith(".")


def _walk(root: str, max_depth: int):
    """os.walk over *root* that prunes ignored dirs and stops below *max_depth*."""
    for dirpath, dirnames, filenames in os.walk(root):
        rel = os.path.relpath(dirpath, root)
        depth = 0 if rel == "." else rel.count(os.sep) + 1
        dirnames[:] = sorted(d for d in dirnames if not _skip_dir(d))
        if depth >= max_depth:
            dirnames[:] = []
        yield dirpath, depth, dirnames, sorted(filenames)


def _entry(content: str, category: str, keywords: list[str],
           file_path: Optional[str] = None) -> MemoryEntryInput:
    return MemoryEntryInput(
        content=content,
        metadata=MemoryMetadata(
            category=category,
            source="discovery",
            file_path=file_path,
            keywords=keywords,
        ),
    )


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------

def detect_project_type(root: str) -> Optional[str]:
    """Guess the framework or toolchain from the first recognised manifest."""
    for name in CONFIG_FILES:
        path = os.path.join(root, name)
        if not os.path.isfile(path):
            continue
        content = _read_text(path)
        if content is None:
            continue

        if name == "package.json":
            try:
                pkg = json.loads(content)
            except json.JSONDecodeError:
                continue
            deps = {**pkg.get("dependencies", {}), **pkg.get("devDependencies", {})}
            for dep, label in (
                ("next", "Next.js application"),
                ("react", "React application"),
                ("vue", "Vue.js application"),
                ("express", "Express.js API"),
                ("fastify", "Fastify API"),
                ("@nestjs/core", "NestJS application"),
            ):
                if dep in deps:
                    return label
            return "Node.js project"
        if name == "pyproject.toml":
            for marker, label in (
                ("fastapi", "FastAPI application"),
                ("django", "Django application"),
                ("flask", "Flask application"),
            ):
                if marker in content:
                    return label
            return "Python project"
        if name == "Cargo.toml":
            return "Rust project"
        if name == "go.mod":
            return "Go project"
    return None


def scan_repository(root: str) -> ScanResult:
    """
    Walk *root* and summarise its languages, entry points and layout.

    Hidden directories and the usual build/dependency folders are skipped.
    """
    result = ScanResult()
    for dirpath, depth, dirnames, filenames in _walk(root, MAX_SCAN_DEPTH):
        if depth < STRUCTURE_DEPTH:
            result.structure.extend(_rel(os.path.join(dirpath, d), root) for d in dirnames)
        for name in filenames:
            language = LANGUAGE_MAP.get(os.path.splitext(name)[1])
            if language:
                result.languages[language] = result.languages.get(language, 0) + 1
            if name in ENTRY_POINT_NAMES:
                result.entry_points.append(_rel(os.path.join(dirpath, name), root))

    result.project_type = detect_project_type(root)
    if result.project_type:
        result.discoveries.append(f"Project type: {result.project_type}")
    result.discoveries.append(
        f"Repository has {result.total_files} source files "
        f"across {len(result.structure)} directories"
    )
    top = result.top_languages(1)
    if top:
        result.discoveries.append(f"Primary language: {top[0][0]}")
    if result.entry_points:
        result.discoveries.append(f"Entry points: {', '.join(result.entry_points[:5])}")

    logger.info("Scanned %s: %d source files", root, result.total_files)
    return result


def build_overview_entry(result: ScanResult) -> MemoryEntryInput:
    """One ``architecture`` entry summarising a :class:`ScanResult`."""
    lines = ["# Repository Structure", "", "## Overview"]
    lines += result.discoveries
    lines += ["", "## Languages"]
    lines += [f"- {lang}: {count} files" for lang, count in result.top_languages()]
    if result.entry_points:
        lines += ["", "## Entry Points"]
        lines += [f"- {p}" for p in result.entry_points[:10]]
    if result.structure:
        lines += ["", "## Key Directories"]
        lines += [f"- {d}" for d in result.structure[:15]]

    keywords = ["structure", "overview", "architecture"]
    keywords += [lang.lower() for lang, _ in result.top_languages(3)]
    return _entry("\n".join(lines), "architecture", keywords)


# ---------------------------------------------------------------------------
# Analyze: documentation
# ---------------------------------------------------------------------------

def extract_keywords_from_markdown(content: str) -> list[str]:
    """Header words and backticked terms, lower-cased, first ten unique."""
    keywords: dict[str, None] = {}
    for header in _HEADER_RE.findall(content):
        for word in header.lower().split():
            if 3 < len(word) < 20:
                keywords[word] = None
    for term in _BACKTICK_RE.findall(content):
        term = term.strip().lower()
        if 2 < len(term) < 30:
            keywords[term] = None
    return list(keywords)[:MAX_DOC_KEYWORDS]


def _find_markdown(directory: str) -> list[str]:
    found = []
    for dirpath, _depth, _dirnames, filenames in _walk(directory, MAX_SCAN_DEPTH):
        found.extend(os.path.join(dirpath, f) for f in filenames if f.endswith(".md"))
    return found


def parse_documentation(root: str) -> list[MemoryEntryInput]:
    """Entries for the README and up to twenty pages of a docs directory."""
    entries = []
    for name in README_NAMES:
        path = os.path.join(root, name)
        if not os.path.isfile(path):
            continue
        content = _read_text(path)
        if content and len(content.strip()) > MIN_README_LENGTH:
            entries.append(_entry(
                f"# Project README\n\n{content}", "architecture",
                extract_keywords_from_markdown(content), file_path=name,
            ))
        break

    for name in DOC_DIRS:
        doc_dir = os.path.join(root, name)
        if not os.path.isdir(doc_dir):
            continue
        for path in _find_markdown(doc_dir)[:MAX_DOC_FILES]:
            content = _read_text(path)
            if content and len(content.strip()) > MIN_DOC_LENGTH:
                entries.append(_entry(
                    content, "architecture",
                    extract_keywords_from_markdown(content), file_path=_rel(path, root),
                ))
    return entries


# ---------------------------------------------------------------------------
# Analyze: code structure
# ---------------------------------------------------------------------------

def find_code_files(root: str) -> list[str]:
    """Source files (paths relative to *root*) with a known code extension."""
    found = []
    for dirpath, _depth, _dirnames, filenames in _walk(root, MAX_CODE_DEPTH):
        for name in filenames:
            if os.path.splitext(name)[1] in CODE_EXTENSIONS:
                found.append(_rel(os.path.join(dirpath, name), root))
    return found


def _key_file_score(rel_path: str) -> int:
    for i, pattern in enumerate(_KEY_FILE_PATTERNS):
        if pattern.search(rel_path):
            return len(_KEY_FILE_PATTERNS) - i
    return 0


def identify_key_files(files: list[str]) -> list[str]:
    """Files matching a key-file pattern, most central first."""
    scored = [(f, _key_file_score(f)) for f in files]
    scored = [item for item in scored if item[1] > 0]
    scored.sort(key=lambda item: item[1], reverse=True)
    return [f for f, _ in scored]


def extract_exports(content: str, rel_path: str) -> list[tuple[str, str]]:
    """``(name, kind)`` pairs for the public members declared in a source file."""
    ext = os.path.splitext(rel_path)[1]
    exports: list[tuple[str, str]] = []

    if ext in (".ts", ".tsx", ".js", ".jsx"):
        for pattern, kind in _TS_EXPORT_PATTERNS:
            exports.extend((m.group(1), kind) for m in pattern.finditer(content) if m.group(1))
    elif ext == ".py":
        for line in content.splitlines():
            match = _PY_CLASS_RE.match(line)
            if match:
                exports.append((match.group(1), "class"))
                continue
            match = _PY_DEF_RE.match(line)
            if match and not match.group(1).startswith("_"):
                exports.append((match.group(1), "function"))
    elif ext == ".go":
        for pattern, kind in _GO_EXPORT_PATTERNS:
            exports.extend((name, kind) for name in pattern.findall(content))
    return exports


def extract_code_structure(root: str, files: list[str]) -> tuple[list[MemoryEntryInput], int]:
    """One ``component`` entry per key file with exports; returns (entries, export count)."""
    entries = []
    total = 0
    for rel_path in identify_key_files(files)[:MAX_KEY_FILES]:
        content = _read_text(os.path.join(root, rel_path))
        if content is None:
            continue
        exports = extract_exports(content, rel_path)
        if not exports:
            continue
        total += len(exports)
        body = "\n".join(f"- `{name}`: {kind}" for name, kind in exports)
        entries.append(_entry(
            f"# {rel_path}\n\nExported members:\n{body}", "component",
            ["export", *(name.lower() for name, _ in exports)], file_path=rel_path,
        ))
    return entries, total


# ---------------------------------------------------------------------------
# Analyze: API routes
# ---------------------------------------------------------------------------

def extract_routes(content: str, rel_path: str) -> list[RouteInfo]:
    """HTTP routes declared in one source file."""
    routes = []
    if rel_path.endswith((".ts", ".js", ".tsx", ".jsx")):
        for m in _EXPRESS_ROUTE_RE.finditer(content):
            routes.append(RouteInfo(m.group(1).upper(), m.group(2), rel_path))
        if "/app/" in f"/{rel_path}" and re.search(r"route\.(ts|js)$", rel_path):
            path_match = _NEXT_ROUTE_PATH_RE.search(rel_path)
            route_path = path_match.group(1) if path_match else "/"
            for m in _NEXT_HANDLER_RE.finditer(content):
                routes.append(RouteInfo(m.group(1).upper(), route_path, rel_path))
        for m in _FASTIFY_ROUTE_RE.finditer(content):
            routes.append(RouteInfo(m.group(1).upper(), m.group(2), rel_path))
    if rel_path.endswith(".py"):
        for m in _FASTAPI_ROUTE_RE.finditer(content):
            routes.append(RouteInfo(m.group(1).upper(), m.group(2), rel_path))
        for m in _FLASK_ROUTE_RE.finditer(content):
            routes.append(RouteInfo((m.group(2) or "GET").upper(), m.group(1), rel_path))
    if rel_path.endswith(".go"):
        for m in _GO_ROUTE_RE.finditer(content):
            routes.append(RouteInfo("HANDLER", m.group(1), rel_path))
    return routes


def detect_api_routes(root: str, files: list[str]) -> tuple[list[MemoryEntryInput], int]:
    """One ``component`` entry per file declaring routes; returns (entries, route count)."""
    by_file: dict[str, list[RouteInfo]] = {}
    for rel_path in [f for f in files if _ROUTE_FILE_RE.search(f)][:MAX_ROUTE_FILES]:
        content = _read_text(os.path.join(root, rel_path))
        if content is None:
            continue
        routes = extract_routes(content, rel_path)
        if routes:
            by_file[rel_path] = routes

    entries = []
    total = 0
    for rel_path, routes in by_file.items():
        total += len(routes)
        body = "\n".join(f"- {r.method} {r.path}" for r in routes)
        methods = list(dict.fromkeys(r.method.lower() for r in routes))
        entries.append(_entry(
            f"# API Routes: {rel_path}\n\n{body}", "component",
            ["api", "routes", "endpoints", *methods], file_path=rel_path,
        ))
    return entries, total


# ---------------------------------------------------------------------------
# Analyze: architecture patterns
# ---------------------------------------------------------------------------

def infer_architecture_patterns(root: str) -> list[str]:
    """Patterns suggested by the top-level (and ``src/``) directory names."""
    try:
        names = os.listdir(root)
    except OSError as exc:
        logger.debug("Cannot list %s: %s", root, exc)
        return []
    dirs = {
        n.lower() for n in names
        if os.path.isdir(os.path.join(root, n)) and not _skip_dir(n)
    }

    def has(*candidates: str) -> bool:
        return any(c in dirs for c in candidates)

    def in_src(name: str) -> bool:
        return os.path.exists(os.path.join(root, "src", name))

    patterns = []
    if "src" in dirs:
        patterns.append("Source in /src directory")
    if has("components") or in_src("components"):
        patterns.append("Component-based architecture")
    if has("services", "service"):
        patterns.append("Service-Controller pattern")
    if has("models", "entities"):
        patterns.append("Model/Entity layer")
    if has("repositories", "repository"):
        patterns.append("Repository pattern")
    if has("hooks") or in_src("hooks"):
        patterns.append("Custom React hooks")
    if has("store", "stores", "redux"):
        patterns.append("State management (store)")
    if has("utils", "helpers", "lib"):
        patterns.append("Utility/helper modules")
    if has("types", "interfaces"):
        patterns.append("Centralized type definitions")
    if has("tests", "test", "__tests__"):
        patterns.append("Dedicated test directory")
    if has("api"):
        patterns.append("API layer separation")
    if has("middleware", "middlewares"):
        patterns.append("Middleware pattern")
    if has("packages", "apps"):
        patterns.append("Monorepo structure")
    if has("features", "modules"):
        patterns.append("Feature/module-based organization")
    return patterns


def analyze_repository(root: str) -> AnalysisResult:
    """
    Run every analysis pass over *root*.

    Returns
    -------
    AnalysisResult
        Entries ready to store, plus per-pass counters.
    """
    result = AnalysisResult()

    doc_entries = parse_documentation(root)
    result.entries.extend(doc_entries)
    result.docs_indexed = len(doc_entries)

    code_files = find_code_files(root)
    export_entries, result.exports_found = extract_code_structure(root, code_files)
    result.entries.extend(export_entries)

    route_entries, result.routes_found = detect_api_routes(root, code_files)
    result.entries.extend(route_entries)

    result.patterns = infer_architecture_patterns(root)
    if result.patterns:
        body = "\n".join(f"- {p}" for p in result.patterns)
        result.entries.append(_entry(
            f"# Architecture Patterns\n\nDetected patterns in this codebase:\n\n{body}",
            "architecture", ["architecture", "patterns", "structure"],
        ))

    logger.info(
        "Analyzed %s: %d docs, %d exports, %d routes, %d patterns",
        root, result.docs_indexed, result.exports_found, result.routes_found,
        len(result.patterns),
    )
    return result


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

async def save_discoveries(
    entries: list[MemoryEntryInput],
    repository: "MemoryRepository",
    manifest: Optional["Manifest"] = None,
    fts_store: Optional["FtsStore"] = None,
) -> int:
    """
    Store *entries* and mark discovery complete.

    The keyword index is mirrored on a best-effort basis.  Returns the
    number of entries stored (duplicates of existing content included).
    """
    saved = 0
    for entry_input in entries:
        entry = await repository.add(entry_input)
        saved += 1
        if fts_store is not None:
            try:
                await fts_store.add(entry)
            except KnowledgeMemoryError as exc:
                logger.warning("FTS sync failed for entry %s: %s", entry.id, exc)

    if manifest is not None:
        manifest.load()
        manifest.set_discovered(True)
        manifest.save()
    return saved
