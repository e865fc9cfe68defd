"""
Error taxonomy for knowledge-memory.

Every error carries a machine-readable ``code`` and a ``recoverable`` flag so
callers (CLI, tool handlers) can turn it into a structured response.
"""

from __future__ import annotations

from typing import Any, Optional


class KnowledgeMemoryError(Exception):
    """Base error for all knowledge-memory failures."""

    def __init__(
        self,
        message: str,
        code: str,
        recoverable: bool = True,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable
        self.context = context or {}


class StorageError(KnowledgeMemoryError):
    """Raised when a storage collaborator (vector store, FTS index) fails."""

    def __init__(self, message: str, code: str,
                 context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, f"STORAGE_{code}", True, context)


class ValidationError(KnowledgeMemoryError):
    """Raised for bad caller-supplied arguments (id, category, path, size)."""

    def __init__(self, message: str, field: Optional[str] = None,
                 context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", True,
                         {**(context or {}), "field": field})
        self.field = field


class ConfigError(KnowledgeMemoryError):
    """Raised when configuration cannot be resolved."""

    def __init__(self, message: str,
                 context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, "CONFIG_ERROR", True, context)


class FileSystemError(KnowledgeMemoryError):
    """Raised when a file the core owns cannot be read or written."""

    def __init__(self, message: str, path: str,
                 context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, "FS_ERROR", True, {**(context or {}), "path": path})
        self.path = path


class EmbeddingError(KnowledgeMemoryError):
    """Raised when the embedding provider cannot produce a vector."""

    def __init__(self, message: str,
                 context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, "EMBEDDING_ERROR", True, context)
