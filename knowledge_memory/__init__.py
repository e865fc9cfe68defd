"""
knowledge_memory: project knowledge memory for coding agents.

Indexes markdown notes under ``.memory/knowledge`` into a local vector store
and a keyword index, and serves hybrid search over them::

    knowledge-memory init
    knowledge-memory index
    knowledge-memory search "how are sessions refreshed"
"""

__version__ = "0.1.0"
