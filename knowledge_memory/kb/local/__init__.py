"""
Local knowledge store: markdown chunking, change tracking, the SQLite vector
store and FTS5 keyword index, and the hybrid searcher on top of them.
"""
