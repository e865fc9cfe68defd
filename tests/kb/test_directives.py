"""
Unit tests for knowledge_memory.kb.local.directives
"""

from __future__ import annotations


class TestParseDirectives:
    def test_defaults_without_directives(self):
        from knowledge_memory.kb.local.directives import parse_directives
        result = parse_directives("# Plain doc\n\nNo comments here.")
        assert result.vector_index is True
        assert result.keywords == []
        assert result.warnings == []

    def test_vector_index_false(self):
        from knowledge_memory.kb.local.directives import parse_directives
        assert parse_directives("<!-- vector-index: false -->").vector_index is False

    def test_vector_index_case_insensitive(self):
        from knowledge_memory.kb.local.directives import parse_directives
        assert parse_directives("<!-- Vector-Index: FALSE -->").vector_index is False
        assert parse_directives("<!--vector-index:True-->").vector_index is True

    def test_invalid_vector_index_warns_and_keeps_default(self):
        from knowledge_memory.kb.local.directives import parse_directives
        result = parse_directives("<!-- vector-index: maybe -->")
        assert result.vector_index is True
        assert result.warnings == ["Invalid vector-index value: maybe"]

    def test_keywords_trimmed_lowercased_and_empties_dropped(self):
        from knowledge_memory.kb.local.directives import parse_directives
        result = parse_directives("<!-- keywords: Auth,  Tokens , , SESSION -->")
        assert result.keywords == ["auth", "tokens", "session"]
