"""Tests for JSON repair of model-emitted text."""

import json

from parley.services.repair import EXCERPT_LIMIT, apply_heuristics, excerpt, repair_json


class TestRepairJson:
    """Tests for repair_json."""

    def test_valid_json_is_not_marked_repaired(self):
        """Test that strict JSON parses without the repaired flag."""
        result = repair_json('{"name": "list_documents", "arguments": {}}')

        assert result.ok
        assert result.value == {"name": "list_documents", "arguments": {}}
        assert result.repaired is False

    def test_trailing_commas_are_removed(self):
        """Test that trailing commas in objects and arrays are tolerated."""
        result = repair_json('{"ids": ["a", "b",], "limit": 2,}')

        assert result.ok
        assert result.value == {"ids": ["a", "b"], "limit": 2}
        assert result.repaired is True

    def test_single_quotes_become_double_quotes(self):
        """Test that single-quoted keys and values are converted."""
        result = repair_json("{'name': 'read_document', 'document_id': 'doc_001'}")

        assert result.ok
        assert result.value == {"name": "read_document", "document_id": "doc_001"}

    def test_parenthesis_arrays_become_lists(self):
        """Test that tuple-style string lists are turned into arrays."""
        result = repair_json('{"ids": ("doc_001", "doc_002")}')

        assert result.ok
        assert result.value == {"ids": ["doc_001", "doc_002"]}

    def test_unescaped_inner_quotes_are_escaped(self):
        """Test that a quote inside a string value does not end the string."""
        result = repair_json('{"text": "she said "hello" to me"}')

        assert result.ok
        assert result.value == {"text": 'she said "hello" to me'}

    def test_empty_payload_is_an_error(self):
        """Test that blank text yields an error result."""
        result = repair_json("   ")

        assert not result.ok
        assert result.value is None
        assert result.error.message == "Empty JSON payload"

    def test_scalar_json_is_an_error(self):
        """Test that valid JSON which is not an object or array is rejected."""
        result = repair_json("42")

        assert not result.ok
        assert "not an object" in result.error.message

    def test_prose_is_an_error_with_excerpt(self):
        """Test that unrepairable text reports the offending excerpt."""
        result = repair_json("not valid json at all")

        assert not result.ok
        assert result.error.message.startswith("Invalid JSON")
        assert result.error.excerpt == "not valid json at all"


class TestHeuristics:
    """Tests for the individual textual fix-ups."""

    def test_heuristics_leave_valid_json_unchanged(self):
        """Test that well-formed JSON passes through the heuristics intact."""
        text = '{"a": [1, 2], "b": {"c": "d, e"}}'

        assert json.loads(apply_heuristics(text)) == json.loads(text)

    def test_literal_newline_inside_string_is_escaped(self):
        """Test that raw newlines inside strings are escaped."""
        fixed = apply_heuristics('{"text": "line one\nline two"}')

        assert json.loads(fixed) == {"text": "line one\nline two"}

    def test_excerpt_is_capped(self):
        """Test that long excerpts are cut to the limit with an ellipsis."""
        text = "x" * (EXCERPT_LIMIT + 100)

        assert excerpt(text) == "x" * EXCERPT_LIMIT + "..."
        assert excerpt("  short  ") == "short"
