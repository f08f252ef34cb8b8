"""Tests for response normalization across provider shapes."""

from parley.models.llm import NormalizedResponse, ToolCall
from parley.services.normalizer import (
    EMPTY_RESPONSE_CONTENT,
    GeminiShape,
    InlineParseFailure,
    InlineToolCall,
    LegacyFunctionCallShape,
    OpenAIShape,
    PlainText,
    PreNormalized,
    Unrecognized,
    classify_response,
    normalize_response,
    parse_inline_tool_call,
)


def known_tools(name: str) -> bool:
    return name in {"list_documents", "read_document"}


class TestClassifyResponse:
    """Tests for resolving raw replies into shapes."""

    def test_openai_with_tool_calls(self):
        """Test that chat-completions replies with tool calls are OpenAIShape."""
        raw = {"choices": [{"message": {"content": None, "tool_calls": [{"id": "1"}]}}]}
        assert isinstance(classify_response(raw), OpenAIShape)

    def test_legacy_function_call(self):
        """Test that a message with function_call is the legacy shape."""
        raw = {"choices": [{"message": {"function_call": {"name": "x", "arguments": "{}"}}}]}
        assert isinstance(classify_response(raw), LegacyFunctionCallShape)

    def test_openai_text_only_is_plain_text(self):
        """Test that a chat-completions reply without calls is PlainText."""
        shape = classify_response({"model": "m", "choices": [{"message": {"content": "hi"}}]})

        assert isinstance(shape, PlainText)
        assert shape.text == "hi"
        assert shape.model == "m"

    def test_gemini_candidates(self):
        """Test that Gemini candidate replies are GeminiShape."""
        raw = {"candidates": [{"content": {"parts": [{"text": "hi"}]}}], "modelVersion": "gemini"}
        shape = classify_response(raw)

        assert isinstance(shape, GeminiShape)
        assert shape.model == "gemini"

    def test_pre_normalized_and_strings(self):
        """Test that canonical records and strings are recognized."""
        assert isinstance(classify_response({"content": "x", "tool_calls": []}), PreNormalized)
        assert isinstance(classify_response(NormalizedResponse(content="x")), PreNormalized)
        assert isinstance(classify_response("plain"), PlainText)

    def test_unknown_shapes(self):
        """Test that anything else is Unrecognized."""
        assert isinstance(classify_response(None), Unrecognized)
        assert isinstance(classify_response({"foo": "bar"}), Unrecognized)
        assert isinstance(classify_response({"choices": []}), Unrecognized)


class TestNormalizeResponse:
    """Tests for normalize_response."""

    def test_openai_tool_calls_are_decoded(self):
        """Test that JSON string arguments become dicts."""
        raw = {
            "choices": [
                {
                    "message": {
                        "content": "Looking that up.",
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "read_document", "arguments": '{"document_id": "doc_001"}'},
                            }
                        ],
                    }
                }
            ]
        }
        response = normalize_response(raw)

        assert response.content == "Looking that up."
        expected = ToolCall(id="call_1", name="read_document", arguments={"document_id": "doc_001"})
        assert response.tool_calls == [expected]
        assert not response.parse_error

    def test_repairable_native_arguments(self):
        """Test that slightly malformed native arguments are repaired."""
        raw = {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            {
                                "id": "c",
                                "function": {"name": "read_document", "arguments": "{'document_id': 'doc_002',}"},
                            }
                        ]
                    }
                }
            ]
        }
        response = normalize_response(raw)

        assert response.tool_calls[0].arguments == {"document_id": "doc_002"}

    def test_unrepairable_native_arguments_are_a_tool_failure(self):
        """Test that arguments no repair can decode flag a tool-call failure."""
        call = {"id": "c", "function": {"name": "read_document", "arguments": "???"}}
        raw = {"choices": [{"message": {"tool_calls": [call]}}]}
        response = normalize_response(raw)

        assert response.tool_call_failure
        assert response.tool_calls == []
        assert response.error_metadata["function_name"] == "read_document"

    def test_legacy_function_call(self):
        """Test that the single legacy function_call becomes one tool call."""
        raw = {"choices": [{"message": {"function_call": {"name": "list_documents", "arguments": "{}"}}}]}
        response = normalize_response(raw)

        assert len(response.tool_calls) == 1
        assert response.tool_calls[0].name == "list_documents"
        assert response.tool_calls[0].id.startswith("call_")

    def test_gemini_text_and_function_calls(self):
        """Test that Gemini parts yield joined text and tool calls, skipping thoughts."""
        raw = {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "thinking...", "thought": True},
                            {"text": "Let me check. "},
                            {"functionCall": {"name": "list_documents", "args": {"type": "Actor"}}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 3},
        }
        response = normalize_response(raw)

        assert response.content == "Let me check. "
        assert response.tool_calls[0].name == "list_documents"
        assert response.tool_calls[0].arguments == {"type": "Actor"}
        assert response.usage == {"promptTokenCount": 12, "candidatesTokenCount": 3}

    def test_gemini_malformed_function_call(self):
        """Test that a MALFORMED_FUNCTION_CALL finish is a tool-call failure."""
        raw = {
            "candidates": [
                {
                    "content": {"parts": [{"functionCall": {"name": "read_document"}}]},
                    "finishReason": "MALFORMED_FUNCTION_CALL",
                    "finishMessage": "bad args",
                }
            ]
        }
        response = normalize_response(raw)

        assert response.tool_call_failure
        assert not response.parse_error
        assert response.tool_calls == []
        assert response.error_metadata["function_name"] == "read_document"
        assert response.error_metadata["finish_message"] == "bad args"

    def test_error_code_tool_call_failure(self):
        """Test that a top-level TOOL_CALL_FAILURE error code is honoured."""
        raw = {"errorCode": "TOOL_CALL_FAILURE", "content": "", "errorMetadata": {"function_name": "list_documents"}}
        response = normalize_response(raw)

        assert response.tool_call_failure
        assert response.error_metadata["function_name"] == "list_documents"

    def test_empty_reply_is_parse_error(self):
        """Test that an empty reply without tool calls becomes the empty sentinel."""
        response = normalize_response({"content": "", "tool_calls": []})

        assert response.parse_error
        assert response.content == EMPTY_RESPONSE_CONTENT
        assert response.tool_calls == []

    def test_whitespace_reply_is_parse_error(self):
        """Test that whitespace-only text is treated as empty."""
        assert normalize_response(" \n\t ").parse_error

    def test_tool_calls_without_text_are_not_empty(self):
        """Test that a reply with calls and no text is usable."""
        response = normalize_response({"content": "", "tool_calls": [{"id": "a", "name": "list_documents"}]})

        assert not response.parse_error
        assert response.tool_calls[0].name == "list_documents"

    def test_unrecognized_shape_never_raises(self):
        """Test that garbage input produces the empty sentinel instead of raising."""
        for raw in (None, 42, {"unexpected": True}, ["a", "b"]):
            response = normalize_response(raw)
            assert response.parse_error
            assert response.content == EMPTY_RESPONSE_CONTENT

    def test_inline_tool_call_recovered(self):
        """Test that fenced JSON in text becomes a fallback tool call."""
        text = 'Sure.\n```json\n{"tool_call": {"name": "list_documents", "arguments": {"type": "Scene"}}}\n```'
        response = normalize_response(text, known_tools)

        assert response.content == "Sure."
        assert response.tool_calls[0].name == "list_documents"
        assert response.tool_calls[0].arguments == {"type": "Scene"}
        assert response.tool_calls[0].id.startswith("fallback_")

    def test_inline_parse_only_when_lookup_given(self):
        """Test that without a tool lookup fenced JSON stays plain text."""
        text = '```json\n{"name": "list_documents", "arguments": {}}\n```'
        response = normalize_response(text)

        assert response.tool_calls == []
        assert response.content == text

    def test_inline_unknown_tool_stays_text(self):
        """Test that fenced JSON naming an unknown tool is left as text."""
        text = '```json\n{"name": "delete_everything", "arguments": {}}\n```'
        response = normalize_response(text, known_tools)

        assert response.tool_calls == []
        assert not response.parse_error
        assert response.content == text

    def test_inline_unparseable_block_is_parse_error(self):
        """Test that an irreparable fenced json block asks for a correction."""
        text = "Calling now:\n```json\nnot valid json at all\n```"
        response = normalize_response(text, known_tools)

        assert response.parse_error
        assert response.tool_calls == []
        assert "not valid json at all" in response.content
        assert response.error_metadata["excerpt"] == "not valid json at all"


class TestParseInlineToolCall:
    """Tests for the fenced-JSON fallback parser."""

    def test_think_blocks_are_ignored(self):
        """Test that fenced JSON inside think tags is not executed."""
        text = '<think>```json\n{"name": "read_document"}\n```</think>Nothing to do.'

        assert parse_inline_tool_call(text, known_tools) is None

    def test_function_call_key_and_string_arguments(self):
        """Test the functionCall key with JSON-string arguments."""
        payload = '{"functionCall": {"name": "read_document", "arguments": "{\\"document_id\\": \\"doc_003\\"}"}}'
        text = f"```\n{payload}\n```"
        result = parse_inline_tool_call(text, known_tools)

        assert isinstance(result, InlineToolCall)
        assert result.call.arguments == {"document_id": "doc_003"}
        assert result.remaining_text == ""

    def test_longer_fence_and_single_quote_fence(self):
        """Test that four-backtick and triple-single-quote fences are recognized."""
        backticks = '````json\n{"name": "list_documents"}\n````'
        quotes = "'''json\n{\"name\": \"list_documents\"}\n'''"

        assert isinstance(parse_inline_tool_call(backticks, known_tools), InlineToolCall)
        assert isinstance(parse_inline_tool_call(quotes, known_tools), InlineToolCall)

    def test_non_json_blocks_are_skipped(self):
        """Test that code blocks that are not JSON are not treated as calls."""
        text = "```python\nprint('hi')\n```"

        assert parse_inline_tool_call(text, known_tools) is None

    def test_later_block_is_used_after_example_json(self):
        """Test that a plain JSON example before the real call does not hide it."""
        text = (
            'Here is the format:\n```json\n{"title": "Notes"}\n```\n'
            'Now calling:\n```json\n{"tool_call": {"name": "list_documents", "arguments": {}}}\n```'
        )
        response = normalize_response(text, known_tools)

        assert not response.parse_error
        assert [call.name for call in response.tool_calls] == ["list_documents"]
        assert '{"title": "Notes"}' in response.content

    def test_unknown_tool_block_before_known_call(self):
        """Test that a block naming an unknown tool is skipped in favour of a later call."""
        text = (
            '```json\n{"name": "delete_everything"}\n```\n'
            '```json\n{"name": "read_document", "arguments": {"document_id": "doc_001"}}\n```'
        )
        result = parse_inline_tool_call(text, known_tools)

        assert isinstance(result, InlineToolCall)
        assert result.call.arguments == {"document_id": "doc_001"}

    def test_broken_block_before_valid_call_is_not_an_error(self):
        """Test that an irreparable block only fails when no other block yields a call."""
        text = '```json\n\n```\n```json\n{"name": "list_documents", "arguments": {}}\n```'
        result = parse_inline_tool_call(text, known_tools)

        assert isinstance(result, InlineToolCall)
        assert result.call.name == "list_documents"

    def test_irreparable_json_block(self):
        """Test that a json-tagged block that cannot be repaired reports a failure."""
        result = parse_inline_tool_call("```json\n\n```", known_tools)

        assert isinstance(result, InlineParseFailure)
        assert result.message == "Empty JSON payload"
