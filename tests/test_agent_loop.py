"""Tests for the agentic tool-calling loop."""

import json

import pytest
from conftest import EMPTY_REPLY, make_llm, text_reply, tool_reply

from parley.errors import TurnCancelledError
from parley.services.agent_loop import TOOL_LIMIT_INSTRUCTION, AgenticLoop, LoopGuard
from parley.services.events import TurnEventChannel
from parley.services.normalizer import normalize_response
from parley.tools.base import ToolDefinition
from parley.utils.cancellation import CancellationToken


def make_loop(registry, conversation, engine_config, *replies):
    llm, client = make_llm(registry, *replies)
    channel = TurnEventChannel()
    loop = AgenticLoop(llm, registry, conversation, config=engine_config, events=channel)
    return loop, client, channel


class TestAgenticLoop:
    """Tests for AgenticLoop.run."""

    @pytest.mark.asyncio
    async def test_single_tool_round(self, registry, conversation, engine_config):
        """Test that one successful tool call followed by text ends the loop."""
        loop, client, channel = make_loop(registry, conversation, engine_config, text_reply("There are 4 documents."))
        initial = normalize_response(tool_reply(("list_documents", {"justification": "user asked"})))

        result = await loop.run(initial, CancellationToken())

        assert result.content == "There are 4 documents."
        assert result.tool_calls == []
        assert loop.iterations == 1
        assert loop.repeat_count == 0
        assert len(client.calls) == 1
        assert [m.role for m in conversation.messages] == ["user", "assistant", "tool", "assistant"]
        assert json.loads(conversation.messages[2].content)["count"] == 4
        assert [e.kind for e in channel.history] == ["tool_result", "assistant_message"]
        assert channel.history[0].display == "Found 4 documents"

    @pytest.mark.asyncio
    async def test_tool_schemas_are_sent(self, registry, conversation, engine_config):
        """Test that follow-up requests offer the registry's tools."""
        loop, client, _ = make_loop(registry, conversation, engine_config, text_reply("done"))

        await loop.run(normalize_response(tool_reply(("list_documents", {}))), CancellationToken())

        names = {tool["function"]["name"] for tool in client.calls[0]["tools"]}
        assert "list_documents" in names
        assert client.calls[0]["messages"][0] == {"role": "system", "content": "You are a test assistant."}

    @pytest.mark.asyncio
    async def test_end_task_stops_without_another_request(self, registry, conversation, engine_config):
        """Test that a successful end_task call finishes the turn with its summary."""
        loop, client, channel = make_loop(registry, conversation, engine_config, text_reply("never sent"))
        initial = normalize_response(
            tool_reply(("list_documents", {}), ("end_task", {"summary": "Listed the documents"}))
        )

        result = await loop.run(initial, CancellationToken())

        assert result.end_task
        assert result.tool_calls == []
        assert result.content == "Task completion signaled: Listed the documents"
        assert result.display == "✅ **Task Completed**: Listed the documents"
        assert client.calls == []
        assert [m.role for m in conversation.messages] == ["user", "assistant", "tool", "tool", "assistant"]
        assert conversation.messages[-1].content == result.content
        assert [e.kind for e in channel.history] == ["tool_result", "tool_result", "assistant_message"]

    @pytest.mark.asyncio
    async def test_repeated_failures_hit_limit(self, registry, conversation, engine_config):
        """Test that five consecutive failed executions stop the loop."""
        failing = tool_reply(("explode", {"target": "x"}))
        loop, client, channel = make_loop(registry, conversation, engine_config, failing)

        result = await loop.run(normalize_response(failing), CancellationToken())

        assert result.tool_limit_reached_error
        assert result.tool_calls == []
        assert result.error_metadata == {"reason": "repeat_limit", "repeat_count": 5}
        assert loop.repeat_count == 5
        assert len(client.calls) == 4
        assert sum(1 for m in conversation.messages if m.role == "tool") == 5
        assert conversation.messages[-1].content == TOOL_LIMIT_INSTRUCTION
        assert channel.history[-1].kind == "assistant_message"
        assert not conversation.sanitize().changed

    @pytest.mark.asyncio
    async def test_failure_mid_batch_keeps_parity(self, registry, conversation, engine_config):
        """Test that a failing call in the middle of a batch does not skip the others."""
        loop, _, channel = make_loop(registry, conversation, engine_config, text_reply("partial results"))
        initial = normalize_response(
            tool_reply(("echo", {"text": "one"}), ("explode", {"target": "two"}), ("echo", {"text": "three"}))
        )

        result = await loop.run(initial, CancellationToken())

        assert result.content == "partial results"
        tool_messages = [m for m in conversation.messages if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["call_0_echo", "call_1_explode", "call_2_echo"]
        failure = json.loads(tool_messages[1].content)
        assert failure["tool"] == "explode"
        assert failure["arguments"] == {"target": "two"}
        assert "backend unavailable" in failure["error"]
        assert json.loads(tool_messages[2].content) == {"echo": "three"}
        assert [e.is_error for e in channel.history if e.kind == "tool_result"] == [False, True, False]
        assert loop.repeat_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self, registry, conversation, engine_config):
        """Test that calling an unregistered tool yields an error result, not an exception."""
        loop, _, _ = make_loop(registry, conversation, engine_config, text_reply("sorry"))

        await loop.run(normalize_response(tool_reply(("ghost", {}))), CancellationToken())

        tool_message = next(m for m in conversation.messages if m.role == "tool")
        assert json.loads(tool_message.content)["error"] == "Tool 'ghost' not found"

    @pytest.mark.asyncio
    async def test_parse_error_inside_loop_is_corrected(self, registry, conversation, engine_config):
        """Test that an empty reply mid-loop gets a correction and a retry."""
        loop, client, _ = make_loop(registry, conversation, engine_config, EMPTY_REPLY, text_reply("all done"))

        result = await loop.run(normalize_response(tool_reply(("list_documents", {}))), CancellationToken())

        assert result.content == "all done"
        assert loop.repeat_count == 1
        assert len(client.calls) == 2
        assert any(m.internal and m.content.startswith("(Response rejected") for m in conversation.messages)

    @pytest.mark.asyncio
    async def test_loop_guard_stops_identical_successful_calls(self, registry, conversation, engine_config):
        """Test that re-issuing the same successful call trips the loop guard."""
        same = tool_reply(("echo", {"text": "again"}))
        loop, client, _ = make_loop(registry, conversation, engine_config, same)

        result = await loop.run(normalize_response(same), CancellationToken())

        assert result.tool_limit_reached_error
        assert result.error_metadata["reason"] == "loop_guard"
        assert loop.iterations == 3
        assert len(client.calls) == 3
        assert not conversation.sanitize().changed

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, registry, conversation, engine_config):
        """Test that a cancelled token stops the loop before any tool runs."""
        loop, client, _ = make_loop(registry, conversation, engine_config, text_reply("never"))
        signal = CancellationToken()
        signal.cancel()

        with pytest.raises(TurnCancelledError):
            await loop.run(normalize_response(tool_reply(("list_documents", {}))), signal)

        assert client.calls == []
        assert len(conversation.messages) == 1

    @pytest.mark.asyncio
    async def test_cancelled_mid_batch_leaves_repairable_history(self, registry, conversation, engine_config):
        """Test that cancelling between calls leaves a history sanitize can repair."""
        signal = CancellationToken()

        async def cancel_handler(params, context):
            signal.cancel("user pressed stop")
            return {"ok": True}

        registry.register_tool(ToolDefinition(name="stop_button", description="Cancels.", handler=cancel_handler))
        loop, _, _ = make_loop(registry, conversation, engine_config, text_reply("never"))
        initial = normalize_response(tool_reply(("stop_button", {}), ("list_documents", {})))

        with pytest.raises(TurnCancelledError, match="user pressed stop"):
            await loop.run(initial, signal)

        report = conversation.sanitize()
        assert report.stubbed == 1
        assert [m.role for m in conversation.messages] == ["user", "assistant", "tool", "tool"]


class TestLoopGuard:
    """Tests for the repeated-call detector."""

    def test_justification_does_not_change_signature(self):
        """Test that calls differing only in justification are identical."""
        first = normalize_response(tool_reply(("echo", {"text": "a", "justification": "one"}))).tool_calls
        second = normalize_response(tool_reply(("echo", {"text": "a", "justification": "two"}))).tool_calls

        assert LoopGuard.signature(first) == LoopGuard.signature(second)

    def test_failures_reset_streak(self):
        """Test that a failed batch resets the identical-call streak."""
        calls = normalize_response(tool_reply(("echo", {"text": "a"}))).tool_calls
        guard = LoopGuard(2)

        guard.record(calls, succeeded=True)
        guard.record(calls, succeeded=True)
        assert guard.is_repeating(calls)

        guard.record(calls, succeeded=False)
        assert not guard.is_repeating(calls)
