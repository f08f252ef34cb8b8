"""Normalization of raw model replies into a single canonical response."""

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from parley.models.llm import NormalizedResponse, ToolCall, cuid, parse_arguments
from parley.services.repair import excerpt, repair_json
from parley.utils.logging import get_logger

logger = get_logger(__name__)

EMPTY_RESPONSE_CONTENT = "Empty response not allowed - please provide a meaningful response to the user."
TOOL_FAILURE_CONTENT = "The model attempted a tool call with malformed arguments."
TOOL_CALL_FAILURE_CODE = "TOOL_CALL_FAILURE"
GEMINI_MALFORMED_FINISH = "MALFORMED_FUNCTION_CALL"

ToolLookup = Callable[[str], bool]

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCED_BLOCK = re.compile(
    r"(?P<fence>`{3,}|'{3})[ \t]*(?P<lang>json5?|javascript|js)?[ \t]*\r?\n?(?P<body>.*?)(?P=fence)",
    re.IGNORECASE | re.DOTALL,
)
_CALL_KEYS = ("tool_call", "toolCall", "function_call", "functionCall")


# Response shapes, resolved once by classify_response().


@dataclass(frozen=True)
class PreNormalized:
    content: str
    tool_calls: list[Any]
    model: str | None
    usage: dict[str, Any] | None


@dataclass(frozen=True)
class OpenAIShape:
    message: dict[str, Any]
    model: str | None
    usage: dict[str, Any] | None


@dataclass(frozen=True)
class LegacyFunctionCallShape:
    message: dict[str, Any]
    model: str | None
    usage: dict[str, Any] | None


@dataclass(frozen=True)
class GeminiShape:
    candidate: dict[str, Any]
    model: str | None
    usage: dict[str, Any] | None


@dataclass(frozen=True)
class PlainText:
    text: str
    model: str | None = None
    usage: dict[str, Any] | None = None


@dataclass(frozen=True)
class Unrecognized:
    raw: Any


ResponseShape = PreNormalized | OpenAIShape | LegacyFunctionCallShape | GeminiShape | PlainText | Unrecognized


@dataclass(frozen=True)
class InlineToolCall:
    """A tool call recovered from fenced JSON in free text."""

    call: ToolCall
    remaining_text: str


@dataclass(frozen=True)
class InlineParseFailure:
    """A fenced JSON block that could not be repaired."""

    message: str
    excerpt: str


def _text_of(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content)


def classify_response(raw: Any) -> ResponseShape:
    """Resolve a raw endpoint reply into one of the known response shapes."""
    if isinstance(raw, NormalizedResponse):
        return PreNormalized(raw.content, list(raw.tool_calls), raw.model, raw.usage)
    if isinstance(raw, str):
        return PlainText(raw)
    if not isinstance(raw, dict):
        return Unrecognized(raw)

    model = raw.get("model") or raw.get("modelVersion")
    usage = raw.get("usage") or raw.get("usageMetadata")

    if isinstance(raw.get("content"), str):
        return PreNormalized(raw["content"], list(raw.get("tool_calls") or raw.get("toolCalls") or []), model, usage)

    choices = raw.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if message.get("tool_calls"):
            return OpenAIShape(message, model, usage)
        if message.get("function_call"):
            return LegacyFunctionCallShape(message, model, usage)
        return PlainText(_text_of(message.get("content")), model, usage)

    candidates = raw.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return GeminiShape(candidates[0], model, usage)

    return Unrecognized(raw)


def _empty_response(model: str | None = None, usage: dict[str, Any] | None = None) -> NormalizedResponse:
    return NormalizedResponse(
        content=EMPTY_RESPONSE_CONTENT,
        display=EMPTY_RESPONSE_CONTENT,
        model=model,
        usage=usage,
        parse_error=True,
    )


def _tool_failure(
    text: str, metadata: dict[str, Any], model: str | None, usage: dict[str, Any] | None
) -> NormalizedResponse:
    content = text.strip() or TOOL_FAILURE_CONTENT
    return NormalizedResponse(
        content=content,
        display=content,
        model=model,
        usage=usage,
        tool_call_failure=True,
        error_metadata=metadata,
    )


def _native_tool_calls(raw_calls: list[Any]) -> tuple[list[ToolCall], str | None]:
    """Convert wire tool calls; returns the name of the first irreparable call, if any."""
    calls: list[ToolCall] = []
    for raw_call in raw_calls:
        if isinstance(raw_call, ToolCall):
            calls.append(raw_call)
            continue
        if not isinstance(raw_call, dict):
            continue
        try:
            calls.append(ToolCall.from_wire(raw_call))
        except ValueError:
            function = raw_call.get("function") or {}
            name = function.get("name") or raw_call.get("name")
            raw_arguments = function.get("arguments", raw_call.get("arguments"))
            repaired = repair_json(raw_arguments) if isinstance(raw_arguments, str) else None
            if not name or repaired is None or not repaired.ok or not isinstance(repaired.value, dict):
                return calls, name or "unknown"
            calls.append(ToolCall(id=raw_call.get("id") or f"call_{cuid()}", name=name, arguments=repaired.value))
    return calls, None


def _gemini_parts(candidate: dict[str, Any]) -> tuple[str, list[ToolCall]]:
    text_parts: list[str] = []
    calls: list[ToolCall] = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str) and not part.get("thought"):
            text_parts.append(part["text"])
        function_call = part.get("functionCall")
        if isinstance(function_call, dict) and function_call.get("name"):
            arguments = parse_arguments(function_call.get("args")) or {}
            calls.append(
                ToolCall(
                    id=function_call.get("id") or f"call_{cuid()}", name=function_call["name"], arguments=arguments
                )
            )
    return "".join(text_parts), calls


def _gemini_function_name(candidate: dict[str, Any]) -> str | None:
    for part in (candidate.get("content") or {}).get("parts") or []:
        if isinstance(part, dict) and isinstance(part.get("functionCall"), dict):
            name = part["functionCall"].get("name")
            if name:
                return name
    return None


def parse_inline_tool_call(text: str, tool_exists: ToolLookup) -> InlineToolCall | InlineParseFailure | None:
    """Look for a tool call encoded as fenced JSON inside free text.

    Every fenced block is tried in order and the first one naming a
    registered tool wins. Example snippets and unknown tools are skipped.

    Args:
        text: Assistant text with no native tool calls
        tool_exists: Lookup used to ignore calls naming unknown tools

    Returns:
        The recovered call, a parse failure when no block yields a call and
        at least one JSON block could not be repaired, or None
    """
    visible = _THINK_BLOCK.sub("", text)
    failure: InlineParseFailure | None = None

    for match in _FENCED_BLOCK.finditer(visible):
        body = match.group("body").strip()
        lang = (match.group("lang") or "").lower()
        if not body.startswith("{") and not lang.startswith("json"):
            continue

        result = repair_json(body)
        if not result.ok:
            if failure is None:
                failure = InlineParseFailure(result.error.message, result.error.excerpt)
            continue
        if not isinstance(result.value, dict):
            continue

        payload = result.value
        call_data = next((payload[key] for key in _CALL_KEYS if isinstance(payload.get(key), dict)), None)
        if call_data is None and "name" in payload:
            call_data = payload
        if call_data is None:
            continue

        name = call_data.get("name")
        if not isinstance(name, str) or not tool_exists(name):
            logger.debug(f"Ignoring inline tool call for unknown tool: {name}")
            continue

        raw_arguments = call_data.get("arguments", call_data.get("args", call_data.get("parameters")))
        arguments = parse_arguments(raw_arguments)
        if arguments is None and isinstance(raw_arguments, str):
            repaired = repair_json(raw_arguments)
            arguments = repaired.value if repaired.ok and isinstance(repaired.value, dict) else None
        if arguments is None:
            arguments = {}

        remaining = (visible[: match.start()] + visible[match.end() :]).strip()
        call = ToolCall(id=f"fallback_{cuid()}", name=name, arguments=arguments)
        return InlineToolCall(call=call, remaining_text=remaining)

    return failure


def build_parse_error_content(message: str, offending: str) -> str:
    return (
        f"Your tool call could not be parsed ({message}). "
        "Use the function-calling interface, or wrap exactly one call in a fenced json block such as "
        '```json\n{"tool_call": {"name": "tool_name", "arguments": {}}}\n```\n\n'
        f"Problematic content:\n{excerpt(offending)}"
    )


def _finalize_text(
    text: str,
    tool_calls: list[ToolCall],
    model: str | None,
    usage: dict[str, Any] | None,
    tool_exists: ToolLookup | None,
) -> NormalizedResponse:
    if not tool_calls and text.strip() and tool_exists is not None:
        inline = parse_inline_tool_call(text, tool_exists)
        if isinstance(inline, InlineParseFailure):
            logger.warning(f"Inline tool call could not be repaired: {inline.message}")
            content = build_parse_error_content(inline.message, inline.excerpt)
            return NormalizedResponse(
                content=content,
                display=content,
                model=model,
                usage=usage,
                parse_error=True,
                error_metadata={"excerpt": inline.excerpt, "reason": inline.message},
            )
        if isinstance(inline, InlineToolCall):
            logger.info(f"Recovered inline tool call: {inline.call.name}")
            text = inline.remaining_text
            tool_calls = [inline.call]

    if not text.strip() and not tool_calls:
        return _empty_response(model, usage)

    return NormalizedResponse(content=text, display=text, tool_calls=tool_calls, model=model, usage=usage)


def normalize_response(raw: Any, tool_exists: ToolLookup | None = None) -> NormalizedResponse:
    """Convert any supported raw reply into a NormalizedResponse. Never raises.

    Args:
        raw: Endpoint reply (chat-completions, Gemini, legacy function_call,
            already-normalized record or plain string)
        tool_exists: Registry lookup enabling inline fallback tool calls

    Returns:
        The canonical response
    """
    try:
        return _normalize(raw, tool_exists)
    except Exception as e:
        logger.error(f"Failed to normalize model response: {e}", exc_info=True)
        return _empty_response()


def _normalize(raw: Any, tool_exists: ToolLookup | None) -> NormalizedResponse:
    if isinstance(raw, dict) and raw.get("errorCode") == TOOL_CALL_FAILURE_CODE:
        metadata = {"error_code": TOOL_CALL_FAILURE_CODE, **(raw.get("errorMetadata") or {})}
        if isinstance(raw.get("candidates"), list) and raw["candidates"]:
            metadata.setdefault("function_name", _gemini_function_name(raw["candidates"][0]))
        return _tool_failure(_text_of(raw.get("content")), metadata, raw.get("model"), raw.get("usage"))

    shape = classify_response(raw)

    if isinstance(shape, PreNormalized):
        calls, failed = _native_tool_calls(shape.tool_calls)
        if failed:
            return _tool_failure(shape.content, {"function_name": failed}, shape.model, shape.usage)
        return _finalize_text(shape.content, calls, shape.model, shape.usage, tool_exists if not calls else None)

    if isinstance(shape, OpenAIShape):
        text = _text_of(shape.message.get("content"))
        calls, failed = _native_tool_calls(shape.message["tool_calls"])
        if failed:
            return _tool_failure(text, {"function_name": failed}, shape.model, shape.usage)
        return _finalize_text(text, calls, shape.model, shape.usage, None)

    if isinstance(shape, LegacyFunctionCallShape):
        text = _text_of(shape.message.get("content"))
        calls, failed = _native_tool_calls([shape.message["function_call"]])
        if failed:
            return _tool_failure(text, {"function_name": failed}, shape.model, shape.usage)
        return _finalize_text(text, calls, shape.model, shape.usage, None)

    if isinstance(shape, GeminiShape):
        text, calls = _gemini_parts(shape.candidate)
        if shape.candidate.get("finishReason") == GEMINI_MALFORMED_FINISH:
            metadata = {
                "provider": "gemini",
                "finish_reason": GEMINI_MALFORMED_FINISH,
                "function_name": _gemini_function_name(shape.candidate),
                "finish_message": shape.candidate.get("finishMessage"),
            }
            return _tool_failure(text, metadata, shape.model, shape.usage)
        return _finalize_text(text, calls, shape.model, shape.usage, tool_exists if not calls else None)

    if isinstance(shape, PlainText):
        return _finalize_text(shape.text, [], shape.model, shape.usage, tool_exists)

    logger.warning(f"Unrecognized model response shape: {type(shape.raw).__name__}")
    return _empty_response()
