"""Best-effort repair of JSON emitted inside model text."""

import json
import re
from dataclasses import dataclass
from typing import Any

import json_repair

EXCERPT_LIMIT = 500

_STRING = r'"(?:[^"\\]|\\.)*"'
_PAREN_ARRAY = re.compile(rf"([:\[,]\s*)\((\s*{_STRING}(?:\s*,\s*{_STRING})*\s*)\)")
_SINGLE_QUOTED_KEY = re.compile(r"([{,]\s*)'([^'\"]*)'(\s*:)")
_SINGLE_QUOTED_VALUE = re.compile(r"(:\s*)'((?:[^'\\]|\\.)*)'(?=\s*[,}\]])")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


@dataclass(frozen=True)
class RepairError:
    """Why a piece of text could not be turned into JSON."""

    message: str
    excerpt: str


@dataclass(frozen=True)
class RepairResult:
    """Outcome of ``repair_json``: either ``value`` or ``error`` is set."""

    value: dict[str, Any] | list[Any] | None = None
    error: RepairError | None = None
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


def _quote_single_value(match: re.Match) -> str:
    inner = match.group(2).replace('\\"', '"').replace('"', '\\"')
    return f'{match.group(1)}"{inner}"'


def _escape_inner_quotes(text: str) -> str:
    """Escape double quotes that sit inside a string but do not terminate it.

    A quote closes a string only when the next non-space character is a
    structural one (``,`` ``:`` ``}`` ``]``) or the end of input.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)

    for index, char in enumerate(text):
        if not in_string:
            out.append(char)
            if char == '"':
                in_string = True
            continue

        if escaped:
            out.append(char)
            escaped = False
        elif char == "\\":
            out.append(char)
            escaped = True
        elif char == '"':
            lookahead = index + 1
            while lookahead < length and text[lookahead] in " \t\r\n":
                lookahead += 1
            if lookahead >= length or text[lookahead] in ",:}]":
                out.append(char)
                in_string = False
            else:
                out.append('\\"')
        elif char == "\n":
            out.append("\\n")
        else:
            out.append(char)

    return "".join(out)


def apply_heuristics(text: str) -> str:
    """Apply the textual fix-ups for common model JSON mistakes."""
    fixed = _PAREN_ARRAY.sub(r"\1[\2]", text)
    fixed = _SINGLE_QUOTED_KEY.sub(r'\1"\2"\3', fixed)
    fixed = _SINGLE_QUOTED_VALUE.sub(_quote_single_value, fixed)
    fixed = _TRAILING_COMMA.sub(r"\1", fixed)
    return _escape_inner_quotes(fixed)


def _is_container(value: Any) -> bool:
    return isinstance(value, dict | list) and bool(value)


def repair_json(text: str) -> RepairResult:
    """Parse ``text`` as a JSON object or array, repairing it if needed.

    Args:
        text: Candidate JSON, typically the body of a fenced code block

    Returns:
        RepairResult with the decoded value, or with a RepairError and excerpt
    """
    candidate = (text or "").strip()
    if not candidate:
        return RepairResult(error=RepairError("Empty JSON payload", ""))

    try:
        value = json.loads(candidate)
        if isinstance(value, dict | list):
            return RepairResult(value=value)
        return RepairResult(error=RepairError("JSON payload is not an object", excerpt(candidate)))
    except json.JSONDecodeError as e:
        first_error = str(e)

    fixed = apply_heuristics(candidate)
    try:
        value = json.loads(fixed)
        if isinstance(value, dict | list):
            return RepairResult(value=value, repaired=True)
    except json.JSONDecodeError:
        pass

    value = json_repair.loads(fixed)
    if _is_container(value):
        return RepairResult(value=value, repaired=True)

    return RepairResult(error=RepairError(f"Invalid JSON: {first_error}", excerpt(candidate)))
