"""Normalization of structured and inline tool calls.

Providers without native tool support are asked to answer with JSON
payloads in their text. Three inline forms are recognized:

    ```json
    {"tool": "read_file", "arguments": {"path": "src/app.ts"}}
    ```

    <tool_call>{"tool": "read_file", "arguments": {...}}</tool_call>

    ... bare {"tool": "read_file", "arguments": {...}} in prose ...

Structured calls win: when a turn carries any, inline payloads in that
turn's text are ignored.
"""

import json
import re
from typing import Any, List, Optional, Tuple

import structlog

from .models import CompletionResult, ToolCall, ToolCallSource

logger = structlog.get_logger("foreman.agent")

_FENCED_JSON = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL)
_TOOL_CALL_TAG = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)
_BARE_START = re.compile(r'\{\s*"tool"\s*:')
_decoder = json.JSONDecoder()


def _to_call(payload: Any) -> Optional[ToolCall]:
    if not isinstance(payload, dict):
        return None
    name = payload.get("tool") or payload.get("name")
    if not isinstance(name, str) or not name:
        return None
    arguments = payload.get("arguments", {})
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            return None
    if not isinstance(arguments, dict):
        return None
    return ToolCall(name=name, arguments=arguments, source=ToolCallSource.INLINE)


def _calls_from_json(text: str) -> List[ToolCall]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return []
    items = payload if isinstance(payload, list) else [payload]
    return [call for call in map(_to_call, items) if call is not None]


def _key(call: ToolCall) -> Tuple[str, str]:
    return call.name, json.dumps(call.arguments, sort_keys=True, default=str)


def extract_inline_tool_calls(text: str) -> Tuple[List[ToolCall], str]:
    """Find inline tool-call payloads in ``text``.

    Returns:
        Tuple of (calls in order of appearance with duplicates dropped,
        the text with every recognized payload removed).
    """
    found: List[Tuple[int, ToolCall]] = []
    spans: List[Tuple[int, int]] = []

    for match in _FENCED_JSON.finditer(text):
        calls = _calls_from_json(match.group(1))
        if calls:
            found.extend((match.start(), call) for call in calls)
            spans.append(match.span())

    for match in _TOOL_CALL_TAG.finditer(text):
        calls = _calls_from_json(match.group(1))
        if calls:
            found.extend((match.start(), call) for call in calls)
            spans.append(match.span())
            continue
        # A tag wrapping a fenced block: drop the whole tag, not just the fence
        start, end = match.span()
        inner = [s for s in spans if start <= s[0] and s[1] <= end]
        if inner:
            spans = [s for s in spans if s not in inner]
            spans.append((start, end))

    for match in _BARE_START.finditer(text):
        start = match.start()
        if any(s <= start < e for s, e in spans):
            continue
        try:
            payload, end = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            continue
        call = _to_call(payload)
        if call is not None:
            found.append((start, call))
            spans.append((start, end))

    calls: List[ToolCall] = []
    seen = set()
    for _, call in sorted(found, key=lambda item: item[0]):
        key = _key(call)
        if key in seen:
            continue
        seen.add(key)
        calls.append(call)

    cleaned = text
    for start, end in sorted(spans, reverse=True):
        cleaned = cleaned[:start] + cleaned[end:]
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    return calls, cleaned


def normalize_tool_calls(result: CompletionResult) -> Tuple[List[ToolCall], str]:
    """Merge a completion's structured and inline calls into one list.

    Returns:
        Tuple of (calls to execute, assistant text with payloads removed).
    """
    inline, cleaned = extract_inline_tool_calls(result.content)
    if result.tool_calls:
        if inline:
            logger.info(
                "inline_tool_calls_ignored",
                structured=len(result.tool_calls),
                inline=len(inline),
                names=[c.name for c in inline],
            )
        structured = [
            call.model_copy(update={"source": ToolCallSource.STRUCTURED})
            for call in result.tool_calls
        ]
        return structured, cleaned
    return inline, cleaned
