"""Parser for the agent's ``--output-format stream-json`` output.

Every stdout line is one JSON object with a ``type`` discriminator:

- ``init`` / ``system``: session start, carries ``session_id``.
- ``assistant``: model response content blocks.
- ``tool_use`` / ``tool_result``: tool call and its result.
- ``result``: final summary with cumulative token usage and cost.

Unrecognized types are returned as :class:`UnknownEvent` so newer agent
versions never break parsing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ralph_loop.errors import EventParseError


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counters reported by a ``result`` event."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def total(self) -> int:
        """Input plus output tokens; cache counters are not part of the budget."""

        return self.input_tokens + self.output_tokens


@dataclass(slots=True, frozen=True)
class TextBlock:
    text: str


@dataclass(slots=True, frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Any = None


@dataclass(slots=True, frozen=True)
class OtherBlock:
    block_type: str = ""


ContentBlock = TextBlock | ToolUseBlock | OtherBlock


@dataclass(slots=True, frozen=True)
class InitEvent:
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class AssistantEvent:
    content: tuple[ContentBlock, ...] = ()


@dataclass(slots=True, frozen=True)
class ToolUseEvent:
    id: str = ""
    name: str = ""
    input: Any = None


@dataclass(slots=True, frozen=True)
class ToolResultEvent:
    id: str = ""
    content: str = ""


@dataclass(slots=True, frozen=True)
class ResultEvent:
    session_id: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    total_cost_usd: float | None = None


@dataclass(slots=True, frozen=True)
class UnknownEvent:
    event_type: str
    raw: Any = None


AgentEvent = (
    InitEvent | AssistantEvent | ToolUseEvent | ToolResultEvent | ResultEvent | UnknownEvent
)

_USAGE_FIELDS = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_creation_input_tokens": "cache_creation_tokens",
    "cache_read_input_tokens": "cache_read_tokens",
}


def parse_event(line: str) -> AgentEvent:
    """Parse one stdout line into an :data:`AgentEvent`.

    Raises:
        EventParseError: the line is blank or not valid JSON. Callers skip
            such lines instead of treating them as fatal.
    """

    stripped = line.strip()
    if not stripped:
        raise EventParseError("Empty line")
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError as error:
        raise EventParseError(str(error)) from error

    payload = value if isinstance(value, dict) else {}
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        event_type = "unknown"

    if event_type in {"init", "system"}:
        return InitEvent(session_id=_optional_str(payload.get("session_id")))
    if event_type == "assistant":
        return AssistantEvent(content=_assistant_content(payload))
    if event_type == "tool_use":
        return ToolUseEvent(
            id=_str_or_empty(payload.get("id")),
            name=_str_or_empty(payload.get("name")),
            input=payload.get("input"),
        )
    if event_type == "tool_result":
        tool_use_id = payload.get("tool_use_id")
        if tool_use_id is None:
            tool_use_id = payload.get("id")
        return ToolResultEvent(
            id=_str_or_empty(tool_use_id),
            content=_str_or_empty(payload.get("content")),
        )
    if event_type == "result":
        return ResultEvent(
            session_id=_optional_str(payload.get("session_id")),
            usage=_parse_usage(payload.get("usage")),
            total_cost_usd=_optional_float(payload.get("total_cost_usd")),
        )
    return UnknownEvent(event_type=event_type, raw=value)


def extract_text(event: AgentEvent) -> str | None:
    """Join the text blocks of an assistant event with newlines."""

    if not isinstance(event, AssistantEvent):
        return None
    texts = [block.text for block in event.content if isinstance(block, TextBlock)]
    if not texts:
        return None
    return "\n".join(texts)


def event_type_name(event: AgentEvent) -> str:
    if isinstance(event, InitEvent):
        return "init"
    if isinstance(event, AssistantEvent):
        return "assistant"
    if isinstance(event, ToolUseEvent):
        return "tool_use"
    if isinstance(event, ToolResultEvent):
        return "tool_result"
    if isinstance(event, ResultEvent):
        return "result"
    return event.event_type


def _assistant_content(payload: dict[str, Any]) -> tuple[ContentBlock, ...]:
    # Newer agents nest content under "message"; older ones put it at top level.
    if "message" in payload:
        message = payload["message"]
        raw_blocks = message.get("content") if isinstance(message, dict) else None
    else:
        raw_blocks = payload.get("content")
    if not isinstance(raw_blocks, list):
        return ()
    return tuple(_parse_block(block) for block in raw_blocks)


def _parse_block(block: Any) -> ContentBlock:
    if not isinstance(block, dict):
        return OtherBlock()
    block_type = block.get("type")
    if block_type == "text" and isinstance(block.get("text"), str):
        return TextBlock(text=block["text"])
    if (
        block_type == "tool_use"
        and isinstance(block.get("id"), str)
        and isinstance(block.get("name"), str)
    ):
        return ToolUseBlock(id=block["id"], name=block["name"], input=block.get("input"))
    return OtherBlock(block_type=block_type if isinstance(block_type, str) else "")


def _parse_usage(raw: Any) -> TokenUsage:
    if not isinstance(raw, dict):
        return TokenUsage()
    values: dict[str, int] = {}
    for key, attribute in _USAGE_FIELDS.items():
        if key not in raw or raw[key] is None:
            continue
        count = raw[key]
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            return TokenUsage()
        values[attribute] = count
    return TokenUsage(**values)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _str_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)
