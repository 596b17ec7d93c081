"""Canonical stream events.

Every adapter stream is a sequence of these records. Interior events
(``token``, ``tool_call_start``, ``tool_call_end``, ``compaction``) may repeat;
a stream always ends with exactly one ``done``, possibly preceded by a
single ``error``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from switchboard.errors import SwitchboardError
from switchboard.models import FinishReason, TokenUsage, ToolCall


@dataclass(frozen=True)
class MessageStartEvent:
    message_id: str
    conversation_id: str | None = None
    model: str | None = None
    type: Literal["message_start"] = field(default="message_start", init=False)


@dataclass(frozen=True)
class TokenEvent:
    content: str
    type: Literal["token"] = field(default="token", init=False)


@dataclass(frozen=True)
class ToolCallStartEvent:
    tool_call: ToolCall
    type: Literal["tool_call_start"] = field(default="tool_call_start", init=False)


@dataclass(frozen=True)
class ToolCallEndEvent:
    call_id: str
    name: str
    result: Any = None
    error: str | None = None
    type: Literal["tool_call_end"] = field(default="tool_call_end", init=False)


@dataclass(frozen=True)
class CompactionEvent:
    summary: str
    before_token_estimate: int
    after_token_estimate: int
    type: Literal["compaction"] = field(default="compaction", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    error: SwitchboardError
    type: Literal["error"] = field(default="error", init=False)

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class DoneEvent:
    usage: TokenUsage
    finish_reason: FinishReason = "stop"
    type: Literal["done"] = field(default="done", init=False)


StreamEvent: TypeAlias = (
    MessageStartEvent
    | TokenEvent
    | ToolCallStartEvent
    | ToolCallEndEvent
    | CompactionEvent
    | ErrorEvent
    | DoneEvent
)


def done_event(finish_reason: FinishReason = "stop") -> DoneEvent:
    """A synthetic, zero-usage completion."""
    return DoneEvent(TokenUsage.zero(), finish_reason)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Serialize *event* into the generic internal wire shape.

    The result is what :func:`switchboard.streaming.normalizer.normalize_payload`
    accepts, so events can be relayed across process boundaries.
    """
    match event:
        case MessageStartEvent():
            data: dict[str, Any] = {"type": event.type, "messageId": event.message_id}
            if event.conversation_id is not None:
                data["conversationId"] = event.conversation_id
            if event.model is not None:
                data["model"] = event.model
            return data
        case TokenEvent():
            return {"type": event.type, "content": event.content}
        case ToolCallStartEvent():
            call = event.tool_call
            return {
                "type": event.type,
                "toolCall": {
                    "id": call.id,
                    "name": call.name,
                    "arguments": dict(call.arguments),
                },
            }
        case ToolCallEndEvent():
            result: dict[str, Any] = {
                "callId": event.call_id,
                "name": event.name,
                "result": event.result,
            }
            if event.error is not None:
                result["error"] = event.error
            return {"type": event.type, "result": result}
        case CompactionEvent():
            return {
                "type": event.type,
                "summary": event.summary,
                "beforeTokenEstimate": event.before_token_estimate,
                "afterTokenEstimate": event.after_token_estimate,
            }
        case ErrorEvent():
            return {"type": event.type, "message": event.message}
        case DoneEvent():
            return {
                "type": event.type,
                "usage": {
                    "inputTokens": event.usage.input_tokens,
                    "outputTokens": event.usage.output_tokens,
                    "totalTokens": event.usage.total_tokens,
                },
                "finishReason": event.finish_reason,
            }
    raise TypeError(f"Not a stream event: {event!r}")
