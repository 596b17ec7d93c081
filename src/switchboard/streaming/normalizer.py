"""Map decoded stream payloads onto canonical stream events.

Four payload families are understood:

- the generic internal shape (``{"type": "token", "content": ...}`` and
  friends, see :func:`switchboard.streaming.events.event_to_dict`);
- Anthropic Messages streaming events (``message_start``,
  ``content_block_delta`` ...);
- Gemini ``GenerateContentResponse`` chunks (``candidates``);
- OpenAI-compatible chat completion chunks (``choices[0].delta``).

Malformed and unrecognized payloads become a single recoverable
:class:`~switchboard.errors.FrameError`; errors the backend reports become a
terminal :class:`~switchboard.errors.StreamError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from switchboard._utils import as_count, parse_tool_arguments
from switchboard.errors import FrameError, StreamError
from switchboard.models import TokenUsage, ToolCall
from switchboard.policy import normalize_finish_reason
from switchboard.streaming.events import (
    CompactionEvent,
    DoneEvent,
    ErrorEvent,
    MessageStartEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
    done_event,
)

log = logging.getLogger(__name__)


def _malformed(kind: str, detail: str) -> list[StreamEvent]:
    return [ErrorEvent(FrameError(f"Malformed {kind} event: {detail}"))]


def _error_message(payload: dict[str, Any]) -> str | None:
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    error = payload.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        nested = error.get("message")
        if isinstance(nested, str) and nested:
            return nested
    return None


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)
    initial: dict[str, Any] | None = None

    def finish(self) -> ToolCall:
        raw = "".join(self.arguments)
        if raw.strip():
            arguments = parse_tool_arguments(raw)
        else:
            arguments = dict(self.initial or {})
        return ToolCall(id=self.id, name=self.name, arguments=arguments)


def _openai_usage(raw: dict[str, Any]) -> TokenUsage:
    return TokenUsage.from_counts(
        as_count(raw.get("prompt_tokens")) or 0,
        as_count(raw.get("completion_tokens")) or 0,
        as_count(raw.get("total_tokens")),
    )


class StreamNormalizer:
    """Stateful payload-to-event mapper for a single stream.

    State covers what spans several frames: Anthropic tool-use blocks whose
    input arrives as JSON fragments, OpenAI tool-call deltas keyed by index,
    and the input-token count announced in Anthropic's ``message_start``.
    Use one instance per stream.
    """

    def __init__(self) -> None:
        self._block_tool: _PendingToolCall | None = None
        self._indexed_tools: dict[int, _PendingToolCall] = {}
        self._input_tokens: int | None = None
        self._saw_tool_call = False
        self._done = False

    def feed(self, payload: Any, event_name: str | None = None) -> list[StreamEvent]:
        """Map one decoded payload to zero, one or more events.

        *event_name* is the SSE ``event:`` field; it is only consulted when
        the payload has no string ``type`` of its own.
        """
        if not isinstance(payload, dict):
            return [ErrorEvent(FrameError("Stream payload is not a JSON object"))]

        kind = payload.get("type")
        if not isinstance(kind, str) or not kind:
            kind = event_name

        events = self._dispatch(kind, payload)
        for event in events:
            if isinstance(event, ToolCallStartEvent):
                self._saw_tool_call = True
            elif isinstance(event, DoneEvent):
                self._done = True
        return events

    def _dispatch(self, kind: str | None, payload: dict[str, Any]) -> list[StreamEvent]:
        match kind:
            case "token":
                return self._token(payload)
            case "tool_call_start":
                return self._tool_call_start(payload)
            case "tool_call_end":
                return self._tool_call_end(payload)
            case "error":
                message = _error_message(payload) or "Stream reported an error"
                return [ErrorEvent(StreamError(message))]
            case "done":
                return self._generic_done(payload)
            case "message_start":
                return self._message_start(payload)
            case "compaction":
                return self._compaction(payload)
            case "content_block_start":
                return self._content_block_start(payload)
            case "content_block_delta":
                return self._content_block_delta(payload)
            case "content_block_stop":
                return self._content_block_stop()
            case "message_delta":
                return self._message_delta(payload)
            case "message_stop":
                return [] if self._done else [done_event("stop")]
            case "ping" | "keepalive":
                return []
            case _:
                return self._untyped(kind, payload)

    # --- generic internal shape ---

    def _token(self, payload: dict[str, Any]) -> list[StreamEvent]:
        content = payload.get("content")
        if not isinstance(content, str):
            return _malformed("token", "content must be a string")
        return [TokenEvent(content)]

    def _tool_call_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        call = payload.get("toolCall")
        if not isinstance(call, dict):
            return _malformed("tool_call_start", "toolCall must be an object")
        call_id = call.get("id")
        name = call.get("name")
        arguments = call.get("arguments")
        if not isinstance(call_id, str) or not isinstance(name, str):
            return _malformed("tool_call_start", "toolCall needs string id and name")
        if not isinstance(arguments, dict):
            return _malformed("tool_call_start", "arguments must be an object")
        return [ToolCallStartEvent(ToolCall(call_id, name, arguments))]

    def _tool_call_end(self, payload: dict[str, Any]) -> list[StreamEvent]:
        result = payload.get("result")
        if not isinstance(result, dict):
            return _malformed("tool_call_end", "result must be an object")
        call_id = result.get("callId")
        name = result.get("name")
        error = result.get("error")
        if not isinstance(call_id, str) or not isinstance(name, str):
            return _malformed("tool_call_end", "result needs string callId and name")
        if error is not None and not isinstance(error, str):
            return _malformed("tool_call_end", "error must be a string")
        return [ToolCallEndEvent(call_id, name, result.get("result"), error)]

    def _generic_done(self, payload: dict[str, Any]) -> list[StreamEvent]:
        usage = TokenUsage.zero()
        raw = payload.get("usage")
        if isinstance(raw, dict):
            counts = [
                as_count(raw.get(camel, raw.get(snake)))
                for camel, snake in (
                    ("inputTokens", "input_tokens"),
                    ("outputTokens", "output_tokens"),
                    ("totalTokens", "total_tokens"),
                )
            ]
            if None not in counts[:2]:
                usage = TokenUsage.from_counts(counts[0], counts[1], counts[2])
        reason = payload.get("finishReason", payload.get("finish_reason"))
        return [DoneEvent(usage, normalize_finish_reason(reason))]

    def _message_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        message_id = payload.get("messageId")
        if isinstance(message_id, str) and message_id:
            conversation_id = payload.get("conversationId")
            model = payload.get("model")
            return [
                MessageStartEvent(
                    message_id,
                    conversation_id if isinstance(conversation_id, str) else None,
                    model if isinstance(model, str) else None,
                )
            ]

        message = payload.get("message")
        if not isinstance(message, dict):
            return []
        usage = message.get("usage")
        if isinstance(usage, dict):
            self._input_tokens = as_count(usage.get("input_tokens"))
        message_id = message.get("id")
        if not isinstance(message_id, str) or not message_id:
            return []
        model = message.get("model")
        return [MessageStartEvent(message_id, None, model if isinstance(model, str) else None)]

    def _compaction(self, payload: dict[str, Any]) -> list[StreamEvent]:
        summary = payload.get("summary")
        before = as_count(payload.get("beforeTokenEstimate"))
        after = as_count(payload.get("afterTokenEstimate"))
        if not isinstance(summary, str) or before is None or after is None:
            return _malformed("compaction", "needs summary and token estimates")
        return [CompactionEvent(summary, before, after)]

    # --- Anthropic Messages streaming ---

    def _content_block_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        block = payload.get("content_block")
        if isinstance(block, dict) and block.get("type") == "tool_use":
            initial = block.get("input")
            self._block_tool = _PendingToolCall(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                initial=initial if isinstance(initial, dict) else None,
            )
        return []

    def _content_block_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        delta = payload.get("delta")
        if not isinstance(delta, dict):
            return []
        if delta.get("type") == "input_json_delta":
            partial = delta.get("partial_json")
            if self._block_tool is not None and isinstance(partial, str):
                self._block_tool.arguments.append(partial)
            return []
        text = delta.get("text")
        if isinstance(text, str) and text:
            return [TokenEvent(text)]
        return []

    def _content_block_stop(self) -> list[StreamEvent]:
        pending, self._block_tool = self._block_tool, None
        if pending is None:
            return []
        return [ToolCallStartEvent(pending.finish())]

    def _message_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        delta = payload.get("delta")
        stop_reason = delta.get("stop_reason") if isinstance(delta, dict) else None
        usage = payload.get("usage")
        input_tokens = self._input_tokens or 0
        output_tokens = 0
        if isinstance(usage, dict):
            input_tokens = as_count(usage.get("input_tokens")) or input_tokens
            output_tokens = as_count(usage.get("output_tokens")) or 0
        return [
            DoneEvent(
                TokenUsage.from_counts(input_tokens, output_tokens),
                normalize_finish_reason(stop_reason),
            )
        ]

    # --- untyped payloads ---

    def _untyped(self, kind: str | None, payload: dict[str, Any]) -> list[StreamEvent]:
        candidates = payload.get("candidates")
        if isinstance(candidates, list):
            return self._gemini(candidates, payload)

        choices = payload.get("choices")
        if isinstance(choices, list):
            if not choices and isinstance(payload.get("usage"), dict):
                return self._openai_usage_trailer(payload["usage"])
            if isinstance(choices[0], dict):
                return self._openai(choices[0], payload)

        message = _error_message(payload)
        if message is not None and "error" in payload:
            return [ErrorEvent(StreamError(message))]

        if kind:
            log.debug("Unrecognized stream event type %r", kind)
            return [ErrorEvent(FrameError(f"Unrecognized stream event type: {kind}"))]
        return [ErrorEvent(FrameError("Unrecognized stream payload"))]

    def _gemini(
        self, candidates: list[Any], payload: dict[str, Any]
    ) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        candidate = candidates[0] if candidates else None
        if not isinstance(candidate, dict):
            return events
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in parts if isinstance(parts, list) else []:
            if not isinstance(part, dict) or part.get("thought") is True:
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                events.append(TokenEvent(text))
            call = part.get("functionCall")
            if isinstance(call, dict) and isinstance(call.get("name"), str):
                args = call.get("args")
                call_id = call.get("id")
                self._saw_tool_call = True
                events.append(
                    ToolCallStartEvent(
                        ToolCall(
                            id=call_id if isinstance(call_id, str) else call["name"],
                            name=call["name"],
                            arguments=args if isinstance(args, dict) else {},
                        )
                    )
                )

        reason = candidate.get("finishReason")
        if isinstance(reason, str) and reason:
            finish = normalize_finish_reason(reason)
            if finish == "stop" and self._saw_tool_call:
                finish = "tool_use"
            usage = TokenUsage.zero()
            metadata = payload.get("usageMetadata")
            if isinstance(metadata, dict):
                usage = TokenUsage.from_counts(
                    as_count(metadata.get("promptTokenCount")) or 0,
                    as_count(metadata.get("candidatesTokenCount")) or 0,
                    as_count(metadata.get("totalTokenCount")),
                )
            events.append(DoneEvent(usage, finish))
        return events

    def _openai(self, choice: dict[str, Any], payload: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TokenEvent(content))
            tool_calls = delta.get("tool_calls")
            for fragment in tool_calls if isinstance(tool_calls, list) else []:
                if isinstance(fragment, dict):
                    self._accumulate_openai_tool(fragment)

        reason = choice.get("finish_reason")
        if isinstance(reason, str) and reason:
            for index in sorted(self._indexed_tools):
                events.append(ToolCallStartEvent(self._indexed_tools[index].finish()))
            self._indexed_tools.clear()
            raw = payload.get("usage")
            usage = _openai_usage(raw) if isinstance(raw, dict) else TokenUsage.zero()
            events.append(DoneEvent(usage, normalize_finish_reason(reason)))
        return events

    def _openai_usage_trailer(self, raw: dict[str, Any]) -> list[StreamEvent]:
        # Sent after the finish chunk when usage reporting is on; only
        # completes the stream if no finish chunk arrived.
        if self._done:
            return []
        events: list[StreamEvent] = [
            ToolCallStartEvent(self._indexed_tools[index].finish())
            for index in sorted(self._indexed_tools)
        ]
        self._indexed_tools.clear()
        finish = "tool_use" if events or self._saw_tool_call else "stop"
        events.append(DoneEvent(_openai_usage(raw), finish))
        return events

    def _accumulate_openai_tool(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = len(self._indexed_tools)
        pending = self._indexed_tools.setdefault(index, _PendingToolCall())
        call_id = fragment.get("id")
        if isinstance(call_id, str) and call_id:
            pending.id = call_id
        function = fragment.get("function")
        if isinstance(function, dict):
            name = function.get("name")
            if isinstance(name, str) and name:
                pending.name = name
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                pending.arguments.append(arguments)


def normalize_payload(payload: Any, event_name: str | None = None) -> list[StreamEvent]:
    """Normalize a single payload with no cross-frame state."""
    return StreamNormalizer().feed(payload, event_name)
