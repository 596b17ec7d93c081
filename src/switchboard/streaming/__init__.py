"""Streaming: wire decoding, framing and event normalization."""

from .events import (
    CompactionEvent,
    DoneEvent,
    ErrorEvent,
    MessageStartEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
    event_to_dict,
)
from .frames import parse_chunked_text, parse_ndjson, parse_sse
from .normalizer import StreamNormalizer, normalize_payload
from .response import CollectedResponse, StreamingResponse

__all__ = [
    "CollectedResponse",
    "CompactionEvent",
    "DoneEvent",
    "ErrorEvent",
    "MessageStartEvent",
    "StreamEvent",
    "StreamNormalizer",
    "StreamingResponse",
    "TokenEvent",
    "ToolCallEndEvent",
    "ToolCallStartEvent",
    "event_to_dict",
    "normalize_payload",
    "parse_chunked_text",
    "parse_ndjson",
    "parse_sse",
]
