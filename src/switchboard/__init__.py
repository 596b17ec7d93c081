"""switchboard: one request/stream contract over five LLM backends.

Public API:
    - Config / create_provider(): build an adapter for Anthropic, OpenAI,
      Gemini, Ollama or vLLM
    - ChatRequest / Message: canonical input
    - ChatResponse / StreamEvent: canonical output
    - StreamingResponse: collect a stream, with callbacks and cancel()
"""

from __future__ import annotations

import logging

from switchboard.config import Config
from switchboard.errors import (
    ConfigurationError,
    FrameError,
    IncompleteFrameError,
    ProviderError,
    RateLimitError,
    StreamError,
    SwitchboardError,
)
from switchboard.models import (
    ChatRequest,
    ChatResponse,
    Message,
    Model,
    TextBlock,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from switchboard.providers import Provider, create_provider
from switchboard.streaming.events import (
    CompactionEvent,
    DoneEvent,
    ErrorEvent,
    MessageStartEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
)
from switchboard.streaming.response import CollectedResponse, StreamingResponse

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "CollectedResponse",
    "CompactionEvent",
    "Config",
    "ConfigurationError",
    "DoneEvent",
    "ErrorEvent",
    "FrameError",
    "IncompleteFrameError",
    "Message",
    "MessageStartEvent",
    "Model",
    "Provider",
    "ProviderError",
    "RateLimitError",
    "StreamError",
    "StreamEvent",
    "StreamingResponse",
    "SwitchboardError",
    "TextBlock",
    "TokenEvent",
    "TokenUsage",
    "ToolCall",
    "ToolCallEndEvent",
    "ToolCallStartEvent",
    "ToolDefinition",
    "ToolResultBlock",
    "ToolUseBlock",
    "create_provider",
]
