"""Domain models shared by every provider adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias
import uuid

Role = Literal["user", "assistant", "system", "tool"]
FinishReason = Literal["stop", "tool_use", "length", "error"]
ThinkingLevel = Literal["low", "medium", "high"]
ModelCapability = Literal["chat", "streaming", "tool_use", "vision", "audio"]
HealthStatus = Literal["available", "unavailable", "unknown"]


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TextBlock:
    """Plain text inside a message."""

    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation previously requested by the assistant."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    """The outcome of a tool invocation, sent back to the model."""

    tool_use_id: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentBlock: TypeAlias = TextBlock | ToolUseBlock | ToolResultBlock


@dataclass(frozen=True)
class Message:
    """One conversational turn.

    ``content`` is either a plain string or an ordered sequence of content
    blocks. Lists are frozen into tuples so a message cannot change once it
    has been placed in a request.
    """

    role: Role
    content: str | tuple[ContentBlock, ...] = ""
    id: str = field(default_factory=_new_id)
    tool_result_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        """Content as blocks; plain strings become a single text block."""
        if isinstance(self.content, str):
            return (TextBlock(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call, described by a JSON schema."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class ChatRequest:
    """A canonical chat request, identical for every backend."""

    model: str
    messages: tuple[Message, ...]
    tools: tuple[ToolDefinition, ...] | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    thinking_level: ThinkingLevel | None = None

    def __post_init__(self) -> None:
        if isinstance(self.messages, list):
            object.__setattr__(self, "messages", tuple(self.messages))
        if isinstance(self.tools, list):
            object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(
        cls, input_tokens: int, output_tokens: int, total_tokens: int | None = None
    ) -> TokenUsage:
        """Build usage, summing the counts when no total was reported."""
        if not total_tokens:
            total_tokens = input_tokens + output_tokens
        return cls(input_tokens, output_tokens, total_tokens)

    @classmethod
    def zero(cls) -> TokenUsage:
        """Usage for synthetic completions."""
        return cls(0, 0, 0)


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatResponse:
    """A canonical, non-streaming chat response."""

    id: str
    model: str
    content: str
    usage: TokenUsage
    finish_reason: FinishReason
    tool_calls: tuple[ToolCall, ...] | None = None


@dataclass(frozen=True)
class Model:
    """A model offered by a backend."""

    id: str
    name: str
    provider: str
    context_window: int
    max_output_tokens: int | None = None
    capabilities: frozenset[ModelCapability] = frozenset({"chat", "streaming"})


@dataclass(frozen=True)
class ProviderConfig:
    """Static identity of an adapter."""

    id: str
    name: str
    type: Literal["byok", "local"]
    base_url: str


@dataclass(frozen=True)
class ProviderHealth:
    """Result of the latest reachability probe."""

    status: HealthStatus = "unknown"
    last_checked: datetime | None = None
    latency_ms: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class PerformanceMetrics:
    """One latency/throughput sample for a completed generation."""

    model_id: str
    latency_ms: float
    tokens_per_second: float
    timestamp: datetime = field(default_factory=_utcnow)
