"""Text-length token estimation for backends that do not report usage."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from switchboard.models import TextBlock, ToolResultBlock, ToolUseBlock

if TYPE_CHECKING:
    from collections.abc import Iterable

    from switchboard.models import ChatRequest, Message

#: Rough characters-per-token ratio for English text across common tokenizers.
CHARS_PER_TOKEN = 4
#: Per-message framing overhead (role markers, separators).
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate the token count of *text*; empty input costs nothing."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _message_text(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    pieces: list[str] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            pieces.append(block.text)
        elif isinstance(block, ToolResultBlock):
            pieces.append(block.content)
        elif isinstance(block, ToolUseBlock):
            pieces.append(block.name)
            pieces.append(str(block.input))
    return "\n".join(pieces)


def estimate_conversation_tokens(messages: Iterable[Message]) -> int:
    """Estimate the prompt size of a message sequence."""
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(message.role)
        total += estimate_tokens(_message_text(message))
    return total


def estimate_request_tokens(request: ChatRequest) -> int:
    """Estimate input tokens for *request*, system prompt included."""
    return estimate_conversation_tokens(request.messages) + estimate_tokens(
        request.system_prompt
    )
