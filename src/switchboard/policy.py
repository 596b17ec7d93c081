"""Cross-backend policy: thinking budgets, finish reasons, usage accounting."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from switchboard._utils import as_count
from switchboard.models import TokenUsage
from switchboard.tokens import estimate_request_tokens, estimate_tokens

if TYPE_CHECKING:
    from switchboard.models import ChatRequest, FinishReason, ThinkingLevel

log = logging.getLogger(__name__)

THINKING_BUDGETS: dict[str, int] = {
    "low": 2048,
    "medium": 4096,
    "high": 6144,
}
#: Smallest reasoning budget any backend accepts.
MIN_THINKING_BUDGET = 1024


@dataclass(frozen=True)
class ThinkingBudget:
    """Resolved reasoning budget and the output limit that accommodates it.

    ``budget_tokens`` is ``None`` when thinking ends up disabled; in that case
    ``max_tokens`` is the caller's original limit.
    """

    budget_tokens: int | None
    max_tokens: int

    @property
    def enabled(self) -> bool:
        return self.budget_tokens is not None


def resolve_thinking_budget(
    level: ThinkingLevel | None,
    max_tokens: int,
    *,
    model_max_output: int | None = None,
) -> ThinkingBudget:
    """Turn a coarse thinking level into a concrete reasoning-token budget.

    The budget always leaves at least one answer token below ``max_tokens``.
    A limit too small to hold the minimum budget is raised first (never past
    ``model_max_output``); if the bounds still cannot be met, thinking is
    disabled rather than sent with an invalid budget.
    """
    if level is None:
        return ThinkingBudget(None, max_tokens)
    requested = THINKING_BUDGETS.get(level)
    if requested is None:
        log.debug("Unknown thinking level %r; thinking disabled", level)
        return ThinkingBudget(None, max_tokens)

    effective = max_tokens
    if effective < MIN_THINKING_BUDGET + 1:
        effective = requested + 1
    if model_max_output is not None:
        effective = min(effective, model_max_output)

    budget = min(requested, effective - 1)
    if budget < MIN_THINKING_BUDGET:
        log.debug(
            "Thinking disabled: limit %d cannot hold a %d-token budget",
            effective,
            MIN_THINKING_BUDGET,
        )
        return ThinkingBudget(None, max_tokens)
    return ThinkingBudget(budget, effective)


_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "finish_reason_unspecified": "stop",
    "tool_use": "tool_use",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "max_tokens": "length",
    "length": "length",
    "model_context_window_exceeded": "length",
    "content_filter": "error",
    "safety": "error",
    "recitation": "error",
    "blocklist": "error",
    "prohibited_content": "error",
    "spii": "error",
    "malformed_function_call": "error",
    "refusal": "error",
    "error": "error",
}


def normalize_finish_reason(reason: Any) -> FinishReason:
    """Map any backend's finish vocabulary onto stop/tool_use/length/error.

    Matching is case-insensitive; unknown or missing reasons count as "stop".
    """
    if not isinstance(reason, str) or not reason:
        return "stop"
    return _FINISH_REASONS.get(reason.strip().lower(), "stop")


def build_usage(
    request: ChatRequest,
    output_text: str,
    *,
    input_tokens: Any = None,
    output_tokens: Any = None,
    total_tokens: Any = None,
) -> TokenUsage:
    """Build usage from reported counts, estimating whatever is missing."""
    reported_in = as_count(input_tokens)
    reported_out = as_count(output_tokens)
    if reported_in is None:
        reported_in = estimate_request_tokens(request)
    if reported_out is None:
        reported_out = estimate_tokens(output_text)
    return TokenUsage.from_counts(reported_in, reported_out, as_count(total_tokens))


def estimate_usage(request: ChatRequest, output_text: str) -> TokenUsage:
    """Usage for a completion the backend did not account for."""
    return build_usage(request, output_text)
