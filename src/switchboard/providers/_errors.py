"""Shared provider-side error helpers.

Every failure leaving an adapter is a ProviderError carrying the HTTP
status and body when a response was received, so callers never need to
match on httpx exception types or message substrings.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from switchboard.errors import (
    ProviderError,
    RateLimitError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

#: Environment variable that holds each provider's credential.
API_KEY_ENV_VARS: Mapping[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GEMINI_API_KEY",
    "vllm": "VLLM_API_KEY",
}

_BODY_PREVIEW_CHARS = 2000


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a ``Retry-After`` delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after_s", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is None:
            continue
        raw = headers.get("Retry-After")
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                continue
            if seconds >= 0:
                return seconds
    return None


def _auth_hint(provider: str, status_code: int | None) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    if status_code not in {401, 403}:
        return None
    env_var = API_KEY_ENV_VARS.get(provider, "the API key")
    return f"Check credentials/permissions (try setting {env_var} or Config.api_key)."


def _transport_hint(exc: BaseException) -> str | None:
    for e in _walk_exception_chain(exc):
        if isinstance(e, httpx.TimeoutException):
            return "The backend did not answer in time; raise Config.timeout_s."
        if isinstance(e, httpx.ConnectError):
            return "Is the server running and reachable at the configured base URL?"
    return None


def _body_preview(response: httpx.Response) -> str:
    try:
        text = response.text
    except httpx.ResponseNotRead:
        return ""
    return text[:_BODY_PREVIEW_CHARS]


def error_for_response(
    response: httpx.Response, *, provider: str, phase: str
) -> ProviderError:
    """Build the error for a non-2xx response whose body has been read."""
    status = response.status_code
    body = _body_preview(response)
    err_cls = RateLimitError if status == 429 else ProviderError
    retry_after_s: float | None = None
    raw = response.headers.get("Retry-After")
    if raw:
        try:
            retry_after_s = max(float(raw), 0.0)
        except ValueError:
            retry_after_s = None
    return err_cls(
        f"{provider} {phase} failed (status={status}): {body}"
        if body
        else f"{provider} {phase} failed (status={status})",
        hint=_auth_hint(provider, status),
        status_code=status,
        body=body,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> ProviderError:
    """Map transport and decoding exceptions into ProviderError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped — fill in missing context only.
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    derived_hint = hint or _auth_hint(provider, status_code) or _transport_hint(exc)

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc) or type(exc).__name__
    err_cls = RateLimitError if status_code == 429 else ProviderError
    return err_cls(
        f"{msg}{status_note}: {cause}",
        hint=derived_hint,
        status_code=status_code,
        retry_after_s=extract_retry_after_s(exc),
        provider=provider,
        phase=phase,
    )
