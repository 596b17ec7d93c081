"""Provider implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .anthropic import AnthropicProvider
from .base import Provider, ProviderCapabilities
from .gemini import GeminiProvider
from .health import HealthChecker
from .metrics import MetricsTracker
from .ollama import OllamaProvider
from .openai import OpenAIProvider
from .vllm import VLLMProvider

if TYPE_CHECKING:
    import httpx

    from switchboard.config import Config


def create_provider(config: Config, *, client: httpx.AsyncClient | None = None) -> Provider:
    """Build the adapter described by *config*."""
    api_key = config.secret()
    base: dict[str, str] = {"base_url": config.base_url} if config.base_url else {}
    match config.provider:
        case "anthropic":
            return AnthropicProvider(
                api_key or "", timeout_s=config.timeout_s, client=client, **base
            )
        case "openai":
            return OpenAIProvider(
                api_key or "", timeout_s=config.timeout_s, client=client, **base
            )
        case "google":
            return GeminiProvider(
                api_key or "", timeout_s=config.timeout_s, client=client, **base
            )
        case "ollama":
            return OllamaProvider(
                timeout_s=config.timeout_s,
                client=client,
                backend_kind=config.backend_kind,
                health_check_interval_s=config.health_check_interval_s,
                metrics_capacity=config.metrics_capacity,
                **base,
            )
        case "vllm":
            return VLLMProvider(
                api_key=api_key,
                timeout_s=config.timeout_s,
                client=client,
                backend_kind=config.backend_kind,
                health_check_interval_s=config.health_check_interval_s,
                metrics_capacity=config.metrics_capacity,
                **base,
            )
    raise AssertionError(f"unhandled provider {config.provider!r}")


__all__ = [
    "AnthropicProvider",
    "GeminiProvider",
    "HealthChecker",
    "MetricsTracker",
    "OllamaProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
    "VLLMProvider",
    "create_provider",
]
