"""Configuration: a validated, frozen description of one provider instance.

Credentials and local base URLs are auto-resolved from standard environment
variables (a project ``.env`` file is honoured via python-dotenv).

Example:
    config = Config(provider="ollama", health_check_interval_s=30)
    provider = create_provider(config)
"""

from __future__ import annotations

import os
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from switchboard.errors import ConfigurationError

load_dotenv()

ProviderName = Literal["anthropic", "openai", "google", "ollama", "vllm"]

#: Checked in order; the first non-empty variable wins.
_API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "vllm": ("VLLM_API_KEY",),
}
_BASE_URL_ENV_VARS: dict[str, str] = {
    "ollama": "OLLAMA_BASE_URL",
    "vllm": "VLLM_BASE_URL",
}
BYOK_PROVIDERS = frozenset({"anthropic", "openai", "google"})


def _from_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None


class Config(BaseModel):
    """Immutable configuration for one provider adapter.

    Validation failures surface as :class:`ConfigurationError` with a hint,
    never as a raw pydantic error.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider: ProviderName
    #: Auto-resolved from the provider's standard env var when *None*.
    api_key: SecretStr | None = None
    #: Vendor default when *None*; local servers also read OLLAMA_BASE_URL/VLLM_BASE_URL.
    base_url: str | None = None
    timeout_s: float = Field(default=30.0, gt=0)
    #: Local backends only: poll health in the background at this interval.
    health_check_interval_s: float | None = Field(default=None, gt=0)
    #: Local backends only: override the probe set guessed from base_url.
    backend_kind: Literal["ollama", "vllm", "generic"] | None = None
    metrics_capacity: int = Field(default=100, ge=1)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ())) or "config"
            raise ConfigurationError(
                f"Invalid configuration: {where}: {first.get('msg', 'invalid value')}",
                hint="Supported providers: anthropic, openai, google, ollama, vllm.",
            ) from e

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace and map empty keys to None."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            s = v.strip()
            return SecretStr(s) if s else None
        return v

    @field_validator("base_url", mode="before")
    @classmethod
    def normalize_base_url(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.strip().rstrip("/")
            return s or None
        return v

    @model_validator(mode="before")
    @classmethod
    def resolve_environment(cls, data: Any) -> Any:
        """Fill api_key and base_url from the environment when not given."""
        if not isinstance(data, dict):
            return data
        provider = data.get("provider")
        resolved = dict(data)
        if resolved.get("api_key") is None and provider in _API_KEY_ENV_VARS:
            resolved["api_key"] = _from_env(_API_KEY_ENV_VARS[provider])
        if resolved.get("base_url") is None and provider in _BASE_URL_ENV_VARS:
            resolved["base_url"] = _from_env((_BASE_URL_ENV_VARS[provider],))
        return resolved

    @model_validator(mode="after")
    def require_api_key(self) -> Config:
        """Hosted providers cannot run without a credential."""
        if self.provider in BYOK_PROVIDERS and self.api_key is None:
            env_var = _API_KEY_ENV_VARS[self.provider][0]
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )
        return self

    @property
    def is_local(self) -> bool:
        return self.provider not in BYOK_PROVIDERS

    def secret(self) -> str | None:
        """The plaintext API key, for building outbound headers only."""
        return self.api_key.get_secret_value() if self.api_key else None

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, base_url={self.base_url!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, timeout_s={self.timeout_s})"
        )

    __repr__ = __str__
