"""Configuration boundary tests: env resolution, validation and redaction."""

from __future__ import annotations

from pydantic import ValidationError
import pytest

from switchboard.config import Config
from switchboard.errors import ConfigurationError

pytestmark = pytest.mark.unit


def test_config_auto_resolves_api_key_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """API key should be auto-resolved from environment."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")

    cfg = Config(provider="anthropic")

    assert cfg.secret() == "env-key"


def test_explicit_api_key_takes_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    """Explicit api_key should override env."""
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    cfg = Config(provider="openai", api_key="  explicit-key  ")

    assert cfg.secret() == "explicit-key"


def test_google_prefers_gemini_key_then_google_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    assert Config(provider="google").secret() == "google-key"

    monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
    assert Config(provider="google").secret() == "gemini-key"


def test_missing_api_key_raises_clear_error() -> None:
    """Hosted providers without a key must fail clearly."""
    with pytest.raises(ConfigurationError, match="API key required") as exc:
        Config(provider="google")
    assert exc.value.hint is not None
    assert "GEMINI_API_KEY" in exc.value.hint


def test_blank_api_key_counts_as_missing() -> None:
    with pytest.raises(ConfigurationError, match="API key required"):
        Config(provider="openai", api_key="   ")


def test_local_providers_need_no_key_and_read_base_url(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434/")

    ollama = Config(provider="ollama")
    vllm = Config(provider="vllm")

    assert ollama.is_local
    assert ollama.api_key is None
    assert ollama.base_url == "http://gpu-box:11434"
    assert vllm.base_url is None


def test_vllm_accepts_optional_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VLLM_API_KEY", "local-token")

    assert Config(provider="vllm").secret() == "local-token"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"provider": "unknown"},
        {"provider": "ollama", "timeout_s": 0},
        {"provider": "ollama", "health_check_interval_s": -1},
        {"provider": "ollama", "metrics_capacity": 0},
        {"provider": "ollama", "model": "llama3"},
    ],
)
def test_invalid_values_raise_configuration_error(kwargs: dict[str, object]) -> None:
    """Validation failures never leak raw pydantic errors."""
    with pytest.raises(ConfigurationError, match="Invalid configuration") as exc:
        Config(**kwargs)  # type: ignore[arg-type]
    assert exc.value.hint is not None


def test_config_is_frozen() -> None:
    cfg = Config(provider="ollama")

    with pytest.raises(ValidationError):
        cfg.timeout_s = 1.0  # type: ignore[misc]


def test_config_str_and_repr_redact_api_key() -> None:
    """String representations must not leak secrets."""
    secret = "top-secret-key"
    cfg = Config(provider="anthropic", api_key=secret)

    assert secret not in str(cfg)
    assert secret not in repr(cfg)
    assert "[REDACTED]" in str(cfg)
