"""HTTP plumbing shared by the adapters.

Adapters own one lazily created ``httpx.AsyncClient``. A client can also be
injected (tests pass one built on ``httpx.MockTransport``); injected clients
are left open on :meth:`HTTPProvider.aclose`.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

import httpx

from switchboard.errors import ProviderError
from switchboard.providers._errors import error_for_response, wrap_provider_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


class HTTPProvider:
    """Base for adapters that talk JSON over HTTP."""

    #: Short provider name used in errors and hints.
    provider_name: str = "provider"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        """Per-request headers (auth, versioning)."""
        return {}

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily initialize and return the async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        phase: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and return its JSON object body.

        Raises ProviderError on transport failure, non-2xx status, or a body
        that is not a JSON object.
        """
        client = self._get_client()
        url = self._url(path)
        log.debug("%s %s %s", self.provider_name, method, url)
        try:
            response = await client.request(
                method, url, json=json, params=params, headers=self._headers()
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.provider_name, phase=phase
            ) from e

        if response.is_error:
            raise error_for_response(response, provider=self.provider_name, phase=phase)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.provider_name} {phase} returned invalid JSON",
                status_code=response.status_code,
                body=response.text[:2000],
                provider=self.provider_name,
                phase=phase,
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"{self.provider_name} {phase} returned {type(data).__name__}, expected an object",
                status_code=response.status_code,
                body=response.text[:2000],
                provider=self.provider_name,
                phase=phase,
            )
        return data

    @asynccontextmanager
    async def _open_stream(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming response, raising ProviderError on non-2xx."""
        client = self._get_client()
        url = self._url(path)
        log.debug("%s %s %s (stream)", self.provider_name, method, url)
        async with client.stream(
            method, url, json=json, params=params, headers=self._headers()
        ) as response:
            if response.is_error:
                await response.aread()
                raise error_for_response(
                    response, provider=self.provider_name, phase="stream"
                )
            yield response

    async def _probe(self, path: str, *, params: dict[str, Any] | None = None) -> bool:
        """Return whether ``GET path`` succeeds; never raises."""
        try:
            await self._request_json("GET", path, phase="validate", params=params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("%s connection check failed: %s", self.provider_name, exc)
            return False
        return True

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        if self._owns_client:
            await client.aclose()
