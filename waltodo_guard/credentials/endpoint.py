"""Credential layer — validation endpoint collaborator.

``CredentialValidator`` is the interface the manager calls to ask a provider
whether a secret is accepted.  ``HTTPCredentialValidator`` is the production
implementation: it performs one authenticated ``GET {base_url}/models`` and
reads the status code.

  - 2xx            -> accepted
  - 401 / 403      -> rejected
  - anything else  -> ``httpx.HTTPStatusError`` (the manager wraps it)

No retries happen here; the caller bounds the call with a timeout and decides
whether to try again.  The secret is sent only in the request header and is
never logged.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
from pydantic import SecretStr

from waltodo_guard.logging import get_logger

log = get_logger(__name__)

_REJECTED_STATUS_CODES = {401, 403}


class CredentialValidator(ABC):
    """Asks an external endpoint whether *secret* is valid for *provider*."""

    @abstractmethod
    async def validate(self, provider: str, secret: SecretStr) -> bool:
        """Return ``True`` when the provider accepts *secret*."""
        ...

    async def close(self) -> None:
        """Release network resources (no-op by default)."""


class HTTPCredentialValidator(CredentialValidator):
    """Validates API keys against each provider's ``/models`` endpoint.

    Args:
        base_urls: Provider id -> API base URL.
        timeout:   HTTP timeout in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_urls: dict[str, str],
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_urls = {k: v.rstrip("/") for k, v in base_urls.items()}
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    def _get_http(self) -> httpx.AsyncClient:
        """Lazily create the async HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http

    @staticmethod
    def _build_headers(provider: str, secret: SecretStr) -> dict[str, str]:
        if provider == "anthropic":
            return {
                "x-api-key": secret.get_secret_value(),
                "anthropic-version": "2023-06-01",
            }
        return {"Authorization": f"Bearer {secret.get_secret_value()}"}

    async def validate(self, provider: str, secret: SecretStr) -> bool:
        base_url = self._base_urls.get(provider)
        if base_url is None:
            raise ValueError(f"No validation endpoint configured for provider '{provider}'")

        resp = await self._get_http().get(
            f"{base_url}/models", headers=self._build_headers(provider, secret)
        )
        if resp.status_code in _REJECTED_STATUS_CODES:
            log.info("credential_rejected_by_provider", provider=provider, status=resp.status_code)
            return False
        resp.raise_for_status()
        return True

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            self._http = None
