"""Authenticated Airtable REST transport built on httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Request/response contract the change feed consumes."""

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]: ...


class TransportError(RuntimeError):
    """Raised for any HTTP, network, or response decoding failure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class AirtableClientSettings:
    """Settings that control the Airtable transport."""

    api_token: str
    base_url: str = "https://api.airtable.com/v0"
    request_timeout_seconds: float = 30.0

    def resolve_url(self, path: str) -> str:
        """Return the absolute URL for an API ``path``."""
        base = self.base_url.rstrip("/")
        path = path.strip()
        if not path:
            return base
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{base}{path}"


class AirtableClient:
    """Thin request/response wrapper around ``httpx.Client``.

    Every failure mode (non-2xx status, network error, undecodable body) is
    surfaced as :class:`TransportError` so callers only need to handle one kind.
    Requests are not retried.
    """

    def __init__(
        self,
        settings: AirtableClientSettings,
        *,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        if not settings.api_token:
            raise ValueError("api_token must be provided")
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=settings.request_timeout_seconds
        )
        self._headers = {
            "Authorization": f"Bearer {settings.api_token}",
            "Accept": "application/json",
        }

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._settings.resolve_url(path)
        kwargs: Dict[str, Any] = {"headers": self._headers}
        if body is not None:
            kwargs["json"] = dict(body)
        if query:
            kwargs["params"] = dict(query)
        logger.debug("airtable %s %s query=%s", method, url, query or {})
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(
                f"airtable {method} {path} failed with status {status}: "
                f"{_error_detail(exc.response)}",
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"airtable {method} {path} failed: {exc}") from exc

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(
                f"airtable {method} {path} returned malformed JSON"
            ) from exc
        if not isinstance(data, dict):
            raise TransportError(
                f"airtable {method} {path} returned {type(data).__name__}, expected object"
            )
        return data

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "AirtableClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or error)
        if error:
            return str(error)
    return str(data)[:200]
