"""JSON HTTP client with retries and timeout, shared by notifiers and scanners."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = "agent-cluster/0.1"


@dataclass(slots=True)
class HttpResult:
    """Result of one JSON request; transport errors are folded into ``error``."""

    url: str
    status_code: int
    payload: Any
    is_success: bool
    error: str | None = None


class HttpClient:
    """httpx wrapper with retry, timeout, and default header configuration."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        return self._request("GET", url, params=params, headers=headers)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        return self._request("POST", url, json=payload, headers=headers)

    def _request(self, method: str, url: str, **kwargs: Any) -> HttpResult:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Timeout on %s %s", method, url)
            return _failed(url, "timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error on %s %s: %s", method, url, exc)
            return _failed(url, str(exc))

        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
        return HttpResult(
            url=url,
            status_code=response.status_code,
            payload=payload,
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _failed(url: str, error: str) -> HttpResult:
    return HttpResult(url=url, status_code=0, payload=None, is_success=False, error=error)
