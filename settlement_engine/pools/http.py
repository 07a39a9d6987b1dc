from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from settlement_engine.core.errors import ParseError, PoolApiError, TransientFetchError
from settlement_engine.core.rate_limit import HostRateLimiter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429}


class PoolHttpClient:
    """JSON over HTTP with per-host pacing and bounded retry."""

    def __init__(
        self,
        *,
        rate_limiter: HostRateLimiter,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)
        self._retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(max(1, max_retries)),
            wait=wait_exponential(multiplier=backoff_seconds, max=8),
            retry=retry_if_exception_type(TransientFetchError),
        )

    def close(self) -> None:
        self._client.close()

    def get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        return self._retrying.copy()(self._send, "GET", url, params=params, headers=headers)

    def post_json(
        self,
        url: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        form: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        return self._retrying.copy()(self._send, "POST", url, json=json_body, data=form, headers=headers)

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        host = urlsplit(url).netloc
        self._rate_limiter.acquire(host)
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("pool request failed method=%s url=%s error=%s", method, url, exc)
            raise TransientFetchError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            logger.warning(
                "pool request retryable status method=%s url=%s status=%s", method, url, response.status_code
            )
            raise TransientFetchError(f"{method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise PoolApiError(f"{method} {url} returned {response.status_code}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"{method} {url} returned a non-JSON body") from exc
