"""
API Request Client — bounded outbound HTTP calls for api_request and
webhook nodes.

Every call runs under a hard httpx timeout and is awaited in place, so a
slow endpoint blocks only its own conversation. Calls are not retried:
flow authors point these nodes at arbitrary, possibly non-idempotent
endpoints. Failures are surfaced as ApiRequestError / ApiRequestTimeoutError
for the node handler to route on.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from core.errors import ApiRequestError, ApiRequestTimeoutError

logger = structlog.get_logger()

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


@dataclass
class ApiResponse:
    status_code: int
    data: Any = None
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0


def parse_headers(raw: Any) -> dict[str, str]:
    """Headers arrive from the editor as an object or a JSON string."""
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ApiRequestError(f"Invalid headers JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ApiRequestError("Headers must be an object")
    return {str(k): str(v) for k, v in raw.items()}


class ApiRequestClient:

    def __init__(self, default_timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None):
        self.default_timeout = default_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.default_timeout,
                follow_redirects=True,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Any = None,
        body: Any = None,
        timeout: float = None,
    ) -> ApiResponse:
        method = (method or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise ApiRequestError(f"Unsupported method {method}")
        if not url or not url.lower().startswith(("http://", "https://")):
            raise ApiRequestError(f"Invalid URL {url!r}")

        timeout = float(timeout or self.default_timeout)
        kwargs: dict[str, Any] = {"headers": parse_headers(headers), "timeout": timeout}
        if body not in (None, "") and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                text = str(body)
                try:
                    kwargs["json"] = json.loads(text)
                except ValueError:
                    kwargs["content"] = text.encode("utf-8")

        client = await self._get_client()
        start = time.monotonic()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("api_request_timeout", url=url, timeout=timeout)
            raise ApiRequestTimeoutError(url, timeout) from e
        except httpx.HTTPError as e:
            logger.warning("api_request_transport_error", url=url, error=str(e))
            raise ApiRequestError(f"Request to {url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        result = ApiResponse(
            status_code=response.status_code,
            data=data,
            text=response.text,
            headers=dict(response.headers),
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        logger.info("api_request_completed", method=method, url=url, status=response.status_code)

        if response.status_code >= 400:
            error = ApiRequestError(f"HTTP {response.status_code} from {method} {url}",
                                    status_code=response.status_code)
            error.response = result
            raise error
        return result

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
