"""
Generic outbound HTTP collaborator used by external_call nodes.

Contract: (method, url, headers, body, timeout) -> HttpResult(status, data, error).
Timeouts, transport failures and non-2xx responses never raise; they come
back as an `error` on the result so the flow can branch on them.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class HttpResult(BaseModel):
    status: Optional[int] = None
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_retryable(exc: BaseException) -> bool:
    """Transport errors, 5xx and 429 are worth another attempt; other 4xx are not."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text


class ExternalHttpClient:
    """Thin httpx wrapper; one shared AsyncClient, per-call timeout."""

    def __init__(self, default_timeout_s: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.default_timeout_s = default_timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._client

    async def call(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpResult:
        method = (method or "GET").upper()
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        timeout_s = timeout if timeout is not None else self.default_timeout_s

        try:
            response = await self._get_client().request(
                method, url, timeout=httpx.Timeout(timeout_s), **kwargs,
            )
        except httpx.TimeoutException:
            logger.warning("external_call_timeout", url=url, method=method, timeout_s=timeout_s)
            return HttpResult(error=f"Request timed out after {timeout_s}s")
        except httpx.InvalidURL as e:
            # resolved templates can carry customer text with control characters
            logger.warning("external_call_invalid_url", url=url, method=method, error=str(e))
            return HttpResult(error=str(e))
        except httpx.HTTPError as e:
            logger.warning("external_call_failed", url=url, method=method, error=str(e))
            return HttpResult(error=str(e) or e.__class__.__name__)

        data = _decode(response)
        if not response.is_success:
            logger.info("external_call_non_2xx", url=url, method=method, status=response.status_code)
            return HttpResult(status=response.status_code, data=data,
                              error=f"HTTP {response.status_code}")
        return HttpResult(status=response.status_code, data=data)

    async def close(self):
        if self._client:
            await self._client.aclose()
