"""
Shared async HTTP plumbing for the thin CRM and accounting clients.
"""

from __future__ import annotations

from typing import Any

import httpx
from opentelemetry import trace

from dealbridge.context import get_correlation_id
from dealbridge.errors import DownstreamError, DownstreamUnavailableError, UnauthenticatedError


class UpstreamHTTPError(DownstreamError):
    """Non-success response from an external API."""

    def __init__(self, service: str, status_code: int, detail: str) -> None:
        super().__init__(f"{service} API returned error {status_code}: {detail}", upstreamStatus=status_code)
        self.service = service
        self.upstream_status = status_code


class UpstreamUnavailableError(DownstreamUnavailableError):
    def __init__(self, service: str, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"{service} API is unavailable: {detail}", upstreamStatus=status_code)
        self.service = service
        self.upstream_status = status_code


class AsyncApiClient:
    """Base async client: one pooled ``httpx.AsyncClient``, JSON in and out, error mapping."""

    service_name = "upstream"

    def __init__(self, base_url: str = "", *, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._tracer = trace.get_tracer(f"dealbridge.integrations.{self.service_name}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        with self._tracer.start_as_current_span(f"{self.service_name}.{method.lower()}") as span:
            span.set_attribute("http.url", url)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = await self._client.request(method, url, headers=headers, json=json, params=params)
            except httpx.RequestError as exc:
                raise UpstreamUnavailableError(self.service_name, str(exc)) from exc

            span.set_attribute("http.status_code", response.status_code)
            if allow_404 and response.status_code == 404:
                return None
            if response.status_code == 401:
                raise UnauthenticatedError(f"{self.service_name} rejected the access token.")
            if response.status_code >= 500:
                raise UpstreamUnavailableError(self.service_name, _error_text(response), response.status_code)
            if response.status_code >= 400:
                raise UpstreamHTTPError(self.service_name, response.status_code, _error_text(response))
            if not response.content:
                return None
            return response.json()


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] if response.text else ""
    if isinstance(body, dict):
        for key in ("Message", "message", "error", "Detail"):
            if body.get(key):
                return str(body[key])[:500]
    return str(body)[:500]
