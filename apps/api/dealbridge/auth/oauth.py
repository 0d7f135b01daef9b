from __future__ import annotations

from dataclasses import dataclass

import httpx

from dealbridge.auth.models import SERVICE_ACCOUNTING, SERVICE_CRM
from dealbridge.auth.store import TokenSet, now_ms
from dealbridge.core.config import Settings
from dealbridge.errors import DownstreamUnavailableError
from dealbridge.integrations.http import AsyncApiClient, UpstreamHTTPError


class RefreshTokenRejectedError(UpstreamHTTPError):
    """The provider refused the refresh token (revoked, rotated or expired)."""


@dataclass(frozen=True, slots=True)
class OAuthProvider:
    token_url: str
    client_id: str
    client_secret: str


class OAuthRefreshClient(AsyncApiClient):
    """Exchanges refresh tokens at the CRM and accounting token endpoints."""

    service_name = "oauth"

    def __init__(self, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(timeout=settings.http_timeout_seconds, http_client=http_client)
        self.expiry_skew_ms = settings.token_expiry_skew_seconds * 1000
        self.providers = {
            SERVICE_CRM: OAuthProvider(settings.pipedrive_token_url, settings.pipedrive_client_id, settings.pipedrive_client_secret),
            SERVICE_ACCOUNTING: OAuthProvider(settings.xero_token_url, settings.xero_client_id, settings.xero_client_secret),
        }

    async def refresh(self, service: str, current: TokenSet) -> TokenSet:
        provider = self.providers[service]
        with self._tracer.start_as_current_span("oauth.refresh") as span:
            span.set_attribute("service", service)
            try:
                response = await self._client.post(
                    provider.token_url,
                    data={"grant_type": "refresh_token", "refresh_token": current.refresh_token or ""},
                    auth=(provider.client_id, provider.client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.RequestError as exc:
                raise DownstreamUnavailableError(f"{service} token endpoint is unavailable: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code in (400, 401):
                raise RefreshTokenRejectedError(service, response.status_code, response.text[:200])
            if response.status_code >= 400:
                raise DownstreamUnavailableError(f"{service} token endpoint returned {response.status_code}")

            payload = response.json()

        expires_in = int(payload.get("expires_in") or 0)
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or current.refresh_token,
            token_expires_at=now_ms() + expires_in * 1000 - self.expiry_skew_ms,
            api_domain=payload.get("api_domain") or current.api_domain,
            accounting_tenant_id=current.accounting_tenant_id,
        )
