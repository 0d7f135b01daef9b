from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.orm import Session

from dealbridge.auth.models import SERVICE_ACCOUNTING, SERVICE_CRM, AuthToken
from dealbridge.auth.oauth import RefreshTokenRejectedError
from dealbridge.auth.refresh import TokenRefreshManager
from dealbridge.auth.store import TokenSet, TokenStore, now_ms, token_store
from dealbridge.core.database import run_in_session
from dealbridge.errors import RateLimitedError, StorageUnavailableError, UnauthenticatedError


logger = logging.getLogger("dealbridge.auth.service")

SERVICE_LABELS = {SERVICE_CRM: "Pipedrive", SERVICE_ACCOUNTING: "Xero"}


class TokenRefresher(Protocol):
    async def refresh(self, service: str, current: TokenSet) -> TokenSet: ...

    async def aclose(self) -> None: ...


class TokenService:
    """Hands out usable credentials, refreshing expired tokens through the refresh manager."""

    def __init__(
        self,
        refresher: TokenRefresher,
        refresh_manager: TokenRefreshManager[TokenSet],
        store: TokenStore = token_store,
    ) -> None:
        self.refresher = refresher
        self.refresh_manager = refresh_manager
        self.store = store

    async def close(self) -> None:
        self.refresh_manager.clear()
        await self.refresher.aclose()

    async def is_connected(self, session: Session, tenant_id: str, service: str) -> bool:
        token = await run_in_session(session, self.store.get, tenant_id, service)
        return _is_usable(token, service)

    async def get_credentials(self, session: Session, tenant_id: str, service: str) -> TokenSet:
        label = SERVICE_LABELS.get(service, service)
        token = await run_in_session(session, self.store.get, tenant_id, service)
        if token is None or not _is_usable(token, service):
            raise UnauthenticatedError(f"{label} not authenticated for company {tenant_id}.")

        credentials = TokenSet.from_model(token)
        if not credentials.is_expired(now_ms()):
            await run_in_session(session, self.store.mark_used, token)
            return credentials

        logger.info("auth.token.expired", extra={"tenant_id": tenant_id, "service": service})
        try:
            return await self.refresh_manager.refresh(
                tenant_id,
                service,
                lambda: self._refresh(session, tenant_id, service, credentials),
            )
        except (RateLimitedError, UnauthenticatedError, StorageUnavailableError):
            raise
        except Exception as exc:
            raise UnauthenticatedError(
                f"Failed to refresh {label} token for company {tenant_id}. Please re-authenticate."
            ) from exc

    async def _refresh(self, session: Session, tenant_id: str, service: str, current: TokenSet) -> TokenSet:
        label = SERVICE_LABELS.get(service, service)
        if not current.refresh_token:
            raise UnauthenticatedError(f"{label} refresh token not available for company {tenant_id}.")
        try:
            refreshed = await self.refresher.refresh(service, current)
        except RefreshTokenRejectedError as exc:
            logger.warning(
                "auth.token.refresh_rejected",
                extra={"tenant_id": tenant_id, "service": service, "error": str(exc)},
            )
            await run_in_session(session, self.store.deactivate, tenant_id, service)
            raise UnauthenticatedError(
                f"Failed to refresh {label} token for company {tenant_id}. Please re-authenticate."
            ) from exc

        await run_in_session(session, self.store.save, tenant_id, service, refreshed)
        return refreshed


def _is_usable(token: AuthToken | None, service: str) -> bool:
    if token is None or not token.is_active or not token.access_token:
        return False
    if service == SERVICE_ACCOUNTING and not token.accounting_tenant_id:
        return False
    return True
