from __future__ import annotations

import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from dealbridge.auth.models import SERVICES, AuthToken, utcnow
from dealbridge.errors import StorageUnavailableError


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class TokenSet:
    access_token: str
    refresh_token: str | None
    token_expires_at: int
    api_domain: str | None = None
    accounting_tenant_id: str | None = None

    @classmethod
    def from_model(cls, token: AuthToken) -> TokenSet:
        return cls(
            access_token=token.access_token or "",
            refresh_token=token.refresh_token,
            token_expires_at=token.token_expires_at,
            api_domain=token.api_domain,
            accounting_tenant_id=token.accounting_tenant_id,
        )

    def is_expired(self, at_ms: int | None = None) -> bool:
        return (at_ms if at_ms is not None else now_ms()) >= self.token_expires_at


class TokenStore:
    """Persistence for OAuth tokens keyed by ``(tenant_id, service)``."""

    def get(self, session: Session, tenant_id: str, service: str) -> AuthToken | None:
        try:
            return session.scalar(select(AuthToken).where(AuthToken.tenant_id == tenant_id, AuthToken.service == service))
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailableError("Token storage is unavailable.") from exc

    def save(self, session: Session, tenant_id: str, service: str, token_set: TokenSet) -> AuthToken:
        if service not in SERVICES:
            raise ValueError(f"unknown service {service!r}")
        token = self.get(session, tenant_id, service)
        if token is None:
            token = AuthToken(tenant_id=tenant_id, service=service)
        token.access_token = token_set.access_token
        if token_set.refresh_token:
            token.refresh_token = token_set.refresh_token
        token.token_expires_at = token_set.token_expires_at
        token.api_domain = token_set.api_domain or token.api_domain
        token.accounting_tenant_id = token_set.accounting_tenant_id or token.accounting_tenant_id
        token.is_active = True
        token.updated_at = utcnow()
        session.add(token)
        self._commit(session)
        return token

    def deactivate(self, session: Session, tenant_id: str, service: str) -> None:
        token = self.get(session, tenant_id, service)
        if token is None:
            return
        token.access_token = None
        token.refresh_token = None
        token.is_active = False
        token.updated_at = utcnow()
        session.add(token)
        self._commit(session)

    def mark_used(self, session: Session, token: AuthToken) -> None:
        token.last_used_at = utcnow()
        session.add(token)
        self._commit(session)

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            raise StorageUnavailableError("Token storage is unavailable.") from exc


token_store = TokenStore()
