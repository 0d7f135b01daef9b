from __future__ import annotations

import asyncio
import threading
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealbridge.auth.models import SERVICE_ACCOUNTING, SERVICE_CRM
from dealbridge.auth.oauth import RefreshTokenRejectedError
from dealbridge.auth.refresh import TokenRefreshManager
from dealbridge.auth.service import TokenService
from dealbridge.auth.store import TokenSet, TokenStore, now_ms, token_store
from dealbridge.core.database import Base
from dealbridge.errors import RateLimitedError, UnauthenticatedError


class FakeRefresher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, TokenSet]] = []
        self.closed = False

    async def refresh(self, service: str, current: TokenSet) -> TokenSet:
        self.calls.append((service, current))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return TokenSet(
            access_token=f"fresh-{len(self.calls)}",
            refresh_token="rotated-refresh",
            token_expires_at=now_ms() + 3_600_000,
            api_domain=current.api_domain,
            accounting_tenant_id=current.accounting_tenant_id,
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _store_token(session: Session, service: str = SERVICE_CRM, *, expires_in_ms: int = 3_600_000) -> None:
    token_store.save(
        session,
        "company-1",
        service,
        TokenSet(
            access_token="stored-access",
            refresh_token="stored-refresh",
            token_expires_at=now_ms() + expires_in_ms,
            api_domain="https://acme.pipedrive.com",
            accounting_tenant_id="xero-tenant-1" if service == SERVICE_ACCOUNTING else None,
        ),
    )


def _service(refresher: FakeRefresher) -> TokenService:
    return TokenService(refresher, TokenRefreshManager(min_interval_seconds=5.0))


def test_missing_token_is_unauthenticated(db_session: Session) -> None:
    service = _service(FakeRefresher())
    with pytest.raises(UnauthenticatedError) as exc_info:
        asyncio.run(service.get_credentials(db_session, "company-1", SERVICE_CRM))
    assert exc_info.value.message == "Pipedrive not authenticated for company company-1."


def test_valid_token_is_returned_without_refresh(db_session: Session) -> None:
    _store_token(db_session)
    refresher = FakeRefresher()

    credentials = asyncio.run(_service(refresher).get_credentials(db_session, "company-1", SERVICE_CRM))

    assert credentials.access_token == "stored-access"
    assert credentials.api_domain == "https://acme.pipedrive.com"
    assert refresher.calls == []
    assert token_store.get(db_session, "company-1", SERVICE_CRM).last_used_at is not None


def test_expired_token_is_refreshed_and_persisted(db_session: Session) -> None:
    _store_token(db_session, expires_in_ms=-1000)
    refresher = FakeRefresher()

    credentials = asyncio.run(_service(refresher).get_credentials(db_session, "company-1", SERVICE_CRM))

    assert credentials.access_token == "fresh-1"
    assert refresher.calls[0][1].refresh_token == "stored-refresh"
    stored = token_store.get(db_session, "company-1", SERVICE_CRM)
    assert stored.access_token == "fresh-1"
    assert stored.refresh_token == "rotated-refresh"


def test_concurrent_requests_share_one_refresh(db_session: Session) -> None:
    _store_token(db_session, expires_in_ms=-1000)
    refresher = FakeRefresher()
    service = _service(refresher)

    async def scenario() -> list[TokenSet]:
        return await asyncio.gather(
            service.get_credentials(db_session, "company-1", SERVICE_CRM),
            service.get_credentials(db_session, "company-1", SERVICE_CRM),
        )

    first, second = asyncio.run(scenario())
    assert len(refresher.calls) == 1
    assert first == second


def test_rejected_refresh_token_deactivates_stored_token(db_session: Session) -> None:
    _store_token(db_session, expires_in_ms=-1000)
    refresher = FakeRefresher(RefreshTokenRejectedError(SERVICE_CRM, 400, "invalid_grant"))

    with pytest.raises(UnauthenticatedError) as exc_info:
        asyncio.run(_service(refresher).get_credentials(db_session, "company-1", SERVICE_CRM))

    assert "Please re-authenticate" in exc_info.value.message
    stored = token_store.get(db_session, "company-1", SERVICE_CRM)
    assert stored.is_active is False
    assert stored.refresh_token is None


def test_second_refresh_within_interval_is_rate_limited(db_session: Session) -> None:
    _store_token(db_session, expires_in_ms=-1000)
    refresher = FakeRefresher(RuntimeError("token endpoint timed out"))
    service = _service(refresher)

    with pytest.raises(UnauthenticatedError):
        asyncio.run(service.get_credentials(db_session, "company-1", SERVICE_CRM))
    with pytest.raises(RateLimitedError):
        asyncio.run(service.get_credentials(db_session, "company-1", SERVICE_CRM))
    assert len(refresher.calls) == 1


def test_accounting_connection_requires_tenant(db_session: Session) -> None:
    service = _service(FakeRefresher())
    assert asyncio.run(service.is_connected(db_session, "company-1", SERVICE_ACCOUNTING)) is False

    _store_token(db_session, SERVICE_ACCOUNTING)
    assert asyncio.run(service.is_connected(db_session, "company-1", SERVICE_ACCOUNTING)) is True


def test_close_clears_manager_and_closes_refresher() -> None:
    refresher = FakeRefresher()
    service = _service(refresher)
    service.refresh_manager._last_completed["company-1:crm"] = 0.0

    asyncio.run(service.close())

    assert refresher.closed is True
    assert service.refresh_manager.status()["rate_limited_tokens"] == []


class GatedTokenStore(TokenStore):
    def __init__(self) -> None:
        self.released = threading.Event()
        self.released_while_loading: bool | None = None

    def get(self, session: Session, tenant_id: str, service: str):  # type: ignore[no-untyped-def]
        self.released_while_loading = self.released.wait(timeout=2)
        return super().get(session, tenant_id, service)


def test_token_lookup_does_not_block_the_event_loop(db_session: Session) -> None:
    _store_token(db_session)
    store = GatedTokenStore()
    service = TokenService(FakeRefresher(), TokenRefreshManager(), store=store)

    async def scenario() -> TokenSet:
        lookup = asyncio.ensure_future(service.get_credentials(db_session, "company-1", SERVICE_CRM))
        await asyncio.sleep(0)
        store.released.set()
        return await lookup

    credentials = asyncio.run(scenario())

    assert credentials.access_token == "stored-access"
    assert store.released_while_loading is True
