from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from dealbridge.auth.models import SERVICE_ACCOUNTING, SERVICE_CRM
from dealbridge.auth.oauth import OAuthRefreshClient, RefreshTokenRejectedError
from dealbridge.auth.store import TokenSet, now_ms
from dealbridge.core.config import Settings
from dealbridge.errors import DownstreamUnavailableError, UnauthenticatedError
from dealbridge.integrations.http import UpstreamHTTPError, UpstreamUnavailableError
from dealbridge.integrations.pipedrive import PipedriveClient
from dealbridge.integrations.xero import XeroClient


CRM_CREDENTIALS = TokenSet("crm-access", "crm-refresh", 0, api_domain="https://acme.pipedrive.com")
XERO_CREDENTIALS = TokenSet("xero-access", "xero-refresh", 0, accounting_tenant_id="tenant-1")


def _client(handler) -> httpx.AsyncClient:  # type: ignore[no-untyped-def]
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_pipedrive_unwraps_data_and_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"id": 101, "title": "Refit"}})

    client = PipedriveClient(http_client=_client(handler))
    deal = asyncio.run(client.get_deal(CRM_CREDENTIALS, 101))

    assert deal == {"id": 101, "title": "Refit"}
    assert str(seen[0].url) == "https://acme.pipedrive.com/v1/deals/101"
    assert seen[0].headers["Authorization"] == "Bearer crm-access"


def test_pipedrive_missing_entity_is_none() -> None:
    client = PipedriveClient(http_client=_client(lambda request: httpx.Response(404, json={"success": False})))

    assert asyncio.run(client.get_person(CRM_CREDENTIALS, 5)) is None


def test_pipedrive_products_default_to_empty_list() -> None:
    client = PipedriveClient(http_client=_client(lambda request: httpx.Response(200, json={"success": True, "data": None})))

    assert asyncio.run(client.get_deal_products(CRM_CREDENTIALS, 101)) == []


def test_pipedrive_update_deal_puts_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"id": 101, "pn_key": "NY25001"}})

    client = PipedriveClient(http_client=_client(handler))
    updated = asyncio.run(client.update_deal(CRM_CREDENTIALS, 101, {"pn_key": "NY25001"}))

    assert updated["pn_key"] == "NY25001"
    assert seen[0].method == "PUT"
    assert json.loads(seen[0].content) == {"pn_key": "NY25001"}


@pytest.mark.parametrize(
    ("status_code", "error"),
    [(401, UnauthenticatedError), (503, UpstreamUnavailableError), (422, UpstreamHTTPError)],
)
def test_pipedrive_error_mapping(status_code: int, error: type[Exception]) -> None:
    client = PipedriveClient(
        http_client=_client(lambda request: httpx.Response(status_code, json={"error": "upstream says no"}))
    )

    with pytest.raises(error):
        asyncio.run(client.update_deal(CRM_CREDENTIALS, 101, {"pn_key": "NY25001"}))


def test_pipedrive_connection_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = PipedriveClient(http_client=_client(handler))

    with pytest.raises(DownstreamUnavailableError):
        asyncio.run(client.get_deal(CRM_CREDENTIALS, 101))


def test_pipedrive_requires_api_domain() -> None:
    client = PipedriveClient(http_client=_client(lambda request: httpx.Response(200, json={})))

    with pytest.raises(UnauthenticatedError):
        asyncio.run(client.get_deal(TokenSet("crm-access", None, 0), 101))


def test_xero_contact_lookup_and_tenant_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"Contacts": [{"ContactID": "c-1", "Name": "Harbour Marine"}]})

    client = XeroClient("https://api.xero.com", http_client=_client(handler))
    contact = asyncio.run(client.find_contact_by_name(XERO_CREDENTIALS, "Harbour Marine"))

    assert contact == {"ContactID": "c-1", "Name": "Harbour Marine"}
    assert seen[0].url.path == "/api.xro/2.0/Contacts"
    assert seen[0].url.params["where"] == 'Name=="Harbour Marine"'
    assert seen[0].headers["Xero-Tenant-Id"] == "tenant-1"


def test_xero_create_project_requires_contact_and_name() -> None:
    client = XeroClient("https://api.xero.com", http_client=_client(lambda request: httpx.Response(200, json={})))

    with pytest.raises(ValueError):
        asyncio.run(client.create_project(XERO_CREDENTIALS, {"name": "NY25001 - MV Aurora"}))


def test_xero_projects_and_tasks() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"items": [{"projectId": "p-1", "name": "NY25001 - MV Aurora"}]})
        return httpx.Response(201, json={"taskId": "t-1", **json.loads(request.content)})

    client = XeroClient("https://api.xero.com", http_client=_client(handler))
    projects = asyncio.run(client.get_projects(XERO_CREDENTIALS, "c-1"))
    task = asyncio.run(client.create_task(XERO_CREDENTIALS, "p-1", {"name": "Manhour", "chargeType": "TIME"}))

    assert projects == [{"projectId": "p-1", "name": "NY25001 - MV Aurora"}]
    assert seen[0].url.params["contactID"] == "c-1"
    assert task["taskId"] == "t-1"
    assert seen[1].url.path == "/projects.xro/2.0/projects/p-1/tasks"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        pipedrive_client_id="pd-id",
        pipedrive_client_secret="pd-secret",
        pipedrive_token_url="https://oauth.pipedrive.test/oauth/token",
        xero_client_id="xero-id",
        xero_client_secret="xero-secret",
        xero_token_url="https://identity.xero.test/connect/token",
        token_expiry_skew_seconds=300,
    )


def test_oauth_refresh_posts_refresh_grant(settings: Settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600, "api_domain": "https://acme.pipedrive.com"},
        )

    client = OAuthRefreshClient(settings, http_client=_client(handler))
    before = now_ms()
    refreshed = asyncio.run(client.refresh(SERVICE_CRM, CRM_CREDENTIALS))

    assert str(seen[0].url) == "https://oauth.pipedrive.test/oauth/token"
    form = parse_qs(seen[0].content.decode())
    assert form == {"grant_type": ["refresh_token"], "refresh_token": ["crm-refresh"]}
    assert seen[0].headers["Authorization"].startswith("Basic ")
    assert refreshed.access_token == "new-access"
    assert refreshed.refresh_token == "new-refresh"
    assert before + 3_300_000 <= refreshed.token_expires_at <= now_ms() + 3_300_000


def test_oauth_refresh_keeps_refresh_token_when_not_rotated(settings: Settings) -> None:
    client = OAuthRefreshClient(
        settings,
        http_client=_client(lambda request: httpx.Response(200, json={"access_token": "a", "expires_in": 1800})),
    )

    refreshed = asyncio.run(client.refresh(SERVICE_ACCOUNTING, XERO_CREDENTIALS))

    assert refreshed.refresh_token == "xero-refresh"
    assert refreshed.accounting_tenant_id == "tenant-1"


def test_oauth_rejected_refresh_token(settings: Settings) -> None:
    client = OAuthRefreshClient(
        settings,
        http_client=_client(lambda request: httpx.Response(400, json={"error": "invalid_grant"})),
    )

    with pytest.raises(RefreshTokenRejectedError):
        asyncio.run(client.refresh(SERVICE_CRM, CRM_CREDENTIALS))


def test_oauth_server_error_is_unavailable(settings: Settings) -> None:
    client = OAuthRefreshClient(settings, http_client=_client(lambda request: httpx.Response(502, text="bad gateway")))

    with pytest.raises(DownstreamUnavailableError):
        asyncio.run(client.refresh(SERVICE_CRM, CRM_CREDENTIALS))
