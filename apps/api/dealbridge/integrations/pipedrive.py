from __future__ import annotations

from typing import Any, Protocol

from dealbridge.auth.store import TokenSet
from dealbridge.errors import UnauthenticatedError
from dealbridge.integrations.http import AsyncApiClient


class CrmClient(Protocol):
    async def get_deal(self, credentials: TokenSet, deal_id: int) -> dict[str, Any] | None: ...

    async def get_person(self, credentials: TokenSet, person_id: int) -> dict[str, Any] | None: ...

    async def get_organization(self, credentials: TokenSet, org_id: int) -> dict[str, Any] | None: ...

    async def get_deal_products(self, credentials: TokenSet, deal_id: int) -> list[dict[str, Any]]: ...

    async def update_deal(self, credentials: TokenSet, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]: ...


class PipedriveClient(AsyncApiClient):
    """Pipedrive v1 REST client. The API domain is per company, so it comes with the credentials."""

    service_name = "pipedrive"

    async def get_deal(self, credentials: TokenSet, deal_id: int) -> dict[str, Any] | None:
        return await self._get_data(credentials, f"/v1/deals/{deal_id}")

    async def get_person(self, credentials: TokenSet, person_id: int) -> dict[str, Any] | None:
        return await self._get_data(credentials, f"/v1/persons/{person_id}")

    async def get_organization(self, credentials: TokenSet, org_id: int) -> dict[str, Any] | None:
        return await self._get_data(credentials, f"/v1/organizations/{org_id}")

    async def get_deal_products(self, credentials: TokenSet, deal_id: int) -> list[dict[str, Any]]:
        products = await self._get_data(credentials, f"/v1/deals/{deal_id}/products")
        return list(products or [])

    async def update_deal(self, credentials: TokenSet, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        body = await self._request(
            "PUT",
            self._url(credentials, f"/v1/deals/{deal_id}"),
            headers=self._headers(credentials),
            json=fields,
        )
        return (body or {}).get("data") or {}

    async def _get_data(self, credentials: TokenSet, path: str) -> Any:
        body = await self._request("GET", self._url(credentials, path), headers=self._headers(credentials), allow_404=True)
        if body is None:
            return None
        return body.get("data")

    def _url(self, credentials: TokenSet, path: str) -> str:
        if not credentials.api_domain:
            raise UnauthenticatedError("Pipedrive API domain is not available for this company.")
        return f"{credentials.api_domain.rstrip('/')}{path}"

    @staticmethod
    def _headers(credentials: TokenSet) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}", "Accept": "application/json"}
