from __future__ import annotations

from typing import Any, Protocol

from dealbridge.auth.store import TokenSet
from dealbridge.errors import UnauthenticatedError
from dealbridge.integrations.http import AsyncApiClient


class AccountingClient(Protocol):
    async def find_contact_by_name(self, credentials: TokenSet, name: str) -> dict[str, Any] | None: ...

    async def create_contact(self, credentials: TokenSet, contact: dict[str, Any]) -> dict[str, Any]: ...

    async def create_project(self, credentials: TokenSet, project: dict[str, Any]) -> dict[str, Any]: ...

    async def create_task(self, credentials: TokenSet, project_id: str, task: dict[str, Any]) -> dict[str, Any]: ...

    async def get_projects(self, credentials: TokenSet, contact_id: str | None = None) -> list[dict[str, Any]]: ...


class XeroClient(AsyncApiClient):
    service_name = "xero"

    async def find_contact_by_name(self, credentials: TokenSet, name: str) -> dict[str, Any] | None:
        if not name:
            return None
        escaped = name.replace('"', '\\"')
        body = await self._request(
            "GET",
            "/api.xro/2.0/Contacts",
            headers=self._headers(credentials),
            params={"where": f'Name=="{escaped}"'},
        )
        contacts = (body or {}).get("Contacts") or []
        return contacts[0] if contacts else None

    async def create_contact(self, credentials: TokenSet, contact: dict[str, Any]) -> dict[str, Any]:
        body = await self._request(
            "PUT",
            "/api.xro/2.0/Contacts",
            headers=self._headers(credentials),
            json={"Contacts": [contact]},
        )
        contacts = (body or {}).get("Contacts") or []
        if not contacts:
            raise ValueError("Xero did not return the created contact")
        return contacts[0]

    async def create_project(self, credentials: TokenSet, project: dict[str, Any]) -> dict[str, Any]:
        if not project.get("contactId") or not project.get("name"):
            raise ValueError("Contact ID and project name are required for creating a Xero project.")
        return await self._request("POST", "/projects.xro/2.0/projects", headers=self._headers(credentials), json=project) or {}

    async def create_task(self, credentials: TokenSet, project_id: str, task: dict[str, Any]) -> dict[str, Any]:
        return (
            await self._request(
                "POST",
                f"/projects.xro/2.0/projects/{project_id}/tasks",
                headers=self._headers(credentials),
                json=task,
            )
            or {}
        )

    async def get_projects(self, credentials: TokenSet, contact_id: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"states": "INPROGRESS"}
        if contact_id:
            params["contactID"] = contact_id
        body = await self._request("GET", "/projects.xro/2.0/projects", headers=self._headers(credentials), params=params)
        return list((body or {}).get("items") or [])

    @staticmethod
    def _headers(credentials: TokenSet) -> dict[str, str]:
        if not credentials.accounting_tenant_id:
            raise UnauthenticatedError("Xero tenant is not available for this company.")
        return {
            "Authorization": f"Bearer {credentials.access_token}",
            "Xero-Tenant-Id": credentials.accounting_tenant_id,
            "Accept": "application/json",
        }
