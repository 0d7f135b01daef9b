from fastapi import Request

from dealbridge.auth.service import TokenService
from dealbridge.integrations.pipedrive import CrmClient
from dealbridge.integrations.xero import AccountingClient


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_crm_client(request: Request) -> CrmClient:
    return request.app.state.crm_client


def get_accounting_client(request: Request) -> AccountingClient:
    return request.app.state.accounting_client
