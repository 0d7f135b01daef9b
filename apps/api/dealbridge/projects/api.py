from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealbridge.api.dependencies import get_accounting_client, get_crm_client, get_token_service
from dealbridge.auth.service import TokenService
from dealbridge.context import company_scope, get_correlation_id
from dealbridge.core.database import get_db
from dealbridge.errors import DealBridgeError, MissingFieldError, RateLimitedError, ValidationFailedError
from dealbridge.integrations.pipedrive import CrmClient
from dealbridge.integrations.xero import AccountingClient
from dealbridge.metrics import observe_project_creation
from dealbridge.projects.schemas import DealProjectMappingRead, ProjectCreateRequest, ProjectCreateResponse
from dealbridge.projects.service import ProjectCreationService, project_creation_service


logger = logging.getLogger("dealbridge.projects.api")

router = APIRouter(prefix="/api/project", tags=["projects"])


def get_project_service() -> ProjectCreationService:
    return project_creation_service


def error_response(
    request: Request,
    exc: DealBridgeError,
    *,
    context: dict[str, Any] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("X-Correlation-Id")
    payload: dict[str, Any] = {"error": exc.message, "code": exc.code, **exc.extra}
    if exc.status_code >= 500 and context:
        payload.update(context)
    payload["correlation_id"] = correlation_id

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)


def request_validation_error_response(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    for error in errors:
        loc = error.get("loc") or ()
        if error.get("type") == "missing" and len(loc) > 1:
            return error_response(request, MissingFieldError(str(loc[-1])))
    detail = errors[0].get("msg") if errors else "malformed request"
    return error_response(request, ValidationFailedError(f"Invalid request: {detail}"))


@router.post("/create-full", status_code=status.HTTP_201_CREATED, response_model=ProjectCreateResponse)
async def create_full_project(
    request: Request,
    dto: ProjectCreateRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    crm_client: CrmClient = Depends(get_crm_client),
    accounting_client: AccountingClient = Depends(get_accounting_client),
    token_service: TokenService = Depends(get_token_service),
    service: ProjectCreationService = Depends(get_project_service),
) -> dict[str, Any] | JSONResponse:
    dto = dto or ProjectCreateRequest()
    context = {"pipedriveDealId": dto.pipedriveDealId, "pipedriveCompanyId": dto.pipedriveCompanyId}
    try:
        with company_scope(str(dto.pipedriveCompanyId) if dto.pipedriveCompanyId is not None else None):
            return await service.create_full_project(
                db,
                dto,
                crm_client=crm_client,
                accounting_client=accounting_client,
                token_service=token_service,
            )
    except DealBridgeError as exc:
        observe_project_creation("failed")
        logger.warning(
            "projects.create_full.failed",
            extra={
                "deal_id": dto.pipedriveDealId,
                "company_id": dto.pipedriveCompanyId,
                "status_code": exc.status_code,
                "error": exc.message,
            },
        )
        return error_response(request, exc, context=context)
    except Exception:
        observe_project_creation("failed")
        logger.exception(
            "projects.create_full.unhandled",
            extra={"deal_id": dto.pipedriveDealId, "company_id": dto.pipedriveCompanyId},
        )
        return error_response(request, DealBridgeError("Internal server error"), context=context)


@router.get("/deal/{deal_id}", response_model=DealProjectMappingRead)
def get_deal_mapping(
    request: Request,
    deal_id: int,
    db: Session = Depends(get_db),
    service: ProjectCreationService = Depends(get_project_service),
) -> DealProjectMappingRead | JSONResponse:
    try:
        return DealProjectMappingRead.model_validate(service.get_mapping(db, deal_id))
    except DealBridgeError as exc:
        return error_response(request, exc)
