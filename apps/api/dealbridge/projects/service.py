"""Cross-system project creation.

One request walks a fixed sequence: validate input, resolve credentials, fetch
the deal and its related records, run the business guards, resolve and persist
the project number, write it back to the CRM deal, then try to mirror the
project in the accounting system. Everything up to and including the CRM write
is fatal on failure. The accounting stage never raises; its outcome is reported
in the response.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from dealbridge.auth.models import SERVICE_ACCOUNTING, SERVICE_CRM
from dealbridge.auth.service import TokenService
from dealbridge.auth.store import TokenSet
from dealbridge.core.config import Settings, get_settings
from dealbridge.core.database import run_in_session
from dealbridge.errors import (
    DealBridgeError,
    DownstreamError,
    InvalidIdFormatError,
    MissingFieldError,
    NotFoundError,
    StorageUnavailableError,
)
from dealbridge.integrations.pipedrive import CrmClient
from dealbridge.integrations.xero import AccountingClient
from dealbridge.metrics import observe_accounting_stage, observe_project_creation
from dealbridge.projects.models import DealProjectMapping, utcnow
from dealbridge.projects.numbering import current_two_digit_year, generate_project_number, parse_project_number
from dealbridge.projects.repository import DealProjectMappingRepository, mapping_repository
from dealbridge.projects.rules import (
    AlreadyLinkedError,
    DealFieldKeys,
    DuplicateProjectNumberError,
    InvalidFormatError,
    get_custom_field,
    get_deal_department,
    resolve_department_code,
    validate_deal_for_project,
    validate_project_creation,
    validate_project_number_assignment,
)
from dealbridge.projects.schemas import ProjectCreateRequest
from dealbridge.projects.sequences import SequenceAllocator, sequence_allocator


logger = logging.getLogger("dealbridge.projects.service")
tracer = trace.get_tracer("dealbridge.projects.service")

_DEAL_ID_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True, slots=True)
class StageResult:
    """Tagged outcome of a best-effort stage: ``ok`` with a value, or an error message."""

    ok: bool
    value: Any = None
    error: str | None = None
    message: str | None = None

    @classmethod
    def success(cls, value: Any, message: str | None = None) -> StageResult:
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, error: str | None, message: str | None = None) -> StageResult:
        return cls(ok=False, error=error, message=message)


@dataclass(frozen=True, slots=True)
class ResolvedNumber:
    project_number: str
    is_new_project: bool
    department: str | None


def _reference_id(value: Any) -> int | None:
    """CRM references come either as a bare id or as an expanded ``{"value": id, ...}`` object."""
    if isinstance(value, Mapping):
        value = value.get("value")
    if isinstance(value, bool) or value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _primary_email(person: Mapping[str, Any] | None) -> str | None:
    if not person:
        return None
    emails = person.get("email") or []
    if isinstance(emails, str):
        return emails or None
    primary = next((item for item in emails if isinstance(item, Mapping) and item.get("primary")), None)
    chosen = primary or next((item for item in emails if isinstance(item, Mapping)), None)
    return (chosen or {}).get("value") or None


def _project_id(project: Mapping[str, Any] | None) -> str | None:
    if not project:
        return None
    return project.get("projectId") or project.get("ProjectID")


class ProjectCreationService:
    def __init__(
        self,
        *,
        allocator: SequenceAllocator = sequence_allocator,
        repository: DealProjectMappingRepository = mapping_repository,
        fields: DealFieldKeys | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.allocator = allocator
        self.repository = repository
        self._fields = fields
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def fields(self) -> DealFieldKeys:
        return self._fields or DealFieldKeys.from_settings(self.settings)

    def get_mapping(self, session: Session, deal_id: int) -> DealProjectMapping:
        mapping = self.repository.find_by_deal_id(session, deal_id)
        if mapping is None:
            raise NotFoundError("project mapping for deal", deal_id)
        return mapping

    async def create_full_project(
        self,
        session: Session,
        request: ProjectCreateRequest,
        *,
        crm_client: CrmClient,
        accounting_client: AccountingClient,
        token_service: TokenService,
    ) -> dict[str, Any]:
        deal_id, company_id, link_number = self._parse_request(request)
        fields = self.fields

        with tracer.start_as_current_span("projects.create_full") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("company_id", company_id)
            if not fields.project_number:
                raise DownstreamError("The CRM project number field is not configured.")

            crm_credentials = await token_service.get_credentials(session, company_id, SERVICE_CRM)
            accounting_auth = await self._resolve_accounting_auth(session, token_service, company_id)

            deal, person, organization, products = await self._fetch_deal_bundle(crm_client, crm_credentials, deal_id)

            validate_project_creation(deal, fields)
            validate_deal_for_project(deal)

            resolved = await run_in_session(
                session, self._resolve_and_persist_number, deal_id, deal, link_number, fields
            )
            span.set_attribute("project_number", resolved.project_number)

            await self._update_crm_deal(crm_client, crm_credentials, deal_id, resolved.project_number, fields)

            accounting = await self._run_accounting_stage(
                accounting_client,
                accounting_auth,
                company_id=company_id,
                project_number=resolved.project_number,
                deal=deal,
                person=person,
                organization=organization,
                products=products,
                linking=link_number is not None,
            )

        observe_project_creation("created" if resolved.is_new_project else "linked")
        logger.info(
            "projects.create_full.completed",
            extra={
                "deal_id": deal_id,
                "company_id": company_id,
                "project_number": resolved.project_number,
                "is_new_project": resolved.is_new_project,
                "status": "accounting_ok" if accounting.ok else "accounting_skipped",
            },
        )
        return self._assemble_response(
            deal_id=deal_id,
            company_id=company_id,
            resolved=resolved,
            deal=deal,
            person=person,
            organization=organization,
            products=products,
            accounting=accounting,
            fields=fields,
        )

    def _parse_request(self, request: ProjectCreateRequest) -> tuple[int, str, str | None]:
        raw_deal_id = request.pipedriveDealId
        raw_company_id = request.pipedriveCompanyId

        if raw_deal_id is None or (isinstance(raw_deal_id, str) and not raw_deal_id.strip()):
            raise MissingFieldError("pipedriveDealId", "Deal ID is required in the request body.")
        if raw_company_id is None or not str(raw_company_id).strip():
            raise MissingFieldError("pipedriveCompanyId", "Company ID is required in the request body.")

        if isinstance(raw_company_id, bool) or not isinstance(raw_company_id, (str, int)):
            raise InvalidIdFormatError("Company ID must be a string or an integer.", pipedriveCompanyId=raw_company_id)

        if isinstance(raw_deal_id, bool):
            raise InvalidIdFormatError("Deal ID must be a valid integer.", pipedriveDealId=raw_deal_id)
        if isinstance(raw_deal_id, int):
            deal_id = raw_deal_id
        elif isinstance(raw_deal_id, str) and _DEAL_ID_RE.fullmatch(raw_deal_id.strip()):
            deal_id = int(raw_deal_id.strip())
        else:
            raise InvalidIdFormatError("Deal ID must be a valid integer.", pipedriveDealId=raw_deal_id)
        if deal_id <= 0:
            raise InvalidIdFormatError("Deal ID must be a positive integer.", pipedriveDealId=raw_deal_id)

        link_number = request.existingProjectNumberToLink
        if isinstance(link_number, str):
            link_number = link_number.strip() or None
        if link_number is not None:
            # Format only; the department check needs the fetched deal.
            validate_project_number_assignment(link_number)

        return deal_id, str(raw_company_id).strip(), link_number

    async def _resolve_accounting_auth(self, session: Session, token_service: TokenService, company_id: str) -> StageResult:
        if not await token_service.is_connected(session, company_id, SERVICE_ACCOUNTING):
            return StageResult.failure(None, message=f"Xero is not connected for company {company_id}")
        try:
            credentials = await token_service.get_credentials(session, company_id, SERVICE_ACCOUNTING)
        except DealBridgeError as exc:
            logger.warning(
                "projects.accounting.auth_unavailable",
                extra={"company_id": company_id, "error": exc.message},
            )
            return StageResult.failure(exc.message, message=f"Xero authentication failed for company {company_id}")
        return StageResult.success(credentials)

    async def _fetch_deal_bundle(
        self,
        crm_client: CrmClient,
        credentials: TokenSet,
        deal_id: int,
    ) -> tuple[dict[str, Any], dict[str, Any] | None, dict[str, Any] | None, list[dict[str, Any]]]:
        deal = await crm_client.get_deal(credentials, deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)

        person_id = _reference_id(deal.get("person_id"))
        org_id = _reference_id(deal.get("org_id"))

        async def _optional(fetch: Callable[[TokenSet, int], Awaitable[dict[str, Any] | None]], entity_id: int | None):
            if entity_id is None:
                return None
            return await fetch(credentials, entity_id)

        person, organization, products = await asyncio.gather(
            _optional(crm_client.get_person, person_id),
            _optional(crm_client.get_organization, org_id),
            crm_client.get_deal_products(credentials, deal_id),
        )
        if person_id is not None and person is None:
            raise NotFoundError("person", person_id)
        if org_id is not None and organization is None:
            raise NotFoundError("organization", org_id)

        return deal, person, organization, list(products or [])

    def _resolve_and_persist_number(
        self,
        session: Session,
        deal_id: int,
        deal: Mapping[str, Any],
        link_number: str | None,
        fields: DealFieldKeys,
    ) -> ResolvedNumber:
        # Blocking; called through run_in_session so allocation and the mapping write commit as one unit.
        department = get_deal_department(deal, fields)
        department_codes = self.settings.department_codes
        try:
            existing = self.repository.find_by_deal_id(session, deal_id)
            if existing is not None:
                if link_number is not None and existing.project_number != link_number:
                    raise AlreadyLinkedError(
                        f"Deal {deal_id} is already mapped to project {existing.project_number}"
                    )
                logger.info(
                    "projects.number.reused",
                    extra={"deal_id": deal_id, "project_number": existing.project_number},
                )
                return ResolvedNumber(existing.project_number, False, existing.department)

            if link_number is not None:
                validate_project_number_assignment(
                    link_number, (), deal, fields=fields, department_codes=department_codes
                )
                mapping = self.repository.find_by_project_number(session, link_number)
                if mapping is None:
                    parsed = parse_project_number(link_number)
                    if parsed is None:
                        raise InvalidFormatError(f"Invalid project number format: {link_number}")
                    self.repository.create(
                        session,
                        project_number=link_number,
                        deal_id=deal_id,
                        department=department,
                        department_code=parsed.department_code,
                        year=parsed.year,
                        sequence=parsed.sequence,
                    )
                else:
                    self.repository.add_deal(session, mapping, deal_id)
                resolved = ResolvedNumber(link_number, False, department)
            else:
                department_code = resolve_department_code(department, department_codes)
                year = current_two_digit_year(self._clock())
                sequence = self.allocator.allocate_next(session, department_code, year)
                project_number = generate_project_number(department_code, sequence, year)
                self.repository.create(
                    session,
                    project_number=project_number,
                    deal_id=deal_id,
                    department=department,
                    department_code=department_code,
                    year=year,
                    sequence=sequence,
                )
                resolved = ResolvedNumber(project_number, True, department)

            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateProjectNumberError(
                f"Project mapping for deal {deal_id} conflicts with an existing mapping"
            ) from exc
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            raise StorageUnavailableError("Project mapping storage is unavailable.") from exc
        except Exception:
            session.rollback()
            raise

        logger.info(
            "projects.number.resolved",
            extra={
                "deal_id": deal_id,
                "project_number": resolved.project_number,
                "is_new_project": resolved.is_new_project,
            },
        )
        return resolved

    async def _update_crm_deal(
        self,
        crm_client: CrmClient,
        credentials: TokenSet,
        deal_id: int,
        project_number: str,
        fields: DealFieldKeys,
    ) -> None:
        try:
            await crm_client.update_deal(credentials, deal_id, {fields.project_number: project_number})
        except Exception as exc:
            logger.error(
                "projects.crm_update.failed",
                extra={"deal_id": deal_id, "project_number": project_number, "error": str(exc)},
            )
            raise DownstreamError(
                f"Failed to update deal {deal_id} with project number {project_number}: {exc}"
            ) from exc

    async def _run_accounting_stage(
        self,
        accounting_client: AccountingClient,
        auth: StageResult,
        *,
        company_id: str,
        project_number: str,
        deal: Mapping[str, Any],
        person: Mapping[str, Any] | None,
        organization: Mapping[str, Any] | None,
        products: Sequence[Mapping[str, Any]],
        linking: bool,
    ) -> StageResult:
        if not auth.ok:
            observe_accounting_stage("skipped")
            return auth

        credentials: TokenSet = auth.value
        try:
            contact_id = await self._find_or_create_contact(accounting_client, credentials, organization, person)

            project = None
            if linking:
                project = await self._find_project(accounting_client, credentials, contact_id, project_number)
            if project is not None:
                observe_accounting_stage("linked")
                return StageResult.success(
                    {"contactId": contact_id, "project": project, "tasks": []},
                    message=f"Linked to existing Xero project {project_number}",
                )

            vessel_name = get_custom_field(deal, self.fields.vessel_name) or "Unknown Vessel"
            payload: dict[str, Any] = {"contactId": contact_id, "name": f"{project_number} - {vessel_name}"}
            if deal.get("value") is not None:
                payload["estimateAmount"] = deal["value"]
            if deal.get("expected_close_date"):
                payload["deadline"] = f"{deal['expected_close_date']}T00:00:00Z"
            project = await accounting_client.create_project(credentials, payload)
            project_id = _project_id(project)
            if not project_id:
                raise ValueError("Failed to create Xero project: no project ID returned")

            tasks = []
            for task in self._task_payloads(products):
                tasks.append(await accounting_client.create_task(credentials, project_id, task))
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "projects.accounting.failed",
                extra={"company_id": company_id, "project_number": project_number, "error": error},
            )
            observe_accounting_stage("failed")
            return StageResult.failure(error, message="Project number assigned but Xero project creation failed")

        observe_accounting_stage("created")
        logger.info(
            "projects.accounting.created",
            extra={
                "company_id": company_id,
                "project_number": project_number,
                "contact_id": contact_id,
                "accounting_project_id": project_id,
                "task_count": len(tasks),
            },
        )
        return StageResult.success(
            {"contactId": contact_id, "project": project, "tasks": tasks},
            message="Xero project created successfully",
        )

    async def _find_or_create_contact(
        self,
        accounting_client: AccountingClient,
        credentials: TokenSet,
        organization: Mapping[str, Any] | None,
        person: Mapping[str, Any] | None,
    ) -> str:
        name = (organization or {}).get("name")
        if not name:
            raise ValueError("Organization name is required to find or create a Xero contact")

        contact = await accounting_client.find_contact_by_name(credentials, name)
        if contact is None:
            payload: dict[str, Any] = {"Name": name}
            email = _primary_email(person)
            if email:
                payload["EmailAddress"] = email
            contact = await accounting_client.create_contact(credentials, payload)

        contact_id = contact.get("ContactID") or contact.get("contactId")
        if not contact_id:
            raise ValueError("Could not create or find Xero contact for project creation")
        return contact_id

    async def _find_project(
        self,
        accounting_client: AccountingClient,
        credentials: TokenSet,
        contact_id: str,
        project_number: str,
    ) -> dict[str, Any] | None:
        for project in await accounting_client.get_projects(credentials, contact_id):
            name = str(project.get("name") or "")
            if name.split(" - ", 1)[0].strip() == project_number:
                return project
        return None

    def _task_payloads(self, products: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        currency = self.settings.xero_default_currency
        if not products:
            return [
                {"name": name, "rate": {"currency": currency, "value": 0}, "chargeType": "TIME"}
                for name in self.settings.accounting_default_tasks
            ]

        tasks = []
        for index, product in enumerate(products, start=1):
            quantity = product.get("quantity") or 1
            price = product.get("item_price") or 0
            tasks.append(
                {
                    "name": product.get("name") or f"Line item {index}",
                    "rate": {"currency": product.get("currency") or currency, "value": round(float(price) * float(quantity), 2)},
                    "chargeType": "FIXED",
                }
            )
        return tasks

    def _assemble_response(
        self,
        *,
        deal_id: int,
        company_id: str,
        resolved: ResolvedNumber,
        deal: Mapping[str, Any],
        person: dict[str, Any] | None,
        organization: dict[str, Any] | None,
        products: list[dict[str, Any]],
        accounting: StageResult,
        fields: DealFieldKeys,
    ) -> dict[str, Any]:
        enhanced_deal = {
            **deal,
            "department": resolved.department,
            "vessel_name": get_custom_field(deal, fields.vessel_name),
            "sales_in_charge": get_custom_field(deal, fields.sales_in_charge),
            "location": get_custom_field(deal, fields.location),
            "projectNumber": resolved.project_number,
        }

        value = accounting.value or {}
        accounting_payload: dict[str, Any] = {
            "projectCreated": accounting.ok,
            "project": value.get("project"),
            "contactId": value.get("contactId"),
            "tasks": value.get("tasks") or [],
            "message": accounting.message,
            "error": accounting.error,
        }

        if resolved.is_new_project:
            message = f"Project {resolved.project_number} created successfully"
        else:
            message = f"Deal {deal_id} linked to project {resolved.project_number}"

        return {
            "success": True,
            "message": message,
            "projectNumber": resolved.project_number,
            "deal": enhanced_deal,
            "person": person,
            "organization": organization,
            "products": products,
            "accounting": accounting_payload,
            "metadata": {
                "dealId": deal_id,
                "companyId": company_id,
                "isNewProject": resolved.is_new_project,
                "generatedAt": self._clock(),
            },
        }


project_creation_service = ProjectCreationService()
