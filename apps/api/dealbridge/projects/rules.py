"""Precondition guards run before a project number is allocated or linked.

Every guard returns ``True`` or raises a :class:`ValidationFailedError` subclass
whose message names the rule that was not met. None of them touch storage or the
network, so a rejected request never consumes a sequence value.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dealbridge.core.config import Settings, get_settings
from dealbridge.errors import ValidationFailedError
from dealbridge.projects.numbering import validate_project_number


class AlreadyLinkedError(ValidationFailedError):
    code = "already_linked"


class MissingDepartmentError(ValidationFailedError):
    code = "missing_department"

    def __init__(self, message: str = "Department is required for project creation") -> None:
        super().__init__(message, missingField="department")


class MissingVesselError(ValidationFailedError):
    code = "missing_vessel"

    def __init__(self, message: str = "Vessel name is required for project creation") -> None:
        super().__init__(message, missingField="vessel_name")


class DealRequiredError(ValidationFailedError):
    code = "deal_required"


class ValueRequiredError(ValidationFailedError):
    code = "value_required"


class ValueNotPositiveError(ValidationFailedError):
    code = "value_not_positive"


class InvalidCloseDateError(ValidationFailedError):
    code = "invalid_close_date"


class OrganizationRequiredError(ValidationFailedError):
    code = "organization_required"


class ProjectNumberRequiredError(ValidationFailedError):
    code = "project_number_required"


class ProjectNumberMustBeStringError(ValidationFailedError):
    code = "project_number_must_be_string"


class InvalidFormatError(ValidationFailedError):
    code = "invalid_format"


class DuplicateProjectNumberError(ValidationFailedError):
    code = "duplicate_project_number"


class DealMustBeObjectError(ValidationFailedError):
    code = "deal_must_be_object"


class DealDepartmentRequiredError(ValidationFailedError):
    code = "deal_department_required"


class DepartmentMismatchError(ValidationFailedError):
    code = "department_mismatch"


class UnknownDepartmentError(ValidationFailedError):
    code = "unknown_department"


@dataclass(frozen=True, slots=True)
class DealFieldKeys:
    """CRM custom-field keys; Pipedrive exposes custom fields under hashed keys."""

    project_number: str
    department: str
    vessel_name: str
    sales_in_charge: str = ""
    location: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> DealFieldKeys:
        return cls(
            project_number=settings.pipedrive_project_number_field_key,
            department=settings.pipedrive_department_field_key,
            vessel_name=settings.pipedrive_vessel_name_field_key,
            sales_in_charge=settings.pipedrive_sales_in_charge_field_key,
            location=settings.pipedrive_location_field_key,
        )


def _field_keys(fields: DealFieldKeys | None) -> DealFieldKeys:
    return fields or DealFieldKeys.from_settings(get_settings())


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def get_custom_field(deal: Mapping[str, Any], key: str) -> Any:
    if not key:
        return None
    value = deal.get(key)
    if _is_blank(value):
        custom_fields = deal.get("custom_fields")
        if isinstance(custom_fields, Mapping):
            value = custom_fields.get(key)
    return None if _is_blank(value) else value


def get_deal_department(deal: Mapping[str, Any], fields: DealFieldKeys | None = None) -> Any:
    return get_custom_field(deal, _field_keys(fields).department)


def resolve_department_code(department_name: Any, department_codes: Mapping[str, str] | None = None) -> str:
    codes = department_codes if department_codes is not None else get_settings().department_codes
    code = codes.get(department_name) if isinstance(department_name, str) else None
    if not code:
        raise UnknownDepartmentError(f'Department code not found for: "{department_name}"', department=department_name)
    return code


def validate_project_creation(deal: Any, fields: DealFieldKeys | None = None) -> bool:
    keys = _field_keys(fields)
    if not isinstance(deal, Mapping):
        raise DealRequiredError("Deal is required")

    if get_custom_field(deal, keys.project_number) is not None:
        raise AlreadyLinkedError("Deal already has an associated project")

    if get_custom_field(deal, keys.department) is None:
        raise MissingDepartmentError()

    if get_custom_field(deal, keys.vessel_name) is None:
        raise MissingVesselError()

    return True


def validate_deal_for_project(deal: Any) -> bool:
    if deal is None:
        raise DealRequiredError("Deal is required")
    if not isinstance(deal, Mapping):
        raise DealRequiredError("Deal must be an object")

    value = deal.get("value")
    if value is None:
        raise ValueRequiredError("Deal value is required")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueNotPositiveError("Deal value must be a positive number")

    close_date = deal.get("expected_close_date")
    if close_date not in (None, ""):
        if not isinstance(close_date, str):
            raise InvalidCloseDateError("Expected close date must be a string")
        try:
            datetime.fromisoformat(close_date)
        except ValueError as exc:
            raise InvalidCloseDateError("Invalid expected close date format") from exc

    org = deal.get("org_id")
    org_id = org.get("value") if isinstance(org, Mapping) else org
    if _is_blank(org_id) or org_id is False:
        raise OrganizationRequiredError("Deal must be associated with an organization")

    return True


def validate_project_number_assignment(
    project_number: Any,
    existing_numbers: Iterable[str] | None = (),
    deal: Any = None,
    *,
    fields: DealFieldKeys | None = None,
    department_codes: Mapping[str, str] | None = None,
) -> bool:
    if project_number is None or project_number == "":
        raise ProjectNumberRequiredError("Project number is required", missingField="existingProjectNumberToLink")

    if not isinstance(project_number, str):
        raise ProjectNumberMustBeStringError("Project number must be a string")

    if not validate_project_number(project_number):
        raise InvalidFormatError(f"Invalid project number format: {project_number}")

    if existing_numbers and project_number in set(existing_numbers):
        raise DuplicateProjectNumberError(f"Project number {project_number} already exists")

    if deal is not None:
        if not isinstance(deal, Mapping):
            raise DealMustBeObjectError("Deal must be an object")

        deal_department = get_deal_department(deal, fields)
        if deal_department is None:
            raise DealDepartmentRequiredError("Deal department is required for project number validation")

        codes = department_codes if department_codes is not None else get_settings().department_codes
        if codes.get(deal_department) != project_number[:2]:
            raise DepartmentMismatchError(
                f"Project number department code {project_number[:2]} does not match deal department {deal_department}"
            )

    return True
