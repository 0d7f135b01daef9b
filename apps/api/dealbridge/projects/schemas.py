from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProjectCreateRequest(BaseModel):
    """Request body for full project creation; ids are checked by the workflow, not here."""

    model_config = ConfigDict(extra="ignore")

    pipedriveDealId: Any = None
    pipedriveCompanyId: Any = None
    existingProjectNumberToLink: Any = None


class DealProjectMappingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_number: str
    department: str | None
    department_code: str
    year: int
    sequence: int
    deal_ids: list[int] = Field(default_factory=list)
    created_at: datetime
    last_updated_at: datetime


class AccountingStageRead(BaseModel):
    projectCreated: bool
    project: dict[str, Any] | None = None
    contactId: str | None = None
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    message: str | None = None
    error: str | None = None


class ProjectCreateMetadata(BaseModel):
    dealId: int
    companyId: str
    isNewProject: bool
    generatedAt: datetime


class ProjectCreateResponse(BaseModel):
    success: bool
    message: str
    projectNumber: str
    deal: dict[str, Any]
    person: dict[str, Any] | None = None
    organization: dict[str, Any] | None = None
    products: list[dict[str, Any]] = Field(default_factory=list)
    accounting: AccountingStageRead
    metadata: ProjectCreateMetadata
