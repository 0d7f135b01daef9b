from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from dealbridge.errors import StorageUnavailableError
from dealbridge.projects.models import DealProjectMapping, DealProjectMappingDeal, utcnow


class DealProjectMappingRepository:
    def find_by_deal_id(self, session: Session, deal_id: int) -> DealProjectMapping | None:
        return self._scalar(
            session,
            select(DealProjectMapping)
            .join(DealProjectMappingDeal, DealProjectMappingDeal.mapping_id == DealProjectMapping.id)
            .where(DealProjectMappingDeal.deal_id == deal_id),
        )

    def find_by_project_number(self, session: Session, project_number: str) -> DealProjectMapping | None:
        return self._scalar(session, select(DealProjectMapping).where(DealProjectMapping.project_number == project_number))

    def create(
        self,
        session: Session,
        *,
        project_number: str,
        deal_id: int,
        department: str | None,
        department_code: str,
        year: int,
        sequence: int,
    ) -> DealProjectMapping:
        now = utcnow()
        mapping = DealProjectMapping(
            project_number=project_number,
            department=department,
            department_code=department_code,
            year=year,
            sequence=sequence,
            created_at=now,
            last_updated_at=now,
        )
        mapping.deals.append(DealProjectMappingDeal(deal_id=deal_id, linked_at=now))
        session.add(mapping)
        self._flush(session)
        return mapping

    def add_deal(self, session: Session, mapping: DealProjectMapping, deal_id: int) -> DealProjectMapping:
        if deal_id not in mapping.deal_ids:
            now = utcnow()
            mapping.deals.append(DealProjectMappingDeal(deal_id=deal_id, linked_at=now))
            mapping.last_updated_at = now
            session.add(mapping)
            self._flush(session)
        return mapping

    def _scalar(self, session: Session, statement) -> DealProjectMapping | None:  # type: ignore[no-untyped-def]
        try:
            return session.scalar(statement)
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailableError("Project mapping storage is unavailable.") from exc

    def _flush(self, session: Session) -> None:
        try:
            session.flush()
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailableError("Project mapping storage is unavailable.") from exc


mapping_repository = DealProjectMappingRepository()
