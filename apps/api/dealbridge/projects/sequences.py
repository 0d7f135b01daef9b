from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from dealbridge.errors import InvalidDepartmentCodeError, SequenceExhaustedError, StorageUnavailableError
from dealbridge.metrics import observe_project_number_allocated
from dealbridge.projects.models import ProjectSequenceCounter, utcnow
from dealbridge.projects.numbering import DEPARTMENT_CODE_RE, MAX_SEQUENCE


logger = logging.getLogger("dealbridge.projects.sequences")
tracer = trace.get_tracer("dealbridge.projects.sequences")

_DIALECT_INSERTS: dict[str, Any] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SequenceAllocator:
    """Reserves sequence numbers per ``(department_code, year)``.

    The increment is a single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
    statement, so two requests (or two processes) sharing the database can
    never observe the same value. The caller owns the transaction.
    """

    table = ProjectSequenceCounter.__table__

    def allocate_next(self, session: Session, department_code: str, year: int) -> int:
        if not isinstance(department_code, str) or DEPARTMENT_CODE_RE.fullmatch(department_code) is None:
            raise InvalidDepartmentCodeError(f"Invalid department code: {department_code!r}")
        if year < 0 or year > 99:
            raise ValueError(f"year must be a two-digit value, got {year}")

        with tracer.start_as_current_span("projects.allocate_sequence") as span:
            span.set_attribute("department_code", department_code)
            span.set_attribute("year", year)
            statement = self._upsert_statement(session, department_code, year)
            try:
                allocated = session.execute(statement).scalar_one_or_none()
            except (OperationalError, InterfaceError) as exc:
                logger.error(
                    "projects.sequence.storage_unavailable",
                    extra={"department_code": department_code, "year": year, "error": str(exc)},
                )
                raise StorageUnavailableError("Project sequence storage is unavailable.") from exc

            if allocated is None:
                logger.warning(
                    "projects.sequence.exhausted",
                    extra={"department_code": department_code, "year": year},
                )
                raise SequenceExhaustedError(
                    f"All {MAX_SEQUENCE} project numbers for {department_code}{year:02d} have been allocated."
                )

            span.set_attribute("sequence", allocated)

        observe_project_number_allocated(department_code)
        logger.info(
            "projects.sequence.allocated",
            extra={"department_code": department_code, "year": year, "sequence": allocated},
        )
        return int(allocated)

    def current_value(self, session: Session, department_code: str, year: int) -> int:
        value = session.scalar(
            select(ProjectSequenceCounter.current_number).where(
                ProjectSequenceCounter.department_code == department_code,
                ProjectSequenceCounter.year == year,
            )
        )
        return int(value or 0)

    def _upsert_statement(self, session: Session, department_code: str, year: int):  # type: ignore[no-untyped-def]
        dialect_name = session.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect_name)
        if insert is None:
            raise StorageUnavailableError(f"Atomic sequence allocation is not supported on {dialect_name}.")

        now = utcnow()
        table = self.table
        return (
            insert(table)
            .values(
                id=uuid.uuid4(),
                department_code=department_code,
                year=year,
                current_number=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=[table.c.department_code, table.c.year],
                set_={"current_number": table.c.current_number + 1, "updated_at": now},
                where=table.c.current_number < MAX_SEQUENCE,
            )
            .returning(table.c.current_number)
        )


sequence_allocator = SequenceAllocator()
