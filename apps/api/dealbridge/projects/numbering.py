"""Project number format: two-letter department code, two-digit year, three-digit sequence.

``NY25001`` is the first ``Navy`` project of 2025. ``validate`` and ``generate``
are pure; ``parse`` never raises so it can be used to filter untrusted values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from dealbridge.errors import InvalidDepartmentCodeError, SequenceExhaustedError


PROJECT_NUMBER_RE = re.compile(r"[A-Z]{2}[0-9]{2}[0-9]{3}")
DEPARTMENT_CODE_RE = re.compile(r"[A-Z]{2}")
MAX_SEQUENCE = 999


@dataclass(frozen=True, slots=True)
class ParsedProjectNumber:
    department_code: str
    year: int
    sequence: int


def current_two_digit_year(now: datetime | None = None) -> int:
    return (now or datetime.now(timezone.utc)).year % 100


def validate_project_number(candidate: Any) -> bool:
    if not isinstance(candidate, str):
        return False
    return PROJECT_NUMBER_RE.fullmatch(candidate) is not None


def generate_project_number(department_code: Any, sequence: int, year: int | None = None) -> str:
    if not isinstance(department_code, str) or DEPARTMENT_CODE_RE.fullmatch(department_code) is None:
        raise InvalidDepartmentCodeError(f"Invalid department code: {department_code!r}")
    if sequence < 0 or sequence > MAX_SEQUENCE:
        raise SequenceExhaustedError(f"Sequence {sequence} does not fit the three-digit project number field")

    two_digit_year = current_two_digit_year() if year is None else year % 100
    return f"{department_code}{two_digit_year:02d}{sequence:03d}"


def parse_project_number(candidate: Any) -> ParsedProjectNumber | None:
    if not validate_project_number(candidate):
        return None
    return ParsedProjectNumber(
        department_code=candidate[:2],
        year=int(candidate[2:4]),
        sequence=int(candidate[4:]),
    )
