from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
company_id_var: ContextVar[str | None] = ContextVar("company_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def company_scope(company_id: str | None) -> Iterator[None]:
    """Tag everything logged inside the block with the CRM company being served."""
    token = company_id_var.set(company_id)
    try:
        yield
    finally:
        company_id_var.reset(token)


def get_company_id() -> str | None:
    return company_id_var.get()
