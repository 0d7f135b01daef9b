import threading
from collections.abc import Callable, Generator
from typing import Any, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from dealbridge.core.config import get_settings


T = TypeVar("T")

_SESSION_LOCK_KEY = "dealbridge.session_lock"


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


async def run_in_session(session: Session, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking session work on the threadpool, one call at a time per session."""
    lock = session.info.setdefault(_SESSION_LOCK_KEY, threading.Lock())

    def _call() -> T:
        with lock:
            return fn(session, *args, **kwargs)

    return await run_in_threadpool(_call)
