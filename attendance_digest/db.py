from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from attendance_digest.settings import get_settings


class Base(DeclarativeBase):
    pass


def _connect_args() -> dict[str, object]:
    settings = get_settings()
    if not settings.database_url.startswith("postgresql"):
        return {}
    # Bound every store call made by the job and the API.
    return {
        "connect_timeout": max(1, int(settings.database_connect_timeout_seconds)),
        "options": f"-c statement_timeout={max(0, int(settings.database_statement_timeout_ms))}",
    }


engine = create_engine(
    get_settings().database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
