"""SQLite database client for Tool Warden."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import DateTime, String, Text, create_engine, func
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from tool_warden import constants
from tool_warden.utils.pathing import ensure_runtime_directories, ensure_sqlite_parent


class BaseModel(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


def _build_engine(url: Optional[str] = None, echo: bool = False):
    if url is None:
        ensure_runtime_directories()
        url = f"sqlite:///{constants.DB_FILE}"
    else:
        ensure_sqlite_parent(url)
    return create_engine(url, echo=echo, future=True)


ENGINE = None
SESSION_FACTORY = None


class StoredRecord(BaseModel):
    """One JSON document in a named key space (executions, approvals, workflows)."""

    __tablename__ = "stored_records"

    namespace: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


def init_db(url: Optional[str] = None, echo: bool = False) -> None:
    """Create tables if they do not exist."""
    global ENGINE, SESSION_FACTORY
    ENGINE = _build_engine(url, echo=echo)
    SESSION_FACTORY = sessionmaker(
        bind=ENGINE,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    BaseModel.metadata.create_all(bind=ENGINE)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    if SESSION_FACTORY is None:
        init_db()
    session = SESSION_FACTORY()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
