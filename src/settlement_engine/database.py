"""Database connection and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Table, create_engine, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(url, echo=False)
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build the session factory shared by the settlement services."""
    return sessionmaker(
        engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


def ping(session: Session) -> bool:
    """Return True if the database answers a trivial query."""
    return session.execute(text("SELECT 1")).scalar() == 1


def upsert_insert(session: Session, table: Table) -> postgresql.Insert | sqlite.Insert:
    """INSERT construct supporting ON CONFLICT for the session's backend."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect}")


def init_db(engine: Engine) -> None:
    """Create any missing settlement tables."""
    from settlement_engine.models import Base

    Base.metadata.create_all(engine)
