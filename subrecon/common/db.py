"""Database bootstrap helpers for the reconciler."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from subrecon.common.config import settings


def _engine_options(dsn: str) -> dict:
    """Pool and connection options; statement timeouts only apply to PostgreSQL."""

    if not dsn.startswith("postgresql"):
        return {}
    # Bound every statement so a stuck row lock cannot hold a webhook request open.
    return {
        "pool_timeout": 10,
        "connect_args": {"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"},
    }


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True, **_engine_options(settings.postgres_dsn))
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on PostgreSQL, generic JSON elsewhere (local SQLite runs).
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
