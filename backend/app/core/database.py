"""
Database layer — SQLAlchemy 2.0 engine, session factory and ORM base.

Provides:
    • Engine factory (SQLite file by default, any SQLAlchemy URL works)
    • Session factory
    • Base model for ORM entities
    • Table creation / disposal helpers

The broadcast store is written to from dispatcher worker threads, so the
engine is synchronous and every store call opens its own short session.

Usage:
    from backend.app.core.database import create_db_engine, init_db

    engine = create_db_engine()
    init_db(engine)
    store = SqlBroadcastStore(engine)
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    url = url or settings.DATABASE_URL
    kwargs = {"echo": settings.DATABASE_ECHO if echo is None else echo, "future": True}

    if url.startswith("sqlite"):
        # Worker threads share the engine
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **kwargs)
    logger.info("Database engine created for %s", url.split("@")[-1])
    return engine


# ── Session Factory ──
def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


# ── Lifecycle ──
def init_db(engine: Engine) -> None:
    """Create all tables (dev/test only — use Alembic in production)."""
    # Registers the broadcast tables on Base.metadata
    from backend.app.broadcasts import sql_store  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables initialised")


def close_db(engine: Engine) -> None:
    """Dispose engine connections."""
    engine.dispose()
    logger.info("Database connections closed")
