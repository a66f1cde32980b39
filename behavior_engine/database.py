"""
Database configuration and session management.
Uses SQLAlchemy with SQLite for simplicity, easily swappable for PostgreSQL.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool


Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared across the request threads and the
    batcher's worker threads, so same-thread checking is disabled. An
    in-memory SQLite database must use a single static connection or
    every thread would see its own empty database.
    """
    if "sqlite" not in database_url:
        return create_engine(database_url, echo=False, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine):
    """
    Initialize database tables.
    Called on application startup.
    """
    from behavior_engine import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
