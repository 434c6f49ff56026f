"""
Database connection and session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from csv_importer.settings import settings

Base = declarative_base()


def build_engine(database_url: str, pool_pre_ping: bool = True) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared between the submitting thread and
    whichever thread ends up closing the session, so the same-thread check
    is disabled for it.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        pool_pre_ping=pool_pre_ping,
        connect_args=connect_args,
    )


def create_session_factory(database_url: str, pool_pre_ping: bool = True) -> sessionmaker:
    """Build an independent session factory bound to its own engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=build_engine(database_url, pool_pre_ping),
    )


def init_db(bind: Engine) -> None:
    """Create the job table if it does not exist yet."""
    # Register models on Base.metadata
    from csv_importer.models.job import ImportJob  # noqa: F401

    Base.metadata.create_all(bind=bind)


engine = build_engine(settings.DATABASE_URL, settings.DATABASE_POOL_PRE_PING)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_session_factory(config=None) -> sessionmaker:
    """Session factory for a settings object; the shared one for default settings."""
    if config is None or config.DATABASE_URL == settings.DATABASE_URL:
        return SessionLocal
    return create_session_factory(config.DATABASE_URL, config.DATABASE_POOL_PRE_PING)
