"""
SQLAlchemy engine and session factory for the fleet orchestrator.
Every registry, lifecycle and runtime module imports from here.

DATABASE_URL defaults to a local SQLite file so a single process can run
without infrastructure. Point it at PostgreSQL for shared deployments.
"""

import os
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base

DATABASE_URL: str = os.getenv(
    "DATABASE_URL",
    "sqlite:///./fleet.db",
)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # sync routes run in the FastAPI threadpool, async service calls on the event loop
        return {"connect_args": {"check_same_thread": False}}
    # pool_pre_ping=True drops dead connections automatically
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory=None):
    """
    One unit of work outside a request: commit on success, roll back on error.
    Used by the lifecycle, supervisor and resume code, which run outside FastAPI
    dependencies. Never hold a scope open across an await.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_all_tables() -> None:
    """Create all ORM tables. Called at service startup."""
    from fleet.services.shared import models  # noqa: F401 - ensures models are registered
    Base.metadata.create_all(bind=engine)
    _apply_column_migrations()


def _apply_column_migrations() -> None:
    """
    Idempotent ADD COLUMN migrations for columns added after the initial schema.
    Only runs against PostgreSQL; SQLite databases are created fresh.
    Each entry: (table, column, type_sql)
    """
    if engine.dialect.name != "postgresql":
        return
    migrations = [
        ("tenants",       "server_url",     "VARCHAR(512)"),
        ("bot_instances", "is_guest",       "BOOLEAN NOT NULL DEFAULT FALSE"),
        ("bot_instances", "commands_count", "INTEGER NOT NULL DEFAULT 0"),
    ]
    with engine.connect() as conn:
        for table, col, col_type in migrations:
            try:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col} {col_type}"))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
