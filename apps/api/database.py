"""
Database configuration and session management.

This file:
- Creates the database engine
- Creates session factory
- Provides dependency for FastAPI routes
- Provides a transaction helper for the analysis worker
"""

import os
from contextlib import contextmanager
from typing import Callable, Iterator

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Load environment variables from .env
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL not found in .env")


def make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every thread sees its own empty database
        kwargs["poolclass"] = StaticPool
    sqlite_engine = create_engine(url, **kwargs)

    # pysqlite defers BEGIN until the first write, which breaks SAVEPOINT.
    # Let SQLAlchemy emit BEGIN itself.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


# Create database engine
# Engine = connection pool to database
engine = make_engine(DATABASE_URL)

# Session factory
# Session = conversation with database
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base class for models
Base = declarative_base()


# Dependency for FastAPI routes
def get_db():
    """
    This function provides a database session to API endpoints.
    It ensures the session is closed after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(session_factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """
    All-or-nothing unit of work: commits when the block exits normally,
    rolls back everything if it raises.
    """
    session = session_factory()
    try:
        with session.begin():
            yield session
    finally:
        session.close()
