"""Database configuration for the design server."""
from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

DATABASE_URL = os.environ.get("DESIGN_SERVER_DATABASE_URL", "sqlite:///./design_server.db")
STORAGE_TIMEOUT = float(os.environ.get("DESIGN_SERVER_STORAGE_TIMEOUT", "10"))


def build_engine(url: str = DATABASE_URL, timeout: float = STORAGE_TIMEOUT) -> Engine:
    """Create an engine, bounding SQLite lock waits by ``timeout`` seconds."""

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}
    return create_engine(url, connect_args=connect_args, future=True)


engine = build_engine()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal):
    """Provide a transactional scope for database operations."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
