"""Database session helpers."""
from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .models import Base


@lru_cache()
def get_engine() -> Engine:
    """Build the engine on first use and reuse it afterwards."""

    settings = get_settings()
    return create_engine(settings.database_url, future=True, pool_pre_ping=True)


@lru_cache()
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), expire_on_commit=False, future=True)


@contextmanager
def get_sync_session() -> Iterator[Session]:
    """Context manager for workers and scripts that need a blocking session."""

    with get_session_factory()() as session:
        yield session


def get_db() -> Iterator[Session]:
    """FastAPI dependency that yields a Session."""

    with get_session_factory()() as session:
        yield session


def init_db() -> None:
    """Create any missing tables for the configured database."""

    Base.metadata.create_all(get_engine())
