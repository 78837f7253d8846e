"""Database engine and session factories."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.settings import get_settings

_sync_engine = None


def build_engine(url: str):
    """Create an engine for ``url``; in-memory SQLite shares one connection."""
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def get_sync_engine():
    """Get or create the process-wide engine from settings."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = build_engine(get_settings().database_url)
    return _sync_engine


def get_sync_session_factory(engine=None):
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)


# Convenience alias
SyncSessionLocal = get_sync_session_factory
