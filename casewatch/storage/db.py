# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for casewatch.

This module provides async SQLAlchemy connectivity, a declarative base for the
ORM models and transactional session scopes. Every scope commits on success
and rolls back on any exception, which is what the escalation executor relies
on for its all-or-nothing unit of work.
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base

from casewatch.observability.metrics import db_connections_active
from casewatch.settings import settings


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None

# Callable returning a transactional session scope
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


# ==== DATABASE INITIALIZATION ==== #

def _normalise_url(db_url: str) -> str:
    """Force the asyncpg driver for PostgreSQL URLs."""
    if db_url.startswith("postgresql+asyncpg://"):
        return db_url

    db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
    db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")

    # asyncpg spells the SSL parameter differently
    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")
    return db_url


def init_database(db_url: str | None = None) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: Override for ``settings.DATABASE_URL``
    """
    global engine, SessionLocal

    if engine is not None:
        return

    url = _normalise_url(db_url or settings.DATABASE_URL)
    engine_kwargs = {"echo": settings.DB_ECHO}

    if url.startswith("postgresql+asyncpg://"):
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
            connect_args={
                "server_settings": {
                    "application_name": settings.SERVICE_NAME,
                    "timezone": "UTC"
                }
            },
        )

    engine = create_async_engine(url, **engine_kwargs)
    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def session_scope(maker: async_sessionmaker[AsyncSession]) -> SessionScope:
    """
    Build a transactional session scope over a session factory.

    The returned callable yields a session, commits when the block exits
    normally and rolls back when it raises.

    Args:
        maker: Session factory bound to an engine

    Returns:
        SessionScope: ``async with scope() as session`` callable
    """

    @asynccontextmanager
    async def _scope() -> AsyncGenerator[AsyncSession, None]:
        async with maker() as session:
            db_connections_active.inc()
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                db_connections_active.dec()

    return _scope


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic commit or rollback.

    Yields:
        AsyncSession: Database session
    """
    if SessionLocal is None:
        init_database()

    async with session_scope(SessionLocal)() as session:
        yield session


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Yields:
        AsyncSession: Database session for request handling
    """
    async with get_session() as session:
        yield session


def get_session_scope() -> SessionScope:
    """FastAPI dependency returning the scope used by engine services."""
    return get_session


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
