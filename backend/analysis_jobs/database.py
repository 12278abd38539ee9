"""Async SQLAlchemy engine and session factory.

The app lifespan builds one engine from settings.DATABASE_URL and hands
the session factory to the services:

    engine = create_engine(settings.DATABASE_URL)
    store = JobStore(create_session_factory(engine))

Tests do the same against a throwaway SQLite file.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str):
    """Build an async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def create_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
