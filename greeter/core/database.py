import ssl
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from greeter.core.errors import InfrastructureError
from greeter.core.logging import get_logger

logger = get_logger(__name__)


def normalize_database_url(url: str) -> tuple[str, dict]:
    """
    Fix a Postgres connection URL for asyncpg compatibility.

    Hosted Postgres URLs include params like sslmode, channel_binding that
    asyncpg doesn't accept. We strip them and handle SSL via connect_args.

    - For remote hosts: Use SSL with default context
    - For local dev (localhost/127.0.0.1/db) and SQLite: No SSL
    """
    parsed = urlparse(url)
    if parsed.scheme.startswith("sqlite"):
        return url, {}

    params = parse_qs(parsed.query)

    # Remove unsupported asyncpg params
    unsupported = ["sslmode", "channel_binding", "options"]
    for param in unsupported:
        params.pop(param, None)

    # Rebuild URL without unsupported params
    new_query = urlencode(params, doseq=True)
    clean_url = urlunparse(parsed._replace(query=new_query))

    hostname = parsed.hostname or ""
    is_local = hostname in ("localhost", "127.0.0.1", "db")

    if is_local:
        return clean_url, {}
    else:
        ssl_context = ssl.create_default_context()
        return clean_url, {"ssl": ssl_context}


class Database:
    """Engine and session factory with an application-managed lifecycle.

    Constructed once at start-up (FastAPI lifespan or CLI command) and passed
    to the stores; ``close()`` disposes the pool at shutdown.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.sessions = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Database":
        clean_url, connect_args = normalize_database_url(url)
        engine_kwargs: dict[str, Any] = {"echo": echo, "connect_args": connect_args}
        if not clean_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
                pool_recycle=280,
            )
        return cls(create_async_engine(clean_url, **engine_kwargs))

    async def create_all(self) -> None:
        """Create all tables (tests and local development; production uses Alembic)."""
        from greeter.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()


@asynccontextmanager
async def session_scope(
    sessions: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Unit of work: commit on success, roll back on error.

    ``IntegrityError`` propagates unchanged so callers can turn it into a
    ``ConflictError``; any other SQLAlchemy failure becomes ``InfrastructureError``.
    """
    async with sessions() as session:
        try:
            yield session
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise
        except SQLAlchemyError as e:
            logger.bind(error=str(e)).error("database_transaction_rollback")
            await session.rollback()
            raise InfrastructureError(f"Database error: {e}") from e
        except Exception:
            await session.rollback()
            raise
