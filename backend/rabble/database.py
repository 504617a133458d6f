import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from .config import Settings

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        echo=False,
        future=True,
    )


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_factory() as session:
        yield session


async def init_db(engine: AsyncEngine, settings: Settings) -> None:
    # Import models for SQLModel metadata registration
    from . import models  # noqa: F401

    attempts = max(1, settings.db_init_max_retries)
    base_delay = max(0.5, float(settings.db_init_retry_interval_seconds))

    for attempt in range(1, attempts + 1):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Database schema ready.")
            return
        except Exception as exc:  # pragma: no cover - best effort logging branch
            if attempt == attempts:
                logger.exception("Database initialization failed after %s attempts.", attempts)
                raise

            delay = base_delay * attempt
            logger.warning(
                "Database init attempt %s/%s failed: %s. Retrying in %.1fs...",
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
