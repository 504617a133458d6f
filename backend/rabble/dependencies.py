from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import get_session
from .events.manager import ConnectionManager
from .game.engine import GameEngine
from .services.store import GameStore


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_store(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> GameStore:
    return GameStore(session, settings)


async def get_engine(
    store: GameStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> GameEngine:
    return GameEngine(store, settings)


def get_registry(request: Request) -> ConnectionManager:
    return request.app.state.registry
