import logging
from contextlib import asynccontextmanager
from random import Random
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .database import build_engine, build_session_factory, init_db
from .dependencies import get_registry
from .events.manager import ConnectionManager
from .realtime.protocol import ProtocolHandler
from .routers import rooms

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, rng: Random | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("rabble").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        engine = build_engine(settings)
        await init_db(engine, settings)
        registry = ConnectionManager()
        session_factory = build_session_factory(engine)

        app.state.settings = settings
        app.state.registry = registry
        app.state.session_factory = session_factory
        app.state.protocol = ProtocolHandler(registry, session_factory, settings, rng)
        logger.info("%s ready", settings.app_name)
        try:
            yield
        finally:
            await registry.close_all()
            await engine.dispose()
            logger.info("%s shut down", settings.app_name)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms.router, prefix=settings.api_prefix)

    @app.get(f"{settings.api_prefix}/health")
    async def healthcheck(registry: ConnectionManager = Depends(get_registry)):
        return {"status": "ok", "connections": registry.online_count}

    @app.websocket("/ws")
    async def game_socket(
        websocket: WebSocket,
        room_id: int = Query(alias="roomId"),
        user_id: int = Query(alias="userId"),
    ):
        await app.state.protocol.serve(websocket, room_id, user_id)

    return app


app = create_app()
