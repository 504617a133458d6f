import os
import sys
from random import Random

import pytest
from fastapi.testclient import TestClient

# Ensure the backend root (containing the `rabble` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from rabble.config import Settings
from rabble.database import build_engine, build_session_factory, init_db
from rabble.game.engine import GameEngine
from rabble.main import create_app
from rabble.services.store import GameStore


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'rabble.db'}",
        db_init_max_retries=1,
    )


@pytest.fixture()
async def db_engine(settings):
    engine = build_engine(settings)
    await init_db(engine, settings)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def store(db_engine, settings):
    session_factory = build_session_factory(db_engine)
    async with session_factory() as session:
        yield GameStore(session, settings)


@pytest.fixture()
def rng():
    return Random(1234)


@pytest.fixture()
def engine(store, settings, rng):
    return GameEngine(store, settings, rng)


@pytest.fixture()
def make_room(store):
    async def _make_room(player_count=4):
        room, host = await store.create_room("Host")
        players = [await store.create_user(f"Player {n}", room.id) for n in range(1, player_count + 1)]
        return room, host, players

    return _make_room


@pytest.fixture()
def app(settings):
    return create_app(settings, rng=Random(7))


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
