import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.core.database import Database
from app.core.games.coinflip import CoinflipGame
from app.core.streaks import StreakTracker
from app.routers.api import limiter

GOLDEN_SEED = bytes(range(32))


class FixedSeeds:
    """Seed source that hands out a fixed seed."""

    def __init__(self, seed: bytes = GOLDEN_SEED):
        self.seed = seed
        self.calls = 0

    def generate_seed(self) -> bytes:
        self.calls += 1
        return self.seed


class RecordingBroadcaster:
    def __init__(self):
        self.updates = []

    def notify_game_update(self, game_id, result, won):
        self.updates.append({"gameId": game_id, "result": result, "won": won})


@pytest.fixture
def storage():
    db = Database(":memory:")
    yield db
    db.close()


@pytest.fixture
def streaks(storage):
    return StreakTracker(storage)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def game(storage, streaks, broadcaster):
    return CoinflipGame(storage=storage, streaks=streaks, broadcaster=broadcaster)


@pytest.fixture
def client(storage):
    from app.main import create_app

    settings.rate_limit.enabled = False
    limiter.reset()
    app = create_app(storage=storage)
    with TestClient(app) as c:
        yield c
    settings.rate_limit.enabled = True
    limiter.reset()
