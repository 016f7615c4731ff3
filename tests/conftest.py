import pytest
import pytest_asyncio

from facility_data import build_initial_facilities
from game_service import MemoryGameService
from game_session import GameSession


@pytest.fixture
def facilities():
    return build_initial_facilities()


@pytest.fixture
def memory_service():
    return MemoryGameService()


@pytest_asyncio.fixture
async def session(memory_service):
    # Длинный интервал: в тестах тики вызываются вручную
    game_session = GameSession(memory_service, "tester", tick_interval=3600)
    assert await game_session.login()
    yield game_session
    await game_session.close()
