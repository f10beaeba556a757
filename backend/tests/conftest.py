"""
Shared fixtures: a fresh SQLite database per test with users 1 (A) and 2 (B).
"""

import pytest

from followgraph.core.config import DatabaseSettings
from followgraph.core.exceptions import clear_error_history
from followgraph.graph import GraphConsistencyService, RelationshipStore
from followgraph.infrastructure.database import Database


@pytest.fixture
async def database(tmp_path):
    db = Database(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path}/followgraph.db"))
    await db.init_models()
    yield db
    await db.dispose()
    clear_error_history()


@pytest.fixture
def store():
    return RelationshipStore()


@pytest.fixture
def service(database):
    return GraphConsistencyService(database)


@pytest.fixture
async def users(service):
    a = await service.create_user("A", user_id=1)
    b = await service.create_user("B", user_id=2)
    return a, b
