"""
Shared fixtures: an in-memory Tortoise database and engine builders.
"""
import pytest
import pytest_asyncio

from shared.database import close_db, init_db
from shared.database.config import build_tortoise_config
from workflow_core import ExecutionEngine, InMemorySnapshotStore, build_default_registry


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory sqlite schema for each test."""
    await init_db(build_tortoise_config("sqlite://:memory:"), generate_schemas=True)
    try:
        yield
    finally:
        await close_db()


@pytest.fixture
def snapshot_store():
    return InMemorySnapshotStore()


@pytest.fixture
def engine(snapshot_store):
    return ExecutionEngine(build_default_registry(), snapshot_store)
