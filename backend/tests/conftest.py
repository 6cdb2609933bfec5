"""
Global pytest configuration and fixtures for coordinator testing.

Test Pyramid:
- Unit tests: coordination services against an in-memory database
- Integration tests: the HTTP API end to end through ASGITransport
- Crosscheck tests: architectural rules enforced on the source tree
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from coordinator.main import app
from coordinator.database import get_db
from coordinator.models.base import Base
from coordinator.core.rate_limiter import limiter
from coordinator.coordination import AgentRegistry, WorkspaceManager
from coordinator.models.agent import AgentRole


# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test (fast, no dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (HTTP API)"
    )
    config.addinivalue_line(
        "markers", "crosscheck: mark test as CROSSCHECK architectural validation"
    )


@pytest_asyncio.fixture
async def engine():
    """In-memory database shared by every session opened on this engine."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    """Create an isolated in-memory test database."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def workspace(test_db):
    return await WorkspaceManager(test_db).create("test-workspace", "/tmp/test-workspace")


@pytest_asyncio.fixture
async def crew(test_db, workspace):
    """A mayor with an explorer, two specialists and a reviewer under it."""
    registry = AgentRegistry(test_db)
    mayor = await registry.spawn(workspace.id, "mayor-1", AgentRole.MAYOR)
    return {
        "mayor": mayor,
        "explorer": await registry.spawn(
            workspace.id, "explorer-1", AgentRole.EXPLORER, parent_id=mayor.id
        ),
        "alice": await registry.spawn(
            workspace.id, "alice", AgentRole.SPECIALIST, parent_id=mayor.id,
            branch_ref="feature/alice", owned_paths=["src/auth/**"],
        ),
        "carol": await registry.spawn(
            workspace.id, "carol", AgentRole.SPECIALIST, parent_id=mayor.id,
            branch_ref="feature/carol", owned_paths=["src/billing/**"],
        ),
        "reviewer": await registry.spawn(
            workspace.id, "reviewer-1", AgentRole.REVIEWER, parent_id=mayor.id
        ),
    }


@pytest_asyncio.fixture
async def client(test_db):
    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    # Reset rate limiter storage for test isolation
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
