"""
SkillForge - Test Fixtures
==========================

Shared pytest fixtures for all tests.
"""

import itertools
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, Optional
from uuid import UUID, uuid4

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from skillforge.api.main import app
from skillforge.core.chain import (
    ChainDefinitionStore,
    CheckpointSessionBridge,
    ExecutionObserver,
    ExecutionSnapshot,
    ExecutionStateMachine,
    SqlSessionStateStore,
)
from skillforge.core.database import (
    Base,
    create_session_factory,
    get_db,
    get_session_factory,
)
from skillforge.core.models import SkillChain, SkillChainLink, SkillChainLinkExecution


# ==========================================================================
# Test Database Setup
# ==========================================================================

# File-backed SQLite so the checkpoint bridge and racing writers can open
# their own connections next to the test's session.

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean database session for each test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database override.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Engine Fixtures
# ==========================================================================

class RecordingObserver(ExecutionObserver):
    """Remembers every hook call with the execution status at call time."""

    def __init__(self, context: Optional[dict[str, Any]] = None):
        self.calls: list[tuple[str, Any]] = []
        self.context = context

    @property
    def hooks(self) -> list[str]:
        return [hook for hook, _ in self.calls]

    async def load_context(self, execution) -> Optional[dict[str, Any]]:
        self.calls.append(("load_context", execution.status))
        return self.context

    async def link_completed(
        self, snapshot: ExecutionSnapshot, attempt: SkillChainLinkExecution
    ) -> None:
        self.calls.append(("link_completed", snapshot.status))

    async def paused(self, snapshot: ExecutionSnapshot) -> None:
        self.calls.append(("paused", snapshot.status))

    async def resumed(self, snapshot: ExecutionSnapshot) -> None:
        self.calls.append(("resumed", snapshot.status))

    async def completed(self, snapshot: ExecutionSnapshot) -> None:
        self.calls.append(("completed", snapshot.status))

    async def failed(self, snapshot: ExecutionSnapshot) -> None:
        self.calls.append(("failed", snapshot.status))

    async def cancelling(self, snapshot: ExecutionSnapshot) -> None:
        self.calls.append(("cancelling", snapshot.status))


@pytest.fixture
def recorder() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def definition_store(db_session: AsyncSession) -> ChainDefinitionStore:
    return ChainDefinitionStore(db_session)


@pytest.fixture
def state_machine(db_session: AsyncSession, recorder: RecordingObserver) -> ExecutionStateMachine:
    """State machine with a recording observer and no session-state bridge."""
    return ExecutionStateMachine(db_session, observers=[recorder])


@pytest.fixture
def session_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlSessionStateStore:
    return SqlSessionStateStore(session_factory)


@pytest.fixture
def bridge(
    session_store: SqlSessionStateStore,
    session_factory: async_sessionmaker[AsyncSession],
) -> CheckpointSessionBridge:
    return CheckpointSessionBridge(session_store, session_factory)


MakeChain = Callable[..., Awaitable[tuple[SkillChain, list[SkillChainLink]]]]


@pytest.fixture
def make_chain(definition_store: ChainDefinitionStore) -> MakeChain:
    """
    Factory for chains.

    Each positional argument is the keyword set for one link, in order.
    `skill_id` defaults to "skill" and `name` to "link-<n>".
    """
    keys = itertools.count(1)

    async def _make(
        *links: dict[str, Any],
        max_total_failures: int = 5,
        project_id: Optional[UUID] = None,
        publish: bool = True,
    ) -> tuple[SkillChain, list[SkillChainLink]]:
        chain = await definition_store.create_chain(
            chain_key=f"chain-{next(keys)}",
            name="Test chain",
            project_id=project_id or uuid4(),
            max_total_failures=max_total_failures,
            created_by="tester",
        )
        created = []
        for index, fields in enumerate(links):
            params = {"name": f"link-{index}", "skill_id": "skill", **fields}
            created.append(await definition_store.add_link(chain.id, **params))
        if publish:
            chain = await definition_store.publish(chain.id)
        return chain, created

    return _make
