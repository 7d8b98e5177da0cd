"""
SkillForge - Session State Store Tests
======================================
"""

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.core.chain import SqlSessionStateStore
from skillforge.core.models import SessionPhase, SessionState, utcnow


async def expire(session_factory: async_sessionmaker[AsyncSession], session_id: str) -> None:
    async with session_factory() as db:
        await db.execute(
            update(SessionState)
            .where(SessionState.session_id == session_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()


class TestSaveAndLoad:
    async def test_save_then_load(self, session_store: SqlSessionStateStore):
        ticket_id = uuid4()

        saved = await session_store.save(
            "s-1",
            SessionPhase.PLANNING,
            ticket_id=ticket_id,
            summary="Outlined the work",
            checkpoint={"step": 1},
            ttl_hours=2,
        )
        loaded = await session_store.load("s-1")

        assert loaded.phase == SessionPhase.PLANNING
        assert loaded.ticket_id == ticket_id
        assert loaded.working_summary == "Outlined the work"
        assert loaded.last_checkpoint == {"step": 1}
        assert loaded.expires_at == saved.expires_at
        assert timedelta(hours=1, minutes=59) < loaded.expires_at - utcnow() <= timedelta(hours=2)

    async def test_save_is_upsert(
        self,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        ticket_id = uuid4()
        await session_store.save("s-1", SessionPhase.PLANNING, ticket_id=ticket_id, summary="first")

        await session_store.save("s-1", SessionPhase.TESTING)

        loaded = await session_store.load("s-1")
        assert loaded.phase == SessionPhase.TESTING
        assert loaded.ticket_id == ticket_id
        assert loaded.working_summary == "first"

        async with session_factory() as db:
            count = (await db.execute(select(func.count()).select_from(SessionState))).scalar_one()
        assert count == 1

    async def test_missing_session(self, session_store: SqlSessionStateStore):
        assert await session_store.load("nope") is None

    async def test_expired_is_absent(
        self,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        await session_store.save("s-1", SessionPhase.PLANNING)
        await expire(session_factory, "s-1")

        assert await session_store.load("s-1") is None

    async def test_save_revives_expired_record(
        self,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        await session_store.save("s-1", SessionPhase.PLANNING)
        await expire(session_factory, "s-1")

        await session_store.save("s-1", SessionPhase.REVIEWING)

        assert (await session_store.load("s-1")).phase == SessionPhase.REVIEWING

    async def test_to_context(self, session_store: SqlSessionStateStore):
        snapshot = await session_store.save("s-1", SessionPhase.IMPLEMENTING, summary="coding")

        context = snapshot.to_context()

        assert context["session_id"] == "s-1"
        assert context["phase"] == "implementing"
        assert context["working_summary"] == "coding"
        assert context["last_checkpoint"] == {}
        assert context["updated_at"] is not None


class TestTicketLookup:
    async def test_latest_live_record_wins(
        self,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        ticket_id = uuid4()
        await session_store.save("older", SessionPhase.PLANNING, ticket_id=ticket_id)
        await session_store.save("newer", SessionPhase.TESTING, ticket_id=ticket_id)
        await session_store.save("unrelated", SessionPhase.TESTING, ticket_id=uuid4())

        assert (await session_store.load_for_ticket(ticket_id)).session_id == "newer"

        await expire(session_factory, "newer")
        assert (await session_store.load_for_ticket(ticket_id)).session_id == "older"

        await expire(session_factory, "older")
        assert await session_store.load_for_ticket(ticket_id) is None


class TestClearAndCleanup:
    async def test_clear(self, session_store: SqlSessionStateStore):
        await session_store.save("s-1", SessionPhase.PLANNING)

        assert await session_store.clear("s-1") is True
        assert await session_store.clear("s-1") is False
        assert await session_store.load("s-1") is None

    async def test_cleanup_expired(
        self,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        await session_store.save("live", SessionPhase.PLANNING)
        await session_store.save("stale-1", SessionPhase.PLANNING)
        await session_store.save("stale-2", SessionPhase.PLANNING)
        await expire(session_factory, "stale-1")
        await expire(session_factory, "stale-2")

        assert await session_store.cleanup_expired() == 2
        assert await session_store.cleanup_expired() == 0
        assert await session_store.load("live") is not None
