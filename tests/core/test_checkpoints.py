"""
SkillForge - Checkpoint / Session Bridge Tests
==============================================
"""

from datetime import timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.core.chain import (
    CheckpointSessionBridge,
    ExecutionStateMachine,
    SessionStateOptions,
    SqlSessionStateStore,
)
from skillforge.core.chain.session_state import SessionSnapshot
from skillforge.core.models import (
    ChainExecutionStatus,
    InterventionAction,
    LinkExecutionOutcome,
    SessionPhase,
    utcnow,
)

SUCCESS = LinkExecutionOutcome.SUCCESS
FAILURE = LinkExecutionOutcome.FAILURE


class BrokenStore(SqlSessionStateStore):
    """Session-state store whose backend is down."""

    async def save(self, session_id: str, phase: SessionPhase, **kwargs: Any) -> SessionSnapshot:
        raise ConnectionError("session store unavailable")

    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        raise ConnectionError("session store unavailable")

    async def load_for_ticket(self, ticket_id: UUID) -> Optional[SessionSnapshot]:
        raise ConnectionError("session store unavailable")

    async def clear(self, session_id: str) -> bool:
        raise ConnectionError("session store unavailable")


@pytest.fixture
def bridged_machine(
    db_session: AsyncSession,
    bridge: CheckpointSessionBridge,
) -> ExecutionStateMachine:
    return ExecutionStateMachine(db_session, observers=[bridge])


# ==========================================================================
# Options
# ==========================================================================

class TestSessionStateOptions:
    def test_defaults_enable_everything(self):
        options = SessionStateOptions.default()

        assert options.enabled
        assert options.auto_save_on_link_complete
        assert options.auto_load_on_start
        assert options.auto_clear_on_complete
        assert options.auto_save_on_pause
        assert options.auto_save_on_cancel
        assert options.session_id is None

    def test_round_trip_ignores_unknown_keys(self):
        data = SessionStateOptions(auto_save_on_pause=False, session_id="s-1").to_dict()
        data["legacy_flag"] = True

        options = SessionStateOptions.from_dict(data)

        assert options.auto_save_on_pause is False
        assert options.session_id == "s-1"

    async def test_disabled_column_wins(
        self, bridged_machine: ExecutionStateMachine, make_chain
    ):
        chain, _ = await make_chain({})
        snapshot = await bridged_machine.start(chain.id)
        snapshot.execution.session_state_enabled = False

        assert CheckpointSessionBridge.options_for(snapshot.execution).enabled is False


# ==========================================================================
# Saves
# ==========================================================================

class TestCheckpointing:
    """Transition points write checkpoints and session state."""

    async def test_link_completion_checkpoints(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        chain, links = await make_chain({"name": "plan"}, {"name": "build"})
        ticket_id = uuid4()
        snapshot = await bridged_machine.start(chain.id, ticket_id=ticket_id)

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)

        assert snapshot.execution.session_phase == SessionPhase.IMPLEMENTING
        checkpoints = await bridged_machine.list_checkpoints(snapshot.id)
        assert len(checkpoints) == 1
        assert checkpoints[0].phase == SessionPhase.IMPLEMENTING
        assert checkpoints[0].link_id == links[1].id
        assert checkpoints[0].checkpoint_data["current_link_name"] == "build"

        state = await session_store.load(f"chain-exec-{snapshot.id}")
        assert state.phase == SessionPhase.IMPLEMENTING
        assert state.ticket_id == ticket_id
        assert "next: 'build'" in state.working_summary

        async with session_factory() as db:
            stored = await ExecutionStateMachine(db).get_execution(snapshot.id)
        assert stored.execution.session_phase == SessionPhase.IMPLEMENTING
        assert stored.version == 2

    async def test_bridge_writes_do_not_bump_version(
        self, bridged_machine: ExecutionStateMachine, make_chain
    ):
        chain, links = await make_chain({}, {}, {})
        snapshot = await bridged_machine.start(chain.id)

        snapshot = await bridged_machine.record_link_outcome(
            snapshot.id, links[0].id, SUCCESS, expected_version=1
        )
        snapshot = await bridged_machine.record_link_outcome(
            snapshot.id, links[1].id, SUCCESS, expected_version=2
        )

        assert snapshot.version == 3
        assert len(await bridged_machine.list_checkpoints(snapshot.id)) == 2

    async def test_escalation_saves_reviewing(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, links = await make_chain({"max_retries": 0})
        snapshot = await bridged_machine.start(chain.id)

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, FAILURE)

        assert snapshot.status == ChainExecutionStatus.PAUSED
        state = await session_store.load(snapshot.execution.session_id)
        assert state.phase == SessionPhase.REVIEWING
        assert "link retries exhausted" in state.working_summary
        assert state.last_checkpoint["requires_human_intervention"] is True

    async def test_cancel_saves_finalizing(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, (link,) = await make_chain({"name": "deploy"})
        snapshot = await bridged_machine.start(chain.id)

        snapshot = await bridged_machine.cancel_execution(snapshot.id)

        assert snapshot.status == ChainExecutionStatus.CANCELLED
        assert snapshot.current_link_id is None
        state = await session_store.load(snapshot.execution.session_id)
        assert state.phase == SessionPhase.FINALIZING
        checkpoints = await bridged_machine.list_checkpoints(snapshot.id)
        assert [checkpoint.phase for checkpoint in checkpoints] == [SessionPhase.FINALIZING]

        # Written before the cancellation, so it records the work being abandoned
        assert checkpoints[0].link_id == link.id
        assert checkpoints[0].checkpoint_data["status"] == "running"
        assert checkpoints[0].checkpoint_data["current_link_name"] == "deploy"

    async def test_resolve_cancel_saves_finalizing(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, links = await make_chain({"max_retries": 0})
        snapshot = await bridged_machine.start(chain.id)
        await bridged_machine.record_link_outcome(snapshot.id, links[0].id, FAILURE)

        snapshot = await bridged_machine.resolve_intervention(
            snapshot.id, "abandon", InterventionAction.CANCEL
        )

        assert snapshot.status == ChainExecutionStatus.CANCELLED
        state = await session_store.load(snapshot.execution.session_id)
        assert state.phase == SessionPhase.FINALIZING

    async def test_completion_clears_session_state(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        snapshot = await bridged_machine.start(chain.id)
        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)
        assert await session_store.load(snapshot.execution.session_id) is not None

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[1].id, SUCCESS)

        assert snapshot.status == ChainExecutionStatus.COMPLETED
        assert await session_store.load(snapshot.execution.session_id) is None
        assert snapshot.execution.session_phase is None

    async def test_expiry_follows_options(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, _ = await make_chain({})
        snapshot = await bridged_machine.start(
            chain.id, session_options=SessionStateOptions(session_expiry_hours=1)
        )

        await bridged_machine.pause_execution(snapshot.id)

        state = await session_store.load(snapshot.execution.session_id)
        remaining = state.expires_at - utcnow()
        assert timedelta(minutes=55) < remaining <= timedelta(hours=1)


# ==========================================================================
# Flags
# ==========================================================================

class TestFlags:
    async def test_disabled_writes_nothing(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        snapshot = await bridged_machine.start(
            chain.id, session_options=SessionStateOptions.disabled()
        )

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)
        await bridged_machine.pause_execution(snapshot.id)

        assert await bridged_machine.list_checkpoints(snapshot.id) == []
        assert await session_store.load(snapshot.execution.session_id) is None
        assert snapshot.execution.session_state_enabled is False

    async def test_individual_flags(
        self,
        bridged_machine: ExecutionStateMachine,
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        snapshot = await bridged_machine.start(
            chain.id,
            session_options=SessionStateOptions(auto_save_on_link_complete=False),
        )

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)
        await bridged_machine.pause_execution(snapshot.id)

        checkpoints = await bridged_machine.list_checkpoints(snapshot.id)
        assert [checkpoint.phase for checkpoint in checkpoints] == [SessionPhase.REVIEWING]

    async def test_clear_can_be_turned_off(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        snapshot = await bridged_machine.start(
            chain.id,
            session_options=SessionStateOptions(auto_clear_on_complete=False),
        )
        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)

        snapshot = await bridged_machine.record_link_outcome(snapshot.id, links[1].id, SUCCESS)

        assert snapshot.status == ChainExecutionStatus.COMPLETED
        assert await session_store.load(snapshot.execution.session_id) is not None


# ==========================================================================
# Restore
# ==========================================================================

class TestRestore:
    async def test_restores_latest_state_for_ticket(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, _ = await make_chain({})
        ticket_id = uuid4()
        await session_store.save(
            "earlier-run", SessionPhase.PLANNING, ticket_id=ticket_id, summary="halfway there"
        )

        snapshot = await bridged_machine.start(chain.id, ticket_id=ticket_id)

        restored = snapshot.execution.execution_context["restored_session"]
        assert restored["session_id"] == "earlier-run"
        assert restored["phase"] == "planning"
        assert restored["working_summary"] == "halfway there"

    async def test_explicit_session_id_is_reused(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, _ = await make_chain({})
        await session_store.save("my-session", SessionPhase.TESTING, summary="tests written")

        snapshot = await bridged_machine.start(
            chain.id, session_options=SessionStateOptions(session_id="my-session")
        )

        assert snapshot.execution.session_id == "my-session"
        restored = snapshot.execution.execution_context["restored_session"]
        assert restored["working_summary"] == "tests written"

    async def test_auto_load_off(
        self,
        bridged_machine: ExecutionStateMachine,
        session_store: SqlSessionStateStore,
        make_chain,
    ):
        chain, _ = await make_chain({})
        ticket_id = uuid4()
        await session_store.save("earlier-run", SessionPhase.PLANNING, ticket_id=ticket_id)

        snapshot = await bridged_machine.start(
            chain.id,
            ticket_id=ticket_id,
            session_options=SessionStateOptions(auto_load_on_start=False),
        )

        assert snapshot.execution.execution_context == {}


# ==========================================================================
# Failures
# ==========================================================================

class TestBestEffort:
    """Bridge failures are logged and never reach the caller."""

    async def test_store_failure_does_not_block_transitions(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        bridge = CheckpointSessionBridge(BrokenStore(session_factory), session_factory)
        state_machine = ExecutionStateMachine(db_session, observers=[bridge])
        chain, links = await make_chain({}, {"max_retries": 0})

        snapshot = await state_machine.start(chain.id, ticket_id=uuid4())
        snapshot = await state_machine.record_link_outcome(snapshot.id, links[0].id, SUCCESS)
        snapshot = await state_machine.record_link_outcome(snapshot.id, links[1].id, FAILURE)
        assert snapshot.status == ChainExecutionStatus.PAUSED

        snapshot = await state_machine.cancel_execution(snapshot.id)
        assert snapshot.status == ChainExecutionStatus.CANCELLED

    async def test_try_save_reports_failure(
        self,
        bridged_machine: ExecutionStateMachine,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        chain, _ = await make_chain({})
        snapshot = await bridged_machine.start(chain.id)
        broken = CheckpointSessionBridge(BrokenStore(session_factory), session_factory)

        assert await broken.try_save(snapshot, SessionPhase.TESTING) is False
        assert await broken.try_load(ticket_id=uuid4(), session_id="anything") is None
        assert await broken.try_clear(snapshot) is False
