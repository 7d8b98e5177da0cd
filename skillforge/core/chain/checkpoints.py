"""
Checkpoint / Session Bridge
===========================

Best-effort snapshotting of execution progress into checkpoints and the
session-state store. The state machine notifies observers at transition
points; this bridge is one such observer. Nothing here is authoritative
and no failure here ever reaches the caller of an engine operation.

Phase mapping:
- link completed -> implementing
- paused (escalation or manual) -> reviewing
- cancelling -> finalizing
- completed -> session state cleared
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from skillforge.core.chain.session_state import SessionSnapshot, SessionStateStore
from skillforge.core.chain.snapshot import ExecutionSnapshot
from skillforge.core.config import settings
from skillforge.core.models import (
    ExecutionCheckpoint,
    SessionPhase,
    SkillChainExecution,
    SkillChainLinkExecution,
    utcnow,
)

logger = logging.getLogger(__name__)


# ==========================================================================
# Options
# ==========================================================================

@dataclass
class SessionStateOptions:
    """Per-execution switches for session-state integration."""
    enabled: bool = True
    auto_save_on_link_complete: bool = True
    auto_load_on_start: bool = True
    auto_clear_on_complete: bool = True
    auto_save_on_pause: bool = True
    auto_save_on_cancel: bool = True
    session_expiry_hours: int = 24
    session_id: Optional[str] = None

    @classmethod
    def default(cls) -> "SessionStateOptions":
        return cls(session_expiry_hours=settings.SESSION_STATE_EXPIRY_HOURS)

    @classmethod
    def disabled(cls) -> "SessionStateOptions":
        return cls(
            enabled=False,
            auto_save_on_link_complete=False,
            auto_load_on_start=False,
            auto_clear_on_complete=False,
            auto_save_on_pause=False,
            auto_save_on_cancel=False,
        )

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SessionStateOptions":
        if not data:
            return cls.default()
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_session_id(execution_id: UUID) -> str:
    return f"chain-exec-{execution_id}"


# ==========================================================================
# Observer Interface
# ==========================================================================

class ExecutionObserver:
    """
    Hooks invoked by the state machine.

    All hooks are no-ops here. `cancelling` runs before the cancellation is
    written; every other hook runs after the transition is committed.
    """

    async def load_context(self, execution: SkillChainExecution) -> Optional[dict[str, Any]]:
        """Context to seed into a new execution, or None."""
        return None

    async def link_completed(
        self, snapshot: ExecutionSnapshot, attempt: SkillChainLinkExecution
    ) -> None:
        pass

    async def paused(self, snapshot: ExecutionSnapshot) -> None:
        pass

    async def resumed(self, snapshot: ExecutionSnapshot) -> None:
        pass

    async def completed(self, snapshot: ExecutionSnapshot) -> None:
        pass

    async def failed(self, snapshot: ExecutionSnapshot) -> None:
        pass

    async def cancelling(self, snapshot: ExecutionSnapshot) -> None:
        pass


# ==========================================================================
# Bridge
# ==========================================================================

class CheckpointSessionBridge(ExecutionObserver):
    """
    Writes checkpoints and session state on its own database sessions.

    The execution's `session_phase` columns are written with a plain UPDATE
    that leaves the version column alone, so bridge writes never conflict
    with engine transitions.
    """

    def __init__(
        self,
        store: SessionStateStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.store = store
        self.session_factory = session_factory

    @staticmethod
    def options_for(execution: SkillChainExecution) -> SessionStateOptions:
        options = SessionStateOptions.from_dict(execution.session_options)
        if not execution.session_state_enabled:
            options.enabled = False
        if not options.session_id:
            options.session_id = execution.session_id or default_session_id(execution.id)
        return options

    # ----------------------------------------------------------------------
    # Save / Load
    # ----------------------------------------------------------------------

    async def try_save(
        self,
        snapshot: ExecutionSnapshot,
        phase: SessionPhase,
        summary: Optional[str] = None,
        checkpoint_data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Checkpoint the execution and publish its session state.

        Returns:
            True if everything was written, False if anything failed
        """
        execution = snapshot.execution
        execution_id = execution.id
        options = self.options_for(execution)
        link = snapshot.current_link
        now = utcnow()

        data = {
            "execution_id": str(execution_id),
            "status": execution.status.value,
            "current_link_id": str(link.id) if link else None,
            "current_link_name": link.name if link else None,
            "position": link.position if link else None,
            "current_attempt": execution.current_attempt,
            "total_failure_count": execution.total_failure_count,
            "requires_human_intervention": execution.requires_human_intervention,
            "intervention_reason": execution.intervention_reason,
            "execution_context": execution.execution_context or {},
        }
        if checkpoint_data:
            data.update(checkpoint_data)

        try:
            async with self.session_factory() as db:
                db.add(
                    ExecutionCheckpoint(
                        execution_id=execution_id,
                        link_id=link.id if link else None,
                        link_name=link.name if link else None,
                        position=link.position if link else None,
                        phase=phase,
                        checkpoint_data=data,
                    )
                )
                await db.execute(
                    update(SkillChainExecution)
                    .where(SkillChainExecution.id == execution_id)
                    .values(session_phase=phase, session_state_updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

            await self.store.save(
                options.session_id,
                phase,
                ticket_id=execution.ticket_id,
                summary=summary,
                checkpoint=data,
                ttl_hours=options.session_expiry_hours,
            )
        except Exception:
            logger.exception(f"Failed to save session state for execution {execution_id}")
            return False

        set_committed_value(execution, "session_phase", phase)
        set_committed_value(execution, "session_state_updated_at", now)
        logger.debug(f"Checkpointed execution {execution_id} [{phase.value}]")
        return True

    async def try_load(
        self,
        ticket_id: Optional[UUID] = None,
        session_id: Optional[str] = None,
    ) -> Optional[SessionSnapshot]:
        """Load by session id first, then by ticket. None on absence or error."""
        try:
            if session_id:
                found = await self.store.load(session_id)
                if found is not None:
                    return found
            if ticket_id is not None:
                return await self.store.load_for_ticket(ticket_id)
        except Exception:
            logger.exception(
                f"Failed to load session state (ticket={ticket_id}, session={session_id})"
            )
        return None

    async def try_clear(self, snapshot: ExecutionSnapshot) -> bool:
        execution = snapshot.execution
        execution_id = execution.id
        options = self.options_for(execution)
        now = utcnow()

        try:
            await self.store.clear(options.session_id)
            async with self.session_factory() as db:
                await db.execute(
                    update(SkillChainExecution)
                    .where(SkillChainExecution.id == execution_id)
                    .values(session_phase=None, session_state_updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception:
            logger.exception(f"Failed to clear session state for execution {execution_id}")
            return False

        set_committed_value(execution, "session_phase", None)
        set_committed_value(execution, "session_state_updated_at", now)
        return True

    # ----------------------------------------------------------------------
    # Observer hooks
    # ----------------------------------------------------------------------

    async def load_context(self, execution: SkillChainExecution) -> Optional[dict[str, Any]]:
        options = self.options_for(execution)
        if not (options.enabled and options.auto_load_on_start):
            return None

        # A caller-chosen session id may carry over from an earlier run
        explicit_id = (execution.session_options or {}).get("session_id")
        restored = await self.try_load(ticket_id=execution.ticket_id, session_id=explicit_id)
        if restored is None:
            return None

        logger.info(f"Restored session {restored.session_id} for new execution {execution.id}")
        return restored.to_context()

    async def link_completed(
        self, snapshot: ExecutionSnapshot, attempt: SkillChainLinkExecution
    ) -> None:
        options = self.options_for(snapshot.execution)
        if not (options.enabled and options.auto_save_on_link_complete):
            return

        summary = f"Link attempt {attempt.attempt_number} finished with {attempt.outcome.value}"
        if snapshot.current_link is not None:
            summary += f"; next: '{snapshot.current_link.name}'"
        await self.try_save(
            snapshot,
            SessionPhase.IMPLEMENTING,
            summary=summary,
            checkpoint_data={"last_attempt_id": str(attempt.id)},
        )

    async def paused(self, snapshot: ExecutionSnapshot) -> None:
        options = self.options_for(snapshot.execution)
        if not (options.enabled and options.auto_save_on_pause):
            return
        await self.try_save(
            snapshot,
            SessionPhase.REVIEWING,
            summary=snapshot.execution.intervention_reason or "Execution paused",
        )

    async def cancelling(self, snapshot: ExecutionSnapshot) -> None:
        options = self.options_for(snapshot.execution)
        if not (options.enabled and options.auto_save_on_cancel):
            return
        await self.try_save(snapshot, SessionPhase.FINALIZING, summary="Execution cancelled")

    async def completed(self, snapshot: ExecutionSnapshot) -> None:
        options = self.options_for(snapshot.execution)
        if not (options.enabled and options.auto_clear_on_complete):
            return
        await self.try_clear(snapshot)
