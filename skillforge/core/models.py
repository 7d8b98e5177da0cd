"""
SkillForge - Database Models
============================

SQLAlchemy models for skill chains, their executions, checkpoints
and externally visible session state.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from skillforge.core.database import Base


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ==========================================================================
# Enums
# ==========================================================================

class TransitionType(str, enum.Enum):
    """What a link does after it succeeds or fails."""
    NEXT_LINK = "next_link"    # Next link by position
    GO_TO_LINK = "go_to_link"  # Explicit target link
    COMPLETE = "complete"      # Finish the chain
    RETRY = "retry"            # Start the same link over
    ESCALATE = "escalate"      # Pause for a human


SUCCESS_TRANSITIONS = frozenset({
    TransitionType.NEXT_LINK,
    TransitionType.GO_TO_LINK,
    TransitionType.COMPLETE,
})

FAILURE_TRANSITIONS = frozenset({
    TransitionType.RETRY,
    TransitionType.GO_TO_LINK,
    TransitionType.ESCALATE,
})


class LinkExecutionOutcome(str, enum.Enum):
    """Outcome of a single link attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ChainExecutionStatus(str, enum.Enum):
    """Lifecycle status of a chain execution."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ChainExecutionStatus.COMPLETED,
    ChainExecutionStatus.FAILED,
    ChainExecutionStatus.CANCELLED,
})


class DecisionKind(str, enum.Enum):
    """Policy decision applied after an outcome."""
    ADVANCE = "advance"
    RETRY_SAME_LINK = "retry_same_link"
    COMPLETE = "complete"
    ESCALATE = "escalate"
    FORCE_FAIL = "force_fail"


class InterventionAction(str, enum.Enum):
    """Next action chosen by an operator resolving an intervention."""
    RETRY = "retry"
    GO_TO_LINK = "go_to_link"
    CANCEL = "cancel"
    COMPLETE = "complete"


class SessionPhase(str, enum.Enum):
    """Coarse phase published to the session-state store."""
    RESEARCHING = "researching"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    TESTING = "testing"
    FINALIZING = "finalizing"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Chain Definitions
# ==========================================================================

class SkillChain(Base, TimestampMixin):
    """
    Skill chain definition.

    Owned by exactly one organization or project. Immutable while published.
    """

    __tablename__ = "skill_chains"
    __table_args__ = (
        UniqueConstraint("organization_id", "chain_key", name="uq_skill_chains_org_key"),
        UniqueConstraint("project_id", "chain_key", name="uq_skill_chains_project_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    chain_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    input_schema: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    max_total_failures: Mapped[int] = mapped_column(
        Integer,
        default=5,
        nullable=False,
    )

    # Scope (exactly one)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    is_published: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    created_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    updated_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<SkillChain {self.chain_key} published={self.is_published}>"


class SkillChainLink(Base, TimestampMixin):
    """One step of a chain: a skill invocation plus its transitions."""

    __tablename__ = "skill_chain_links"
    __table_args__ = (
        UniqueConstraint("skill_chain_id", "position", name="uq_skill_chain_links_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    skill_chain_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chains.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    skill_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    agent_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )

    # Transitions
    on_success_transition: Mapped[TransitionType] = mapped_column(
        Enum(TransitionType),
        default=TransitionType.NEXT_LINK,
        nullable=False,
    )
    on_success_target_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    on_failure_transition: Mapped[TransitionType] = mapped_column(
        Enum(TransitionType),
        default=TransitionType.ESCALATE,
        nullable=False,
    )
    on_failure_target_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    link_config: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )  # Opaque to the engine

    def __repr__(self) -> str:
        return f"<SkillChainLink {self.position}:{self.name}>"


# ==========================================================================
# Executions
# ==========================================================================

class SkillChainExecution(Base, TimestampMixin):
    """
    A running instance of a published chain.

    `version` is bumped by every ORM flush and guards against lost updates.
    """

    __tablename__ = "skill_chain_executions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    skill_chain_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chains.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ticket_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    # State
    status: Mapped[ChainExecutionStatus] = mapped_column(
        Enum(ChainExecutionStatus),
        default=ChainExecutionStatus.PENDING,
        nullable=False,
        index=True,
    )
    current_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    current_attempt: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    current_link_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    input_values: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    execution_context: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )

    # Failure / intervention
    total_failure_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    requires_human_intervention: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    intervention_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    termination_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    started_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    completed_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Session state binding
    session_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    session_state_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    session_options: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    session_phase: Mapped[Optional[SessionPhase]] = mapped_column(
        Enum(SessionPhase),
        nullable=True,
    )
    session_state_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<SkillChainExecution {self.id} [{self.status.value}] v{self.version}>"


class SkillChainLinkExecution(Base):
    """
    One attempt of one link. Append-only audit row.
    """

    __tablename__ = "skill_chain_link_executions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chain_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    link_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chain_links.id", ondelete="RESTRICT"),
        index=True,
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    outcome: Mapped[LinkExecutionOutcome] = mapped_column(
        Enum(LinkExecutionOutcome),
        default=LinkExecutionOutcome.PENDING,
        nullable=False,
    )
    input: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    output: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    error_details: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    transition_taken: Mapped[Optional[TransitionType]] = mapped_column(
        Enum(TransitionType),
        nullable=True,
    )
    decision: Mapped[Optional[DecisionKind]] = mapped_column(
        Enum(DecisionKind),
        nullable=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    executed_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SkillChainLinkExecution link={self.link_id} #{self.attempt_number} [{self.outcome.value}]>"


class ExecutionIntervention(Base):
    """Audit row written whenever an operator resolves an intervention."""

    __tablename__ = "execution_interventions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chain_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    resolution: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    next_action: Mapped[InterventionAction] = mapped_column(
        Enum(InterventionAction),
        nullable=False,
    )
    target_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class ExecutionCheckpoint(Base):
    """Snapshot of an execution taken at a link boundary."""

    __tablename__ = "execution_checkpoints"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("skill_chain_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    link_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    position: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    phase: Mapped[Optional[SessionPhase]] = mapped_column(
        Enum(SessionPhase),
        nullable=True,
    )
    checkpoint_data: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


# ==========================================================================
# Session State
# ==========================================================================

class SessionState(Base, TimestampMixin):
    """
    Externally visible working state for a session.

    Records past `expires_at` are treated as absent.
    """

    __tablename__ = "session_states"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    session_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    ticket_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    current_phase: Mapped[SessionPhase] = mapped_column(
        Enum(SessionPhase),
        default=SessionPhase.RESEARCHING,
        nullable=False,
    )
    working_summary: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    last_checkpoint: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<SessionState {self.session_id} [{self.current_phase.value}]>"
