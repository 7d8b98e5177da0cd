"""
Execution State Machine
=======================

Owns skill chain executions and applies every transition to them.

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED
               RUNNING <-> PAUSED

The engine is reactive: callers run a link's skill themselves and report
the outcome here. Each mutating operation validates state, appends audit
rows, commits through ConcurrencyControl and only then notifies observers.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.core.chain.checkpoints import (
    ExecutionObserver,
    SessionStateOptions,
    default_session_id,
)
from skillforge.core.chain.concurrency import ConcurrencyControl
from skillforge.core.chain.definitions import ChainDefinitionStore, PublishedChain
from skillforge.core.chain.errors import (
    ConfigurationError,
    ExecutionNotFoundError,
    InvalidStateError,
    LinkMismatchError,
)
from skillforge.core.chain.policy import Decision, RetryEscalationPolicy
from skillforge.core.chain.registry import TicketDirectory
from skillforge.core.chain.snapshot import ExecutionSnapshot
from skillforge.core.models import (
    ChainExecutionStatus,
    DecisionKind,
    ExecutionCheckpoint,
    ExecutionIntervention,
    InterventionAction,
    LinkExecutionOutcome,
    SkillChain,
    SkillChainExecution,
    SkillChainLinkExecution,
    utcnow,
)

logger = logging.getLogger(__name__)


class ExecutionStateMachine:
    """
    Skill chain execution engine.

    Collaborators are injected so the transition logic can be exercised
    without any session-state store present:
    - store: chain definitions (read-only here)
    - policy: retry / escalation decisions
    - concurrency: optimistic version checks
    - observers: checkpoint/session hooks, failures logged and ignored
    - ticket_directory: display keys for tickets
    """

    def __init__(
        self,
        db: AsyncSession,
        store: Optional[ChainDefinitionStore] = None,
        policy: Optional[RetryEscalationPolicy] = None,
        concurrency: Optional[ConcurrencyControl] = None,
        observers: Optional[Sequence[ExecutionObserver]] = None,
        ticket_directory: Optional[TicketDirectory] = None,
    ):
        self.db = db
        self.store = store or ChainDefinitionStore(db)
        self.policy = policy or RetryEscalationPolicy()
        self.concurrency = concurrency or ConcurrencyControl()
        self.observers = list(observers or [])
        self.ticket_directory = ticket_directory

    # ======================================================================
    # Start
    # ======================================================================

    async def start(
        self,
        chain_id: UUID,
        ticket_id: Optional[UUID] = None,
        input_values: Optional[dict[str, Any]] = None,
        started_by: Optional[str] = None,
        session_options: Optional[SessionStateOptions] = None,
    ) -> ExecutionSnapshot:
        """
        Start a new execution at the first link of a published chain.

        Args:
            chain_id: Chain to run
            ticket_id: Optional work item the run is bound to
            input_values: Caller inputs, stored untouched
            started_by: Actor identifier
            session_options: Session-state switches, all enabled by default

        Returns:
            Snapshot of the RUNNING execution
        """
        published = await self.store.get_published(chain_id)
        if not published.links:
            raise ConfigurationError(f"Chain {published.chain.chain_key} has no links")

        options = session_options or SessionStateOptions.default()
        first = published.first_link()
        now = utcnow()

        execution = SkillChainExecution(
            id=uuid4(),
            skill_chain_id=published.id,
            ticket_id=ticket_id,
            status=ChainExecutionStatus.PENDING,
            current_link_id=first.id,
            current_attempt=1,
            input_values=input_values or {},
            execution_context={},
            total_failure_count=0,
            requires_human_intervention=False,
            started_by=started_by,
            session_state_enabled=options.enabled,
            session_options=options.to_dict(),
        )
        execution.session_id = options.session_id or default_session_id(execution.id)

        restored = await self._load_context(execution)
        if restored:
            execution.execution_context = {"restored_session": restored}

        execution.status = ChainExecutionStatus.RUNNING
        execution.started_at = now
        execution.current_link_started_at = now

        self.db.add(execution)
        await self.db.commit()
        await self.db.refresh(execution)

        logger.info(
            f"Started execution {execution.id} of chain {published.chain.chain_key} "
            f"at link '{first.name}'"
        )
        return self._snapshot(execution, published)

    # ======================================================================
    # Outcomes
    # ======================================================================

    async def record_link_outcome(
        self,
        execution_id: UUID,
        link_id: UUID,
        outcome: LinkExecutionOutcome,
        output: Optional[dict[str, Any]] = None,
        error_details: Optional[str] = None,
        executed_by: Optional[str] = None,
        link_input: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> ExecutionSnapshot:
        """
        Record the outcome of the current link and apply the policy decision.

        Raises:
            InvalidStateError: execution is not RUNNING, or outcome is PENDING
            LinkMismatchError: `link_id` is not the current link
            ConcurrencyConflictError: another transition won the race
        """
        execution = await self._get_execution_row(execution_id)
        self._require_status(execution, ChainExecutionStatus.RUNNING, "record an outcome")
        if execution.current_link_id != link_id:
            raise LinkMismatchError(execution.current_link_id, link_id)
        self.concurrency.check_expected_version(execution, expected_version)
        if outcome == LinkExecutionOutcome.PENDING:
            raise InvalidStateError("A pending outcome cannot be recorded")

        published = await self.store.load(execution.skill_chain_id)
        link = published.link(link_id)
        next_link = published.next_after(link)

        decision = self.policy.decide(
            link,
            execution.current_attempt,
            outcome,
            execution.total_failure_count,
            published.max_total_failures,
            next_link.id if next_link else None,
        )
        if decision.kind == DecisionKind.ADVANCE and not published.has_link(decision.target_link_id):
            raise ConfigurationError(
                f"Link '{link.name}' routes to {decision.target_link_id}, which is not in the chain"
            )

        now = utcnow()
        attempt = SkillChainLinkExecution(
            id=uuid4(),
            execution_id=execution.id,
            link_id=link.id,
            attempt_number=execution.current_attempt,
            outcome=outcome,
            input=link_input,
            output=output,
            error_details=error_details,
            transition_taken=decision.transition,
            decision=decision.kind,
            started_at=execution.current_link_started_at or now,
            completed_at=now,
            executed_by=executed_by,
        )
        self.db.add(attempt)

        self._apply_decision(execution, decision, executed_by, now)
        await self.concurrency.commit_transition(self.db, execution)

        self._log_decision(execution, link.name, outcome, decision)
        snapshot = self._snapshot(execution, published)

        if decision.kind == DecisionKind.COMPLETE:
            await self._notify("completed", snapshot)
        elif decision.kind == DecisionKind.FORCE_FAIL:
            await self._notify("failed", snapshot)
        elif decision.kind == DecisionKind.ESCALATE:
            await self._notify("paused", snapshot)
        else:
            await self._notify("link_completed", snapshot, attempt)

        return snapshot

    def _apply_decision(
        self,
        execution: SkillChainExecution,
        decision: Decision,
        actor: Optional[str],
        now: datetime,
    ) -> None:
        execution.total_failure_count = decision.total_failure_count

        if decision.kind == DecisionKind.ADVANCE:
            execution.current_link_id = decision.target_link_id
            execution.current_attempt = 1
            execution.current_link_started_at = now

        elif decision.kind == DecisionKind.RETRY_SAME_LINK:
            execution.current_attempt = 1 if decision.reset_attempts else execution.current_attempt + 1
            execution.current_link_started_at = now

        elif decision.kind == DecisionKind.COMPLETE:
            execution.status = ChainExecutionStatus.COMPLETED
            execution.current_link_id = None
            execution.completed_at = now
            execution.completed_by = actor

        elif decision.kind == DecisionKind.ESCALATE:
            execution.status = ChainExecutionStatus.PAUSED
            execution.requires_human_intervention = True
            execution.intervention_reason = decision.reason

        elif decision.kind == DecisionKind.FORCE_FAIL:
            execution.status = ChainExecutionStatus.FAILED
            execution.current_link_id = None
            execution.completed_at = now
            execution.completed_by = actor
            execution.termination_reason = decision.reason

    def _log_decision(
        self,
        execution: SkillChainExecution,
        link_name: str,
        outcome: LinkExecutionOutcome,
        decision: Decision,
    ) -> None:
        message = (
            f"Execution {execution.id}: link '{link_name}' {outcome.value} -> "
            f"{decision.kind.value} (failures={decision.total_failure_count})"
        )
        if decision.kind in (DecisionKind.ESCALATE, DecisionKind.FORCE_FAIL):
            logger.warning(f"{message}: {decision.reason}")
        else:
            logger.info(message)

    # ======================================================================
    # Pause / Resume / Intervention
    # ======================================================================

    async def pause_execution(
        self,
        execution_id: UUID,
        reason: Optional[str] = None,
        paused_by: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ExecutionSnapshot:
        """Manually pause a RUNNING execution. No intervention is opened."""
        execution = await self._get_execution_row(execution_id)
        self._require_status(execution, ChainExecutionStatus.RUNNING, "pause")
        self.concurrency.check_expected_version(execution, expected_version)

        execution.status = ChainExecutionStatus.PAUSED
        execution.requires_human_intervention = False
        execution.intervention_reason = reason or f"Paused by {paused_by or 'operator'}"

        await self.concurrency.commit_transition(self.db, execution)
        logger.info(f"Paused execution {execution.id}")

        snapshot = await self._build_snapshot(execution)
        await self._notify("paused", snapshot)
        return snapshot

    async def resume_execution(
        self,
        execution_id: UUID,
        resumed_by: Optional[str] = None,
        additional_context: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> ExecutionSnapshot:
        """
        Resume a manually paused execution.

        Executions paused by escalation must go through resolve_intervention.
        `additional_context` is merged into the execution context.
        """
        execution = await self._get_execution_row(execution_id)
        self._require_status(execution, ChainExecutionStatus.PAUSED, "resume")
        if execution.requires_human_intervention:
            raise InvalidStateError(
                f"Execution {execution.id} has an open intervention; resolve it instead",
                current_status=execution.status.value,
            )
        self.concurrency.check_expected_version(execution, expected_version)

        if additional_context:
            context = dict(execution.execution_context or {})
            context.update(additional_context)
            execution.execution_context = context

        execution.status = ChainExecutionStatus.RUNNING
        execution.intervention_reason = None
        execution.current_link_started_at = utcnow()

        await self.concurrency.commit_transition(self.db, execution)
        logger.info(f"Resumed execution {execution.id} by {resumed_by or 'unknown'}")

        snapshot = await self._build_snapshot(execution)
        await self._notify("resumed", snapshot)
        return snapshot

    async def resolve_intervention(
        self,
        execution_id: UUID,
        resolution: str,
        next_action: InterventionAction,
        target_link_id: Optional[UUID] = None,
        resolved_by: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ExecutionSnapshot:
        """
        Close an open intervention and choose how the execution continues.

        Args:
            resolution: Operator's note, always written to the audit trail
            next_action: retry | go_to_link | cancel | complete
            target_link_id: Required for go_to_link
        """
        execution = await self._get_execution_row(execution_id)
        self._require_status(execution, ChainExecutionStatus.PAUSED, "resolve an intervention")
        if not execution.requires_human_intervention:
            raise InvalidStateError(
                f"Execution {execution.id} has no open intervention",
                current_status=execution.status.value,
            )
        self.concurrency.check_expected_version(execution, expected_version)

        published = await self.store.load(execution.skill_chain_id)
        if next_action == InterventionAction.GO_TO_LINK:
            if target_link_id is None:
                raise ConfigurationError("go_to_link requires target_link_id")
            published.link(target_link_id)

        self.db.add(
            ExecutionIntervention(
                execution_id=execution.id,
                link_id=execution.current_link_id,
                reason=execution.intervention_reason,
                resolution=resolution,
                next_action=next_action,
                target_link_id=target_link_id,
                resolved_by=resolved_by,
            )
        )

        if next_action == InterventionAction.CANCEL:
            await self._notify("cancelling", self._snapshot(execution, published))

        now = utcnow()
        execution.requires_human_intervention = False
        execution.intervention_reason = None

        if next_action == InterventionAction.RETRY:
            execution.status = ChainExecutionStatus.RUNNING
            execution.current_attempt = 1
            execution.current_link_started_at = now
        elif next_action == InterventionAction.GO_TO_LINK:
            execution.status = ChainExecutionStatus.RUNNING
            execution.current_link_id = target_link_id
            execution.current_attempt = 1
            execution.current_link_started_at = now
        elif next_action == InterventionAction.CANCEL:
            execution.status = ChainExecutionStatus.CANCELLED
            execution.current_link_id = None
            execution.completed_at = now
            execution.completed_by = resolved_by
            execution.termination_reason = f"Cancelled during intervention: {resolution}"
        elif next_action == InterventionAction.COMPLETE:
            execution.status = ChainExecutionStatus.COMPLETED
            execution.current_link_id = None
            execution.completed_at = now
            execution.completed_by = resolved_by

        await self.concurrency.commit_transition(self.db, execution)
        logger.info(
            f"Resolved intervention on execution {execution.id} with {next_action.value}"
        )

        snapshot = self._snapshot(execution, published)
        if next_action == InterventionAction.COMPLETE:
            await self._notify("completed", snapshot)
        elif next_action != InterventionAction.CANCEL:
            await self._notify("resumed", snapshot)
        return snapshot

    # ======================================================================
    # Cancel
    # ======================================================================

    async def cancel_execution(
        self,
        execution_id: UUID,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ExecutionSnapshot:
        """
        Cancel a RUNNING or PAUSED execution.

        Work already dispatched for the current link is not interrupted; the
        in-flight attempt is recorded as skipped.
        """
        execution = await self._get_execution_row(execution_id)
        if execution.is_terminal or execution.status not in (
            ChainExecutionStatus.RUNNING,
            ChainExecutionStatus.PAUSED,
        ):
            raise InvalidStateError(
                f"Cannot cancel execution {execution.id} in {execution.status.value} status",
                current_status=execution.status.value,
            )
        self.concurrency.check_expected_version(execution, expected_version)

        published = await self.store.load(execution.skill_chain_id)
        await self._notify("cancelling", self._snapshot(execution, published))

        now = utcnow()
        if execution.status == ChainExecutionStatus.RUNNING and execution.current_link_id:
            self.db.add(
                SkillChainLinkExecution(
                    execution_id=execution.id,
                    link_id=execution.current_link_id,
                    attempt_number=execution.current_attempt,
                    outcome=LinkExecutionOutcome.SKIPPED,
                    error_details=reason,
                    started_at=execution.current_link_started_at or now,
                    completed_at=now,
                    executed_by=cancelled_by,
                )
            )

        execution.status = ChainExecutionStatus.CANCELLED
        execution.requires_human_intervention = False
        execution.current_link_id = None
        execution.completed_at = now
        execution.completed_by = cancelled_by
        execution.termination_reason = reason or "Cancelled"

        await self.concurrency.commit_transition(self.db, execution)
        logger.info(f"Cancelled execution {execution.id}")

        return self._snapshot(execution, published)

    # ======================================================================
    # Queries
    # ======================================================================

    async def get_execution(self, execution_id: UUID) -> ExecutionSnapshot:
        execution = await self._get_execution_row(execution_id)
        return await self._build_snapshot(execution)

    async def list_executions(
        self,
        chain_id: Optional[UUID] = None,
        ticket_id: Optional[UUID] = None,
        status: Optional[ChainExecutionStatus] = None,
        limit: int = 50,
    ) -> list[SkillChainExecution]:
        query = (
            select(SkillChainExecution)
            .order_by(SkillChainExecution.created_at.desc())
            .limit(limit)
        )
        if chain_id is not None:
            query = query.where(SkillChainExecution.skill_chain_id == chain_id)
        if ticket_id is not None:
            query = query.where(SkillChainExecution.ticket_id == ticket_id)
        if status is not None:
            query = query.where(SkillChainExecution.status == status)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_pending_interventions(
        self,
        project_id: Optional[UUID] = None,
    ) -> list[SkillChainExecution]:
        """Paused executions waiting on a human, oldest first."""
        query = (
            select(SkillChainExecution)
            .where(
                SkillChainExecution.status == ChainExecutionStatus.PAUSED,
                SkillChainExecution.requires_human_intervention.is_(True),
            )
            .order_by(SkillChainExecution.created_at)
        )
        if project_id is not None:
            query = query.join(
                SkillChain, SkillChain.id == SkillChainExecution.skill_chain_id
            ).where(SkillChain.project_id == project_id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_attempts(self, execution_id: UUID) -> list[SkillChainLinkExecution]:
        await self._get_execution_row(execution_id)
        result = await self.db.execute(
            select(SkillChainLinkExecution)
            .where(SkillChainLinkExecution.execution_id == execution_id)
            .order_by(SkillChainLinkExecution.created_at, SkillChainLinkExecution.completed_at)
        )
        return list(result.scalars().all())

    async def list_interventions(self, execution_id: UUID) -> list[ExecutionIntervention]:
        await self._get_execution_row(execution_id)
        result = await self.db.execute(
            select(ExecutionIntervention)
            .where(ExecutionIntervention.execution_id == execution_id)
            .order_by(ExecutionIntervention.created_at)
        )
        return list(result.scalars().all())

    async def list_checkpoints(self, execution_id: UUID) -> list[ExecutionCheckpoint]:
        await self._get_execution_row(execution_id)
        result = await self.db.execute(
            select(ExecutionCheckpoint)
            .where(ExecutionCheckpoint.execution_id == execution_id)
            .order_by(ExecutionCheckpoint.created_at)
        )
        return list(result.scalars().all())

    # ======================================================================
    # Helpers
    # ======================================================================

    async def _get_execution_row(self, execution_id: UUID) -> SkillChainExecution:
        result = await self.db.execute(
            select(SkillChainExecution).where(SkillChainExecution.id == execution_id)
        )
        execution = result.scalar_one_or_none()
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def _require_status(
        self,
        execution: SkillChainExecution,
        required: ChainExecutionStatus,
        action: str,
    ) -> None:
        if execution.is_terminal:
            raise InvalidStateError(
                f"Execution {execution.id} is {execution.status.value}; cannot {action}",
                current_status=execution.status.value,
            )
        if execution.status != required:
            raise InvalidStateError(
                f"Cannot {action} on execution {execution.id} in {execution.status.value} status",
                current_status=execution.status.value,
            )

    async def _build_snapshot(self, execution: SkillChainExecution) -> ExecutionSnapshot:
        published = await self.store.load(execution.skill_chain_id)
        return self._snapshot(execution, published)

    def _snapshot(
        self,
        execution: SkillChainExecution,
        published: PublishedChain,
    ) -> ExecutionSnapshot:
        current_link = None
        if execution.current_link_id is not None and published.has_link(execution.current_link_id):
            current_link = published.link(execution.current_link_id)

        ticket_key = None
        if execution.ticket_id is not None and self.ticket_directory is not None:
            ticket_key = self.ticket_directory.get_ticket_key(execution.ticket_id)

        return ExecutionSnapshot(
            execution=execution,
            chain=published,
            current_link=current_link,
            ticket_key=ticket_key,
        )

    async def _load_context(self, execution: SkillChainExecution) -> Optional[dict[str, Any]]:
        for observer in self.observers:
            try:
                restored = await observer.load_context(execution)
            except Exception:
                logger.exception(f"{type(observer).__name__}.load_context failed")
                continue
            if restored:
                return restored
        return None

    async def _notify(self, hook: str, *args: Any) -> None:
        for observer in self.observers:
            try:
                await getattr(observer, hook)(*args)
            except Exception:
                logger.exception(f"{type(observer).__name__}.{hook} failed")
