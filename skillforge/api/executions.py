"""
Skill Chain Execution API Routes.

Every mutating endpoint returns the full execution so callers can run the
next link without a second request. Domain errors are mapped to HTTP
statuses by the application's exception handlers.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, status

from skillforge.api.deps import StateMachine
from skillforge.core.chain import ExecutionSnapshot, SessionStateOptions
from skillforge.core.models import ChainExecutionStatus, SkillChainExecution
from skillforge.core.schemas import (
    CancelExecutionRequest,
    CheckpointResponse,
    ExecutionResponse,
    InterventionResponse,
    LinkAttemptResponse,
    PauseExecutionRequest,
    RecordOutcomeRequest,
    ResolveInterventionRequest,
    ResumeExecutionRequest,
    StartExecutionRequest,
)

router = APIRouter(prefix="/executions", tags=["executions"])


# ==========================================================================
# Lifecycle
# ==========================================================================

@router.post("", response_model=ExecutionResponse, status_code=status.HTTP_201_CREATED)
async def start_execution(request: StartExecutionRequest, engine: StateMachine):
    """
    Start an execution of a published chain.

    The execution begins RUNNING at the chain's first link.
    """
    session_options = None
    if request.session_options is not None:
        session_options = SessionStateOptions(**request.session_options.model_dump())

    snapshot = await engine.start(
        request.skill_chain_id,
        ticket_id=request.ticket_id,
        input_values=request.input_values,
        started_by=request.started_by,
        session_options=session_options,
    )
    return _snapshot_to_response(snapshot)


@router.post("/{execution_id}/outcomes", response_model=ExecutionResponse)
async def record_link_outcome(
    execution_id: UUID,
    request: RecordOutcomeRequest,
    engine: StateMachine,
):
    """
    Report the outcome of the current link.

    409 if the link is not current, the execution is not running, or
    another transition won the race (retryable).
    """
    snapshot = await engine.record_link_outcome(
        execution_id,
        request.link_id,
        request.outcome,
        output=request.output,
        error_details=request.error_details,
        executed_by=request.executed_by,
        link_input=request.input,
        expected_version=request.expected_version,
    )
    return _snapshot_to_response(snapshot)


@router.post("/{execution_id}/pause", response_model=ExecutionResponse)
async def pause_execution(
    execution_id: UUID,
    request: PauseExecutionRequest,
    engine: StateMachine,
):
    snapshot = await engine.pause_execution(
        execution_id,
        reason=request.reason,
        paused_by=request.paused_by,
        expected_version=request.expected_version,
    )
    return _snapshot_to_response(snapshot)


@router.post("/{execution_id}/resume", response_model=ExecutionResponse)
async def resume_execution(
    execution_id: UUID,
    request: ResumeExecutionRequest,
    engine: StateMachine,
):
    """Resume a manually paused execution."""
    snapshot = await engine.resume_execution(
        execution_id,
        resumed_by=request.resumed_by,
        additional_context=request.additional_context,
        expected_version=request.expected_version,
    )
    return _snapshot_to_response(snapshot)


@router.post("/{execution_id}/resolve", response_model=ExecutionResponse)
async def resolve_intervention(
    execution_id: UUID,
    request: ResolveInterventionRequest,
    engine: StateMachine,
):
    """Resolve an open human intervention."""
    snapshot = await engine.resolve_intervention(
        execution_id,
        resolution=request.resolution,
        next_action=request.next_action,
        target_link_id=request.target_link_id,
        resolved_by=request.resolved_by,
        expected_version=request.expected_version,
    )
    return _snapshot_to_response(snapshot)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: UUID,
    request: CancelExecutionRequest,
    engine: StateMachine,
):
    snapshot = await engine.cancel_execution(
        execution_id,
        cancelled_by=request.cancelled_by,
        reason=request.reason,
        expected_version=request.expected_version,
    )
    return _snapshot_to_response(snapshot)


# ==========================================================================
# Queries
# ==========================================================================

@router.get("", response_model=list[ExecutionResponse])
async def list_executions(
    engine: StateMachine,
    skill_chain_id: Optional[UUID] = None,
    ticket_id: Optional[UUID] = None,
    status: Optional[ChainExecutionStatus] = None,
    limit: int = 50,
):
    """
    List executions with optional filtering.

    Args:
        skill_chain_id: Filter by chain
        ticket_id: Filter by ticket
        status: Filter by status
        limit: Maximum number of results
    """
    executions = await engine.list_executions(
        chain_id=skill_chain_id,
        ticket_id=ticket_id,
        status=status,
        limit=limit,
    )
    return [_execution_to_response(execution) for execution in executions]


@router.get("/pending-interventions", response_model=list[ExecutionResponse])
async def list_pending_interventions(engine: StateMachine, project_id: Optional[UUID] = None):
    """Executions paused for a human decision."""
    executions = await engine.list_pending_interventions(project_id=project_id)
    return [_execution_to_response(execution) for execution in executions]


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: UUID, engine: StateMachine):
    snapshot = await engine.get_execution(execution_id)
    return _snapshot_to_response(snapshot)


@router.get("/{execution_id}/attempts", response_model=list[LinkAttemptResponse])
async def list_attempts(execution_id: UUID, engine: StateMachine):
    """Audit trail of link attempts."""
    return await engine.list_attempts(execution_id)


@router.get("/{execution_id}/interventions", response_model=list[InterventionResponse])
async def list_interventions(execution_id: UUID, engine: StateMachine):
    return await engine.list_interventions(execution_id)


@router.get("/{execution_id}/checkpoints", response_model=list[CheckpointResponse])
async def list_checkpoints(execution_id: UUID, engine: StateMachine):
    return await engine.list_checkpoints(execution_id)


# ==========================================================================
# Helpers
# ==========================================================================

def _execution_to_response(execution: SkillChainExecution) -> ExecutionResponse:
    """Convert SkillChainExecution to response model."""
    return ExecutionResponse(
        id=execution.id,
        skill_chain_id=execution.skill_chain_id,
        ticket_id=execution.ticket_id,
        status=execution.status,
        current_link_id=execution.current_link_id,
        current_attempt=execution.current_attempt,
        total_failure_count=execution.total_failure_count,
        requires_human_intervention=execution.requires_human_intervention,
        intervention_reason=execution.intervention_reason,
        termination_reason=execution.termination_reason,
        input_values=execution.input_values,
        execution_context=execution.execution_context,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        started_by=execution.started_by,
        completed_by=execution.completed_by,
        session_id=execution.session_id,
        session_state_enabled=execution.session_state_enabled,
        session_phase=execution.session_phase,
        session_state_updated_at=execution.session_state_updated_at,
        version=execution.version,
    )


def _snapshot_to_response(snapshot: ExecutionSnapshot) -> ExecutionResponse:
    """Execution plus chain, current link and ticket details."""
    response = _execution_to_response(snapshot.execution)
    response.chain_key = snapshot.chain.chain.chain_key
    response.chain_name = snapshot.chain.chain.name
    response.max_total_failures = snapshot.chain.max_total_failures
    response.ticket_key = snapshot.ticket_key

    link = snapshot.current_link
    if link is not None:
        response.current_link_name = link.name
        response.current_link_position = link.position
        response.current_skill_id = link.skill_id
        response.current_agent_id = link.agent_id
        response.current_link_config = link.link_config
    return response
