"""
SkillForge - Pydantic Schemas
=============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from skillforge.core.models import (
    ChainExecutionStatus,
    DecisionKind,
    InterventionAction,
    LinkExecutionOutcome,
    SessionPhase,
    TransitionType,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Skill Chain Schemas
# ==========================================================================

class SkillChainCreate(BaseSchema):
    """Schema for creating a chain."""

    chain_key: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    max_total_failures: Optional[int] = Field(None, ge=0)
    organization_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    created_by: Optional[str] = None


class SkillChainUpdate(BaseSchema):
    """Schema for updating an unpublished chain."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    max_total_failures: Optional[int] = Field(None, ge=0)
    updated_by: Optional[str] = None


class SkillChainLinkCreate(BaseSchema):
    """Schema for adding a link to a chain."""

    name: str = Field(min_length=1, max_length=255)
    skill_id: str = Field(min_length=1, max_length=100)
    agent_id: Optional[str] = None
    description: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)
    max_retries: Optional[int] = Field(None, ge=0)
    on_success_transition: TransitionType = TransitionType.NEXT_LINK
    on_success_target_link_id: Optional[UUID] = None
    on_failure_transition: TransitionType = TransitionType.ESCALATE
    on_failure_target_link_id: Optional[UUID] = None
    link_config: Optional[dict[str, Any]] = None


class SkillChainLinkUpdate(BaseSchema):
    """Schema for updating a link of an unpublished chain."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    skill_id: Optional[str] = None
    agent_id: Optional[str] = None
    description: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=0)
    on_success_transition: Optional[TransitionType] = None
    on_success_target_link_id: Optional[UUID] = None
    on_failure_transition: Optional[TransitionType] = None
    on_failure_target_link_id: Optional[UUID] = None
    link_config: Optional[dict[str, Any]] = None


class ReorderLinksRequest(BaseSchema):
    """Link ids in their new order."""

    link_ids: list[UUID]


class PublishRequest(BaseSchema):
    updated_by: Optional[str] = None


class SkillChainLinkResponse(TimestampSchema):
    """Link in responses."""

    id: UUID
    skill_chain_id: UUID
    position: int
    name: str
    description: Optional[str]
    skill_id: str
    agent_id: Optional[str]
    max_retries: int
    on_success_transition: TransitionType
    on_success_target_link_id: Optional[UUID]
    on_failure_transition: TransitionType
    on_failure_target_link_id: Optional[UUID]
    link_config: Optional[dict[str, Any]]


class SkillChainResponse(TimestampSchema):
    """Chain in responses."""

    id: UUID
    chain_key: str
    name: str
    description: Optional[str]
    input_schema: Optional[dict[str, Any]]
    max_total_failures: int
    organization_id: Optional[UUID]
    project_id: Optional[UUID]
    scope: str
    is_published: bool
    created_by: Optional[str]
    updated_by: Optional[str]
    links: list[SkillChainLinkResponse] = []


# ==========================================================================
# Execution Schemas
# ==========================================================================

class SessionOptionsSchema(BaseSchema):
    """Per-execution session-state switches."""

    enabled: bool = True
    auto_save_on_link_complete: bool = True
    auto_load_on_start: bool = True
    auto_clear_on_complete: bool = True
    auto_save_on_pause: bool = True
    auto_save_on_cancel: bool = True
    session_expiry_hours: int = Field(24, ge=1)
    session_id: Optional[str] = None


class StartExecutionRequest(BaseSchema):
    """Schema for starting an execution."""

    skill_chain_id: UUID
    ticket_id: Optional[UUID] = None
    input_values: Optional[dict[str, Any]] = None
    started_by: Optional[str] = None
    session_options: Optional[SessionOptionsSchema] = None


class RecordOutcomeRequest(BaseSchema):
    """Outcome of the current link, reported by the caller."""

    link_id: UUID
    outcome: LinkExecutionOutcome
    input: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None
    error_details: Optional[str] = None
    executed_by: Optional[str] = None
    expected_version: Optional[int] = None


class PauseExecutionRequest(BaseSchema):
    reason: Optional[str] = None
    paused_by: Optional[str] = None
    expected_version: Optional[int] = None


class ResumeExecutionRequest(BaseSchema):
    resumed_by: Optional[str] = None
    additional_context: Optional[dict[str, Any]] = None
    expected_version: Optional[int] = None


class ResolveInterventionRequest(BaseSchema):
    """Operator decision on an escalated execution."""

    resolution: str = Field(min_length=1)
    next_action: InterventionAction
    target_link_id: Optional[UUID] = None
    resolved_by: Optional[str] = None
    expected_version: Optional[int] = None


class CancelExecutionRequest(BaseSchema):
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class ExecutionResponse(BaseSchema):
    """Full execution state returned by every execution operation."""

    id: UUID
    skill_chain_id: UUID
    chain_key: Optional[str] = None
    chain_name: Optional[str] = None
    ticket_id: Optional[UUID]
    ticket_key: Optional[str] = None
    status: ChainExecutionStatus
    current_link_id: Optional[UUID]
    current_link_name: Optional[str] = None
    current_link_position: Optional[int] = None
    current_skill_id: Optional[str] = None
    current_agent_id: Optional[str] = None
    current_link_config: Optional[dict[str, Any]] = None
    current_attempt: int
    total_failure_count: int
    max_total_failures: Optional[int] = None
    requires_human_intervention: bool
    intervention_reason: Optional[str]
    termination_reason: Optional[str]
    input_values: Optional[dict[str, Any]]
    execution_context: Optional[dict[str, Any]]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    started_by: Optional[str]
    completed_by: Optional[str]
    session_id: Optional[str]
    session_state_enabled: bool
    session_phase: Optional[SessionPhase]
    session_state_updated_at: Optional[datetime]
    version: int


class LinkAttemptResponse(BaseSchema):
    """One audited link attempt."""

    id: UUID
    execution_id: UUID
    link_id: UUID
    attempt_number: int
    outcome: LinkExecutionOutcome
    input: Optional[dict[str, Any]]
    output: Optional[dict[str, Any]]
    error_details: Optional[str]
    transition_taken: Optional[TransitionType]
    decision: Optional[DecisionKind]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    executed_by: Optional[str]


class InterventionResponse(BaseSchema):
    id: UUID
    execution_id: UUID
    link_id: Optional[UUID]
    reason: Optional[str]
    resolution: str
    next_action: InterventionAction
    target_link_id: Optional[UUID]
    resolved_by: Optional[str]
    created_at: datetime


class CheckpointResponse(BaseSchema):
    id: UUID
    execution_id: UUID
    link_id: Optional[UUID]
    link_name: Optional[str]
    position: Optional[int]
    phase: Optional[SessionPhase]
    checkpoint_data: Optional[dict[str, Any]]
    created_at: datetime


# ==========================================================================
# Common Responses
# ==========================================================================

class MessageResponse(BaseSchema):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    retryable: bool = False
    problems: Optional[list[str]] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
