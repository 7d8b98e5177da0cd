"""Initial skill chain tables

Revision ID: 001_initial_skill_chain
Revises:
Create Date: 2026-02-02

Creates all tables for:
- Chain definitions (skill_chains, skill_chain_links)
- Executions and their audit trail (skill_chain_executions,
  skill_chain_link_executions, execution_interventions, execution_checkpoints)
- Session state (session_states)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_skill_chain'
down_revision = None
branch_labels = None
depends_on = None


# SQLAlchemy stores enum member names
TRANSITION_TYPE = postgresql.ENUM(
    'NEXT_LINK', 'GO_TO_LINK', 'COMPLETE', 'RETRY', 'ESCALATE',
    name='transitiontype',
    create_type=False,
)
LINK_EXECUTION_OUTCOME = postgresql.ENUM(
    'PENDING', 'SUCCESS', 'FAILURE', 'SKIPPED',
    name='linkexecutionoutcome',
    create_type=False,
)
CHAIN_EXECUTION_STATUS = postgresql.ENUM(
    'PENDING', 'RUNNING', 'PAUSED', 'COMPLETED', 'FAILED', 'CANCELLED',
    name='chainexecutionstatus',
    create_type=False,
)
DECISION_KIND = postgresql.ENUM(
    'ADVANCE', 'RETRY_SAME_LINK', 'COMPLETE', 'ESCALATE', 'FORCE_FAIL',
    name='decisionkind',
    create_type=False,
)
INTERVENTION_ACTION = postgresql.ENUM(
    'RETRY', 'GO_TO_LINK', 'CANCEL', 'COMPLETE',
    name='interventionaction',
    create_type=False,
)
SESSION_PHASE = postgresql.ENUM(
    'RESEARCHING', 'PLANNING', 'IMPLEMENTING', 'REVIEWING', 'TESTING', 'FINALIZING',
    name='sessionphase',
    create_type=False,
)

ALL_ENUMS = [
    TRANSITION_TYPE,
    LINK_EXECUTION_OUTCOME,
    CHAIN_EXECUTION_STATUS,
    DECISION_KIND,
    INTERVENTION_ACTION,
    SESSION_PHASE,
]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    for enum_type in ALL_ENUMS:
        enum_type.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Chain Definitions
    # ==========================================================================

    op.create_table(
        'skill_chains',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('chain_key', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('input_schema', sa.JSON(), nullable=True),
        sa.Column('max_total_failures', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('organization_id', sa.UUID(), nullable=True),
        sa.Column('project_id', sa.UUID(), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('updated_by', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'chain_key', name='uq_skill_chains_org_key'),
        sa.UniqueConstraint('project_id', 'chain_key', name='uq_skill_chains_project_key'),
    )
    op.create_index('ix_skill_chains_chain_key', 'skill_chains', ['chain_key'], unique=False)
    op.create_index('ix_skill_chains_organization_id', 'skill_chains', ['organization_id'], unique=False)
    op.create_index('ix_skill_chains_project_id', 'skill_chains', ['project_id'], unique=False)

    op.create_table(
        'skill_chain_links',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('skill_chain_id', sa.UUID(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('skill_id', sa.String(length=100), nullable=False),
        sa.Column('agent_id', sa.String(length=100), nullable=True),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('on_success_transition', TRANSITION_TYPE, nullable=False, server_default='NEXT_LINK'),
        sa.Column('on_success_target_link_id', sa.UUID(), nullable=True),
        sa.Column('on_failure_transition', TRANSITION_TYPE, nullable=False, server_default='ESCALATE'),
        sa.Column('on_failure_target_link_id', sa.UUID(), nullable=True),
        sa.Column('link_config', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['skill_chain_id'], ['skill_chains.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('skill_chain_id', 'position', name='uq_skill_chain_links_position'),
    )
    op.create_index('ix_skill_chain_links_skill_chain_id', 'skill_chain_links', ['skill_chain_id'], unique=False)

    # ==========================================================================
    # Executions
    # ==========================================================================

    op.create_table(
        'skill_chain_executions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('skill_chain_id', sa.UUID(), nullable=False),
        sa.Column('ticket_id', sa.UUID(), nullable=True),
        sa.Column('status', CHAIN_EXECUTION_STATUS, nullable=False, server_default='PENDING'),
        sa.Column('current_link_id', sa.UUID(), nullable=True),
        sa.Column('current_attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_link_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('input_values', sa.JSON(), nullable=True),
        sa.Column('execution_context', sa.JSON(), nullable=True),
        sa.Column('total_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('requires_human_intervention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('intervention_reason', sa.Text(), nullable=True),
        sa.Column('termination_reason', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_by', sa.String(length=255), nullable=True),
        sa.Column('completed_by', sa.String(length=255), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('session_state_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('session_options', sa.JSON(), nullable=True),
        sa.Column('session_phase', SESSION_PHASE, nullable=True),
        sa.Column('session_state_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['skill_chain_id'], ['skill_chains.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_skill_chain_executions_skill_chain_id', 'skill_chain_executions', ['skill_chain_id'], unique=False)
    op.create_index('ix_skill_chain_executions_ticket_id', 'skill_chain_executions', ['ticket_id'], unique=False)
    op.create_index('ix_skill_chain_executions_status', 'skill_chain_executions', ['status'], unique=False)
    op.create_index(
        'ix_skill_chain_executions_requires_human_intervention',
        'skill_chain_executions',
        ['requires_human_intervention'],
        unique=False,
    )

    op.create_table(
        'skill_chain_link_executions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('execution_id', sa.UUID(), nullable=False),
        sa.Column('link_id', sa.UUID(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('outcome', LINK_EXECUTION_OUTCOME, nullable=False, server_default='PENDING'),
        sa.Column('input', sa.JSON(), nullable=True),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.Column('error_details', sa.Text(), nullable=True),
        sa.Column('transition_taken', TRANSITION_TYPE, nullable=True),
        sa.Column('decision', DECISION_KIND, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('executed_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['execution_id'], ['skill_chain_executions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['link_id'], ['skill_chain_links.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_skill_chain_link_executions_execution_id', 'skill_chain_link_executions', ['execution_id'], unique=False)
    op.create_index('ix_skill_chain_link_executions_link_id', 'skill_chain_link_executions', ['link_id'], unique=False)

    op.create_table(
        'execution_interventions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('execution_id', sa.UUID(), nullable=False),
        sa.Column('link_id', sa.UUID(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=False),
        sa.Column('next_action', INTERVENTION_ACTION, nullable=False),
        sa.Column('target_link_id', sa.UUID(), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['execution_id'], ['skill_chain_executions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_interventions_execution_id', 'execution_interventions', ['execution_id'], unique=False)

    op.create_table(
        'execution_checkpoints',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('execution_id', sa.UUID(), nullable=False),
        sa.Column('link_id', sa.UUID(), nullable=True),
        sa.Column('link_name', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('phase', SESSION_PHASE, nullable=True),
        sa.Column('checkpoint_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['execution_id'], ['skill_chain_executions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_checkpoints_execution_id', 'execution_checkpoints', ['execution_id'], unique=False)

    # ==========================================================================
    # Session State
    # ==========================================================================

    op.create_table(
        'session_states',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('ticket_id', sa.UUID(), nullable=True),
        sa.Column('current_phase', SESSION_PHASE, nullable=False, server_default='RESEARCHING'),
        sa.Column('working_summary', sa.Text(), nullable=True),
        sa.Column('last_checkpoint', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_session_states_session_id', 'session_states', ['session_id'], unique=True)
    op.create_index('ix_session_states_ticket_id', 'session_states', ['ticket_id'], unique=False)
    op.create_index('ix_session_states_expires_at', 'session_states', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_table('session_states')
    op.drop_table('execution_checkpoints')
    op.drop_table('execution_interventions')
    op.drop_table('skill_chain_link_executions')
    op.drop_table('skill_chain_executions')
    op.drop_table('skill_chain_links')
    op.drop_table('skill_chains')

    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(op.get_bind(), checkfirst=True)
