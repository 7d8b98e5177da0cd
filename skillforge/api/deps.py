"""
SkillForge - API Dependencies
=============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.core.chain import (
    ChainDefinitionStore,
    CheckpointSessionBridge,
    ExecutionStateMachine,
    SessionStateStore,
    SkillRegistry,
    SqlSessionStateStore,
    TicketDirectory,
)
from skillforge.core.chain.registry import build_skill_registry, build_ticket_directory
from skillforge.core.config import settings
from skillforge.core.database import get_db, get_session_factory


# ==========================================================================
# Database
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


# ==========================================================================
# Collaborators
# ==========================================================================

def get_skill_registry() -> Optional[SkillRegistry]:
    return build_skill_registry(settings)


def get_ticket_directory() -> TicketDirectory:
    return build_ticket_directory(settings)


def get_session_state_store(session_factory: SessionFactory) -> SessionStateStore:
    return SqlSessionStateStore(session_factory)


# ==========================================================================
# Engine
# ==========================================================================

def get_definition_store(
    db: DbSession,
    skill_registry: Annotated[Optional[SkillRegistry], Depends(get_skill_registry)],
) -> ChainDefinitionStore:
    return ChainDefinitionStore(db, skill_registry=skill_registry)


def get_state_machine(
    db: DbSession,
    store: Annotated[ChainDefinitionStore, Depends(get_definition_store)],
    session_store: Annotated[SessionStateStore, Depends(get_session_state_store)],
    session_factory: SessionFactory,
    ticket_directory: Annotated[TicketDirectory, Depends(get_ticket_directory)],
) -> ExecutionStateMachine:
    """
    Build the state machine for one request.

    The checkpoint bridge is attached only when session state is enabled
    globally; per-execution options decide what it actually writes.
    """
    observers = []
    if settings.SESSION_STATE_ENABLED:
        observers.append(CheckpointSessionBridge(session_store, session_factory))

    return ExecutionStateMachine(
        db,
        store=store,
        observers=observers,
        ticket_directory=ticket_directory,
    )


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

# Use these in endpoint signatures for cleaner code
DefinitionStore = Annotated[ChainDefinitionStore, Depends(get_definition_store)]
StateMachine = Annotated[ExecutionStateMachine, Depends(get_state_machine)]
SessionStore = Annotated[SessionStateStore, Depends(get_session_state_store)]
