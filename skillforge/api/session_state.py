"""
Session State API Routes.

Direct access to the TTL-bound session-state store.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, Field

from skillforge.api.deps import SessionStore
from skillforge.core.chain import SessionSnapshot, SessionStateNotFoundError
from skillforge.core.models import SessionPhase
from skillforge.core.schemas import MessageResponse

router = APIRouter(prefix="/session-state", tags=["session-state"])


# ==========================================================================
# Schemas
# ==========================================================================

class SaveSessionStateRequest(BaseModel):
    """Request to create or replace a session-state record."""
    phase: SessionPhase = Field(..., description="Current working phase")
    ticket_id: Optional[UUID] = Field(None, description="Ticket the session works on")
    working_summary: Optional[str] = Field(None, description="Free-form progress summary")
    checkpoint: Optional[dict[str, Any]] = Field(None, description="Opaque checkpoint payload")
    ttl_hours: Optional[int] = Field(None, ge=1, description="Hours until the record expires")


class SessionStateResponse(BaseModel):
    """Session-state record."""
    session_id: str
    ticket_id: Optional[UUID]
    phase: SessionPhase
    working_summary: Optional[str]
    last_checkpoint: dict[str, Any]
    updated_at: Optional[datetime]
    expires_at: Optional[datetime]


class CleanupResponse(BaseModel):
    removed: int


# ==========================================================================
# Endpoints
# ==========================================================================

@router.put("/{session_id}", response_model=SessionStateResponse)
async def save_session_state(
    session_id: str,
    request: SaveSessionStateRequest,
    store: SessionStore,
):
    """Upsert a session-state record and push its expiry forward."""
    snapshot = await store.save(
        session_id,
        request.phase,
        ticket_id=request.ticket_id,
        summary=request.working_summary,
        checkpoint=request.checkpoint,
        ttl_hours=request.ttl_hours,
    )
    return _snapshot_to_response(snapshot)


@router.get("/{session_id}", response_model=SessionStateResponse)
async def load_session_state(session_id: str, store: SessionStore):
    """Get a live session-state record. Expired records are reported as missing."""
    snapshot = await store.load(session_id)
    if snapshot is None:
        raise SessionStateNotFoundError(session_id)
    return _snapshot_to_response(snapshot)


@router.get("/by-ticket/{ticket_id}", response_model=SessionStateResponse)
async def load_session_state_for_ticket(ticket_id: UUID, store: SessionStore):
    snapshot = await store.load_for_ticket(ticket_id)
    if snapshot is None:
        raise SessionStateNotFoundError(str(ticket_id))
    return _snapshot_to_response(snapshot)


@router.delete("/{session_id}", response_model=MessageResponse)
async def clear_session_state(session_id: str, store: SessionStore):
    cleared = await store.clear(session_id)
    if not cleared:
        raise SessionStateNotFoundError(session_id)
    return MessageResponse(message=f"Session state '{session_id}' cleared")


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired_session_state(store: SessionStore):
    """Delete every expired record."""
    removed = await store.cleanup_expired()
    return CleanupResponse(removed=removed)


def _snapshot_to_response(snapshot: SessionSnapshot) -> SessionStateResponse:
    return SessionStateResponse(
        session_id=snapshot.session_id,
        ticket_id=snapshot.ticket_id,
        phase=snapshot.phase,
        working_summary=snapshot.working_summary,
        last_checkpoint=snapshot.last_checkpoint,
        updated_at=snapshot.updated_at,
        expires_at=snapshot.expires_at,
    )
