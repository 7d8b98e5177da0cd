"""
Session State Store
===================

TTL-bound working state that survives process restarts. A record past
its expiry is treated as absent by every read.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.core.config import settings
from skillforge.core.models import SessionPhase, SessionState, as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SessionSnapshot:
    """Detached copy of a session-state record."""
    session_id: str
    phase: SessionPhase
    ticket_id: Optional[UUID] = None
    working_summary: Optional[str] = None
    last_checkpoint: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: SessionState) -> "SessionSnapshot":
        return cls(
            session_id=record.session_id,
            phase=record.current_phase,
            ticket_id=record.ticket_id,
            working_summary=record.working_summary,
            last_checkpoint=dict(record.last_checkpoint or {}),
            updated_at=as_utc(record.updated_at),
            expires_at=as_utc(record.expires_at),
        )

    def to_context(self) -> dict[str, Any]:
        """Shape seeded into an execution's context on restore."""
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "working_summary": self.working_summary,
            "last_checkpoint": self.last_checkpoint,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _is_expired(record: SessionState, now: datetime) -> bool:
    expires_at = as_utc(record.expires_at)
    return expires_at is not None and expires_at <= now


# ==========================================================================
# Interface
# ==========================================================================

class SessionStateStore(ABC):
    """Externally owned session-state persistence."""

    @abstractmethod
    async def save(
        self,
        session_id: str,
        phase: SessionPhase,
        ticket_id: Optional[UUID] = None,
        summary: Optional[str] = None,
        checkpoint: Optional[dict[str, Any]] = None,
        ttl_hours: Optional[int] = None,
    ) -> SessionSnapshot:
        """Create or replace the record and push its expiry forward."""
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        """Return the record, or None if absent or expired."""
        pass

    @abstractmethod
    async def load_for_ticket(self, ticket_id: UUID) -> Optional[SessionSnapshot]:
        """Most recently updated live record bound to a ticket."""
        pass

    @abstractmethod
    async def clear(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Delete expired records, returning how many were removed."""
        pass


# ==========================================================================
# SQL Implementation
# ==========================================================================

class SqlSessionStateStore(SessionStateStore):
    """Session state kept in the `session_states` table, one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(
        self,
        session_id: str,
        phase: SessionPhase,
        ticket_id: Optional[UUID] = None,
        summary: Optional[str] = None,
        checkpoint: Optional[dict[str, Any]] = None,
        ttl_hours: Optional[int] = None,
    ) -> SessionSnapshot:
        if ttl_hours is None:
            ttl_hours = settings.SESSION_STATE_EXPIRY_HOURS
        now = utcnow()

        async with self.session_factory() as db:
            result = await db.execute(
                select(SessionState).where(SessionState.session_id == session_id)
            )
            record = result.scalar_one_or_none()

            if record is None:
                record = SessionState(session_id=session_id)
                db.add(record)

            if ticket_id is not None:
                record.ticket_id = ticket_id
            record.current_phase = phase
            if summary is not None:
                record.working_summary = summary
            if checkpoint is not None:
                record.last_checkpoint = checkpoint
            record.updated_at = now
            record.expires_at = now + timedelta(hours=ttl_hours)

            await db.commit()
            await db.refresh(record)
            snapshot = SessionSnapshot.from_record(record)

        logger.debug(f"Saved session state {session_id} [{phase.value}]")
        return snapshot

    async def load(self, session_id: str) -> Optional[SessionSnapshot]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SessionState).where(SessionState.session_id == session_id)
            )
            record = result.scalar_one_or_none()

        if record is None or _is_expired(record, utcnow()):
            return None
        return SessionSnapshot.from_record(record)

    async def load_for_ticket(self, ticket_id: UUID) -> Optional[SessionSnapshot]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SessionState)
                .where(SessionState.ticket_id == ticket_id)
                .order_by(SessionState.updated_at.desc())
            )
            records = result.scalars().all()

        now = utcnow()
        for record in records:
            if not _is_expired(record, now):
                return SessionSnapshot.from_record(record)
        return None

    async def clear(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(SessionState).where(SessionState.session_id == session_id)
            )
            await db.commit()

        cleared = result.rowcount > 0
        if cleared:
            logger.debug(f"Cleared session state {session_id}")
        return cleared

    async def cleanup_expired(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SessionState).where(SessionState.expires_at.is_not(None))
            )
            now = utcnow()
            expired = [record for record in result.scalars().all() if _is_expired(record, now)]
            for record in expired:
                await db.delete(record)
            await db.commit()

        if expired:
            logger.info(f"Removed {len(expired)} expired session state record(s)")
        return len(expired)
