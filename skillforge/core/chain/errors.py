"""
Skill Chain Errors
==================

Every failure the engine reports to callers is one of these. The API
layer maps them onto HTTP statuses; `retryable` tells clients whether
re-reading and re-submitting can succeed.
"""

from typing import Optional
from uuid import UUID


class ChainEngineError(Exception):
    """Base exception for all skill chain errors."""

    code = "CHAIN_ERROR"
    retryable = False


# ==========================================================================
# Not Found
# ==========================================================================

class NotFoundError(ChainEngineError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"


class ChainNotFoundError(NotFoundError):
    """Raised when a skill chain id or scoped key is unknown."""

    code = "CHAIN_NOT_FOUND"

    def __init__(self, chain_id: Optional[UUID] = None, chain_key: Optional[str] = None):
        self.chain_id = chain_id
        self.chain_key = chain_key
        if chain_key is not None:
            super().__init__(f"Skill chain with key '{chain_key}' not found in the requested scope")
        else:
            super().__init__(f"Skill chain {chain_id} not found")


class LinkNotFoundError(NotFoundError):
    """Raised when a link id is unknown or belongs to another chain."""

    code = "LINK_NOT_FOUND"

    def __init__(self, link_id: UUID, chain_id: Optional[UUID] = None):
        self.link_id = link_id
        self.chain_id = chain_id
        if chain_id is not None:
            super().__init__(f"Link {link_id} not found in chain {chain_id}")
        else:
            super().__init__(f"Link {link_id} not found")


class ExecutionNotFoundError(NotFoundError):
    """Raised when an execution id is unknown."""

    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: UUID):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class SessionStateNotFoundError(NotFoundError):
    """Raised when a session-state record is absent or expired."""

    code = "SESSION_STATE_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session state '{session_id}' not found")


# ==========================================================================
# State
# ==========================================================================

class NotPublishedError(ChainEngineError):
    """Raised when starting an execution of an unpublished chain."""

    code = "NOT_PUBLISHED"

    def __init__(self, chain_id: UUID):
        self.chain_id = chain_id
        super().__init__(f"Skill chain {chain_id} is not published")


class InvalidStateError(ChainEngineError):
    """Raised when an operation is not allowed in the current state."""

    code = "INVALID_STATE"

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class LinkMismatchError(ChainEngineError):
    """Raised when an outcome is reported for a link that is not current."""

    code = "LINK_MISMATCH"

    def __init__(self, expected_link_id: Optional[UUID], reported_link_id: UUID):
        self.expected_link_id = expected_link_id
        self.reported_link_id = reported_link_id
        super().__init__(
            f"Outcome reported for link {reported_link_id}, "
            f"but current link is {expected_link_id}"
        )


class ConcurrencyConflictError(ChainEngineError):
    """Raised when another writer changed the execution first."""

    code = "CONCURRENCY_CONFLICT"
    retryable = True

    def __init__(
        self,
        execution_id: UUID,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        self.execution_id = execution_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if expected_version is not None:
            super().__init__(
                f"Execution {execution_id} is at version {actual_version}, "
                f"expected {expected_version}"
            )
        else:
            super().__init__(f"Execution {execution_id} was modified concurrently")


class ConfigurationError(ChainEngineError):
    """Raised when a chain definition is invalid."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or [message]
        super().__init__(message)
