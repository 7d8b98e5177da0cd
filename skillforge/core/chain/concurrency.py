"""
Concurrency Control
===================

At most one state transition per execution at a time, with no locking
across executions. `SkillChainExecution.version` is the mapper's version
column: every flush issues `UPDATE ... WHERE id = :id AND version = :v`,
so a writer working from a stale read matches zero rows and loses.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from skillforge.core.chain.errors import ConcurrencyConflictError
from skillforge.core.models import SkillChainExecution

logger = logging.getLogger(__name__)


class ConcurrencyControl:
    """Optimistic version checks around execution writes."""

    def check_expected_version(
        self,
        execution: SkillChainExecution,
        expected_version: Optional[int],
    ) -> None:
        """Reject a caller whose last read is older than the stored row."""
        if expected_version is None:
            return
        if execution.version != expected_version:
            raise ConcurrencyConflictError(
                execution.id,
                expected_version=expected_version,
                actual_version=execution.version,
            )

    async def commit_transition(self, db: AsyncSession, execution: SkillChainExecution) -> None:
        """
        Commit pending changes, translating a lost race into a retryable error.

        Raises:
            ConcurrencyConflictError: another writer committed first
        """
        # Rollback expires the instance, so capture the id up front
        execution_id = execution.id
        try:
            await db.commit()
        except StaleDataError as e:
            await db.rollback()
            logger.warning(f"Concurrent modification of execution {execution_id}, transition discarded")
            raise ConcurrencyConflictError(execution_id) from e
