"""Caller-facing view of an execution after an operation."""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from skillforge.core.chain.definitions import PublishedChain
from skillforge.core.models import (
    ChainExecutionStatus,
    SkillChainExecution,
    SkillChainLink,
)


@dataclass
class ExecutionSnapshot:
    """Execution row plus the definition pieces needed to drive the next step."""
    execution: SkillChainExecution
    chain: PublishedChain
    current_link: Optional[SkillChainLink] = None
    ticket_key: Optional[str] = None

    @property
    def id(self) -> UUID:
        return self.execution.id

    @property
    def status(self) -> ChainExecutionStatus:
        return self.execution.status

    @property
    def version(self) -> int:
        return self.execution.version

    @property
    def current_link_id(self) -> Optional[UUID]:
        return self.execution.current_link_id

    @property
    def current_attempt(self) -> int:
        return self.execution.current_attempt

    @property
    def total_failure_count(self) -> int:
        return self.execution.total_failure_count

    @property
    def requires_human_intervention(self) -> bool:
        return self.execution.requires_human_intervention

    @property
    def is_terminal(self) -> bool:
        return self.execution.is_terminal
