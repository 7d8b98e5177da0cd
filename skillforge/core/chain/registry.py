"""
External Collaborators
======================

Interfaces for the systems the engine consults but does not own:

- SkillRegistry: resolves skill/agent ids when a chain is published
- TicketDirectory: resolves a ticket id to its display key

In-memory implementations are seeded from settings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from skillforge.core.config import Settings


# ==========================================================================
# References
# ==========================================================================

@dataclass(frozen=True)
class SkillRef:
    """A resolvable skill."""
    skill_id: str
    name: str


@dataclass(frozen=True)
class AgentRef:
    """A resolvable agent."""
    agent_id: str
    name: str


# ==========================================================================
# Interfaces
# ==========================================================================

class SkillRegistry(ABC):
    """Resolves skill and agent references."""

    @abstractmethod
    def resolve_skill(self, skill_id: str) -> Optional[SkillRef]:
        """Return the skill, or None if it does not exist."""
        pass

    @abstractmethod
    def resolve_agent(self, agent_id: str) -> Optional[AgentRef]:
        """Return the agent, or None if it does not exist."""
        pass


class TicketDirectory(ABC):
    """Resolves ticket ids for display."""

    @abstractmethod
    def get_ticket_key(self, ticket_id: UUID) -> Optional[str]:
        pass


# ==========================================================================
# In-Memory Implementations
# ==========================================================================

class InMemorySkillRegistry(SkillRegistry):
    """Registry backed by plain dicts of id -> name."""

    def __init__(
        self,
        skills: Optional[dict[str, str]] = None,
        agents: Optional[dict[str, str]] = None,
    ):
        self._skills = dict(skills or {})
        self._agents = dict(agents or {})

    def register_skill(self, skill_id: str, name: str = "") -> SkillRef:
        self._skills[skill_id] = name or skill_id
        return SkillRef(skill_id=skill_id, name=self._skills[skill_id])

    def register_agent(self, agent_id: str, name: str = "") -> AgentRef:
        self._agents[agent_id] = name or agent_id
        return AgentRef(agent_id=agent_id, name=self._agents[agent_id])

    def resolve_skill(self, skill_id: str) -> Optional[SkillRef]:
        if skill_id not in self._skills:
            return None
        return SkillRef(skill_id=skill_id, name=self._skills[skill_id])

    def resolve_agent(self, agent_id: str) -> Optional[AgentRef]:
        if agent_id not in self._agents:
            return None
        return AgentRef(agent_id=agent_id, name=self._agents[agent_id])


class InMemoryTicketDirectory(TicketDirectory):
    """Ticket keys looked up from a dict keyed by the ticket id string."""

    def __init__(self, keys: Optional[dict[str, str]] = None):
        self._keys = dict(keys or {})

    def add(self, ticket_id: UUID, key: str) -> None:
        self._keys[str(ticket_id)] = key

    def get_ticket_key(self, ticket_id: UUID) -> Optional[str]:
        return self._keys.get(str(ticket_id))


def build_skill_registry(settings: Settings) -> Optional[SkillRegistry]:
    """Registry used at publish time, or None when validation is off."""
    if not settings.SKILL_REGISTRY_ENFORCED:
        return None
    return InMemorySkillRegistry(settings.SKILL_REGISTRY, settings.AGENT_REGISTRY)


def build_ticket_directory(settings: Settings) -> TicketDirectory:
    return InMemoryTicketDirectory(settings.TICKET_KEYS)
