"""
Chain Definition Store
======================

Owns skill chain definitions: authoring while unpublished, validation at
publish time, and read-only resolution for the execution engine.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillforge.core.chain.errors import (
    ChainNotFoundError,
    ConfigurationError,
    InvalidStateError,
    LinkNotFoundError,
    NotPublishedError,
)
from skillforge.core.chain.registry import SkillRegistry
from skillforge.core.config import settings
from skillforge.core.models import (
    FAILURE_TRANSITIONS,
    SUCCESS_TRANSITIONS,
    TERMINAL_STATUSES,
    ExecutionCheckpoint,
    ExecutionIntervention,
    SkillChain,
    SkillChainExecution,
    SkillChainLink,
    SkillChainLinkExecution,
    TransitionType,
)

logger = logging.getLogger(__name__)


# ==========================================================================
# Published View
# ==========================================================================

@dataclass(frozen=True)
class PublishedChain:
    """Immutable view of a published chain with its links ordered by position."""
    chain: SkillChain
    links: tuple[SkillChainLink, ...]

    @property
    def id(self) -> UUID:
        return self.chain.id

    @property
    def max_total_failures(self) -> int:
        return self.chain.max_total_failures

    def first_link(self) -> SkillChainLink:
        return self.links[0]

    def link(self, link_id: UUID) -> SkillChainLink:
        for link in self.links:
            if link.id == link_id:
                return link
        raise LinkNotFoundError(link_id, self.chain.id)

    def has_link(self, link_id: Optional[UUID]) -> bool:
        return any(link.id == link_id for link in self.links)

    def next_after(self, link: SkillChainLink) -> Optional[SkillChainLink]:
        """Next link by position, or None if `link` is last."""
        for candidate in self.links:
            if candidate.position > link.position:
                return candidate
        return None


# ==========================================================================
# Store
# ==========================================================================

class ChainDefinitionStore:
    """
    Chain and link persistence.

    Definitions are editable only while unpublished. Publishing validates
    the link graph (and skill/agent references, when a registry is given)
    so the engine can assume referential integrity at run time.
    """

    def __init__(self, db: AsyncSession, skill_registry: Optional[SkillRegistry] = None):
        self.db = db
        self.skill_registry = skill_registry

    # ----------------------------------------------------------------------
    # Chains
    # ----------------------------------------------------------------------

    async def create_chain(
        self,
        chain_key: str,
        name: str,
        organization_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        description: Optional[str] = None,
        input_schema: Optional[dict] = None,
        max_total_failures: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> SkillChain:
        """Create an unpublished chain scoped to an organization or a project."""
        if (organization_id is None) == (project_id is None):
            raise ConfigurationError("Exactly one of organization_id or project_id must be set")

        if max_total_failures is None:
            max_total_failures = settings.DEFAULT_MAX_TOTAL_FAILURES
        if max_total_failures < 0:
            raise ConfigurationError("max_total_failures must be >= 0")

        await self._ensure_unique_key(chain_key, organization_id, project_id)

        chain = SkillChain(
            chain_key=chain_key,
            name=name,
            description=description,
            input_schema=input_schema,
            max_total_failures=max_total_failures,
            organization_id=organization_id,
            project_id=project_id,
            is_published=False,
            created_by=created_by,
            updated_by=created_by,
        )
        self.db.add(chain)
        await self.db.commit()
        await self.db.refresh(chain)

        logger.info(f"Created skill chain {chain.chain_key} ({chain.id})")
        return chain

    async def get_chain(self, chain_id: UUID) -> SkillChain:
        result = await self.db.execute(select(SkillChain).where(SkillChain.id == chain_id))
        chain = result.scalar_one_or_none()
        if chain is None:
            raise ChainNotFoundError(chain_id)
        return chain

    async def get_chain_by_key(
        self,
        chain_key: str,
        organization_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
    ) -> SkillChain:
        """
        Resolve a chain key, preferring the project scope over the organization.

        Raises:
            ConfigurationError: neither scope given
            ChainNotFoundError: no chain with that key in either scope
        """
        if organization_id is None and project_id is None:
            raise ConfigurationError("organization_id or project_id is required")

        scopes = []
        if project_id is not None:
            scopes.append(SkillChain.project_id == project_id)
        if organization_id is not None:
            scopes.append(SkillChain.organization_id == organization_id)

        for scope in scopes:
            result = await self.db.execute(
                select(SkillChain).where(SkillChain.chain_key == chain_key, scope)
            )
            chain = result.scalar_one_or_none()
            if chain is not None:
                return chain

        raise ChainNotFoundError(chain_key=chain_key)

    async def list_chains(
        self,
        organization_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        published_only: bool = False,
    ) -> list[SkillChain]:
        query = select(SkillChain).order_by(SkillChain.name)
        if organization_id is not None:
            query = query.where(SkillChain.organization_id == organization_id)
        if project_id is not None:
            query = query.where(SkillChain.project_id == project_id)
        if published_only:
            query = query.where(SkillChain.is_published.is_(True))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_chain(
        self,
        chain_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        input_schema: Optional[dict] = None,
        max_total_failures: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> SkillChain:
        chain = await self._get_editable_chain(chain_id)

        if name:
            chain.name = name
        if description is not None:
            chain.description = description
        if input_schema is not None:
            chain.input_schema = input_schema
        if max_total_failures is not None:
            if max_total_failures < 0:
                raise ConfigurationError("max_total_failures must be >= 0")
            chain.max_total_failures = max_total_failures
        chain.updated_by = updated_by

        await self.db.commit()
        await self.db.refresh(chain)
        return chain

    async def delete_chain(self, chain_id: UUID) -> None:
        """Delete a chain with its links and finished executions."""
        chain = await self.get_chain(chain_id)

        active = await self._count_active_executions(chain_id)
        if active:
            raise InvalidStateError(
                f"Cannot delete chain {chain.chain_key} with {active} active execution(s)"
            )

        execution_ids = select(SkillChainExecution.id).where(
            SkillChainExecution.skill_chain_id == chain_id
        )
        for model in (SkillChainLinkExecution, ExecutionIntervention, ExecutionCheckpoint):
            await self.db.execute(
                delete(model).where(model.execution_id.in_(execution_ids))
            )
        await self.db.execute(
            delete(SkillChainExecution).where(SkillChainExecution.skill_chain_id == chain_id)
        )
        await self.db.execute(delete(SkillChainLink).where(SkillChainLink.skill_chain_id == chain_id))
        await self.db.execute(delete(SkillChain).where(SkillChain.id == chain_id))
        await self.db.commit()

        logger.info(f"Deleted skill chain {chain_id}")

    # ----------------------------------------------------------------------
    # Links
    # ----------------------------------------------------------------------

    async def list_links(self, chain_id: UUID) -> list[SkillChainLink]:
        result = await self.db.execute(
            select(SkillChainLink)
            .where(SkillChainLink.skill_chain_id == chain_id)
            .order_by(SkillChainLink.position)
        )
        return list(result.scalars().all())

    async def add_link(
        self,
        chain_id: UUID,
        name: str,
        skill_id: str,
        agent_id: Optional[str] = None,
        description: Optional[str] = None,
        position: Optional[int] = None,
        max_retries: Optional[int] = None,
        on_success_transition: TransitionType = TransitionType.NEXT_LINK,
        on_success_target_link_id: Optional[UUID] = None,
        on_failure_transition: TransitionType = TransitionType.ESCALATE,
        on_failure_target_link_id: Optional[UUID] = None,
        link_config: Optional[dict] = None,
    ) -> SkillChainLink:
        """
        Append a link, or insert it at `position` shifting later links down.
        """
        chain = await self._get_editable_chain(chain_id)
        if max_retries is None:
            max_retries = settings.DEFAULT_LINK_MAX_RETRIES
        _check_link_fields(max_retries, on_success_transition, on_failure_transition)

        links = await self.list_links(chain.id)
        if position is None or position >= len(links):
            position = len(links)
        elif position < 0:
            raise ConfigurationError("position must be >= 0")

        link = SkillChainLink(
            skill_chain_id=chain.id,
            name=name,
            description=description,
            skill_id=skill_id,
            agent_id=agent_id,
            max_retries=max_retries,
            on_success_transition=on_success_transition,
            on_success_target_link_id=on_success_target_link_id,
            on_failure_transition=on_failure_transition,
            on_failure_target_link_id=on_failure_target_link_id,
            link_config=link_config,
        )

        ordered = list(links)
        ordered.insert(position, link)
        await self._renumber(ordered, pending=link)
        await self.db.commit()
        await self.db.refresh(link)

        logger.info(f"Added link {link.name} at position {link.position} to chain {chain.chain_key}")
        return link

    async def update_link(
        self,
        link_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        skill_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        on_success_transition: Optional[TransitionType] = None,
        on_success_target_link_id: Optional[UUID] = None,
        on_failure_transition: Optional[TransitionType] = None,
        on_failure_target_link_id: Optional[UUID] = None,
        link_config: Optional[dict] = None,
    ) -> SkillChainLink:
        link = await self._get_link(link_id)
        await self._get_editable_chain(link.skill_chain_id)

        if name:
            link.name = name
        if description is not None:
            link.description = description
        if skill_id:
            link.skill_id = skill_id
        if agent_id is not None:
            link.agent_id = agent_id
        if max_retries is not None:
            link.max_retries = max_retries
        if on_success_transition is not None:
            link.on_success_transition = on_success_transition
        if on_success_target_link_id is not None:
            link.on_success_target_link_id = on_success_target_link_id
        if on_failure_transition is not None:
            link.on_failure_transition = on_failure_transition
        if on_failure_target_link_id is not None:
            link.on_failure_target_link_id = on_failure_target_link_id
        if link_config is not None:
            link.link_config = link_config

        # Targets only mean something for go_to_link
        if link.on_success_transition != TransitionType.GO_TO_LINK:
            link.on_success_target_link_id = None
        if link.on_failure_transition != TransitionType.GO_TO_LINK:
            link.on_failure_target_link_id = None

        _check_link_fields(link.max_retries, link.on_success_transition, link.on_failure_transition)

        await self.db.commit()
        await self.db.refresh(link)
        return link

    async def remove_link(self, link_id: UUID) -> None:
        """Remove a link and close the gap in positions."""
        link = await self._get_link(link_id)
        chain = await self._get_editable_chain(link.skill_chain_id)

        attempts = await self._count_link_attempts(link.id)
        if attempts:
            raise InvalidStateError(
                f"Cannot remove link {link.name}: {attempts} recorded attempt(s) reference it"
            )

        remaining = [other for other in await self.list_links(chain.id) if other.id != link.id]
        await self.db.delete(link)
        await self.db.flush()
        await self._renumber(remaining)
        await self.db.commit()

        logger.info(f"Removed link {link_id} from chain {chain.chain_key}")

    async def reorder_links(self, chain_id: UUID, link_ids: list[UUID]) -> list[SkillChainLink]:
        """Assign positions 0..n-1 following `link_ids`."""
        chain = await self._get_editable_chain(chain_id)
        links = await self.list_links(chain.id)

        if len(link_ids) != len(links) or len(set(link_ids)) != len(link_ids):
            raise ConfigurationError("link_ids must list every link of the chain exactly once")

        by_id = {link.id: link for link in links}
        ordered = []
        for link_id in link_ids:
            if link_id not in by_id:
                raise LinkNotFoundError(link_id, chain.id)
            ordered.append(by_id[link_id])

        await self._renumber(ordered)
        await self.db.commit()
        return ordered

    # ----------------------------------------------------------------------
    # Publication
    # ----------------------------------------------------------------------

    async def publish(self, chain_id: UUID, updated_by: Optional[str] = None) -> SkillChain:
        """
        Validate and publish a chain.

        Raises:
            ConfigurationError: listing every problem found
        """
        chain = await self.get_chain(chain_id)
        if chain.is_published:
            return chain

        links = await self.list_links(chain.id)
        problems = self.validate(chain, links)
        if problems:
            logger.warning(f"Publish of chain {chain.chain_key} rejected: {problems}")
            raise ConfigurationError(
                f"Chain {chain.chain_key} cannot be published: {problems[0]}",
                problems=problems,
            )

        chain.is_published = True
        chain.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(chain)

        logger.info(f"Published skill chain {chain.chain_key} with {len(links)} link(s)")
        return chain

    async def unpublish(self, chain_id: UUID, updated_by: Optional[str] = None) -> SkillChain:
        chain = await self.get_chain(chain_id)

        active = await self._count_active_executions(chain_id)
        if active:
            raise InvalidStateError(
                f"Cannot unpublish chain {chain.chain_key} with {active} active execution(s)"
            )

        chain.is_published = False
        chain.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(chain)
        return chain

    def validate(self, chain: SkillChain, links: list[SkillChainLink]) -> list[str]:
        """Return human-readable problems; empty means publishable."""
        problems: list[str] = []

        if not links:
            problems.append("chain has no links")
        if chain.max_total_failures < 0:
            problems.append("max_total_failures must be >= 0")

        link_ids = {link.id for link in links}
        for link in links:
            label = f"link '{link.name}' (position {link.position})"

            if link.max_retries < 0:
                problems.append(f"{label}: max_retries must be >= 0")
            if link.on_success_transition not in SUCCESS_TRANSITIONS:
                problems.append(
                    f"{label}: '{link.on_success_transition.value}' is not a success transition"
                )
            if link.on_failure_transition not in FAILURE_TRANSITIONS:
                problems.append(
                    f"{label}: '{link.on_failure_transition.value}' is not a failure transition"
                )

            for side, transition, target in (
                ("on_success", link.on_success_transition, link.on_success_target_link_id),
                ("on_failure", link.on_failure_transition, link.on_failure_target_link_id),
            ):
                if transition != TransitionType.GO_TO_LINK:
                    continue
                if target is None:
                    problems.append(f"{label}: {side} go_to_link has no target")
                elif target not in link_ids:
                    problems.append(f"{label}: {side} target {target} is not in this chain")

            if self.skill_registry is not None:
                if self.skill_registry.resolve_skill(link.skill_id) is None:
                    problems.append(f"{label}: unknown skill '{link.skill_id}'")
                if link.agent_id and self.skill_registry.resolve_agent(link.agent_id) is None:
                    problems.append(f"{label}: unknown agent '{link.agent_id}'")

        return problems

    # ----------------------------------------------------------------------
    # Execution-time reads
    # ----------------------------------------------------------------------

    async def get_published(self, chain_id: UUID) -> PublishedChain:
        chain = await self.get_chain(chain_id)
        if not chain.is_published:
            raise NotPublishedError(chain_id)
        links = await self.list_links(chain_id)
        return PublishedChain(chain=chain, links=tuple(links))

    async def load(self, chain_id: UUID) -> PublishedChain:
        """Chain view regardless of publication state."""
        chain = await self.get_chain(chain_id)
        links = await self.list_links(chain_id)
        return PublishedChain(chain=chain, links=tuple(links))

    async def resolve(self, chain_id: UUID, link_id: UUID) -> SkillChainLink:
        result = await self.db.execute(
            select(SkillChainLink).where(
                SkillChainLink.id == link_id,
                SkillChainLink.skill_chain_id == chain_id,
            )
        )
        link = result.scalar_one_or_none()
        if link is None:
            raise LinkNotFoundError(link_id, chain_id)
        return link

    # ----------------------------------------------------------------------
    # Helpers
    # ----------------------------------------------------------------------

    async def _get_link(self, link_id: UUID) -> SkillChainLink:
        result = await self.db.execute(select(SkillChainLink).where(SkillChainLink.id == link_id))
        link = result.scalar_one_or_none()
        if link is None:
            raise LinkNotFoundError(link_id)
        return link

    async def _get_editable_chain(self, chain_id: UUID) -> SkillChain:
        chain = await self.get_chain(chain_id)
        if chain.is_published:
            raise InvalidStateError(
                f"Chain {chain.chain_key} is published; unpublish it before editing"
            )
        return chain

    async def _ensure_unique_key(
        self,
        chain_key: str,
        organization_id: Optional[UUID],
        project_id: Optional[UUID],
    ) -> None:
        query = select(func.count()).select_from(SkillChain).where(SkillChain.chain_key == chain_key)
        if organization_id is not None:
            query = query.where(SkillChain.organization_id == organization_id)
        else:
            query = query.where(SkillChain.project_id == project_id)

        if (await self.db.execute(query)).scalar_one():
            raise ConfigurationError(f"Chain key '{chain_key}' already exists in this scope")

    async def _count_active_executions(self, chain_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(SkillChainExecution)
            .where(
                SkillChainExecution.skill_chain_id == chain_id,
                SkillChainExecution.status.not_in(TERMINAL_STATUSES),
            )
        )
        return result.scalar_one()

    async def _count_link_attempts(self, link_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(SkillChainLinkExecution)
            .where(SkillChainLinkExecution.link_id == link_id)
        )
        return result.scalar_one()

    async def _renumber(
        self,
        ordered: list[SkillChainLink],
        pending: Optional[SkillChainLink] = None,
    ) -> None:
        """
        Write positions 0..n-1 in two passes so the (chain, position)
        unique constraint never sees a duplicate mid-update.
        """
        existing = [link for link in ordered if link is not pending]
        for index, link in enumerate(existing):
            link.position = -(index + 1)
        await self.db.flush()

        for index, link in enumerate(ordered):
            link.position = index
        if pending is not None:
            self.db.add(pending)
        await self.db.flush()


def _check_link_fields(
    max_retries: int,
    on_success: TransitionType,
    on_failure: TransitionType,
) -> None:
    if max_retries < 0:
        raise ConfigurationError("max_retries must be >= 0")
    if on_success not in SUCCESS_TRANSITIONS:
        raise ConfigurationError(f"'{on_success.value}' is not a valid on-success transition")
    if on_failure not in FAILURE_TRANSITIONS:
        raise ConfigurationError(f"'{on_failure.value}' is not a valid on-failure transition")
