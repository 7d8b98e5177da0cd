"""
Skill Chain API Routes.

Authoring endpoints for chains and their links, plus publication.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, status

from skillforge.api.deps import DefinitionStore
from skillforge.core.models import SkillChain, SkillChainLink
from skillforge.core.schemas import (
    MessageResponse,
    PublishRequest,
    ReorderLinksRequest,
    SkillChainCreate,
    SkillChainLinkCreate,
    SkillChainLinkResponse,
    SkillChainLinkUpdate,
    SkillChainResponse,
    SkillChainUpdate,
)

router = APIRouter(prefix="/skill-chains", tags=["skill-chains"])


# ==========================================================================
# Chains
# ==========================================================================

@router.post("", response_model=SkillChainResponse, status_code=status.HTTP_201_CREATED)
async def create_chain(request: SkillChainCreate, store: DefinitionStore):
    """Create an unpublished chain in an organization or project scope."""
    chain = await store.create_chain(**request.model_dump())
    return _chain_to_response(chain, [])


@router.get("", response_model=list[SkillChainResponse])
async def list_chains(
    store: DefinitionStore,
    organization_id: Optional[UUID] = None,
    project_id: Optional[UUID] = None,
    published_only: bool = False,
):
    """List chains, optionally filtered by scope and publication."""
    chains = await store.list_chains(
        organization_id=organization_id,
        project_id=project_id,
        published_only=published_only,
    )
    return [_chain_to_response(chain) for chain in chains]


@router.get("/key/{chain_key}", response_model=SkillChainResponse)
async def get_chain_by_key(
    chain_key: str,
    store: DefinitionStore,
    organization_id: Optional[UUID] = None,
    project_id: Optional[UUID] = None,
):
    """Resolve a chain key, trying the project scope before the organization."""
    chain = await store.get_chain_by_key(
        chain_key,
        organization_id=organization_id,
        project_id=project_id,
    )
    links = await store.list_links(chain.id)
    return _chain_to_response(chain, links)


@router.get("/{chain_id}", response_model=SkillChainResponse)
async def get_chain(chain_id: UUID, store: DefinitionStore):
    """Get a chain with its links ordered by position."""
    chain = await store.get_chain(chain_id)
    links = await store.list_links(chain_id)
    return _chain_to_response(chain, links)


@router.patch("/{chain_id}", response_model=SkillChainResponse)
async def update_chain(chain_id: UUID, request: SkillChainUpdate, store: DefinitionStore):
    chain = await store.update_chain(chain_id, **request.model_dump())
    links = await store.list_links(chain_id)
    return _chain_to_response(chain, links)


@router.delete("/{chain_id}", response_model=MessageResponse)
async def delete_chain(chain_id: UUID, store: DefinitionStore):
    """Delete a chain. Refused while any execution of it is still active."""
    await store.delete_chain(chain_id)
    return MessageResponse(message=f"Skill chain {chain_id} deleted")


@router.post("/{chain_id}/publish", response_model=SkillChainResponse)
async def publish_chain(
    chain_id: UUID,
    store: DefinitionStore,
    request: Optional[PublishRequest] = None,
):
    """
    Validate and publish a chain.

    Returns 422 with every validation problem when the link graph is invalid.
    """
    chain = await store.publish(chain_id, updated_by=request.updated_by if request else None)
    links = await store.list_links(chain_id)
    return _chain_to_response(chain, links)


@router.post("/{chain_id}/unpublish", response_model=SkillChainResponse)
async def unpublish_chain(
    chain_id: UUID,
    store: DefinitionStore,
    request: Optional[PublishRequest] = None,
):
    chain = await store.unpublish(chain_id, updated_by=request.updated_by if request else None)
    links = await store.list_links(chain_id)
    return _chain_to_response(chain, links)


# ==========================================================================
# Links
# ==========================================================================

@router.get("/{chain_id}/links", response_model=list[SkillChainLinkResponse])
async def list_links(chain_id: UUID, store: DefinitionStore):
    await store.get_chain(chain_id)
    return await store.list_links(chain_id)


@router.post(
    "/{chain_id}/links",
    response_model=SkillChainLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_link(chain_id: UUID, request: SkillChainLinkCreate, store: DefinitionStore):
    """Append a link, or insert it at `position` shifting later links."""
    return await store.add_link(chain_id, **request.model_dump())


@router.put("/{chain_id}/links/order", response_model=list[SkillChainLinkResponse])
async def reorder_links(chain_id: UUID, request: ReorderLinksRequest, store: DefinitionStore):
    return await store.reorder_links(chain_id, request.link_ids)


@router.patch("/links/{link_id}", response_model=SkillChainLinkResponse)
async def update_link(link_id: UUID, request: SkillChainLinkUpdate, store: DefinitionStore):
    return await store.update_link(link_id, **request.model_dump())


@router.delete("/links/{link_id}", response_model=MessageResponse)
async def remove_link(link_id: UUID, store: DefinitionStore):
    await store.remove_link(link_id)
    return MessageResponse(message=f"Link {link_id} removed")


# ==========================================================================
# Helpers
# ==========================================================================

def _chain_to_response(
    chain: SkillChain,
    links: Optional[list[SkillChainLink]] = None,
) -> SkillChainResponse:
    """Convert SkillChain to response model."""
    return SkillChainResponse(
        id=chain.id,
        chain_key=chain.chain_key,
        name=chain.name,
        description=chain.description,
        input_schema=chain.input_schema,
        max_total_failures=chain.max_total_failures,
        organization_id=chain.organization_id,
        project_id=chain.project_id,
        scope="organization" if chain.organization_id else "project",
        is_published=chain.is_published,
        created_by=chain.created_by,
        updated_by=chain.updated_by,
        created_at=chain.created_at,
        updated_at=chain.updated_at,
        links=[SkillChainLinkResponse.model_validate(link) for link in links or []],
    )
