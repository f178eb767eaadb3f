"""
Per-kind resource handlers: create, read, update, delete and import.

Each handler folds every response field back into the entity it returns,
including fields the caller never supplied. Where an update response omits
computed fields (Environment.pool_ids) they are carried forward from the
prior entity rather than dropped.
"""

import dataclasses
from abc import ABC, abstractmethod
from typing import ClassVar

from ipamsync import lookups
from ipamsync.client.protocol import IPAMTransport
from ipamsync.engine.allocation_strategy import AllocationStrategy
from ipamsync.errors import IPAMError, ValidationError
from ipamsync.logging_config import get_logger
from ipamsync.models import (
    Allocation,
    Block,
    Entity,
    Environment,
    Kind,
    Pool,
    PoolSpec,
    ReservedBlock,
    computed_fields,
    field_specs,
)
from ipamsync.validation import validate_for_create

logger = get_logger(__name__)


def _label(entity: Entity) -> str:
    return entity.id or getattr(entity, "name", None) or getattr(entity, "cidr", "") or ""


def _empty(value: object) -> bool:
    return value is None or value == "" or value == []


class ResourceHandler(ABC):
    """Abstract base class for all resource kinds."""

    kind: ClassVar[Kind]
    entity_type: ClassVar[type]

    def __init__(self, client: IPAMTransport, page_size: int = lookups.DEFAULT_PAGE_SIZE) -> None:
        self._client = client
        self._page_size = page_size

    @abstractmethod
    async def _create(self, desired: Entity) -> Entity:
        """Issue the remote create and return the resulting entity."""

    @abstractmethod
    async def _read(self, prior: Entity) -> Entity:
        """Fetch the current remote entity. ``prior`` carries at least the ID."""

    @abstractmethod
    async def _update(self, prior: Entity, desired: Entity) -> Entity:
        """Issue the remote in-place update."""

    @abstractmethod
    async def _delete(self, entity_id: str) -> None:
        """Issue the remote delete."""

    def validate(self, desired: Entity) -> None:
        validate_for_create(desired)

    async def create(self, desired: Entity) -> Entity:
        """Create the entity. Validates locally first; nothing is sent on failure."""
        self.validate(desired)
        try:
            out = await self._create(desired)
        except IPAMError as e:
            raise e.with_context("create", self.kind, _label(desired))
        self._fill_create_only(desired, out)
        logger.info("Resource created", kind=self.kind.value, id=out.id)
        return out

    async def read(self, prior: Entity) -> Entity:
        if not prior.id:
            raise ValidationError("cannot read an entity without an id", operation="read",
                                  kind=self.kind)
        try:
            return await self._read(prior)
        except IPAMError as e:
            raise e.with_context("read", self.kind, prior.id)

    async def update(self, prior: Entity, desired: Entity) -> Entity:
        """Update in place. Computed fields missing from the response are carried forward."""
        desired = dataclasses.replace(desired, id=prior.id)
        try:
            out = await self._update(prior, desired)
        except IPAMError as e:
            raise e.with_context("update", self.kind, prior.id or "")
        self._carry_forward(prior, out)
        logger.info("Resource updated", kind=self.kind.value, id=out.id)
        return out

    async def delete(self, entity: Entity) -> None:
        if not entity.id:
            raise ValidationError("cannot delete an entity without an id", operation="delete",
                                  kind=self.kind)
        try:
            await self._delete(entity.id)
        except IPAMError as e:
            raise e.with_context("delete", self.kind, entity.id)
        logger.info("Resource deleted", kind=self.kind.value, id=entity.id)

    async def import_state(self, entity_id: str) -> Entity:
        """Adopt an existing remote entity from its ID alone."""
        out = await self.read(self.entity_type(id=entity_id))
        logger.info("Resource imported", kind=self.kind.value, id=out.id)
        return out

    def _carry_forward(self, prior: Entity, out: Entity) -> None:
        specs = field_specs(self.entity_type)
        for name in computed_fields(self.entity_type):
            if _empty(getattr(out, name)):
                setattr(out, name, getattr(prior, name))
        for name, spec in specs.items():
            if spec.create_only:
                setattr(out, name, getattr(prior, name))

    def _fill_create_only(self, desired: Entity, out: Entity) -> None:
        for name, spec in field_specs(self.entity_type).items():
            if spec.create_only and _empty(getattr(out, name)):
                setattr(out, name, getattr(desired, name))


class EnvironmentHandler(ResourceHandler):
    kind = Kind.ENVIRONMENT
    entity_type = Environment

    async def _create(self, desired: Environment) -> Environment:
        return await self._client.create_environment(desired)

    async def _read(self, prior: Environment) -> Environment:
        detail = await self._client.get_environment(prior.id)
        env = detail.environment
        pools = await lookups.list_pools(self._client, env.id, page_size=self._page_size)

        # Keep the pools seeded at creation, in creation order. Pools added
        # later belong to their own Pool resources.
        if prior.pool_ids:
            by_id = {p.id: p for p in pools}
            pools = [by_id[pid] for pid in prior.pool_ids if pid in by_id]
        env.pools = [PoolSpec(name=p.name, cidr=p.cidr) for p in pools]
        env.pool_ids = [p.id for p in pools]
        return env

    async def _update(self, prior: Environment, desired: Environment) -> Environment:
        # Only the name is accepted; pools and pool_ids are carried forward.
        return await self._client.update_environment(prior.id, desired)

    async def _delete(self, entity_id: str) -> None:
        await self._client.delete_environment(entity_id)


class PoolHandler(ResourceHandler):
    kind = Kind.POOL
    entity_type = Pool

    async def _create(self, desired: Pool) -> Pool:
        return await self._client.create_pool(desired)

    async def _read(self, prior: Pool) -> Pool:
        return await self._client.get_pool(prior.id)

    async def _update(self, prior: Pool, desired: Pool) -> Pool:
        return await self._client.update_pool(prior.id, desired)

    async def _delete(self, entity_id: str) -> None:
        await self._client.delete_pool(entity_id)


class BlockHandler(ResourceHandler):
    kind = Kind.BLOCK
    entity_type = Block

    async def _create(self, desired: Block) -> Block:
        return await self._client.create_block(desired)

    async def _read(self, prior: Block) -> Block:
        return await self._client.get_block(prior.id)

    async def _update(self, prior: Block, desired: Block) -> Block:
        return await self._client.update_block(prior.id, desired)

    async def _delete(self, entity_id: str) -> None:
        await self._client.delete_block(entity_id)


class AllocationHandler(ResourceHandler):
    """Allocations are tied to their block by name, not ID.

    Reads fall back to a (block_name, name) lookup when get-by-ID reports
    not-found and the name pair is known. Import only has the ID, so it
    gets no fallback.
    """

    kind = Kind.ALLOCATION
    entity_type = Allocation

    def __init__(
        self,
        client: IPAMTransport,
        page_size: int = lookups.DEFAULT_PAGE_SIZE,
        lookup_fallback: bool = True,
    ) -> None:
        super().__init__(client, page_size)
        self._strategy = AllocationStrategy(client)
        self._lookup_fallback = lookup_fallback

    async def _create(self, desired: Allocation) -> Allocation:
        return await self._strategy.allocate(desired)

    async def _read(self, prior: Allocation) -> Allocation:
        return await lookups.resolve_allocation(
            self._client,
            allocation_id=prior.id,
            name=prior.name or None,
            block_name=prior.block_name or None,
            fallback=self._lookup_fallback,
        )

    async def _update(self, prior: Allocation, desired: Allocation) -> Allocation:
        return await self._client.update_allocation(prior.id, desired)

    async def _delete(self, entity_id: str) -> None:
        await self._client.delete_allocation(entity_id)


class ReservedBlockHandler(ResourceHandler):
    """Reserved blocks are read by list-and-match; only ``name`` updates remotely."""

    kind = Kind.RESERVED_BLOCK
    entity_type = ReservedBlock

    async def _create(self, desired: ReservedBlock) -> ReservedBlock:
        return await self._client.create_reserved_block(desired)

    async def _read(self, prior: ReservedBlock) -> ReservedBlock:
        return await lookups.get_reserved_block(self._client, prior.id, page_size=self._page_size)

    async def _update(self, prior: ReservedBlock, desired: ReservedBlock) -> ReservedBlock:
        if desired.reason != prior.reason:
            raise ValidationError(
                "reason cannot be changed after creation; recreate the reserved block",
                operation="update",
                kind=self.kind,
                identifier=prior.id or "",
            )
        if desired.name == prior.name:
            return dataclasses.replace(prior)
        return await self._client.update_reserved_block(prior.id, desired)

    async def _delete(self, entity_id: str) -> None:
        await self._client.delete_reserved_block(entity_id)


def build_handlers(
    client: IPAMTransport,
    page_size: int = lookups.DEFAULT_PAGE_SIZE,
    allocation_lookup_fallback: bool = True,
) -> dict[Kind, ResourceHandler]:
    """One handler per kind, all sharing the same client."""
    return {
        Kind.ENVIRONMENT: EnvironmentHandler(client, page_size),
        Kind.POOL: PoolHandler(client, page_size),
        Kind.RESERVED_BLOCK: ReservedBlockHandler(client, page_size),
        Kind.BLOCK: BlockHandler(client, page_size),
        Kind.ALLOCATION: AllocationHandler(
            client, page_size, lookup_fallback=allocation_lookup_fallback
        ),
    }
