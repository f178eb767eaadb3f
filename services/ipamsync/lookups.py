"""Read-only lookups over the remote IPAM service.

These never change remote state. Name-based resolution must yield exactly
one match; anything else raises AmbiguousLookupError rather than picking
the first result.
"""

from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from ipamsync.client.protocol import IPAMTransport, ListResult
from ipamsync.errors import AmbiguousLookupError, NotFoundError, ValidationError
from ipamsync.logging_config import get_logger
from ipamsync.models import (
    Allocation,
    Block,
    Environment,
    EnvironmentDetail,
    Kind,
    Pool,
    ReservedBlock,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 500


def match_exactly_one(
    items: Iterable[T],
    predicate: Callable[[T], bool],
    kind: Kind,
    identifier: str,
) -> T:
    """Return the single item matching ``predicate``.

    Raises:
        AmbiguousLookupError: If zero or more than one item matches.
    """
    matches = [item for item in items if predicate(item)]
    if len(matches) != 1:
        raise AmbiguousLookupError(
            f"expected exactly one match, found {len(matches)}",
            matches=len(matches),
            operation="lookup",
            kind=kind,
            identifier=identifier,
        )
    return matches[0]


async def list_all(
    fetch: Callable[[int, int], Awaitable[ListResult[T]]],
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[T]:
    """Page through a list route until ``total`` items have been collected."""
    items: list[T] = []
    offset = 0
    while True:
        page = await fetch(page_size, offset)
        items.extend(page.items)
        offset += len(page.items)
        if not page.items or offset >= page.total:
            return items


# --- Environments ---


async def get_environment(client: IPAMTransport, environment_id: str) -> EnvironmentDetail:
    return await client.get_environment(environment_id)


async def list_environments(
    client: IPAMTransport, name: str | None = None, page_size: int = DEFAULT_PAGE_SIZE
) -> list[Environment]:
    return await list_all(
        lambda limit, offset: client.list_environments(name=name, limit=limit, offset=offset),
        page_size,
    )


# --- Pools ---


async def get_pool(client: IPAMTransport, pool_id: str) -> Pool:
    return await client.get_pool(pool_id)


async def list_pools(
    client: IPAMTransport, environment_id: str, page_size: int = DEFAULT_PAGE_SIZE
) -> list[Pool]:
    return await list_all(
        lambda limit, offset: client.list_pools(
            environment_id=environment_id, limit=limit, offset=offset
        ),
        page_size,
    )


# --- Blocks ---


async def get_block(client: IPAMTransport, block_id: str) -> Block:
    return await client.get_block(block_id)


async def list_blocks(
    client: IPAMTransport,
    name: str | None = None,
    environment_id: str | None = None,
    orphaned_only: bool = False,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[Block]:
    return await list_all(
        lambda limit, offset: client.list_blocks(
            name=name,
            environment_id=environment_id,
            orphaned_only=orphaned_only,
            limit=limit,
            offset=offset,
        ),
        page_size,
    )


# --- Allocations ---


async def find_allocation_by_name(
    client: IPAMTransport, name: str, block_name: str
) -> Allocation:
    """Resolve an allocation by its natural key (name within block_name).

    The remote ``name`` filter is a substring match, so results are narrowed
    to exact matches before counting.
    """
    items = await list_allocations(client, name=name, block_name=block_name)
    return match_exactly_one(
        items,
        lambda a: a.name == name and a.block_name == block_name,
        Kind.ALLOCATION,
        f"{block_name}/{name}",
    )


async def resolve_allocation(
    client: IPAMTransport,
    allocation_id: str | None = None,
    name: str | None = None,
    block_name: str | None = None,
    fallback: bool = True,
) -> Allocation:
    """Look up an allocation by ID, or by the (block_name, name) pair.

    When an ID is given and the service answers not-found, and the name pair
    is also known, falls back to list-by-name. Some deployments return
    not-found for allocation IDs that exist.
    """
    has_pair = bool(name) and bool(block_name)
    if not allocation_id and not has_pair:
        raise ValidationError(
            "provide either id or both block_name and name",
            operation="lookup",
            kind=Kind.ALLOCATION,
        )

    if not allocation_id:
        return await find_allocation_by_name(client, name, block_name)

    try:
        return await client.get_allocation(allocation_id)
    except NotFoundError:
        if not (fallback and has_pair):
            raise
        logger.info(
            "Allocation get-by-ID not found, falling back to name lookup",
            allocation_id=allocation_id,
            name=name,
            block_name=block_name,
        )
        return await find_allocation_by_name(client, name, block_name)


async def get_allocation(client: IPAMTransport, allocation_id: str) -> Allocation:
    """Look up an allocation by ID only.

    Deprecated: use resolve_allocation(), which also accepts the
    (block_name, name) pair and survives deployments whose get-by-ID is
    unreliable.
    """
    logger.warning(
        "get_allocation() is deprecated; use resolve_allocation()",
        allocation_id=allocation_id,
    )
    return await client.get_allocation(allocation_id)


async def list_allocations(
    client: IPAMTransport,
    name: str | None = None,
    block_name: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[Allocation]:
    return await list_all(
        lambda limit, offset: client.list_allocations(
            name=name, block_name=block_name, limit=limit, offset=offset
        ),
        page_size,
    )


# --- Reserved blocks ---


async def get_reserved_block(
    client: IPAMTransport, reserved_block_id: str, page_size: int = DEFAULT_PAGE_SIZE
) -> ReservedBlock:
    """Find a reserved block by ID via list-and-match."""
    items = await list_reserved_blocks(client, page_size=page_size)
    return match_exactly_one(
        items, lambda b: b.id == reserved_block_id, Kind.RESERVED_BLOCK, reserved_block_id
    )


async def list_reserved_blocks(
    client: IPAMTransport, name: str | None = None, page_size: int = DEFAULT_PAGE_SIZE
) -> list[ReservedBlock]:
    return await list_all(
        lambda limit, offset: client.list_reserved_blocks(name=name, limit=limit, offset=offset),
        page_size,
    )
