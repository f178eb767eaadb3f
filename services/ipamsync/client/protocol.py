"""
Transport protocol and types for the remote IPAM service.

Defines the IPAMTransport Protocol that the HTTP client (and any test
double) must satisfy, one operation per resource kind and verb.
"""

from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar, runtime_checkable

from ipamsync.models import (
    Allocation,
    Block,
    Environment,
    EnvironmentDetail,
    Pool,
    ReservedBlock,
)

T = TypeVar("T")


@dataclass(frozen=True)
class ListResult(Generic[T]):
    """One page of a list response."""

    items: list[T] = field(default_factory=list)
    # Total matches on the server; falls back to len(items) when not reported.
    total: int = 0


@runtime_checkable
class IPAMTransport(Protocol):
    """Protocol defining the remote IPAM interface.

    All methods are async and every write returns the full resulting
    entity. Optional filters left as None (or False / 0) are omitted from
    the request entirely. Failures raise ``ipamsync.errors.RemoteError``
    subclasses; nothing is retried.
    """

    # --- Environments ---

    async def list_environments(
        self, name: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[Environment]:
        """List environments, optionally filtered by name substring."""
        ...

    async def get_environment(self, environment_id: str) -> EnvironmentDetail:
        """Get one environment, including its blocks.

        Raises:
            NotFoundError: If the environment does not exist.
        """
        ...

    async def create_environment(self, environment: Environment) -> Environment:
        """Create an environment together with its initial pools."""
        ...

    async def update_environment(
        self, environment_id: str, environment: Environment
    ) -> Environment:
        """Rename an environment. The response does not carry pool_ids."""
        ...

    async def delete_environment(self, environment_id: str) -> None:
        ...

    # --- Pools ---

    async def list_pools(
        self, environment_id: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[Pool]:
        ...

    async def get_pool(self, pool_id: str) -> Pool:
        ...

    async def create_pool(self, pool: Pool) -> Pool:
        ...

    async def update_pool(self, pool_id: str, pool: Pool) -> Pool:
        """Update name and cidr of a pool."""
        ...

    async def delete_pool(self, pool_id: str) -> None:
        ...

    # --- Blocks ---

    async def list_blocks(
        self,
        name: str | None = None,
        environment_id: str | None = None,
        orphaned_only: bool = False,
        limit: int = 0,
        offset: int = 0,
    ) -> ListResult[Block]:
        ...

    async def get_block(self, block_id: str) -> Block:
        ...

    async def create_block(self, block: Block) -> Block:
        ...

    async def update_block(self, block_id: str, block: Block) -> Block:
        """Update name, environment_id and pool_id of a block."""
        ...

    async def delete_block(self, block_id: str) -> None:
        ...

    # --- Allocations ---

    async def list_allocations(
        self,
        name: str | None = None,
        block_name: str | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> ListResult[Allocation]:
        ...

    async def get_allocation(self, allocation_id: str) -> Allocation:
        ...

    async def create_allocation(self, allocation: Allocation) -> Allocation:
        """Create an allocation with an explicit CIDR."""
        ...

    async def auto_allocate(self, allocation: Allocation) -> Allocation:
        """Ask the service for the next free range of ``prefix_length`` in the block."""
        ...

    async def update_allocation(self, allocation_id: str, allocation: Allocation) -> Allocation:
        """Rename an allocation."""
        ...

    async def delete_allocation(self, allocation_id: str) -> None:
        ...

    # --- Reserved blocks ---

    async def list_reserved_blocks(
        self, name: str | None = None, limit: int = 0, offset: int = 0
    ) -> ListResult[ReservedBlock]:
        ...

    async def get_reserved_block(self, reserved_block_id: str) -> ReservedBlock:
        ...

    async def create_reserved_block(self, reserved: ReservedBlock) -> ReservedBlock:
        ...

    async def update_reserved_block(
        self, reserved_block_id: str, reserved: ReservedBlock
    ) -> ReservedBlock:
        """Rename a reserved block. Reason and CIDR cannot be updated remotely."""
        ...

    async def delete_reserved_block(self, reserved_block_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release any resources held by the client."""
        ...
