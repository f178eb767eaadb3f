"""Explicit vs auto allocation at create time.

Explicit mode submits the caller's CIDR verbatim and insists the service
echoes it back. Auto mode asks the service for the next free range of the
requested prefix length inside the block (the service does the packing)
and pins whatever CIDR comes back. Either way ``prefix_length`` is sent at
most once and never returned.
"""

from enum import StrEnum

from ipamsync.client.protocol import IPAMTransport
from ipamsync.errors import RemoteInconsistencyError
from ipamsync.logging_config import get_logger
from ipamsync.models import Allocation, Kind
from ipamsync.validation import same_network, validate_allocation

logger = get_logger(__name__)


class AllocationMode(StrEnum):
    EXPLICIT = "explicit"
    AUTO = "auto"


def select_mode(desired: Allocation) -> AllocationMode:
    """Pick the creation mode. Raises ValidationError unless exactly one of cidr/prefix_length is set."""
    validate_allocation(desired)
    return AllocationMode.AUTO if desired.prefix_length is not None else AllocationMode.EXPLICIT


class AllocationStrategy:
    """Creates allocations in the mode the desired state asks for."""

    def __init__(self, client: IPAMTransport) -> None:
        self._client = client

    async def allocate(self, desired: Allocation) -> Allocation:
        mode = select_mode(desired)
        if mode is AllocationMode.AUTO:
            out = await self._client.auto_allocate(desired)
            if not out.cidr:
                raise RemoteInconsistencyError(
                    "auto-allocation response carried no cidr",
                    entity=out,
                    operation="create",
                    kind=Kind.ALLOCATION,
                    identifier=out.id or desired.name,
                )
        else:
            out = await self._client.create_allocation(desired)
            if not same_network(out.cidr, desired.cidr):
                raise RemoteInconsistencyError(
                    f"requested cidr {desired.cidr} but service returned {out.cidr}",
                    entity=out,
                    operation="create",
                    kind=Kind.ALLOCATION,
                    identifier=out.id or desired.name,
                )

        logger.info(
            "Allocation created",
            allocation_id=out.id,
            block_name=out.block_name,
            cidr=out.cidr,
            mode=mode.value,
            prefix_length=desired.prefix_length,
        )
        return out
