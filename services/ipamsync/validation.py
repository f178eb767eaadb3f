"""Local, synchronous checks on desired state.

These fail fast without consuming a round trip. Cross-entity rules
(CIDR containment, overlap) are left to the remote service.
"""

import ipaddress

from ipamsync.errors import ValidationError
from ipamsync.models import (
    Allocation,
    Block,
    Entity,
    Environment,
    Pool,
    ReservedBlock,
    field_specs,
)


def _blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def same_network(a: str | None, b: str | None) -> bool:
    """Compare CIDRs as networks so formatting differences are not mismatches."""
    if a is None or b is None:
        return a == b
    try:
        return ipaddress.ip_network(a.strip(), strict=False) == ipaddress.ip_network(
            b.strip(), strict=False
        )
    except ValueError:
        return a.strip() == b.strip()


def check_required(entity: Entity) -> None:
    """Every required, non-computed field must be present."""
    for name, spec in field_specs(type(entity)).items():
        if not spec.required or spec.computed:
            continue
        value = getattr(entity, name)
        if isinstance(value, str) and _blank(value):
            raise ValidationError(f"{name} is required", operation="validate", kind=entity.kind)


def validate_environment(env: Environment) -> None:
    check_required(env)
    if not env.pools:
        raise ValidationError(
            "at least one pool is required", operation="validate", kind=env.kind,
            identifier=env.name,
        )
    for pool in env.pools:
        if _blank(pool.name) or _blank(pool.cidr):
            raise ValidationError(
                "each pool must have name and CIDR", operation="validate", kind=env.kind,
                identifier=env.name,
            )


def validate_pool(pool: Pool) -> None:
    check_required(pool)
    _require_cidr(pool)


def validate_block(block: Block) -> None:
    check_required(block)
    _require_cidr(block)
    if block.pool_id and not block.environment_id:
        raise ValidationError(
            "pool_id requires environment_id", operation="validate", kind=block.kind,
            identifier=block.name,
        )


def validate_reserved_block(reserved: ReservedBlock) -> None:
    _require_cidr(reserved)


def validate_allocation(alloc: Allocation) -> None:
    """Exactly one of ``cidr`` and ``prefix_length`` must be supplied."""
    check_required(alloc)
    has_cidr = not _blank(alloc.cidr)
    has_prefix = alloc.prefix_length is not None
    if not has_cidr and not has_prefix:
        raise ValidationError(
            "either cidr or prefix_length must be specified",
            operation="validate", kind=alloc.kind, identifier=alloc.name,
        )
    if has_cidr and has_prefix:
        raise ValidationError(
            "specify either cidr or prefix_length, not both",
            operation="validate", kind=alloc.kind, identifier=alloc.name,
        )
    if has_prefix and not 0 <= alloc.prefix_length <= 128:
        raise ValidationError(
            "prefix_length must be between 0 and 128",
            operation="validate", kind=alloc.kind, identifier=alloc.name,
        )
    if has_cidr:
        _check_canonical(alloc)


def _require_cidr(entity: Pool | Block | ReservedBlock) -> None:
    if _blank(entity.cidr):
        raise ValidationError(
            "cidr must not be empty", operation="validate", kind=entity.kind,
            identifier=getattr(entity, "name", None) or "",
        )
    _check_canonical(entity)


def _check_canonical(entity: Pool | Block | ReservedBlock | Allocation) -> None:
    """The CIDR must be a network address; host bits set would be rewritten remotely."""
    identifier = getattr(entity, "name", None) or ""
    try:
        network = ipaddress.ip_network(entity.cidr.strip(), strict=False)
    except ValueError:
        raise ValidationError(
            f"invalid cidr {entity.cidr!r}", operation="validate", kind=entity.kind,
            identifier=identifier,
        ) from None
    if network.network_address != ipaddress.ip_interface(entity.cidr.strip()).ip:
        raise ValidationError(
            f"cidr {entity.cidr} has host bits set; use {network}",
            operation="validate", kind=entity.kind, identifier=identifier,
        )


VALIDATORS = {
    Environment: validate_environment,
    Pool: validate_pool,
    Block: validate_block,
    Allocation: validate_allocation,
    ReservedBlock: validate_reserved_block,
}


def validate_for_create(entity: Entity) -> None:
    """Run the create-time checks for any entity kind."""
    VALIDATORS[type(entity)](entity)
