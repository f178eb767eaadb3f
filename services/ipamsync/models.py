"""
Entity model for the five IPAM resource kinds.

Each kind is a plain dataclass. Per-field behaviour (required, computed,
replace-triggering, ...) is carried as dataclass field metadata and read
back through ``field_specs()``; the engine never inspects attributes any
other way.

All identifiers are opaque strings assigned by the remote service.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class Kind(StrEnum):
    """Resource kinds, in dependency order."""

    ENVIRONMENT = "environment"
    POOL = "pool"
    RESERVED_BLOCK = "reserved_block"
    BLOCK = "block"
    ALLOCATION = "allocation"


# Apply order for creates/updates; deletes run in reverse.
KIND_ORDER: tuple[Kind, ...] = (
    Kind.ENVIRONMENT,
    Kind.POOL,
    Kind.RESERVED_BLOCK,
    Kind.BLOCK,
    Kind.ALLOCATION,
)


@dataclass(frozen=True)
class FieldSpec:
    """How the engine treats one entity field."""

    name: str
    required: bool = False
    # Caller may supply it; for computed fields this means "optional + computed".
    optional: bool = False
    computed: bool = False
    # A change forces destroy-then-recreate.
    replace: bool = False
    # Sent on create only, never returned by the remote service.
    config_only: bool = False
    # Only honoured at create time; later edits are ignored with a warning.
    create_only: bool = False
    # Later edits are rejected outright.
    immutable: bool = False

    @property
    def settable(self) -> bool:
        """True if the caller may supply a value for this field."""
        return self.required or self.optional


def attr(
    *,
    required: bool = False,
    optional: bool | None = None,
    computed: bool = False,
    replace: bool = False,
    config_only: bool = False,
    create_only: bool = False,
    immutable: bool = False,
    default: Any = None,
    default_factory: Any = dataclasses.MISSING,
) -> Any:
    """Declare an entity field with its engine markers.

    ``optional`` defaults to "neither required nor computed".
    """
    if optional is None:
        optional = not required and not computed
    metadata = {
        "required": required,
        "optional": optional,
        "computed": computed,
        "replace": replace,
        "config_only": config_only,
        "create_only": create_only,
        "immutable": immutable,
    }
    if default_factory is not dataclasses.MISSING:
        return field(default_factory=default_factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def field_specs(entity_cls: type) -> dict[str, FieldSpec]:
    """Return the FieldSpec of every declared field of an entity class."""
    return {
        f.name: FieldSpec(name=f.name, **f.metadata)
        for f in dataclasses.fields(entity_cls)
        if f.metadata
    }


def replace_fields(entity_cls: type) -> set[str]:
    return {name for name, spec in field_specs(entity_cls).items() if spec.replace}


def computed_fields(entity_cls: type) -> set[str]:
    """Fields the remote service assigns and the caller never supplies."""
    return {
        name
        for name, spec in field_specs(entity_cls).items()
        if spec.computed and not spec.settable
    }


# --- Entities ---


@dataclass
class PoolSpec:
    """One pool supplied when creating an environment."""

    name: str
    cidr: str


@dataclass
class Environment:
    """Top-level grouping. Must be created with at least one pool."""

    kind: ClassVar[Kind] = Kind.ENVIRONMENT

    id: str | None = attr(computed=True)
    name: str = attr(required=True, default="")
    pools: list[PoolSpec] = attr(required=True, create_only=True, default_factory=list)
    # Same order as ``pools`` at creation time.
    pool_ids: list[str] = attr(computed=True, default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Environment":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            pool_ids=list(data.get("pool_ids") or []),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Environment":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            pools=[PoolSpec(**p) for p in data.get("pools") or []],
            pool_ids=list(data.get("pool_ids") or []),
        )


@dataclass
class Pool:
    """CIDR range within an environment that blocks may draw from."""

    kind: ClassVar[Kind] = Kind.POOL

    id: str | None = attr(computed=True)
    environment_id: str = attr(required=True, replace=True, default="")
    name: str = attr(required=True, default="")
    cidr: str = attr(required=True, default="")

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Pool":
        return cls(
            id=data["id"],
            environment_id=data.get("environment_id", ""),
            name=data.get("name", ""),
            cidr=data.get("cidr", ""),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pool":
        return cls(**data)


@dataclass
class Block:
    """A CIDR range, optionally attached to an environment and pool.

    IP counts are decimal strings: an IPv6 /64 alone holds 2^64 addresses.
    """

    kind: ClassVar[Kind] = Kind.BLOCK

    id: str | None = attr(computed=True)
    name: str = attr(required=True, default="")
    cidr: str = attr(required=True, replace=True, default="")
    environment_id: str | None = attr()
    pool_id: str | None = attr()
    total_ips: str | None = attr(computed=True)
    used_ips: str | None = attr(computed=True)
    available_ips: str | None = attr(computed=True)

    @property
    def orphaned(self) -> bool:
        return not self.environment_id

    def ip_counts(self) -> tuple[int, int, int]:
        """Return (total, used, available) as arbitrary-precision integers."""
        return (
            int(self.total_ips or "0"),
            int(self.used_ips or "0"),
            int(self.available_ips or "0"),
        )

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Block":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            cidr=data.get("cidr", ""),
            environment_id=data.get("environment_id") or None,
            pool_id=data.get("pool_id") or None,
            total_ips=_count(data.get("total_ips")),
            used_ips=_count(data.get("used_ips")),
            available_ips=_count(data.get("available_ips")),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        return cls(**data)


@dataclass
class Allocation:
    """A sub-range of a block, related to it by block *name*.

    ``cidr`` is either supplied or computed from ``prefix_length`` by the
    remote service; ``prefix_length`` is never returned and only ever acts
    as a replace trigger once the allocation exists.
    """

    kind: ClassVar[Kind] = Kind.ALLOCATION

    id: str | None = attr(computed=True)
    name: str = attr(required=True, default="")
    block_name: str = attr(required=True, replace=True, default="")
    cidr: str | None = attr(optional=True, computed=True, replace=True)
    prefix_length: int | None = attr(config_only=True, replace=True)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Allocation":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            block_name=data.get("block_name", ""),
            cidr=data.get("cidr") or None,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Allocation":
        return cls(**data)


@dataclass
class ReservedBlock:
    """A globally excluded CIDR range, independent of the hierarchy."""

    kind: ClassVar[Kind] = Kind.RESERVED_BLOCK

    id: str | None = attr(computed=True)
    name: str | None = attr()
    cidr: str = attr(required=True, replace=True, default="")
    reason: str | None = attr(immutable=True)
    created_at: str | None = attr(computed=True)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ReservedBlock":
        return cls(
            id=data["id"],
            name=data.get("name") or None,
            cidr=data.get("cidr", ""),
            reason=data.get("reason") or None,
            created_at=data.get("created_at") or None,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReservedBlock":
        return cls(**data)


@dataclass
class EnvironmentDetail:
    """Environment as returned by get-by-ID, including its blocks."""

    environment: Environment
    blocks: list[Block] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "EnvironmentDetail":
        return cls(
            environment=Environment.from_api(data),
            blocks=[Block.from_api(b) for b in data.get("blocks") or []],
        )


Entity = Environment | Pool | Block | Allocation | ReservedBlock

ENTITY_TYPES: dict[Kind, type] = {
    Kind.ENVIRONMENT: Environment,
    Kind.POOL: Pool,
    Kind.RESERVED_BLOCK: ReservedBlock,
    Kind.BLOCK: Block,
    Kind.ALLOCATION: Allocation,
}


def entity_from_dict(kind: Kind, data: dict[str, Any]) -> Entity:
    """Rebuild an entity from its serialized (``to_dict``) form."""
    return ENTITY_TYPES[kind].from_dict(data)


def to_dict(entity: Entity) -> dict[str, Any]:
    return dataclasses.asdict(entity)


def _count(value: Any) -> str | None:
    # Some deployments send small counts as JSON numbers.
    if value is None or value == "":
        return None
    return str(value)
