"""
Desired-state document.

A YAML file with one section per kind, each mapping a local key to that
entity's attributes::

    environments:
      prod:
        name: prod
        pools:
          - {name: main, cidr: 10.0.0.0/8}
    blocks:
      web:
        name: web
        cidr: 10.1.0.0/24
        environment_id: ${environment.prod.id}
        pool_id: ${environment.prod.pool_ids[0]}
    allocations:
      web-a:
        name: web-a
        block_name: ${block.web.name}
        prefix_length: 26

Structure is checked here; semantic rules (exactly one of cidr and
prefix_length, non-empty pools, ...) are checked by ``ipamsync.validation``
when the entity is planned.
"""

import re
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ipamsync.engine.reconciler import DesiredResource
from ipamsync.engine.state import make_address
from ipamsync.errors import ValidationError
from ipamsync.models import (
    Allocation,
    Block,
    Entity,
    Environment,
    Kind,
    Pool,
    PoolSpec,
    ReservedBlock,
)

KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PoolSpecConfig(_Strict):
    name: str
    cidr: str


class EnvironmentConfig(_Strict):
    name: str
    pools: list[PoolSpecConfig] = Field(default_factory=list)

    def to_entity(self) -> Environment:
        return Environment(
            name=self.name,
            pools=[PoolSpec(name=p.name, cidr=p.cidr) for p in self.pools],
        )


class PoolConfig(_Strict):
    environment_id: str
    name: str
    cidr: str

    def to_entity(self) -> Pool:
        return Pool(environment_id=self.environment_id, name=self.name, cidr=self.cidr)


class ReservedBlockConfig(_Strict):
    cidr: str
    name: str | None = None
    reason: str | None = None

    def to_entity(self) -> ReservedBlock:
        return ReservedBlock(name=self.name, cidr=self.cidr, reason=self.reason)


class BlockConfig(_Strict):
    name: str
    cidr: str
    environment_id: str | None = None
    pool_id: str | None = None

    def to_entity(self) -> Block:
        return Block(
            name=self.name,
            cidr=self.cidr,
            environment_id=self.environment_id,
            pool_id=self.pool_id,
        )


class AllocationConfig(_Strict):
    name: str
    block_name: str
    cidr: str | None = None
    prefix_length: int | None = None

    def to_entity(self) -> Allocation:
        return Allocation(
            name=self.name,
            block_name=self.block_name,
            cidr=self.cidr,
            prefix_length=self.prefix_length,
        )


class DesiredDocument(_Strict):
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)
    pools: dict[str, PoolConfig] = Field(default_factory=dict)
    reserved_blocks: dict[str, ReservedBlockConfig] = Field(default_factory=dict)
    blocks: dict[str, BlockConfig] = Field(default_factory=dict)
    allocations: dict[str, AllocationConfig] = Field(default_factory=dict)

    @field_validator("environments", "pools", "reserved_blocks", "blocks", "allocations")
    @classmethod
    def check_keys(cls, v: dict[str, Any]) -> dict[str, Any]:
        for key in v:
            if not KEY_RE.match(key):
                raise ValueError(f"invalid key {key!r}: use letters, digits, '_' or '-'")
        return v

    def resources(self) -> list[DesiredResource]:
        """Flatten into addressed entities, in document order per kind."""
        sections: list[tuple[Kind, dict[str, Any]]] = [
            (Kind.ENVIRONMENT, self.environments),
            (Kind.POOL, self.pools),
            (Kind.RESERVED_BLOCK, self.reserved_blocks),
            (Kind.BLOCK, self.blocks),
            (Kind.ALLOCATION, self.allocations),
        ]
        out: list[DesiredResource] = []
        for kind, section in sections:
            for key, cfg in section.items():
                entity: Entity = cfg.to_entity()
                out.append(DesiredResource(address=make_address(kind, key), entity=entity))
        return out


def parse_document(data: Any) -> DesiredDocument:
    """Validate an already-loaded mapping."""
    if data is None:
        return DesiredDocument()
    try:
        return DesiredDocument.model_validate(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"invalid document: {problems}", operation="load") from None


def load_document(path: str | Path) -> DesiredDocument:
    """Load and validate a desired-state YAML file."""
    doc_path = Path(path)
    try:
        with open(doc_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ValidationError(f"document not found: {doc_path}", operation="load") from None
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid YAML in {doc_path}: {e}", operation="load") from None
    return parse_document(data)
