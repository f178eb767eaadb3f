"""
Reconciliation state: one record per managed entity, persisted as JSON.

A record holds the caller's last applied configuration alongside the
last-known remote entity. The remote service stays the source of truth;
the state only tells the engine what it believes it manages.
"""

import copy
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ipamsync.engine.lifecycle import LIVE_STATES, Lifecycle, can_transition
from ipamsync.logging_config import get_logger
from ipamsync.models import Entity, Kind, entity_from_dict, to_dict

logger = get_logger(__name__)

STATE_VERSION = 1


def parse_address(address: str) -> tuple[Kind, str]:
    """Split ``kind.key`` into its parts.

    Raises ValueError on an unknown kind or a missing key.
    """
    kind, sep, key = address.partition(".")
    if not sep or not key:
        raise ValueError(f"Invalid address {address!r}: expected KIND.KEY")
    return Kind(kind), key


def make_address(kind: Kind, key: str) -> str:
    return f"{kind.value}.{key}"


@dataclass
class ResourceRecord:
    """What the engine knows about one managed entity."""

    address: str
    kind: Kind
    status: Lifecycle = Lifecycle.PLANNED
    # Caller-supplied configuration as last applied (references resolved).
    config: Entity | None = None
    # Last-known remote entity, including computed fields.
    actual: Entity | None = None

    @property
    def entity_id(self) -> str | None:
        return self.actual.id if self.actual is not None else None

    @property
    def live(self) -> bool:
        return self.status in LIVE_STATES and self.actual is not None

    def transition(self, target: Lifecycle) -> None:
        """Move to a new lifecycle state, rejecting invalid transitions."""
        if not can_transition(self.status, target):
            raise ValueError(f"Invalid transition: {self.status} → {target}")
        logger.debug(
            "Lifecycle transition",
            address=self.address,
            from_status=self.status.value,
            to_status=target.value,
        )
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "config": to_dict(self.config) if self.config is not None else None,
            "actual": to_dict(self.actual) if self.actual is not None else None,
        }

    @classmethod
    def from_dict(cls, address: str, data: dict[str, Any]) -> "ResourceRecord":
        kind = Kind(data["kind"])
        return cls(
            address=address,
            kind=kind,
            status=Lifecycle(data.get("status", Lifecycle.CREATED)),
            config=entity_from_dict(kind, data["config"]) if data.get("config") else None,
            actual=entity_from_dict(kind, data["actual"]) if data.get("actual") else None,
        )


@dataclass
class State:
    """All records, keyed by address."""

    records: dict[str, ResourceRecord] = field(default_factory=dict)

    def get(self, address: str) -> ResourceRecord | None:
        return self.records.get(address)

    def put(self, record: ResourceRecord) -> None:
        self.records[record.address] = record

    def remove(self, address: str) -> None:
        self.records.pop(address, None)

    def live_records(self) -> list[ResourceRecord]:
        return [r for r in self.records.values() if r.live]

    def snapshot(self) -> "State":
        """Deep copy, for comparing before/after."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "resources": {
                address: record.to_dict() for address, record in sorted(self.records.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "State":
        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")
        return cls(
            records={
                address: ResourceRecord.from_dict(address, rec)
                for address, rec in (data.get("resources") or {}).items()
            }
        )


def load_state(path: str | Path) -> State:
    """Load state from a JSON file. A missing file is an empty state."""
    state_path = Path(path)
    if not state_path.exists():
        return State()
    with open(state_path) as f:
        return State.from_dict(json.load(f))


def save_state(state: State, path: str | Path) -> None:
    """Write state atomically (temp file + rename) next to the target."""
    state_path = Path(path)
    state_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=state_path.parent, prefix=".ipamsync-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(state.to_dict(), f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, state_path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    logger.debug("State saved", path=str(state_path), resources=len(state.records))
