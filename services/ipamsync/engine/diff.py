"""Replace-vs-update partition of desired against last-known state."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ipamsync.models import Entity, field_specs
from ipamsync.validation import same_network


class Action(StrEnum):
    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


# Placeholder for a value that is only known once a dependency is applied.
UNKNOWN = "(known after apply)"


@dataclass(frozen=True)
class FieldChange:
    name: str
    before: Any
    after: Any
    replace: bool = False


@dataclass
class Diff:
    """Result of comparing one desired entity with its record."""

    action: Action
    changes: list[FieldChange] = field(default_factory=list)
    # Create-only fields that differ; never sent.
    ignored: list[FieldChange] = field(default_factory=list)
    # Immutable fields that differ; the change must be refused.
    rejected: list[FieldChange] = field(default_factory=list)

    @property
    def replace_fields(self) -> list[str]:
        return [c.name for c in self.changes if c.replace]


def diff_entity(
    desired: Entity,
    actual: Entity,
    config: Entity | None = None,
    unknown: frozenset[str] = frozenset(),
) -> Diff:
    """Partition changed fields into update-in-place and replace-triggering.

    ``actual`` is the last-known remote entity; ``config`` the caller's last
    applied configuration, consulted for config-only fields the remote
    service never returns (Allocation.prefix_length). Fields named in
    ``unknown`` count as changed.
    """
    changes: list[FieldChange] = []
    ignored: list[FieldChange] = []
    rejected: list[FieldChange] = []

    for name, spec in field_specs(type(desired)).items():
        if not spec.settable:
            continue
        after = getattr(desired, name)
        if name in unknown:
            changes.append(FieldChange(name, getattr(actual, name), UNKNOWN, spec.replace))
            continue
        # A computed value the caller left unset stays pinned.
        if spec.computed and after is None:
            continue

        source = config if spec.config_only else actual
        before = getattr(source, name) if source is not None else None
        if before == after:
            continue
        # The service may rewrite a CIDR to its canonical form.
        if name == "cidr" and same_network(before, after):
            continue

        change = FieldChange(name, before, after, spec.replace)
        if spec.create_only:
            ignored.append(change)
        elif spec.immutable:
            rejected.append(change)
        else:
            changes.append(change)

    if any(c.replace for c in changes):
        action = Action.REPLACE
    elif changes:
        action = Action.UPDATE
    else:
        action = Action.NOOP
    return Diff(action=action, changes=changes, ignored=ignored, rejected=rejected)
