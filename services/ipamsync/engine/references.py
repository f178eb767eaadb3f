"""Cross-entity references inside a desired-state document.

A string field whose whole value is ``${kind.key.attr}`` or
``${kind.key.attr[N]}`` is replaced by that attribute of the referenced
entity's last-known remote state, e.g. ``${environment.prod.pool_ids[0]}``.
"""

import dataclasses
import re

from ipamsync.engine.state import State, make_address
from ipamsync.errors import DependencyError
from ipamsync.models import Entity, Kind

REFERENCE_RE = re.compile(
    r"^\$\{(?P<kind>[a-z_]+)\.(?P<key>[A-Za-z0-9_-]+)\.(?P<attr>[a-z_]+)(?:\[(?P<index>\d+)\])?\}$"
)


@dataclasses.dataclass(frozen=True)
class Reference:
    address: str
    attr: str
    index: int | None = None


def parse_reference(value: object) -> Reference | None:
    if not isinstance(value, str):
        return None
    m = REFERENCE_RE.match(value.strip())
    if m is None:
        return None
    try:
        kind = Kind(m["kind"])
    except ValueError:
        raise DependencyError(f"unknown kind in reference {value!r}") from None
    index = int(m["index"]) if m["index"] is not None else None
    return Reference(address=make_address(kind, m["key"]), attr=m["attr"], index=index)


def references(entity: Entity) -> dict[str, Reference]:
    """Map field name to the reference it holds."""
    found: dict[str, Reference] = {}
    for f in dataclasses.fields(entity):
        ref = parse_reference(getattr(entity, f.name))
        if ref is not None:
            found[f.name] = ref
    return found


def lookup(ref: Reference, state: State) -> object:
    """Return the referenced value, or raise DependencyError if it is not known yet."""
    record = state.get(ref.address)
    if record is None or not record.live:
        raise DependencyError(f"{ref.address} has not been applied", identifier=ref.address)
    try:
        value = getattr(record.actual, ref.attr)
    except AttributeError:
        raise DependencyError(
            f"{ref.address} has no attribute {ref.attr!r}", identifier=ref.address
        ) from None
    if ref.index is not None:
        if not isinstance(value, list) or ref.index >= len(value):
            raise DependencyError(
                f"{ref.address}.{ref.attr}[{ref.index}] is out of range",
                identifier=ref.address,
            )
        value = value[ref.index]
    if value is None or value == "":
        raise DependencyError(f"{ref.address}.{ref.attr} is not known", identifier=ref.address)
    return value


def resolve(entity: Entity, state: State) -> Entity:
    """Return a copy of ``entity`` with every reference replaced by its value."""
    refs = references(entity)
    if not refs:
        return entity
    values = {name: lookup(ref, state) for name, ref in refs.items()}
    return dataclasses.replace(entity, **values)


def unresolved(
    entity: Entity, state: State, pending: frozenset[str] = frozenset()
) -> tuple[Entity, frozenset[str]]:
    """Resolve what can be resolved; report the fields whose values are unknown.

    Used by plan, where dependencies may not have been applied yet. A
    reference into an address listed in ``pending`` (about to be replaced
    or deleted) is unknown even though state still holds its old value.
    """
    values: dict[str, object] = {}
    unknown: set[str] = set()
    for name, ref in references(entity).items():
        if ref.address in pending:
            unknown.add(name)
            continue
        try:
            values[name] = lookup(ref, state)
        except DependencyError:
            unknown.add(name)
    return dataclasses.replace(entity, **values) if values else entity, frozenset(unknown)
