"""Per-entity lifecycle states and the transitions between them."""

from enum import StrEnum


class Lifecycle(StrEnum):
    PLANNED = "planned"
    CREATED = "created"
    DRIFTED = "drifted"
    RECONCILED = "reconciled"
    DESTROYED = "destroyed"


# Valid state transitions. Update and replace both land back in CREATED.
# Import is a side entry straight into CREATED and never goes through here.
VALID_TRANSITIONS: dict[Lifecycle, set[Lifecycle]] = {
    Lifecycle.PLANNED: {Lifecycle.CREATED},
    Lifecycle.CREATED: {Lifecycle.DRIFTED, Lifecycle.CREATED, Lifecycle.DESTROYED},
    Lifecycle.DRIFTED: {Lifecycle.RECONCILED, Lifecycle.DESTROYED},
    Lifecycle.RECONCILED: {Lifecycle.DRIFTED, Lifecycle.CREATED, Lifecycle.DESTROYED},
}

TERMINAL_STATES = {Lifecycle.DESTROYED}

# States in which a remote object is known to exist.
LIVE_STATES = {Lifecycle.CREATED, Lifecycle.DRIFTED, Lifecycle.RECONCILED}


def can_transition(current: Lifecycle, target: Lifecycle) -> bool:
    """Check if a lifecycle transition is valid."""
    if current in TERMINAL_STATES:
        return False
    return target in VALID_TRANSITIONS.get(current, set())
