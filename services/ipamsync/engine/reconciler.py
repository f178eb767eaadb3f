"""
Reconciliation of desired state against the remote IPAM service.

For every entity the reconciler decides no-op, update, replace (delete
then create) or delete, executes it through the kind's handler, and folds
the response back into state.

Ordering: removed entities are deleted first, children before parents;
then kinds are applied parents first (environments, pools, reserved
blocks, blocks, allocations). Entities of one kind fan out concurrently,
except allocations targeting the same block, which run one after another
so auto-allocation never races itself. A failure is recorded against its
own address and never aborts siblings.
"""

import asyncio
import dataclasses
from collections import defaultdict
from dataclasses import dataclass, field

from ipamsync import lookups
from ipamsync.client.protocol import IPAMTransport
from ipamsync.engine.diff import Action, FieldChange, diff_entity
from ipamsync.engine.lifecycle import Lifecycle
from ipamsync.engine.references import references, resolve, unresolved
from ipamsync.engine.resources import ResourceHandler, build_handlers
from ipamsync.engine.state import ResourceRecord, State, parse_address
from ipamsync.errors import (
    DependencyError,
    IPAMError,
    RemoteInconsistencyError,
    ValidationError,
)
from ipamsync.logging_config import get_logger
from ipamsync.models import KIND_ORDER, Entity, Kind
from ipamsync.validation import validate_for_create

logger = get_logger(__name__)


@dataclass
class DesiredResource:
    """One entity of the caller's desired state, addressed as ``kind.key``."""

    address: str
    entity: Entity

    @property
    def kind(self) -> Kind:
        return self.entity.kind


@dataclass
class PlannedChange:
    address: str
    kind: Kind
    action: Action
    changes: list[FieldChange] = field(default_factory=list)
    ignored: list[FieldChange] = field(default_factory=list)
    entity_id: str | None = None
    error: IPAMError | None = None


@dataclass
class ApplyResult:
    applied: list[PlannedChange] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: dict[str, IPAMError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def count(self, action: Action) -> int:
        return sum(1 for c in self.applied if c.action is action)


@dataclass
class RefreshResult:
    drifted: list[str] = field(default_factory=list)
    errors: dict[str, IPAMError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def _rejected_error(address: str, kind: Kind, rejected: list[FieldChange]) -> ValidationError:
    names = ", ".join(c.name for c in rejected)
    return ValidationError(
        f"{names} cannot be changed after creation; recreate the resource instead",
        operation="plan",
        kind=kind,
        identifier=address,
    )


class Reconciler:
    """Plans and applies desired state through per-kind handlers."""

    def __init__(
        self,
        client: IPAMTransport,
        page_size: int = lookups.DEFAULT_PAGE_SIZE,
        allocation_lookup_fallback: bool = True,
    ) -> None:
        self._handlers: dict[Kind, ResourceHandler] = build_handlers(
            client,
            page_size=page_size,
            allocation_lookup_fallback=allocation_lookup_fallback,
        )

    def handler(self, kind: Kind) -> ResourceHandler:
        return self._handlers[kind]

    # --- Plan ---

    def plan(self, desired: list[DesiredResource], state: State) -> list[PlannedChange]:
        """Compute what apply would do, without any remote call.

        References to entities that are not applied yet, or that this plan
        replaces, are unknown; an unknown value on a replace-triggering
        field plans a replace.
        """
        _check_addresses(desired)
        wanted = {d.address for d in desired}
        planned: list[PlannedChange] = []
        # Addresses whose current remote values will not survive this apply.
        pending: set[str] = set()

        for kind in reversed(KIND_ORDER):
            for record in state.live_records():
                if record.kind is kind and record.address not in wanted:
                    planned.append(
                        PlannedChange(
                            record.address, kind, Action.DELETE, entity_id=record.entity_id
                        )
                    )
                    pending.add(record.address)

        for kind in KIND_ORDER:
            for d in (d for d in desired if d.kind is kind):
                change = self._plan_one(d, state, pending)
                if change.action is Action.REPLACE or change.error is not None:
                    pending.add(d.address)
                planned.append(change)
        return planned

    def _plan_one(self, d: DesiredResource, state: State, pending: set[str]) -> PlannedChange:
        record = state.get(d.address)
        try:
            entity, unknown = unresolved(d.entity, state, frozenset(pending))
        except IPAMError as e:
            return PlannedChange(d.address, d.kind, Action.CREATE, error=e)

        if record is None or not record.live:
            try:
                validate_for_create(entity)
            except ValidationError as e:
                return PlannedChange(d.address, d.kind, Action.CREATE, error=e)
            return PlannedChange(d.address, d.kind, Action.CREATE)

        diff = diff_entity(entity, record.actual, record.config, unknown)
        change = PlannedChange(
            d.address,
            d.kind,
            diff.action,
            changes=diff.changes,
            ignored=diff.ignored,
            entity_id=record.entity_id,
        )
        if diff.rejected:
            change.error = _rejected_error(d.address, d.kind, diff.rejected)
        else:
            try:
                validate_for_create(entity)
            except ValidationError as e:
                change.error = e
        return change

    # --- Apply ---

    async def apply(self, desired: list[DesiredResource], state: State) -> ApplyResult:
        """Make remote state match ``desired``, updating ``state`` in place."""
        _check_addresses(desired)
        result = ApplyResult()
        wanted = {d.address for d in desired}

        for address, record in list(state.records.items()):
            if address not in wanted and not record.live:
                state.remove(address)

        removed = [r for r in state.live_records() if r.address not in wanted]
        for kind in reversed(KIND_ORDER):
            batch = [r for r in removed if r.kind is kind]
            await asyncio.gather(*(self._delete_record(r, state, result) for r in batch))

        for kind in KIND_ORDER:
            batch = [d for d in desired if d.kind is kind]
            if not batch:
                continue
            if kind is Kind.ALLOCATION:
                groups = _group_by_block(batch, state)
                await asyncio.gather(
                    *(self._apply_sequentially(group, state, result) for group in groups)
                )
            else:
                await asyncio.gather(*(self._apply_one(d, state, result) for d in batch))

        logger.info(
            "Apply finished",
            created=result.count(Action.CREATE),
            updated=result.count(Action.UPDATE),
            replaced=result.count(Action.REPLACE),
            deleted=result.count(Action.DELETE),
            unchanged=len(result.unchanged),
            failed=len(result.errors),
        )
        return result

    async def _apply_sequentially(
        self, group: list[DesiredResource], state: State, result: ApplyResult
    ) -> None:
        for d in group:
            await self._apply_one(d, state, result)

    async def _apply_one(self, d: DesiredResource, state: State, result: ApplyResult) -> None:
        handler = self._handlers[d.kind]
        record = state.get(d.address)
        try:
            for ref in references(d.entity).values():
                if ref.address in result.errors:
                    raise DependencyError(
                        f"{ref.address} failed to apply", identifier=ref.address
                    )
            entity = resolve(d.entity, state)

            if record is None or not record.live:
                await self._create(d.address, handler, entity, state)
                result.applied.append(
                    PlannedChange(
                        d.address, d.kind, Action.CREATE, entity_id=state.get(d.address).entity_id
                    )
                )
                return

            handler.validate(entity)
            diff = diff_entity(entity, record.actual, record.config)
            for change in diff.ignored:
                logger.warning(
                    "Field can only be set at creation; ignoring change",
                    address=d.address,
                    field=change.name,
                )
            if diff.rejected:
                raise _rejected_error(d.address, d.kind, diff.rejected)

            if diff.action is Action.NOOP:
                result.unchanged.append(d.address)
                return

            if diff.action is Action.UPDATE:
                out = await handler.update(record.actual, entity)
                record.actual = out
                record.config = dataclasses.replace(entity, id=out.id)
                record.transition(Lifecycle.CREATED)
                result.applied.append(
                    PlannedChange(
                        d.address, d.kind, Action.UPDATE, changes=diff.changes, entity_id=out.id
                    )
                )
                return

            # Replace: destroy the old object first, then create a new one.
            logger.info(
                "Replacing resource",
                address=d.address,
                id=record.entity_id,
                fields=diff.replace_fields,
            )
            await handler.delete(record.actual)
            record.transition(Lifecycle.DESTROYED)
            await self._create(d.address, handler, entity, state)
            result.applied.append(
                PlannedChange(
                    d.address,
                    d.kind,
                    Action.REPLACE,
                    changes=diff.changes,
                    entity_id=state.get(d.address).entity_id,
                )
            )
        except IPAMError as e:
            e.with_context(kind=d.kind, identifier=d.address)
            logger.error("Reconciliation failed", address=d.address, error=e.describe())
            result.errors[d.address] = e

    async def _create(
        self, address: str, handler: ResourceHandler, entity: Entity, state: State
    ) -> ResourceRecord:
        record = ResourceRecord(address=address, kind=handler.kind, config=entity)
        state.put(record)
        try:
            out = await handler.create(entity)
        except RemoteInconsistencyError as e:
            # The object exists remotely; keep track of it before surfacing.
            if e.entity is not None:
                record.actual = e.entity
                record.transition(Lifecycle.CREATED)
            raise
        record.actual = out
        record.config = dataclasses.replace(entity, id=out.id)
        record.transition(Lifecycle.CREATED)
        return record

    async def _delete_record(
        self, record: ResourceRecord, state: State, result: ApplyResult
    ) -> None:
        try:
            await self._handlers[record.kind].delete(record.actual)
        except IPAMError as e:
            e.with_context(kind=record.kind, identifier=record.address)
            logger.error("Delete failed", address=record.address, error=e.describe())
            result.errors[record.address] = e
            return
        record.transition(Lifecycle.DESTROYED)
        state.remove(record.address)
        result.applied.append(
            PlannedChange(record.address, record.kind, Action.DELETE, entity_id=record.entity_id)
        )

    # --- Refresh ---

    async def refresh(self, state: State) -> RefreshResult:
        """Re-read every managed entity and fold remote drift into state."""
        result = RefreshResult()
        await asyncio.gather(*(self._refresh_one(r, result) for r in state.live_records()))
        return result

    async def _refresh_one(self, record: ResourceRecord, result: RefreshResult) -> None:
        try:
            current = await self._handlers[record.kind].read(record.actual)
        except IPAMError as e:
            e.with_context(kind=record.kind, identifier=record.address)
            logger.error("Refresh failed", address=record.address, error=e.describe())
            result.errors[record.address] = e
            return

        if current == record.actual:
            return

        changed = [
            f.name
            for f in dataclasses.fields(current)
            if getattr(current, f.name) != getattr(record.actual, f.name)
        ]
        record.transition(Lifecycle.DRIFTED)
        logger.info("Drift detected", address=record.address, id=record.entity_id, fields=changed)
        record.actual = current
        record.transition(Lifecycle.RECONCILED)
        result.drifted.append(record.address)

    # --- Import ---

    async def import_resource(self, state: State, address: str, entity_id: str) -> ResourceRecord:
        """Adopt an existing remote entity by ID.

        The read result becomes both desired and actual state. Allocations
        can only be imported by ID, never by (block_name, name).
        """
        try:
            kind, _ = parse_address(address)
        except ValueError as e:
            raise ValidationError(str(e), operation="import") from None

        existing = state.get(address)
        if existing is not None and existing.live:
            raise ValidationError(
                f"{address} is already managed (id {existing.entity_id})",
                operation="import",
                kind=kind,
                identifier=address,
            )

        out = await self._handlers[kind].import_state(entity_id)
        record = ResourceRecord(
            address=address,
            kind=kind,
            status=Lifecycle.CREATED,
            config=dataclasses.replace(out),
            actual=out,
        )
        state.put(record)
        return record

    # --- Destroy ---

    async def destroy(self, state: State) -> ApplyResult:
        """Delete every managed entity, children first."""
        return await self.apply([], state)


def _check_addresses(desired: list[DesiredResource]) -> None:
    seen: set[str] = set()
    for d in desired:
        try:
            kind, _ = parse_address(d.address)
        except ValueError as e:
            raise ValidationError(str(e), operation="plan") from None
        if kind is not d.kind:
            raise ValidationError(
                f"address kind {kind.value} does not match entity kind {d.kind.value}",
                operation="plan",
                identifier=d.address,
            )
        if d.address in seen:
            raise ValidationError("duplicate address", operation="plan", identifier=d.address)
        seen.add(d.address)


def _group_by_block(batch: list[DesiredResource], state: State) -> list[list[DesiredResource]]:
    """Group allocations by target block name, preserving input order."""
    groups: dict[str, list[DesiredResource]] = defaultdict(list)
    for d in batch:
        try:
            block_name = resolve(d.entity, state).block_name
        except DependencyError:
            block_name = d.entity.block_name
        groups[block_name].append(d)
    return list(groups.values())
