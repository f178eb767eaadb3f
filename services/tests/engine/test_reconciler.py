"""Tests for batch plan/apply/refresh/import/destroy against the in-memory IPAM service."""

from __future__ import annotations

import asyncio
import ipaddress
import json
from collections import defaultdict

import httpx
import pytest
from fake_ipam import FakeIPAM

from ipamsync.client.http import HTTPIPAMClient
from ipamsync.engine.diff import UNKNOWN, Action
from ipamsync.engine.lifecycle import Lifecycle
from ipamsync.engine.reconciler import DesiredResource, Reconciler
from ipamsync.engine.state import State
from ipamsync.errors import (
    DependencyError,
    RemoteInconsistencyError,
    RemoteRejectionError,
    ValidationError,
)
from ipamsync.models import Allocation, Block, Environment, Pool, PoolSpec, ReservedBlock


def acc_desired(alloc_name: str = "acc-alloc") -> list[DesiredResource]:
    return [
        DesiredResource(
            "environment.acc",
            Environment(name="acc-env", pools=[PoolSpec(name="acc-pool", cidr="10.0.0.0/8")]),
        ),
        DesiredResource(
            "block.acc",
            Block(
                name="acc-block",
                cidr="10.1.100.0/24",
                environment_id="${environment.acc.id}",
                pool_id="${environment.acc.pool_ids[0]}",
            ),
        ),
        DesiredResource(
            "allocation.acc",
            Allocation(name=alloc_name, block_name="${block.acc.name}", cidr="10.1.100.0/26"),
        ),
    ]


def orphan_block(name: str = "lab", cidr: str = "192.168.0.0/24") -> DesiredResource:
    return DesiredResource("block.lab", Block(name=name, cidr=cidr))


def two_envs_and_pool(env_key: str = "e", pool_name: str = "p") -> list[DesiredResource]:
    """Environments e and f plus a standalone pool in one of them."""
    return [
        DesiredResource(
            "environment.e",
            Environment(name="e", pools=[PoolSpec(name="e-main", cidr="20.0.0.0/8")]),
        ),
        DesiredResource(
            "environment.f",
            Environment(name="f", pools=[PoolSpec(name="f-main", cidr="30.0.0.0/8")]),
        ),
        DesiredResource(
            "pool.p",
            Pool(environment_id=f"${{environment.{env_key}.id}}", name=pool_name,
                 cidr="40.0.0.0/8"),
        ),
    ]


def block_in_pool() -> DesiredResource:
    return DesiredResource(
        "block.b",
        Block(
            name="b",
            cidr="40.1.0.0/24",
            environment_id="${pool.p.environment_id}",
            pool_id="${pool.p.id}",
        ),
    )


def canonicalizing(fake: FakeIPAM) -> httpx.MockTransport:
    """Serve ``fake`` but report every CIDR in its canonical text form."""

    def canonical(data):
        if isinstance(data, dict):
            return {
                k: str(ipaddress.ip_network(v)) if k == "cidr" and v else canonical(v)
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [canonical(v) for v in data]
        return data

    def handler(request: httpx.Request) -> httpx.Response:
        resp = fake.handle(request)
        if resp.status_code != 200:
            return resp
        return httpx.Response(200, json=canonical(resp.json()))

    return httpx.MockTransport(handler)


class TestEndToEnd:
    async def test_acceptance_scenario(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        result = await reconciler.apply(acc_desired(), state)
        assert result.ok, result.errors
        assert result.count(Action.CREATE) == 3

        env = state.get("environment.acc").actual
        assert env.id
        assert len(env.pool_ids) == 1

        block = state.get("block.acc").actual
        assert block.environment_id == env.id
        assert block.pool_id == env.pool_ids[0]
        assert (block.total_ips, block.used_ips, block.available_ips) == ("256", "0", "256")

        alloc = state.get("allocation.acc").actual
        assert alloc.cidr == "10.1.100.0/26"
        assert alloc.block_name == "acc-block"

        fake_ipam.reset_calls()
        result = await reconciler.apply(acc_desired("acc-alloc-renamed"), state)
        assert result.ok
        renamed = state.get("allocation.acc").actual
        assert renamed.id == alloc.id
        assert renamed.cidr == alloc.cidr
        assert renamed.name == "acc-alloc-renamed"
        assert fake_ipam.writes() == [("PUT", f"/allocations/{alloc.id}")]
        assert sorted(result.unchanged) == ["block.acc", "environment.acc"]

    async def test_records_are_created(self, reconciler: Reconciler) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        assert {r.status for r in state.records.values()} == {Lifecycle.CREATED}
        assert state.get("allocation.acc").config.block_name == "acc-block"

    async def test_second_apply_is_noop(self, reconciler: Reconciler, fake_ipam: FakeIPAM) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        fake_ipam.reset_calls()
        result = await reconciler.apply(acc_desired(), state)
        assert result.applied == []
        assert fake_ipam.writes() == []


class TestReplaceVsUpdate:
    async def test_name_change_is_single_update(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply([orphan_block()], state)
        before = state.get("block.lab").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply([orphan_block(name="lab2")], state)
        assert result.count(Action.UPDATE) == 1
        assert fake_ipam.count("PUT", "/blocks/") == 1
        assert fake_ipam.count("DELETE", "/blocks/") == 0
        assert fake_ipam.count("POST", "/blocks") == 0
        assert state.get("block.lab").entity_id == before

    async def test_cidr_change_is_delete_then_create(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply([orphan_block()], state)
        before = state.get("block.lab").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply([orphan_block(cidr="192.168.1.0/24")], state)
        assert result.count(Action.REPLACE) == 1
        assert fake_ipam.writes() == [("DELETE", f"/blocks/{before}"), ("POST", "/blocks")]
        record = state.get("block.lab")
        assert record.entity_id != before
        assert record.actual.cidr == "192.168.1.0/24"
        assert record.status is Lifecycle.CREATED

    async def test_prefix_length_change_forces_replace(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        block = DesiredResource("block.b", Block(name="blk", cidr="10.3.0.0/16"))
        state = State()
        await reconciler.apply(
            [block, DesiredResource("allocation.a", Allocation(name="a", block_name="blk",
                                                               prefix_length=24))],
            state,
        )
        first = state.get("allocation.a").actual
        fake_ipam.reset_calls()

        await reconciler.apply(
            [block, DesiredResource("allocation.a", Allocation(name="a", block_name="blk",
                                                               prefix_length=25))],
            state,
        )
        assert fake_ipam.writes() == [
            ("DELETE", f"/allocations/{first.id}"),
            ("POST", "/allocations/auto"),
        ]
        assert state.get("allocation.a").actual.cidr == "10.3.0.0/25"

    async def test_environment_rename_preserves_pool_ids(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired()[:1], state)
        pool_ids = list(state.get("environment.acc").actual.pool_ids)

        renamed = DesiredResource(
            "environment.acc",
            Environment(name="acc-env-2", pools=[PoolSpec(name="acc-pool", cidr="10.0.0.0/8")]),
        )
        result = await reconciler.apply([renamed], state)
        assert result.count(Action.UPDATE) == 1
        env = state.get("environment.acc").actual
        assert env.name == "acc-env-2"
        assert env.pool_ids == pool_ids

    async def test_environment_pool_edits_are_ignored(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired()[:1], state)
        fake_ipam.reset_calls()

        edited = DesiredResource(
            "environment.acc",
            Environment(
                name="acc-env",
                pools=[PoolSpec("acc-pool", "10.0.0.0/8"), PoolSpec("more", "11.0.0.0/8")],
            ),
        )
        result = await reconciler.apply([edited], state)
        assert result.ok
        assert result.unchanged == ["environment.acc"]
        assert fake_ipam.writes() == []


class TestAllocationModes:
    async def test_mutually_exclusive_fields_make_no_calls(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        desired = [
            DesiredResource(
                "allocation.both",
                Allocation(name="a", block_name="blk", cidr="10.0.0.0/26", prefix_length=26),
            ),
            DesiredResource("allocation.neither", Allocation(name="b", block_name="blk")),
        ]
        result = await reconciler.apply(desired, State())
        assert isinstance(result.errors["allocation.both"], ValidationError)
        assert isinstance(result.errors["allocation.neither"], ValidationError)
        assert fake_ipam.calls == []

    async def test_auto_allocation_is_pinned(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        desired = [
            DesiredResource("block.b", Block(name="blk", cidr="10.3.0.0/16")),
            DesiredResource("allocation.a", Allocation(name="a", block_name="blk",
                                                       prefix_length=24)),
        ]
        state = State()
        await reconciler.apply(desired, state)
        record = state.get("allocation.a")
        assert record.actual.cidr == "10.3.0.0/24"
        assert record.actual.prefix_length is None
        assert record.config.prefix_length == 24

        fake_ipam.reset_calls()
        plan = reconciler.plan(desired, state)
        assert [c.action for c in plan] == [Action.NOOP, Action.NOOP]
        await reconciler.refresh(state)
        await reconciler.apply(desired, state)
        assert fake_ipam.writes() == []
        assert state.get("allocation.a").actual.cidr == "10.3.0.0/24"

    async def test_explicit_cidr_mismatch_is_surfaced_and_recorded(
        self, fake_ipam: FakeIPAM
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            resp = fake_ipam.handle(request)
            if request.method == "POST" and request.url.path == "/api/allocations":
                data = resp.json()
                data["cidr"] = "10.1.100.64/26"
                return httpx.Response(200, json=data)
            return resp

        client = HTTPIPAMClient("http://ipam.test", "t", transport=httpx.MockTransport(handler))
        state = State()
        result = await Reconciler(client).apply(acc_desired(), state)
        await client.close()

        err = result.errors["allocation.acc"]
        assert isinstance(err, RemoteInconsistencyError)
        record = state.get("allocation.acc")
        assert record.status is Lifecycle.CREATED
        assert record.actual.cidr == "10.1.100.64/26"

    async def test_same_block_allocations_run_sequentially(self, fake_ipam: FakeIPAM) -> None:
        in_flight: dict[str, int] = defaultdict(int)
        peak: dict[str, int] = defaultdict(int)
        overall = {"now": 0, "peak": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            block = None
            if request.url.path == "/api/allocations/auto":
                block = json.loads(request.content)["block_name"]
                in_flight[block] += 1
                peak[block] = max(peak[block], in_flight[block])
                overall["now"] += 1
                overall["peak"] = max(overall["peak"], overall["now"])
            await asyncio.sleep(0.01)
            resp = fake_ipam.handle(request)
            if block is not None:
                in_flight[block] -= 1
                overall["now"] -= 1
            return resp

        client = HTTPIPAMClient("http://ipam.test", "t", transport=httpx.MockTransport(handler))
        desired = [
            DesiredResource("block.x", Block(name="x", cidr="10.3.0.0/16")),
            DesiredResource("block.y", Block(name="y", cidr="10.4.0.0/16")),
        ]
        for i in range(3):
            desired.append(
                DesiredResource(f"allocation.x{i}", Allocation(name=f"x{i}", block_name="x",
                                                               prefix_length=24))
            )
            desired.append(
                DesiredResource(f"allocation.y{i}", Allocation(name=f"y{i}", block_name="y",
                                                               prefix_length=24))
            )
        state = State()
        result = await Reconciler(client).apply(desired, state)
        await client.close()

        assert result.ok, result.errors
        assert peak == {"x": 1, "y": 1}
        assert overall["peak"] == 2
        cidrs = [state.get(f"allocation.x{i}").actual.cidr for i in range(3)]
        assert cidrs == ["10.3.0.0/24", "10.3.1.0/24", "10.3.2.0/24"]


class TestFailureIsolation:
    async def test_sibling_failures_do_not_spread(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        desired = acc_desired()[:1] + [
            DesiredResource(
                "block.good",
                Block(name="good", cidr="10.2.0.0/24", environment_id="${environment.acc.id}",
                      pool_id="${environment.acc.pool_ids[0]}"),
            ),
            DesiredResource(
                "block.bad",
                Block(name="bad", cidr="192.168.0.0/24", environment_id="${environment.acc.id}",
                      pool_id="${environment.acc.pool_ids[0]}"),
            ),
            DesiredResource(
                "allocation.on_bad",
                Allocation(name="x", block_name="${block.bad.name}", prefix_length=26),
            ),
        ]
        state = State()
        result = await reconciler.apply(desired, state)

        assert set(result.errors) == {"block.bad", "allocation.on_bad"}
        bad = result.errors["block.bad"]
        assert isinstance(bad, RemoteRejectionError)
        assert "not within pool CIDR" in bad.describe()
        assert bad.identifier == "bad"
        assert isinstance(result.errors["allocation.on_bad"], DependencyError)
        assert state.get("block.good").live
        assert not state.get("block.bad").live

        # The failed block is planned again on the next run.
        plan = {c.address: c.action for c in reconciler.plan(desired, state)}
        assert plan["block.bad"] is Action.CREATE
        assert plan["block.good"] is Action.NOOP

    async def test_reason_change_is_rejected(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        original = DesiredResource(
            "reserved_block.office", ReservedBlock(name="office", cidr="172.16.0.0/12",
                                                   reason="LAN")
        )
        await reconciler.apply([original], state)
        fake_ipam.reset_calls()

        changed = DesiredResource(
            "reserved_block.office", ReservedBlock(name="office", cidr="172.16.0.0/12",
                                                   reason="WAN")
        )
        plan = reconciler.plan([changed], state)
        assert isinstance(plan[0].error, ValidationError)

        result = await reconciler.apply([changed], state)
        assert isinstance(result.errors["reserved_block.office"], ValidationError)
        assert fake_ipam.writes() == []

    async def test_duplicate_address_rejected(self, reconciler: Reconciler) -> None:
        with pytest.raises(ValidationError, match="duplicate address"):
            reconciler.plan([orphan_block(), orphan_block()], State())

    async def test_address_kind_must_match(self, reconciler: Reconciler) -> None:
        wrong = DesiredResource("pool.lab", Block(name="lab", cidr="10.0.0.0/24"))
        with pytest.raises(ValidationError, match="does not match"):
            await reconciler.apply([wrong], State())


class TestPlan:
    async def test_plan_makes_no_calls(self, reconciler: Reconciler, fake_ipam: FakeIPAM) -> None:
        plan = reconciler.plan(acc_desired(), State())
        assert [c.action for c in plan] == [Action.CREATE] * 3
        assert all(c.error is None for c in plan)
        assert fake_ipam.calls == []

    async def test_plan_reports_validation_errors(self, reconciler: Reconciler) -> None:
        plan = reconciler.plan(
            [DesiredResource("environment.e", Environment(name="no-pools"))], State()
        )
        assert isinstance(plan[0].error, ValidationError)

    async def test_unknown_block_name_plans_replace(self, reconciler: Reconciler) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        desired = acc_desired()
        desired[2] = DesiredResource(
            "allocation.acc",
            Allocation(name="acc-alloc", block_name="${block.other.name}", cidr="10.1.100.0/26"),
        )
        plan = {c.address: c for c in reconciler.plan(desired, state)}
        assert plan["allocation.acc"].action is Action.REPLACE
        assert plan["allocation.acc"].changes[0].name == "block_name"

    async def test_removed_entities_plan_delete_children_first(
        self, reconciler: Reconciler
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        plan = reconciler.plan([], state)
        assert [(c.action, c.address) for c in plan] == [
            (Action.DELETE, "allocation.acc"),
            (Action.DELETE, "block.acc"),
            (Action.DELETE, "environment.acc"),
        ]


class TestDelete:
    async def test_removed_entity_is_deleted(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        alloc_id = state.get("allocation.acc").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(acc_desired()[:2], state)
        assert result.count(Action.DELETE) == 1
        assert fake_ipam.writes() == [("DELETE", f"/allocations/{alloc_id}")]
        assert state.get("allocation.acc") is None
        assert fake_ipam.allocations == {}

    async def test_destroy_deletes_children_first(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        fake_ipam.reset_calls()

        result = await reconciler.destroy(state)
        assert result.ok
        assert [m for m, _ in fake_ipam.writes()] == ["DELETE"] * 3
        assert [p.split("/")[1] for _, p in fake_ipam.writes()] == [
            "allocations",
            "blocks",
            "environments",
        ]
        assert state.records == {}
        assert fake_ipam.environments == {}
        assert fake_ipam.blocks == {}

    async def test_delete_of_absent_entity_is_reported(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply([orphan_block()], state)
        fake_ipam.blocks.clear()

        result = await reconciler.destroy(state)
        assert "block.lab" in result.errors
        assert state.get("block.lab").live


class TestRefresh:
    async def test_drift_is_folded_into_state(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        env_id = state.get("environment.acc").entity_id
        fake_ipam.environments[env_id]["name"] = "renamed-elsewhere"

        result = await reconciler.refresh(state)
        # The block's used_ips moved when the allocation was created.
        assert sorted(result.drifted) == ["block.acc", "environment.acc"]
        assert state.get("environment.acc").status is Lifecycle.RECONCILED
        assert state.get("environment.acc").actual.name == "renamed-elsewhere"
        assert state.get("block.acc").actual.used_ips == "64"
        assert state.get("allocation.acc").status is Lifecycle.CREATED

        plan = {c.address: c for c in reconciler.plan(acc_desired(), state)}
        assert plan["environment.acc"].action is Action.UPDATE
        assert plan["block.acc"].action is Action.NOOP

        await reconciler.apply(acc_desired(), state)
        env = state.get("environment.acc")
        assert env.actual.name == "acc-env"
        assert env.status is Lifecycle.CREATED
        assert len(env.actual.pool_ids) == 1

    async def test_refresh_without_changes_is_quiet(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply([orphan_block()], state)
        before = state.snapshot()

        result = await reconciler.refresh(state)
        assert result.drifted == []
        assert state == before

    async def test_refresh_failure_is_per_entity(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired()[:1] + [orphan_block()], state)
        fake_ipam.blocks.clear()

        result = await reconciler.refresh(state)
        assert set(result.errors) == {"block.lab"}
        assert result.errors["block.lab"].operation == "read"

    async def test_allocation_refresh_survives_unreliable_get(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(acc_desired(), state)
        fake_ipam.allocation_get_not_found = True
        result = await reconciler.refresh(state)
        assert "allocation.acc" not in result.errors


class TestImport:
    async def test_import_then_refresh_is_idempotent(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        fake_ipam.create_block({"name": "imported", "cidr": "172.16.0.0/24"}, block_id="b-1")
        state = State()
        record = await reconciler.import_resource(state, "block.imported", "b-1")
        assert record.status is Lifecycle.CREATED
        assert record.config == record.actual
        snapshot = state.snapshot()

        result = await reconciler.refresh(state)
        assert result.drifted == []
        assert state == snapshot

        plan = reconciler.plan(
            [DesiredResource("block.imported", Block(name="imported", cidr="172.16.0.0/24"))],
            state,
        )
        assert plan[0].action is Action.NOOP

    async def test_import_already_managed(self, reconciler: Reconciler) -> None:
        state = State()
        await reconciler.apply([orphan_block()], state)
        with pytest.raises(ValidationError, match="already managed"):
            await reconciler.import_resource(state, "block.lab", "blk-1")

    async def test_import_bad_address(self, reconciler: Reconciler) -> None:
        with pytest.raises(ValidationError, match="KIND.KEY"):
            await reconciler.import_resource(State(), "nonsense", "x")

    async def test_import_allocation_by_id(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        fake_ipam.create_block({"name": "blk", "cidr": "10.3.0.0/16"})
        fake_ipam.auto_allocate({"name": "a", "block_name": "blk", "prefix_length": 24})
        state = State()
        record = await reconciler.import_resource(state, "allocation.a", "alloc-1")
        assert record.actual.cidr == "10.3.0.0/24"
        assert record.actual.block_name == "blk"

    async def test_import_sends_id_verbatim(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        fake_ipam.create_block({"name": "blk", "cidr": "10.3.0.0/16"})
        fake_ipam.allocations["Alloc-7"] = {
            "id": "Alloc-7", "name": "x", "block_name": "blk", "cidr": "10.3.0.0/24",
        }
        state = State()
        record = await reconciler.import_resource(state, "allocation.x", "Alloc-7")
        assert record.entity_id == "Alloc-7"
        assert ("GET", "/allocations/Alloc-7") in fake_ipam.calls

        result = await reconciler.refresh(state)
        assert result.ok
        assert fake_ipam.count("GET", "/allocations/Alloc-7") == 2


class TestPartitionPerKind:
    async def test_pool_environment_change_is_delete_then_create(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(two_envs_and_pool(), state)
        before = state.get("pool.p").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(two_envs_and_pool(env_key="f"), state)
        assert result.ok, result.errors
        assert result.count(Action.REPLACE) == 1
        assert fake_ipam.writes() == [("DELETE", f"/pools/{before}"), ("POST", "/pools")]
        record = state.get("pool.p")
        assert record.entity_id != before
        assert record.actual.environment_id == state.get("environment.f").entity_id

    async def test_pool_rename_is_single_update(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(two_envs_and_pool(), state)
        before = state.get("pool.p").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(two_envs_and_pool(pool_name="p2"), state)
        assert result.count(Action.UPDATE) == 1
        assert fake_ipam.writes() == [("PUT", f"/pools/{before}")]
        assert state.get("pool.p").entity_id == before
        assert state.get("pool.p").actual.name == "p2"

    async def test_reserved_block_cidr_change_is_replace(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(
            [DesiredResource("reserved_block.r", ReservedBlock(name="r", cidr="172.16.0.0/12"))],
            state,
        )
        before = state.get("reserved_block.r").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(
            [DesiredResource("reserved_block.r", ReservedBlock(name="r", cidr="172.20.0.0/14"))],
            state,
        )
        assert result.count(Action.REPLACE) == 1
        assert fake_ipam.writes() == [
            ("DELETE", f"/reserved-blocks/{before}"),
            ("POST", "/reserved-blocks"),
        ]
        assert state.get("reserved_block.r").entity_id != before
        assert state.get("reserved_block.r").actual.cidr == "172.20.0.0/14"

    async def test_reserved_block_rename_is_single_update(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(
            [DesiredResource("reserved_block.r", ReservedBlock(name="r", cidr="172.16.0.0/12"))],
            state,
        )
        before = state.get("reserved_block.r").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(
            [DesiredResource("reserved_block.r", ReservedBlock(name="r2", cidr="172.16.0.0/12"))],
            state,
        )
        assert result.count(Action.UPDATE) == 1
        assert fake_ipam.writes() == [("PUT", f"/reserved-blocks/{before}")]
        assert state.get("reserved_block.r").entity_id == before
        assert state.get("reserved_block.r").actual.name == "r2"


class TestDependencies:
    async def test_plan_treats_references_into_replaced_entity_as_unknown(
        self, reconciler: Reconciler
    ) -> None:
        state = State()
        result = await reconciler.apply(two_envs_and_pool() + [block_in_pool()], state)
        assert result.ok, result.errors

        plan = {
            c.address: c
            for c in reconciler.plan(two_envs_and_pool(env_key="f") + [block_in_pool()], state)
        }
        assert plan["pool.p"].action is Action.REPLACE
        block = plan["block.b"]
        assert block.action is Action.UPDATE
        assert {c.name for c in block.changes} == {"environment_id", "pool_id"}
        assert all(c.after == UNKNOWN for c in block.changes)

    async def test_failed_dependency_skips_dependents(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        state = State()
        await reconciler.apply(two_envs_and_pool() + [block_in_pool()], state)
        old_pool_id = state.get("pool.p").entity_id
        fake_ipam.reset_calls()

        result = await reconciler.apply(two_envs_and_pool(env_key="f") + [block_in_pool()], state)

        # The pool still has a block, so its delete is refused.
        assert isinstance(result.errors["pool.p"], RemoteRejectionError)
        err = result.errors["block.b"]
        assert isinstance(err, DependencyError)
        assert "pool.p" in err.describe()
        assert fake_ipam.count("PUT", "/blocks/") == 0
        assert state.get("pool.p").entity_id == old_pool_id
        assert state.get("block.b").actual.pool_id == old_pool_id


class TestCanonicalCidrs:
    async def test_host_bits_rejected_before_any_call(
        self, reconciler: Reconciler, fake_ipam: FakeIPAM
    ) -> None:
        desired = [
            DesiredResource("block.b", Block(name="blk", cidr="10.1.0.0/24")),
            DesiredResource(
                "allocation.a", Allocation(name="a", block_name="blk", cidr="10.1.0.5/26")
            ),
        ]
        plan = {c.address: c for c in reconciler.plan(desired, State())}
        assert isinstance(plan["allocation.a"].error, ValidationError)

        result = await reconciler.apply(desired, State())
        err = result.errors["allocation.a"]
        assert isinstance(err, ValidationError)
        assert "10.1.0.0/26" in err.describe()
        assert fake_ipam.count("POST", "/allocations") == 0

    async def test_canonicalized_echo_is_stable(self, fake_ipam: FakeIPAM) -> None:
        desired = [
            DesiredResource("block.v6", Block(name="v6", cidr="2001:DB8:1::/48")),
            DesiredResource(
                "allocation.a",
                Allocation(name="a", block_name="${block.v6.name}", cidr="2001:DB8:1:1::/64"),
            ),
            DesiredResource(
                "reserved_block.r", ReservedBlock(name="r", cidr="2001:DB8:FF::/48")
            ),
        ]
        client = HTTPIPAMClient("http://ipam.test", "t", transport=canonicalizing(fake_ipam))
        reconciler = Reconciler(client)
        state = State()
        try:
            result = await reconciler.apply(desired, state)
            assert result.ok, result.errors
            assert state.get("allocation.a").actual.cidr == "2001:db8:1:1::/64"

            plan = reconciler.plan(desired, state)
            assert [c.action for c in plan] == [Action.NOOP] * 3

            fake_ipam.reset_calls()
            await reconciler.apply(desired, state)
            assert fake_ipam.writes() == []
        finally:
            await client.close()
