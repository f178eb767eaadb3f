"""
ipamsync command line.

    ipamsync plan     --config desired.yaml [--state ipamsync.state.json] [--refresh]
    ipamsync apply    --config desired.yaml [--state ...] [--no-refresh]
    ipamsync refresh  [--state ...]
    ipamsync import   KIND.KEY ID [--state ...]
    ipamsync destroy  [--state ...]
    ipamsync show     [--state ...]

Connection settings (endpoint, token, ...) come from ``ipamsync.config``:
IPAMSYNC_* environment variables or the YAML config file. Exits 1 if any
entity failed.
"""

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable

from ipamsync.client import create_client
from ipamsync.client.protocol import IPAMTransport
from ipamsync.config import Settings
from ipamsync.document import load_document
from ipamsync.engine.diff import Action
from ipamsync.engine.reconciler import ApplyResult, PlannedChange, Reconciler
from ipamsync.engine.state import State, load_state, save_state
from ipamsync.errors import IPAMError
from ipamsync.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


def format_change(change: PlannedChange) -> list[str]:
    """Render one planned change as display lines."""
    head = f"{SYMBOLS[change.action]} {change.address}"
    if change.entity_id:
        head += f" (id {change.entity_id})"
    if change.action is Action.REPLACE:
        head += " must be replaced"
    lines = [head]
    for fc in change.changes:
        marker = "  # forces replacement" if fc.replace else ""
        lines.append(f"      {fc.name}: {fc.before!r} -> {fc.after!r}{marker}")
    for fc in change.ignored:
        lines.append(f"      {fc.name}: change ignored, only set at creation")
    if change.error is not None:
        lines.append(f"      error: {change.error.describe()}")
    return lines


def print_plan(changes: list[PlannedChange]) -> None:
    pending = [c for c in changes if c.action is not Action.NOOP or c.error or c.ignored]
    if not pending:
        print("No changes. Remote state matches the desired state.")
        return
    for change in pending:
        for line in format_change(change):
            print(line)
    counts = {a: sum(1 for c in changes if c.action is a) for a in Action}
    print(
        f"\nPlan: {counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
        f"{counts[Action.REPLACE]} to replace, {counts[Action.DELETE]} to delete."
    )


def print_result(result: ApplyResult) -> None:
    for change in result.applied:
        print(f"{SYMBOLS[change.action]} {change.address}: {change.action.value} "
              f"(id {change.entity_id})")
    for address, error in sorted(result.errors.items()):
        print(f"! {address}: {error.describe()}", file=sys.stderr)
    print(
        f"\nApplied: {result.count(Action.CREATE)} created, {result.count(Action.UPDATE)} "
        f"updated, {result.count(Action.REPLACE)} replaced, {result.count(Action.DELETE)} "
        f"deleted, {len(result.errors)} failed."
    )


def build_parser(cfg: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipamsync",
        description="Reconcile IPAM environments, pools, blocks and allocations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--state",
        default=cfg.state_file,
        help=f"State file path (default: {cfg.state_file})",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    plan_parser = subparsers.add_parser("plan", help="Show what apply would change")
    plan_parser.add_argument("--config", required=True, help="Desired-state YAML document")
    plan_parser.add_argument(
        "--refresh", action="store_true", help="Re-read remote state before planning"
    )

    apply_parser = subparsers.add_parser("apply", help="Make remote state match the document")
    apply_parser.add_argument("--config", required=True, help="Desired-state YAML document")
    apply_parser.add_argument(
        "--no-refresh", action="store_true", help="Skip re-reading remote state first"
    )

    subparsers.add_parser("refresh", help="Re-read every managed entity (drift detection)")

    import_parser = subparsers.add_parser("import", help="Adopt an existing entity by ID")
    import_parser.add_argument("address", help="KIND.KEY, e.g. block.web")
    import_parser.add_argument("id", help="Remote entity ID")

    subparsers.add_parser("destroy", help="Delete every managed entity")
    subparsers.add_parser("show", help="Print the state file")
    return parser


async def _with_reconciler(
    cfg: Settings, fn: Callable[[Reconciler], Awaitable[int]]
) -> int:
    client: IPAMTransport = create_client(cfg)
    try:
        reconciler = Reconciler(
            client,
            page_size=cfg.list_page_size,
            allocation_lookup_fallback=cfg.allocation_lookup_fallback,
        )
        return await fn(reconciler)
    finally:
        await client.close()


async def _refresh(reconciler: Reconciler, state: State) -> int:
    result = await reconciler.refresh(state)
    for address in result.drifted:
        print(f"~ {address}: drift folded into state")
    for address, error in sorted(result.errors.items()):
        print(f"! {address}: {error.describe()}", file=sys.stderr)
    return 0 if result.ok else 1


def run(argv: list[str] | None = None, cfg: Settings | None = None) -> int:
    """Parse arguments and run one command. Returns the process exit code."""
    cfg = cfg or Settings()
    parser = build_parser(cfg)
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    configure_logging(json_logs=cfg.json_logs, log_level=cfg.log_level)

    try:
        state = load_state(args.state)

        if args.command == "show":
            print(json.dumps(state.to_dict(), indent=2, sort_keys=True))
            return 0

        if args.command == "plan":
            desired = load_document(args.config).resources()

            async def do_plan(reconciler: Reconciler) -> int:
                if args.refresh and await _refresh(reconciler, state):
                    return 1
                changes = reconciler.plan(desired, state)
                print_plan(changes)
                return 1 if any(c.error for c in changes) else 0

            return asyncio.run(_with_reconciler(cfg, do_plan))

        if args.command == "apply":
            desired = load_document(args.config).resources()

            async def do_apply(reconciler: Reconciler) -> int:
                if not args.no_refresh:
                    code = await _refresh(reconciler, state)
                    save_state(state, args.state)
                    if code:
                        return code
                try:
                    result = await reconciler.apply(desired, state)
                finally:
                    save_state(state, args.state)
                print_result(result)
                return 0 if result.ok else 1

            return asyncio.run(_with_reconciler(cfg, do_apply))

        if args.command == "refresh":

            async def do_refresh(reconciler: Reconciler) -> int:
                code = await _refresh(reconciler, state)
                save_state(state, args.state)
                return code

            return asyncio.run(_with_reconciler(cfg, do_refresh))

        if args.command == "import":

            async def do_import(reconciler: Reconciler) -> int:
                record = await reconciler.import_resource(state, args.address, args.id)
                save_state(state, args.state)
                print(f"Imported {record.address} (id {record.entity_id})")
                return 0

            return asyncio.run(_with_reconciler(cfg, do_import))

        if args.command == "destroy":

            async def do_destroy(reconciler: Reconciler) -> int:
                try:
                    result = await reconciler.destroy(state)
                finally:
                    save_state(state, args.state)
                print_result(result)
                return 0 if result.ok else 1

            return asyncio.run(_with_reconciler(cfg, do_destroy))
    except IPAMError as e:
        logger.error("Command failed", command=args.command, error=e.describe())
        print(f"Error: {e.describe()}", file=sys.stderr)
        return 1
    except ValueError as e:
        # Malformed state file or address.
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


def main() -> None:
    """Console script entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
