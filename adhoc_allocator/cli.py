"""CLI entry points for spread-adhoc-allocator.

Meant to be called from the ``allocate`` and ``discard`` snippets of a spread
``adhoc`` backend::

    allocate: ADDRESS $(spread-adhoc-allocator allocate "$SPREAD_SYSTEM" "$SPREAD_SYSTEM_USERNAME" "$SPREAD_SYSTEM_PASSWORD")
    discard: spread-adhoc-allocator discard "$SPREAD_SYSTEM_ADDRESS"
"""

from __future__ import annotations

import argparse
import signal
import traceback
from typing import List, Optional

from adhoc_allocator.backends import get_backend
from adhoc_allocator.config import Catalog, Settings, catalog_file_name, load_catalog, locate_catalog, parse_env
from adhoc_allocator.constants import PROGRAM_NAME
from adhoc_allocator.engine import LifecycleEngine
from adhoc_allocator.exceptions import AllocationCancelled, AllocatorError
from adhoc_allocator.models import AllocationRequest
from adhoc_allocator.reaper import OrphanReaper
from adhoc_allocator.registry import Registry
from adhoc_allocator.utils import format_size, log, set_verbose


def _raise_cancelled(signum, frame):
    raise AllocationCancelled(signal.Signals(signum).name)


def open_catalog(settings: Settings) -> Catalog:
    return load_catalog(locate_catalog(catalog_file_name(settings.backend)))


def open_registry(settings: Settings) -> Registry:
    return Registry(settings.state_dir, lock_timeout=settings.lock_timeout)


def cmd_allocate(args: argparse.Namespace, settings: Settings) -> int:
    catalog = open_catalog(settings)
    registry = open_registry(settings)
    backend = get_backend(settings)
    try:
        engine = LifecycleEngine(catalog, backend, registry, settings)
        address = engine.allocate(AllocationRequest(args.system, args.username, args.password))
    finally:
        backend.close()
    print(address, flush=True)
    return 0


def cmd_discard(args: argparse.Namespace, settings: Settings) -> int:
    registry = open_registry(settings)
    backend = get_backend(settings)
    try:
        LifecycleEngine(None, backend, registry, settings).discard(args.address)
    finally:
        backend.close()
    return 0


def cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    registry = open_registry(settings)
    backend = get_backend(settings)
    discard_error: Optional[AllocatorError] = None
    try:
        if args.all:
            try:
                discarded = LifecycleEngine(None, backend, registry, settings).discard_all()
                log("INFO", f"Discarded {len(discarded)} allocations")
            except AllocatorError as exc:
                discard_error = exc
        try:
            report = OrphanReaper(backend, registry, settings).reconcile()
        except AllocatorError as exc:
            if discard_error is not None:
                exc.cleanup_errors.append(discard_error)
            raise
    finally:
        backend.close()

    log(
        "INFO",
        f"Cleanup: {len(report.destroyed)} leaked instances destroyed, "
        f"{len(report.forgotten)} stale entries forgotten, "
        f"{len(report.dropped_claims)} abandoned claims dropped",
    )
    if discard_error is not None:
        discard_error.cleanup_errors.extend(report.errors)
        raise discard_error
    if report.errors:
        error = AllocatorError(f"cleanup finished with {len(report.errors)} errors")
        error.cleanup_errors.extend(report.errors)
        raise error
    return 0


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    entries = open_registry(settings).list_all()
    for address in sorted(entries):
        entry = entries[address]
        print(f"{address}\t{entry.handle}\t{entry.system}")
    return 0


def cmd_systems(args: argparse.Namespace, settings: Settings) -> int:
    catalog = open_catalog(settings)
    systems = catalog.systems
    if not systems:
        return 0
    max_key = max(len(s.name) for s in systems)
    for system in systems:
        res = system.resources
        mode = "vm" if system.vm else "container"
        print(
            f"  {system.name:<{max_key}}  {system.image}  "
            f"({mode}, cpu={res.cpu}, mem={format_size(res.memory)}, size={format_size(res.size)})"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROGRAM_NAME, description="Ad-hoc VM allocator for spread")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("allocate", help="Allocate a system and print its address")
    p.add_argument("system", help="System name from the catalog")
    p.add_argument("username", help="Login user to configure")
    p.add_argument("password", help="Password for the login user")
    p.set_defaults(func=cmd_allocate)

    p = sub.add_parser("discard", help="Destroy the system allocated at an address")
    p.add_argument("address", help="Address printed by allocate, as <addr>:<port>")
    p.set_defaults(func=cmd_discard)

    p = sub.add_parser("cleanup", help="Destroy leaked instances and forget stale allocations")
    p.add_argument("--all", action="store_true", help="Discard every registered allocation first")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("list", help="List registered allocations")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("systems", help="List systems defined in the catalog")
    p.set_defaults(func=cmd_systems)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    prev_sigterm = signal.signal(signal.SIGTERM, _raise_cancelled)
    try:
        settings = parse_env()
        return args.func(args, settings)
    except AllocatorError as exc:
        log("ERROR", str(exc))
        for cleanup_exc in exc.cleanup_errors:
            log("ERROR", f"  also: {cleanup_exc}")
        return 1
    except KeyboardInterrupt:
        log("ERROR", "Interrupted")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
