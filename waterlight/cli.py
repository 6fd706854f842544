#!/usr/bin/env python3
"""
waterlight CLI
==============

Command-line interface for a running Waterlight system.

Usage:
    waterlight vertex status                     # All vertices and their states
    waterlight vertex inspect V100               # One vertex in detail
    waterlight vertex list                       # Machine-readable list
    waterlight vertex services [V110]            # Services grouped by vertex
    waterlight vertex cube                       # The cube as a picture

    waterlight membrane create dns --vertex V100 --memory-hard 256M
    waterlight membrane inspect dns
    waterlight membrane list
    waterlight membrane stretch dns --memory 512M --duration 10m
    waterlight membrane contract dns
    waterlight membrane destroy dns
    waterlight membrane run web --vertex V110 -- /usr/sbin/nginx -g "daemon off;"

    waterlight chirality status
    waterlight chirality flip [production|development|toggle]
    waterlight chirality selective V100 activate
    waterlight chirality diff
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from waterlight import __version__
from waterlight.cgroup import CgroupTree
from waterlight.chirality import ChiralityController
from waterlight.config import WaterlightPaths
from waterlight.errors import WaterlightError
from waterlight.membrane import MembraneController
from waterlight.models.mode import Mode
from waterlight.models.vertex import (
    Vertex,
    VertexState,
    all_vertices,
    lookup,
    neighbors,
    partner,
)
from waterlight.sizes import format_size
from waterlight.store import FileStateStore, dump_state

logger = logging.getLogger(__name__)

RULE = "  " + "═" * 42


class Context:
    """Controllers wired against one filesystem layout."""

    def __init__(self, paths: WaterlightPaths):
        self.paths = paths
        self.store = FileStateStore(paths.run_dir)
        self.cgroups = CgroupTree(paths.cgroup_root)
        self.membranes = MembraneController(self.store, self.cgroups)
        self._chirality: Optional[ChiralityController] = None

    @property
    def chirality(self) -> ChiralityController:
        if self._chirality is None:
            self._chirality = ChiralityController(self.store, self.membranes, paths=self.paths)
        return self._chirality


def get_context(args: argparse.Namespace) -> Context:
    paths = WaterlightPaths.under(args.root) if args.root else WaterlightPaths()
    return Context(paths)


def print_result(result) -> None:
    """Print what an operation changed, skipped and warned about."""
    for line in result.changes:
        print(f"  {line}")
    for line in getattr(result, "skipped", []):
        print(f"  skipped: {line}")
    for line in result.warnings:
        print(f"  warning: {line}")


def _state_symbol(state: VertexState) -> str:
    return {
        VertexState.ACTIVE: "#",
        VertexState.PENDING: "~",
        VertexState.INACTIVE: ".",
    }.get(state, "?")


# ─────────────────────────────────────────────────────────────────────
# vertex
# ─────────────────────────────────────────────────────────────────────

def cmd_vertex_status(args: argparse.Namespace) -> int:
    """Show all vertex states and system info."""
    ctx = get_context(args)

    if args.json:
        print(dump_state(ctx.store))
        return 0

    mode = ctx.store.get_mode()
    completed = ctx.store.boot_completed_at()
    states = ctx.store.get_vertex_states()

    print()
    print(f"  Waterlight v{__version__} -- Vertex Status")
    print(RULE)
    print(f"  Chirality (sigma): {int(mode)} ({mode.title})")
    if completed is not None:
        print(f"  Boot complete: yes ({datetime.fromtimestamp(completed).isoformat(timespec='seconds')})")
    else:
        print("  Boot complete: no")
    print()
    print(f"  {'VERTEX':<6} {'NAME':<15} {'eps':<3} {'mu':<3} {'sig':<3} {'STATE':<10} DESCRIPTION")
    print(f"  {'-' * 6} {'-' * 15} {'-' * 3} {'-' * 3} {'-' * 3} {'-' * 10} {'-' * 19}")
    for info in all_vertices():
        eps, mu, sig = info.coordinates
        state = states.get(info.vertex, VertexState.UNKNOWN)
        print(f"  {info.id:<6} {info.name:<15} {eps:<3} {mu:<3} {sig:<3} {state.value:<10} {info.description}")
    print()
    return 0


def cmd_vertex_inspect(args: argparse.Namespace) -> int:
    """Detailed inspection of one vertex."""
    ctx = get_context(args)
    info = lookup(args.vertex)
    state = ctx.store.get_vertex_state(info.vertex)

    if args.json:
        data = info.to_dict()
        data["state"] = state.value
        data["partner"] = partner(info.vertex).id
        data["neighbors"] = {edge: n.id for edge, n in neighbors(info.vertex).items()}
        print(json.dumps(data, indent=2))
        return 0

    print()
    print(f"  Vertex: {info.id} ({info.name})")
    print(RULE)
    print("  Coordinates:")
    labels = info.describe_coordinates()
    eps, mu, sig = info.coordinates
    print(f"    epsilon (visibility): {eps} ({labels['epsilon']})")
    print(f"    mu (weight):          {mu} ({labels['mu']})")
    print(f"    sigma (polarity):     {sig} ({labels['sigma']})")
    print(f"  State: {state.value}")
    print(f"  Description: {info.description}")
    print(f"  Chiral partner: {partner(info.vertex).id}")
    print("  Adjacent vertices:")
    adjacent = neighbors(info.vertex)
    print(f"    epsilon edge -> {adjacent['visibility'].id}")
    print(f"    mu edge      -> {adjacent['weight'].id}")
    print(f"    sigma edge   -> {partner(info.vertex).id}")

    print()
    if not info.supports_membrane:
        print("  Cgroup: N/A (kernel-space vertex)")
    elif not ctx.cgroups.has_slice(info.slice):
        print("  Cgroup: not mounted")
    else:
        usage = ctx.cgroups.slice_usage(info.slice)
        print(f"  Cgroup: waterlight.slice/{info.slice}.slice")
        if usage.memory_current is not None:
            limit = "unlimited" if usage.memory_max in (None, "max") else usage.memory_max
            print(f"    Memory: {format_size(usage.memory_current)} / {limit}")
        if usage.pids_current is not None:
            print(f"    PIDs: {usage.pids_current} / {usage.pids_max or '?'}")
    if info.capabilities:
        print(f"  Capabilities: {', '.join(info.capabilities)}")
    if info.namespaces:
        print(f"  Namespaces: {', '.join(sorted(ns.value for ns in info.namespaces))}")

    print()
    print("  Services:")
    found = False
    for descriptor in ctx.membranes.list():
        if descriptor.vertex != info.id:
            continue
        record = ctx.store.get_runtime(descriptor.service)
        if record is None:
            print(f"    {descriptor.service} [{descriptor.state.value}]")
        else:
            running = "running" if ctx.membranes.launcher.alive(record.pid) else "dead"
            print(f"    {descriptor.service} (PID {record.pid}) [{running}]")
        found = True
    if not found:
        print("    (none)")
    print()
    return 0


def cmd_vertex_list(args: argparse.Namespace) -> int:
    """List all vertices (machine-readable)."""
    for info in all_vertices():
        print(f"{info.id} {info.name}")
    return 0


def cmd_vertex_services(args: argparse.Namespace) -> int:
    """Show services organized by vertex."""
    ctx = get_context(args)
    only = lookup(args.vertex).vertex if args.vertex else None

    descriptors = {d.service: d for d in ctx.membranes.list()}
    records = ctx.store.list_runtime()

    print()
    print("  Services by Vertex")
    print(RULE)
    print()
    for info in all_vertices():
        if only is not None and info.vertex != only:
            continue
        print(f"  {info.id} ({info.name}):")
        found = False
        for record in records:
            descriptor = descriptors.get(record.service)
            vertex_id = descriptor.vertex if descriptor else record.vertex
            if vertex_id != info.id:
                continue
            running = "running" if ctx.membranes.launcher.alive(record.pid) else "dead"
            print(f"    {record.service:<20} PID {record.pid:<8} [{running}]")
            found = True
        if not found:
            print("    (no services)")
        print()
    return 0


def cmd_vertex_cube(args: argparse.Namespace) -> int:
    """ASCII picture of the cube state."""
    ctx = get_context(args)
    states = ctx.store.get_vertex_states()

    def cell(vertex: Vertex) -> str:
        return f"{_state_symbol(states.get(vertex, VertexState.UNKNOWN))} {vertex.value}"

    print()
    print("  Z2-Cubed Cube State")
    print(RULE)
    print()
    print("  Legend: # active  ~ pending  . inactive  ? unknown")
    print()
    print("              sigma=0      sigma=1")
    print("              (matter)     (antimatter)")
    rows = [
        ("eps=0 mu=0", Vertex.V000, Vertex.V001),
        ("eps=0 mu=1", Vertex.V010, Vertex.V011),
        ("eps=1 mu=0", Vertex.V100, Vertex.V101),
        ("eps=1 mu=1", Vertex.V110, Vertex.V111),
    ]
    for label, matter, antimatter in rows:
        print(f"  {label}  [{cell(matter)}] ---- [{cell(antimatter)}]")
    print()
    return 0


# ─────────────────────────────────────────────────────────────────────
# membrane
# ─────────────────────────────────────────────────────────────────────

def cmd_membrane_create(args: argparse.Namespace) -> int:
    """Create or update a membrane."""
    ctx = get_context(args)
    capabilities = None
    if args.capabilities is not None:
        capabilities = [c.strip() for c in args.capabilities.split(",") if c.strip()]
    result = ctx.membranes.create(
        args.name,
        args.vertex,
        memory_soft=args.memory_soft,
        memory_hard=args.memory_hard,
        cpu_weight=args.cpu_weight,
        pids_max=args.pids_max,
        capabilities=capabilities,
    )
    print_result(result)
    return 0


def cmd_membrane_inspect(args: argparse.Namespace) -> int:
    """Show a membrane descriptor and its live usage."""
    ctx = get_context(args)
    report = ctx.membranes.inspect(args.name)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    d = report.descriptor
    print()
    print(f"  Membrane: {d.service}")
    print(RULE)
    print(f"  Vertex: {d.vertex} ({lookup(d.vertex).name})")
    print(f"  Slice: {d.slice}")
    print(f"  State: {d.state.value}")
    print("  Limits:")
    print(f"    memory_soft: {format_size(d.limits.memory_soft)}")
    print(f"    memory_hard: {format_size(d.limits.memory_hard)}")
    print(f"    cpu_weight:  {d.limits.cpu_weight if d.limits.cpu_weight is not None else 'max'}")
    print(f"    pids_max:    {d.limits.pids_max if d.limits.pids_max is not None else 'max'}")
    if d.is_stretched:
        print(f"  Stretched from: {d.stretch_snapshot}")
        if d.stretch_expires_at:
            expires = datetime.fromtimestamp(d.stretch_expires_at).isoformat(timespec="seconds")
            print(f"  Auto-contract at: {expires}")
    print(f"  Capabilities: {', '.join(d.capabilities) or '(none)'}")

    print()
    if report.active:
        usage = report.usage
        print("  Cgroup: active")
        if usage.memory_current is not None:
            print(f"    memory.current: {format_size(usage.memory_current)}")
        if usage.pids_current is not None:
            print(f"    pids.current:   {usage.pids_current}")
        for key, value in usage.cpu_stat.items():
            print(f"    cpu.{key}: {value}")
    else:
        print("  Cgroup: not active")

    if report.runtime is not None:
        status = "running" if report.process_alive else "dead"
        print(f"  Process: PID {report.runtime.pid} [{status}]")
        for ns, ident in report.namespaces.items():
            print(f"    {ns}: {ident}")
    print()
    return 0


def cmd_membrane_list(args: argparse.Namespace) -> int:
    """List all membranes."""
    ctx = get_context(args)
    descriptors = ctx.membranes.list()
    if not descriptors:
        print("No membranes")
        return 0
    print(f"  {'SERVICE':<20} {'VERTEX':<6} {'SLICE':<13} {'STATE':<10} {'MEM_HARD':<9} CPU")
    for d in descriptors:
        cpu = d.limits.cpu_weight if d.limits.cpu_weight is not None else "max"
        print(f"  {d.service:<20} {d.vertex:<6} {d.slice:<13} {d.state.value:<10} "
              f"{format_size(d.limits.memory_hard):<9} {cpu}")
    return 0


def cmd_membrane_stretch(args: argparse.Namespace) -> int:
    """Temporarily widen a membrane."""
    ctx = get_context(args)
    result = ctx.membranes.stretch(args.name, memory=args.memory, cpu=args.cpu, duration=args.duration)
    print_result(result)
    return 0


def cmd_membrane_contract(args: argparse.Namespace) -> int:
    """Restore a stretched membrane."""
    ctx = get_context(args)
    print_result(ctx.membranes.contract(args.name))
    return 0


def cmd_membrane_destroy(args: argparse.Namespace) -> int:
    """Remove a membrane."""
    ctx = get_context(args)
    print_result(ctx.membranes.destroy(args.name))
    return 0


def cmd_membrane_run(args: argparse.Namespace) -> int:
    """Run a command inside a membrane."""
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: no command given (use: run <name> --vertex <vertex> -- <command> [args...])",
              file=sys.stderr)
        return 1

    ctx = get_context(args)
    result = ctx.membranes.run(args.name, args.vertex, command[0], command[1:])
    print_result(result.membrane)
    print(f"  Started {args.name} (PID {result.record.pid}) in {result.record.vertex}")
    for line in result.warnings:
        print(f"  warning: {line}")
    return 0


# ─────────────────────────────────────────────────────────────────────
# chirality
# ─────────────────────────────────────────────────────────────────────

def cmd_chirality_status(args: argparse.Namespace) -> int:
    """Show the mode and the chiral pairs."""
    ctx = get_context(args)
    status = ctx.chirality.status()

    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return 0

    print()
    print("  Waterlight Chirality Status")
    print(RULE)
    print()
    print(f"  Current mode: {status.mode.title} (sigma={int(status.mode)})")
    print()
    print(f"  {'MATTER (sigma=0)':<30} {'ANTIMATTER (sigma=1)':<30}")
    for pair in status.pairs:
        left = f"{pair.production.id} {pair.production.name} {pair.production_state.value}"
        right = f"{pair.development.id} {pair.development.name} {pair.development_state.value}"
        print(f"  {left:<30} <-> {right}")
    print()
    return 0


def cmd_chirality_flip(args: argparse.Namespace) -> int:
    """Switch the mode."""
    ctx = get_context(args)
    report = ctx.chirality.flip(args.target)
    if report.changed:
        print(f"  Chirality flip: {report.previous.label} -> {report.target.label}")
    print_result(report)
    return 0


def cmd_chirality_selective(args: argparse.Namespace) -> int:
    """Activate or deactivate one development vertex."""
    ctx = get_context(args)
    print_result(ctx.chirality.selective(args.vertex, args.action))
    return 0


def cmd_chirality_diff(args: argparse.Namespace) -> int:
    """Show what the next toggle would change."""
    ctx = get_context(args)
    diff = ctx.chirality.diff()

    print()
    print(f"  Chirality Diff: {diff.current.label} -> {diff.target.label}")
    print(RULE)
    print()
    if diff.target == Mode.DEVELOPMENT:
        print("  Services that would START:")
        for declaration in diff.start:
            print(f"    {declaration.name:<20} {declaration.vertex:<6} {declaration.description}")
        if not diff.start:
            print("    (no development services defined)")
    else:
        print("  Services that would STOP:")
        for name in diff.stop:
            print(f"    {name}")
        if not diff.stop:
            print("    (no development services running)")
    print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="waterlight",
        description="Waterlight vertex, membrane and chirality control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--root", type=Path, default=None,
                        help="Re-root every Waterlight path under this directory")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        default="WARNING", help="Log level")
    parser.add_argument("--version", action="version", version=f"waterlight {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # vertex
    p = subparsers.add_parser("vertex", help="Vertex state")
    vertex_sub = p.add_subparsers(dest="vertex_command")

    vp = vertex_sub.add_parser("status", help="Show all vertex states")
    vp.add_argument("--json", action="store_true", help="Dump the full runtime state as JSON")
    vp.set_defaults(func=cmd_vertex_status)

    vp = vertex_sub.add_parser("inspect", help="Inspect one vertex")
    vp.add_argument("vertex", help="Vertex id, e.g. V100")
    vp.add_argument("--json", action="store_true", help="Output as JSON")
    vp.set_defaults(func=cmd_vertex_inspect)

    vp = vertex_sub.add_parser("list", help="List vertices")
    vp.set_defaults(func=cmd_vertex_list)

    vp = vertex_sub.add_parser("services", help="Services by vertex")
    vp.add_argument("vertex", nargs="?", default=None, help="Only this vertex")
    vp.set_defaults(func=cmd_vertex_services)

    vp = vertex_sub.add_parser("cube", help="Picture of the cube state")
    vp.set_defaults(func=cmd_vertex_cube)

    # membrane
    p = subparsers.add_parser("membrane", help="Service membranes")
    membrane_sub = p.add_subparsers(dest="membrane_command")

    mp = membrane_sub.add_parser("create", help="Create or update a membrane")
    mp.add_argument("name", help="Service name")
    mp.add_argument("--vertex", default="V100", help="Vertex id (default: V100)")
    mp.add_argument("--memory-soft", default=None, help="memory.high, e.g. 64M")
    mp.add_argument("--memory-hard", default=None, help="memory.max, e.g. 128M")
    mp.add_argument("--cpu-weight", default=None, help="cpu.weight (1-10000)")
    mp.add_argument("--pids-max", default=None, help="pids.max")
    mp.add_argument("--capabilities", default=None, help="Comma-separated capability list")
    mp.set_defaults(func=cmd_membrane_create)

    mp = membrane_sub.add_parser("inspect", help="Inspect a membrane")
    mp.add_argument("name", help="Service name")
    mp.add_argument("--json", action="store_true", help="Output as JSON")
    mp.set_defaults(func=cmd_membrane_inspect)

    mp = membrane_sub.add_parser("list", help="List membranes")
    mp.set_defaults(func=cmd_membrane_list)

    mp = membrane_sub.add_parser("stretch", help="Temporarily widen limits")
    mp.add_argument("name", help="Service name")
    mp.add_argument("--memory", default=None, help="New memory.max")
    mp.add_argument("--cpu", default=None, help="New cpu.weight")
    mp.add_argument("--duration", default=None, help="Auto-contract after e.g. 30s, 10m, 2h")
    mp.set_defaults(func=cmd_membrane_stretch)

    mp = membrane_sub.add_parser("contract", help="Restore stretched limits")
    mp.add_argument("name", help="Service name")
    mp.set_defaults(func=cmd_membrane_contract)

    mp = membrane_sub.add_parser("destroy", help="Remove a membrane")
    mp.add_argument("name", help="Service name")
    mp.set_defaults(func=cmd_membrane_destroy)

    mp = membrane_sub.add_parser("run", help="Run a command inside a membrane")
    mp.add_argument("name", help="Service name")
    mp.add_argument("--vertex", default="V100", help="Vertex id (default: V100)")
    mp.add_argument("command", nargs="+", help="-- command [args...]")
    mp.set_defaults(func=cmd_membrane_run)

    # chirality
    p = subparsers.add_parser("chirality", help="Production/development mode")
    chirality_sub = p.add_subparsers(dest="chirality_command")

    cp = chirality_sub.add_parser("status", help="Show mode and chiral pairs")
    cp.add_argument("--json", action="store_true", help="Output as JSON")
    cp.set_defaults(func=cmd_chirality_status)

    cp = chirality_sub.add_parser("flip", help="Switch mode")
    cp.add_argument("target", nargs="?", default="toggle",
                    help="production|matter|development|antimatter|toggle (default: toggle)")
    cp.set_defaults(func=cmd_chirality_flip)

    cp = chirality_sub.add_parser("selective", help="Flip a single chiral pair")
    cp.add_argument("vertex", help="Either vertex of the pair")
    cp.add_argument("action", choices=["activate", "deactivate"])
    cp.set_defaults(func=cmd_chirality_selective)

    cp = chirality_sub.add_parser("diff", help="Show what the next toggle changes")
    cp.set_defaults(func=cmd_chirality_diff)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except (WaterlightError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
