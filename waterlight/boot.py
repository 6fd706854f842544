"""
Boot Sequencer
==============

Process 1 of a Waterlight system. Five ordered, non-repeatable phases:

    1. Hydrogen  - virtual filesystems, modules, mode bit, entropy
    2. Helium    - cgroup hierarchy, runtime state, hostname/timezone
    3. Carbon    - essential lightweight production services (V100)
    4. Oxygen    - application services (V110, plus development vertices)
    5. Iron      - boot summary, then steady-state supervision

A shutdown signal drives reverse sequencing. Any Fatal drops into an
emergency shell; nothing ever propagates out of process 1.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional

from waterlight import __codename__, __version__
from waterlight.cgroup import CgroupTree
from waterlight.config import BootConfig, WaterlightPaths
from waterlight.errors import DegradedIsolation, Fatal, WaterlightError
from waterlight.host import HostSystem, ShutdownAction
from waterlight.isolation import ProcessLauncher
from waterlight.membrane import MembraneController
from waterlight.models.membrane import RuntimeRecord, check_service_name
from waterlight.models.mode import Mode
from waterlight.models.vertex import (
    Vertex,
    VertexState,
    all_vertices,
    development_vertices,
    lookup,
    membrane_vertices,
)
from waterlight.services import ServiceCatalog, ServiceDeclaration, resolve_command
from waterlight.store import FileStateStore, StateStore
from waterlight.supervisor import Supervisor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# (fstype, source, target, options)
REQUIRED_MOUNTS = [
    ("proc", "proc", "/proc", None),
    ("sysfs", "sysfs", "/sys", None),
    ("devtmpfs", "devtmpfs", "/dev", None),
    ("devpts", "devpts", "/dev/pts", None),
    ("tmpfs", "tmpfs", "/dev/shm", None),
    ("tmpfs", "tmpfs", "/run", "mode=0755,nosuid,nodev"),
]
CGROUP_MOUNT = ("cgroup2", "cgroup2", "/sys/fs/cgroup", None)

SIGNAL_ACTIONS = {
    signal.SIGTERM: ShutdownAction.REBOOT,
    signal.SIGUSR1: ShutdownAction.HALT,
    signal.SIGUSR2: ShutdownAction.POWEROFF,
}


class BootPhase(IntEnum):
    HYDROGEN = 1
    HELIUM = 2
    CARBON = 3
    OXYGEN = 4
    IRON = 5

    @property
    def title(self) -> str:
        return {
            BootPhase.HYDROGEN: "Hydrogen (bootstrap)",
            BootPhase.HELIUM: "Helium fusion (structure)",
            BootPhase.CARBON: "Carbon fusion (essential services)",
            BootPhase.OXYGEN: "Oxygen fusion (application services)",
            BootPhase.IRON: "Iron ceiling (steady state)",
        }[self]


@dataclass
class BootState:
    """Progress of one boot. Phases only ever move forward by one."""
    phase: int = 0
    mode: Mode = Mode.PRODUCTION
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    emergency: bool = False

    def advance(self, phase: BootPhase) -> None:
        if phase != self.phase + 1:
            raise RuntimeError(f"Phase {phase.name} cannot follow phase {self.phase}")
        self.phase = int(phase)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "mode": self.mode.label,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "emergency": self.emergency,
        }


class BootSequencer:
    """Runs the phases, supervision and shutdown of process 1."""

    def __init__(
        self,
        paths: Optional[WaterlightPaths] = None,
        config: Optional[BootConfig] = None,
        store: Optional[StateStore] = None,
        host: Optional[HostSystem] = None,
        cgroups: Optional[CgroupTree] = None,
        launcher: Optional[ProcessLauncher] = None,
        catalog: Optional[ServiceCatalog] = None,
    ):
        self.paths = paths or WaterlightPaths()
        self.config = config
        self.store = store or FileStateStore(self.paths.run_dir)
        self.host = host or HostSystem()
        self.cgroups = cgroups or CgroupTree(self.paths.cgroup_root)
        self.membranes = MembraneController(self.store, self.cgroups, launcher)
        self.catalog = catalog

        self.state = BootState()
        self.started: List[str] = []
        self.warnings: List[str] = []

        self._shutdown_action: Optional[ShutdownAction] = None
        self.supervisor: Optional[Supervisor] = None

    @property
    def shutdown_action(self) -> Optional[ShutdownAction]:
        return self._shutdown_action

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    # ─────────────────────────────────────────────────────────────────
    # Signals
    # ─────────────────────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        """Must run before phase 1."""
        for signum in SIGNAL_ACTIONS:
            signal.signal(signum, self._signal_handler)
        signal.signal(signal.SIGINT, signal.SIG_IGN)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        action = SIGNAL_ACTIONS.get(signum)
        if action is None:
            return
        logger.info(f"Received signal {signum}, initiating {action.value}")
        self.request_shutdown(action)

    def request_shutdown(self, action: ShutdownAction) -> None:
        self._shutdown_action = action
        if self.supervisor is not None:
            self.supervisor.stop_event.set()

    # ─────────────────────────────────────────────────────────────────
    # Phases
    # ─────────────────────────────────────────────────────────────────

    def phase_hydrogen(self) -> None:
        """Mount virtual filesystems, load modules, read mode, seed entropy."""
        self.state.advance(BootPhase.HYDROGEN)

        for fstype, source, target, options in REQUIRED_MOUNTS:
            if self.host.is_mounted(target):
                logger.debug(f"{target} already mounted")
                continue
            try:
                self.host.mount(fstype, source, target, options)
                logger.info(f"  Mounted {fstype} on {target}")
            except OSError as e:
                raise Fatal("hydrogen", f"cannot mount {target}: {e}") from e

        fstype, source, target, options = CGROUP_MOUNT
        if not self.host.is_mounted(target):
            try:
                self.host.mount(fstype, source, target, options)
                logger.info(f"  Mounted {fstype} on {target}")
            except OSError as e:
                self._warn(f"cgroup2 unavailable, resource limits will not be enforced: {e}")

        if self.config is None:
            self.config = BootConfig.load(self.paths.alpha_conf)

        for module in self.config.modules:
            try:
                self.host.load_module(module)
                logger.info(f"  Loaded module {module}")
            except OSError as e:
                self._warn(f"Module {module} not loaded: {e}")

        self.state.mode = self.config.mode
        logger.info(f"  Chirality: {self.state.mode.label} (sigma={int(self.state.mode)})")

        try:
            if self.host.seed_entropy(self.paths.random_seed):
                logger.info("  Entropy pool seeded")
        except OSError as e:
            self._warn(f"Entropy seed not restored: {e}")

    def phase_helium(self) -> None:
        """Build the cgroup hierarchy and the runtime state."""
        self.state.advance(BootPhase.HELIUM)

        try:
            for warning in self.cgroups.ensure_hierarchy(membrane_vertices()):
                self._warn(warning)
            for info in membrane_vertices():
                for warning in self.cgroups.apply_envelope(info):
                    self._warn(warning)
        except DegradedIsolation as e:
            self._warn(f"Cgroup hierarchy unavailable: {e}")

        try:
            self.store.initialize()
            for directory in (self.paths.log_dir, self.paths.state_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise Fatal("helium", f"cannot initialize runtime state: {e}") from e
        attach_boot_log(self.paths.log_dir)

        development = self.state.mode == Mode.DEVELOPMENT
        states: Dict[Vertex, VertexState] = {}
        for info in all_vertices():
            if info.is_development:
                states[info.vertex] = VertexState.PENDING if development else VertexState.INACTIVE
            elif info.is_kernel:
                states[info.vertex] = VertexState.ACTIVE
            else:
                states[info.vertex] = VertexState.PENDING
        self.store.write_vertex_states(states)
        self.store.set_mode(self.state.mode)

        try:
            self.host.set_hostname(self.config.hostname)
            logger.info(f"  Hostname: {self.config.hostname}")
        except OSError as e:
            self._warn(f"Hostname not set: {e}")
        try:
            if not self.host.set_timezone(self.config.timezone):
                self._warn(f"Unknown timezone {self.config.timezone}")
        except OSError as e:
            self._warn(f"Timezone not set: {e}")

    def phase_carbon(self) -> None:
        """Launch essential services in the lightweight production vertex."""
        self.state.advance(BootPhase.CARBON)
        if self.catalog is None:
            self.catalog = ServiceCatalog.load(self.paths.fusion_dir)

        names = list(self.config.carbon_services)
        for declaration in self.catalog.for_phase("carbon"):
            if declaration.name not in names:
                names.append(declaration.name)

        for name in names:
            self.start_service(name, Vertex.V100, self.catalog.get(name))

        self.store.set_vertex_state(Vertex.V100, VertexState.ACTIVE)

    def phase_oxygen(self) -> None:
        """Launch declared application services in their own vertices."""
        self.state.advance(BootPhase.OXYGEN)
        development = self.state.mode == Mode.DEVELOPMENT
        defer = self.config.defer_development and not development

        for declaration in self.catalog.for_phase("oxygen"):
            info = lookup(declaration.vertex)
            if info.is_development and defer:
                logger.info(f"  {declaration.name}: {info.id} deferred until chirality flip")
                continue
            target = info.vertex
            if not info.supports_membrane:
                self._warn(f"{declaration.name}: {info.id} has no slice, starting in V110")
                target = Vertex.V110
            self.start_service(declaration.name, target, declaration)

        self.store.set_vertex_state(Vertex.V110, VertexState.ACTIVE)
        if development:
            for info in development_vertices():
                self.store.set_vertex_state(info.vertex, VertexState.ACTIVE)

    def phase_iron(self) -> None:
        """Record completion and write the boot summary."""
        self.state.advance(BootPhase.IRON)
        self.state.completed_at = time.time()
        duration = self.state.duration or 0.0

        self.store.mark_boot_complete(self.state.completed_at)
        self.store.write_boot_summary({
            "version": __version__,
            "codename": __codename__,
            "mode": self.state.mode.label,
            "sigma": str(int(self.state.mode)),
            "boot_time": f"{duration:.3f}",
            "boot_complete": datetime.fromtimestamp(self.state.completed_at)
            .astimezone().isoformat(timespec="seconds"),
            "services": str(len(self.started)),
            "warnings": str(len(self.warnings)),
        })
        logger.info(
            f"Boot complete in {duration:.2f}s: {len(self.started)} services, "
            f"{len(self.warnings)} warnings"
        )

    # ─────────────────────────────────────────────────────────────────
    # Services
    # ─────────────────────────────────────────────────────────────────

    def start_service(
        self,
        name: str,
        vertex: Vertex,
        declaration: Optional[ServiceDeclaration] = None,
    ) -> Optional[RuntimeRecord]:
        """Launch one service; failures are warnings, never boot errors."""
        try:
            check_service_name(name)
        except ValueError as e:
            self._warn(str(e))
            return None

        argv = resolve_command(name, declaration, self.paths.services_dir, self.paths.initd_dir)
        if argv is None:
            self._warn(f"Service not found: {name}")
            return None

        capabilities = declaration.capabilities if declaration else None
        try:
            result = self.membranes.run(name, vertex, argv[0], argv[1:], capabilities=capabilities)
        except (WaterlightError, OSError) as e:
            self._warn(f"Failed to start {name}: {e}")
            return None

        for warning in result.warnings + result.membrane.warnings:
            self._warn(f"{name}: {warning}")
        self.started.append(name)
        logger.info(f"  Started {name} in {vertex.value} (pid {result.record.pid})")
        return result.record

    # ─────────────────────────────────────────────────────────────────
    # Main sequence
    # ─────────────────────────────────────────────────────────────────

    def boot(self) -> None:
        """Run phases 1-5 in order. Raises Fatal."""
        self.state.started_at = time.time()
        logger.info(f"Waterlight {__version__} ({__codename__}) booting")

        phases = [
            (BootPhase.HYDROGEN, self.phase_hydrogen),
            (BootPhase.HELIUM, self.phase_helium),
            (BootPhase.CARBON, self.phase_carbon),
            (BootPhase.OXYGEN, self.phase_oxygen),
            (BootPhase.IRON, self.phase_iron),
        ]
        for phase, step in phases:
            logger.info(f"Phase {int(phase)}: {phase.title}")
            step()

    def run(self) -> None:
        """
        Boot, supervise until a shutdown signal, then shut down.

        Process 1 must never return: anything that gets past the terminal
        action ends in the emergency shell.
        """
        self.install_signal_handlers()
        try:
            self.boot()
        except Fatal as e:
            self.emergency(str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected boot failure: {e}")
            self.emergency(str(e))
            return

        self.supervisor = Supervisor(
            self.store,
            self.membranes,
            interval_sec=self.config.supervision_interval,
        )
        if self._shutdown_action is not None:
            self.supervisor.stop_event.set()
        try:
            self.supervisor.run()
        except Exception as e:
            logger.exception(f"Supervision loop failed: {e}")

        action = self._shutdown_action
        if action is None:
            self.emergency("supervision stopped without a shutdown request")
            return
        try:
            self.shutdown(action)
        except Exception as e:
            logger.exception(f"Shutdown failed: {e}")
            self.emergency(f"{action.value} failed: {e}")
            return
        self.emergency(f"{action.value} did not take effect")

    def emergency(self, reason: str) -> None:
        """Terminal fallback. Never raises."""
        self.state.emergency = True
        try:
            logger.critical(f"FATAL: {reason}")
            logger.critical("Dropping to emergency shell")
            self.host.emergency_shell()
        except Exception:
            while True:
                time.sleep(3600)

    def shutdown(self, action: ShutdownAction) -> None:
        """Reverse sequencing: stop services, save state, terminal action."""
        logger.info(f"Shutting down ({action.value})")
        launcher = self.membranes.launcher

        records = self.store.list_runtime()
        for record in records:
            if launcher.signal(record.pid, signal.SIGTERM):
                logger.info(f"  Stopping {record.service} (pid {record.pid})")

        if records and self.config.shutdown_grace > 0:
            time.sleep(self.config.shutdown_grace)

        for record in records:
            if launcher.alive(record.pid):
                logger.warning(f"  Killing {record.service} (pid {record.pid})")
                launcher.signal(record.pid, signal.SIGKILL)
        launcher.reap()

        try:
            self.host.save_entropy(self.paths.random_seed)
        except OSError as e:
            logger.warning(f"Entropy not saved: {e}")
        self.host.sync()

        if self.supervisor is not None:
            self.supervisor.stop()
        self.host.terminal_action(action)


def attach_boot_log(log_dir: Path) -> None:
    """Mirror the root logger into boot.log once the log directory exists."""
    log_file = Path(log_dir) / "boot.log"
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file.resolve():
            return
    if not log_file.parent.is_dir():
        return
    try:
        handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Cannot open {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def main():
    """Process 1 entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Waterlight init (process 1)")
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Re-root every Waterlight path under this directory",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format=LOG_FORMAT,
    )

    paths = WaterlightPaths.under(args.root) if args.root else WaterlightPaths()
    attach_boot_log(paths.log_dir)

    if os.getpid() != 1:
        logger.warning(f"Running as pid {os.getpid()}, not process 1")

    BootSequencer(paths=paths).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
