"""
Chirality Controller
====================

The sigma axis: production (matter) versus development (antimatter).

Every vertex has a chiral partner with the polarity bit flipped:

    V000 Neutrino  <-> V001 Antineutrino
    V010 Neutron   <-> V011 Antineutron
    V100 Photon    <-> V101 Antiphoton
    V110 Electron  <-> V111 Positron

Flipping the mode activates or deactivates the four development vertices
and starts or stops the services declared on them. The mode bit is written
last, so an interrupted flip still reads as the old mode and a retry only
redoes what is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from waterlight.config import WaterlightPaths
from waterlight.errors import InvalidVertex, UnsupportedVertex, WaterlightError
from waterlight.membrane import MembraneController
from waterlight.models.mode import Mode
from waterlight.models.vertex import (
    VertexInfo,
    VertexRef,
    VertexState,
    development_vertices,
    lookup,
    partner,
    production_vertices,
)
from waterlight.services import ServiceCatalog, ServiceDeclaration, resolve_command
from waterlight.store import StateStore

logger = logging.getLogger(__name__)

ACTIVATABLE = (VertexState.INACTIVE, VertexState.PENDING)
DEACTIVATABLE = (VertexState.ACTIVE,)


@dataclass
class ChiralPair:
    """A production vertex, its development partner, and both states."""
    production: VertexInfo
    development: VertexInfo
    production_state: VertexState = VertexState.UNKNOWN
    development_state: VertexState = VertexState.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "production": {"id": self.production.id, "name": self.production.name,
                           "state": self.production_state.value},
            "development": {"id": self.development.id, "name": self.development.name,
                            "state": self.development_state.value},
        }


@dataclass
class ChiralityStatus:
    mode: Mode
    pairs: List[ChiralPair] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.label,
            "sigma": int(self.mode),
            "pairs": [p.to_dict() for p in self.pairs],
        }


@dataclass
class FlipReport:
    """What a flip or selective change did."""
    previous: Mode
    target: Mode
    changed: bool = False
    activated: List[str] = field(default_factory=list)
    deactivated: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous": self.previous.label,
            "target": self.target.label,
            "changed": self.changed,
            "activated": self.activated,
            "deactivated": self.deactivated,
            "started": self.started,
            "stopped": self.stopped,
            "degraded": self.degraded,
            "skipped": self.skipped,
            "warnings": self.warnings,
        }


@dataclass
class ChiralityDiff:
    """Services that the next toggle would start or stop."""
    current: Mode
    target: Mode
    start: List[ServiceDeclaration] = field(default_factory=list)
    stop: List[str] = field(default_factory=list)


class ChiralityController:
    """Reads and flips the persisted mode bit."""

    def __init__(
        self,
        store: StateStore,
        membranes: MembraneController,
        catalog: Optional[ServiceCatalog] = None,
        paths: Optional[WaterlightPaths] = None,
        stop_grace: float = 2.0,
    ):
        self.store = store
        self.stop_grace = stop_grace
        self.membranes = membranes
        self.paths = paths or WaterlightPaths()
        self.catalog = catalog if catalog is not None else ServiceCatalog.load(self.paths.fusion_dir)

    @property
    def launcher(self):
        return self.membranes.launcher

    def status(self) -> ChiralityStatus:
        states = self.store.get_vertex_states()
        pairs = []
        for info in production_vertices():
            mirror = partner(info.vertex)
            pairs.append(ChiralPair(
                production=info,
                development=mirror,
                production_state=states.get(info.vertex, VertexState.UNKNOWN),
                development_state=states.get(mirror.vertex, VertexState.UNKNOWN),
            ))
        return ChiralityStatus(mode=self.store.get_mode(), pairs=pairs)

    def resolve_target(self, target: Union[str, int, Mode]) -> Mode:
        if isinstance(target, str) and target.strip().lower() == "toggle":
            return self.store.get_mode().opposite
        return Mode.parse(target)

    def flip(self, target: Union[str, int, Mode] = "toggle") -> FlipReport:
        """Switch mode. Raises ValueError for an unknown target."""
        current = self.store.get_mode()
        goal = self.resolve_target(target)
        report = FlipReport(previous=current, target=goal)

        if goal == current:
            report.changes.append(f"Already in {goal.label} mode")
            return report

        logger.info(f"Chirality flip: {current.label} -> {goal.label}")
        if goal == Mode.DEVELOPMENT:
            self._activate_development(report)
        else:
            self._deactivate_development(report)

        self.store.set_mode(goal)
        report.changed = True
        report.changes.append(f"Chirality: sigma={int(goal)}")
        return report

    def _activate_development(self, report: FlipReport) -> None:
        for info in development_vertices():
            if self.store.transition_vertex(info.vertex, ACTIVATABLE, VertexState.ACTIVE):
                report.activated.append(info.id)
                report.changes.append(f"Activated {info.id} {info.name}")
            else:
                state = self.store.get_vertex_state(info.vertex)
                report.skipped.append(f"{info.id} is {state.value}")

        for declaration in self.catalog.development():
            self._start(declaration, report)

    def _deactivate_development(self, report: FlipReport) -> None:
        for info in development_vertices():
            if self.store.transition_vertex(info.vertex, DEACTIVATABLE, VertexState.INACTIVE):
                report.deactivated.append(info.id)
                report.changes.append(f"Deactivated {info.id} {info.name}")
            else:
                state = self.store.get_vertex_state(info.vertex)
                report.skipped.append(f"{info.id} is {state.value}")

        for service in self._running_development():
            record = self.store.get_runtime(service)
            if record is None:
                continue
            if self.launcher.stop(record.pid, self.stop_grace):
                report.changes.append(f"Stopped {service} (pid {record.pid})")
            self.store.delete_runtime(service)
            report.stopped.append(service)

    def _running_development(self) -> List[str]:
        """Services with a runtime record whose membrane is on a development vertex."""
        names = []
        for record in self.store.list_runtime():
            descriptor = self.store.get_descriptor(record.service)
            vertex_id = descriptor.vertex if descriptor else record.vertex
            try:
                if vertex_id and lookup(vertex_id).is_development:
                    names.append(record.service)
            except InvalidVertex:
                logger.warning(f"Runtime record {record.service} has unknown vertex {vertex_id}")
        return names

    def _is_running(self, name: str) -> bool:
        record = self.store.get_runtime(name)
        return record is not None and self.launcher.alive(record.pid)

    def _start(self, declaration: ServiceDeclaration, report: FlipReport) -> None:
        name = declaration.name
        info = lookup(declaration.vertex)

        if self._is_running(name):
            report.skipped.append(f"{name} already running")
            return
        if not info.supports_membrane:
            report.skipped.append(f"{name}: {UnsupportedVertex(info.id)}")
            return

        argv = resolve_command(name, declaration, self.paths.services_dir, self.paths.initd_dir)
        if argv is None:
            # No process to start; the boundary is still prepared.
            try:
                self.membranes.create(name, info.id, capabilities=declaration.capabilities)
            except WaterlightError as e:
                report.warnings.append(f"{name}: {e}")
            report.degraded.append(name)
            report.warnings.append(f"{name}: command not found, membrane prepared but not started")
            return

        try:
            result = self.membranes.run(
                name, info.id, argv[0], argv[1:], capabilities=declaration.capabilities
            )
        except (WaterlightError, OSError) as e:
            report.degraded.append(name)
            report.warnings.append(f"{name}: failed to start: {e}")
            return

        report.started.append(name)
        report.changes.append(f"Started {name} in {info.id} (pid {result.record.pid})")
        if result.degraded:
            report.degraded.append(name)
            report.warnings.extend(f"{name}: {w}" for w in result.warnings)

    def selective(self, vertex: VertexRef, action: str) -> FlipReport:
        """
        Activate or deactivate the development member of one chiral pair.

        Neither the mode bit nor any other vertex is touched.
        """
        info = lookup(vertex)
        target = info if info.is_development else partner(info.vertex)
        mode = self.store.get_mode()
        report = FlipReport(previous=mode, target=mode)

        action = action.strip().lower()
        if action == "activate":
            allowed, new_state, done = ACTIVATABLE, VertexState.ACTIVE, report.activated
            verb = "Activated"
        elif action == "deactivate":
            allowed, new_state, done = DEACTIVATABLE, VertexState.INACTIVE, report.deactivated
            verb = "Deactivated"
        else:
            raise ValueError(f"Action must be 'activate' or 'deactivate', not '{action}'")

        if self.store.transition_vertex(target.vertex, allowed, new_state):
            done.append(target.id)
            report.changed = True
            suffix = "" if target is info else f" (partner of {info.id})"
            report.changes.append(f"{verb} {target.id} {target.name}{suffix}")
        else:
            state = self.store.get_vertex_state(target.vertex)
            report.skipped.append(f"{target.id} is {state.value}")
        logger.info(f"Selective chirality: {action} {target.id}")
        return report

    def diff(self) -> ChiralityDiff:
        current = self.store.get_mode()
        result = ChiralityDiff(current=current, target=current.opposite)
        if current == Mode.PRODUCTION:
            result.start = [
                d for d in self.catalog.development()
                if lookup(d.vertex).supports_membrane and not self._is_running(d.name)
            ]
        else:
            result.stop = self._running_development()
        return result
