"""
Membrane Controller
===================

Single source of truth for a service's resource and privilege boundary:
a cgroup (limits), a namespace set (isolation) and a capability set.

Descriptors are mutated under a per-service lock; operations on different
services never contend. Across processes the last writer wins.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Union

from waterlight.cgroup import CgroupTree
from waterlight.errors import Busy, DegradedIsolation, NotFound, UnsupportedVertex
from waterlight.isolation import ProcessLauncher
from waterlight.models.membrane import (
    Enforcement,
    MembraneDescriptor,
    MembraneLimits,
    MembraneReport,
    MembraneResult,
    MembraneState,
    RuntimeRecord,
    check_service_name,
)
from waterlight.models.vertex import VertexInfo, VertexRef, lookup
from waterlight.sizes import format_size, parse_count, parse_duration, parse_size
from waterlight.store import StateStore

logger = logging.getLogger(__name__)

SizeArg = Union[str, int, None]


@dataclass
class RunResult:
    """Outcome of launching a command inside a membrane."""
    membrane: MembraneResult
    record: RuntimeRecord
    isolated: bool = True
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return not self.isolated or bool(self.warnings) or self.membrane.degraded


def _describe(key: str, value: Optional[int]) -> str:
    if key.startswith("memory"):
        return format_size(value)
    return "max" if value is None else str(value)


class MembraneController:
    """Creates, inspects, stretches, contracts, destroys and runs membranes."""

    def __init__(
        self,
        store: StateStore,
        cgroups: CgroupTree,
        launcher: Optional[ProcessLauncher] = None,
    ):
        self.store = store
        self.cgroups = cgroups
        self.launcher = launcher or ProcessLauncher()

        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def _locked(self, name: str) -> Iterator[None]:
        check_service_name(name)
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.RLock())
        with lock:
            yield

    def _require(self, name: str) -> MembraneDescriptor:
        check_service_name(name)
        descriptor = self.store.get_descriptor(name)
        if descriptor is None:
            raise NotFound("membrane", name)
        return descriptor

    def _enforce(self, descriptor: MembraneDescriptor, result: MembraneResult,
                 keys: Optional[List[str]] = None, create_group: bool = True) -> None:
        """Push descriptor limits to the cgroup, downgrading result on failure."""
        try:
            if not create_group and self.cgroups.procs_file(descriptor.slice, descriptor.service) is None:
                raise DegradedIsolation(f"cgroup for {descriptor.service} not active")
            warnings = self.cgroups.apply_limits(descriptor.slice, descriptor.service, descriptor.limits, keys)
            result.warnings.extend(warnings)
        except DegradedIsolation as e:
            result.enforcement = Enforcement.RECORDED
            result.warnings.append(f"{e}; limits recorded but not enforced")
            logger.warning(f"Membrane {descriptor.service}: {e}")

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        vertex: VertexRef = "V100",
        memory_soft: SizeArg = None,
        memory_hard: SizeArg = None,
        cpu_weight: SizeArg = None,
        pids_max: SizeArg = None,
        capabilities: Optional[List[str]] = None,
    ) -> MembraneResult:
        """
        Create a membrane, or update an existing one's overrides.

        Omitted limits fall back to the vertex envelope. If the slice is not
        present the descriptor is still written ("soft create").
        """
        check_service_name(name)
        info = lookup(vertex)
        if not info.supports_membrane:
            raise UnsupportedVertex(info.id)

        overrides: Dict[str, Optional[int]] = {}
        if memory_soft is not None:
            overrides["memory_soft"] = parse_size(memory_soft)
        if memory_hard is not None:
            overrides["memory_hard"] = parse_size(memory_hard)
        if cpu_weight is not None:
            overrides["cpu_weight"] = parse_count(cpu_weight)
        if pids_max is not None:
            overrides["pids_max"] = parse_count(pids_max)

        with self._locked(name):
            existing = self.store.get_descriptor(name)
            if existing is not None and existing.vertex == info.id:
                descriptor = existing
                verb = "Updated"
            else:
                descriptor = MembraneDescriptor(
                    service=name,
                    vertex=info.id,
                    slice=info.slice,
                    limits=MembraneLimits.from_envelope(info.envelope),
                    capabilities=list(info.capabilities),
                    created_at=existing.created_at if existing else time.time(),
                )
                verb = "Created" if existing is None else "Re-created"

            for key, value in overrides.items():
                descriptor.limits.set(key, value)
            if capabilities is not None:
                descriptor.capabilities = list(capabilities)

            result = MembraneResult(descriptor=descriptor)
            result.changes.append(
                f"{verb} membrane '{name}' in vertex {info.id} ({info.slice})"
            )
            self._enforce(descriptor, result)
            if result.enforcement == Enforcement.APPLIED:
                result.changes.append(f"Cgroup: {self.cgroups.service_path(info.slice, name)}")
            for key, value in descriptor.limits.to_dict().items():
                result.changes.append(f"{key}: {_describe(key, value)}")

            self.store.put_descriptor(descriptor)

        logger.info(f"{verb} membrane {name} ({info.id}, {result.enforcement.value})")
        return result

    def inspect(self, name: str) -> MembraneReport:
        """Descriptor plus best-effort live usage."""
        descriptor = self._require(name)
        report = MembraneReport(
            descriptor=descriptor,
            usage=self.cgroups.usage(descriptor.slice, name),
            runtime=self.store.get_runtime(name),
        )
        if report.runtime is not None and self.launcher.alive(report.runtime.pid):
            report.process_alive = True
            report.namespaces = self.launcher.namespaces_of(report.runtime.pid)
        return report

    def list(self) -> List[MembraneDescriptor]:
        return self.store.list_descriptors()

    def stretch(
        self,
        name: str,
        memory: SizeArg = None,
        cpu: SizeArg = None,
        duration: Union[str, float, None] = None,
    ) -> MembraneResult:
        """
        Temporarily widen memory.max and/or cpu.weight.

        The value in force before the first unreleased stretch is kept so a
        single contract always returns to it.
        """
        new_values: Dict[str, Optional[int]] = {}
        if memory is not None:
            new_values["memory_hard"] = parse_size(memory)
        if cpu is not None:
            new_values["cpu_weight"] = parse_count(cpu)
        seconds = parse_duration(duration)

        with self._locked(name):
            descriptor = self._require(name)
            result = MembraneResult(descriptor=descriptor)

            for key, value in new_values.items():
                if key not in descriptor.stretch_snapshot:
                    descriptor.stretch_snapshot[key] = descriptor.limits.get(key)
                descriptor.limits.set(key, value)
                result.changes.append(f"{key} stretched to {_describe(key, value)}")

            if not new_values:
                result.warnings.append("nothing to stretch (give memory and/or cpu)")
            else:
                descriptor.state = MembraneState.STRETCHED
                if seconds is not None:
                    descriptor.stretch_expires_at = time.time() + seconds
                    result.changes.append(f"auto-contract in {seconds:.0f}s")
                self._enforce(descriptor, result, keys=list(new_values), create_group=False)

            self.store.put_descriptor(descriptor)

        logger.info(f"Stretched membrane {name}: {new_values}")
        return result

    def contract(self, name: str) -> MembraneResult:
        """Restore stretched limits. A no-op if nothing is stretched."""
        with self._locked(name):
            descriptor = self._require(name)
            result = MembraneResult(descriptor=descriptor)

            if not descriptor.is_stretched:
                result.changes.append(f"Membrane '{name}' is not stretched; nothing to contract")
                return result

            keys = list(descriptor.stretch_snapshot)
            for key, value in descriptor.stretch_snapshot.items():
                descriptor.limits.set(key, value)
                result.changes.append(f"{key} restored to {_describe(key, value)}")

            descriptor.stretch_snapshot = {}
            descriptor.stretch_expires_at = None
            descriptor.state = MembraneState.CREATED
            self._enforce(descriptor, result, keys=keys, create_group=False)
            self.store.put_descriptor(descriptor)

        logger.info(f"Contracted membrane {name}")
        return result

    def destroy(self, name: str) -> MembraneResult:
        """Remove a membrane. Raises Busy while its cgroup has members."""
        with self._locked(name):
            descriptor = self._require(name)
            result = MembraneResult(descriptor=descriptor)
            try:
                result.warnings.extend(self.cgroups.remove_group(descriptor.slice, name))
            except Busy:
                logger.warning(f"Membrane {name} is busy, not destroyed")
                raise

            self.store.delete_descriptor(name)
            self.store.delete_runtime(name)
            descriptor.state = MembraneState.DESTROYED
            result.changes.append(f"Destroyed membrane '{name}'")

        logger.info(f"Destroyed membrane {name}")
        return result

    def mark_ruptured(self, name: str) -> bool:
        """Record that a membrane's process died without being stopped."""
        with self._locked(name):
            descriptor = self.store.get_descriptor(name)
            if descriptor is None:
                return False
            descriptor.state = MembraneState.RUPTURED
            self.store.put_descriptor(descriptor)
        return True

    # ─────────────────────────────────────────────────────────────────
    # Running processes
    # ─────────────────────────────────────────────────────────────────

    def run(
        self,
        name: str,
        vertex: VertexRef,
        command: str,
        args: Optional[List[str]] = None,
        capabilities: Optional[List[str]] = None,
    ) -> RunResult:
        """
        Launch a command as a new isolated process inside the membrane.

        Never blocks the launch on missing isolation: without namespaces or
        a cgroup the process still starts and the result says so.
        """
        check_service_name(name)
        info: VertexInfo = lookup(vertex)
        existing = self.store.get_descriptor(name)
        if existing is None or existing.vertex != info.id:
            membrane = self.create(name, info.id, capabilities=capabilities)
        else:
            membrane = MembraneResult(descriptor=existing)

        argv = [command] + list(args or [])
        launch = self.launcher.launch(
            argv,
            namespaces=info.namespaces,
            cgroup_procs=self.cgroups.procs_file(info.slice, name),
        )

        record = RuntimeRecord(service=name, pid=launch.pid, vertex=info.id, command=argv)
        with self._locked(name):
            self.store.put_runtime(record)

        for warning in launch.warnings:
            logger.warning(f"Membrane {name}: degraded isolation: {warning}")
        logger.info(f"Running {name} in {info.id} as pid {launch.pid}")
        return RunResult(
            membrane=membrane,
            record=record,
            isolated=launch.isolated,
            warnings=list(launch.warnings),
        )

    def expired_stretches(self, now: Optional[float] = None) -> List[str]:
        now = now if now is not None else time.time()
        return [
            d.service for d in self.store.list_descriptors()
            if d.stretch_expires_at is not None and d.stretch_expires_at <= now
        ]
