"""
Cgroup Tree
===========

cgroup v2 backend for membranes:

    /sys/fs/cgroup/waterlight.slice/<tier>.slice/<service>/

Operations raise DegradedIsolation when the grouping they need does not
exist (cgroup2 not mounted, slice never created). Individual control-file
write failures are reported back as warnings.
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from waterlight.errors import Busy, DegradedIsolation
from waterlight.models.membrane import MembraneLimits, ResourceUsage
from waterlight.models.vertex import ResourceEnvelope, VertexInfo
from waterlight.sizes import to_control_value

logger = logging.getLogger(__name__)

BASE_SLICE = "waterlight.slice"
CONTROLLERS = "+memory +cpu +io +pids"

_CONTROL_FILES = {
    "memory_hard": "memory.max",
    "memory_soft": "memory.high",
    "cpu_weight": "cpu.weight",
    "pids_max": "pids.max",
}


class CgroupTree:
    """Waterlight's corner of the cgroup v2 hierarchy."""

    def __init__(self, root: Path = Path("/sys/fs/cgroup")):
        self.root = Path(root)
        self.base = self.root / BASE_SLICE

    # ─────────────────────────────────────────────────────────────────
    # Paths
    # ─────────────────────────────────────────────────────────────────

    def slice_path(self, slice_name: str) -> Path:
        return self.base / f"{slice_name}.slice"

    def service_path(self, slice_name: str, service: str) -> Path:
        return self.slice_path(slice_name) / service

    def has_slice(self, slice_name: str) -> bool:
        return bool(slice_name) and self.slice_path(slice_name).is_dir()

    # ─────────────────────────────────────────────────────────────────
    # Hierarchy
    # ─────────────────────────────────────────────────────────────────

    def ensure_hierarchy(self, vertices: List[VertexInfo]) -> List[str]:
        """
        Create waterlight.slice and one slice per tier, enabling controllers
        on each level. Returns warnings.
        """
        warnings: List[str] = []
        try:
            self.base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DegradedIsolation(f"cannot create {self.base}: {e}") from e

        warnings += self.enable_controllers(self.root)
        warnings += self.enable_controllers(self.base)

        for info in vertices:
            if not info.slice:
                continue
            path = self.slice_path(info.slice)
            try:
                path.mkdir(exist_ok=True)
                logger.info(f"  Created slice: {info.slice}")
            except OSError as e:
                warnings.append(f"cannot create slice {info.slice}: {e}")
                continue
            warnings += self.enable_controllers(path)
        return warnings

    def enable_controllers(self, path: Path) -> List[str]:
        control = path / "cgroup.subtree_control"
        if not control.exists():
            return []
        try:
            control.write_text(CONTROLLERS)
        except OSError as e:
            return [f"cannot enable controllers on {path}: {e}"]
        return []

    def apply_envelope(self, info: VertexInfo) -> List[str]:
        """Write a vertex's default envelope to its slice."""
        if not self.has_slice(info.slice):
            raise DegradedIsolation(f"slice {info.slice or info.id} not present")
        envelope: ResourceEnvelope = info.envelope
        if envelope.is_empty():
            return []
        return self._write_limits(self.slice_path(info.slice), MembraneLimits.from_envelope(envelope))

    # ─────────────────────────────────────────────────────────────────
    # Service groups
    # ─────────────────────────────────────────────────────────────────

    def create_group(self, slice_name: str, service: str) -> Path:
        if not self.has_slice(slice_name):
            raise DegradedIsolation(f"cgroup slice {slice_name} not found")
        path = self.service_path(slice_name, service)
        try:
            path.mkdir(exist_ok=True)
        except OSError as e:
            raise DegradedIsolation(f"cannot create {path}: {e}") from e
        return path

    def apply_limits(self, slice_name: str, service: str, limits: MembraneLimits,
                     keys: Optional[List[str]] = None) -> List[str]:
        """Write limits into a service group, creating it if needed."""
        path = self.create_group(slice_name, service)
        return self._write_limits(path, limits, keys)

    def _write_limits(self, path: Path, limits: MembraneLimits,
                      keys: Optional[List[str]] = None) -> List[str]:
        warnings = []
        for key in keys or list(_CONTROL_FILES):
            control = path / _CONTROL_FILES[key]
            value = to_control_value(limits.get(key))
            try:
                control.write_text(f"{value}\n")
            except OSError as e:
                warnings.append(f"{control.name}={value} not applied: {e}")
        return warnings

    def procs_file(self, slice_name: str, service: str) -> Optional[Path]:
        """cgroup.procs of a live service group, if there is one."""
        if not slice_name:
            return None
        path = self.service_path(slice_name, service)
        return path / "cgroup.procs" if path.is_dir() else None

    def members(self, slice_name: str, service: str) -> List[int]:
        procs = self.procs_file(slice_name, service)
        if procs is None or not procs.exists():
            return []
        try:
            return [int(line) for line in procs.read_text().split() if line.strip().isdigit()]
        except OSError:
            return []

    def remove_group(self, slice_name: str, service: str) -> List[str]:
        """Remove a service group. Raises Busy while processes remain."""
        path = self.service_path(slice_name, service) if slice_name else None
        if path is None or not path.is_dir():
            return []
        pids = self.members(slice_name, service)
        if pids:
            raise Busy(service, pids)
        try:
            os.rmdir(path)
            logger.info(f"Removed cgroup {path}")
        except OSError as e:
            if e.errno == errno.EBUSY:
                raise Busy(service, []) from e
            return [f"cgroup {path} not removed: {e}"]
        return []

    # ─────────────────────────────────────────────────────────────────
    # Live usage
    # ─────────────────────────────────────────────────────────────────

    def usage(self, slice_name: str, service: str) -> ResourceUsage:
        if not slice_name:
            return ResourceUsage(active=False)
        path = self.service_path(slice_name, service)
        if not path.is_dir():
            return ResourceUsage(active=False)

        return ResourceUsage(
            active=True,
            memory_current=_read_int(path / "memory.current"),
            memory_high=_read_text(path / "memory.high"),
            memory_max=_read_text(path / "memory.max"),
            cpu_stat=_read_stat(path / "cpu.stat"),
            pids_current=_read_int(path / "pids.current"),
            pids_max=_read_text(path / "pids.max"),
        )

    def slice_usage(self, slice_name: str) -> ResourceUsage:
        if not self.has_slice(slice_name):
            return ResourceUsage(active=False)
        path = self.slice_path(slice_name)
        return ResourceUsage(
            active=True,
            memory_current=_read_int(path / "memory.current"),
            memory_high=_read_text(path / "memory.high"),
            memory_max=_read_text(path / "memory.max"),
            cpu_stat=_read_stat(path / "cpu.stat"),
            pids_current=_read_int(path / "pids.current"),
            pids_max=_read_text(path / "pids.max"),
        )


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _read_int(path: Path) -> Optional[int]:
    text = _read_text(path)
    if text is None or not text.isdigit():
        return None
    return int(text)


def _read_stat(path: Path) -> Dict[str, int]:
    stats: Dict[str, int] = {}
    text = _read_text(path)
    if not text:
        return stats
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].isdigit():
            stats[parts[0]] = int(parts[1])
    return stats
