"""
Membrane Models
===============

Membrane descriptors, live usage snapshots and runtime records.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from waterlight.models.vertex import ResourceEnvelope

# Limit keys in the order they are written to the cgroup.
LIMIT_KEYS = ("memory_hard", "memory_soft", "cpu_weight", "pids_max")

# Names become cgroup directories and state file names.
SERVICE_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.@-]*")


def check_service_name(name: str) -> str:
    """Return name unchanged, or raise ValueError if it is not a safe path component."""
    if not isinstance(name, str) or not SERVICE_NAME_RE.fullmatch(name) or len(name) > 255:
        raise ValueError(f"Invalid service name: {name!r}")
    return name


class MembraneState(str, Enum):
    """Lifecycle states of a membrane."""
    CREATED = "created"
    STRETCHED = "stretched"
    RUPTURED = "ruptured"
    DESTROYED = "destroyed"


class Enforcement(str, Enum):
    """Whether a limit change reached the kernel."""
    APPLIED = "applied"      # written to a live cgroup
    RECORDED = "recorded"    # descriptor only, nothing enforced


@dataclass
class MembraneLimits:
    """Current limits of one membrane. None means unlimited ("max")."""
    memory_soft: Optional[int] = None
    memory_hard: Optional[int] = None
    cpu_weight: Optional[int] = None
    pids_max: Optional[int] = None

    def get(self, key: str) -> Optional[int]:
        return getattr(self, key)

    def set(self, key: str, value: Optional[int]) -> None:
        if key not in LIMIT_KEYS:
            raise KeyError(key)
        setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_soft": self.memory_soft,
            "memory_hard": self.memory_hard,
            "cpu_weight": self.cpu_weight,
            "pids_max": self.pids_max,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MembraneLimits:
        return cls(
            memory_soft=data.get("memory_soft"),
            memory_hard=data.get("memory_hard"),
            cpu_weight=data.get("cpu_weight"),
            pids_max=data.get("pids_max"),
        )

    @classmethod
    def from_envelope(cls, envelope: ResourceEnvelope) -> MembraneLimits:
        return cls(
            memory_soft=envelope.memory_soft,
            memory_hard=envelope.memory_hard,
            cpu_weight=envelope.cpu_weight,
            pids_max=envelope.pids_max,
        )


@dataclass
class MembraneDescriptor:
    """Persisted boundary of one service."""
    service: str
    vertex: str
    slice: str
    limits: MembraneLimits = field(default_factory=MembraneLimits)
    capabilities: List[str] = field(default_factory=list)
    state: MembraneState = MembraneState.CREATED

    # Pre-stretch values, keyed by limit name. First stretch wins.
    stretch_snapshot: Dict[str, Optional[int]] = field(default_factory=dict)
    stretch_expires_at: Optional[float] = None

    created_at: float = field(default_factory=time.time)

    @property
    def is_stretched(self) -> bool:
        return bool(self.stretch_snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "vertex": self.vertex,
            "slice": self.slice,
            "limits": self.limits.to_dict(),
            "capabilities": self.capabilities,
            "state": self.state.value,
            "stretch_snapshot": self.stretch_snapshot,
            "stretch_expires_at": self.stretch_expires_at,
            "created_at": self.created_at,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MembraneDescriptor:
        state = data.get("state", "created")
        if isinstance(state, str):
            state = MembraneState(state)
        return cls(
            service=data["service"],
            vertex=data["vertex"],
            slice=data.get("slice", ""),
            limits=MembraneLimits.from_dict(data.get("limits", {})),
            capabilities=list(data.get("capabilities", [])),
            state=state,
            stretch_snapshot=dict(data.get("stretch_snapshot", {})),
            stretch_expires_at=data.get("stretch_expires_at"),
            created_at=data.get("created_at", time.time()),
        )

    @classmethod
    def from_json(cls, json_str: str) -> MembraneDescriptor:
        return cls.from_dict(json.loads(json_str))


@dataclass
class ResourceUsage:
    """Live counters read from a service cgroup."""
    active: bool = False
    memory_current: Optional[int] = None
    memory_high: Optional[str] = None
    memory_max: Optional[str] = None
    cpu_stat: Dict[str, int] = field(default_factory=dict)
    pids_current: Optional[int] = None
    pids_max: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "memory_current": self.memory_current,
            "memory_high": self.memory_high,
            "memory_max": self.memory_max,
            "cpu_stat": self.cpu_stat,
            "pids_current": self.pids_current,
            "pids_max": self.pids_max,
        }


@dataclass
class RuntimeRecord:
    """A launched service process."""
    service: str
    pid: int
    vertex: str = ""
    command: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "pid": self.pid,
            "vertex": self.vertex,
            "command": self.command,
            "started_at": self.started_at,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RuntimeRecord:
        return cls(
            service=data["service"],
            pid=int(data["pid"]),
            vertex=data.get("vertex", ""),
            command=list(data.get("command", [])),
            started_at=data.get("started_at", time.time()),
        )

    @classmethod
    def from_json(cls, json_str: str) -> RuntimeRecord:
        return cls.from_dict(json.loads(json_str))


@dataclass
class MembraneResult:
    """Outcome of a mutating membrane operation."""
    descriptor: MembraneDescriptor
    enforcement: Enforcement = Enforcement.APPLIED
    changes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.enforcement == Enforcement.RECORDED or bool(self.warnings)


@dataclass
class MembraneReport:
    """Result of inspecting a membrane."""
    descriptor: MembraneDescriptor
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    runtime: Optional[RuntimeRecord] = None
    process_alive: bool = False
    namespaces: Dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.usage.active

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.to_dict(),
            "usage": self.usage.to_dict(),
            "runtime": self.runtime.to_dict() if self.runtime else None,
            "process_alive": self.process_alive,
            "namespaces": self.namespaces,
        }
