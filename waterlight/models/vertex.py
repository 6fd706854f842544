"""
Vertex Models
=============

The eight isolation profiles of the Z2-cubed cube.

Each vertex is addressed by three binary coordinates, in this order:
    epsilon (visibility): 0=kernel, 1=user
    mu (weight):          0=lightweight, 1=heavyweight
    sigma (polarity):     0=production (matter), 1=development (antimatter)

The symbol is "V" followed by the three bits, e.g. V101.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from waterlight.errors import InvalidVertex

MiB = 1024 * 1024
GiB = 1024 * MiB


class Vertex(str, Enum):
    """Vertex identifiers."""
    V000 = "V000"
    V001 = "V001"
    V010 = "V010"
    V011 = "V011"
    V100 = "V100"
    V101 = "V101"
    V110 = "V110"
    V111 = "V111"

    @property
    def epsilon(self) -> int:
        return int(self.value[1])

    @property
    def mu(self) -> int:
        return int(self.value[2])

    @property
    def sigma(self) -> int:
        return int(self.value[3])


class VertexState(str, Enum):
    """Activation state of a vertex in the runtime state table."""
    ACTIVE = "active"
    PENDING = "pending"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class Namespace(str, Enum):
    """Kernel namespaces a membrane can erect around a process."""
    PID = "pid"
    MOUNT = "mount"
    NET = "net"
    UTS = "uts"
    IPC = "ipc"


@dataclass(frozen=True)
class ResourceEnvelope:
    """Default limits applied to a vertex slice. None means unlimited/unset."""
    memory_hard: Optional[int] = None    # memory.max
    memory_soft: Optional[int] = None    # memory.high
    cpu_weight: Optional[int] = None     # cpu.weight
    pids_max: Optional[int] = None       # pids.max

    def is_empty(self) -> bool:
        return (
            self.memory_hard is None
            and self.memory_soft is None
            and self.cpu_weight is None
            and self.pids_max is None
        )


@dataclass(frozen=True)
class VertexInfo:
    """Everything known about one vertex."""
    vertex: Vertex
    name: str
    description: str
    slice: str = ""
    capabilities: Tuple[str, ...] = ()
    envelope: ResourceEnvelope = field(default_factory=ResourceEnvelope)
    namespaces: FrozenSet[Namespace] = frozenset()

    @property
    def id(self) -> str:
        return self.vertex.value

    @property
    def coordinates(self) -> Tuple[int, int, int]:
        return (self.vertex.epsilon, self.vertex.mu, self.vertex.sigma)

    @property
    def is_kernel(self) -> bool:
        return self.vertex.epsilon == 0

    @property
    def is_heavyweight(self) -> bool:
        return self.vertex.mu == 1

    @property
    def is_development(self) -> bool:
        return self.vertex.sigma == 1

    @property
    def supports_membrane(self) -> bool:
        return bool(self.slice)

    def describe_coordinates(self) -> Dict[str, str]:
        eps, mu, sig = self.coordinates
        return {
            "epsilon": "kernel" if eps == 0 else "user",
            "mu": "lightweight" if mu == 0 else "heavyweight",
            "sigma": "production" if sig == 0 else "development",
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "coordinates": list(self.coordinates),
            "slice": self.slice,
            "capabilities": list(self.capabilities),
            "namespaces": sorted(ns.value for ns in self.namespaces),
        }


_LIGHT = ResourceEnvelope(memory_hard=128 * MiB, memory_soft=64 * MiB, cpu_weight=25, pids_max=256)

# Full isolation for lightweight services, per-service for heavyweight,
# nothing extra for the debug vertex (it needs to see other processes).
_FULL_NS = frozenset({Namespace.PID, Namespace.MOUNT, Namespace.NET, Namespace.UTS, Namespace.IPC})
_HEAVY_NS = frozenset({Namespace.PID, Namespace.MOUNT, Namespace.UTS})
_BASE_NS = frozenset({Namespace.PID, Namespace.MOUNT})

VERTEX_TABLE: Dict[Vertex, VertexInfo] = {
    Vertex.V000: VertexInfo(
        Vertex.V000, "Neutrino",
        "Kernel microthreads and zero-overhead watchers",
        slice="neutrino", namespaces=_BASE_NS,
    ),
    Vertex.V001: VertexInfo(
        Vertex.V001, "Antineutrino",
        "Kernel debug probes and eBPF tracing",
        slice="antineutrino", namespaces=_BASE_NS,
    ),
    Vertex.V010: VertexInfo(
        Vertex.V010, "Neutron",
        "Core kernel services (scheduler, memory, VFS)",
    ),
    Vertex.V011: VertexInfo(
        Vertex.V011, "Antineutron",
        "Kernel instrumentation and crash analysis",
    ),
    Vertex.V100: VertexInfo(
        Vertex.V100, "Photon",
        "Lightweight user-space production daemons",
        slice="photon",
        capabilities=("cap_net_bind_service",),
        envelope=_LIGHT,
        namespaces=_FULL_NS,
    ),
    Vertex.V101: VertexInfo(
        Vertex.V101, "Antiphoton",
        "Lightweight development tools",
        slice="antiphoton",
        capabilities=("cap_net_bind_service", "cap_sys_ptrace"),
        envelope=_LIGHT,
        namespaces=_FULL_NS,
    ),
    Vertex.V110: VertexInfo(
        Vertex.V110, "Electron",
        "Full user-space production services",
        slice="electron",
        capabilities=("cap_net_bind_service", "cap_setuid", "cap_setgid"),
        envelope=ResourceEnvelope(memory_hard=None, memory_soft=1 * GiB, cpu_weight=100, pids_max=4096),
        namespaces=_HEAVY_NS,
    ),
    Vertex.V111: VertexInfo(
        Vertex.V111, "Positron",
        "Debug and test environments",
        slice="positron",
        capabilities=("cap_net_bind_service", "cap_sys_ptrace", "cap_sys_admin", "cap_dac_read_search"),
        envelope=ResourceEnvelope(memory_hard=None, memory_soft=2 * GiB, cpu_weight=200, pids_max=16384),
        namespaces=frozenset(),
    ),
}

VertexRef = Union[Vertex, VertexInfo, str]


def to_vertex(vertex_id: VertexRef) -> Vertex:
    """Coerce a string, Vertex or VertexInfo into a Vertex, raising InvalidVertex."""
    if isinstance(vertex_id, Vertex):
        return vertex_id
    if isinstance(vertex_id, VertexInfo):
        return vertex_id.vertex
    try:
        return Vertex(str(vertex_id).strip().upper())
    except ValueError:
        raise InvalidVertex(vertex_id) from None


def lookup(vertex_id: VertexRef) -> VertexInfo:
    """Get the full description of a vertex."""
    return VERTEX_TABLE[to_vertex(vertex_id)]


def from_coordinates(epsilon: int, mu: int, sigma: int) -> VertexInfo:
    """Get the vertex at a coordinate triple."""
    for bit in (epsilon, mu, sigma):
        if bit not in (0, 1):
            raise InvalidVertex(f"V{epsilon}{mu}{sigma}")
    return lookup(f"V{epsilon}{mu}{sigma}")


def partner(vertex_id: VertexRef) -> VertexInfo:
    """Chiral partner: same vertex with the polarity bit flipped."""
    eps, mu, sig = lookup(vertex_id).coordinates
    return from_coordinates(eps, mu, 1 - sig)


def neighbors(vertex_id: VertexRef) -> Dict[str, VertexInfo]:
    """Structural neighbours across the visibility and weight edges."""
    eps, mu, sig = lookup(vertex_id).coordinates
    return {
        "visibility": from_coordinates(1 - eps, mu, sig),
        "weight": from_coordinates(eps, 1 - mu, sig),
    }


def all_vertices() -> List[VertexInfo]:
    return [VERTEX_TABLE[v] for v in Vertex]


def development_vertices() -> List[VertexInfo]:
    return [info for info in all_vertices() if info.is_development]


def production_vertices() -> List[VertexInfo]:
    return [info for info in all_vertices() if not info.is_development]


def membrane_vertices() -> List[VertexInfo]:
    """Vertices that own a cgroup slice."""
    return [info for info in all_vertices() if info.supports_membrane]
