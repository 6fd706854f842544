"""Data models for Waterlight."""

from waterlight.models.vertex import (
    Vertex, VertexInfo, VertexState, Namespace, ResourceEnvelope,
)
from waterlight.models.mode import Mode
from waterlight.models.membrane import (
    MembraneState, MembraneLimits, MembraneDescriptor,
    ResourceUsage, RuntimeRecord, Enforcement, MembraneResult, MembraneReport,
)

__all__ = [
    "Vertex", "VertexInfo", "VertexState", "Namespace", "ResourceEnvelope",
    "Mode",
    "MembraneState", "MembraneLimits", "MembraneDescriptor",
    "ResourceUsage", "RuntimeRecord", "Enforcement", "MembraneResult", "MembraneReport",
]
