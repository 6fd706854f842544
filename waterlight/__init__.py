"""
Waterlight
==========

A minimal init system that sorts every service into one of eight isolation
profiles (vertices) and wraps it in a membrane: a cgroup, a namespace set
and a capability list.

Architecture:
    Vertex classifier  - the fixed eight-vertex table and its geometry
    Membrane           - per-service resource/isolation boundary
    Boot sequencer     - process 1, five fusion phases plus supervision
    Chirality          - the production/development mode bit
"""

__version__ = "0.1.0"
__codename__ = "Genesis"

from waterlight.models.vertex import Vertex, VertexInfo, VertexState, lookup, partner
from waterlight.models.mode import Mode
from waterlight.models.membrane import MembraneDescriptor, MembraneLimits, Enforcement
from waterlight.errors import (
    WaterlightError, NotFound, InvalidVertex, UnsupportedVertex,
    Busy, DegradedIsolation, Fatal,
)

from waterlight.store import StateStore, MemoryStateStore, FileStateStore
from waterlight.membrane import MembraneController
from waterlight.chirality import ChiralityController
from waterlight.boot import BootSequencer

__all__ = [
    # Models
    "Vertex", "VertexInfo", "VertexState", "lookup", "partner",
    "Mode",
    "MembraneDescriptor", "MembraneLimits", "Enforcement",
    # Errors
    "WaterlightError", "NotFound", "InvalidVertex", "UnsupportedVertex",
    "Busy", "DegradedIsolation", "Fatal",
    # Core
    "StateStore", "MemoryStateStore", "FileStateStore",
    "MembraneController",
    "ChiralityController",
    "BootSequencer",
]
