"""
Errors
======

Exception taxonomy shared by every Waterlight component.

    NotFound           - referenced service/vertex/descriptor is absent
    InvalidVertex      - vertex id outside the fixed eight
    UnsupportedVertex  - vertex has no enforceable boundary (kernel space)
    Busy               - grouping still holds live processes
    DegradedIsolation  - enforcement/isolation mechanism unavailable
    Fatal              - a boot phase cannot proceed at all
"""

from __future__ import annotations


class WaterlightError(Exception):
    """Base class for all Waterlight errors."""


class NotFound(WaterlightError):
    """A service, vertex or descriptor does not exist."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"No {kind} found for '{name}'")


class InvalidVertex(WaterlightError):
    """Unknown vertex id."""

    def __init__(self, vertex_id: object):
        self.vertex_id = vertex_id
        super().__init__(
            f"Unknown vertex '{vertex_id}' "
            "(valid: V000 V001 V010 V011 V100 V101 V110 V111)"
        )


class UnsupportedVertex(WaterlightError):
    """The vertex cannot carry a membrane."""

    def __init__(self, vertex_id: str, reason: str = "kernel-space vertex has no cgroup slice"):
        self.vertex_id = vertex_id
        super().__init__(f"Vertex {vertex_id} does not support membranes: {reason}")


class Busy(WaterlightError):
    """A cgroup still contains live processes."""

    def __init__(self, name: str, pids: list):
        self.name = name
        self.pids = pids
        super().__init__(
            f"Membrane '{name}' still holds {len(pids)} live process(es); stop them first"
        )


class DegradedIsolation(WaterlightError):
    """
    Raised by the cgroup and namespace backends when their mechanism is
    unavailable. Callers record it as a warning and carry on.
    """


class Fatal(WaterlightError):
    """A boot phase could not be initialized."""

    def __init__(self, phase: str, reason: str):
        self.phase = phase
        self.reason = reason
        super().__init__(f"{phase} phase failed: {reason}")
