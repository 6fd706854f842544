"""
State Store
===========

Persisted runtime state shared by the boot sequencer, the membrane controller
and the chirality controller:

    mode bit            /run/waterlight/chirality
    vertex state table  /run/waterlight/vertex-state
    descriptors         /run/waterlight/membrane/<service>.json
    runtime records     /run/waterlight/membrane/<service>.pid
    boot summary        /run/waterlight/boot-summary
    boot complete       /run/waterlight/boot-complete

Everything lives on the /run tmpfs and is reset on reboot.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from waterlight.models.membrane import MembraneDescriptor, RuntimeRecord
from waterlight.models.mode import Mode
from waterlight.models.vertex import Vertex, VertexState

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Interface over persisted runtime state."""

    def initialize(self) -> None:
        """Prepare backing storage. Raises OSError if that is impossible."""

    # Mode ------------------------------------------------------------

    @abstractmethod
    def get_mode(self) -> Mode:
        """Current mode; production when never written."""

    @abstractmethod
    def set_mode(self, mode: Mode) -> None:
        ...

    # Vertex table ----------------------------------------------------

    @abstractmethod
    def get_vertex_states(self) -> Dict[Vertex, VertexState]:
        ...

    @abstractmethod
    def write_vertex_states(self, states: Dict[Vertex, VertexState]) -> None:
        """Replace the whole table."""

    def get_vertex_state(self, vertex: Vertex) -> VertexState:
        return self.get_vertex_states().get(vertex, VertexState.UNKNOWN)

    def set_vertex_state(self, vertex: Vertex, state: VertexState) -> None:
        states = self.get_vertex_states()
        states[vertex] = state
        self.write_vertex_states(states)

    def transition_vertex(self, vertex: Vertex, allowed: tuple, target: VertexState) -> bool:
        """Move a vertex to target only if its current state is in allowed."""
        states = self.get_vertex_states()
        if states.get(vertex, VertexState.UNKNOWN) not in allowed:
            return False
        states[vertex] = target
        self.write_vertex_states(states)
        return True

    # Descriptors -----------------------------------------------------

    @abstractmethod
    def get_descriptor(self, service: str) -> Optional[MembraneDescriptor]:
        ...

    @abstractmethod
    def put_descriptor(self, descriptor: MembraneDescriptor) -> None:
        ...

    @abstractmethod
    def delete_descriptor(self, service: str) -> None:
        ...

    @abstractmethod
    def list_descriptors(self) -> List[MembraneDescriptor]:
        ...

    # Runtime records -------------------------------------------------

    @abstractmethod
    def get_runtime(self, service: str) -> Optional[RuntimeRecord]:
        ...

    @abstractmethod
    def put_runtime(self, record: RuntimeRecord) -> None:
        ...

    @abstractmethod
    def delete_runtime(self, service: str) -> None:
        ...

    @abstractmethod
    def list_runtime(self) -> List[RuntimeRecord]:
        ...

    # Boot ------------------------------------------------------------

    @abstractmethod
    def write_boot_summary(self, summary: Dict[str, str]) -> None:
        ...

    @abstractmethod
    def read_boot_summary(self) -> Dict[str, str]:
        ...

    @abstractmethod
    def mark_boot_complete(self, timestamp: float) -> None:
        ...

    @abstractmethod
    def boot_completed_at(self) -> Optional[float]:
        ...


class MemoryStateStore(StateStore):
    """In-process store, used by tests and dry runs."""

    def __init__(self):
        self._lock = threading.RLock()
        self._mode: Optional[Mode] = None
        self._vertex_states: Dict[Vertex, VertexState] = {}
        self._descriptors: Dict[str, MembraneDescriptor] = {}
        self._runtime: Dict[str, RuntimeRecord] = {}
        self._summary: Dict[str, str] = {}
        self._boot_complete: Optional[float] = None

    def get_mode(self) -> Mode:
        with self._lock:
            return self._mode if self._mode is not None else Mode.PRODUCTION

    def set_mode(self, mode: Mode) -> None:
        with self._lock:
            self._mode = Mode(mode)

    def get_vertex_states(self) -> Dict[Vertex, VertexState]:
        with self._lock:
            return dict(self._vertex_states)

    def write_vertex_states(self, states: Dict[Vertex, VertexState]) -> None:
        with self._lock:
            self._vertex_states = dict(states)

    def get_descriptor(self, service: str) -> Optional[MembraneDescriptor]:
        with self._lock:
            descriptor = self._descriptors.get(service)
            # Hand out copies so callers cannot mutate stored state in place.
            return MembraneDescriptor.from_dict(descriptor.to_dict()) if descriptor else None

    def put_descriptor(self, descriptor: MembraneDescriptor) -> None:
        with self._lock:
            self._descriptors[descriptor.service] = MembraneDescriptor.from_dict(descriptor.to_dict())

    def delete_descriptor(self, service: str) -> None:
        with self._lock:
            self._descriptors.pop(service, None)

    def list_descriptors(self) -> List[MembraneDescriptor]:
        with self._lock:
            return [MembraneDescriptor.from_dict(d.to_dict()) for d in self._descriptors.values()]

    def get_runtime(self, service: str) -> Optional[RuntimeRecord]:
        with self._lock:
            return self._runtime.get(service)

    def put_runtime(self, record: RuntimeRecord) -> None:
        with self._lock:
            self._runtime[record.service] = record

    def delete_runtime(self, service: str) -> None:
        with self._lock:
            self._runtime.pop(service, None)

    def list_runtime(self) -> List[RuntimeRecord]:
        with self._lock:
            return list(self._runtime.values())

    def write_boot_summary(self, summary: Dict[str, str]) -> None:
        with self._lock:
            self._summary = dict(summary)

    def read_boot_summary(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._summary)

    def mark_boot_complete(self, timestamp: float) -> None:
        with self._lock:
            self._boot_complete = timestamp

    def boot_completed_at(self) -> Optional[float]:
        with self._lock:
            return self._boot_complete


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text)
    os.replace(tmp, path)


def _read_key_values(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        line = line.split("#", 1)[0].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


class FileStateStore(StateStore):
    """Store backed by plain files under the run directory."""

    def __init__(self, run_dir: Path):
        self.run_dir = Path(run_dir)
        self.membrane_dir = self.run_dir / "membrane"
        self.chirality_file = self.run_dir / "chirality"
        self.vertex_state_file = self.run_dir / "vertex-state"
        self.summary_file = self.run_dir / "boot-summary"
        self.complete_file = self.run_dir / "boot-complete"
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Create the runtime directories."""
        self.membrane_dir.mkdir(parents=True, exist_ok=True)

    def get_mode(self) -> Mode:
        try:
            return Mode.parse(self.chirality_file.read_text().strip())
        except FileNotFoundError:
            return Mode.PRODUCTION
        except ValueError:
            logger.warning(f"Corrupt chirality file {self.chirality_file}; assuming production")
            return Mode.PRODUCTION

    def set_mode(self, mode: Mode) -> None:
        _atomic_write(self.chirality_file, f"{int(mode)}\n")

    def get_vertex_states(self) -> Dict[Vertex, VertexState]:
        states: Dict[Vertex, VertexState] = {}
        with self._lock:
            for key, value in _read_key_values(self.vertex_state_file).items():
                try:
                    states[Vertex(key)] = VertexState(value)
                except ValueError:
                    logger.warning(f"Ignoring bad vertex-state entry {key}={value}")
        return states

    def write_vertex_states(self, states: Dict[Vertex, VertexState]) -> None:
        lines = [f"{v.value}={states[v].value}" for v in Vertex if v in states]
        with self._lock:
            _atomic_write(self.vertex_state_file, "\n".join(lines) + "\n")

    def transition_vertex(self, vertex: Vertex, allowed: tuple, target: VertexState) -> bool:
        with self._lock:
            return super().transition_vertex(vertex, allowed, target)

    def _descriptor_path(self, service: str) -> Path:
        return self.membrane_dir / f"{service}.json"

    def _pid_path(self, service: str) -> Path:
        return self.membrane_dir / f"{service}.pid"

    def get_descriptor(self, service: str) -> Optional[MembraneDescriptor]:
        path = self._descriptor_path(service)
        try:
            return MembraneDescriptor.from_json(path.read_text())
        except FileNotFoundError:
            return None

    def put_descriptor(self, descriptor: MembraneDescriptor) -> None:
        _atomic_write(self._descriptor_path(descriptor.service), descriptor.to_json())

    def delete_descriptor(self, service: str) -> None:
        self._descriptor_path(service).unlink(missing_ok=True)

    def list_descriptors(self) -> List[MembraneDescriptor]:
        if not self.membrane_dir.is_dir():
            return []
        descriptors = []
        for path in sorted(self.membrane_dir.glob("*.json")):
            try:
                descriptors.append(MembraneDescriptor.from_json(path.read_text()))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Unreadable descriptor {path}: {e}")
        return descriptors

    def get_runtime(self, service: str) -> Optional[RuntimeRecord]:
        path = self._pid_path(service)
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            return None
        # Plain pid files (written by service scripts) are accepted too.
        if text.isdigit():
            return RuntimeRecord(service=service, pid=int(text))
        try:
            return RuntimeRecord.from_json(text)
        except (ValueError, KeyError):
            logger.warning(f"Unreadable runtime record {path}")
            return None

    def put_runtime(self, record: RuntimeRecord) -> None:
        _atomic_write(self._pid_path(record.service), record.to_json())

    def delete_runtime(self, service: str) -> None:
        self._pid_path(service).unlink(missing_ok=True)

    def list_runtime(self) -> List[RuntimeRecord]:
        if not self.membrane_dir.is_dir():
            return []
        records = []
        for path in sorted(self.membrane_dir.glob("*.pid")):
            record = self.get_runtime(path.stem)
            if record is not None:
                records.append(record)
        return records

    def write_boot_summary(self, summary: Dict[str, str]) -> None:
        _atomic_write(self.summary_file, "".join(f"{k}={v}\n" for k, v in summary.items()))

    def read_boot_summary(self) -> Dict[str, str]:
        return _read_key_values(self.summary_file)

    def mark_boot_complete(self, timestamp: float) -> None:
        _atomic_write(self.complete_file, f"{int(timestamp)}\n")

    def boot_completed_at(self) -> Optional[float]:
        try:
            return float(self.complete_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None


def dump_state(store: StateStore) -> str:
    """JSON snapshot of the store, for debugging."""
    return json.dumps({
        "mode": int(store.get_mode()),
        "vertices": {v.value: s.value for v, s in store.get_vertex_states().items()},
        "membranes": [d.to_dict() for d in store.list_descriptors()],
        "runtime": [r.to_dict() for r in store.list_runtime()],
        "boot_summary": store.read_boot_summary(),
    }, indent=2)
