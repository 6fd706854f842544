"""
Waterlight test configuration.

Nothing here needs root: the cgroup tree lives under tmp_path, processes are
launched by a fake launcher and OS actions go to a recording host.
"""

import logging
import signal
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from waterlight.cgroup import CgroupTree
from waterlight.config import WaterlightPaths
from waterlight.host import ShutdownAction
from waterlight.isolation import LaunchResult
from waterlight.membrane import MembraneController
from waterlight.models.vertex import membrane_vertices
from waterlight.services import ServiceCatalog
from waterlight.store import MemoryStateStore


class FakeLauncher:
    """Process launcher that hands out pids without starting anything."""

    def __init__(self, has_unshare: bool = True):
        self.has_unshare = has_unshare
        self.next_pid = 1000
        self.live: Set[int] = set()
        self.stubborn: Set[int] = set()   # ignore SIGTERM
        self.launched: List[Dict] = []
        self.signals: List[tuple] = []
        self._exited: List[int] = []

    def launch(self, argv, namespaces=frozenset(), cgroup_procs=None, env=None) -> LaunchResult:
        pid = self.next_pid
        self.next_pid += 1
        self.live.add(pid)
        self.launched.append({
            "pid": pid,
            "argv": list(argv),
            "namespaces": frozenset(namespaces),
            "cgroup_procs": cgroup_procs,
        })

        warnings = []
        if not self.has_unshare:
            warnings.append("unshare not found, running without namespace isolation")
        if cgroup_procs is not None:
            with open(cgroup_procs, "a") as f:
                f.write(f"{pid}\n")
        else:
            warnings.append("no cgroup for process, resource limits not enforced")
        return LaunchResult(pid=pid, argv=list(argv), isolated=self.has_unshare, warnings=warnings)

    def alive(self, pid: int) -> bool:
        return pid in self.live

    def signal(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        self.signals.append((pid, sig))
        if pid not in self.live:
            return False
        if sig == signal.SIGKILL or (sig == signal.SIGTERM and pid not in self.stubborn):
            self.exit(pid)
        return True

    def stop(self, pid: int, grace: float = 2.0) -> bool:
        if not self.signal(pid, signal.SIGTERM):
            return False
        if pid in self.live:
            self.signal(pid, signal.SIGKILL)
        return True

    def exit(self, pid: int) -> None:
        """Simulate the process terminating on its own."""
        self.live.discard(pid)
        self._exited.append(pid)

    def reap(self) -> List[int]:
        reaped, self._exited = self._exited, []
        return reaped

    def namespaces_of(self, pid: int) -> Dict[str, str]:
        if pid not in self.live:
            return {}
        return {"pid": f"pid:[{4026531000 + pid}]", "mnt": f"mnt:[{4026532000 + pid}]"}


class RecordingHost:
    """HostSystem stand-in that records every action."""

    def __init__(self, mounted=(), fail_mounts=(), fail_modules=()):
        self.mounted: Set[str] = set(mounted)
        self.fail_mounts = set(fail_mounts)
        self.fail_modules = set(fail_modules)
        self.calls: List[tuple] = []
        self.emergency = False
        self.terminal: Optional[ShutdownAction] = None

    def is_mounted(self, target: str) -> bool:
        return target in self.mounted

    def mount(self, fstype, source, target, options=None) -> None:
        self.calls.append(("mount", fstype, target))
        if target in self.fail_mounts:
            raise OSError(f"mount {target}: permission denied")
        self.mounted.add(target)

    def load_module(self, module: str) -> None:
        self.calls.append(("modprobe", module))
        if module in self.fail_modules:
            raise OSError(f"modprobe {module}: not found")

    def seed_entropy(self, seed_file: Path) -> bool:
        self.calls.append(("seed_entropy", str(seed_file)))
        return Path(seed_file).exists()

    def save_entropy(self, seed_file: Path) -> None:
        self.calls.append(("save_entropy", str(seed_file)))
        Path(seed_file).parent.mkdir(parents=True, exist_ok=True)
        Path(seed_file).write_bytes(b"\0" * 512)

    def set_hostname(self, hostname: str) -> None:
        self.calls.append(("hostname", hostname))

    def set_timezone(self, timezone: str) -> bool:
        self.calls.append(("timezone", timezone))
        return True

    def sync(self) -> None:
        self.calls.append(("sync",))

    def terminal_action(self, action: ShutdownAction) -> None:
        self.calls.append(("terminal", action))
        self.terminal = action

    def emergency_shell(self) -> None:
        self.calls.append(("emergency",))
        self.emergency = True

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def _restore_root_handlers():
    """The boot sequencer attaches a boot.log handler; drop it after each test."""
    root = logging.getLogger()
    before = list(root.handlers)
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def paths(tmp_path) -> WaterlightPaths:
    return WaterlightPaths.under(tmp_path)


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def cgroups(paths) -> CgroupTree:
    tree = CgroupTree(paths.cgroup_root)
    tree.ensure_hierarchy(membrane_vertices())
    return tree


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def membranes(store, cgroups, launcher) -> MembraneController:
    return MembraneController(store, cgroups, launcher)


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


@pytest.fixture
def catalog() -> ServiceCatalog:
    return ServiceCatalog()


@pytest.fixture
def make_script():
    """Factory for executable shell scripts."""
    def _make(path: Path, body: str = "exit 0") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(0o755)
        return path
    return _make
