"""
Isolation
=========

Launching service processes inside namespaces, and the small set of process
primitives (liveness, signals, reaping) the rest of the system needs.

Namespaces are erected with util-linux unshare(1). Without it the command is
executed directly and the caller is told isolation is degraded.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from waterlight.errors import DegradedIsolation
from waterlight.models.vertex import Namespace

logger = logging.getLogger(__name__)

_UNSHARE_FLAGS = {
    Namespace.PID: ["--pid", "--mount-proc"],
    Namespace.MOUNT: ["--mount"],
    Namespace.NET: ["--net"],
    Namespace.UTS: ["--uts"],
    Namespace.IPC: ["--ipc"],
}


def unshare_flags(namespaces: FrozenSet[Namespace]) -> List[str]:
    """unshare(1) arguments for a namespace set, in a stable order."""
    flags: List[str] = []
    for ns in Namespace:
        if ns in namespaces:
            for flag in _UNSHARE_FLAGS[ns]:
                if flag not in flags:
                    flags.append(flag)
    # --mount-proc implies a new mount namespace.
    if "--mount-proc" in flags and "--mount" in flags:
        flags.remove("--mount")
    # The service is unshare's child; it must not outlive the recorded pid.
    flags += ["--fork", "--kill-child"]
    return flags


@dataclass
class LaunchResult:
    """A started process and how well it is isolated."""
    pid: int
    argv: List[str]
    isolated: bool = True
    warnings: List[str] = field(default_factory=list)


class ProcessLauncher:
    """Starts, probes and signals service processes."""

    def __init__(self, unshare_path: Optional[str] = None):
        self._unshare = unshare_path if unshare_path is not None else shutil.which("unshare")
        self._children: Dict[int, subprocess.Popen] = {}

    @property
    def has_unshare(self) -> bool:
        return bool(self._unshare)

    def build_argv(self, argv: List[str], namespaces: FrozenSet[Namespace]) -> List[str]:
        if not self._unshare:
            raise DegradedIsolation("unshare not found, running without namespace isolation")
        return [self._unshare] + unshare_flags(namespaces) + ["--"] + list(argv)

    def launch(
        self,
        argv: List[str],
        namespaces: FrozenSet[Namespace] = frozenset(),
        cgroup_procs: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> LaunchResult:
        """
        Start argv asynchronously.

        When cgroup_procs is given the child writes its own pid there before
        exec, so the whole process tree is born inside the membrane.
        """
        warnings: List[str] = []
        isolated = True
        try:
            full_argv = self.build_argv(argv, namespaces)
        except DegradedIsolation as e:
            warnings.append(str(e))
            isolated = False
            full_argv = list(argv)

        preexec = None
        if cgroup_procs is not None:
            procs_path = str(cgroup_procs)

            def preexec() -> None:
                try:
                    with open(procs_path, "a") as f:
                        f.write(f"{os.getpid()}\n")
                except OSError:
                    # Not fatal: the process simply runs in the parent group.
                    pass
        else:
            warnings.append("no cgroup for process, resource limits not enforced")

        proc = subprocess.Popen(
            full_argv,
            env=env,
            stdin=subprocess.DEVNULL,
            preexec_fn=preexec,
            start_new_session=True,
        )
        self._children[proc.pid] = proc
        logger.info(f"Launched pid {proc.pid}: {' '.join(full_argv)}")
        return LaunchResult(pid=proc.pid, argv=full_argv, isolated=isolated, warnings=warnings)

    def alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        proc = self._children.get(pid)
        if proc is not None and proc.poll() is not None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def signal(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        """
        Signal a service; False if it is already gone.

        Launched services lead their own session, so the whole process group
        is signalled: the unshare wrapper and the service it forked. Pids that
        do not lead a group (plain pid files) get a direct kill.
        """
        if pid <= 0:
            return False
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            pass
        try:
            os.kill(pid, sig)
            return True
        except ProcessLookupError:
            return False

    def stop(self, pid: int, grace: float = 2.0) -> bool:
        """SIGTERM, then SIGKILL if still alive after grace seconds."""
        if not self.signal(pid, signal.SIGTERM):
            return False
        deadline = time.monotonic() + grace
        while self.alive(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        if self.alive(pid):
            # Namespace init processes ignore SIGTERM without a handler.
            logger.warning(f"pid {pid} ignored SIGTERM, killing")
            self.signal(pid, signal.SIGKILL)
        return True

    def reap(self) -> List[int]:
        """Collect every terminated child (we may be process 1)."""
        reaped: List[int] = []
        while True:
            try:
                pid, _status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            reaped.append(pid)
            proc = self._children.pop(pid, None)
            if proc is not None:
                proc.returncode = os.waitstatus_to_exitcode(_status)
        return reaped

    def namespaces_of(self, pid: int) -> Dict[str, str]:
        """Namespace identities of a live process from /proc."""
        ns_dir = Path(f"/proc/{pid}/ns")
        result: Dict[str, str] = {}
        if not ns_dir.is_dir():
            return result
        for entry in sorted(ns_dir.iterdir()):
            try:
                result[entry.name] = os.readlink(entry)
            except OSError:
                result[entry.name] = "?"
        return result
