"""
Host System
===========

The OS-level actions process 1 performs: mounts, kernel modules, entropy,
hostname, timezone, sync, and the terminal reboot/halt/poweroff.

Boot code only talks to a HostSystem, so tests can substitute a recorder.
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

SEED_BYTES = 512


class ShutdownAction(str, Enum):
    """Terminal actions, one per shutdown signal."""
    REBOOT = "reboot"
    HALT = "halt"
    POWEROFF = "poweroff"


class HostSystem:
    """Real implementation backed by the running kernel."""

    def __init__(self, etc_dir: Path = Path("/etc"), zoneinfo_dir: Path = Path("/usr/share/zoneinfo")):
        self.etc_dir = Path(etc_dir)
        self.zoneinfo_dir = Path(zoneinfo_dir)

    def _run(self, argv: List[str]) -> None:
        try:
            subprocess.run(argv, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace").strip()
            raise OSError(f"{' '.join(argv)} failed ({e.returncode}): {stderr}") from e

    # Mounts ----------------------------------------------------------

    def is_mounted(self, target: str) -> bool:
        try:
            with open("/proc/self/mounts") as f:
                for line in f:
                    parts = line.split()
                    if len(parts) > 1 and parts[1] == target:
                        return True
            return False
        except OSError:
            return os.path.ismount(target)

    def mount(self, fstype: str, source: str, target: str, options: Optional[str] = None) -> None:
        Path(target).mkdir(parents=True, exist_ok=True)
        argv = ["mount", "-t", fstype]
        if options:
            argv += ["-o", options]
        self._run(argv + [source, target])

    # Kernel modules --------------------------------------------------

    def load_module(self, module: str) -> None:
        self._run(["modprobe", module])

    # Entropy ---------------------------------------------------------

    def seed_entropy(self, seed_file: Path) -> bool:
        if not seed_file.exists():
            return False
        with open(seed_file, "rb") as src, open("/dev/urandom", "wb") as dst:
            dst.write(src.read())
        return True

    def save_entropy(self, seed_file: Path) -> None:
        seed_file.parent.mkdir(parents=True, exist_ok=True)
        seed_file.write_bytes(os.urandom(SEED_BYTES))

    # Identity --------------------------------------------------------

    def set_hostname(self, hostname: str) -> None:
        try:
            (self.etc_dir / "hostname").write_text(f"{hostname}\n")
        except OSError as e:
            logger.warning(f"Cannot write /etc/hostname: {e}")
        socket.sethostname(hostname)

    def set_timezone(self, timezone: str) -> bool:
        zone = self.zoneinfo_dir / timezone
        if not zone.is_file():
            return False
        localtime = self.etc_dir / "localtime"
        tmp = localtime.with_name(".localtime.tmp")
        tmp.unlink(missing_ok=True)
        tmp.symlink_to(zone)
        os.replace(tmp, localtime)
        return True

    # Shutdown --------------------------------------------------------

    def sync(self) -> None:
        os.sync()

    def terminal_action(self, action: ShutdownAction) -> None:
        for binary in (f"/sbin/{action.value}", action.value):
            try:
                os.execvp(binary, [binary, "-f"])
            except OSError as e:
                logger.error(f"{binary} -f failed: {e}")

    def emergency_shell(self) -> None:
        """Replace process 1 with a shell. Never returns; never raises."""
        for shell in ("/bin/sh", "/bin/busybox"):
            try:
                argv = [shell] if not shell.endswith("busybox") else [shell, "sh"]
                os.execv(shell, argv)
            except OSError as e:
                logger.critical(f"Cannot exec {shell}: {e}")
        while True:
            time.sleep(3600)
