"""
Configuration
=============

Read-only access to the boot configuration (TOML, sectioned key/value) and
the filesystem layout every component works against.

A missing file or key always resolves to the documented default.

Example /etc/waterlight/alpha.toml:

    [boot]
    mode = "production"      # or sigma = 0 / 1

    [hydrogen]
    modules = ["overlay", "br_netfilter"]

    [helium]
    hostname = "waterlight"
    timezone = "UTC"

    [carbon]
    services = ["syslogd", "crond"]

    [oxygen]
    defer_development = false   # hold development services until a flip

    [supervision]
    interval = 5.0
    grace = 2.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

from waterlight.models.mode import Mode

logger = logging.getLogger(__name__)


@dataclass
class WaterlightPaths:
    """Filesystem layout. Every path can be re-rooted for tests or chroots."""
    conf_dir: Path = Path("/etc/waterlight")
    run_dir: Path = Path("/run/waterlight")
    log_dir: Path = Path("/var/waterlight/log")
    state_dir: Path = Path("/var/waterlight/state")
    cgroup_root: Path = Path("/sys/fs/cgroup")
    services_dir: Path = Path("/etc/waterlight/services")
    initd_dir: Path = Path("/etc/init.d")

    @property
    def alpha_conf(self) -> Path:
        return self.conf_dir / "alpha.toml"

    @property
    def fusion_dir(self) -> Path:
        return self.conf_dir / "fusion"

    @property
    def membrane_dir(self) -> Path:
        return self.run_dir / "membrane"

    @property
    def random_seed(self) -> Path:
        return self.state_dir / "random-seed"

    @classmethod
    def under(cls, root: Path) -> WaterlightPaths:
        """Layout rooted at an arbitrary directory instead of /."""
        root = Path(root)
        return cls(
            conf_dir=root / "etc" / "waterlight",
            run_dir=root / "run" / "waterlight",
            log_dir=root / "var" / "waterlight" / "log",
            state_dir=root / "var" / "waterlight" / "state",
            cgroup_root=root / "sys" / "fs" / "cgroup",
            services_dir=root / "etc" / "waterlight" / "services",
            initd_dir=root / "etc" / "init.d",
        )


class ConfigStore:
    """Sectioned key/value accessor over a TOML file."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        self._data: Dict[str, Any] = data or {}
        self.path = path

    @classmethod
    def load(cls, path: Path) -> ConfigStore:
        """Load from disk; a missing or unreadable file yields all defaults."""
        path = Path(path)
        if not path.exists():
            logger.info(f"No configuration at {path}, using defaults")
            return cls(path=path)
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to read configuration {path}: {e}; using defaults")
            return cls(path=path)
        return cls(data, path=path)

    def section(self, name: str) -> Dict[str, Any]:
        value = self._data.get(name, {})
        return value if isinstance(value, dict) else {}

    def get(self, section: str, key: str, default: Any = None) -> Any:
        value = self.section(section).get(key)
        if value is None or value == "":
            return default
        return value

    def get_list(self, section: str, key: str, default: Optional[List[str]] = None) -> List[str]:
        """Lists may be written as TOML arrays or space-separated strings."""
        value = self.get(section, key)
        if value is None:
            return list(default or [])
        if isinstance(value, str):
            return value.split()
        return [str(v) for v in value]

    def get_float(self, section: str, key: str, default: float) -> float:
        value = self.get(section, key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid number for [{section}] {key}: {value!r}; using {default}")
            return default

    def get_mode(self) -> Mode:
        raw = self.get("boot", "mode")
        if raw is None:
            raw = self.get("boot", "sigma", 0)
        try:
            return Mode.parse(raw)
        except ValueError:
            logger.warning(f"Invalid boot mode {raw!r}; defaulting to production")
            return Mode.PRODUCTION


@dataclass
class BootConfig:
    """Typed view of the boot configuration with its defaults."""
    mode: Mode = Mode.PRODUCTION
    verbose: bool = False
    modules: List[str] = field(default_factory=list)
    hostname: str = "waterlight"
    timezone: str = "UTC"
    carbon_services: List[str] = field(default_factory=lambda: ["syslogd", "crond"])
    defer_development: bool = False
    supervision_interval: float = 5.0
    shutdown_grace: float = 2.0

    @classmethod
    def from_store(cls, store: ConfigStore) -> BootConfig:
        defaults = cls()
        return cls(
            mode=store.get_mode(),
            verbose=bool(store.get("boot", "verbose", False)),
            modules=store.get_list("hydrogen", "modules"),
            hostname=str(store.get("helium", "hostname", defaults.hostname)),
            timezone=str(store.get("helium", "timezone", defaults.timezone)),
            carbon_services=store.get_list("carbon", "services", defaults.carbon_services),
            defer_development=bool(store.get("oxygen", "defer_development", False)),
            supervision_interval=store.get_float("supervision", "interval", defaults.supervision_interval),
            shutdown_grace=store.get_float("supervision", "grace", defaults.shutdown_grace),
        )

    @classmethod
    def load(cls, path: Path) -> BootConfig:
        return cls.from_store(ConfigStore.load(path))
