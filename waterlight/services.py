"""
Service Declarations
====================

Per-service fusion files, one YAML document per service:

    # /etc/waterlight/fusion/nginx.yaml
    identity:
      vertex: V110
      description: Reverse proxy
    lifecycle:
      start_phase: oxygen
      depends_on: syslogd      # advisory only
      restart: on_failure      # advisory only
    membrane:
      capabilities: [cap_net_bind_service]
    exec:
      command: /usr/sbin/nginx
      args: ["-g", "daemon off;"]

The service name is the file stem.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from waterlight.models.vertex import Vertex, lookup, to_vertex
from waterlight.errors import InvalidVertex
from waterlight.models.membrane import check_service_name

logger = logging.getLogger(__name__)

PHASE_NAMES = ("hydrogen", "helium", "carbon", "oxygen", "iron")


class ServiceDeclaration(BaseModel):
    """Declarative definition of one service."""

    name: str
    vertex: str = "V110"
    description: str = ""
    start_phase: str = "oxygen"
    depends_on: Optional[str] = None
    restart: str = "never"
    capabilities: Optional[List[str]] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        return check_service_name(value)

    @field_validator("vertex")
    @classmethod
    def _known_vertex(cls, value: str) -> str:
        try:
            return to_vertex(value).value
        except InvalidVertex as e:
            raise ValueError(str(e)) from None

    @field_validator("start_phase", mode="before")
    @classmethod
    def _phase_name(cls, value: Any) -> str:
        text = str(value).strip().lower()
        if text.isdigit() and 1 <= int(text) <= len(PHASE_NAMES):
            return PHASE_NAMES[int(text) - 1]
        if text not in PHASE_NAMES:
            raise ValueError(f"unknown start phase '{value}'")
        return text

    @property
    def target(self) -> Vertex:
        return Vertex(self.vertex)

    @property
    def is_development(self) -> bool:
        return lookup(self.vertex).is_development

    @classmethod
    def from_document(cls, name: str, data: Dict[str, Any]) -> ServiceDeclaration:
        """Flatten the sectioned YAML layout into a declaration."""
        identity = data.get("identity") or {}
        lifecycle = data.get("lifecycle") or {}
        membrane = data.get("membrane") or {}
        execution = data.get("exec") or {}

        fields: Dict[str, Any] = {"name": name}
        for source, keys in (
            (identity, ("vertex", "description")),
            (lifecycle, ("start_phase", "depends_on", "restart")),
            (membrane, ("capabilities",)),
            (execution, ("command", "args")),
        ):
            for key in keys:
                if source.get(key) is not None:
                    fields[key] = source[key]

        if isinstance(fields.get("args"), str):
            fields["args"] = fields["args"].split()
        if isinstance(fields.get("capabilities"), str):
            fields["capabilities"] = [c.strip() for c in fields["capabilities"].split(",") if c.strip()]
        return cls(**fields)


class ServiceCatalog:
    """All service declarations found in the fusion directory."""

    def __init__(self, declarations: Optional[List[ServiceDeclaration]] = None):
        self._declarations: Dict[str, ServiceDeclaration] = {}
        for decl in declarations or []:
            self.add(decl)

    @classmethod
    def load(cls, fusion_dir: Path) -> ServiceCatalog:
        catalog = cls()
        fusion_dir = Path(fusion_dir)
        if not fusion_dir.is_dir():
            logger.debug(f"No fusion directory at {fusion_dir}")
            return catalog

        for path in sorted(fusion_dir.glob("*.y*ml")):
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
                catalog.add(ServiceDeclaration.from_document(path.stem, data))
            except (OSError, yaml.YAMLError, ValidationError) as e:
                logger.warning(f"Skipping invalid service declaration {path}: {e}")
        logger.info(f"Loaded {len(catalog)} service declarations from {fusion_dir}")
        return catalog

    def add(self, declaration: ServiceDeclaration) -> None:
        self._declarations[declaration.name] = declaration

    def get(self, name: str) -> Optional[ServiceDeclaration]:
        return self._declarations.get(name)

    def all(self) -> List[ServiceDeclaration]:
        return list(self._declarations.values())

    def for_phase(self, phase: str) -> List[ServiceDeclaration]:
        return [d for d in self._declarations.values() if d.start_phase == phase]

    def development(self) -> List[ServiceDeclaration]:
        return [d for d in self._declarations.values() if d.is_development]

    def __len__(self) -> int:
        return len(self._declarations)

    def __contains__(self, name: object) -> bool:
        return name in self._declarations


def resolve_command(
    name: str,
    declaration: Optional[ServiceDeclaration],
    services_dir: Path,
    initd_dir: Path,
) -> Optional[List[str]]:
    """
    Work out the argv that starts a service.

    An explicit exec command wins; otherwise a waterlight service script, then
    an init.d script, each invoked with "start". Returns None if nothing is
    executable.
    """
    if declaration is not None and declaration.command:
        return [declaration.command] + list(declaration.args)

    for script in (Path(services_dir) / name, Path(initd_dir) / name):
        if script.is_file() and os.access(script, os.X_OK):
            return [str(script), "start"]
    return None
