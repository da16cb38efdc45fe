"""
Per-project configuration store reader.

Each sleeping project has a ``<config_dir>/projects/<name>.conf`` file of
``KEY="VALUE"`` lines written by pet-cli. Only ``PROJECT_PORT`` is required
here; every parseable pair is kept for diagnostics.
"""

import os
import re
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigNotFound, PortNotConfigured

PORT_KEY = "PROJECT_PORT"

_LINE_PATTERN = re.compile(r'^([A-Z_]+)="([^"]*)"')
_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


class ProjectConfig(BaseModel):
    """Activation parameters of one project, loaded for a single wake attempt."""

    name: str
    port: int = Field(..., ge=1, le=65535)
    values: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


def parse_config_text(content: str) -> Dict[str, str]:
    """Parse KEY="VALUE" lines; anything else is ignored."""
    values = {}
    for line in content.splitlines():
        match = _LINE_PATTERN.match(line)
        if match:
            values[match.group(1)] = match.group(2)
    return values


def parse_port(value) -> int:
    """Return value as a TCP port number, raising ValueError if it is not one."""
    port = int(str(value).strip())
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port


class ProjectConfigResolver:
    """Reads project configs from the pet config directory. Never caches."""

    def __init__(self, projects_dir: str):
        self.projects_dir = projects_dir

    def config_path(self, project_name: str) -> str:
        return os.path.join(self.projects_dir, f"{project_name}.conf")

    def resolve(self, project_name: str) -> ProjectConfig:
        # The name comes straight from a request header and becomes a file name.
        if not _SAFE_NAME.match(project_name):
            raise ConfigNotFound(f"Project {project_name} not found", project=project_name)

        path = self.config_path(project_name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            raise ConfigNotFound(f"Project {project_name} not found", project=project_name)

        values = parse_config_text(content)
        raw_port = values.get(PORT_KEY)
        if not raw_port:
            raise PortNotConfigured(f"No port configured for {project_name}", project=project_name)

        try:
            port = parse_port(raw_port)
        except ValueError:
            raise PortNotConfigured(
                f"Invalid port configured for {project_name}: {raw_port}",
                project=project_name,
            )

        return ProjectConfig(name=project_name, port=port, values=values)
