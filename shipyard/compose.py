"""Docker Compose topology inspection.

Parses a ``docker-compose.yml`` into a small model so the service set and
the host ports it publishes can be checked before anything is started.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

EXPECTED_SERVICES: tuple[str, ...] = ("frontend", "backend", "redis", "postgres", "reverse_proxy")
EXPECTED_PORTS: tuple[int, ...] = (80, 5000, 8080)


class ComposeService(BaseModel):
    """One service entry of a compose file."""

    name: str
    image: str = Field(default="")
    host_ports: list[int] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    restart: str = Field(default="")


class ComposeTopology(BaseModel):
    """The services and named volumes of a compose file."""

    services: dict[str, ComposeService] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list)

    def host_ports(self) -> list[int]:
        """Sorted, de-duplicated host ports published by any service."""
        return sorted({p for s in self.services.values() for p in s.host_ports})


def _parse_port(entry: Any) -> int | None:
    """Return the host port of a ``ports:`` entry, or ``None`` if unpublished.

    Handles ``"8080:8080"``, ``"127.0.0.1:80:80"``, ``"5000:5000/tcp"``, bare
    container ports and the long mapping syntax.
    """
    if isinstance(entry, dict):
        published = entry.get("published")
        return int(published) if published not in (None, "") else None
    text = str(entry).split("/", 1)[0]
    parts = text.split(":")
    if len(parts) < 2:
        return None
    return int(parts[-2])


def _parse_environment(raw: Any) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    env: dict[str, str] = {}
    for item in raw or []:
        key, _, value = str(item).partition("=")
        env[key] = value
    return env


def parse_topology(data: dict[str, Any]) -> ComposeTopology:
    """Build a :class:`ComposeTopology` from a parsed compose document."""
    services: dict[str, ComposeService] = {}
    for name, raw in (data.get("services") or {}).items():
        raw = raw or {}
        ports = [p for p in (_parse_port(e) for e in raw.get("ports") or []) if p is not None]
        depends = raw.get("depends_on") or []
        services[name] = ComposeService(
            name=name,
            image=str(raw.get("image", "")),
            host_ports=ports,
            environment=_parse_environment(raw.get("environment")),
            depends_on=list(depends.keys()) if isinstance(depends, dict) else list(depends),
            volumes=[str(v) for v in raw.get("volumes") or []],
            restart=str(raw.get("restart", "")),
        )
    return ComposeTopology(services=services, volumes=list((data.get("volumes") or {}).keys()))


def load_topology(path: str | Path) -> ComposeTopology:
    """Read and parse a compose file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a YAML mapping.
    """
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Not a compose file (expected a mapping): {path}")
    return parse_topology(data)


def validate_topology(
    topology: ComposeTopology,
    expected_services: tuple[str, ...] | list[str] = EXPECTED_SERVICES,
    expected_ports: tuple[int, ...] | list[int] = EXPECTED_PORTS,
) -> list[str]:
    """Return a list of problems; an empty list means the topology is valid.

    Checks that exactly the expected services exist, that exactly the
    expected host ports are published, and that every ``depends_on`` target
    is a declared service.
    """
    problems: list[str] = []
    names = set(topology.services)

    missing = sorted(set(expected_services) - names)
    extra = sorted(names - set(expected_services))
    if missing:
        problems.append(f"Missing services: {', '.join(missing)}")
    if extra:
        problems.append(f"Unexpected services: {', '.join(extra)}")

    ports = topology.host_ports()
    if ports != sorted(set(expected_ports)):
        problems.append(
            f"Published host ports {ports} differ from expected {sorted(set(expected_ports))}"
        )

    for service in topology.services.values():
        for dep in service.depends_on:
            if dep not in names:
                problems.append(f"Service '{service.name}' depends on unknown service '{dep}'")

    return problems
