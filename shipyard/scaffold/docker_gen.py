"""Dockerfile, Docker Compose and nginx generation.

Renders the templates under ``templates/`` into the application root:

* ``Dockerfile`` -- multi-stage build (frontend stage, backend stage, runtime)
* ``docker-compose.yml`` -- frontend, backend, redis, postgres, reverse proxy
* ``nginx.conf`` -- reverse proxy in front of frontend and backend
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from shipyard.builder import detect_toolchain
from shipyard.config import Config

from .templates import TemplateRenderer

# Per backend toolchain: build-stage steps, what to copy into the runtime
# stage, runtime setup and the container command.
_BACKEND_RECIPES: dict[str, dict[str, Any]] = {
    "node": {
        "build": ["npm ci || npm install", "npm run build --if-present", "npm prune --omit=dev"],
        "runtime_image": "node:20-alpine",
        "artifact": "",
        "artifact_dest": "./",
        "runtime_setup": [],
        "cmd": ["npm", "start"],
    },
    "python": {
        "build": ["python -m compileall -q ."],
        "runtime_image": "python:3.12-slim",
        "artifact": "",
        "artifact_dest": "./",
        "runtime_setup": [
            "if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; "
            "else pip install --no-cache-dir .; fi"
        ],
        "cmd": ["python", "-m", "app"],
    },
    "maven": {
        "build": ["mvn -B -DskipTests package"],
        "runtime_image": "eclipse-temurin:17-jre",
        "artifact": "target/*.jar",
        "artifact_dest": "./app.jar",
        "runtime_setup": [],
        "cmd": ["java", "-jar", "app.jar"],
    },
    "gradle": {
        "build": ["gradle build -x test"],
        "runtime_image": "eclipse-temurin:17-jre",
        "artifact": "build/libs/*.jar",
        "artifact_dest": "./app.jar",
        "runtime_setup": [],
        "cmd": ["java", "-jar", "app.jar"],
    },
    "go": {
        "build": ["go mod download", "CGO_ENABLED=0 go build -o /src/backend/bin/server ."],
        "runtime_image": "alpine:3.19",
        "artifact": "bin/server",
        "artifact_dest": "./server",
        "runtime_setup": [],
        "cmd": ["./server"],
    },
}


def _network_alias(host: str, service: str) -> str:
    """Return the hostname part of *host*, or ``""`` if it is the service name."""
    hostname = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
    return "" if hostname in ("", service) else hostname


class ScaffoldError(Exception):
    """Raised when a deployment file cannot be generated."""


class DockerGenerator:
    """Generates the Dockerfile, compose file and nginx config for a project."""

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    @staticmethod
    def compose_context(config: Config) -> dict[str, Any]:
        """Template context for ``docker-compose.yml`` and ``nginx.conf``.

        Service keys are always ``redis`` and ``postgres``.  A custom
        ``redis_host``/``postgres_host`` becomes a network alias on that
        service so the backend can still resolve it.
        """
        compose = config.compose.as_context()
        return {
            "project_name": config.project_name,
            "frontend_dir": config.structure.frontend_dir,
            "backend_dir": config.structure.backend_dir,
            "redis_alias": _network_alias(compose["redis_host"], "redis"),
            "postgres_alias": _network_alias(compose["postgres_host"], "postgres"),
            **compose,
        }

    @staticmethod
    def dockerfile_context(config: Config) -> dict[str, Any]:
        """Template context for the multi-stage ``Dockerfile``.

        Raises:
            ScaffoldError: If the frontend is not a node project or the
                backend toolchain cannot be detected.
        """
        frontend = detect_toolchain(config.frontend_path)
        if frontend is None or frontend.name != "node":
            raise ScaffoldError(
                f"Cannot generate a Dockerfile: {config.frontend_path} has no package.json"
            )
        backend = detect_toolchain(config.backend_path)
        if backend is None:
            raise ScaffoldError(
                f"Cannot generate a Dockerfile: no known manifest in {config.backend_path}"
            )

        recipe = _BACKEND_RECIPES[backend.name]
        return {
            "project_name": config.project_name,
            "frontend_dir": config.structure.frontend_dir,
            "backend_dir": config.structure.backend_dir,
            "frontend_image": frontend.builder_image,
            "frontend_install": frontend.install[0],
            "frontend_artifact_dir": config.structure.frontend_artifact_dir,
            "backend_toolchain": backend.name,
            "backend_image": backend.builder_image,
            "backend_build": recipe["build"],
            "backend_artifact": recipe["artifact"],
            "backend_artifact_dest": recipe["artifact_dest"],
            "runtime_image": recipe["runtime_image"],
            "runtime_setup": recipe["runtime_setup"],
            "backend_cmd": recipe["cmd"],
            "container_port": config.docker.container_port,
        }

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_dockerfile(self, config: Config, output_path: Path | None = None) -> Path:
        """Render the multi-stage Dockerfile (defaults to ``config.dockerfile_path``)."""
        context = self.dockerfile_context(config)
        return await self.renderer.render_to_file(
            "Dockerfile.j2", output_path or config.dockerfile_path, context
        )

    async def generate_compose(self, config: Config, output_path: Path | None = None) -> Path:
        """Render ``docker-compose.yml`` with the five-service topology."""
        return await self.renderer.render_to_file(
            "docker-compose.yml.j2",
            output_path or config.compose_path,
            self.compose_context(config),
        )

    async def generate_nginx(self, config: Config, output_path: Path | None = None) -> Path:
        """Render the reverse-proxy ``nginx.conf``."""
        return await self.renderer.render_to_file(
            "nginx.conf.j2",
            output_path or config.nginx_path,
            self.compose_context(config),
        )
