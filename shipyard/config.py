"""Shipyard configuration.

Centralised, typed configuration for the build/deploy pipeline. All settings
use Pydantic v2 models so they can be validated at construction time and
serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, SecretStr

DEFAULT_STAGES: list[str] = [
    "checkout",
    "verify",
    "build",
    "test",
    "image",
    "deploy",
    "health",
    "push",
    "cleanup",
]

# Never written by Config.save().
_SECRET_FIELDS: dict[str, Any] = {
    "registry": {"password"},
    "compose": {"postgres_password"},
}


class BackoffPolicy(BaseModel):
    """Retry schedule for the health poller.

    The default is 30 attempts at a fixed 5s spacing. A ``multiplier`` above
    1.0 turns it into an exponential backoff capped at ``max_interval``.
    """

    # CLI and env overrides assign fields after construction.
    model_config = ConfigDict(validate_assignment=True)

    attempts: int = Field(default=30, ge=1)
    interval: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=30.0, ge=0)

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each attempt after the first."""
        cap = max(self.max_interval, self.interval)
        delay = self.interval
        for _ in range(self.attempts - 1):
            yield min(delay, cap)
            delay *= self.multiplier

    def max_elapsed(self) -> float:
        """Total seconds spent sleeping if every attempt fails."""
        return sum(self.delays())


class HealthConfig(BaseModel):
    """Health polling against the deployed container."""

    policy: BackoffPolicy = Field(default_factory=BackoffPolicy)
    paths: list[str] = Field(default=["/", "/health"])
    host: str = Field(default="localhost")
    url: str = Field(default="", description="Base URL override; defaults to host + app_port")
    request_timeout: float = Field(default=5.0, gt=0)
    strict: bool = Field(
        default=True, description="Fail the pipeline when the poll is exhausted"
    )


class DockerConfig(BaseModel):
    """Image and container naming."""

    image: str = Field(default="webapp")
    container: str = Field(default="webapp")
    container_port: int = Field(default=8080, ge=1, le=65535)
    dockerfile: str = Field(default="Dockerfile")
    manual_fallback: bool = Field(
        default=False,
        description="Skip docker stages with manual instructions when docker is missing",
    )
    build_timeout: int = Field(default=1800, ge=60)
    env: dict[str, str] = Field(default_factory=dict)


class RegistryConfig(BaseModel):
    """Optional image registry to push to."""

    url: str = Field(default="")
    username: str = Field(default="")
    password: SecretStr = Field(default=SecretStr(""))
    push_branches: list[str] = Field(default=["main", "master"])

    @property
    def enabled(self) -> bool:
        return bool(self.url)


class StructureConfig(BaseModel):
    """Expected layout of the application repository."""

    frontend_dir: str = Field(default="frontend")
    backend_dir: str = Field(default="backend")
    frontend_artifact_dir: str = Field(
        default="build", description="Frontend build output, e.g. 'dist' for Vite"
    )
    frontend_manifests: list[str] = Field(default=["package.json"])
    backend_manifests: list[str] = Field(
        default=[
            "package.json",
            "requirements.txt",
            "pyproject.toml",
            "pom.xml",
            "build.gradle",
            "go.mod",
        ]
    )


class TargetCommands(BaseModel):
    """Per-target command overrides. Empty lists keep the detected toolchain."""

    install: list[str] = Field(default_factory=list)
    build: list[str] = Field(default_factory=list)
    lint: list[str] = Field(default_factory=list)
    test: list[str] = Field(default_factory=list)
    timeout: int = Field(default=900, ge=10, description="Per-command timeout in seconds")


class ComposeConfig(BaseModel):
    """Values rendered into docker-compose.yml and nginx.conf."""

    frontend_port: int = Field(default=5000, ge=1, le=65535)
    backend_port: int = Field(default=8080, ge=1, le=65535)
    proxy_port: int = Field(default=80, ge=1, le=65535)
    backend_url: str = Field(default="http://localhost:8080")
    request_origin: str = Field(default="http://localhost")
    redis_host: str = Field(default="redis")
    postgres_host: str = Field(default="postgres")
    postgres_user: str = Field(default="postgres")
    postgres_password: SecretStr = Field(default=SecretStr("postgres"))
    postgres_database: str = Field(default="postgres")
    postgres_image: str = Field(default="postgres:13.2-alpine")
    redis_image: str = Field(default="redis")
    nginx_image: str = Field(default="nginx:1.19-alpine")

    def as_context(self) -> dict[str, Any]:
        """Return a template context with secrets revealed."""
        data = self.model_dump()
        data["postgres_password"] = self.postgres_password.get_secret_value()
        return data


class Config(BaseModel):
    """Global Shipyard configuration.

    Holds every tuneable parameter and derived path used by the pipeline.
    Instances are typically created once by the CLI entry point and then
    passed through the rest of the system.
    """

    root: Path = Field(default=Path("."))
    state_dir: str = Field(default=".shipyard")
    build_number: str = Field(default="dev")
    branch: str = Field(default="")
    app_port: int = Field(default=8080, ge=1, le=65535)
    repo_url: str = Field(default="")
    revision: str = Field(default="")
    strict_tests: bool = Field(default=False)

    structure: StructureConfig = Field(default_factory=StructureConfig)
    frontend: TargetCommands = Field(default_factory=TargetCommands)
    backend: TargetCommands = Field(default_factory=TargetCommands)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    compose: ComposeConfig = Field(default_factory=ComposeConfig)

    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def state_dir_path(self) -> Path:
        """Root of the ``.shipyard/`` metadata directory."""
        return self.root / self.state_dir

    @property
    def state_path(self) -> Path:
        """Path to the persisted pipeline state JSON file."""
        return self.state_dir_path / "pipeline-state.json"

    @property
    def frontend_path(self) -> Path:
        return self.root / self.structure.frontend_dir

    @property
    def backend_path(self) -> Path:
        return self.root / self.structure.backend_dir

    @property
    def dockerfile_path(self) -> Path:
        return self.root / self.docker.dockerfile

    @property
    def compose_path(self) -> Path:
        return self.root / "docker-compose.yml"

    @property
    def nginx_path(self) -> Path:
        return self.root / "nginx.conf"

    # ------------------------------------------------------------------
    # Image references
    # ------------------------------------------------------------------

    @property
    def image_tags(self) -> list[str]:
        """The versioned and ``latest`` tags for this build."""
        return [
            f"{self.docker.image}:{self.build_number}",
            f"{self.docker.image}:latest",
        ]

    @property
    def image_ref(self) -> str:
        """The versioned image reference that gets deployed."""
        return self.image_tags[0]

    def target_commands(self, target: str) -> TargetCommands:
        """Return the command overrides for ``frontend`` or ``backend``."""
        if target == "frontend":
            return self.frontend
        if target == "backend":
            return self.backend
        raise ValueError(f"Unknown build target: {target!r}")

    def target_path(self, target: str) -> Path:
        if target == "frontend":
            return self.frontend_path
        if target == "backend":
            return self.backend_path
        raise ValueError(f"Unknown build target: {target!r}")

    @property
    def project_name(self) -> str:
        """Name used in generated files: the root directory name, or the image name."""
        return self.root.resolve().name or self.docker.image

    def runtime_env(self) -> dict[str, str]:
        """Environment passed to the deployed container."""
        env = {
            "PORT": str(self.docker.container_port),
            "REQUEST_ORIGIN": self.compose.request_origin,
            "REDIS_HOST": self.compose.redis_host,
            "POSTGRES_HOST": self.compose.postgres_host,
            "POSTGRES_USER": self.compose.postgres_user,
            "POSTGRES_PASSWORD": self.compose.postgres_password.get_secret_value(),
            "POSTGRES_DATABASE": self.compose.postgres_database,
        }
        env.update(self.docker.env)
        return env

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Secret fields are left out, so a saved file never holds credentials
        and loading it falls back to the defaults (or the environment, via
        :meth:`from_env`) for them.

        Args:
            path: Destination file. Defaults to ``<state_dir_path>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or (self.state_dir_path / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            self.model_dump_json(indent=2, exclude=_SECRET_FIELDS), encoding="utf-8"
        )
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a configuration from JSON.

        Args:
            path: The JSON file to read.

        Returns:
            A validated ``Config`` instance.
        """
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, base: "Config | None" = None) -> "Config":
        """Build a ``Config`` from environment variables.

        Values found in the environment override those of *base* (or the
        defaults). Recognised variables (all optional):
            BUILD_NUMBER, APP_PORT, BRANCH_NAME, GIT_BRANCH,
            REGISTRY_URL, REGISTRY_USERNAME, REGISTRY_PASSWORD,
            REQUEST_ORIGIN, REDIS_HOST, POSTGRES_HOST, POSTGRES_USER,
            POSTGRES_PASSWORD, POSTGRES_DATABASE,
            SHIPYARD_IMAGE, SHIPYARD_CONTAINER, SHIPYARD_HEALTH_RETRIES,
            SHIPYARD_HEALTH_INTERVAL, SHIPYARD_STAGES, SHIPYARD_MANUAL_FALLBACK.
        """
        config = base.model_copy(deep=True) if base is not None else cls()
        env = os.environ

        if env.get("BUILD_NUMBER"):
            config.build_number = env["BUILD_NUMBER"]
        if env.get("APP_PORT"):
            config.app_port = int(env["APP_PORT"])
        branch = env.get("BRANCH_NAME") or env.get("GIT_BRANCH")
        if branch:
            # Jenkins reports "origin/main" for GIT_BRANCH.
            config.branch = branch.split("/", 1)[1] if branch.startswith("origin/") else branch

        if env.get("REGISTRY_URL"):
            config.registry.url = env["REGISTRY_URL"]
        if env.get("REGISTRY_USERNAME"):
            config.registry.username = env["REGISTRY_USERNAME"]
        if env.get("REGISTRY_PASSWORD"):
            config.registry.password = SecretStr(env["REGISTRY_PASSWORD"])

        if env.get("REQUEST_ORIGIN"):
            config.compose.request_origin = env["REQUEST_ORIGIN"]
        if env.get("REDIS_HOST"):
            config.compose.redis_host = env["REDIS_HOST"]
        if env.get("POSTGRES_HOST"):
            config.compose.postgres_host = env["POSTGRES_HOST"]
        if env.get("POSTGRES_USER"):
            config.compose.postgres_user = env["POSTGRES_USER"]
        if env.get("POSTGRES_PASSWORD"):
            config.compose.postgres_password = SecretStr(env["POSTGRES_PASSWORD"])
        if env.get("POSTGRES_DATABASE"):
            config.compose.postgres_database = env["POSTGRES_DATABASE"]

        if env.get("SHIPYARD_IMAGE"):
            config.docker.image = env["SHIPYARD_IMAGE"]
        if env.get("SHIPYARD_CONTAINER"):
            config.docker.container = env["SHIPYARD_CONTAINER"]
        if env.get("SHIPYARD_MANUAL_FALLBACK"):
            config.docker.manual_fallback = env["SHIPYARD_MANUAL_FALLBACK"].lower() in (
                "1",
                "true",
                "yes",
            )
        if env.get("SHIPYARD_HEALTH_RETRIES"):
            config.health.policy.attempts = int(env["SHIPYARD_HEALTH_RETRIES"])
        if env.get("SHIPYARD_HEALTH_INTERVAL"):
            config.health.policy.interval = float(env["SHIPYARD_HEALTH_INTERVAL"])
        if env.get("SHIPYARD_STAGES"):
            config.stages = parse_stages(env["SHIPYARD_STAGES"])

        return config

    def ensure_directories(self) -> None:
        """Create the metadata directory that must exist before the pipeline runs."""
        self.state_dir_path.mkdir(parents=True, exist_ok=True)


def parse_stages(value: str) -> list[str]:
    """Parse a comma-separated stage list, keeping pipeline order.

    Raises:
        ValueError: If a name is not a known stage.
    """
    requested = [s.strip() for s in value.split(",") if s.strip()]
    unknown = [s for s in requested if s not in DEFAULT_STAGES]
    if unknown:
        raise ValueError(
            f"Unknown stage(s): {', '.join(unknown)} "
            f"(expected one of {', '.join(DEFAULT_STAGES)})"
        )
    return [s for s in DEFAULT_STAGES if s in requested]
