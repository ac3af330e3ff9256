"""Shared pytest fixtures for the Shipyard test suite.

Provides reusable fixtures for:
- A temporary application repository (frontend + backend)
- A ``Config`` rooted at that repository
- Mocked docker client, builder and health poller
- A clean environment (CI variables such as BUILD_NUMBER removed)
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from shipyard.builder import BuildResult, StepResult, TargetBuilder
from shipyard.config import Config
from shipyard.docker import DockerClient
from shipyard.health import HealthPoller, HealthResult

_ENV_VARS = (
    "BUILD_NUMBER",
    "APP_PORT",
    "BRANCH_NAME",
    "GIT_BRANCH",
    "REGISTRY_URL",
    "REGISTRY_USERNAME",
    "REGISTRY_PASSWORD",
    "REQUEST_ORIGIN",
    "REDIS_HOST",
    "POSTGRES_HOST",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DATABASE",
    "SHIPYARD_IMAGE",
    "SHIPYARD_CONTAINER",
    "SHIPYARD_HEALTH_RETRIES",
    "SHIPYARD_HEALTH_INTERVAL",
    "SHIPYARD_STAGES",
    "SHIPYARD_MANUAL_FALLBACK",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove CI variables so tests see the defaults."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Application repository
# ---------------------------------------------------------------------------


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """An application repo with a node frontend and a python backend."""
    root = tmp_path / "webshop"
    (root / "frontend").mkdir(parents=True)
    (root / "backend").mkdir()
    (root / "frontend" / "package.json").write_text(
        json.dumps({"name": "webshop-frontend", "scripts": {"build": "react-scripts build"}}),
        encoding="utf-8",
    )
    (root / "backend" / "requirements.txt").write_text("fastapi\nuvicorn\n", encoding="utf-8")
    return root


@pytest.fixture
def config(app_root: Path) -> Config:
    """Config rooted at ``app_root`` with a fast health policy."""
    cfg = Config(root=app_root, build_number="42", branch="main")
    cfg.health.policy.attempts = 3
    cfg.health.policy.interval = 0
    return cfg


# ---------------------------------------------------------------------------
# Mocks
# ---------------------------------------------------------------------------


def make_build_result(target: str, success: bool = True, kind: str = "build") -> BuildResult:
    return BuildResult(
        target=target,
        kind=kind,
        toolchain="node" if target == "frontend" else "python",
        steps=[StepResult(command="make", returncode=0 if success else 1)],
    )


@pytest.fixture
def mock_docker() -> MagicMock:
    """A DockerClient whose every command succeeds."""
    docker = MagicMock(spec=DockerClient)
    docker.is_available = AsyncMock(return_value=True)
    docker.build_image = AsyncMock(return_value="")
    docker.tag = AsyncMock()
    docker.push = AsyncMock()
    docker.login = AsyncMock()
    docker.prune = AsyncMock(return_value=["Total reclaimed space: 0B", ""])
    docker.container_exists = AsyncMock(return_value=False)
    docker.stop_container = AsyncMock(return_value=True)
    docker.remove_container = AsyncMock(return_value=True)
    docker.run_container = AsyncMock(return_value="0123456789abcdef")
    docker.logs = AsyncMock(return_value="")
    return docker


@pytest.fixture
def mock_builder() -> MagicMock:
    """A TargetBuilder whose builds and tests succeed."""
    builder = MagicMock(spec=TargetBuilder)
    builder.build_all = AsyncMock(
        return_value=[make_build_result("frontend"), make_build_result("backend")]
    )
    builder.test_all = AsyncMock(
        return_value=[
            make_build_result("frontend", kind="test"),
            make_build_result("backend", kind="test"),
        ]
    )
    return builder


@pytest.fixture
def mock_poller() -> MagicMock:
    """A HealthPoller that reports healthy on the first attempt."""
    poller = MagicMock(spec=HealthPoller)
    poller.poll = AsyncMock(
        return_value=HealthResult(
            healthy=True, attempts=1, url="http://localhost:8080/", status_code=200
        )
    )
    return poller


@pytest.fixture
def build_result():
    """Factory for ``BuildResult`` objects: ``build_result("frontend", success=False)``."""
    return make_build_result
