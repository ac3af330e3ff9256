"""Tests for the ``shipyard`` command line (shipyard.cli).

``main`` is called with an argv list and its exit code checked; docker and
HTTP are patched where a command would reach them.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from shipyard.cli import apply_command_options, build_parser, load_config, main
from shipyard.config import Config
from shipyard.health import HealthResult

pytestmark = pytest.mark.unit


# Compose file with "_server"-suffixed service names, as some projects ship it.
_SERVER_SUFFIX_COMPOSE = """\
version: "3.5"

services:
  frontend_server:
    image: frontend
    build: ./frontend
    ports:
      - 5000:5000
    environment:
      - REACT_APP_BACKEND_URL=http://localhost:8080
    container_name: frontend

  backend_server:
    image: backend
    build: ./backend
    ports:
      - 8080:8080
    environment:
      - REDIS_HOST=redis_server
      - POSTGRES_HOST=postgres_server
      - POSTGRES_USER=postgres
      - POSTGRES_PASSWORD=postgres
      - POSTGRES_DATABASE=postgres
      - REQUEST_ORIGIN=http://localhost
    container_name: backend
    depends_on:
      - postgres_server
      - redis_server

  redis_server:
    image: redis
    restart: unless-stopped
    container_name: redis

  postgres_server:
    image: postgres:13.2-alpine
    restart: unless-stopped
    environment:
      POSTGRES_PASSWORD: postgres
    container_name: postgres
    volumes:
      - database:/var/lib/postgresql/data

  reverse_proxy:
    image: nginx:1.19-alpine
    restart: unless-stopped
    volumes:
      - ./nginx.conf:/etc/nginx/nginx.conf
    ports:
      - 80:80
    environment:
      - NGINX_PORT=80

volumes:
  database:
"""


def _run(app_root: Path, *argv: str) -> int:
    return main(["--root", str(app_root), *argv])


class TestParser:
    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_build_target_repeatable(self):
        args = build_parser().parse_args(["build", "--target", "frontend", "--target", "backend"])
        assert args.target == ["frontend", "backend"]

    def test_rejects_unknown_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["build", "--target", "mobile"])


class TestOptions:
    def _config(self, *argv: str) -> Config:
        args = build_parser().parse_args(list(argv))
        config = load_config(args)
        apply_command_options(config, args)
        return config

    def test_health_check_options(self):
        config = self._config(
            "health-check", "--url", "http://staging", "--retries", "4", "--interval", "1.5", "--advisory"
        )
        assert config.health.url == "http://staging"
        assert config.health.policy.attempts == 4
        assert config.health.policy.interval == 1.5
        assert config.health.strict is False

    def test_deploy_options(self):
        config = self._config("--build-number", "9", "deploy", "--port", "9000", "--name", "shop")
        assert config.build_number == "9"
        assert config.app_port == 9000
        assert config.docker.container == "shop"

    def test_push_force_allows_current_branch(self):
        config = self._config("push", "--registry", "registry.local:5000", "--branch", "feature/x", "--force")
        assert config.registry.url == "registry.local:5000"
        assert config.registry.push_branches == ["feature/x"]

    def test_env_then_flags(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BUILD_NUMBER", "100")
        monkeypatch.setenv("APP_PORT", "7000")
        config = self._config("--build-number", "101", "deploy")
        assert config.build_number == "101"
        assert config.app_port == 7000

    def test_config_file(self, tmp_path: Path):
        saved = Config(root=tmp_path, app_port=6000)
        saved.docker.image = "fromfile"
        path = saved.save()
        config = self._config("--config", str(path), "build-image")
        assert config.app_port == 6000
        assert config.docker.image == "fromfile"

    def test_strict_test_flag(self):
        assert self._config("test", "--strict").strict_tests is True
        assert self._config("run", "--strict-tests").strict_tests is True


class TestStageCommands:
    def test_verify_structure(self, app_root: Path):
        assert _run(app_root, "verify-structure") == 0

    def test_verify_structure_failure(self, app_root: Path):
        (app_root / "frontend" / "package.json").unlink()
        assert _run(app_root, "verify-structure") == 1

    def test_build_single_target(self, app_root: Path):
        mock_run = AsyncMock(return_value=(0, "", ""))
        with patch("shipyard.builder.run_command", mock_run):
            assert _run(app_root, "build", "--target", "frontend") == 0
        assert all(call.kwargs["cwd"] == app_root / "frontend" for call in mock_run.await_args_list)

    def test_build_failure_exit_code(self, app_root: Path):
        with patch("shipyard.builder.run_command", AsyncMock(return_value=(1, "", "err"))):
            assert _run(app_root, "build") == 1

    def test_test_is_advisory_unless_strict(self, app_root: Path):
        with patch("shipyard.builder.run_command", AsyncMock(return_value=(1, "", "failed"))):
            assert _run(app_root, "test") == 0
            assert _run(app_root, "test", "--strict") == 1

    def test_health_check(self, app_root: Path):
        healthy = HealthResult(healthy=True, attempts=1, url="http://x/", status_code=200)
        with patch("shipyard.pipeline.HealthPoller.poll", AsyncMock(return_value=healthy)):
            assert _run(app_root, "health-check", "--url", "http://x") == 0

    def test_health_check_unhealthy(self, app_root: Path):
        unhealthy = HealthResult(healthy=False, attempts=2, last_error="HTTP 503")
        with patch("shipyard.pipeline.HealthPoller.poll", AsyncMock(return_value=unhealthy)):
            assert _run(app_root, "health-check", "--url", "http://x") == 1
            assert _run(app_root, "health-check", "--url", "http://x", "--advisory") == 0

    @pytest.mark.parametrize("option,value", [("--retries", "0"), ("--retries", "-2"), ("--interval", "-1")])
    def test_health_check_rejects_bad_policy(self, app_root: Path, option: str, value: str):
        with patch("shipyard.pipeline.HealthPoller.poll", AsyncMock()) as poll:
            assert _run(app_root, "health-check", "--url", "http://x", option, value) == 2
        poll.assert_not_called()

    def test_health_retries_env_rejected(self, app_root: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SHIPYARD_HEALTH_RETRIES", "0")
        assert _run(app_root, "health-check", "--url", "http://x") == 2

    def test_push_without_registry_is_skipped(self, app_root: Path):
        assert _run(app_root, "push") == 0


class TestRunCommand:
    def test_unknown_stage(self, app_root: Path):
        assert _run(app_root, "run", "--stages", "verify,bogus") == 2

    def test_bad_port_env(self, app_root: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("APP_PORT", "not-a-port")
        assert _run(app_root, "verify-structure") == 2

    def test_selected_stages(self, app_root: Path):
        assert _run(app_root, "--build-number", "5", "run", "--stages", "checkout,verify") == 0
        state = json.loads((app_root / ".shipyard" / "pipeline-state.json").read_text())
        assert state["build_number"] == "5"
        assert state["stages_skipped"] == ["checkout"]
        assert state["stages_completed"] == ["verify"]


class TestRender:
    def test_render_compose_then_inspect(self, app_root: Path):
        assert _run(app_root, "render", "compose") == 0
        assert (app_root / "docker-compose.yml").is_file()
        assert _run(app_root, "inspect-compose") == 0

    def test_refuses_overwrite(self, app_root: Path):
        assert _run(app_root, "render", "nginx") == 0
        assert _run(app_root, "render", "nginx") == 1
        assert _run(app_root, "render", "nginx", "--force") == 0

    def test_render_all(self, app_root: Path):
        assert _run(app_root, "render", "all") == 0
        for name in ("docker-compose.yml", "nginx.conf", "Dockerfile"):
            assert (app_root / name).is_file()

    def test_render_dockerfile_error(self, app_root: Path):
        (app_root / "backend" / "requirements.txt").unlink()
        assert _run(app_root, "render", "dockerfile") == 1


class TestInspectCompose:
    def test_missing_file(self, app_root: Path):
        assert _run(app_root, "inspect-compose") == 1

    def test_incomplete_topology(self, app_root: Path, tmp_path: Path):
        path = tmp_path / "compose.yml"
        path.write_text("services:\n  frontend:\n    ports: ['5000:5000']\n", encoding="utf-8")
        assert _run(app_root, "inspect-compose", "--file", str(path)) == 1

    def test_custom_service_names(self, app_root: Path, tmp_path: Path):
        path = tmp_path / "docker-compose.yml"
        path.write_text(_SERVER_SUFFIX_COMPOSE, encoding="utf-8")
        services = "frontend_server,backend_server,redis_server,postgres_server,reverse_proxy"
        assert _run(app_root, "inspect-compose", "--file", str(path), "--services", services) == 0
        assert _run(app_root, "inspect-compose", "--file", str(path)) == 1


class TestStatus:
    def test_no_state(self, app_root: Path):
        assert _run(app_root, "status") == 1

    def test_after_run(self, app_root: Path):
        _run(app_root, "verify-structure")
        assert _run(app_root, "status") == 0
