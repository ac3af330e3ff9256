"""Frontend and backend build execution.

Detects the toolchain of each target from its manifest file, then runs the
install/build (or lint/test) commands inside the target directory.  Targets
share no state, so ``build_all`` runs them concurrently.

Results are collected into :class:`BuildResult` for the pipeline state.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from pydantic import BaseModel, Field, computed_field

from shipyard.config import Config
from shipyard.utils import console, tail, run_command

TARGETS: tuple[str, ...] = ("frontend", "backend")


# ---------------------------------------------------------------------------
# Toolchains
# ---------------------------------------------------------------------------


class Toolchain(BaseModel):
    """Default commands for one kind of project."""

    name: str
    manifest: str
    install: list[str] = Field(default_factory=list)
    build: list[str] = Field(default_factory=list)
    lint: list[str] = Field(default_factory=list)
    test: list[str] = Field(default_factory=list)
    # Image for the Dockerfile build stage.
    builder_image: str = ""


TOOLCHAINS: list[Toolchain] = [
    Toolchain(
        name="node",
        manifest="package.json",
        install=["npm install"],
        build=["npm run build --if-present"],
        lint=["npm run lint --if-present"],
        test=["npm test --if-present -- --watchAll=false"],
        builder_image="node:20-alpine",
    ),
    Toolchain(
        name="python",
        manifest="requirements.txt",
        install=["python -m pip install -r requirements.txt"],
        build=["python -m compileall -q ."],
        lint=["python -m flake8 ."],
        test=["python -m pytest -q"],
        builder_image="python:3.12-slim",
    ),
    Toolchain(
        name="python",
        manifest="pyproject.toml",
        install=["python -m pip install -e ."],
        build=["python -m compileall -q ."],
        lint=["python -m flake8 ."],
        test=["python -m pytest -q"],
        builder_image="python:3.12-slim",
    ),
    Toolchain(
        name="maven",
        manifest="pom.xml",
        install=["mvn -B -q dependency:go-offline"],
        build=["mvn -B -DskipTests package"],
        lint=[],
        test=["mvn -B test"],
        builder_image="maven:3.9-eclipse-temurin-17",
    ),
    Toolchain(
        name="gradle",
        manifest="build.gradle",
        install=[],
        build=["gradle build -x test"],
        lint=[],
        test=["gradle test"],
        builder_image="gradle:8-jdk17",
    ),
    Toolchain(
        name="go",
        manifest="go.mod",
        install=["go mod download"],
        build=["go build -o bin/ ./..."],
        lint=["go vet ./..."],
        test=["go test ./..."],
        builder_image="golang:1.22-alpine",
    ),
]

_NODE_LOCKFILES = ("package-lock.json", "npm-shrinkwrap.json")


def detect_toolchain(path: Path) -> Toolchain | None:
    """Return the toolchain whose manifest exists in *path*, in priority order.

    Node projects with a lockfile install with ``npm ci``.
    """
    for toolchain in TOOLCHAINS:
        if (path / toolchain.manifest).is_file():
            if toolchain.name == "node" and any((path / f).is_file() for f in _NODE_LOCKFILES):
                return toolchain.model_copy(update={"install": ["npm ci"]})
            return toolchain
    return None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    """Outcome of a single shell command."""

    command: str
    returncode: int
    duration_seconds: float = Field(default=0.0, ge=0.0)
    output: str = Field(default="", description="Tail of combined stdout/stderr")

    @computed_field  # type: ignore[misc]
    @property
    def success(self) -> bool:
        return self.returncode == 0


class BuildResult(BaseModel):
    """Results of running a sequence of steps for one target."""

    target: str
    kind: str = Field(default="build", description="'build' or 'test'")
    toolchain: str = Field(default="")
    steps: list[StepResult] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0, ge=0.0)
    error: str | None = Field(default=None)

    @computed_field  # type: ignore[misc]
    @property
    def success(self) -> bool:
        return self.error is None and all(step.success for step in self.steps)

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if not step.success]


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class TargetBuilder:
    """Runs build and test commands for the frontend and backend targets."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def commands_for(self, target: str, kind: str) -> tuple[str, list[str]]:
        """Return ``(toolchain_name, commands)`` for a target.

        Config overrides replace the detected toolchain's commands per phase
        (install, build, lint, test).  ``kind`` is ``"build"`` (install +
        build) or ``"test"`` (lint + test).
        """
        path = self.config.target_path(target)
        overrides = self.config.target_commands(target)
        toolchain = detect_toolchain(path)
        name = toolchain.name if toolchain else "custom"

        phases = ("install", "build") if kind == "build" else ("lint", "test")
        commands: list[str] = []
        for phase in phases:
            override = getattr(overrides, phase)
            if override:
                commands.extend(override)
            elif toolchain is not None:
                commands.extend(getattr(toolchain, phase))
        return name, commands

    async def _run_steps(
        self, target: str, kind: str, stop_on_failure: bool
    ) -> BuildResult:
        start = time.monotonic()
        try:
            path = self.config.target_path(target)
            timeout = self.config.target_commands(target).timeout
            toolchain, commands = self.commands_for(target, kind)
        except ValueError as exc:
            return BuildResult(target=target, kind=kind, error=str(exc))

        result = BuildResult(target=target, kind=kind, toolchain=toolchain)
        if not path.is_dir():
            result.error = f"Target directory not found: {path}"
            return result
        if not commands:
            result.error = (
                f"No {kind} commands for {target}: no known manifest in {path} "
                "and no overrides configured"
            )
            return result

        for command in commands:
            console.print(f"  [dim]{target}[/dim] $ {command}")
            step_start = time.monotonic()
            returncode, stdout, stderr = await run_command(command, cwd=path, timeout=timeout)
            step = StepResult(
                command=command,
                returncode=returncode,
                duration_seconds=time.monotonic() - step_start,
                output=tail("\n".join(p for p in (stdout, stderr) if p)),
            )
            result.steps.append(step)
            if not step.success:
                console.print(f"  [red]{target}: '{command}' exited {returncode}[/red]")
                if stop_on_failure:
                    break

        result.duration_seconds = time.monotonic() - start
        return result

    async def build(self, target: str) -> BuildResult:
        """Install dependencies and build *target*, stopping at the first failure."""
        return await self._run_steps(target, "build", stop_on_failure=True)

    async def test(self, target: str) -> BuildResult:
        """Run lint and test steps for *target*.  Every step runs."""
        return await self._run_steps(target, "test", stop_on_failure=False)

    async def build_all(self, targets: list[str] | tuple[str, ...] = TARGETS) -> list[BuildResult]:
        """Build the targets concurrently."""
        return list(await asyncio.gather(*(self.build(t) for t in targets)))

    async def test_all(self, targets: list[str] | tuple[str, ...] = TARGETS) -> list[BuildResult]:
        """Run lint/test for the targets concurrently."""
        return list(await asyncio.gather(*(self.test(t) for t in targets)))
