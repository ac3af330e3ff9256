"""Shipyard pipeline orchestrator.

Runs the build/deploy stages in a fixed order:

checkout -> verify -> build -> test -> image -> deploy -> health -> push -> cleanup

Every stage is either *gating* (a failure stops the pipeline) or *advisory*
(a failure is recorded and the pipeline continues).  State is persisted to
``.shipyard/pipeline-state.json`` after each stage.
"""

from __future__ import annotations

import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from rich.table import Table

from shipyard.builder import TARGETS, BuildResult, TargetBuilder
from shipyard.config import Config
from shipyard.docker import DockerClient, DockerError, manual_instructions, redeploy
from shipyard.health import HealthPoller
from shipyard.scaffold import DockerGenerator, ScaffoldError
from shipyard.source import SourceError, checkout, current_branch, verify_structure
from shipyard.utils import (
    console,
    format_duration,
    load_json,
    print_banner,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
    save_json,
)

# ---------------------------------------------------------------------------
# Policies and exceptions
# ---------------------------------------------------------------------------


class StagePolicy(str, Enum):
    """Whether a stage failure stops the pipeline."""

    GATING = "gating"
    ADVISORY = "advisory"


class StageError(Exception):
    """Raised when a stage fails."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"Stage {stage}: {message}")


class StageSkipped(Exception):
    """Raised when a stage has nothing to do in this run."""


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class Pipeline:
    """Drives the build/deploy stages selected in ``config.stages``.

    Attributes:
        config: Pipeline configuration.
        state: Mutable dictionary that accumulates results from each stage.
        docker: Docker CLI wrapper.
        builder: Runs the frontend/backend build and test commands.
        poller: Health poller for the deployed container.
    """

    _STAGE_METHODS: dict[str, str] = {
        "checkout": "stage_checkout",
        "verify": "stage_verify",
        "build": "stage_build",
        "test": "stage_test",
        "image": "stage_image",
        "deploy": "stage_deploy",
        "health": "stage_health",
        "push": "stage_push",
        "cleanup": "stage_cleanup",
    }

    def __init__(
        self,
        config: Config,
        docker: DockerClient | None = None,
        builder: TargetBuilder | None = None,
        poller: HealthPoller | None = None,
        generator: DockerGenerator | None = None,
        targets: list[str] | tuple[str, ...] = TARGETS,
    ) -> None:
        self.config = config
        self.targets = list(targets)
        self.docker = docker or DockerClient(timeout=config.docker.build_timeout)
        self.builder = builder or TargetBuilder(config)
        self.poller = poller or HealthPoller(
            policy=config.health.policy,
            paths=config.health.paths,
            request_timeout=config.health.request_timeout,
        )
        self.generator = generator or DockerGenerator()
        self.state: dict[str, Any] = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "build_number": config.build_number,
            "stages_completed": [],
            "stages_failed": [],
            "stages_skipped": [],
            "advisories": [],
            "success": False,
        }
        self._docker_available: bool | None = None

    # ------------------------------------------------------------------
    # State persistence
    # ------------------------------------------------------------------

    async def _save_state(self) -> None:
        """Persist the current pipeline state to ``.shipyard/pipeline-state.json``."""
        self.state["updated_at"] = datetime.now(timezone.utc).isoformat()
        await save_json(self.state, self.config.state_path)

    def previous_state(self) -> dict[str, Any]:
        """Return the state of the last run, or ``{}`` if missing or corrupted."""
        if not self.config.state_path.exists():
            return {}
        try:
            return load_json(self.config.state_path)
        except (OSError, ValueError):
            return {}

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def policy_for(self, stage: str) -> StagePolicy:
        if stage == "test" and not self.config.strict_tests:
            return StagePolicy.ADVISORY
        if stage == "health" and not self.config.health.strict:
            return StagePolicy.ADVISORY
        if stage == "cleanup":
            return StagePolicy.ADVISORY
        return StagePolicy.GATING

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> dict[str, Any]:
        """Execute the selected stages.

        Returns:
            The final pipeline state dictionary, including a top-level
            ``success`` boolean.
        """
        pipeline_start = time.monotonic()
        self.config.ensure_directories()

        print_banner(
            "Shipyard Pipeline",
            {
                "Root": str(self.config.root.resolve()),
                "Build": self.config.build_number,
                "Image": self.config.image_ref,
                "Stages": ", ".join(self.config.stages),
            },
        )

        all_success = True

        for index, stage in enumerate(self.config.stages, start=1):
            method_name = self._STAGE_METHODS.get(stage)
            if method_name is None:
                print_warning(f"Unknown stage {stage!r} -- skipping.")
                continue

            print_stage_header(index, stage)
            policy = self.policy_for(stage)
            stage_start = time.monotonic()
            try:
                result = await getattr(self, method_name)()
                self.state[stage] = result
                self.state["stages_completed"].append(stage)
                print_success(
                    f"Stage {stage} completed in {format_duration(time.monotonic() - stage_start)}"
                )

            except StageSkipped as exc:
                self.state[stage] = {"skipped": str(exc)}
                self.state["stages_skipped"].append(stage)
                print_warning(f"Stage {stage} skipped: {exc}")

            except StageError as exc:
                elapsed = format_duration(time.monotonic() - stage_start)
                if policy is StagePolicy.ADVISORY:
                    self.state["advisories"].append({"stage": stage, "error": str(exc)})
                    print_warning(f"Stage {stage} failed after {elapsed} (advisory, continuing): {exc}")
                    continue
                all_success = False
                self.state["stages_failed"].append(stage)
                self.state[f"{stage}_error"] = str(exc)
                print_error(f"Stage {stage} FAILED after {elapsed}: {exc}")
                break

            except Exception as exc:
                all_success = False
                tb = traceback.format_exc()
                self.state["stages_failed"].append(stage)
                self.state[f"{stage}_error"] = tb
                print_error(
                    f"Stage {stage} FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                console.print(f"[dim]{tb}[/dim]")
                break

            finally:
                await self._save_state()

        total_elapsed = time.monotonic() - pipeline_start
        self.state["success"] = all_success
        self.state["total_duration"] = format_duration(total_elapsed)
        self.state["finished_at"] = datetime.now(timezone.utc).isoformat()
        await self._save_state()

        self._print_final_summary(total_elapsed)
        return self.state

    # ------------------------------------------------------------------
    # Docker availability
    # ------------------------------------------------------------------

    async def _require_docker(self, stage: str) -> None:
        """Fail, or skip with manual instructions, when docker is unavailable."""
        if self._docker_available is None:
            self._docker_available = await self.docker.is_available()
            self.state["docker_available"] = self._docker_available
            if not self._docker_available and self.config.docker.manual_fallback:
                instructions = manual_instructions(self.config)
                self.state["manual_instructions"] = instructions
                print_warning("Docker is not available here. Run these steps manually:")
                for line in instructions:
                    console.print(f"    {line}")

        if self._docker_available:
            return
        if self.config.docker.manual_fallback:
            raise StageSkipped("docker unavailable, manual instructions recorded")
        raise StageError(stage, "docker is not available (is the daemon running?)")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def stage_checkout(self) -> dict[str, Any]:
        """Fetch the repository, or record ``HEAD`` of the working tree."""
        root = self.config.root
        if not self.config.repo_url and not (root / ".git").exists():
            raise StageSkipped(f"{root} is not a git repository; using the working tree as-is")
        try:
            result = await checkout(root, self.config.repo_url, self.config.revision)
        except SourceError as exc:
            raise StageError("checkout", str(exc)) from exc

        if not self.config.branch:
            self.config.branch = await current_branch(root)
        console.print(f"  Revision [bold]{result.revision[:12]}[/bold] on branch "
                      f"[bold]{self.config.branch or '(detached)'}[/bold]")
        return {
            "path": str(result.path),
            "revision": result.revision,
            "branch": self.config.branch,
            "cloned": result.cloned,
        }

    async def stage_verify(self) -> dict[str, Any]:
        """Check that the frontend and backend subprojects are present."""
        report = verify_structure(self.config.root, self.config.structure)
        for item in report.found:
            console.print(f"  [green]+[/green] {item}")
        for item in report.missing:
            console.print(f"  [red]-[/red] {item}")
        if not report.ok:
            raise StageError("verify", f"missing {', '.join(report.missing)}")
        return {"found": report.found}

    def _report_targets(self, results: list[BuildResult], title: str) -> None:
        print_summary_table(
            {
                r.target: (
                    f"{'ok' if r.success else 'FAILED'} "
                    f"({r.toolchain or '?'}, {format_duration(r.duration_seconds)})"
                )
                for r in results
            },
            title=title,
        )

    @staticmethod
    def _describe_failures(results: list[BuildResult]) -> str:
        parts = []
        for result in results:
            if result.success:
                continue
            if result.error:
                parts.append(f"{result.target}: {result.error}")
            else:
                failed = ", ".join(f"'{s.command}'" for s in result.failed_steps)
                parts.append(f"{result.target}: {failed}")
        return "; ".join(parts)

    async def stage_build(self) -> dict[str, Any]:
        """Build the frontend and backend concurrently."""
        results = await self.builder.build_all(self.targets)
        self._report_targets(results, "Build Results")
        payload = {r.target: r.model_dump() for r in results}
        if not all(r.success for r in results):
            self.state["build"] = payload
            raise StageError("build", self._describe_failures(results))
        return payload

    async def stage_test(self) -> dict[str, Any]:
        """Run lint and test commands for both targets."""
        results = await self.builder.test_all(self.targets)
        self._report_targets(results, "Test Results")
        payload = {r.target: r.model_dump() for r in results}
        if not all(r.success for r in results):
            self.state["test"] = payload
            raise StageError("test", self._describe_failures(results))
        return payload

    async def stage_image(self) -> dict[str, Any]:
        """Build the runtime image, generating a Dockerfile when none exists."""
        await self._require_docker("image")

        generated = False
        dockerfile = self.config.dockerfile_path
        if not dockerfile.exists():
            try:
                await self.generator.generate_dockerfile(self.config)
            except ScaffoldError as exc:
                raise StageError("image", str(exc)) from exc
            generated = True
            console.print(f"  Generated multi-stage Dockerfile at {dockerfile}")

        tags = self.config.image_tags
        console.print(f"  Building {', '.join(tags)}")
        try:
            await self.docker.build_image(
                self.config.root,
                tags,
                dockerfile=dockerfile,
                build_args={"BUILD_NUMBER": self.config.build_number},
                timeout=self.config.docker.build_timeout,
            )
        except DockerError as exc:
            raise StageError("image", str(exc)) from exc
        return {"tags": tags, "dockerfile": str(dockerfile), "generated_dockerfile": generated}

    async def stage_deploy(self) -> dict[str, Any]:
        """Replace the running container with the freshly built image."""
        await self._require_docker("deploy")
        name = self.config.docker.container
        try:
            container_id = await redeploy(
                self.docker,
                self.config.image_ref,
                name,
                host_port=self.config.app_port,
                container_port=self.config.docker.container_port,
                env=self.config.runtime_env(),
            )
        except DockerError as exc:
            raise StageError("deploy", str(exc)) from exc
        return {
            "container": name,
            "container_id": container_id,
            "image": self.config.image_ref,
            "port": self.config.app_port,
        }

    def health_url(self) -> str:
        return self.config.health.url or f"http://{self.config.health.host}:{self.config.app_port}"

    async def stage_health(self) -> dict[str, Any]:
        """Poll the deployed service until it answers."""
        if not self.config.health.url:
            await self._require_docker("health")
        base_url = self.health_url()
        policy = self.config.health.policy
        console.print(
            f"  Polling {base_url} ({policy.attempts} attempts, "
            f"up to {format_duration(policy.max_elapsed())} of waiting)"
        )
        result = await self.poller.poll(base_url)
        payload = result.model_dump()
        if not result.healthy:
            self.state["health"] = payload
            if self._docker_available:
                logs = await self.docker.logs(self.config.docker.container)
                if logs:
                    console.print(f"[dim]{logs}[/dim]")
            raise StageError(
                "health",
                f"{base_url} not healthy after {result.attempts} attempts: {result.last_error}",
            )
        console.print(f"  [green]{result.url} answered {result.status_code}[/green]")
        return payload

    async def stage_push(self) -> dict[str, Any]:
        """Push both tags to the registry on configured branches."""
        registry = self.config.registry
        if not registry.enabled:
            raise StageSkipped("no registry configured")
        if self.config.branch not in registry.push_branches:
            raise StageSkipped(
                f"branch {self.config.branch or '(unknown)'!r} is not one of "
                f"{', '.join(registry.push_branches)}"
            )
        await self._require_docker("push")

        host = registry.url.split("://", 1)[-1].rstrip("/")
        pushed: list[str] = []
        try:
            if registry.username:
                await self.docker.login(host, registry.username, registry.password.get_secret_value())
            for tag in self.config.image_tags:
                remote = f"{host}/{tag}"
                await self.docker.tag(tag, remote)
                await self.docker.push(remote)
                console.print(f"  Pushed [bold]{remote}[/bold]")
                pushed.append(remote)
        except DockerError as exc:
            raise StageError("push", str(exc)) from exc
        return {"registry": host, "pushed": pushed}

    async def stage_cleanup(self) -> dict[str, Any]:
        """Prune stopped containers and dangling images."""
        await self._require_docker("cleanup")
        try:
            outputs = await self.docker.prune()
        except DockerError as exc:
            raise StageError("cleanup", str(exc)) from exc
        return {"pruned": [o for o in outputs if o]}

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _stage_status(self, stage: str) -> str:
        if stage in self.state["stages_completed"]:
            return "[green]PASS[/green]"
        if stage in self.state["stages_failed"]:
            return "[red]FAIL[/red]"
        if stage in self.state["stages_skipped"]:
            return "[yellow]SKIP[/yellow]"
        if any(a["stage"] == stage for a in self.state["advisories"]):
            return "[yellow]WARN[/yellow]"
        return "[dim]NOT RUN[/dim]"

    def _print_final_summary(self, total_elapsed: float) -> None:
        """Print a per-stage summary table."""
        table = Table(title="Pipeline Summary", show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Stage")
        table.add_column("Policy")
        table.add_column("Status")

        for index, stage in enumerate(self.config.stages, start=1):
            table.add_row(
                str(index), stage, self.policy_for(stage).value, self._stage_status(stage)
            )

        console.print()
        console.print(table)
        if self.state["success"]:
            print_success(f"Pipeline succeeded in {format_duration(total_elapsed)}")
        else:
            print_error(f"Pipeline failed after {format_duration(total_elapsed)}")
