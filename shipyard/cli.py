"""Command-line entry point for ``shipyard`` / ``python -m shipyard``.

Each stage is exposed as its own sub-command so a CI job can call them one by
one; ``run`` executes the whole pipeline.  Every stage command goes through
:class:`~shipyard.pipeline.Pipeline`, so the gating/advisory policy, state
file and summary are the same whichever way a stage is invoked.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from pydantic import ValidationError

from shipyard import __version__
from shipyard.builder import TARGETS
from shipyard.compose import EXPECTED_SERVICES, load_topology, validate_topology
from shipyard.config import Config, parse_stages
from shipyard.pipeline import Pipeline
from shipyard.scaffold import DockerGenerator, ScaffoldError
from shipyard.utils import console, print_error, print_success, print_summary_table

# Sub-command -> pipeline stage.
_STAGE_COMMANDS: dict[str, str] = {
    "checkout": "checkout",
    "verify-structure": "verify",
    "build": "build",
    "test": "test",
    "build-image": "image",
    "deploy": "deploy",
    "health-check": "health",
    "push": "push",
    "cleanup": "cleanup",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipyard",
        description="Shipyard -- build, package and deploy a frontend + backend web app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  shipyard run\n"
            "  shipyard --build-number 42 run --stages verify,build,image,deploy,health\n"
            "  shipyard build --target frontend\n"
            "  shipyard health-check --retries 10 --interval 2\n"
            "  shipyard render compose\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--root", default=".", help="Application repository root (default: .)")
    parser.add_argument("--config", default=None, help="JSON configuration file")
    parser.add_argument("--build-number", default=None, help="Image tag (default: $BUILD_NUMBER or 'dev')")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("checkout", help="Fetch the repository at a revision")
    p.add_argument("--repo", default=None, help="Repository URL to clone/fetch")
    p.add_argument("--revision", default=None, help="Branch, tag or commit to check out")

    sub.add_parser("verify-structure", help="Check frontend/ and backend/ and their manifests")

    p = sub.add_parser("build", help="Build frontend and/or backend")
    p.add_argument(
        "--target",
        action="append",
        choices=list(TARGETS),
        help="Target to build (repeatable; default: both)",
    )

    p = sub.add_parser("test", help="Run lint and tests (advisory unless --strict)")
    p.add_argument("--target", action="append", choices=list(TARGETS))
    p.add_argument("--strict", action="store_true", help="Fail when a lint/test step fails")

    p = sub.add_parser("build-image", help="Build the runtime image")
    p.add_argument("--image", default=None, help="Image name (default: webapp)")

    p = sub.add_parser("deploy", help="Replace the running container with the new image")
    p.add_argument("--port", type=int, default=None, help="Host port (default: $APP_PORT or 8080)")
    p.add_argument("--name", default=None, help="Container name")
    p.add_argument("--image", default=None, help="Image name")

    p = sub.add_parser("health-check", help="Poll the deployed service")
    p.add_argument("--url", default=None, help="Base URL (default: http://localhost:<port>)")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--retries", type=int, default=None, help="Attempts (default: 30)")
    p.add_argument("--interval", type=float, default=None, help="Seconds between attempts (default: 5)")
    p.add_argument("--advisory", action="store_true", help="Exit zero even if unhealthy")

    p = sub.add_parser("push", help="Push the image tags to a registry")
    p.add_argument("--registry", default=None, help="Registry URL (default: $REGISTRY_URL)")
    p.add_argument("--branch", default=None, help="Current branch (default: $BRANCH_NAME)")
    p.add_argument("--force", action="store_true", help="Push regardless of branch")
    p.add_argument("--image", default=None, help="Image name")

    sub.add_parser("cleanup", help="Prune stopped containers and dangling images")

    p = sub.add_parser("run", help="Run the full pipeline")
    p.add_argument("--stages", default=None, help="Comma-separated stages (default: all)")
    p.add_argument("--repo", default=None)
    p.add_argument("--revision", default=None)
    p.add_argument("--strict-tests", action="store_true")

    p = sub.add_parser("render", help="Generate deployment files")
    p.add_argument("what", choices=["compose", "dockerfile", "nginx", "all"])
    p.add_argument("--force", action="store_true", help="Overwrite existing files")

    p = sub.add_parser("inspect-compose", help="Validate a docker-compose.yml topology")
    p.add_argument("--file", default=None, help="Compose file (default: <root>/docker-compose.yml)")
    p.add_argument(
        "--services",
        default=None,
        help=f"Comma-separated expected service names (default: {','.join(EXPECTED_SERVICES)})",
    )

    sub.add_parser("status", help="Show the result of the last pipeline run")

    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Merge file config, environment and command-line options, in that order."""
    base = Config.load(Path(args.config)) if args.config else None
    config = Config.from_env(base)
    config.root = Path(args.root)
    if args.build_number:
        config.build_number = args.build_number
    return config


def apply_command_options(config: Config, args: argparse.Namespace) -> None:
    """Fold sub-command options into *config*."""
    if getattr(args, "repo", None):
        config.repo_url = args.repo
    if getattr(args, "revision", None):
        config.revision = args.revision
    if getattr(args, "image", None):
        config.docker.image = args.image
    if getattr(args, "name", None):
        config.docker.container = args.name
    if getattr(args, "port", None):
        config.app_port = args.port
    if getattr(args, "strict", False) or getattr(args, "strict_tests", False):
        config.strict_tests = True

    if args.command == "health-check":
        if args.url:
            config.health.url = args.url
        if args.retries is not None:
            config.health.policy.attempts = args.retries
        if args.interval is not None:
            config.health.policy.interval = args.interval
        if args.advisory:
            config.health.strict = False

    if args.command == "push":
        if args.registry:
            config.registry.url = args.registry
        if args.branch:
            config.branch = args.branch
        if args.force:
            config.registry.push_branches = [config.branch]


def _run_pipeline(config: Config, targets: list[str] | None = None) -> int:
    pipeline = Pipeline(config, targets=targets or TARGETS)
    state = asyncio.run(pipeline.run())
    return 0 if state.get("success") else 1


def _render(config: Config, what: str, force: bool) -> int:
    generator = DockerGenerator()
    outputs = {
        "compose": (config.compose_path, generator.generate_compose),
        "nginx": (config.nginx_path, generator.generate_nginx),
        "dockerfile": (config.dockerfile_path, generator.generate_dockerfile),
    }
    selected = list(outputs) if what == "all" else [what]

    existing = [str(outputs[k][0]) for k in selected if outputs[k][0].exists()]
    if existing and not force:
        print_error(f"Refusing to overwrite {', '.join(existing)} (use --force)")
        return 1

    async def _generate() -> list:
        return [await outputs[k][1](config) for k in selected]

    try:
        written = asyncio.run(_generate())
    except ScaffoldError as exc:
        print_error(str(exc))
        return 1
    for path in written:
        print_success(f"Wrote {path}")
    return 0


def _inspect_compose(config: Config, file: str | None, services: str | None = None) -> int:
    path = Path(file) if file else config.compose_path
    try:
        topology = load_topology(path)
    except (OSError, ValueError) as exc:
        print_error(f"Cannot read {path}: {exc}")
        return 1

    print_summary_table(
        {
            name: f"{svc.image or '(build)'} ports={svc.host_ports or '-'}"
            for name, svc in topology.services.items()
        },
        title=f"Compose Topology ({path.name})",
    )
    expected_services = (
        [s.strip() for s in services.split(",") if s.strip()] if services else EXPECTED_SERVICES
    )
    compose = config.compose
    expected_ports = (compose.proxy_port, compose.frontend_port, compose.backend_port)
    problems = validate_topology(topology, expected_services, expected_ports)
    for problem in problems:
        print_error(f"  {problem}")
    if problems:
        return 1
    print_success(
        f"{len(topology.services)} services, host ports {', '.join(map(str, topology.host_ports()))}"
    )
    return 0


def _status(config: Config) -> int:
    state = Pipeline(config).previous_state()
    if not state:
        print_error(f"No pipeline state at {config.state_path}")
        return 1
    print_summary_table(
        {
            "Build": str(state.get("build_number", "?")),
            "Started": str(state.get("started_at", "?")),
            "Duration": str(state.get("total_duration", "?")),
            "Completed": ", ".join(state.get("stages_completed", [])) or "-",
            "Failed": ", ".join(state.get("stages_failed", [])) or "-",
            "Skipped": ", ".join(state.get("stages_skipped", [])) or "-",
            "Advisories": ", ".join(a.get("stage", "?") for a in state.get("advisories", [])) or "-",
            "Success": str(state.get("success", False)),
        },
        title="Last Pipeline Run",
    )
    return 0 if state.get("success") else 1


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.  Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
        apply_command_options(config, args)
        if args.command == "run" and args.stages:
            config.stages = parse_stages(args.stages)
    except (OSError, ValueError, ValidationError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 2

    if args.command in _STAGE_COMMANDS:
        config.stages = [_STAGE_COMMANDS[args.command]]
        return _run_pipeline(config, getattr(args, "target", None))
    if args.command == "run":
        return _run_pipeline(config)
    if args.command == "render":
        return _render(config, args.what, args.force)
    if args.command == "inspect-compose":
        return _inspect_compose(config, args.file, args.services)
    if args.command == "status":
        return _status(config)

    parser.error(f"unknown command {args.command!r}")
    return 2


def entrypoint() -> None:
    sys.exit(main())
