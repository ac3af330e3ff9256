"""Docker CLI wrapper for image assembly, deployment and cleanup.

Every operation shells out to the ``docker`` binary through
:func:`shipyard.utils.run_command`.  Failures raise :class:`DockerError`
carrying the command line and its stderr.
"""

from __future__ import annotations

from pathlib import Path

from shipyard.config import Config
from shipyard.utils import (
    check_port_available,
    console,
    format_command,
    print_warning,
    run_command,
)

_NO_SUCH_CONTAINER = "no such container"


class DockerError(Exception):
    """Raised when a docker command fails."""

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class DockerClient:
    """Thin async wrapper over the ``docker`` command line."""

    def __init__(self, binary: str = "docker", timeout: int = 300) -> None:
        self.binary = binary
        self.timeout = timeout

    async def _docker(
        self,
        *args: str,
        cwd: str | Path | None = None,
        timeout: int | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> tuple[int, str, str]:
        cmd = [self.binary, *args]
        returncode, stdout, stderr = await run_command(
            cmd,
            cwd=cwd,
            timeout=timeout or self.timeout,
            input_text=input_text,
        )
        if check and returncode != 0:
            raise DockerError(
                f"Docker command failed (exit {returncode}): {format_command(cmd)}\n{stderr}",
                command=format_command(cmd),
                stderr=stderr,
            )
        return returncode, stdout, stderr

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        """Return ``True`` if a docker daemon answers ``docker info``."""
        try:
            returncode, _, _ = await self._docker(
                "info", "--format", "{{.ServerVersion}}", timeout=20, check=False
            )
        except FileNotFoundError:
            return False
        return returncode == 0

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(
        self,
        context: Path,
        tags: list[str],
        dockerfile: Path | None = None,
        build_args: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> str:
        """Build an image from *context* with every tag in *tags*."""
        args = ["build"]
        for tag in tags:
            args.extend(["-t", tag])
        if dockerfile is not None:
            args.extend(["-f", str(dockerfile)])
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(str(context))
        _, stdout, _ = await self._docker(*args, timeout=timeout)
        return stdout

    async def tag(self, source: str, target: str) -> None:
        await self._docker("tag", source, target)

    async def push(self, ref: str) -> None:
        await self._docker("push", ref, timeout=900)

    async def login(self, registry: str, username: str, password: str) -> None:
        """Log in to *registry*, passing the password on stdin."""
        await self._docker(
            "login", registry, "--username", username, "--password-stdin",
            input_text=password,
        )

    async def prune(self) -> list[str]:
        """Remove stopped containers and dangling images."""
        outputs: list[str] = []
        for kind in ("container", "image"):
            _, stdout, _ = await self._docker(kind, "prune", "-f")
            outputs.append(stdout)
        return outputs

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def container_exists(self, name: str) -> bool:
        """Return ``True`` if a container (running or not) has exactly *name*."""
        _, stdout, _ = await self._docker(
            "ps", "-a", "-q", "--filter", f"name=^/{name}$"
        )
        return bool(stdout.strip())

    async def stop_container(self, name: str) -> bool:
        """Stop *name*.  Returns ``False`` if there was no such container."""
        return await self._ignore_missing("stop", name)

    async def remove_container(self, name: str) -> bool:
        """Remove *name*.  Returns ``False`` if there was no such container."""
        return await self._ignore_missing("rm", "-f", name)

    async def _ignore_missing(self, *args: str) -> bool:
        returncode, _, stderr = await self._docker(*args, check=False)
        if returncode == 0:
            return True
        if _NO_SUCH_CONTAINER in stderr.lower():
            return False
        cmd = format_command([self.binary, *args])
        raise DockerError(
            f"Docker command failed (exit {returncode}): {cmd}\n{stderr}",
            command=cmd,
            stderr=stderr,
        )

    async def run_container(
        self,
        image: str,
        name: str,
        ports: dict[int, int],
        env: dict[str, str] | None = None,
        restart: str = "unless-stopped",
    ) -> str:
        """Start *image* detached as *name*.  Returns the container id.

        Args:
            ports: Mapping of host port to container port.
        """
        args = ["run", "-d", "--name", name, "--restart", restart]
        for host_port, container_port in ports.items():
            args.extend(["-p", f"{host_port}:{container_port}"])
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(image)
        _, stdout, _ = await self._docker(*args)
        return stdout.strip()

    async def logs(self, name: str, lines: int = 50) -> str:
        _, stdout, stderr = await self._docker("logs", "--tail", str(lines), name, check=False)
        return "\n".join(p for p in (stdout, stderr) if p)


async def redeploy(
    client: DockerClient,
    image: str,
    name: str,
    host_port: int,
    container_port: int,
    env: dict[str, str] | None = None,
) -> str:
    """Replace the container called *name* with a fresh one running *image*.

    The old container is stopped and removed before the new one starts, so
    two containers never share the name.  If the name is still taken after
    removal, nothing is started.
    """
    if await client.stop_container(name):
        console.print(f"  Stopped previous container [bold]{name}[/bold]")
    if await client.remove_container(name):
        console.print(f"  Removed previous container [bold]{name}[/bold]")

    if await client.container_exists(name):
        raise DockerError(f"Container name still in use after removal: {name}")

    if not await check_port_available(host_port):
        print_warning(f"  Host port {host_port} is already in use; docker run may fail.")

    container_id = await client.run_container(
        image, name, {host_port: container_port}, env=env
    )
    console.print(
        f"  Started [bold]{name}[/bold] ({container_id[:12]}) on port {host_port}"
    )
    return container_id


def manual_instructions(config: Config) -> list[str]:
    """Commands an operator would run by hand when docker is not available here."""
    tags = " ".join(f"-t {t}" for t in config.image_tags)
    name = config.docker.container
    commands = [
        f"cd {config.root.resolve()}",
        f"docker build {tags} -f {config.docker.dockerfile} .",
        f"docker stop {name} || true",
        f"docker rm {name} || true",
        f"docker run -d --name {name} -p {config.app_port}:{config.docker.container_port} "
        f"{config.image_ref}",
        f"curl -f http://{config.health.host}:{config.app_port}/health",
    ]
    return commands
