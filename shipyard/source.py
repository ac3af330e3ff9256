"""Source checkout and repository structure verification.

Fetches the application repository at a revision and checks that the two
subprojects (frontend and backend) are present with their manifest files
before any build work starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from shipyard.config import StructureConfig
from shipyard.utils import console, format_command, run_command


class SourceError(Exception):
    """Raised when a git operation fails."""

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        self.command = command
        self.stderr = stderr
        super().__init__(message)


@dataclass
class CheckoutResult:
    """Where the source ended up and at which commit."""

    path: Path
    revision: str
    cloned: bool = False


@dataclass
class StructureReport:
    """Outcome of ``verify_structure``."""

    missing: list[str] = field(default_factory=list)
    found: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


async def _run_git(*args: str, cwd: str | Path | None = None, timeout: int = 300) -> str:
    """Run a git command and return its stdout.

    Raises SourceError if the command exits with a non-zero code.
    """
    cmd = ["git", *args]
    returncode, stdout, stderr = await run_command(cmd, cwd=cwd, timeout=timeout)
    if returncode != 0:
        raise SourceError(
            f"Git command failed (exit {returncode}): {format_command(cmd)}\n{stderr}",
            command=format_command(cmd),
            stderr=stderr,
        )
    return stdout


async def checkout(dest: Path, repo_url: str = "", revision: str = "") -> CheckoutResult:
    """Fetch the repository into *dest* at *revision*.

    * With a *repo_url* and no clone at *dest*, the repository is cloned.
    * With an existing clone, ``origin`` is fetched.
    * Without a *repo_url*, *dest* is used in place.

    A *revision* is checked out when given; otherwise the current ``HEAD``
    is kept.  Returns the resolved commit.
    """
    dest = Path(dest)
    cloned = False

    if repo_url and not (dest / ".git").exists():
        dest.parent.mkdir(parents=True, exist_ok=True)
        console.print(f"  Cloning [bold]{repo_url}[/bold] into {dest}")
        await _run_git("clone", repo_url, str(dest))
        cloned = True
    elif repo_url:
        console.print(f"  Fetching updates in {dest}")
        await _run_git("fetch", "--prune", "origin", cwd=dest)
    elif not (dest / ".git").exists():
        raise SourceError(f"Not a git repository and no repository URL given: {dest}")

    if revision:
        console.print(f"  Checking out [bold]{revision}[/bold]")
        await _run_git("checkout", "--force", revision, cwd=dest)

    head = await _run_git("rev-parse", "HEAD", cwd=dest)
    return CheckoutResult(path=dest, revision=head, cloned=cloned)


async def current_branch(path: Path) -> str:
    """Return the checked-out branch name, or an empty string when detached."""
    try:
        name = await _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
    except SourceError:
        return ""
    return "" if name == "HEAD" else name


def verify_structure(root: Path, structure: StructureConfig) -> StructureReport:
    """Check that the frontend and backend subprojects exist.

    The frontend must contain every file in ``frontend_manifests``.  The
    backend must contain at least one of ``backend_manifests``.  A missing
    directory is reported on its own, without listing its manifests.
    """
    report = StructureReport()
    root = Path(root)

    frontend = root / structure.frontend_dir
    if not frontend.is_dir():
        report.missing.append(f"{structure.frontend_dir}/")
    else:
        report.found.append(f"{structure.frontend_dir}/")
        for manifest in structure.frontend_manifests:
            rel = f"{structure.frontend_dir}/{manifest}"
            if (frontend / manifest).is_file():
                report.found.append(rel)
            else:
                report.missing.append(rel)

    backend = root / structure.backend_dir
    if not backend.is_dir():
        report.missing.append(f"{structure.backend_dir}/")
    else:
        report.found.append(f"{structure.backend_dir}/")
        present = [m for m in structure.backend_manifests if (backend / m).is_file()]
        if present:
            report.found.extend(f"{structure.backend_dir}/{m}" for m in present)
        else:
            report.missing.append(
                f"{structure.backend_dir}/({' | '.join(structure.backend_manifests)})"
            )

    return report
