"""Unit tests for checkout and structure verification (shipyard.source).

Tests cover:
- verify_structure (complete, missing manifests, missing directories)
- checkout (clone, fetch, in-place, revision, failures) with git mocked
- current_branch
- checkout against a real git repository
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from shipyard.config import StructureConfig
from shipyard.source import SourceError, checkout, current_branch, verify_structure

SHA = "a" * 40


def _git_calls(mock: AsyncMock) -> list[list[str]]:
    return [call.args[0][1:] for call in mock.await_args_list]


# ---------------------------------------------------------------------------
# verify_structure
# ---------------------------------------------------------------------------


class TestVerifyStructure:
    @pytest.mark.unit
    def test_complete_layout(self, app_root: Path):
        report = verify_structure(app_root, StructureConfig())
        assert report.ok
        assert "frontend/package.json" in report.found
        assert "backend/requirements.txt" in report.found

    @pytest.mark.unit
    def test_missing_frontend_manifest(self, app_root: Path):
        (app_root / "frontend" / "package.json").unlink()
        report = verify_structure(app_root, StructureConfig())
        assert not report.ok
        assert report.missing == ["frontend/package.json"]

    @pytest.mark.unit
    def test_backend_needs_any_manifest(self, app_root: Path):
        (app_root / "backend" / "requirements.txt").unlink()
        report = verify_structure(app_root, StructureConfig())
        assert not report.ok
        assert report.missing[0].startswith("backend/(")

        (app_root / "backend" / "go.mod").write_text("module shop\n")
        assert verify_structure(app_root, StructureConfig()).ok

    @pytest.mark.unit
    def test_missing_directories_reported_once(self, tmp_path: Path):
        report = verify_structure(tmp_path, StructureConfig())
        assert report.missing == ["frontend/", "backend/"]

    @pytest.mark.unit
    def test_custom_directories(self, tmp_path: Path):
        (tmp_path / "web").mkdir()
        (tmp_path / "web" / "package.json").write_text("{}")
        (tmp_path / "api").mkdir()
        (tmp_path / "api" / "pom.xml").write_text("<project/>")
        structure = StructureConfig(frontend_dir="web", backend_dir="api")
        assert verify_structure(tmp_path, structure).ok

    @pytest.mark.unit
    def test_manifest_must_be_a_file(self, app_root: Path):
        (app_root / "frontend" / "package.json").unlink()
        (app_root / "frontend" / "package.json").mkdir()
        assert not verify_structure(app_root, StructureConfig()).ok


# ---------------------------------------------------------------------------
# checkout (git mocked)
# ---------------------------------------------------------------------------


class TestCheckout:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clone_when_no_repo(self, tmp_path: Path):
        dest = tmp_path / "src"
        mock_run = AsyncMock(side_effect=[(0, "", ""), (0, SHA, "")])
        with patch("shipyard.source.run_command", mock_run):
            result = await checkout(dest, "https://git.example.com/shop.git")

        assert result.cloned is True
        assert result.revision == SHA
        assert _git_calls(mock_run) == [
            ["clone", "https://git.example.com/shop.git", str(dest)],
            ["rev-parse", "HEAD"],
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_existing_clone_and_checkout_revision(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        mock_run = AsyncMock(side_effect=[(0, "", ""), (0, "", ""), (0, SHA, "")])
        with patch("shipyard.source.run_command", mock_run):
            result = await checkout(tmp_path, "https://git.example.com/shop.git", "v1.2.0")

        assert result.cloned is False
        assert _git_calls(mock_run) == [
            ["fetch", "--prune", "origin"],
            ["checkout", "--force", "v1.2.0"],
            ["rev-parse", "HEAD"],
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_place_without_url(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        mock_run = AsyncMock(return_value=(0, SHA, ""))
        with patch("shipyard.source.run_command", mock_run):
            result = await checkout(tmp_path)

        assert result.revision == SHA
        assert _git_calls(mock_run) == [["rev-parse", "HEAD"]]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_repo_and_no_url(self, tmp_path: Path):
        with pytest.raises(SourceError, match="Not a git repository"):
            await checkout(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_failure(self, tmp_path: Path):
        mock_run = AsyncMock(return_value=(128, "", "fatal: repository not found"))
        with patch("shipyard.source.run_command", mock_run):
            with pytest.raises(SourceError) as exc_info:
                await checkout(tmp_path / "src", "https://git.example.com/missing.git")

        assert exc_info.value.stderr == "fatal: repository not found"
        assert exc_info.value.command.startswith("git clone")


class TestCurrentBranch:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_branch_name(self, tmp_path: Path):
        with patch("shipyard.source.run_command", AsyncMock(return_value=(0, "main", ""))):
            assert await current_branch(tmp_path) == "main"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_detached_head(self, tmp_path: Path):
        with patch("shipyard.source.run_command", AsyncMock(return_value=(0, "HEAD", ""))):
            assert await current_branch(tmp_path) == ""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_a_repo(self, tmp_path: Path):
        with patch("shipyard.source.run_command", AsyncMock(return_value=(128, "", "fatal"))):
            assert await current_branch(tmp_path) == ""


# ---------------------------------------------------------------------------
# checkout (real git)
# ---------------------------------------------------------------------------


@pytest.fixture
def git_repo(app_root: Path) -> Path:
    """Turn ``app_root`` into a git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=app_root, check=True, capture_output=True)

    git("init")
    git("config", "user.email", "ci@shipyard.local")
    git("config", "user.name", "Shipyard Test")
    git("config", "commit.gpgsign", "false")
    git("add", ".")
    git("commit", "-m", "initial")
    return app_root


class TestCheckoutRealGit:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_records_head(self, git_repo: Path):
        result = await checkout(git_repo)
        assert len(result.revision) == 40
        assert await current_branch(git_repo) != ""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clone_local_repository(self, git_repo: Path, tmp_path: Path):
        dest = tmp_path / "clone"
        result = await checkout(dest, str(git_repo))
        assert result.cloned is True
        assert (dest / "frontend" / "package.json").is_file()
