"""Shared fixtures for andon tests."""

import shutil
import subprocess
from pathlib import Path

import pytest
from typer.testing import CliRunner

from andon.config import AndonConfig, GitConfig, VerificationConfig, clear_config_cache
from andon.logger import clear_logger_cache
from andon.models import WorkUnit


@pytest.fixture(autouse=True)
def _clear_caches():
    clear_config_cache()
    clear_logger_cache()
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def config(tmp_path):
    """Defaults rooted in an empty temporary project."""
    return AndonConfig(repo_root=str(tmp_path))


@pytest.fixture
def make_unit():
    def _make(unit_id="T-1", paths=None, **kwargs):
        return WorkUnit(
            id=unit_id,
            description=kwargs.pop("description", f"work on {unit_id}"),
            paths=list(paths or []),
            **kwargs,
        )
    return _make


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path):
    """A throwaway repository on branch main with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "andon@example.com")
    git(repo, "config", "user.name", "Andon Test")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "app.py").write_text("def add(a, b):\n    return a + b\n")
    (repo / "README.md").write_text("demo\n")
    (repo / ".gitignore").write_text(".andon/\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def git_config(git_repo):
    return AndonConfig(
        repo_root=str(git_repo),
        git=GitConfig(base_branch="main"),
        verification=VerificationConfig(command="true"),
    )


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
