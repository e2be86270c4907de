"""Shared fixtures: an isolated Config and throwaway git repositories."""

import shutil
import subprocess

import pytest

from foreman.config import Config


def git(repo, *args):
    """Run git synchronously in ``repo`` for test setup."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True,
    )
    return result.stdout.strip()


def commit_file(repo, name, content, message=None):
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", "--", name)
    git(repo, "commit", "-q", "-m", message or f"Update {name}")
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def run_git():
    return git


@pytest.fixture
def commit():
    return commit_file


@pytest.fixture
def config(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return Config(config_dir)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def git_repo(project):
    """A repository on ``main`` with one commit containing file.txt."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    git(project, "init", "-q")
    git(project, "symbolic-ref", "HEAD", "refs/heads/main")
    git(project, "config", "user.email", "foreman@example.com")
    git(project, "config", "user.name", "Foreman Tests")
    git(project, "config", "commit.gpgsign", "false")
    commit_file(project, "file.txt", "line one\nline two\n", "Initial commit")
    return project
