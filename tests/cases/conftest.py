"""pytest configuration for git-precise tests.

Registers the marker for tests that drive a real git binary and provides a
throwaway repository fixture for them.
"""

import shutil
import subprocess

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "git: Tests that run git against a temporary repository"
    )


def pytest_collection_modifyitems(config, items):
    if shutil.which("git"):
        return
    skip_git = pytest.mark.skip(reason="git executable not found")
    for item in items:
        if "git" in item.keywords:
            item.add_marker(skip_git)


def git(repo, *args: str) -> str:
    """Run git in repo and return stdout; fails the test on a non-zero exit."""
    p = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True)
    assert p.returncode == 0, p.stderr
    return p.stdout


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repository with an identity configured."""
    repo_dir = tmp_path / "repo"
    repo_dir.mkdir()
    git(repo_dir, "init", "-q")
    git(repo_dir, "config", "user.name", "Test User")
    git(repo_dir, "config", "user.email", "test@example.com")
    git(repo_dir, "config", "commit.gpgsign", "false")
    git(repo_dir, "config", "core.autocrlf", "false")
    return repo_dir


@pytest.fixture
def scenario_repo(git_repo):
    """Repository with one committed file whose working copy differs by one hunk:

        unchanged1
       -removed_line
       +added_line_A
       +added_line_B
        unchanged2
    """
    (git_repo / "f.txt").write_text("unchanged1\nremoved_line\nunchanged2\n")
    git(git_repo, "add", "f.txt")
    git(git_repo, "commit", "-q", "-m", "initial")
    (git_repo / "f.txt").write_text("unchanged1\nadded_line_A\nadded_line_B\nunchanged2\n")
    return git_repo
