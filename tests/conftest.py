from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable

import pytest


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True,
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(path, "config", "user.email", "test@test.com")
    _git(path, "config", "user.name", "Test")
    _git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("line one\nline two\nline three\n")
    (path / "src").mkdir()
    (path / "src" / "app.py").write_text("print('hello')\n")
    _git(path, "add", ".")
    _git(path, "commit", "-m", "init")
    return path


@pytest.fixture
def git() -> Callable[..., str]:
    """``git(cwd, *args)`` -> stdout; raises on a non-zero exit."""
    return _git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with README.md and src/app.py committed."""
    return init_repo(tmp_path / "repo")
