"""Shared fixtures: throwaway git repositories built in tmp_path."""

import os
import shutil
import subprocess

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class GitRepoBuilder:
    """Creates commits with fixed authors and timestamps."""

    def __init__(self, path):
        self.path = path
        self._clock = 1_700_000_000
        self.git("init", "-q", "-b", "main")
        self.git("config", "user.name", "Test Author")
        self.git("config", "user.email", "test@example.com")
        self.git("config", "commit.gpgsign", "false")

    def git(self, *args):
        self._clock += 60
        env = {
            **os.environ,
            "GIT_AUTHOR_DATE": f"{self._clock} +0000",
            "GIT_COMMITTER_DATE": f"{self._clock} +0000",
        }
        result = subprocess.run(
            ["git", *args], cwd=self.path, env=env,
            capture_output=True, text=True, check=True,
        )
        return result.stdout.strip()

    def write(self, relpath, content):
        target = self.path / relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content)

    def commit(self, message, files=None):
        for relpath, content in (files or {}).items():
            self.write(relpath, content)
        self.git("add", "-A")
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.git("rev-parse", "HEAD")


@pytest.fixture
def git_builder(tmp_path):
    repo_dir = tmp_path / "sample-project"
    repo_dir.mkdir()
    return GitRepoBuilder(repo_dir)


@pytest.fixture
def three_commit_repo(git_builder):
    """Repo with README and three small commits, oldest first in ``shas``."""
    shas = [
        git_builder.commit("Initial commit", {
            "README.md": "# Sample\nA tiny sample project.\n",
            "app.py": "print('hello')\n",
        }),
        git_builder.commit("Add greeting helper", {
            "greet.py": "def greet(name):\n    return f'hi {name}'\n",
        }),
        git_builder.commit("Use greeting helper", {
            "app.py": "from greet import greet\nprint(greet('world'))\n",
        }),
    ]
    git_builder.shas = shas
    return git_builder
