"""Read-only access to a local git repository.

Project metadata, the commit log and per-commit diffs, extracted by running
the ``git`` executable. Nothing here writes to the repository.
"""

from __future__ import annotations

import io
import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30  # seconds per git invocation
README_NAMES = ("README.md", "README.rst", "README.txt", "README")
README_MAX_BYTES = 200_000

# Field / record separators for git log --format
_FS = "\x1f"
_RS = "\x1e"


class RepositoryError(Exception):
    """Error reading the repository."""


class RepositoryNotFound(RepositoryError):
    """The path does not exist."""


class InvalidRepository(RepositoryError):
    """The path exists but is not a git repository."""


class EmptyRepository(RepositoryError):
    """The repository has no commits."""


class CorruptRepository(RepositoryError):
    """A query against the repository storage failed."""


class FileStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class ProjectMeta:
    """Snapshot of repository-level facts, taken at open time."""

    name: str
    readme_text: str | None = None
    remote_url: str | None = None
    default_branch: str | None = None


@dataclass(frozen=True)
class CommitRecord:
    id: str
    short_id: str
    author: str
    timestamp: int
    message: str
    parent_count: int

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]


@dataclass(frozen=True)
class FileDelta:
    path: str
    status: FileStatus
    additions: int = 0
    deletions: int = 0
    patch_text: str = ""
    binary: bool = False
    old_path: str | None = None


@dataclass(frozen=True)
class DiffRecord:
    commit_id: str
    files: tuple[FileDelta, ...] = ()

    @property
    def text(self) -> str:
        """Patch text of every non-binary file, in diff order."""
        return "".join(f.patch_text for f in self.files if not f.binary)

    @property
    def binary_paths(self) -> list[str]:
        return [f.path for f in self.files if f.binary]


class GitRepository:
    """An opened repository. Use as a context manager.

    Queries fail with RepositoryError once the handle is closed.
    """

    def __init__(self, root: Path):
        self.root = root
        self._closed = False
        self._meta: ProjectMeta | None = None

    @classmethod
    def open(cls, path: str | Path) -> "GitRepository":
        """Open the repository rooted at ``path``.

        Raises RepositoryNotFound, InvalidRepository or EmptyRepository.
        Parent directories are not searched.
        """
        path = Path(path).expanduser().resolve()
        if not path.exists():
            raise RepositoryNotFound(f"Path does not exist: {path}")
        if not path.is_dir():
            raise RepositoryNotFound(f"Not a directory: {path}")

        # Stop git from climbing out of ``path`` looking for a repository
        env = {**os.environ, "GIT_CEILING_DIRECTORIES": str(path.parent)}
        result = _run_git(path, ["rev-parse", "--git-dir"], env=env)
        if result.returncode != 0:
            raise InvalidRepository(f"Not a git repository: {path}")

        repo = cls(path)
        head = repo._git(["rev-parse", "--verify", "--quiet", "HEAD^{commit}"], check=False)
        if head.returncode != 0 or not head.stdout.strip():
            raise EmptyRepository(f"Repository has no commits: {path}")

        repo._meta = repo._read_meta()
        logger.debug("Opened repository %s at %s", path, head.stdout.strip()[:12])
        return repo

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "GitRepository":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def project_meta(self) -> ProjectMeta:
        self._check_open()
        assert self._meta is not None
        return self._meta

    def commit_log(self, limit: int) -> list[CommitRecord]:
        """Up to ``limit`` commits reachable from HEAD, newest first.

        Topological order: no commit appears before any of its descendants.
        """
        self._check_open()
        if limit <= 0:
            return []

        fmt = _FS.join(["%H", "%h", "%an", "%at", "%P", "%B"]) + _RS
        result = self._git(
            ["log", "--topo-order", f"--max-count={limit}", f"--format={fmt}", "HEAD"]
        )

        commits = []
        for record in result.stdout.split(_RS):
            record = record.lstrip("\n")
            if not record:
                continue
            parts = record.split(_FS, 5)
            if len(parts) != 6:
                raise CorruptRepository(f"Unexpected git log output: {record[:80]!r}")
            sha, short, author, timestamp, parents, message = parts
            commits.append(CommitRecord(
                id=sha,
                short_id=short,
                author=author or "Unknown",
                timestamp=int(timestamp or 0),
                message=message.strip() or "No commit message",
                parent_count=len(parents.split()),
            ))
        return commits

    def diff_for(self, commit_id: str) -> DiffRecord:
        """Diff of ``commit_id`` against its first parent.

        Root commits are diffed against the empty tree.
        """
        self._check_open()
        result = self._git(["rev-list", "--parents", "-n", "1", commit_id, "--"])
        ids = result.stdout.split()
        if not ids:
            raise CorruptRepository(f"Unknown commit: {commit_id}")
        sha, parents = ids[0], ids[1:]

        args = ["diff-tree", "-p", "-r", "-M", "--no-color", "--no-ext-diff"]
        if parents:
            args += [parents[0], sha]
        else:
            args += ["--root", "--no-commit-id", sha]
        patch = self._git(args)
        return DiffRecord(commit_id=sha, files=tuple(parse_patch(patch.stdout)))

    def _read_meta(self) -> ProjectMeta:
        return ProjectMeta(
            name=self.root.name,
            readme_text=self._read_readme(),
            remote_url=self._read_remote(),
            default_branch=self._read_branch(),
        )

    def _read_readme(self) -> str | None:
        result = self._git(["ls-tree", "--name-only", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        names = result.stdout.split("\n")
        candidates = [n for n in README_NAMES if n in names]
        candidates += sorted(n for n in names if n.upper().startswith("README") and n not in candidates)
        for name in candidates:
            blob = self._git(["show", f"HEAD:{name}"], check=False)
            if blob.returncode == 0:
                return blob.stdout[:README_MAX_BYTES]
        return None

    def _read_remote(self) -> str | None:
        remotes = self._git(["remote"], check=False).stdout.split()
        if not remotes:
            return None
        name = "origin" if "origin" in remotes else remotes[0]
        url = self._git(["remote", "get-url", name], check=False)
        if url.returncode != 0:
            return None
        return url.stdout.strip() or None

    def _read_branch(self) -> str | None:
        result = self._git(["symbolic-ref", "--short", "-q", "HEAD"], check=False)
        return result.stdout.strip() or None

    def _check_open(self) -> None:
        if self._closed:
            raise RepositoryError(f"Repository handle is closed: {self.root}")

    def _git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        result = _run_git(self.root, args)
        if check and result.returncode != 0:
            raise CorruptRepository(
                f"git {args[0]} failed: {result.stderr.strip()[:200]}"
            )
        return result


def _run_git(cwd: Path, args: list[str], env: dict | None = None) -> subprocess.CompletedProcess:
    cmd = ["git", "-c", "core.quotepath=off", *args]
    try:
        return subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=GIT_TIMEOUT,
            env=env,
        )
    except FileNotFoundError as e:
        raise RepositoryError("git executable not found on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise CorruptRepository(f"git {args[0]} timed out after {GIT_TIMEOUT}s") from e


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping line endings.

    Form feeds and other characters that str.splitlines treats as breaks
    stay inside their line, as they do for git.
    """
    return list(io.StringIO(text, newline="\n"))


def parse_patch(text: str) -> list[FileDelta]:
    """Split ``git diff`` patch output into one FileDelta per file."""
    sections: list[list[str]] = []
    for line in split_lines(text):
        if line.startswith("diff --git ") or not sections:
            sections.append([])
        sections[-1].append(line)
    return [_parse_file_section(s) for s in sections if s and s[0].startswith("diff --git ")]


def _parse_file_section(lines: list[str]) -> FileDelta:
    status = FileStatus.MODIFIED
    old_path = new_path = None
    binary = False
    additions = deletions = 0
    in_hunk = False

    for line in lines[1:]:
        if in_hunk:
            if line.startswith("@@"):
                continue
            if line.startswith("+"):
                additions += 1
            elif line.startswith("-"):
                deletions += 1
            continue
        if line.startswith("@@"):
            in_hunk = True
        elif line.startswith("new file mode"):
            status = FileStatus.ADDED
        elif line.startswith("deleted file mode"):
            status = FileStatus.DELETED
        elif line.startswith("rename from "):
            status = FileStatus.RENAMED
            old_path = line[len("rename from "):].rstrip("\n")
        elif line.startswith("rename to "):
            new_path = line[len("rename to "):].rstrip("\n")
        elif line.startswith("--- a/"):
            old_path = old_path or _marker_path(line, "--- a/")
        elif line.startswith("+++ b/"):
            new_path = _marker_path(line, "+++ b/")
        elif line.startswith("Binary files ") or line.startswith("GIT binary patch"):
            binary = True

    if new_path is None:
        new_path = old_path if status == FileStatus.DELETED and old_path else _header_path(lines[0])

    return FileDelta(
        path=new_path,
        status=status,
        additions=additions,
        deletions=deletions,
        patch_text="" if binary else "".join(lines),
        binary=binary,
        old_path=old_path if status == FileStatus.RENAMED else None,
    )


def _marker_path(line: str, prefix: str) -> str:
    # git ends a ---/+++ path containing a space with a tab
    return line[len(prefix):].rstrip("\n").rstrip("\t")

def _header_path(header: str) -> str:
    """Best-effort path from a ``diff --git a/x b/x`` line."""
    rest = header[len("diff --git "):].rstrip("\n")
    marker = rest.rfind(" b/")
    if marker != -1:
        return rest[marker + 3:]
    return rest.split(" ")[-1]
