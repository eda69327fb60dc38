"""Git repository metadata for session workspaces."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class RepoInfo:
    repo_root: str | None = None
    repo_name: str | None = None
    branch: str | None = None


def git_output(directory: Path, *args: str) -> str | None:
    """Run a git command in ``directory`` and return its trimmed stdout."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=directory,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("git %s failed in %s: %s", " ".join(args), directory, exc)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


class RepoResolver:
    """Resolve and cache repo info per workspace for one index pass."""

    def __init__(self):
        self._cache: dict[Path, RepoInfo] = {}

    def resolve(self, workspace: Path | None) -> RepoInfo:
        if workspace is None:
            return RepoInfo()
        if workspace not in self._cache:
            self._cache[workspace] = self._lookup(workspace)
        return self._cache[workspace]

    def _lookup(self, workspace: Path) -> RepoInfo:
        top = git_output(workspace, "rev-parse", "--show-toplevel")
        if top is None:
            return RepoInfo()
        root = Path(top).resolve()
        if not root.is_dir():
            return RepoInfo()

        branch = git_output(root, "rev-parse", "--abbrev-ref", "HEAD")
        if branch == "HEAD":
            # Detached HEAD has no branch name
            branch = None

        return RepoInfo(repo_root=str(root), repo_name=root.name, branch=branch)
