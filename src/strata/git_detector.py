"""Git helpers for repository-relative configuration functions.

This module backs ``get_repo_root()``, ``get_path_from_repo_root()`` and
``get_path_to_repo_root()``, and lists files changed between commits so that
only the affected units can be selected.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import BadName, GitError


class GitDetectorError(Exception):
    """Base exception for git detector errors."""

    pass


# Repository roots keyed by the directory they were looked up from.
_repo_root_cache: Dict[str, str] = {}


class GitDetector:
    """Reads repository information for a directory inside a git work tree."""

    def __init__(self, path: Optional[str] = None):
        """Initialize the git detector.

        Args:
            path: Any directory inside the repository. If None, uses the current
                working directory.

        Raises:
            GitDetectorError: If the path is not inside a git repository.
        """
        if path is None:
            path = os.getcwd()

        self.path = Path(path).resolve()

        try:
            self.repo = Repo(self.path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise GitDetectorError(f"Path '{self.path}' is not inside a git repository")
        except GitError as e:
            raise GitDetectorError(f"Error accessing git repository: {e}")

    def get_repo_root(self) -> str:
        """Return the absolute path of the repository work tree."""
        if self.repo.working_tree_dir is None:
            raise GitDetectorError(f"Repository at '{self.path}' is bare")
        return str(Path(self.repo.working_tree_dir).resolve())

    def get_changed_files(self, from_commit: str, to_commit: str = "HEAD") -> List[str]:
        """Get absolute paths of files changed between two commits.

        Args:
            from_commit: Starting commit SHA, branch name, or tag.
            to_commit: Ending commit SHA, branch name, or tag. Defaults to "HEAD".

        Returns:
            Absolute paths of files added, copied, modified, renamed or deleted.

        Raises:
            GitDetectorError: If commits are invalid or git operation fails.
        """
        try:
            diff = self.repo.git.diff("--name-only", from_commit, to_commit)
        except (GitCommandError, BadName) as e:
            raise GitDetectorError(
                f"Error getting changed files between '{from_commit}' and '{to_commit}': {e}"
            )
        except GitError as e:
            raise GitDetectorError(f"Git error while getting changed files: {e}")

        root = self.get_repo_root()
        return [os.path.join(root, f.strip()) for f in diff.split("\n") if f.strip()]


def find_repo_root(path: str) -> str:
    """Return the repository root for ``path``, caching the lookup.

    Raises:
        GitDetectorError: If ``path`` is not inside a git repository.
    """
    key = os.path.abspath(path)
    if key not in _repo_root_cache:
        _repo_root_cache[key] = GitDetector(key).get_repo_root()
    return _repo_root_cache[key]


def clear_repo_root_cache() -> None:
    _repo_root_cache.clear()
