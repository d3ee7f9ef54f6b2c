"""Unit tests for git_detector module."""

import os
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from git import Repo
from git.exc import BadName, GitCommandError, InvalidGitRepositoryError

from strata.git_detector import (
    GitDetector,
    GitDetectorError,
    clear_repo_root_cache,
    find_repo_root,
)


def _commit(repo, root, files, message):
    for name, content in files.items():
        target = Path(root) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    repo.index.add(list(files))
    return repo.index.commit(message)


@pytest.fixture
def repo_dir(tmp_path):
    repo = Repo.init(tmp_path)
    _commit(repo, tmp_path, {"README.md": "readme"}, "Initial commit")
    yield tmp_path, repo
    repo.close()


class TestGitDetector:
    """Test cases for GitDetector class."""

    def test_init_with_valid_repo(self, repo_dir):
        """Test initialization with a valid git repository."""
        root, _ = repo_dir
        detector = GitDetector(str(root))
        assert detector.path == Path(root).resolve()
        assert detector.repo is not None
        detector.repo.close()

    def test_init_from_subdirectory(self, repo_dir):
        """Test that the repository is found from a nested directory."""
        root, _ = repo_dir
        nested = root / "live" / "prod"
        nested.mkdir(parents=True)

        detector = GitDetector(str(nested))
        assert detector.get_repo_root() == str(Path(root).resolve())
        detector.repo.close()

    def test_init_with_invalid_repo(self, tmp_path):
        """Test initialization with a non-git directory."""
        with patch("strata.git_detector.Repo", side_effect=InvalidGitRepositoryError("x")):
            with pytest.raises(GitDetectorError) as exc_info:
                GitDetector(str(tmp_path))
        assert "not inside a git repository" in str(exc_info.value)

    def test_get_changed_files_between_commits(self, repo_dir):
        """Test getting files changed between two commits."""
        root, repo = repo_dir
        first = _commit(repo, root, {"app/main.hcl": "a", "db/main.hcl": "b"}, "Add units")
        second = _commit(repo, root, {"app/main.hcl": "changed"}, "Change app")

        detector = GitDetector(str(root))
        changed = detector.get_changed_files(first.hexsha, second.hexsha)
        detector.repo.close()

        resolved = str(Path(root).resolve())
        assert changed == [os.path.join(resolved, "app/main.hcl")]

    def test_get_changed_files_no_changes(self, repo_dir):
        """Test that identical commits have no changed files."""
        root, repo = repo_dir
        detector = GitDetector(str(root))
        head = repo.head.commit.hexsha
        assert detector.get_changed_files(head, head) == []
        detector.repo.close()

    def test_get_changed_files_invalid_commit(self, repo_dir):
        """Test that an unknown ref raises GitDetectorError."""
        root, _ = repo_dir
        detector = GitDetector(str(root))
        with pytest.raises(GitDetectorError) as exc_info:
            detector.get_changed_files("invalid-commit", "HEAD")
        assert "Error getting changed files" in str(exc_info.value)
        detector.repo.close()

    @patch("strata.git_detector.Repo")
    def test_get_changed_files_git_command_error(self, mock_repo_class, tmp_path):
        """Test error handling when git diff fails."""
        mock_repo = Mock()
        mock_repo.git.diff.side_effect = GitCommandError("diff", 128)
        mock_repo_class.return_value = mock_repo

        detector = GitDetector(str(tmp_path))
        with pytest.raises(GitDetectorError) as exc_info:
            detector.get_changed_files("commit1", "commit2")
        assert "Error getting changed files" in str(exc_info.value)

    @patch("strata.git_detector.Repo")
    def test_get_changed_files_bad_revision(self, mock_repo_class, tmp_path):
        """Test that an unresolvable revision is reported as a detector error."""
        mock_repo = Mock()
        mock_repo.git.diff.side_effect = BadName("nope")
        mock_repo_class.return_value = mock_repo

        detector = GitDetector(str(tmp_path))
        with pytest.raises(GitDetectorError) as exc_info:
            detector.get_changed_files("nope")
        assert "Error getting changed files between 'nope' and 'HEAD'" in str(exc_info.value)

    @patch("strata.git_detector.Repo")
    def test_get_repo_root_bare(self, mock_repo_class, tmp_path):
        """Test that a bare repository has no root."""
        mock_repo = Mock()
        mock_repo.working_tree_dir = None
        mock_repo_class.return_value = mock_repo

        detector = GitDetector(str(tmp_path))
        with pytest.raises(GitDetectorError):
            detector.get_repo_root()


class TestFindRepoRoot:
    """Test cases for the cached repository root lookup."""

    def setup_method(self):
        clear_repo_root_cache()

    def teardown_method(self):
        clear_repo_root_cache()

    @patch("strata.git_detector.GitDetector")
    def test_lookup_is_cached(self, mock_detector_class, tmp_path):
        """Test that the repository is opened once per directory."""
        mock_detector_class.return_value.get_repo_root.return_value = "/repo"

        assert find_repo_root(str(tmp_path)) == "/repo"
        assert find_repo_root(str(tmp_path)) == "/repo"
        assert mock_detector_class.call_count == 1

    def test_not_a_repository(self, tmp_path):
        """Test that a directory outside a repository raises."""
        with patch("strata.git_detector.Repo", side_effect=InvalidGitRepositoryError("x")):
            with pytest.raises(GitDetectorError):
                find_repo_root(str(tmp_path))
