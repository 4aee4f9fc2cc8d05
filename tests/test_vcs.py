# Copyright (c) Syntropy Systems
"""Tests for the git isolation layer (real git in temporary repositories)."""

import json
from pathlib import Path

import httpx
import pytest

from conftest import git
from polish.errors import VcsError
from polish.models import CommitInfo
from polish.vcs import GitHubClient, GitWorkspaceManager, PublishOptions, parse_github_remote


@pytest.fixture
def vcs(git_repo: Path, worktree_root: Path) -> GitWorkspaceManager:
    return GitWorkspaceManager(git_repo, worktree_root)


def tree_snapshot(path: Path) -> dict[str, str]:
    """Contents of every file outside .git."""
    return {
        str(p.relative_to(path)): p.read_text()
        for p in sorted(path.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(path).parts
    }


class TestPreflight:
    """Tests for repository checks."""

    def test_clean_repo_passes(self, vcs: GitWorkspaceManager) -> None:
        vcs.preflight()

    def test_dirty_tracked_file_fails(self, vcs: GitWorkspaceManager, git_repo: Path) -> None:
        (git_repo / "README.md").write_text("changed\n")
        with pytest.raises(VcsError, match="uncommitted"):
            vcs.preflight()

    def test_untracked_files_are_ignored(self, vcs: GitWorkspaceManager, git_repo: Path) -> None:
        (git_repo / "notes.txt").write_text("scratch\n")
        vcs.preflight()

    def test_not_a_repository(self, temp_dir: Path) -> None:
        plain = temp_dir / "plain"
        plain.mkdir()
        with pytest.raises(VcsError, match="not a git repository"):
            GitWorkspaceManager(plain).preflight()


class TestWorkspace:
    """Tests for worktree creation and removal."""

    def test_create_isolated_workspace(self, vcs: GitWorkspaceManager, git_repo: Path) -> None:
        ws = vcs.create_isolated_workspace("abc123")

        assert ws.path.is_dir()
        assert ws.branch_name == "polish/session-abc123"
        assert ws.base_branch == "main"
        assert ws.base_commit == vcs.head_commit()
        assert (ws.path / "score.txt").read_text() == "80\n"
        # The user's checkout is untouched
        assert vcs.current_branch() == "main"

        vcs.destroy_workspace(ws, keep_branch=False)
        assert not ws.path.exists()
        assert "polish/session-abc123" not in git(git_repo, "branch", "--list")

    def test_destroy_keeps_branch(self, vcs: GitWorkspaceManager, git_repo: Path) -> None:
        ws = vcs.create_isolated_workspace("keep01")
        (ws.path / "score.txt").write_text("90\n")
        _ = vcs.commit_change(ws.path, "fix(tests): improve - +10.0 pts")

        vcs.destroy_workspace(ws, keep_branch=True)

        assert not ws.path.exists()
        log = git(git_repo, "log", "--format=%s", "polish/session-keep01")
        assert log.splitlines()[0] == "fix(tests): improve - +10.0 pts"

    def test_existing_path_is_refused(self, vcs: GitWorkspaceManager, worktree_root: Path) -> None:
        (worktree_root / "taken").mkdir(parents=True)
        with pytest.raises(VcsError):
            _ = vcs.create_isolated_workspace("taken")


class TestCommitAndRollback:
    """Tests for per-iteration operations."""

    def test_commit_change(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("commit1")
        (ws.path / "new_module.py").write_text("x = 1\n")

        assert vcs.has_changes(ws.path)
        commit = vcs.commit_change(ws.path, "feat: add module")

        assert commit == vcs.head_commit(ws.path)
        assert not vcs.has_changes(ws.path)
        assert git(ws.path, "log", "-1", "--format=%s").strip() == "feat: add module"
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_rollback_restores_tree_exactly(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("rollback1")
        before = tree_snapshot(ws.path)

        (ws.path / "score.txt").write_text("100\n")
        (ws.path / "README.md").unlink()
        (ws.path / "pkg").mkdir()
        (ws.path / "pkg" / "added.py").write_text("y = 2\n")

        vcs.rollback_change(ws.path)

        assert tree_snapshot(ws.path) == before
        assert not vcs.has_changes(ws.path)
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_rollback_is_idempotent(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("rollback2")
        (ws.path / "score.txt").write_text("1\n")

        vcs.rollback_change(ws.path)
        once = tree_snapshot(ws.path)
        vcs.rollback_change(ws.path)

        assert tree_snapshot(ws.path) == once
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_rollback_to_commit_discards_later_commits(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("rollback3")
        base = ws.base_commit
        (ws.path / "score.txt").write_text("99\n")
        _ = vcs.commit_change(ws.path, "agent commit")

        vcs.rollback_change(ws.path, to_commit=base)

        assert vcs.head_commit(ws.path) == base
        assert (ws.path / "score.txt").read_text() == "80\n"
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_uncommit_keeps_changes(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("uncommit1")
        (ws.path / "score.txt").write_text("99\n")
        _ = vcs.commit_change(ws.path, "agent commit")

        vcs.uncommit(ws.path, ws.base_commit)

        assert vcs.head_commit(ws.path) == ws.base_commit
        assert vcs.has_changes(ws.path)
        assert (ws.path / "score.txt").read_text() == "99\n"
        vcs.destroy_workspace(ws, keep_branch=False)


class TestFinalize:
    """Tests for keeping and publishing the session branch."""

    def test_no_commits_drops_branch(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("final1")
        result = vcs.finalize(ws, [])

        assert not result.kept
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_commits_keep_branch_without_publishing(self, vcs: GitWorkspaceManager) -> None:
        ws = vcs.create_isolated_workspace("final2")
        (ws.path / "fixed.py").write_text("x = 1\n")
        commit = vcs.commit_change(ws.path, "fix")
        commits = [CommitInfo(hash=commit, message="fix", score_delta=5.0)]

        result = vcs.finalize(ws, commits, PublishOptions())

        assert result.kept
        assert not result.pushed
        assert result.pr_url is None
        assert "fixed.py" in result.diff_stat
        assert "1 file changed" in result.diff_stat
        vcs.destroy_workspace(ws, keep_branch=False)

    def test_pull_request_requires_token(self, vcs: GitWorkspaceManager, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        ws = vcs.create_isolated_workspace("final3")
        commits = [CommitInfo(hash="abc", message="fix", score_delta=5.0)]
        monkeypatch.setattr(vcs, "push", lambda branch: None)

        with pytest.raises(VcsError, match="GITHUB_TOKEN"):
            _ = vcs.finalize(ws, commits, PublishOptions(create_pr=True))
        vcs.destroy_workspace(ws, keep_branch=False)


class TestGitHub:
    """Tests for the pull request client."""

    def test_parse_remote(self) -> None:
        assert parse_github_remote("git@github.com:acme/widgets.git") == ("acme", "widgets")
        assert parse_github_remote("https://github.com/acme/widgets") == ("acme", "widgets")
        assert parse_github_remote("https://gitlab.com/acme/widgets.git") is None

    def test_create_pull_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"html_url": "https://github.com/acme/widgets/pull/7"})

        client = GitHubClient("token-1", transport=httpx.MockTransport(handler))
        url = client.create_pull_request("acme", "widgets", "polish/session-x", "main", "t", "b")
        client.close()

        assert url == "https://github.com/acme/widgets/pull/7"
        assert seen[0].url.path == "/repos/acme/widgets/pulls"
        assert seen[0].headers["Authorization"] == "Bearer token-1"
        assert json.loads(seen[0].content)["head"] == "polish/session-x"

    def test_rejected_pull_request(self) -> None:
        client = GitHubClient(
            "token-1",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "exists"})),
        )
        with pytest.raises(VcsError, match="422"):
            _ = client.create_pull_request("acme", "widgets", "h", "main", "t", "b")
        client.close()
