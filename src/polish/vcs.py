# Copyright (c) Syntropy Systems
"""Git isolation layer: worktrees, atomic commits, exact rollback."""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx

from polish.errors import VcsError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from polish.models import CommitInfo

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "polish/session-"
GIT_TIMEOUT = 120
GITHUB_API = "https://api.github.com"

_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")


def run_git(
    args: Sequence[str],
    cwd: Path,
    check: bool = True,
    timeout: float = GIT_TIMEOUT,
) -> subprocess.CompletedProcess[str]:
    """Run a git command, raising VcsError on failure when check is set."""
    command = ["git", *args]
    logger.debug("Running: %s (in %s)", " ".join(command), cwd)
    try:
        result = subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            cwd=str(cwd),
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        msg = f"git {args[0] if args else ''} could not run"
        raise VcsError(msg, command=command, stderr=str(e)) from e

    if check and result.returncode != 0:
        msg = f"git {' '.join(args)} failed with exit code {result.returncode}"
        raise VcsError(msg, command=command, stderr=result.stderr)
    return result


def parse_github_remote(url: str) -> Optional[tuple[str, str]]:
    """Extract (owner, repo) from an SSH or HTTPS GitHub remote URL."""
    match = _GITHUB_REMOTE_RE.search(url.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


@dataclass
class Workspace:
    """An isolated worktree owned by one session."""

    path: Path
    branch_name: str
    base_branch: str
    base_commit: str


@dataclass
class FinalizeResult:
    """What happened to the session branch."""

    branch_name: str
    kept: bool
    pushed: bool = False
    pr_url: Optional[str] = None
    diff_stat: str = ""


@dataclass
class PublishOptions:
    push: bool = False
    create_pr: bool = False
    title: Optional[str] = None
    body: Optional[str] = None
    token: Optional[str] = None


class GitHubClient:
    """Minimal GitHub REST client for opening pull requests."""

    def __init__(
        self,
        token: str,
        api_url: str = GITHUB_API,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> str:
        """Open a pull request and return its URL."""
        url = f"{self.api_url}/repos/{owner}/{repo}/pulls"
        try:
            response = self._client.post(
                url,
                json={"title": title, "body": body, "head": head, "base": base},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"GitHub refused the pull request ({e.response.status_code})"
            raise VcsError(msg, stderr=e.response.text) from e
        except httpx.HTTPError as e:
            msg = "Could not reach GitHub"
            raise VcsError(msg, stderr=str(e)) from e

        data = response.json()
        return str(data["html_url"])


class GitWorkspaceManager:
    """Creates and manages isolated worktrees of one repository."""

    def __init__(self, repo_path: Path, worktree_root: Optional[Path] = None) -> None:
        self.repo_path = repo_path.resolve()
        self.worktree_root = worktree_root

    # --- Repository checks ---

    def current_branch(self) -> str:
        result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], self.repo_path)
        return result.stdout.strip()

    def head_commit(self, path: Optional[Path] = None) -> str:
        result = run_git(["rev-parse", "HEAD"], path or self.repo_path)
        return result.stdout.strip()

    def preflight(self) -> None:
        """Refuse to start on anything but a clean repository with history."""
        inside = run_git(["rev-parse", "--is-inside-work-tree"], self.repo_path, check=False)
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            msg = f"{self.repo_path} is not a git repository"
            raise VcsError(msg, command=["git", "rev-parse", "--is-inside-work-tree"])

        head = run_git(["rev-parse", "--verify", "HEAD"], self.repo_path, check=False)
        if head.returncode != 0:
            msg = f"{self.repo_path} has no commits yet"
            raise VcsError(msg, command=["git", "rev-parse", "--verify", "HEAD"])

        status = run_git(["status", "--porcelain", "--untracked-files=no"], self.repo_path)
        if status.stdout.strip():
            msg = "Working tree has uncommitted changes; commit or stash them first"
            raise VcsError(msg, command=["git", "status", "--porcelain"], stderr=status.stdout)

    # --- Workspace lifecycle ---

    def create_isolated_workspace(
        self,
        session_id: str,
        base_branch: Optional[str] = None,
    ) -> Workspace:
        """Create a worktree on a fresh branch `polish/session-<id>`."""
        base = base_branch or self.current_branch()
        branch_name = f"{BRANCH_PREFIX}{session_id}"

        root = self.worktree_root or Path(tempfile.gettempdir()) / "polish-worktrees"
        root.mkdir(parents=True, exist_ok=True)
        path = root / session_id
        if path.exists():
            msg = f"Worktree path already exists: {path}"
            raise VcsError(msg)

        run_git(["worktree", "add", "-b", branch_name, str(path), base], self.repo_path)
        base_commit = self.head_commit(path)
        logger.info("Created worktree %s on %s (from %s)", path, branch_name, base)
        return Workspace(path=path, branch_name=branch_name, base_branch=base, base_commit=base_commit)

    def destroy_workspace(self, workspace: Workspace, keep_branch: bool = True) -> None:
        """Remove the worktree, and the branch unless it is kept."""
        result = run_git(
            ["worktree", "remove", "--force", str(workspace.path)],
            self.repo_path,
            check=False,
        )
        if result.returncode != 0:
            logger.warning("git worktree remove failed, pruning: %s", result.stderr.strip())
            shutil.rmtree(workspace.path, ignore_errors=True)
            run_git(["worktree", "prune"], self.repo_path)

        if not keep_branch:
            run_git(["branch", "-D", workspace.branch_name], self.repo_path)
        logger.info("Removed worktree %s", workspace.path)

    # --- Per-iteration operations ---

    def has_changes(self, path: Path) -> bool:
        result = run_git(["status", "--porcelain"], path)
        return bool(result.stdout.strip())

    def commit_change(self, path: Path, message: str) -> str:
        """Stage everything and commit. Returns the new commit hash."""
        run_git(["add", "-A"], path)
        run_git(["commit", "--no-verify", "-m", message], path)
        return self.head_commit(path)

    def rollback_change(self, path: Path, to_commit: Optional[str] = None) -> None:
        """Discard every uncommitted change, including new untracked files.

        With `to_commit`, commits made after it are discarded as well.
        """
        run_git(["reset", "--hard", to_commit or "HEAD"], path)
        run_git(["clean", "-fd"], path)

    def uncommit(self, path: Path, to_commit: str) -> None:
        """Move HEAD back to `to_commit`, keeping the changes in the tree."""
        run_git(["reset", "--soft", to_commit], path)

    def diff_stat(self, path: Path, base_commit: str) -> str:
        result = run_git(["diff", "--stat", f"{base_commit}..HEAD"], path)
        return result.stdout

    # --- Publishing ---

    def remote_url(self, name: str = "origin") -> Optional[str]:
        result = run_git(["remote", "get-url", name], self.repo_path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def push(self, branch_name: str) -> None:
        run_git(["push", "--set-upstream", "origin", branch_name], self.repo_path)

    def finalize(
        self,
        workspace: Workspace,
        commits: Sequence[CommitInfo],
        publish: Optional[PublishOptions] = None,
    ) -> FinalizeResult:
        """Keep the session branch for review when it has commits."""
        if not commits:
            return FinalizeResult(branch_name=workspace.branch_name, kept=False)

        result = FinalizeResult(
            branch_name=workspace.branch_name,
            kept=True,
            diff_stat=self.diff_stat(workspace.path, workspace.base_commit),
        )
        if publish is None or not (publish.push or publish.create_pr):
            return result

        self.push(workspace.branch_name)
        result.pushed = True

        if publish.create_pr:
            result.pr_url = self._open_pull_request(workspace, commits, publish, result.diff_stat)
        return result

    def _open_pull_request(
        self,
        workspace: Workspace,
        commits: Sequence[CommitInfo],
        publish: PublishOptions,
        diff_stat: str = "",
    ) -> str:
        token = publish.token or os.environ.get("GITHUB_TOKEN")
        if not token:
            msg = "GITHUB_TOKEN is required to open a pull request"
            raise VcsError(msg)

        remote = self.remote_url()
        parsed = parse_github_remote(remote) if remote else None
        if parsed is None:
            msg = f"origin is not a GitHub remote: {remote}"
            raise VcsError(msg)
        owner, repo = parsed

        title = publish.title or f"polish: {len(commits)} quality improvements"
        body = publish.body
        if body is None:
            body = "\n".join(f"- {c.message} ({c.score_delta:+.1f})" for c in commits)
            if diff_stat.strip():
                body += f"\n\n```\n{diff_stat.rstrip()}\n```"

        client = GitHubClient(token)
        try:
            return client.create_pull_request(
                owner,
                repo,
                head=workspace.branch_name,
                base=workspace.base_branch,
                title=title,
                body=body,
            )
        finally:
            client.close()
