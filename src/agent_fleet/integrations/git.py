"""Git subprocess wrappers for worktree, branch and merge operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e


def is_git_repo(path: str | Path) -> bool:
    """Check if a directory is inside a git work tree."""
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n") + [""]:
        if not line:
            if current:
                worktrees.append(
                    WorktreeInfo(
                        path=current.get("worktree", ""),
                        branch=current.get("branch", "").replace("refs/heads/", ""),
                        head=current.get("HEAD", ""),
                        is_bare=current.get("bare", False),
                    )
                )
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    """Drop registrations of worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches ─────────────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str, start_point: str) -> str:
    """Create a branch at start_point without checking it out."""
    return run_git(["branch", branch, start_point], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name. Empty string on a detached HEAD."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def checkout(cwd: str | Path, ref: str) -> str:
    return run_git(["checkout", ref], cwd=cwd)


def commit_count(cwd: str | Path, base: str, head: str = "HEAD") -> int:
    """Number of commits reachable from head but not from base."""
    try:
        output = run_git(["rev-list", "--count", f"{base}..{head}"], cwd=cwd)
    except GitError:
        return 0
    return int(output) if output.isdigit() else 0


def is_ancestor(cwd: str | Path, ancestor: str, descendant: str) -> bool:
    try:
        run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd=cwd)
        return True
    except GitError:
        return False


# ── Status ───────────────────────────────────────────────────────────────────


def is_dirty(cwd: str | Path) -> bool:
    """True when the working tree has uncommitted or untracked changes."""
    return bool(run_git(["status", "--porcelain"], cwd=cwd))


# ── Merging ──────────────────────────────────────────────────────────────────


def merge(cwd: str | Path, branch: str) -> str:
    """Merge branch into the current checkout. Raises GitError on conflict."""
    return run_git(["merge", "--no-edit", branch], cwd=cwd)


def merge_abort(cwd: str | Path) -> None:
    """Abort an in-progress merge, if any."""
    try:
        run_git(["merge", "--abort"], cwd=cwd)
    except GitError:
        pass  # No merge in progress


def merge_in_progress(cwd: str | Path) -> bool:
    try:
        run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], cwd=cwd)
        return True
    except GitError:
        return False


def conflicted_files(cwd: str | Path) -> list[str]:
    """Paths with unresolved merge conflicts."""
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.split("\n") if line]


def commit_merge(cwd: str | Path) -> str:
    """Conclude a merge whose conflicts have been staged."""
    return run_git(["commit", "--no-edit"], cwd=cwd)


# ── Remote ───────────────────────────────────────────────────────────────────


def push_branch(cwd: str | Path, branch: str, remote: str = "origin") -> str:
    return run_git(["push", "-u", remote, branch], cwd=cwd)
