"""GitHub access through the `gh` CLI: issues as tasks and pull requests for finished jobs."""

import json
import shutil
import subprocess
from pathlib import Path


class GitHubError(Exception):
    """Raised when a gh command fails."""


def gh_available() -> bool:
    return shutil.which("gh") is not None


def run_gh(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a gh command and return stdout. Raises GitHubError on failure."""
    cmd = ["gh"] + args
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
        raise GitHubError(f"gh {' '.join(args[:2])} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitHubError("gh executable not found") from e


def list_issues(
    repo: str,
    state: str = "open",
    label: str | None = None,
    limit: int = 500,
) -> list[dict]:
    """List issues as dicts with number, title and body."""
    args = [
        "issue", "list",
        "--repo", repo,
        "--state", state,
        "--limit", str(limit),
        "--json", "number,title,body",
    ]
    if label:
        args += ["--label", label]
    output = run_gh(args)
    if not output:
        return []
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise GitHubError(f"Unexpected gh output: {output[:200]}") from e


def close_issue(repo: str, number: int | str) -> str:
    return run_gh(["issue", "close", str(number), "--repo", repo])


def create_pull_request(
    cwd: str | Path,
    base: str,
    head: str,
    title: str,
    body: str = "",
    draft: bool = False,
) -> str:
    """Open a pull request and return its URL."""
    args = [
        "pr", "create",
        "--base", base,
        "--head", head,
        "--title", title,
        "--body", body,
    ]
    if draft:
        args.append("--draft")
    return run_gh(args, cwd=cwd)
