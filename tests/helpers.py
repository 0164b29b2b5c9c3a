"""Test helpers: git shortcuts and a scripted in-process agent backend."""

import re
import subprocess
import threading
from pathlib import Path

from agent_fleet.core.engines import AgentResult
from agent_fleet.core.tasks import slugify

TASK_RE = re.compile(r"^TASK: (.+)$", re.MULTILINE)


def git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def branches(repo, pattern: str = "fleet/*") -> list[str]:
    output = git(repo, "branch", "--list", pattern, "--format=%(refname:short)")
    return [line for line in output.splitlines() if line]


def commit_file(cwd, name: str, content: str, message: str = "agent work") -> None:
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, "add", "-A")
    git(cwd, "commit", "-m", message)


def make_branch(repo, branch: str, name: str, content: str, start: str = "main") -> None:
    """Commit one file on a new branch and return the primary checkout to main."""
    git(repo, "checkout", "-b", branch, start)
    commit_file(repo, name, content, message=f"{branch}: {name}")
    git(repo, "checkout", "main")


def task_title(prompt: str) -> str | None:
    m = TASK_RE.search(prompt)
    return m.group(1).strip() if m else None


def is_conflict_prompt(prompt: str) -> bool:
    return "resolving a git merge conflict" in prompt


def write_task_file(prompt: str, cwd: Path):
    """Default agent behaviour: commit one file named after the task."""
    title = task_title(prompt)
    commit_file(cwd, f"{slugify(title)}.txt", f"{title}\n", message=f"Implement {title}")


class FakeBackend:
    """Runs a Python callable instead of an agent CLI.

    The action gets (prompt, cwd) and may return an AgentResult; returning
    None means a successful response.
    """

    name = "fake"

    def __init__(self, action=write_task_file):
        self.action = action
        self.calls: list[tuple[str, Path]] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def execute(self, prompt, cwd) -> AgentResult:
        with self._lock:
            self.calls.append((prompt, Path(cwd)))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            result = self.action(prompt, Path(cwd)) if self.action else None
        finally:
            with self._lock:
                self.active -= 1
        if result is None:
            result = AgentResult(success=True, response="done", input_tokens=10, output_tokens=5)
        return result

    @property
    def task_calls(self) -> list[str]:
        return [task_title(p) for p, _ in self.calls if not is_conflict_prompt(p)]
