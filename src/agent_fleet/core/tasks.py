"""Task sources: where the backlog of work items comes from and where completion is recorded."""

import logging
import re
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from agent_fleet.db.models import Task
from agent_fleet.integrations.github import GitHubError, close_issue, list_issues

logger = logging.getLogger(__name__)

PENDING_RE = re.compile(r"^- \[ \] (.+)$")
DONE_RE = re.compile(r"^- \[x\] ", re.IGNORECASE)
LINE_SPLIT_RE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+\Z")


class TaskSourceError(Exception):
    """Raised when a task source is missing, unreadable or malformed."""


def slugify(title: str, max_length: int = 50) -> str:
    """Convert a title to a branch-safe slug."""
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = slug.strip("-")[:max_length]
    return slug.rstrip("-") or "task"


def _read_lines(path: Path) -> list[str]:
    text = path.read_text(encoding="utf-8").replace("\r\n", "\n").replace("\r", "\n")
    return text.split("\n")


class TaskSource:
    """Base class for task sources.

    Subclasses implement get_all_tasks, count_completed and mark_complete.
    """

    kind = "base"
    supports_groups = False

    def get_all_tasks(self) -> list[Task]:
        raise NotImplementedError

    def get_next_task(self) -> Task | None:
        tasks = self.get_all_tasks()
        return tasks[0] if tasks else None

    def count_remaining(self) -> int:
        return len(self.get_all_tasks())

    def count_completed(self) -> int:
        raise NotImplementedError

    def mark_complete(self, task_id: str) -> None:
        raise NotImplementedError

    def get_tasks_in_group(self, group: int) -> list[Task]:
        return [t for t in self.get_all_tasks() if t.group == group]

    def get_groups(self) -> list[int]:
        """Sorted distinct groups among pending tasks."""
        return sorted({t.group for t in self.get_all_tasks()})

    def describe(self) -> str:
        return self.kind

    def task_key(self, task: Task) -> str:
        """Identifies a task across runs, e.g. `markdown:PRD.md:3`."""
        return f"{self.describe()}:{task.id}"


# ── Markdown checklist ───────────────────────────────────────────────────────


class MarkdownTaskSource(TaskSource):
    """`- [ ] item` lines in a single markdown file. Task ID is the 1-based line number."""

    kind = "markdown"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise TaskSourceError(f"Task file not found: {self.path}")

    def describe(self) -> str:
        return f"markdown:{self.path}"

    def get_all_tasks(self) -> list[Task]:
        tasks = []
        for i, line in enumerate(_read_lines(self.path), start=1):
            if m := PENDING_RE.match(line):
                tasks.append(Task(id=str(i), title=m.group(1).strip()))
        return tasks

    def count_completed(self) -> int:
        return sum(1 for line in _read_lines(self.path) if DONE_RE.match(line))

    def mark_complete(self, task_id: str) -> None:
        _mark_line_complete(self.path, int(task_id))


def _mark_line_complete(path: Path, line_number: int) -> None:
    # Rewrite only the one line; every other line keeps its own ending
    with open(path, encoding="utf-8", newline="") as f:
        lines = LINE_SPLIT_RE.findall(f.read())
    index = line_number - 1
    if not 0 <= index < len(lines):
        raise TaskSourceError(f"{path}: no line {line_number}")
    body = lines[index].rstrip("\r\n")
    if not PENDING_RE.match(body):
        return  # Already complete
    lines[index] = "- [x] " + body[len("- [ ] "):] + lines[index][len(body):]
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write("".join(lines))


class MarkdownFolderTaskSource(TaskSource):
    """Every `*.md` file in a folder, in name order. Task ID is `file.md:line`."""

    kind = "markdown-folder"

    def __init__(self, folder: str | Path):
        self.folder = Path(folder)
        if not self.folder.is_dir():
            raise TaskSourceError(f"Task folder not found: {self.folder}")

    def describe(self) -> str:
        return f"folder:{self.folder}"

    def _files(self) -> list[Path]:
        return sorted(p for p in self.folder.iterdir() if p.is_file() and p.suffix == ".md")

    def get_all_tasks(self) -> list[Task]:
        tasks = []
        for path in self._files():
            for i, line in enumerate(_read_lines(path), start=1):
                if m := PENDING_RE.match(line):
                    tasks.append(Task(id=f"{path.name}:{i}", title=m.group(1).strip()))
        return tasks

    def count_completed(self) -> int:
        return sum(
            1 for path in self._files() for line in _read_lines(path) if DONE_RE.match(line)
        )

    def mark_complete(self, task_id: str) -> None:
        name, sep, line = task_id.rpartition(":")
        if not sep or not line.isdigit():
            raise TaskSourceError(f"Invalid task ID format: {task_id}")
        _mark_line_complete(self.folder / name, int(line))


# ── YAML task list ───────────────────────────────────────────────────────────


class YamlTaskSource(TaskSource):
    """A `tasks:` list of mappings with `title`, `completed` and `parallel_group`.

    The task ID is the title, so pending titles must be unique. Marking a task
    complete rewrites the file with ruamel's round-trip dumper, keeping comments.
    """

    kind = "yaml"
    supports_groups = True

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise TaskSourceError(f"Task file not found: {self.path}")
        self._yaml = YAML()
        self._yaml.preserve_quotes = True
        self._check_unique_titles()

    def describe(self) -> str:
        return f"yaml:{self.path}"

    def _load(self):
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = self._yaml.load(f) or {}
        except YAMLError as e:
            raise TaskSourceError(f"Invalid YAML in {self.path}: {e}") from e
        entries = data.get("tasks") if hasattr(data, "get") else None
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise TaskSourceError(f"{self.path}: 'tasks' must be a list")
        for entry in entries:
            if not hasattr(entry, "get") or not entry.get("title"):
                raise TaskSourceError(f"{self.path}: every task needs a title")
        return data, entries

    def _check_unique_titles(self) -> None:
        seen = set()
        for task in self.get_all_tasks():
            if task.title in seen:
                raise TaskSourceError(f"{self.path}: duplicate pending task title '{task.title}'")
            seen.add(task.title)

    def get_all_tasks(self) -> list[Task]:
        _, entries = self._load()
        tasks = []
        for entry in entries:
            if entry.get("completed") is True:
                continue
            title = str(entry["title"]).strip()
            try:
                group = int(entry.get("parallel_group") or 0)
            except (TypeError, ValueError) as e:
                raise TaskSourceError(f"{self.path}: bad parallel_group for '{title}'") from e
            body = str(entry.get("description") or entry.get("body") or "")
            tasks.append(Task(id=title, title=title, body=body, group=group))
        return tasks

    def count_completed(self) -> int:
        _, entries = self._load()
        return sum(1 for entry in entries if entry.get("completed") is True)

    def mark_complete(self, task_id: str) -> None:
        data, entries = self._load()
        for entry in entries:
            if str(entry["title"]).strip() == task_id and entry.get("completed") is not True:
                entry["completed"] = True
                break
        else:
            logger.debug("%s: no pending task titled %r", self.path, task_id)
            return
        with open(self.path, "w", encoding="utf-8") as f:
            self._yaml.dump(data, f)


# ── GitHub issues ────────────────────────────────────────────────────────────


class GitHubTaskSource(TaskSource):
    """Open issues of a repository. Task ID is the issue number; completing closes the issue."""

    kind = "github"

    def __init__(self, repo: str, label: str | None = None):
        if "/" not in repo:
            raise TaskSourceError(f"Invalid repo format: {repo}. Expected owner/repo")
        self.repo = repo
        self.label = label

    def describe(self) -> str:
        return f"github:{self.repo}" + (f"[{self.label}]" if self.label else "")

    def get_all_tasks(self) -> list[Task]:
        try:
            issues = list_issues(self.repo, state="open", label=self.label)
        except GitHubError as e:
            raise TaskSourceError(str(e)) from e
        # gh lists newest first; work oldest first
        issues.sort(key=lambda issue: int(issue["number"]))
        return [
            Task(id=str(issue["number"]), title=issue["title"], body=issue.get("body") or "")
            for issue in issues
        ]

    def count_completed(self) -> int:
        try:
            return len(list_issues(self.repo, state="closed", label=self.label))
        except GitHubError as e:
            raise TaskSourceError(str(e)) from e

    def mark_complete(self, task_id: str) -> None:
        open_ids = {t.id for t in self.get_all_tasks()}
        if task_id not in open_ids:
            logger.debug("Issue #%s is already closed", task_id)
            return
        try:
            close_issue(self.repo, task_id)
        except GitHubError as e:
            raise TaskSourceError(str(e)) from e


def open_task_source(
    prd: str | Path | None = None,
    yaml_file: str | Path | None = None,
    folder: str | Path | None = None,
    github_repo: str | None = None,
    github_label: str | None = None,
) -> TaskSource:
    """Build the task source selected by exactly one of the arguments."""
    chosen = [x for x in (prd, yaml_file, folder, github_repo) if x]
    if len(chosen) > 1:
        raise TaskSourceError("Choose only one task source")
    if yaml_file:
        return YamlTaskSource(yaml_file)
    if folder:
        return MarkdownFolderTaskSource(folder)
    if github_repo:
        return GitHubTaskSource(github_repo, github_label)
    return MarkdownTaskSource(prd or "PRD.md")
