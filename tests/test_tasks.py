"""Tests for task sources."""

from unittest.mock import patch

import pytest

from agent_fleet.core import tasks as tasks_mod
from agent_fleet.core.tasks import (
    GitHubTaskSource,
    MarkdownFolderTaskSource,
    MarkdownTaskSource,
    TaskSourceError,
    YamlTaskSource,
    open_task_source,
)


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation_has_no_trailing_dash(self):
        slug = tasks_mod.slugify("word " * 30)
        assert len(slug) <= 50
        assert not slug.endswith("-")

    def test_empty_falls_back(self):
        assert tasks_mod.slugify("!!!") == "task"


PRD = """# Project

- [ ] Add login page
- [x] Set up repo
- [ ] Add logout button
Some notes
"""


class TestMarkdownSource:
    def test_pending_tasks_use_line_numbers(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        source = MarkdownTaskSource(path)
        tasks = source.get_all_tasks()
        assert [(t.id, t.title) for t in tasks] == [("3", "Add login page"), ("5", "Add logout button")]
        assert source.count_remaining() == 2
        assert source.count_completed() == 1
        assert source.get_next_task().title == "Add login page"

    def test_mark_complete(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        source = MarkdownTaskSource(path)
        source.mark_complete("3")
        assert "- [x] Add login page" in path.read_text()
        assert source.count_completed() == 2
        assert [t.title for t in source.get_all_tasks()] == ["Add logout button"]

    def test_mark_complete_twice_is_noop(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        source = MarkdownTaskSource(path)
        source.mark_complete("3")
        before = path.read_text()
        source.mark_complete("3")
        assert path.read_text() == before

    def test_mark_complete_keeps_crlf_line_endings(self, workdir):
        path = workdir / "PRD.md"
        path.write_bytes(PRD.replace("\n", "\r\n").encode())
        source = MarkdownTaskSource(path)
        assert [t.id for t in source.get_all_tasks()] == ["3", "5"]
        source.mark_complete("3")
        expected = PRD.replace("- [ ] Add login", "- [x] Add login").replace("\n", "\r\n")
        assert path.read_bytes() == expected.encode()

    def test_mark_complete_leaves_other_endings_alone(self, workdir):
        path = workdir / "PRD.md"
        path.write_bytes(b"- [ ] One\r\n- [ ] Two\n- [ ] Three")
        MarkdownTaskSource(path).mark_complete("3")
        assert path.read_bytes() == b"- [ ] One\r\n- [ ] Two\n- [x] Three"

    def test_line_ids_stay_valid_after_completion(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        source = MarkdownTaskSource(path)
        source.mark_complete("3")
        source.mark_complete("5")
        assert source.get_all_tasks() == []

    def test_no_groups(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        source = MarkdownTaskSource(path)
        assert not source.supports_groups
        assert source.get_groups() == [0]

    def test_missing_file(self, workdir):
        with pytest.raises(TaskSourceError, match="not found"):
            MarkdownTaskSource(workdir / "nope.md")

    def test_bad_line(self, workdir):
        path = workdir / "PRD.md"
        path.write_text(PRD)
        with pytest.raises(TaskSourceError):
            MarkdownTaskSource(path).mark_complete("99")


class TestMarkdownFolderSource:
    def test_tasks_across_files(self, workdir):
        folder = workdir / "tasks"
        folder.mkdir()
        (folder / "b.md").write_text("- [ ] Second\n")
        (folder / "a.md").write_text("# A\n- [ ] First\n- [x] Old\n")
        (folder / "notes.txt").write_text("- [ ] Ignored\n")
        source = MarkdownFolderTaskSource(folder)
        tasks = source.get_all_tasks()
        assert [(t.id, t.title) for t in tasks] == [("a.md:2", "First"), ("b.md:1", "Second")]
        assert source.count_completed() == 1

    def test_mark_complete(self, workdir):
        folder = workdir / "tasks"
        folder.mkdir()
        (folder / "a.md").write_text("- [ ] First\n")
        source = MarkdownFolderTaskSource(folder)
        source.mark_complete("a.md:1")
        assert (folder / "a.md").read_text().startswith("- [x] First")

    def test_invalid_id(self, workdir):
        folder = workdir / "tasks"
        folder.mkdir()
        with pytest.raises(TaskSourceError, match="Invalid task ID"):
            MarkdownFolderTaskSource(folder).mark_complete("a.md")


TASKS_YAML = """# Sprint backlog
tasks:
  - title: Create models
    parallel_group: 1
  - title: Add API
    parallel_group: 2  # needs models
    description: REST endpoints
  - title: Write docs
  - title: Old thing
    completed: true
"""


class TestYamlSource:
    def test_groups(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text(TASKS_YAML)
        source = YamlTaskSource(path)
        assert source.supports_groups
        assert source.get_groups() == [0, 1, 2]
        assert [t.title for t in source.get_tasks_in_group(2)] == ["Add API"]
        assert source.get_tasks_in_group(2)[0].body == "REST endpoints"
        assert [t.title for t in source.get_tasks_in_group(0)] == ["Write docs"]
        assert source.count_completed() == 1

    def test_mark_complete_keeps_comments(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text(TASKS_YAML)
        source = YamlTaskSource(path)
        source.mark_complete("Add API")
        text = path.read_text()
        assert "# Sprint backlog" in text
        assert "# needs models" in text
        assert [t.title for t in source.get_all_tasks()] == ["Create models", "Write docs"]
        assert source.count_completed() == 2

    def test_mark_unknown_is_noop(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text(TASKS_YAML)
        YamlTaskSource(path).mark_complete("Nothing")
        assert path.read_text() == TASKS_YAML

    def test_duplicate_pending_titles_rejected(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text("tasks:\n  - title: Same\n  - title: Same\n")
        with pytest.raises(TaskSourceError, match="duplicate"):
            YamlTaskSource(path)

    def test_invalid_yaml(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text("tasks: [unclosed\n")
        with pytest.raises(TaskSourceError, match="Invalid YAML"):
            YamlTaskSource(path)

    def test_empty_file(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text("")
        source = YamlTaskSource(path)
        assert source.get_all_tasks() == []
        assert source.get_groups() == []


class TestGitHubSource:
    ISSUES = [
        {"number": 12, "title": "Newer", "body": "b"},
        {"number": 3, "title": "Older", "body": None},
    ]

    @patch("agent_fleet.core.tasks.list_issues")
    def test_oldest_first(self, mock_list):
        mock_list.return_value = list(self.ISSUES)
        tasks = GitHubTaskSource("acme/app", label="fleet").get_all_tasks()
        assert [(t.id, t.title) for t in tasks] == [("3", "Older"), ("12", "Newer")]
        mock_list.assert_called_with("acme/app", state="open", label="fleet")

    @patch("agent_fleet.core.tasks.close_issue")
    @patch("agent_fleet.core.tasks.list_issues")
    def test_mark_complete_closes_open_issue(self, mock_list, mock_close):
        mock_list.return_value = list(self.ISSUES)
        GitHubTaskSource("acme/app").mark_complete("3")
        mock_close.assert_called_once_with("acme/app", "3")

    @patch("agent_fleet.core.tasks.close_issue")
    @patch("agent_fleet.core.tasks.list_issues")
    def test_mark_complete_skips_closed_issue(self, mock_list, mock_close):
        mock_list.return_value = list(self.ISSUES)
        GitHubTaskSource("acme/app").mark_complete("99")
        mock_close.assert_not_called()

    def test_bad_repo(self):
        with pytest.raises(TaskSourceError, match="owner/repo"):
            GitHubTaskSource("just-a-name")


class TestOpenTaskSource:
    def test_picks_yaml(self, workdir):
        path = workdir / "tasks.yaml"
        path.write_text(TASKS_YAML)
        assert isinstance(open_task_source(yaml_file=path), YamlTaskSource)

    def test_rejects_two_sources(self, workdir):
        with pytest.raises(TaskSourceError, match="only one"):
            open_task_source(prd="PRD.md", yaml_file="tasks.yaml")
