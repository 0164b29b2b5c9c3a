"""Prompts handed to agents: one per task job, one per conflict-resolution pass."""

from agent_fleet.db.models import Task

PROGRESS_FILE = "progress.txt"


def build_task_prompt(
    task: Task,
    skip_tests: bool = False,
    skip_lint: bool = False,
    progress_file: str = PROGRESS_FILE,
) -> str:
    """Build the prompt for a single isolated task job."""
    steps = ["Implement this specific task completely"]
    if not skip_tests:
        steps.append("Write tests for the feature")
        steps.append("Run tests and ensure they pass before proceeding")
    if not skip_lint:
        steps.append("Run linting and ensure it passes")
    steps.append(f"Update {progress_file} with what you did")
    # Jobs only count when they commit, so this step is always present
    steps.append("Commit your changes with a descriptive message")

    parts = []
    parts.append("You are working on a specific task. Focus ONLY on this task:")
    parts.append(f"\nTASK: {task.title}")
    if task.body:
        parts.append(f"\n## Details\n{task.body}")
    parts.append("\nInstructions:")
    parts.extend(f"{i}. {step}" for i, step in enumerate(steps, start=1))
    parts.append(
        "\nDo NOT modify the task list or mark tasks complete - that will be handled separately."
    )
    parts.append(f"Focus only on implementing: {task.title}")
    return "\n".join(parts)


def build_conflict_prompt(conflicted: list[str], branch: str) -> str:
    """Build the prompt for the single agent-assisted merge conflict pass."""
    parts = []
    parts.append(f"You are resolving a git merge conflict while merging {branch}.")
    parts.append("The following files have conflicts:\n")
    parts.extend(conflicted)
    parts.append(
        "\nFor each conflicted file:\n"
        "1. Read the file to see the conflict markers (<<<<<<< HEAD, =======, >>>>>>> branch)\n"
        "2. Understand what both versions are trying to do\n"
        "3. Edit the file to resolve the conflict by combining both changes\n"
        "4. Remove all conflict markers\n"
        "5. Make sure the resulting code is valid"
    )
    parts.append(
        "\nAfter resolving all conflicts:\n"
        "1. Run 'git add' on each resolved file\n"
        "2. Run 'git commit --no-edit' to complete the merge"
    )
    parts.append("\nPreserve functionality from BOTH sides. The goal is to integrate all features.")
    return "\n".join(parts)
