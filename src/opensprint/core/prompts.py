"""Prompt construction for coding agents."""

from opensprint.core.branches import task_branch
from opensprint.db.models import Project, Task


def build_agent_prompt(
    task: Task,
    project: Project | None = None,
    dependencies: list[Task] | None = None,
    attempt: int = 1,
) -> str:
    """Build the prompt handed to the agent CLI for one attempt at a task."""
    parts = []
    parts.append(f"# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    if project:
        parts.append("\n## Project Context")
        parts.append(f"Project: {project.name} ({project.id})")
        parts.append(f"Repository: {project.repo_path}")
        parts.append(f"Default branch: {project.default_branch}")
    parts.append(f"Working branch: {task_branch(task.id)} (already checked out)")

    if dependencies:
        parts.append("\n## Completed Dependencies")
        for dep in dependencies:
            parts.append(f"- {dep.title} ({dep.id})")

    last = task.extra.get("last_execution_summary") if task.extra else None
    if attempt > 1:
        parts.append(f"\n## Previous Attempts\nThis is attempt {attempt}.")
        if isinstance(last, dict) and last.get("summary"):
            parts.append(f"Last attempt ({last.get('outcome', 'unknown')}): {last['summary']}")
        parts.append(
            "Earlier work may already be committed on the working branch as WIP commits; "
            "build on it instead of starting over."
        )

    parts.append(
        "\n## Completion\n"
        "Commit your changes to the working branch with clear messages. "
        "Do not switch branches, merge, or push. "
        "When you are finished, summarize what was accomplished and any issues encountered. "
        "Exit with a non-zero status if you could not complete the task."
    )

    return "\n".join(parts)
