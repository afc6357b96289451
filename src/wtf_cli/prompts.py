"""Prompt templates for project descriptions and commit explanations.

Each builder frames one chunk of repository text with the metadata the
model needs; the system prompt is chosen by task tag.
"""

from __future__ import annotations

import datetime
from enum import Enum

from .repository import CommitRecord, ProjectMeta


class Task(str, Enum):
    PROJECT_DESCRIPTION = "project_description"
    COMMIT_EXPLANATION = "commit_explanation"


PROJECT_SYSTEM_PROMPT = """You are an assistant that provides concise project descriptions.
Based on the README content and other information provided, give a brief,
clear description of what this project is about in plain English.
Keep it under 100 words."""

COMMIT_SYSTEM_PROMPT = """You are an assistant that explains git commits in plain language.
Explain what changed in this commit in simple terms that anyone can understand.
Focus on the practical impact of the changes rather than listing every line.
If you only see part of the commit, explain that part and do not speculate
about the rest."""

SYSTEM_PROMPTS = {
    Task.PROJECT_DESCRIPTION: PROJECT_SYSTEM_PROMPT,
    Task.COMMIT_EXPLANATION: COMMIT_SYSTEM_PROMPT,
}


def project_prompt(meta: ProjectMeta, readme_chunk: str = "", part: int = 1, total: int = 1) -> str:
    """Generate prompt for the project description job."""
    lines = [f"Project: {meta.name}"]
    if meta.remote_url:
        lines.append(f"Remote: {meta.remote_url}")
    if meta.default_branch:
        lines.append(f"Branch: {meta.default_branch}")

    if readme_chunk:
        header = "README" if total == 1 else f"README (part {part} of {total})"
        lines.append(f"\n{header}:\n{readme_chunk}")
    else:
        lines.append("\nNo README found. Describe the project from the information above.")
    return "\n".join(lines)


def commit_prompt(
    commit: CommitRecord,
    diff_chunk: str = "",
    part: int = 1,
    total: int = 1,
    binary_paths: list[str] | None = None,
) -> str:
    """Generate prompt for one chunk of a commit explanation job."""
    date = datetime.datetime.fromtimestamp(commit.timestamp, tz=datetime.timezone.utc)
    lines = [
        f"Commit: {commit.id}",
        f"Author: {commit.author}",
        f"Date: {date:%Y-%m-%d %H:%M} UTC",
        f"Message: {commit.message[:1500]}",
    ]
    if commit.parent_count > 1:
        lines.append(f"Merge commit with {commit.parent_count} parents; diff is against the first parent.")
    if binary_paths:
        lines.append(f"Binary files changed (contents not shown): {', '.join(binary_paths[:20])}")

    if diff_chunk:
        header = "DIFF" if total == 1 else f"DIFF (part {part} of {total})"
        lines.append(f"\n{header}:\n{diff_chunk}")
    else:
        lines.append("\nNo textual changes in this commit.")
    return "\n".join(lines)
