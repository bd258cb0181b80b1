"""System prompts and message builders for the agent roles.

This module contains the prompt templates used by the orchestrator:
- PLANNER_PROMPT: Picks the focus set for a goal
- CODER_PROMPT: Single-shot edit proposals
- FIX_LOOP_PROMPT: Edit proposals inside the auto-fix loop
- REVIEWER_PROMPT: Sanitizes and minimizes proposed edits
- SUMMARIZER_PROMPT: Writes the task memory summary
"""

import json
from typing import Any

EDIT_SCHEMA = (
    '{ "notes": string, "edits": [ { "path": string, '
    '"language": "python"|"json"|"yaml"|"toml"|"markdown"|"text", '
    '"newContent": string } ] }'
)

# Shared by every role that proposes edits
BASE_EDIT_RULES = """\
## Workspace Facts
- The workspace is a small in-memory Python 3 project.
- Programs run with the standard library only; no packages can be installed.
- The entry file runs as `__main__`; other workspace files import as modules.
- Files under `tests/` (or named `test_*.py`) expose plain `test_*` functions
  that use bare `assert` statements.

## Edit Rules
- Only edit files listed in focusPaths. Edits to other paths are discarded.
- Replace full file contents via newContent. No diffs, no partial snippets.
- Keep edits minimal and keep the existing structure and naming.
- Return ONLY valid JSON. No markdown, no explanations, no extra keys."""


PLANNER_PROMPT = """\
You are the planning agent for a Python workspace.

Given a goal, the list of workspace files and a best-effort import graph,
choose which existing files must be read or edited to reach the goal.

Return ONLY valid JSON with this shape:
{ "notes": string, "focusPaths": string[] }

## Rules
- Choose 1-12 files.
- Only pick paths that appear in the workspace file list.
- Prefer the entry file and the modules it imports when unsure.
- Do not include markdown or extra keys.
"""


CODER_PROMPT = f"""\
You are an expert Python coding agent.

You receive a goal, the focus set (focusPaths) and the current content of
every focused file. Propose the edits that implement the goal.

Return ONLY valid JSON with this shape:
{EDIT_SCHEMA}

{BASE_EDIT_RULES}
"""


FIX_LOOP_PROMPT = f"""\
You are the fix engine of an automated edit-run-repair loop.

You receive a goal, the focus set, the current focused files and the result
of the last sandboxed run (stdout, stderr, the uncaught error and a parsed
form of it). Propose the smallest edits that make the program run cleanly
and still satisfy the goal.

Return ONLY valid JSON with this shape:
{EDIT_SCHEMA}

{BASE_EDIT_RULES}

## Repair Discipline
- Fix the root cause named by the traceback, not its symptoms.
- If the same error repeats, change strategy instead of re-sending the same edit.
- Return an empty edits list only when no focused file can fix the error.
"""


REVIEWER_PROMPT = f"""\
You are the review agent. You guard the workspace against risky edits.

You receive the goal, the focus set, the original files and the edits
proposed by the coding agent. Return the edits that should be kept,
adjusted where they are risky, incomplete or larger than necessary.

Check for:
- Syntax errors and names used before they are defined.
- Imports of modules that do not exist in the workspace or standard library.
- Behaviour changes unrelated to the goal.

Return ONLY valid JSON with this shape:
{EDIT_SCHEMA}

{BASE_EDIT_RULES}
"""


SUMMARIZER_PROMPT = """\
You summarize finished agent tasks for the task memory.

Return ONLY valid JSON with this shape:
{ "summary": string, "outcome": "success"|"fail"|"partial" }

## Rules
- Mention the files changed and the error fixed (or still failing).
- Keep the summary short (max 400 chars).
- Use "success" only when the last run had no error.
- Do not include markdown or extra keys.
"""


FIX_LOOP_HINTS = """\
HINTS:
- If the same error repeats, change strategy.
- Keep edits minimal.
- Do not touch files outside focusPaths."""

MISSING_FILE = "<missing>"


def format_file_context(paths: list[str], contents: dict[str, str]) -> str:
    """Serialize the focused files as ``FILE: path`` blocks."""
    blocks = []
    for path in paths:
        content = contents.get(path)
        blocks.append(f"FILE: {path}\n{content if content is not None else MISSING_FILE}")
    return "\n\n".join(blocks)


def format_run_context(
    stdout: str,
    stderr: str,
    error: str | None,
    parsed_error: dict[str, Any] | None,
) -> str:
    """Describe the previous sandboxed run for the fix-loop coder."""
    if error:
        return (
            f"LAST RUN ERROR:\n{error}\n\n"
            f"PARSED_ERROR:\n{json.dumps(parsed_error)}\n\n"
            f"STDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
        )
    return f"LAST RUN: (no error)\nSTDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"


def build_planner_message(
    goal: str,
    entry_file: str | None,
    paths: list[str],
    adjacency: dict[str, list[str]],
) -> str:
    return (
        f"Goal:\n{goal}\n\n"
        f"Entry:\n{entry_file or '(none)'}\n\n"
        f"Workspace files (paths only):\n{json.dumps(paths)}\n\n"
        f"Dependency adjacency (best-effort):\n{json.dumps(adjacency)}"
    )


def build_coder_message(goal: str, focus_paths: list[str], file_context: str) -> str:
    return (
        f"Goal:\n{goal}\n\n"
        f"focusPaths:\n{json.dumps(focus_paths)}\n\n"
        f"Workspace files:\n{file_context}"
    )


def build_fix_message(
    goal: str,
    focus_paths: list[str],
    file_context: str,
    run_context: str,
) -> str:
    return (
        f"Goal:\n{goal}\n\n"
        f"focusPaths:\n{json.dumps(focus_paths)}\n\n"
        f"Current focused files:\n{file_context}\n\n"
        f"{run_context}\n\n"
        f"{FIX_LOOP_HINTS}"
    )


def build_reviewer_message(
    goal: str,
    focus_paths: list[str],
    file_context: str,
    proposal: dict[str, Any],
) -> str:
    """Build the reviewer input: originals plus the coder's filtered proposal."""
    return (
        f"Goal:\n{goal}\n\n"
        f"focusPaths:\n{json.dumps(focus_paths)}\n\n"
        f"Original files:\n{file_context}\n\n"
        f"Proposed edits (JSON):\n{json.dumps(proposal)}"
    )


def build_summarizer_message(
    goal: str,
    focus_paths: list[str],
    iteration_count: int,
    last_error: str | None,
    last_notes: str,
) -> str:
    return (
        f"Goal: {goal}\n"
        f"Focus: {json.dumps(focus_paths)}\n"
        f"Iterations: {iteration_count}\n"
        f"Last run error: {last_error or 'none'}\n"
        f"Last notes: {last_notes}"
    )
