"""Map Codex shell activity onto the shared tool vocabulary.

Codex reports every tool use as a shell command. Common read-only
commands are presented as the equivalent structured tool call (``cat f``
becomes ``Read{file_path: f}``) so callers can render them uniformly;
everything else is reported as ``Bash``.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TODO_TOOL_NAME = "TodoWrite"

_SHELL_WRAPPERS = frozenset({"bash", "sh", "zsh"})
_WRAPPER_FLAGS = frozenset({"-c", "-lc", "-cl"})

_READ_COMMANDS = frozenset({"cat", "head", "tail", "less", "more", "bat", "nl"})
_GREP_COMMANDS = frozenset({"rg", "grep", "egrep", "fgrep", "ag", "ack"})
_GLOB_COMMANDS = frozenset({"find", "fd", "fdfind"})
_LS_COMMANDS = frozenset({"ls", "tree"})

_TODO_STATUSES = frozenset({"pending", "in_progress", "completed"})


@dataclass(frozen=True)
class CodexToolCall:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


def _split(command: str) -> list[str]:
    try:
        return shlex.split(command)
    except ValueError:
        # Unbalanced quotes: fall back to whitespace splitting
        return command.split()


def unwrap_shell_command(command: str) -> str:
    """Strip ``bash -lc "..."`` style wrappers, returning the inner script."""
    tokens = _split(command.strip())
    while (
        len(tokens) == 3
        and posixpath.basename(tokens[0]) in _SHELL_WRAPPERS
        and tokens[1] in _WRAPPER_FLAGS
    ):
        command = tokens[2]
        tokens = _split(command.strip())
    return command.strip()


def _positional(tokens: list[str]) -> list[str]:
    return [t for t in tokens if not t.startswith("-")]


def resolve_codex_tool_call(command: str) -> CodexToolCall:
    """Map one shell command to a tool call.

    Pipelines, command lists and redirections stay as ``Bash`` since no
    single structured tool describes them.
    """
    inner = unwrap_shell_command(command)
    if not inner:
        return CodexToolCall(name="Bash", input={"command": command})
    if any(op in inner for op in ("|", "&&", "||", ";", ">", "<")):
        return CodexToolCall(name="Bash", input={"command": inner})

    tokens = _split(inner)
    program = posixpath.basename(tokens[0]) if tokens else ""
    args = _positional(tokens[1:])

    if program in _READ_COMMANDS and len(args) == 1:
        return CodexToolCall(name="Read", input={"file_path": args[0]})

    if program in _GREP_COMMANDS and args:
        tool_input: dict[str, Any] = {"pattern": args[0]}
        if len(args) > 1:
            tool_input["path"] = args[1]
        return CodexToolCall(name="Grep", input=tool_input)

    if program in _GLOB_COMMANDS:
        return _glob_call(program, tokens[1:])

    if program in _LS_COMMANDS:
        return CodexToolCall(name="Ls", input={"path": args[0] if args else "."})

    return CodexToolCall(name="Bash", input={"command": inner})


def _glob_call(program: str, rest: list[str]) -> CodexToolCall:
    if program == "find":
        path = rest[0] if rest and not rest[0].startswith("-") else "."
        pattern = "*"
        for flag in ("-name", "-iname", "-path"):
            if flag in rest:
                index = rest.index(flag)
                if index + 1 < len(rest):
                    pattern = rest[index + 1]
                    break
        return CodexToolCall(name="Glob", input={"pattern": pattern, "path": path})

    args = _positional(rest)
    tool_input: dict[str, Any] = {"pattern": args[0] if args else "*"}
    if len(args) > 1:
        tool_input["path"] = args[1]
    return CodexToolCall(name="Glob", input=tool_input)


def _todo_status(entry: dict[str, Any]) -> str:
    status = entry.get("status")
    if isinstance(status, str):
        normalized = status.strip().lower().replace("-", "_").replace(" ", "_")
        if normalized in _TODO_STATUSES:
            return normalized
        if normalized in ("done", "complete"):
            return "completed"
    if entry.get("completed") is True:
        return "completed"
    return "pending"


def extract_codex_todo_items(item: dict[str, Any]) -> list[dict[str, str]] | None:
    """Turn a Codex ``todo_list`` item into TodoWrite entries.

    Returns None when the item holds no machine-parseable entries, so the
    caller can fall back to plain text.
    """
    entries = item.get("items")
    if not isinstance(entries, list):
        return None

    todos: list[dict[str, str]] = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"text": entry}
        if not isinstance(entry, dict):
            continue
        content = entry.get("text") or entry.get("content") or entry.get("title")
        if not isinstance(content, str) or not content.strip():
            continue
        todos.append(
            {
                "content": content.strip(),
                "status": _todo_status(entry),
                "activeForm": content.strip(),
            }
        )

    return todos or None


__all__ = [
    "CodexToolCall",
    "TODO_TOOL_NAME",
    "unwrap_shell_command",
    "resolve_codex_tool_call",
    "extract_codex_todo_items",
]
