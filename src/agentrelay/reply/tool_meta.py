"""Tool name/meta inference and aggregate formatting for tool activity lines."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

_DIFF_SUMMARY_PREFIX_RE = re.compile(r"^\+\s*\d*\s*")
_MARKDOWN_PREFIX_RE = re.compile(r"^[#>*-]\s*")
_PATH_IN_TEXT_RE = re.compile(r"\s(?:in|at)\s+(\S+)")


def shorten_path(path: str) -> str:
    """Replace the home directory prefix with ``~``."""
    home = str(Path.home())
    if path == home:
        return "~"
    if path.startswith(home + "/"):
        return "~" + path[len(home) :]
    return path


def shorten_meta(meta: str) -> str:
    if not meta:
        return meta
    return shorten_path(meta.strip())


def infer_tool_name(message: dict[str, Any] | None) -> str | None:
    """Best-effort tool name from a tool result message."""
    if not message:
        return None
    for key in ("toolName", "name"):
        value = message.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    role = message.get("role")
    if isinstance(role, str) and ":" in role:
        suffix = role.split(":", 1)[1].strip()
        if suffix:
            return suffix
    return None


def tool_call_id(message: dict[str, Any] | None) -> str | None:
    if not message:
        return None
    for key in ("toolCallId", "tool_call_id"):
        value = message.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def content_text(content: Any) -> str:
    """Join the text parts of a message ``content`` list."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return " ".join(t for t in texts if t)


def _edit_meta(message: dict[str, Any], details: dict[str, Any] | None) -> str:
    diff = details.get("diff") if details and isinstance(details.get("diff"), str) else None

    added = removed = 0
    if diff:
        for line in diff.split("\n"):
            stripped = line.lstrip()
            if stripped.startswith(("+++", "---")):
                continue
            if stripped.startswith("+"):
                added += 1
            elif stripped.startswith("-"):
                removed += 1

    if added and removed:
        change_kind = "insert+replace"
    elif added:
        change_kind = "insert"
    elif removed:
        change_kind = "delete"
    else:
        change_kind = "edit"

    path = details.get("path") if details and isinstance(details.get("path"), str) else None
    if path is None:
        match = _PATH_IN_TEXT_RE.search(" " + content_text(message.get("content")))
        path = match.group(1) if match else None

    summary = None
    if diff:
        added_line = next(
            (
                stripped
                for stripped in (line.lstrip() for line in diff.split("\n"))
                if stripped.startswith("+") and not stripped.startswith("+++")
            ),
            None,
        )
        if added_line:
            cleaned = _DIFF_SUMMARY_PREFIX_RE.sub("", added_line).strip()
            if cleaned:
                stripped_md = _MARKDOWN_PREFIX_RE.sub("", cleaned)
                summary = f"Add {stripped_md}" if cleaned.startswith("#") else stripped_md

    parts = [f"→ {change_kind}"]
    if path:
        parts.append(f"@ {shorten_meta(path)}")
    if summary:
        parts.append(f"| {summary}")
    return " ".join(parts)


def infer_tool_meta(message: dict[str, Any] | None) -> str | None:
    """Short human-readable detail for a tool call (path, range, command)."""
    if not message:
        return None
    details = message.get("details")
    if not isinstance(details, dict):
        details = message.get("arguments")
    if not isinstance(details, dict):
        details = message.get("args")
    if not isinstance(details, dict):
        details = None

    name = (message.get("toolName") or message.get("name") or "").lower()
    if name == "edit" or message.get("role") == "tool_result:edit":
        return _edit_meta(message, details)

    if details is None:
        return None

    path = details.get("path")
    if isinstance(path, str) and path:
        display = shorten_path(path)
        offset, limit = details.get("offset"), details.get("limit")
        if isinstance(offset, int) and isinstance(limit, int):
            return f"{display}:{offset}-{offset + limit}"
        return display

    command = details.get("command")
    if isinstance(command, str) and command:
        return command
    return None


def format_tool_aggregate(tool_name: str | None, metas: list[str]) -> str:
    """Render one tool aggregate line, e.g. ``[🛠️ read] ~/src/{a.py, b.py}; ls``.

    Path metas sharing a directory are folded into one brace group; the
    order of first appearance is kept.
    """
    label = (tool_name or "").strip() or "tool"
    filtered = [shorten_meta(m) for m in metas if m]
    if not filtered:
        return f"[🛠️ {label}]"

    segments: list[str | list[str]] = []
    groups: dict[str, list[str]] = {}
    for meta in filtered:
        if "/" in meta and " " not in meta:
            directory, base = meta.rsplit("/", 1)
            if directory in groups:
                groups[directory].append(base)
                continue
            groups[directory] = [base]
            segments.append(directory)
        else:
            segments.append([meta])

    rendered = []
    for segment in segments:
        if isinstance(segment, list):
            rendered.append(segment[0])
            continue
        bases = groups[segment]
        if len(bases) == 1:
            rendered.append(f"{segment}/{bases[0]}")
        else:
            rendered.append(f"{segment}/{{{', '.join(bases)}}}")
    return f"[🛠️ {label}] {'; '.join(rendered)}"
