"""Diff extraction from Write/Edit side payloads."""

from typing import Any

from .models import DiffLine, DiffStats, ToolCallInfo, ToolDiffData


def _line_start(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return 1


def hunks_to_diff_lines(hunks: list[dict[str, Any]]) -> list[DiffLine]:
    """Convert structuredPatch hunks to numbered diff lines."""
    lines: list[DiffLine] = []
    for hunk in hunks:
        if not isinstance(hunk, dict):
            continue
        old_num = _line_start(hunk.get("oldStart"))
        new_num = _line_start(hunk.get("newStart"))
        hunk_lines = hunk.get("lines")
        if not isinstance(hunk_lines, list):
            continue
        for raw in hunk_lines:
            if not isinstance(raw, str):
                continue
            prefix, text = raw[:1], raw[1:]
            if prefix == "+":
                lines.append(DiffLine(type="insert", text=text, new_line_num=new_num))
                new_num += 1
            elif prefix == "-":
                lines.append(DiffLine(type="delete", text=text, old_line_num=old_num))
                old_num += 1
            elif prefix == "\\":
                # "\ No newline at end of file"
                continue
            else:
                lines.append(
                    DiffLine(type="equal", text=text, old_line_num=old_num, new_line_num=new_num)
                )
                old_num += 1
                new_num += 1
    return lines


def count_stats(lines: list[DiffLine]) -> DiffStats:
    return DiffStats(
        added=sum(1 for line in lines if line.type == "insert"),
        removed=sum(1 for line in lines if line.type == "delete"),
    )


def extract_diff_data(payload: Any, tool_call: ToolCallInfo) -> ToolDiffData | None:
    """Build diff data from a tool's side payload.

    Handles the ``structuredPatch`` shape written for edits and the
    ``type == "create"`` shape written when Write creates a new file.
    """
    if not isinstance(payload, dict):
        return None

    file_path = payload.get("filePath") or tool_call.input.get("file_path")
    if not isinstance(file_path, str) or not file_path:
        return None

    hunks = payload.get("structuredPatch")
    if isinstance(hunks, list) and hunks:
        lines = hunks_to_diff_lines(hunks)
    elif payload.get("type") == "create" and isinstance(payload.get("content"), str):
        lines = [
            DiffLine(type="insert", text=text, new_line_num=i)
            for i, text in enumerate(payload["content"].split("\n"), 1)
        ]
    else:
        return None

    return ToolDiffData(file_path=file_path, diff_lines=lines, stats=count_stats(lines))
