"""line_diff.py

Line-level diff (LCS) + unified-style rendering for text files.

Goal: show the model what changed between two bodies of text, deterministically,
with bounded cost.

- diff_lines() runs a classic O(m*n) longest-common-subsequence table.
- Inputs whose combined line count exceeds MAX_TOTAL_LINES skip the table;
  the verdict then comes from byte length + SHA-256 only and the body is a
  single marker line.
- Rendered bodies are cut at max_body_lines without a continuation marker, so
  callers must treat a long diff as non-authoritative.

Output format (no @@ headers, no line numbers):

    --- a/<path>
    +++ b/<path>
     context
    -removed
    +added
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Sequence

EQUAL = "equal"
ADD = "add"
REMOVE = "remove"

MAX_TOTAL_LINES = 10_000
DEFAULT_MAX_BODY_LINES = 2000
MAX_BODY_LINES = 10_000

_PREFIX = {EQUAL: " ", ADD: "+", REMOVE: "-"}


@dataclass
class DiffOp:
    kind: str  # "equal" | "add" | "remove"
    lines: List[str]


@dataclass
class TextDiff:
    changed: bool
    added_lines: int
    removed_lines: int
    diff_text: str
    note: Optional[str] = None


def split_lines(text: str) -> List[str]:
    """Split on LF / CRLF only; other Unicode line breaks stay inside the line."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [ln[:-1] if ln.endswith("\r") else ln for ln in lines]


def _push(ops: List[DiffOp], kind: str, line: str) -> None:
    if ops and ops[-1].kind == kind:
        ops[-1].lines.append(line)
    else:
        ops.append(DiffOp(kind=kind, lines=[line]))


def diff_lines(before: Sequence[str], after: Sequence[str]) -> List[DiffOp]:
    """Return coalesced equal/add/remove runs that turn before into after."""
    m, n = len(before), len(after)
    # lcs[i][j] = LCS length of before[i:] and after[j:]
    lcs = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m - 1, -1, -1):
        row, below = lcs[i], lcs[i + 1]
        for j in range(n - 1, -1, -1):
            if before[i] == after[j]:
                row[j] = below[j + 1] + 1
            else:
                row[j] = below[j] if below[j] >= row[j + 1] else row[j + 1]

    ops: List[DiffOp] = []
    i = j = 0
    while i < m and j < n:
        if before[i] == after[j]:
            _push(ops, EQUAL, before[i])
            i += 1
            j += 1
        elif lcs[i + 1][j] >= lcs[i][j + 1]:
            _push(ops, REMOVE, before[i])
            i += 1
        else:
            _push(ops, ADD, after[j])
            j += 1
    while i < m:
        _push(ops, REMOVE, before[i])
        i += 1
    while j < n:
        _push(ops, ADD, after[j])
        j += 1
    return ops


def clamp_body_lines(max_body_lines: Optional[int]) -> int:
    if max_body_lines is None:
        return DEFAULT_MAX_BODY_LINES
    return max(1, min(int(max_body_lines), MAX_BODY_LINES))


def _header(path: str) -> List[str]:
    return [f"--- a/{path}", f"+++ b/{path}"]


def render(path: str, ops: Sequence[DiffOp], max_body_lines: Optional[int] = None) -> str:
    limit = clamp_body_lines(max_body_lines)
    body: List[str] = []
    for op in ops:
        prefix = _PREFIX[op.kind]
        for line in op.lines:
            if len(body) >= limit:
                break
            body.append(prefix + line)
    return "\n".join(_header(path) + body)


def count_changes(ops: Sequence[DiffOp]) -> tuple:
    added = sum(len(op.lines) for op in ops if op.kind == ADD)
    removed = sum(len(op.lines) for op in ops if op.kind == REMOVE)
    return added, removed


def _sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def diff_texts(path: str, before: str, after: str, max_body_lines: Optional[int] = None) -> TextDiff:
    """Diff two text bodies, falling back to size+hash past MAX_TOTAL_LINES."""
    before_lines = split_lines(before)
    after_lines = split_lines(after)

    total = len(before_lines) + len(after_lines)
    if total > MAX_TOTAL_LINES:
        return summarize_by_digest(
            path,
            before.encode("utf-8"),
            after.encode("utf-8"),
            reason=f"{total} lines exceed the {MAX_TOTAL_LINES}-line budget",
        )

    ops = diff_lines(before_lines, after_lines)
    added, removed = count_changes(ops)
    return TextDiff(
        changed=before != after,
        added_lines=added,
        removed_lines=removed,
        diff_text=render(path, ops, max_body_lines),
    )


def summarize_by_digest(path: str, before: bytes, after: bytes, *, reason: str) -> TextDiff:
    """Size + sha256 verdict with a single marker line instead of a line diff."""
    changed = len(before) != len(after) or _sha256_hex(before) != _sha256_hex(after)
    verdict = "modified" if changed else "unchanged"
    note = f"line diff skipped: {reason}; compared by size and sha256 ({verdict})"
    marker = f"# {note}; before_bytes={len(before)} after_bytes={len(after)}"
    return TextDiff(
        changed=changed,
        added_lines=0,
        removed_lines=0,
        diff_text="\n".join(_header(path) + [marker]),
        note=note,
    )


def compare_sizes_only(path: str, before_bytes: int, after_bytes: int) -> TextDiff:
    """Verdict for a baseline entry captured without content."""
    changed = before_bytes != after_bytes
    if changed:
        note = "baseline content was not captured (file exceeded the read limit); size differs"
    else:
        note = (
            "baseline content was not captured (file exceeded the read limit); "
            "size is unchanged but content could not be verified"
        )
    marker = f"# {note}; before_bytes={before_bytes} after_bytes={after_bytes}"
    return TextDiff(
        changed=changed,
        added_lines=0,
        removed_lines=0,
        diff_text="\n".join(_header(path) + [marker]),
        note=note,
    )
