"""diff_apply.py

Minimal fragment-based patch parser + applier for text files.

Patches look like unified diffs without hunk headers or line numbers:

    --- a/src/app.py
    +++ b/src/app.py
     context line
    -removed line
    +added line

For each section the context+removed lines form the *base fragment* and the
context+added lines the *after fragment*. The base fragment is located by
exact content match:
- missing file: base must be empty, the after fragment becomes the file
- whole file equals base: the after fragment replaces it
- otherwise: base (+ line terminator) must occur exactly once in the file;
  files mixing CRLF and LF are matched line by line instead

Every section is parsed and validated before anything touches disk; one bad
section aborts the whole patch with no partial writes.

This is *not* a git-compatible patch engine (no @@ hunks, renames, binary).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, List, Optional, Tuple

from .errors import (
    AmbiguousFragment,
    InvalidPatchFormat,
    InvalidPatchLine,
    NewFileBaseNotEmpty,
    NotAFile,
    ReadRequired,
    TooLarge,
)
from .line_diff import split_lines
from .security import SandboxPolicy, ensure_parent_dir_exists, resolve_in_root

log = logging.getLogger(__name__)

_OLD_HEADER = "--- a/"
_NEW_HEADER = "+++ b/"


@dataclass
class PatchSection:
    path: str
    lines: List[str] = field(default_factory=list)  # includes prefix ' ', '+', '-'

    @property
    def base_lines(self) -> List[str]:
        return [ln[1:] for ln in self.lines if ln[0] in (" ", "-")]

    @property
    def after_lines(self) -> List[str]:
        return [ln[1:] for ln in self.lines if ln[0] in (" ", "+")]

    @property
    def base_fragment(self) -> str:
        return "\n".join(self.base_lines)

    @property
    def after_fragment(self) -> str:
        return "\n".join(self.after_lines)


@dataclass
class FileOutcome:
    path: str
    existed_before: bool
    before_bytes: int
    after_bytes: int
    status: str  # "created" | "modified" | "unchanged"

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "existed_before": self.existed_before,
            "before_bytes": self.before_bytes,
            "after_bytes": self.after_bytes,
            "status": self.status,
        }


def parse_patch(patch_text: str) -> List[PatchSection]:
    """Parse a patch that may contain multiple file sections."""
    lines = split_lines(patch_text)
    while lines and not lines[-1]:
        lines.pop()

    sections: List[PatchSection] = []
    current: Optional[PatchSection] = None
    i = 0
    while i < len(lines):
        ln = lines[i]
        if ln.startswith(_OLD_HEADER):
            if i + 1 >= len(lines) or not lines[i + 1].startswith(_NEW_HEADER):
                raise InvalidPatchFormat(f"Malformed patch: missing '+++ b/' after {ln!r}")
            old_path = ln[len(_OLD_HEADER):].strip()
            new_path = lines[i + 1][len(_NEW_HEADER):].strip()
            if not old_path or old_path != new_path:
                raise InvalidPatchFormat(
                    f"Malformed patch: header paths differ or are empty ({old_path!r} vs {new_path!r})"
                )
            current = PatchSection(path=old_path)
            sections.append(current)
            i += 2
            continue

        if current is not None:
            if ln.startswith("\\"):
                # "\ No newline at end of file"
                i += 1
                continue
            if not ln or ln[0] not in (" ", "+", "-"):
                raise InvalidPatchLine(
                    f"Invalid patch line {i + 1} in section for {current.path}: {ln[:80]!r} "
                    "(expected prefix ' ', '+' or '-')"
                )
            current.lines.append(ln)
        i += 1

    if not sections:
        raise InvalidPatchFormat("Empty patch: no '--- a/<path>' / '+++ b/<path>' section found")
    return sections


def _line_terminator(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _has_mixed_endings(text: str) -> bool:
    crlf = text.count("\r\n")
    return 0 < crlf < text.count("\n")


def _split_keep_endings(text: str) -> List[Tuple[str, str]]:
    """Split into (line, terminator) pairs; the last pair may have no terminator."""
    parts = text.split("\n")
    out: List[Tuple[str, str]] = []
    for seg in parts[:-1]:
        if seg.endswith("\r"):
            out.append((seg[:-1], "\r\n"))
        else:
            out.append((seg, "\n"))
    if parts[-1]:
        out.append((parts[-1], ""))
    return out


def _apply_by_lines(section: PatchSection, current: str) -> str:
    """Whole-line matching for files that mix CRLF and LF endings.

    Replacement lines take the terminator of the first matched line; a final
    line without a terminator stays without one.
    """
    lines = _split_keep_endings(current)
    texts = [t for t, _ in lines]
    base = section.base_lines
    after = section.after_lines
    n = len(base)

    if n:
        starts = [i for i in range(len(lines) - n + 1) if texts[i:i + n] == base]
    else:
        starts = list(range(len(lines) + 1))
    if len(starts) != 1:
        raise AmbiguousFragment(
            f"expected exactly one occurrence of the base fragment in {section.path}, found {len(starts)}"
        )

    i = starts[0]
    matched = lines[i:i + n]
    term = matched[0][1] or _line_terminator(current)
    new = [(t, term) for t in after]
    if new and matched[-1][1] == "":
        new[-1] = (new[-1][0], "")
    return "".join(t + e for t, e in lines[:i] + new + lines[i + n:])


def count_occurrences(haystack: str, needle: str) -> Tuple[int, int]:
    """Return (count, first_index), counting overlapping matches."""
    count = 0
    first = -1
    start = 0
    while True:
        idx = haystack.find(needle, start)
        if idx == -1:
            return count, first
        if first == -1:
            first = idx
        count += 1
        start = idx + 1


def apply_section_to_text(section: PatchSection, current: str) -> str:
    """Apply one section to existing file content and return the new content."""
    if current == section.base_fragment:
        return section.after_fragment

    if _has_mixed_endings(current):
        return _apply_by_lines(section, current)

    term = _line_terminator(current)
    base_lines = section.base_lines
    after_lines = section.after_lines

    # A final line without a terminator can still be matched.
    padded = not current.endswith(term) and current != ""
    haystack = current + term if padded else current

    if base_lines:
        needle = term.join(base_lines) + term
        count, idx = count_occurrences(haystack, needle)
    else:
        needle = ""
        count, idx = len(haystack) + 1, 0

    if count != 1:
        raise AmbiguousFragment(
            f"expected exactly one occurrence of the base fragment in {section.path}, found {count}"
        )

    replacement = term.join(after_lines) + term if after_lines else ""
    out = haystack[:idx] + replacement + haystack[idx + len(needle):]
    if padded and out.endswith(term):
        out = out[: -len(term)]
    return out


def _read_text(abs_path: str) -> str:
    with open(abs_path, "rb") as f:
        return f.read().decode("utf-8", errors="replace")


def apply_patch(policy: SandboxPolicy, read_gate: AbstractSet[str], patch_text: str) -> List[FileOutcome]:
    """Validate every section, then write every file. All-or-nothing per call."""
    sections = parse_patch(patch_text)

    # Phase 1: validate + stage (no disk writes).
    staged: Dict[str, str] = {}
    abs_by_rel: Dict[str, str] = {}
    originals: Dict[str, Optional[str]] = {}
    order: List[str] = []

    for sec in sections:
        resolved = resolve_in_root(policy, sec.path)
        rel = resolved.rel_path

        if rel not in originals:
            if os.path.exists(resolved.abs_path):
                if not os.path.isfile(resolved.abs_path):
                    raise NotAFile(f"Not a file: {rel}")
                if rel not in read_gate:
                    raise ReadRequired(f"MUST read_file before apply_patch: {rel}")
                originals[rel] = _read_text(resolved.abs_path)
            else:
                originals[rel] = None
            abs_by_rel[rel] = resolved.abs_path
            order.append(rel)

        current = staged.get(rel, originals[rel])
        if current is None:
            if sec.base_fragment.strip():
                raise NewFileBaseNotEmpty(
                    f"{rel} does not exist, so the patch may not contain context or removed lines"
                )
            result = sec.after_fragment
        else:
            result = apply_section_to_text(sec, current)

        size = len(result.encode("utf-8"))
        if size > policy.max_write_bytes:
            raise TooLarge(
                f"Patched content too large ({size} bytes > {policy.max_write_bytes}): {rel}"
            )
        staged[rel] = result

    # Phase 2: commit.
    outcomes: List[FileOutcome] = []
    for rel in order:
        original = originals[rel]
        new_text = staged[rel]
        before_bytes = len(original.encode("utf-8")) if original is not None else 0
        after_bytes = len(new_text.encode("utf-8"))
        if original is None:
            status = "created"
        elif new_text == original:
            status = "unchanged"
        else:
            status = "modified"

        if status != "unchanged":
            abs_path = abs_by_rel[rel]
            ensure_parent_dir_exists(abs_path)
            with open(abs_path, "w", encoding="utf-8", newline="") as f:
                f.write(new_text)

        outcomes.append(
            FileOutcome(
                path=rel,
                existed_before=original is not None,
                before_bytes=before_bytes,
                after_bytes=after_bytes,
                status=status,
            )
        )

    log.info("apply_patch: %s", ", ".join(f"{o.path}={o.status}" for o in outcomes))
    return outcomes
