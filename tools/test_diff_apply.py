"""test_diff_apply.py

Fragment patch parsing, matching policy and all-or-nothing commit.

Run:
  python -m tools.test_diff_apply
"""

from __future__ import annotations

import atexit
import dataclasses
import os
import shutil
import tempfile

from repo_sandbox.diff_apply import (
    PatchSection,
    apply_patch,
    apply_section_to_text,
    count_occurrences,
    parse_patch,
)
from repo_sandbox.errors import (
    AmbiguousFragment,
    InvalidPatchFormat,
    InvalidPatchLine,
    NewFileBaseNotEmpty,
    ReadRequired,
    TooLarge,
)
from repo_sandbox.security import default_sandbox_policy


def _make_root() -> str:
    base = os.path.realpath(tempfile.mkdtemp(prefix="repo-patch-"))
    atexit.register(shutil.rmtree, base, True)
    root = os.path.join(base, "repo")
    os.makedirs(root)
    return root


def _write(root: str, rel: str, text: str) -> None:
    path = os.path.join(root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def _read(root: str, rel: str) -> str:
    with open(os.path.join(root, rel), "r", encoding="utf-8", newline="") as f:
        return f.read()


def _raises(exc_type, fn, *args) -> Exception:
    try:
        fn(*args)
    except exc_type as e:
        return e
    raise AssertionError(f"expected {exc_type.__name__}")


def _section(*lines: str) -> PatchSection:
    return PatchSection(path="a.txt", lines=list(lines))


def test_parse_sections_and_fragments() -> None:
    patch = "\n".join([
        "diff --git a/a.txt b/a.txt",
        "--- a/a.txt",
        "+++ b/a.txt",
        " one",
        "-two",
        "+TWO",
        "\\ No newline at end of file",
        "--- a/src/b.py",
        "+++ b/src/b.py",
        "+print('hi')",
        "",
    ])
    sections = parse_patch(patch)
    assert [s.path for s in sections] == ["a.txt", "src/b.py"]
    assert sections[0].base_fragment == "one\ntwo"
    assert sections[0].after_fragment == "one\nTWO"
    assert sections[1].base_fragment == ""
    assert sections[1].after_fragment == "print('hi')"


def test_parse_rejects_bad_input() -> None:
    err = _raises(InvalidPatchLine, parse_patch, "--- a/a.txt\n+++ b/a.txt\nXthis line lacks a prefix")
    assert "Invalid patch line" in str(err)
    _raises(InvalidPatchLine, parse_patch, "--- a/a.txt\n+++ b/a.txt\n-x\n\n+y")
    _raises(InvalidPatchFormat, parse_patch, "--- a/a.txt\n-x\n+y")
    _raises(InvalidPatchFormat, parse_patch, "--- a/a.txt\n+++ b/b.txt\n-x")
    _raises(InvalidPatchFormat, parse_patch, "just some text\n")


def test_count_occurrences_overlapping() -> None:
    assert count_occurrences("aaa", "aa") == (2, 0)
    assert count_occurrences("abc", "z") == (0, -1)


def test_contextual_replacement() -> None:
    out = apply_section_to_text(_section("-two", "+TWO"), "one\ntwo\nthree\n")
    assert out == "one\nTWO\nthree\n"

    out = apply_section_to_text(_section(" one", "-two", " three", "+four"), "zero\none\ntwo\nthree\n")
    assert out == "zero\none\nthree\nfour\n"


def test_ambiguous_and_missing_fragments() -> None:
    err = _raises(AmbiguousFragment, apply_section_to_text, _section("-x", "+X"), "x\ny\nx\n")
    assert "expected exactly one occurrence" in str(err) and "found 2" in str(err)

    err = _raises(AmbiguousFragment, apply_section_to_text, _section("-zzz", "+ZZZ"), "a\nb\nc\n")
    assert "expected exactly one occurrence" in str(err) and "found 0" in str(err)


def test_whole_file_and_edge_terminators() -> None:
    # whole-file mode: content equals the base fragment exactly
    assert apply_section_to_text(_section("-a", "-b", "+c"), "a\nb") == "c"
    # final line without trailing newline
    assert apply_section_to_text(_section(" a", "-b", "+B"), "a\nb") == "a\nB"
    # CRLF files keep CRLF
    assert apply_section_to_text(_section("-two", "+TWO"), "one\r\ntwo\r\n") == "one\r\nTWO\r\n"
    # pure deletion
    assert apply_section_to_text(_section("-two"), "one\ntwo\nthree\n") == "one\nthree\n"


def test_apply_patch_creates_and_modifies() -> None:
    root = _make_root()
    _write(root, "a.txt", "one\ntwo\nthree\n")
    policy = default_sandbox_policy(root)

    patch = "\n".join([
        "--- a/a.txt",
        "+++ b/a.txt",
        "-two",
        "+TWO",
        "--- a/pkg/new.txt",
        "+++ b/pkg/new.txt",
        "+hello",
        "+world",
    ])
    outcomes = apply_patch(policy, {"a.txt"}, patch)
    by_path = {o.path: o for o in outcomes}
    assert by_path["a.txt"].status == "modified"
    assert by_path["a.txt"].existed_before
    assert by_path["pkg/new.txt"].status == "created"
    assert not by_path["pkg/new.txt"].existed_before
    assert by_path["pkg/new.txt"].before_bytes == 0
    assert _read(root, "a.txt") == "one\nTWO\nthree\n"
    assert _read(root, "pkg/new.txt") == "hello\nworld"


def test_apply_patch_is_all_or_nothing() -> None:
    root = _make_root()
    _write(root, "a.txt", "one\ntwo\n")
    _write(root, "b.txt", "x\ny\nx\n")
    policy = default_sandbox_policy(root)

    patch = "\n".join([
        "--- a/a.txt",
        "+++ b/a.txt",
        "-one",
        "+ONE",
        "--- a/b.txt",
        "+++ b/b.txt",
        "-x",
        "+X",
    ])
    _raises(AmbiguousFragment, apply_patch, policy, {"a.txt", "b.txt"}, patch)
    assert _read(root, "a.txt") == "one\ntwo\n"
    assert _read(root, "b.txt") == "x\ny\nx\n"


def test_apply_patch_enforces_read_gate_and_limits() -> None:
    root = _make_root()
    _write(root, "a.txt", "one\n")
    policy = default_sandbox_policy(root)
    patch = "--- a/a.txt\n+++ b/a.txt\n-one\n+uno\n"

    err = _raises(ReadRequired, apply_patch, policy, set(), patch)
    assert "a.txt" in str(err)

    tiny = dataclasses.replace(policy, max_write_bytes=3)
    _raises(TooLarge, apply_patch, tiny, {"a.txt"}, patch)
    assert _read(root, "a.txt") == "one\n"

    new_with_context = "--- a/new.txt\n+++ b/new.txt\n ctx\n+line\n"
    _raises(NewFileBaseNotEmpty, apply_patch, policy, set(), new_with_context)
    assert not os.path.exists(os.path.join(root, "new.txt"))


def test_sections_for_same_file_apply_in_order() -> None:
    root = _make_root()
    _write(root, "a.txt", "a\nb\nc\n")
    patch = "\n".join([
        "--- a/a.txt", "+++ b/a.txt", "-a", "+A",
        "--- a/a.txt", "+++ b/a.txt", "-c", "+C",
    ])
    outcomes = apply_patch(default_sandbox_policy(root), {"a.txt"}, patch)
    assert len(outcomes) == 1 and outcomes[0].status == "modified"
    assert _read(root, "a.txt") == "A\nb\nC\n"


def test_unchanged_outcome_does_not_rewrite() -> None:
    root = _make_root()
    _write(root, "a.txt", "same\n")
    outcomes = apply_patch(default_sandbox_policy(root), {"a.txt"}, "--- a/a.txt\n+++ b/a.txt\n same\n")
    assert outcomes[0].status == "unchanged"
    assert outcomes[0].before_bytes == outcomes[0].after_bytes == 5


def test_form_feed_and_unicode_separators_stay_in_line() -> None:
    sections = parse_patch("--- a/a.js\n+++ b/a.js\n-var s = 'x\u2028y';\n+var s = 'xy';\n")
    assert sections[0].base_lines == ["var s = 'x\u2028y';"]

    root = _make_root()
    _write(root, "a.c", "int a;\n\x0c\nint b;\n")
    patch = "--- a/a.c\n+++ b/a.c\n \x0c\n-int b;\n+int c;\n"
    outcomes = apply_patch(default_sandbox_policy(root), {"a.c"}, patch)
    assert outcomes[0].status == "modified"
    assert _read(root, "a.c") == "int a;\n\x0c\nint c;\n"


def test_mixed_line_endings_match_by_line() -> None:
    current = "one\r\ntwo\nthree\r\n"
    assert apply_section_to_text(_section("-two", "+TWO"), current) == "one\r\nTWO\nthree\r\n"
    assert apply_section_to_text(_section(" one", "-two", "+2"), current) == "one\r\n2\r\nthree\r\n"
    assert apply_section_to_text(_section("-three", "+3"), "a\r\nb\nthree") == "a\r\nb\n3"

    err = _raises(AmbiguousFragment, apply_section_to_text, _section("-x", "+X"), "x\r\ny\nx\n")
    assert "found 2" in str(err)
    err = _raises(AmbiguousFragment, apply_section_to_text, _section("-tw", "+TW"), current)
    assert "found 0" in str(err)


def main() -> None:
    for test in (
        test_parse_sections_and_fragments,
        test_parse_rejects_bad_input,
        test_count_occurrences_overlapping,
        test_contextual_replacement,
        test_ambiguous_and_missing_fragments,
        test_whole_file_and_edge_terminators,
        test_apply_patch_creates_and_modifies,
        test_apply_patch_is_all_or_nothing,
        test_apply_patch_enforces_read_gate_and_limits,
        test_sections_for_same_file_apply_in_order,
        test_unchanged_outcome_does_not_rewrite,
        test_form_feed_and_unicode_separators_stay_in_line,
        test_mixed_line_endings_match_by_line,
    ):
        test()
    print("OK: diff apply")


if __name__ == "__main__":
    main()
