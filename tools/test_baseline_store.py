"""test_baseline_store.py

Baseline capture/load, location guards, audit ledger and the baseline
validator.

Run:
  python -m tools.test_baseline_store
"""

from __future__ import annotations

import atexit
import dataclasses
import json
import os
import shutil
import tempfile
from pathlib import Path

from repo_sandbox.baseline_store import BaselineStore
from repo_sandbox.errors import BaselineNotFound, InvalidBaselineLocation
from repo_sandbox.security import default_sandbox_policy
from tools.validate_baseline import validate_baseline_file


def _make_root():
    base = os.path.realpath(tempfile.mkdtemp(prefix="repo-baseline-"))
    atexit.register(shutil.rmtree, base, True)
    root = os.path.join(base, "repo")
    os.makedirs(root)
    return base, root


def _write(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def _raises(exc_type, fn, *args) -> Exception:
    try:
        fn(*args)
    except exc_type as e:
        return e
    raise AssertionError(f"expected {exc_type.__name__}")


def test_capture_lives_outside_root_and_is_stable() -> None:
    base, root = _make_root()
    _write(os.path.join(root, "a.txt"), "hello\n")
    policy = default_sandbox_policy(root)
    store = BaselineStore(os.path.join(base, "cache"))

    location, snap = store.capture(policy)
    assert os.path.isfile(location)
    assert not location.startswith(root + os.sep)
    assert snap.files["a.txt"].bytes == 6
    assert snap.files["a.txt"].content == "hello\n"
    assert snap.max_read_bytes == policy.max_read_bytes

    location2, _ = store.capture(policy)
    assert location2 == location == store.location_for(policy)

    loaded = store.load(policy, location)
    assert loaded.files == snap.files
    assert loaded.created_at.endswith("Z")


def test_capture_omits_large_content_and_symlinks() -> None:
    base, root = _make_root()
    _write(os.path.join(root, "small.txt"), "ok")
    _write(os.path.join(root, "big.txt"), "x" * 50)
    _write(os.path.join(root, ".git", "HEAD"), "ref: main\n")
    outside = os.path.join(base, "outside.txt")
    _write(outside, "secret")
    try:
        os.symlink(outside, os.path.join(root, "leak.txt"))
    except (OSError, NotImplementedError):
        pass

    policy = dataclasses.replace(default_sandbox_policy(root), max_read_bytes=10)
    _, snap = BaselineStore(os.path.join(base, "cache")).capture(policy)
    assert sorted(snap.files) == ["big.txt", "small.txt"]
    assert snap.files["big.txt"].bytes == 50
    assert snap.files["big.txt"].content is None
    assert snap.files["small.txt"].content == "ok"


def test_load_reports_missing_or_malformed_baseline() -> None:
    base, root = _make_root()
    policy = default_sandbox_policy(root)
    store = BaselineStore(os.path.join(base, "cache"))
    location = store.location_for(policy)

    _raises(BaselineNotFound, store.load, policy, location)

    os.makedirs(os.path.dirname(location), exist_ok=True)
    with open(location, "w", encoding="utf-8") as f:
        f.write("{not json")
    _raises(BaselineNotFound, store.load, policy, location)

    with open(location, "w", encoding="utf-8") as f:
        json.dump({"createdAt": "x", "files": {}}, f)
    err = _raises(BaselineNotFound, store.load, policy, location)
    assert "maxReadBytes" in str(err)


def test_location_inside_root_is_refused() -> None:
    base, root = _make_root()
    policy = default_sandbox_policy(root)

    _raises(InvalidBaselineLocation, BaselineStore.check_location, policy, os.path.join(root, ".baseline.json"))
    _raises(InvalidBaselineLocation, BaselineStore.check_location, policy, root)
    _raises(InvalidBaselineLocation, BaselineStore.check_location, policy, "")

    inside_store = BaselineStore(os.path.join(root, ".cache"))
    _raises(InvalidBaselineLocation, inside_store.capture, policy)
    assert not os.path.exists(os.path.join(root, ".cache"))


def test_ledger_append_and_iter() -> None:
    base, root = _make_root()
    store = BaselineStore(os.path.join(base, "cache"))
    ledger = store.ledger_path(store.location_for(default_sandbox_policy(root)))

    assert list(store.iter_events(ledger)) == []
    store.append_event(ledger, "session/start", {"root": root})
    store.append_event(ledger, "tool/call", {"name": "read_file", "ok": True}, timestamp="2024-01-01T00:00:00Z")
    with open(ledger, "a", encoding="utf-8") as f:
        f.write("garbage line\n")

    events = list(store.iter_events(ledger))
    assert [e["type"] for e in events] == ["session/start", "tool/call"]
    assert events[1]["timestamp"] == "2024-01-01T00:00:00Z"
    assert events[1]["payload"]["name"] == "read_file"


def test_validator_accepts_captured_and_flags_tampered() -> None:
    base, root = _make_root()
    _write(os.path.join(root, "a.txt"), "abc")
    location, _ = BaselineStore(os.path.join(base, "cache")).capture(default_sandbox_policy(root))

    report = validate_baseline_file(Path(location))
    assert report["valid"], report
    assert report["files"] == 1

    tampered = Path(base) / "tampered.json"
    tampered.write_text(
        json.dumps({"createdAt": "t", "maxReadBytes": 2, "files": {"a.txt": {"bytes": 3, "content": "abc"}}}),
        encoding="utf-8",
    )
    report = validate_baseline_file(tampered)
    assert not report["valid"]
    assert report["issues"][0]["kind"] == "invariant"
    assert report["issues"][0]["path"] == "a.txt"

    broken = Path(base) / "broken.json"
    broken.write_text("[", encoding="utf-8")
    report = validate_baseline_file(broken)
    assert not report["valid"] and report["issues"][0]["kind"] == "parse_error"


def main() -> None:
    for test in (
        test_capture_lives_outside_root_and_is_stable,
        test_capture_omits_large_content_and_symlinks,
        test_load_reports_missing_or_malformed_baseline,
        test_location_inside_root_is_refused,
        test_ledger_append_and_iter,
        test_validator_accepts_captured_and_flags_tampered,
    ):
        test()
    print("OK: baseline store")


if __name__ == "__main__":
    main()
